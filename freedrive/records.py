"""Immutable values passed between the store, the provider client and the services."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from freedrive.helpers import bytes_to_mb


@dataclass(frozen=True)
class UserRecord:
    id: str
    email: Optional[str]
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class RepositoryRecord:
    id: str
    user_id: str
    name: str
    provider_repo_id: str
    sequence_number: int
    size_mb: float
    max_size_mb: float
    is_active: bool = True
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def available_mb(self) -> float:
        return max(0.0, self.max_size_mb - self.size_mb)

    @property
    def usage_percentage(self) -> float:
        if not self.max_size_mb:
            return 0.0
        return self.size_mb / self.max_size_mb * 100


@dataclass(frozen=True)
class FileRecord:
    id: str
    user_id: str
    repository_id: str
    filename: str
    original_name: str
    size_mb: float
    content_type: str
    download_url: str
    release_id: str
    asset_id: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class IncomingFile:
    filename: str
    content: bytes
    content_type: str
    # size reported by the client before the body was read, if any
    declared_size: Optional[int] = None

    @property
    def size_bytes(self) -> int:
        return len(self.content)

    @property
    def size_mb(self) -> float:
        return bytes_to_mb(len(self.content))


# provider results

@dataclass(frozen=True)
class RemoteRepository:
    provider_id: str
    name: str
    url: str = ""


@dataclass(frozen=True)
class Release:
    release_id: str
    tag_name: str
    upload_url: str


@dataclass(frozen=True)
class Asset:
    asset_id: str
    name: str
    size: int
    download_url: str


@dataclass(frozen=True)
class UploadedObject:
    release_id: str
    asset_id: str
    filename: str
    size: int
    download_url: str


@dataclass(frozen=True)
class AssetUsage:
    asset_count: int
    total_bytes: int
    release_count: int = 0

    @property
    def total_mb(self) -> float:
        return bytes_to_mb(self.total_bytes)


# operation results

@dataclass(frozen=True)
class UploadResult:
    file: FileRecord
    repository: RepositoryRecord
    size_after_upload_mb: float
    warnings: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class DeletedFileSummary:
    id: str
    filename: str
    original_name: str
    size_mb: float
    repository_id: str
    warnings: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class BatchFailure:
    item: str
    kind: str
    code: str
    message: str


@dataclass(frozen=True)
class BatchResult:
    successful: list
    failed: List[BatchFailure]

    @property
    def success(self) -> bool:
        return not self.failed

    @property
    def total(self) -> int:
        return len(self.successful) + len(self.failed)


@dataclass(frozen=True)
class SyncReport:
    repository_id: str
    repository: str
    old_size_mb: float
    new_size_mb: float
    difference_mb: float
    threshold_mb: float
    updated: bool
    asset_count: int
    synced_at: datetime


@dataclass(frozen=True)
class InvalidRepository:
    repository: str
    reason: str
    missing_on_provider: bool = False


@dataclass(frozen=True)
class ValidationReport:
    valid: List[str]
    invalid: List[InvalidRepository]
    synced: List[SyncReport]
