import logging

from freedrive.capacity import CapacityTracker
from freedrive.config import Settings
from freedrive.errors import AllocationError, ErrorCode, RemoteProviderError
from freedrive.github import StorageProvider
from freedrive.helpers import bytes_to_mb, generate_repo_name
from freedrive.records import RepositoryRecord
from freedrive.store import RecordStore

logger = logging.getLogger(__name__)


class Allocator:
    """Picks the repository a new file goes to, creating one when none has room."""

    def __init__(self, tracker: CapacityTracker, provider: StorageProvider, store: RecordStore, settings: Settings):
        self.tracker = tracker
        self.provider = provider
        self.store = store
        self.settings = settings

    async def get_available_repository(self, user_id: str, file_size_bytes: int) -> RepositoryRecord:
        file_size_mb = bytes_to_mb(file_size_bytes)

        repository = await self.tracker.get_available_repository(user_id, file_size_mb)
        if repository is not None:
            logger.info("Using existing repository %s (%.2fMB used)", repository.name, repository.size_mb)
            return repository

        logger.info("No available repository for %.2fMB file, creating new one", file_size_mb)
        next_sequence = await self.next_sequence_number(user_id)
        return await self.create_new_repository(user_id, next_sequence)

    async def next_sequence_number(self, user_id: str) -> int:
        return await self.store.count_repositories(user_id) + 1

    async def create_new_repository(self, user_id: str, sequence_number: int) -> RepositoryRecord:
        """Create the provider repository and its record, skipping names that are taken.

        Sequence numbers may end up sparse. After ``max_name_attempts``
        consecutive collisions an ``AllocationError`` is raised.
        """
        for _ in range(self.settings.max_name_attempts):
            name = generate_repo_name(user_id, sequence_number)

            if await self.provider.repository_exists(name):
                logger.info("Repository name %s is taken, trying bucket %d", name, sequence_number + 1)
                sequence_number += 1
                continue

            try:
                remote = await self.provider.create_repository_with_retry(
                    name, f"FreeDrive storage bucket {sequence_number} for user {user_id}"
                )
            except RemoteProviderError as e:
                if e.is_name_conflict:
                    logger.info("Repository %s was created concurrently, trying bucket %d", name, sequence_number + 1)
                    sequence_number += 1
                    continue
                raise AllocationError(
                    "Failed to create storage repository", code=ErrorCode.REPO_CREATE_FAILED, details=str(e)
                ) from e

            record = await self.store.create_repository(
                user_id=user_id,
                name=remote.name,
                provider_repo_id=remote.provider_id,
                sequence_number=sequence_number,
                max_size_mb=float(self.settings.max_repo_size_mb),
            )
            logger.info("Created and stored repository %s (id %s)", record.name, record.id)
            return record

        raise AllocationError(
            "Failed to create storage repository",
            code=ErrorCode.REPO_CREATE_FAILED,
            details=f"Repository names exhausted after {self.settings.max_name_attempts} attempts",
        )

    def should_rotate(self, repository: RepositoryRecord, additional_size_mb: float) -> bool:
        max_size = repository.max_size_mb or float(self.settings.max_repo_size_mb)
        return repository.size_mb + additional_size_mb > max_size * self.settings.rotation_ratio

    async def ensure_can_create_repository(self, user_id: str) -> None:
        if await self.store.count_repositories(user_id) >= self.settings.max_repositories:
            raise AllocationError(
                "Repository limit reached",
                code=ErrorCode.REPO_LIMIT_REACHED,
                status_code=400,
                details=f"Maximum number of repositories ({self.settings.max_repositories}) reached",
            )
