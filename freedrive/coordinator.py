"""Upload and delete sequences across provider, metadata and capacity counter.

Ordering of an upload: validate, name, allocate, rotate, upload to the
provider, insert the file record, bump the repository counter. Nothing is
written before the provider upload succeeds. A failed record insert leaves
an orphaned release asset behind; a failed counter update leaves the cache
stale until the next reconciliation. Neither is rolled back.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Sequence, Tuple

from freedrive.allocator import Allocator
from freedrive.capacity import CapacityTracker
from freedrive.config import Settings
from freedrive.errors import (
    AllocationError,
    AppError,
    ErrorCode,
    ErrorKind,
    NotFoundError,
    PersistenceError,
    RemoteProviderError,
    ValidationError,
)
from freedrive.github import StorageProvider
from freedrive.helpers import (
    file_extension,
    format_bytes,
    generate_unique_filename,
    mb_to_bytes,
    sanitize_filename,
)
from freedrive.records import (
    BatchFailure,
    BatchResult,
    DeletedFileSummary,
    FileRecord,
    IncomingFile,
    RepositoryRecord,
    SyncReport,
    UploadResult,
    ValidationReport,
)
from freedrive.store import RecordStore

logger = logging.getLogger(__name__)


def _failure(item: str, error: Exception) -> BatchFailure:
    if isinstance(error, AppError):
        return BatchFailure(item=item, kind=error.kind.value, code=error.code, message=str(error))
    return BatchFailure(item=item, kind=ErrorKind.INTERNAL.value, code=ErrorCode.INTERNAL_ERROR, message=str(error))


class FileCoordinator:
    def __init__(self, store: RecordStore, provider: StorageProvider, tracker: CapacityTracker,
                 allocator: Allocator, settings: Settings,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.store = store
        self.provider = provider
        self.tracker = tracker
        self.allocator = allocator
        self.settings = settings
        self._sleep = sleep

    @classmethod
    def build(cls, store: RecordStore, provider: StorageProvider, settings: Settings) -> "FileCoordinator":
        tracker = CapacityTracker(store, provider, settings)
        allocator = Allocator(tracker, provider, store, settings)
        return cls(store, provider, tracker, allocator, settings)

    # validation

    def _too_large(self, size_bytes: int) -> ValidationError:
        return ValidationError(
            "File too large",
            code=ErrorCode.FILE_TOO_LARGE,
            status_code=413,
            details=f"Maximum file size is {format_bytes(self.settings.max_file_size_bytes)}, "
                    f"received {format_bytes(size_bytes)}",
        )

    def validate_file(self, incoming: IncomingFile) -> None:
        # an oversized upload is rejected on its declared size, its body is never read
        if incoming is not None and (incoming.declared_size or 0) > self.settings.max_file_size_bytes:
            raise self._too_large(incoming.declared_size)

        if incoming is None or incoming.size_bytes == 0:
            raise ValidationError("No file provided", details="Please select a non-empty file to upload")

        if incoming.size_bytes > self.settings.max_file_size_bytes:
            raise self._too_large(incoming.size_bytes)

        if incoming.content_type not in self.settings.allowed_mime_types:
            raise ValidationError(
                "Invalid file type",
                code=ErrorCode.INVALID_FILE_TYPE,
                details=f"File type {incoming.content_type} is not allowed",
            )

        if not incoming.filename or not incoming.filename.strip():
            raise ValidationError("Invalid filename", details="File must have a valid name")

        if not sanitize_filename(incoming.filename):
            raise ValidationError("Invalid filename", details="Filename contains only invalid characters")

    # allocation

    async def allocate_destination(self, user_id: str, file_size_bytes: int) -> RepositoryRecord:
        return await self.allocator.get_available_repository(user_id, file_size_bytes)

    async def _rotate_if_needed(self, repository: RepositoryRecord, user_id: str,
                                file_size_mb: float) -> RepositoryRecord:
        # an empty repository is already the freshest one there is
        if repository.size_mb <= 0 or not self.allocator.should_rotate(repository, file_size_mb):
            return repository

        try:
            await self.allocator.ensure_can_create_repository(user_id)
        except AllocationError:
            logger.warning("Rotation skipped for %s: repository limit reached", repository.name)
            return repository

        logger.info("Repository %s is near capacity, rotating to a new repository", repository.name)
        next_sequence = await self.allocator.next_sequence_number(user_id)
        return await self.allocator.create_new_repository(user_id, next_sequence)

    # upload

    async def upload_file(self, incoming: IncomingFile, user_id: str) -> UploadResult:
        self.validate_file(incoming)

        storage_name = generate_unique_filename(incoming.filename)
        file_size_mb = incoming.size_mb
        logger.info("Starting upload: %s (%s)", incoming.filename, format_bytes(incoming.size_bytes))

        repository = await self.allocate_destination(user_id, incoming.size_bytes)
        repository = await self._rotate_if_needed(repository, user_id, file_size_mb)

        uploaded = await self.provider.upload_file(
            repository.name, storage_name, incoming.content, incoming.content_type
        )

        try:
            record = await self.store.create_file(
                user_id=user_id,
                repo_id=repository.id,
                filename=storage_name,
                original_name=incoming.filename,
                size_mb=file_size_mb,
                content_type=incoming.content_type,
                download_url=uploaded.download_url,
                release_id=uploaded.release_id,
                asset_id=uploaded.asset_id,
            )
        except PersistenceError:
            logger.error(
                "File record insert failed after upload; asset %s in %s is orphaned",
                uploaded.asset_id, repository.name,
            )
            raise

        warnings: List[str] = []
        try:
            repository = await self.tracker.apply_delta(repository.id, file_size_mb)
            size_after = repository.size_mb
        except AppError as e:
            logger.warning("Size update for %s failed after upload of %s: %s", repository.name, record.id, e)
            warnings.append(f"Repository size not updated: {e}")
            size_after = repository.size_mb + file_size_mb

        logger.info("Upload completed: %s -> %s/%s", incoming.filename, repository.name, storage_name)
        return UploadResult(file=record, repository=repository, size_after_upload_mb=size_after, warnings=warnings)

    async def upload_files(self, files: Sequence[IncomingFile], user_id: str) -> BatchResult:
        """Upload one file at a time, pausing between successes; failures are collected, not raised."""
        if not files:
            raise ValidationError("No files provided", details="Please select at least one file to upload")
        if len(files) > self.settings.max_upload_batch:
            raise ValidationError("Too many files", details=f"Maximum {self.settings.max_upload_batch} files allowed")

        successful: List[UploadResult] = []
        failed: List[BatchFailure] = []
        delay = self.settings.batch_upload_delay_ms / 1000

        logger.info("Starting batch upload of %d files", len(files))
        for index, incoming in enumerate(files):
            name = incoming.filename if incoming is not None else ""
            try:
                successful.append(await self.upload_file(incoming, user_id))
            except AppError as e:
                logger.warning("Failed to upload %s: %s", name, e)
                failed.append(_failure(name, e))
                continue
            except Exception as e:
                logger.exception("Unexpected error uploading %s", name)
                failed.append(_failure(name, e))
                continue
            if delay and index < len(files) - 1:
                await self._sleep(delay)

        logger.info("Batch upload completed: %d successful, %d failed", len(successful), len(failed))
        return BatchResult(successful=successful, failed=failed)

    # reads

    async def get_file(self, file_id: str, user_id: str) -> FileRecord:
        record = await self.store.get_file(file_id, user_id)
        if record is None:
            raise NotFoundError(
                "File not found",
                details="The requested file does not exist or you do not have access to it",
            )
        return record

    async def list_files(self, user_id: str, limit: int = 20, offset: int = 0, search: str = "") -> dict:
        files, total = await self.store.list_files(user_id, limit=limit, offset=offset, search=search)
        return {
            "files": files,
            "total": total,
            "limit": limit,
            "offset": offset,
            "has_more": offset + limit < total,
        }

    async def get_file_statistics(self, user_id: str) -> dict:
        files = await self.store.all_files(user_id)
        sizes = [int(round(mb_to_bytes(f.size_mb))) for f in files]
        total = sum(sizes)
        average = total / len(sizes) if sizes else 0
        largest = max(sizes) if sizes else 0
        smallest = min(sizes) if sizes else 0

        file_types: Dict[str, int] = {}
        uploads_by_month: Dict[str, int] = {}
        for f in files:
            extension = file_extension(f.original_name) or "none"
            file_types[extension] = file_types.get(extension, 0) + 1
            if f.created_at is not None:
                month = f.created_at.strftime("%Y-%m")
                uploads_by_month[month] = uploads_by_month.get(month, 0) + 1

        return {
            "total_files": len(files),
            "total_size": total,
            "total_size_mb": sum(f.size_mb for f in files),
            "average_file_size": average,
            "largest_file": largest,
            "smallest_file": smallest,
            "file_types": file_types,
            "uploads_by_month": uploads_by_month,
            "total_size_formatted": format_bytes(total),
            "average_file_size_formatted": format_bytes(average),
            "largest_file_formatted": format_bytes(largest),
            "smallest_file_formatted": format_bytes(smallest),
        }

    # delete

    async def delete_file(self, file_id: str, user_id: str) -> DeletedFileSummary:
        record = await self.get_file(file_id, user_id)
        repository = await self.store.get_repository(record.repository_id, user_id)
        warnings: List[str] = []

        logger.info("Deleting file %s (%s)", record.original_name, record.filename)
        if repository is None:
            warnings.append("Owning repository not found; remote asset left in place")
        else:
            try:
                await self.provider.delete_asset(repository.name, record.asset_id)
            except RemoteProviderError as e:
                # metadata cleanup wins over remote cleanup
                logger.warning("Remote deletion of asset %s failed, continuing: %s", record.asset_id, e)
                warnings.append(f"Remote asset not deleted: {e}")

        deleted = await self.store.delete_file(file_id, user_id)
        if deleted is None:
            raise NotFoundError(
                "File not found",
                details="The requested file does not exist or you do not have access to it",
            )

        if repository is not None:
            try:
                await self.tracker.apply_delta(repository.id, -deleted.size_mb)
            except AppError as e:
                logger.warning("Size update for %s failed after delete of %s: %s", repository.name, deleted.id, e)
                warnings.append(f"Repository size not updated: {e}")

        logger.info("File deleted: %s", deleted.original_name)
        return DeletedFileSummary(
            id=deleted.id,
            filename=deleted.filename,
            original_name=deleted.original_name,
            size_mb=deleted.size_mb,
            repository_id=deleted.repository_id,
            warnings=warnings,
        )

    async def delete_files(self, file_ids: Sequence[str], user_id: str) -> BatchResult:
        if not file_ids:
            raise ValidationError("No files specified", details="Please specify at least one file to delete")
        if len(file_ids) > self.settings.max_delete_batch:
            raise ValidationError(
                "Too many files", details=f"Maximum {self.settings.max_delete_batch} files per batch deletion"
            )

        successful: List[DeletedFileSummary] = []
        failed: List[BatchFailure] = []
        for file_id in file_ids:
            try:
                successful.append(await self.delete_file(file_id, user_id))
            except AppError as e:
                logger.warning("Failed to delete file %s: %s", file_id, e)
                failed.append(_failure(file_id, e))
            except Exception as e:
                logger.exception("Unexpected error deleting file %s", file_id)
                failed.append(_failure(file_id, e))

        logger.info("Batch deletion completed: %d successful, %d failed", len(successful), len(failed))
        return BatchResult(successful=successful, failed=failed)

    # repositories

    async def create_repository_for_user(self, user_id: str) -> RepositoryRecord:
        await self.allocator.ensure_can_create_repository(user_id)
        next_sequence = await self.allocator.next_sequence_number(user_id)
        return await self.allocator.create_new_repository(user_id, next_sequence)

    async def get_user_storage_statistics(self, user_id: str) -> dict:
        repositories = await self.store.list_repositories(user_id)
        file_count, file_size_mb = await self.store.file_totals(user_id)

        per_repository = [
            {
                "id": repo.id,
                "name": repo.name,
                "size_mb": repo.size_mb,
                "max_size_mb": repo.max_size_mb,
                "available_mb": repo.available_mb,
                "usage_percentage": repo.usage_percentage,
                "is_active": repo.is_active,
                "created_at": repo.created_at,
            }
            for repo in repositories
        ]

        total_max = sum(repo.max_size_mb for repo in repositories)
        total_used = sum(repo.size_mb for repo in repositories)
        return {
            "repositories": per_repository,
            "totals": {
                "total_repositories": len(repositories),
                "active_repositories": sum(1 for repo in repositories if repo.is_active),
                "total_max_storage_mb": total_max,
                "total_used_storage_mb": total_used,
                "total_available_storage_mb": max(0.0, total_max - total_used),
                "overall_usage_percentage": (total_used / total_max * 100) if total_max else 0.0,
                "total_files": file_count,
                "total_file_size_mb": file_size_mb,
                "can_create_more_repos": len(repositories) < self.settings.max_repositories,
            },
        }

    async def get_repository_details(self, repository_id: str,
                                     user_id: str) -> Tuple[RepositoryRecord, List[FileRecord]]:
        repository = await self.store.get_repository(repository_id, user_id)
        if repository is None:
            raise NotFoundError(
                "Repository not found",
                code=ErrorCode.REPO_NOT_FOUND,
                details="The requested repository does not exist or you do not have access to it",
            )
        return repository, await self.store.all_files(user_id, repo_id=repository.id)

    async def reconcile_repository(self, repository_id: str, user_id: str) -> SyncReport:
        repository = await self.store.get_repository(repository_id, user_id)
        if repository is None:
            raise NotFoundError(
                "Repository not found",
                code=ErrorCode.REPO_NOT_FOUND,
                details="The requested repository does not exist",
            )
        return await self.tracker.reconcile(repository, self.settings.single_sync_threshold_mb)

    async def reconcile_all_repositories(self, user_id: str) -> ValidationReport:
        return await self.tracker.reconcile_all(user_id)

    async def cleanup_orphaned_repositories(self, user_id: str) -> dict:
        """Deactivate repositories that no longer exist on the provider."""
        report = await self.reconcile_all_repositories(user_id)
        by_name = {repo.name: repo for repo in await self.store.list_repositories(user_id)}
        cleaned: List[str] = []
        errors: List[dict] = []

        for invalid in report.invalid:
            repo = by_name.get(invalid.repository)
            if not invalid.missing_on_provider or repo is None or not repo.is_active:
                continue
            try:
                await self.store.set_repository_active(repo.id, user_id, False)
                logger.info("Marked orphaned repository %s inactive", repo.name)
                cleaned.append(repo.name)
            except AppError as e:
                errors.append({"repository": repo.name, "error": str(e)})

        return {"cleaned": cleaned, "errors": errors, "validation": report}
