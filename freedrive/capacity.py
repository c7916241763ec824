"""Cached per-repository usage and its reconciliation against the provider.

``size_mb`` on a repository row is a cache of what the provider really
stores. It is moved by uploads and deletes and corrected by reconciliation;
concurrent writers may make it drift in between.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from freedrive.config import Settings
from freedrive.errors import AppError, ErrorCode, NotFoundError, PersistenceError
from freedrive.github import StorageProvider
from freedrive.records import InvalidRepository, RepositoryRecord, SyncReport, ValidationReport
from freedrive.store import RecordStore

logger = logging.getLogger(__name__)


class CapacityTracker:
    def __init__(self, store: RecordStore, provider: StorageProvider, settings: Settings):
        self.store = store
        self.provider = provider
        self.settings = settings

    async def get_available_repository(self, user_id: str, required_size_mb: float) -> Optional[RepositoryRecord]:
        """Oldest active repository with room for ``required_size_mb``, or None."""
        repositories = await self.store.list_repositories(user_id, active_only=True)
        for repo in repositories:
            if repo.size_mb + required_size_mb <= repo.max_size_mb:
                return repo
        return None

    async def update_size(self, repository_id: str, new_size_mb: float,
                          expected_version: Optional[int] = None) -> Optional[RepositoryRecord]:
        # no clamping here, callers pass max(0, old + delta)
        return await self.store.update_repository_size(repository_id, new_size_mb, expected_version)

    async def apply_delta(self, repository_id: str, delta_mb: float) -> RepositoryRecord:
        """Move the cached size by ``delta_mb``, never below zero.

        Read, compute and conditionally write; on a concurrent write the
        repository is re-read and the delta applied again.
        """
        attempts = max(1, self.settings.size_update_attempts)
        for _ in range(attempts):
            repo = await self.store.get_repository(repository_id)
            if repo is None:
                raise NotFoundError("Repository not found", code=ErrorCode.REPO_NOT_FOUND, details=repository_id)
            new_size = max(0.0, repo.size_mb + delta_mb)
            updated = await self.update_size(repository_id, new_size, expected_version=repo.version)
            if updated is not None:
                logger.info("Updated repository %s size: %.2fMB -> %.2fMB", repo.name, repo.size_mb, new_size)
                return updated
            logger.debug("Concurrent size update on %s, retrying", repo.name)
        raise PersistenceError(
            "Failed to update repository size",
            details=f"{attempts} conflicting concurrent updates on repository {repository_id}",
        )

    async def reconcile(self, repository: RepositoryRecord, threshold_mb: float = None) -> SyncReport:
        """Compare the cached size with the provider's asset total and correct it past ``threshold_mb``."""
        if threshold_mb is None:
            threshold_mb = self.settings.single_sync_threshold_mb

        usage = await self.provider.get_aggregate_asset_size(repository.name)
        actual_mb = usage.total_mb
        difference = abs(repository.size_mb - actual_mb)
        updated = difference > threshold_mb
        if updated:
            await self.update_size(repository.id, actual_mb)
            logger.info("Reconciled repository %s: %.2fMB -> %.2fMB", repository.name, repository.size_mb, actual_mb)

        return SyncReport(
            repository_id=repository.id,
            repository=repository.name,
            old_size_mb=repository.size_mb,
            new_size_mb=actual_mb if updated else repository.size_mb,
            difference_mb=difference,
            threshold_mb=threshold_mb,
            updated=updated,
            asset_count=usage.asset_count,
            synced_at=datetime.now(timezone.utc),
        )

    async def reconcile_all(self, user_id: str) -> ValidationReport:
        """Bulk pass over every repository of the user with the coarser threshold.

        A failure on one repository is recorded and the pass continues.
        """
        repositories = await self.store.list_repositories(user_id)
        valid: List[str] = []
        invalid: List[InvalidRepository] = []
        synced: List[SyncReport] = []

        for repo in repositories:
            try:
                if not await self.provider.repository_exists(repo.name):
                    invalid.append(InvalidRepository(repo.name, "Repository not found on provider", True))
                    continue
                report = await self.reconcile(repo, self.settings.bulk_sync_threshold_mb)
                if report.updated:
                    synced.append(report)
                valid.append(repo.name)
            except AppError as e:
                logger.warning("Reconciliation of %s failed: %s", repo.name, e)
                invalid.append(InvalidRepository(repo.name, str(e)))
            except Exception as e:
                logger.exception("Unexpected error reconciling %s", repo.name)
                invalid.append(InvalidRepository(repo.name, f"Unexpected error: {e}"))

        return ValidationReport(valid=valid, invalid=invalid, synced=synced)
