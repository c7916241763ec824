"""Metadata record store.

Thin CRUD over the SQLAlchemy models. Reads, updates and deletes of files
and repositories are scoped by the owning user id. Every public method is a
coroutine: the blocking session work runs in the threadpool.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from fastapi.concurrency import run_in_threadpool
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from freedrive.errors import AppError, ErrorCode, NotFoundError, PersistenceError
from freedrive.models import File, Repository, User
from freedrive.records import FileRecord, RepositoryRecord, UserRecord

logger = logging.getLogger(__name__)


def _user_record(row: User) -> UserRecord:
    return UserRecord(id=row.id, email=row.email, created_at=row.created_at, updated_at=row.updated_at)


def _repo_record(row: Repository) -> RepositoryRecord:
    return RepositoryRecord(
        id=row.id,
        user_id=row.user_id,
        name=row.name,
        provider_repo_id=row.provider_repo_id,
        sequence_number=row.sequence_number,
        size_mb=row.size_mb or 0.0,
        max_size_mb=row.max_size_mb,
        is_active=row.is_active,
        version=row.version or 0,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _file_record(row: File) -> FileRecord:
    return FileRecord(
        id=row.id,
        user_id=row.user_id,
        repository_id=row.repo_id,
        filename=row.filename,
        original_name=row.original_name,
        size_mb=row.size_mb,
        content_type=row.mime_type,
        download_url=row.download_url,
        release_id=row.gh_release_id,
        asset_id=row.gh_asset_id,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class RecordStore:
    def __init__(self, session_factory):
        self._session_factory = session_factory

    async def _run(self, operation: str, fn, *args):
        return await run_in_threadpool(self._execute, operation, fn, *args)

    def _execute(self, operation: str, fn, *args):
        db = self._session_factory()
        try:
            result = fn(db, *args)
            db.commit()
            return result
        except AppError:
            db.rollback()
            raise
        except IntegrityError as e:
            db.rollback()
            raise PersistenceError(
                f"Duplicate record during {operation}", status_code=409, details=str(e.orig)
            ) from e
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Database %s failed: %s", operation, e)
            raise PersistenceError(f"Database {operation} failed", details=str(e)) from e
        finally:
            db.close()

    # users

    async def ensure_user(self, user_id: str, email: str) -> UserRecord:
        def op(db):
            user = db.get(User, user_id)
            if user is None:
                db.add(User(id=user_id, email=email or None))
                try:
                    db.flush()
                except IntegrityError:
                    # a concurrent first request inserted the same user
                    db.rollback()
                    user = db.get(User, user_id)
                    if user is None:
                        raise
                    return _user_record(user)
                user = db.get(User, user_id)
            elif email and user.email != email:
                user.email = email
                db.flush()
            return _user_record(user)

        return await self._run("user upsert", op)

    # repositories

    async def create_repository(self, user_id: str, name: str, provider_repo_id: str,
                                sequence_number: int, max_size_mb: float) -> RepositoryRecord:
        def op(db):
            repo = Repository(
                user_id=user_id,
                name=name,
                provider_repo_id=provider_repo_id,
                sequence_number=sequence_number,
                size_mb=0.0,
                max_size_mb=max_size_mb,
                is_active=True,
                version=0,
            )
            db.add(repo)
            db.flush()
            return _repo_record(repo)

        return await self._run("repository creation", op)

    async def list_repositories(self, user_id: str, active_only: bool = False) -> List[RepositoryRecord]:
        """User's repositories, oldest first."""
        def op(db):
            query = select(Repository).where(Repository.user_id == user_id)
            if active_only:
                query = query.where(Repository.is_active.is_(True))
            query = query.order_by(Repository.created_at.asc(), Repository.sequence_number.asc())
            return [_repo_record(r) for r in db.scalars(query)]

        return await self._run("repository retrieval", op)

    async def count_repositories(self, user_id: str) -> int:
        def op(db):
            query = select(func.count(Repository.id)).where(Repository.user_id == user_id)
            return db.scalar(query) or 0

        return await self._run("repository count", op)

    async def get_repository(self, repo_id: str, user_id: Optional[str] = None) -> Optional[RepositoryRecord]:
        def op(db):
            query = select(Repository).where(Repository.id == repo_id)
            if user_id is not None:
                query = query.where(Repository.user_id == user_id)
            row = db.scalars(query).first()
            return _repo_record(row) if row else None

        return await self._run("repository lookup", op)

    async def update_repository_size(self, repo_id: str, size_mb: float,
                                     expected_version: Optional[int] = None) -> Optional[RepositoryRecord]:
        """Overwrite the cached size.

        With ``expected_version`` the write only happens if the row still has
        that version; ``None`` is returned when another writer got there first.
        """
        def op(db):
            stmt = update(Repository).where(Repository.id == repo_id)
            if expected_version is not None:
                stmt = stmt.where(Repository.version == expected_version)
            stmt = stmt.values(
                size_mb=size_mb,
                version=Repository.version + 1,
                updated_at=datetime.now(timezone.utc),
            )
            result = db.execute(stmt.execution_options(synchronize_session=False))
            row = db.get(Repository, repo_id)
            if row is None:
                raise NotFoundError("Repository not found", code=ErrorCode.REPO_NOT_FOUND, details=repo_id)
            if result.rowcount == 0:
                return None
            db.refresh(row)
            return _repo_record(row)

        return await self._run("repository size update", op)

    async def set_repository_active(self, repo_id: str, user_id: str, active: bool) -> RepositoryRecord:
        def op(db):
            row = db.scalars(
                select(Repository).where(Repository.id == repo_id, Repository.user_id == user_id)
            ).first()
            if row is None:
                raise NotFoundError("Repository not found", code=ErrorCode.REPO_NOT_FOUND, details=repo_id)
            row.is_active = active
            db.flush()
            return _repo_record(row)

        return await self._run("repository status update", op)

    # files

    async def create_file(self, user_id: str, repo_id: str, filename: str, original_name: str,
                          size_mb: float, content_type: str, download_url: str,
                          release_id: str, asset_id: str) -> FileRecord:
        def op(db):
            row = File(
                user_id=user_id,
                repo_id=repo_id,
                filename=filename,
                original_name=original_name,
                size_mb=size_mb,
                mime_type=content_type,
                download_url=download_url,
                gh_release_id=release_id,
                gh_asset_id=asset_id,
            )
            db.add(row)
            db.flush()
            return _file_record(row)

        return await self._run("file creation", op)

    async def get_file(self, file_id: str, user_id: str) -> Optional[FileRecord]:
        def op(db):
            row = db.scalars(select(File).where(File.id == file_id, File.user_id == user_id)).first()
            return _file_record(row) if row else None

        return await self._run("file retrieval", op)

    async def list_files(self, user_id: str, limit: int = 20, offset: int = 0,
                         search: str = "") -> Tuple[List[FileRecord], int]:
        def op(db):
            conditions = [File.user_id == user_id]
            if search:
                pattern = f"%{search}%"
                conditions.append(or_(File.original_name.ilike(pattern), File.filename.ilike(pattern)))
            total = db.scalar(select(func.count(File.id)).where(*conditions)) or 0
            query = (
                select(File)
                .where(*conditions)
                .order_by(File.created_at.desc())
                .offset(offset)
                .limit(limit)
            )
            return [_file_record(r) for r in db.scalars(query)], total

        return await self._run("user files retrieval", op)

    async def all_files(self, user_id: str, repo_id: Optional[str] = None) -> List[FileRecord]:
        """Every file of the user, newest first, optionally limited to one repository."""
        def op(db):
            query = select(File).where(File.user_id == user_id)
            if repo_id is not None:
                query = query.where(File.repo_id == repo_id)
            query = query.order_by(File.created_at.desc())
            return [_file_record(r) for r in db.scalars(query)]

        return await self._run("user files retrieval", op)

    async def delete_file(self, file_id: str, user_id: str) -> Optional[FileRecord]:
        def op(db):
            row = db.scalars(select(File).where(File.id == file_id, File.user_id == user_id)).first()
            if row is None:
                return None
            record = _file_record(row)
            db.delete(row)
            return record

        return await self._run("file deletion", op)

    async def file_totals(self, user_id: str) -> Tuple[int, float]:
        def op(db):
            count, total = db.execute(
                select(func.count(File.id), func.coalesce(func.sum(File.size_mb), 0.0))
                .where(File.user_id == user_id)
            ).one()
            return count or 0, float(total or 0.0)

        return await self._run("storage stats retrieval", op)
