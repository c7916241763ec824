import logging
from contextlib import asynccontextmanager
from typing import List

from dotenv import load_dotenv

load_dotenv()  # load .env before the settings are assembled
from fastapi import Depends, FastAPI, File as FileParam, HTTPException, Query, Request, UploadFile, status
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from freedrive.auth import CurrentUser, TokenError, decode_token
from freedrive.config import Settings, get_settings
from freedrive.coordinator import FileCoordinator
from freedrive.database import build_engine, build_session_factory, init_db
from freedrive.errors import AppError, ErrorCode, RateLimitError, error_envelope, success_envelope
from freedrive.github import GitHubClient
from freedrive.helpers import format_bytes, mb_to_bytes
from freedrive.logging_config import configure_logging
from freedrive.rate_limit import SlidingWindowRateLimiter
from freedrive.records import DeletedFileSummary, FileRecord, IncomingFile, RepositoryRecord, UploadResult
from freedrive.store import RecordStore

logger = logging.getLogger(__name__)
security = HTTPBearer(auto_error=False)


class BatchDeleteRequest(BaseModel):
    file_ids: List[str]


# response shapes

def repo_out(repo: RepositoryRecord) -> dict:
    return {
        "id": repo.id,
        "name": repo.name,
        "provider_repo_id": repo.provider_repo_id,
        "size_mb": repo.size_mb,
        "max_size_mb": repo.max_size_mb,
        "usage_percentage": repo.usage_percentage,
        "available_mb": repo.available_mb,
        "is_active": repo.is_active,
        "created_at": repo.created_at,
        "updated_at": repo.updated_at,
        "size_formatted": format_bytes(mb_to_bytes(repo.size_mb)),
    }


def file_out(f: FileRecord) -> dict:
    return {
        "id": f.id,
        "filename": f.filename,
        "original_name": f.original_name,
        "size_mb": f.size_mb,
        "size_formatted": format_bytes(mb_to_bytes(f.size_mb)),
        "content_type": f.content_type,
        "download_url": f.download_url,
        "repository_id": f.repository_id,
        "uploaded_at": f.created_at,
    }


def upload_out(result: UploadResult) -> dict:
    return {
        "file": file_out(result.file),
        "repository": {
            "id": result.repository.id,
            "name": result.repository.name,
            "size_after_upload_mb": result.size_after_upload_mb,
        },
        "warnings": result.warnings,
    }


def deleted_out(summary: DeletedFileSummary) -> dict:
    return {
        "id": summary.id,
        "filename": summary.filename,
        "original_name": summary.original_name,
        "size_mb": summary.size_mb,
        "warnings": summary.warnings,
    }


def batch_out(result, item_out) -> dict:
    return {
        "success": result.success,
        "summary": {
            "total": result.total,
            "successful": len(result.successful),
            "failed": len(result.failed),
        },
        "successful": [item_out(item) for item in result.successful],
        "failed": [
            {"item": f.item, "kind": f.kind, "code": f.code, "message": f.message} for f in result.failed
        ],
    }


async def read_upload(upload: UploadFile, settings: Settings) -> IncomingFile:
    """Buffer an upload, skipping the read when its declared size is already over the limit."""
    filename = upload.filename or ""
    content_type = upload.content_type or "application/octet-stream"
    if upload.size is not None and upload.size > settings.max_file_size_bytes:
        return IncomingFile(filename, b"", content_type, declared_size=upload.size)
    return IncomingFile(filename, await upload.read(), content_type, declared_size=upload.size)


# dependencies, overridable in tests

def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request) -> RecordStore:
    return request.app.state.store


def get_coordinator(request: Request) -> FileCoordinator:
    state = request.app.state
    if getattr(state, "coordinator", None) is None:
        provider = GitHubClient.from_settings(state.settings)
        state.provider = provider
        state.coordinator = FileCoordinator.build(state.store, provider, state.settings)
    return state.coordinator


def get_rate_limiter(request: Request) -> SlidingWindowRateLimiter:
    return request.app.state.rate_limiter


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    settings: Settings = Depends(get_app_settings),
    store: RecordStore = Depends(get_store),
) -> CurrentUser:
    token = credentials.credentials if credentials else None
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing authentication token")
    try:
        user = decode_token(token, settings)
    except TokenError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    await store.ensure_user(user.id, user.email)
    return user


def rate_limited_user(
    user: CurrentUser = Depends(get_current_user),
    limiter: SlidingWindowRateLimiter = Depends(get_rate_limiter),
) -> CurrentUser:
    if not limiter.allow(user.id):
        raise RateLimitError(
            "Rate limit exceeded",
            details=f"Maximum {limiter.max_requests} requests per {limiter.window_seconds:g} seconds",
        )
    return user


def create_app(settings: Settings = None, store: RecordStore = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.engine is not None:
            init_db(app.state.engine)
        yield
        provider = getattr(app.state, "provider", None)
        if provider is not None:
            await provider.aclose()

    app = FastAPI(title="FreeDrive", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = None
    if store is None:
        app.state.engine = build_engine(settings.database_url)
        store = RecordStore(build_session_factory(app.state.engine))
    app.state.store = store
    app.state.coordinator = None
    app.state.rate_limiter = SlidingWindowRateLimiter(
        settings.rate_limit_requests, settings.rate_limit_window_seconds
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.allow_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        if exc.status_code >= 500:
            operation = getattr(exc, "operation", None)
            if operation:
                logger.error("%s %s failed during %s: %s", request.method, request.url.path, operation, exc)
            else:
                logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(error_envelope(exc)))

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        err = AppError("An unexpected error occurred", code=ErrorCode.INTERNAL_ERROR)
        return JSONResponse(status_code=500, content=jsonable_encoder(error_envelope(err)))

    @app.get("/ping")
    def ping():
        return {"status": "backend ok"}

    # files

    @app.post("/files/upload", status_code=201)
    async def upload(file: UploadFile,
                     user: CurrentUser = Depends(rate_limited_user),
                     settings: Settings = Depends(get_app_settings),
                     coordinator: FileCoordinator = Depends(get_coordinator)):
        incoming = await read_upload(file, settings)
        result = await coordinator.upload_file(incoming, user.id)
        return success_envelope(upload_out(result), "File uploaded successfully", "FILE_UPLOADED")

    @app.post("/files/upload-multiple")
    async def upload_multiple(files: List[UploadFile] = FileParam(...),
                              user: CurrentUser = Depends(rate_limited_user),
                              settings: Settings = Depends(get_app_settings),
                              coordinator: FileCoordinator = Depends(get_coordinator)):
        incoming = [await read_upload(f, settings) for f in files]
        result = await coordinator.upload_files(incoming, user.id)
        return success_envelope(batch_out(result, upload_out), "Batch upload completed", "FILES_UPLOADED")

    @app.get("/files")
    async def list_files(limit: int = Query(20, ge=1, le=100),
                         offset: int = Query(0, ge=0),
                         q: str = "",
                         user: CurrentUser = Depends(rate_limited_user),
                         coordinator: FileCoordinator = Depends(get_coordinator)):
        page = await coordinator.list_files(user.id, limit=limit, offset=offset, search=q)
        page["files"] = [file_out(f) for f in page["files"]]
        return success_envelope(page)

    @app.get("/files/stats/summary")
    async def file_statistics(user: CurrentUser = Depends(rate_limited_user),
                              coordinator: FileCoordinator = Depends(get_coordinator)):
        stats = await coordinator.get_file_statistics(user.id)
        return success_envelope({"statistics": stats}, "File statistics retrieved successfully",
                                "FILE_STATS_RETRIEVED")

    @app.delete("/files/batch")
    async def delete_batch(body: BatchDeleteRequest,
                           user: CurrentUser = Depends(rate_limited_user),
                           coordinator: FileCoordinator = Depends(get_coordinator)):
        result = await coordinator.delete_files(body.file_ids, user.id)
        return success_envelope(batch_out(result, deleted_out), "Batch deletion completed", "FILES_DELETED")

    @app.get("/files/{file_id}")
    async def get_file(file_id: str,
                       user: CurrentUser = Depends(rate_limited_user),
                       coordinator: FileCoordinator = Depends(get_coordinator)):
        record = await coordinator.get_file(file_id, user.id)
        return success_envelope(file_out(record))

    @app.get("/files/{file_id}/download")
    async def download_file(file_id: str,
                            url: bool = False,
                            user: CurrentUser = Depends(rate_limited_user),
                            coordinator: FileCoordinator = Depends(get_coordinator)):
        record = await coordinator.get_file(file_id, user.id)
        if not url:
            return RedirectResponse(record.download_url, status_code=302)
        size = int(round(mb_to_bytes(record.size_mb)))
        data = {
            "download_url": record.download_url,
            "filename": record.original_name,
            "size": size,
            "size_formatted": format_bytes(size),
        }
        return success_envelope(data, "Download URL retrieved successfully", "DOWNLOAD_URL_RETRIEVED")

    @app.delete("/files/{file_id}")
    async def delete_file(file_id: str,
                          user: CurrentUser = Depends(rate_limited_user),
                          coordinator: FileCoordinator = Depends(get_coordinator)):
        summary = await coordinator.delete_file(file_id, user.id)
        return success_envelope(deleted_out(summary), "File deleted successfully", "FILE_DELETED")

    # repositories

    @app.get("/repos")
    async def list_repos(include_inactive: bool = False,
                         user: CurrentUser = Depends(rate_limited_user),
                         store: RecordStore = Depends(get_store)):
        repos = await store.list_repositories(user.id, active_only=not include_inactive)
        return success_envelope({"repositories": [repo_out(r) for r in repos], "total": len(repos)})

    @app.post("/repos/create", status_code=201)
    async def create_repo(user: CurrentUser = Depends(rate_limited_user),
                          coordinator: FileCoordinator = Depends(get_coordinator)):
        repo = await coordinator.create_repository_for_user(user.id)
        return success_envelope({"repository": repo_out(repo)}, "Repository created successfully", "REPO_CREATED")

    @app.get("/repos/usage/stats")
    async def usage_stats(user: CurrentUser = Depends(rate_limited_user),
                          coordinator: FileCoordinator = Depends(get_coordinator)):
        stats = await coordinator.get_user_storage_statistics(user.id)
        return success_envelope({"storage": stats})

    @app.post("/repos/validate")
    async def validate_repos(user: CurrentUser = Depends(rate_limited_user),
                             coordinator: FileCoordinator = Depends(get_coordinator)):
        report = await coordinator.reconcile_all_repositories(user.id)
        return success_envelope({"validation": report}, "Repository validation completed", "REPOS_VALIDATED")

    @app.post("/repos/cleanup")
    async def cleanup_repos(user: CurrentUser = Depends(rate_limited_user),
                            coordinator: FileCoordinator = Depends(get_coordinator)):
        result = await coordinator.cleanup_orphaned_repositories(user.id)
        return success_envelope({"cleanup": result}, "Repository cleanup completed", "REPOS_CLEANED")

    @app.get("/repos/github/rate-limit")
    async def github_rate_limit(user: CurrentUser = Depends(rate_limited_user),
                                coordinator: FileCoordinator = Depends(get_coordinator)):
        rate_limit = await coordinator.provider.get_rate_limit()
        return success_envelope({"rate_limit": rate_limit})

    @app.get("/repos/{repo_id}")
    async def repo_details(repo_id: str,
                           user: CurrentUser = Depends(rate_limited_user),
                           coordinator: FileCoordinator = Depends(get_coordinator)):
        repo, files = await coordinator.get_repository_details(repo_id, user.id)
        data = repo_out(repo)
        data["file_count"] = len(files)
        data["files"] = [file_out(f) for f in files]
        return success_envelope({"repository": data}, "Repository details retrieved successfully",
                                "REPO_DETAILS_RETRIEVED")

    @app.post("/repos/{repo_id}/sync")
    async def sync_repo(repo_id: str,
                        user: CurrentUser = Depends(rate_limited_user),
                        coordinator: FileCoordinator = Depends(get_coordinator)):
        report = await coordinator.reconcile_repository(repo_id, user.id)
        return success_envelope({"sync": report}, "Repository synced successfully", "REPO_SYNCED")

    return app


def build_default_app() -> FastAPI:
    configure_logging()
    return create_app()
