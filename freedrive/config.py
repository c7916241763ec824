import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Optional, Tuple

from dotenv import load_dotenv

ALLOWED_MIME_TYPES = frozenset([
    # images
    "image/jpeg", "image/png", "image/gif", "image/webp", "image/svg+xml",
    # documents
    "application/pdf", "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/vnd.ms-powerpoint",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    # text
    "text/plain", "text/csv", "text/html", "text/css", "text/javascript",
    # archives
    "application/zip", "application/x-rar-compressed", "application/x-7z-compressed",
    # video
    "video/mp4", "video/webm", "video/ogg", "video/avi", "video/mov",
    # audio
    "audio/mpeg", "audio/wav", "audio/ogg", "audio/webm",
    # other
    "application/json", "application/xml",
])

ROTATION_RATIO = 0.9
SINGLE_SYNC_THRESHOLD_MB = 1.0
BULK_SYNC_THRESHOLD_MB = 10.0


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./freedrive.db"

    github_token: str = ""
    github_username: str = ""
    github_api_url: str = "https://api.github.com"

    # secret the auth provider signs its access tokens with
    jwt_secret: str = ""
    jwt_algorithm: str = "HS256"
    jwt_audience: Optional[str] = "authenticated"

    allow_origins: Tuple[str, ...] = ("http://localhost:3000", "http://127.0.0.1:3000")

    max_file_size_mb: int = 2048
    max_repo_size_mb: int = 800
    files_per_repo: int = 1000
    max_repositories: int = 50

    rotation_ratio: float = ROTATION_RATIO
    single_sync_threshold_mb: float = SINGLE_SYNC_THRESHOLD_MB
    bulk_sync_threshold_mb: float = BULK_SYNC_THRESHOLD_MB

    repo_create_attempts: int = 3
    repo_create_delay_ms: int = 1000
    max_name_attempts: int = 20
    size_update_attempts: int = 5
    request_timeout_seconds: float = 30.0

    batch_upload_delay_ms: int = 500
    max_upload_batch: int = 10
    max_delete_batch: int = 50

    rate_limit_requests: int = 50
    rate_limit_window_seconds: float = 60.0

    allowed_mime_types: frozenset = field(default=ALLOWED_MIME_TYPES)

    @property
    def max_file_size_bytes(self) -> int:
        return self.max_file_size_mb * 1024 * 1024

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()

        origins = os.getenv("ALLOW_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000")
        origins = tuple(o.strip() for o in origins.split(",") if o.strip())

        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            github_token=os.getenv("GITHUB_TOKEN", ""),
            github_username=os.getenv("GITHUB_USERNAME", ""),
            github_api_url=os.getenv("GITHUB_API_URL", cls.github_api_url),
            jwt_secret=os.getenv("SUPABASE_JWT_SECRET", ""),
            jwt_audience=os.getenv("JWT_AUDIENCE", "authenticated") or None,
            allow_origins=origins,
            max_file_size_mb=_int_env("MAX_FILE_SIZE_MB", cls.max_file_size_mb),
            max_repo_size_mb=_int_env("MAX_REPO_SIZE_MB", cls.max_repo_size_mb),
            files_per_repo=_int_env("FILES_PER_REPO", cls.files_per_repo),
            max_repositories=_int_env("MAX_REPOSITORIES", cls.max_repositories),
            repo_create_attempts=_int_env("REPO_CREATE_ATTEMPTS", cls.repo_create_attempts),
            repo_create_delay_ms=_int_env("REPO_CREATE_DELAY_MS", cls.repo_create_delay_ms),
            max_name_attempts=_int_env("MAX_NAME_ATTEMPTS", cls.max_name_attempts),
            size_update_attempts=_int_env("SIZE_UPDATE_ATTEMPTS", cls.size_update_attempts),
            request_timeout_seconds=_float_env("REQUEST_TIMEOUT_SECONDS", cls.request_timeout_seconds),
            batch_upload_delay_ms=_int_env("BATCH_UPLOAD_DELAY_MS", cls.batch_upload_delay_ms),
            max_upload_batch=_int_env("MAX_UPLOAD_BATCH", cls.max_upload_batch),
            max_delete_batch=_int_env("MAX_DELETE_BATCH", cls.max_delete_batch),
            rate_limit_requests=_int_env("RATE_LIMIT_REQUESTS", cls.rate_limit_requests),
            rate_limit_window_seconds=_float_env("RATE_LIMIT_WINDOW_SECONDS", cls.rate_limit_window_seconds),
        )


@lru_cache()
def get_settings() -> Settings:
    return Settings.from_env()
