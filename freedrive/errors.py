"""Application errors and the uniform response envelope.

Every error raised by the storage core is an ``AppError`` carrying a
machine-readable ``code``, an HTTP ``status_code`` and a ``kind`` from
``ErrorKind``. The HTTP layer turns them into ``error_envelope`` dicts.
"""

import secrets
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    ALLOCATION = "allocation"
    REMOTE_PROVIDER = "remote_provider"
    PERSISTENCE = "persistence"
    RATE_LIMITED = "rate_limited"
    INTERNAL = "internal"


class ErrorCode:
    VALIDATION_ERROR = "VALIDATION_ERROR"
    FILE_TOO_LARGE = "FILE_TOO_LARGE"
    INVALID_FILE_TYPE = "INVALID_FILE_TYPE"
    FILE_NOT_FOUND = "FILE_NOT_FOUND"
    FILE_UPLOAD_FAILED = "FILE_UPLOAD_FAILED"
    FILE_DELETE_FAILED = "FILE_DELETE_FAILED"
    REPO_NOT_FOUND = "REPO_NOT_FOUND"
    REPO_CREATE_FAILED = "REPO_CREATE_FAILED"
    REPO_LIMIT_REACHED = "REPO_LIMIT_REACHED"
    GITHUB_API_ERROR = "GITHUB_API_ERROR"
    GITHUB_RATE_LIMIT = "GITHUB_RATE_LIMIT"
    GITHUB_UNAUTHORIZED = "GITHUB_UNAUTHORIZED"
    DATABASE_ERROR = "DATABASE_ERROR"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class AppError(Exception):
    kind = ErrorKind.INTERNAL
    default_code = ErrorCode.INTERNAL_ERROR
    default_status = 500

    def __init__(self, message: str, code: str = None, status_code: int = None, details: Any = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.status_code = status_code or self.default_status
        self.details = details

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class ValidationError(AppError):
    kind = ErrorKind.VALIDATION
    default_code = ErrorCode.VALIDATION_ERROR
    default_status = 400


class NotFoundError(AppError):
    kind = ErrorKind.NOT_FOUND
    default_code = ErrorCode.FILE_NOT_FOUND
    default_status = 404


class AllocationError(AppError):
    kind = ErrorKind.ALLOCATION
    default_code = ErrorCode.REPO_CREATE_FAILED
    default_status = 500


class PersistenceError(AppError):
    kind = ErrorKind.PERSISTENCE
    default_code = ErrorCode.DATABASE_ERROR
    default_status = 500


class RateLimitError(AppError):
    kind = ErrorKind.RATE_LIMITED
    default_code = ErrorCode.RATE_LIMIT_EXCEEDED
    default_status = 429


class RemoteProviderError(AppError):
    kind = ErrorKind.REMOTE_PROVIDER
    default_code = ErrorCode.GITHUB_API_ERROR
    default_status = 502

    def __init__(self, message: str, operation: str, code: str = None, status_code: int = None,
                 details: Any = None, remote_status: Optional[int] = None):
        super().__init__(message, code=code, status_code=status_code, details=details)
        self.operation = operation
        self.remote_status = remote_status

    @property
    def is_not_found(self) -> bool:
        return self.remote_status == 404

    @property
    def is_name_conflict(self) -> bool:
        # the provider answers 422 when a repository name is taken
        return self.remote_status == 422 and "already exists" in str(self.details or "").lower()


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def success_envelope(data: Any = None, message: str = "", code: str = "") -> dict:
    body = {"success": True, "timestamp": _timestamp()}
    if data is not None:
        body["data"] = data
    if message:
        body["message"] = message
    if code:
        body["code"] = code
    return body


def error_envelope(err: AppError) -> dict:
    body = {
        "success": False,
        "kind": err.kind.value,
        "code": err.code,
        "message": err.message,
        "timestamp": _timestamp(),
        "error_id": secrets.token_hex(8),
    }
    if err.details is not None:
        body["details"] = err.details
    operation = getattr(err, "operation", None)
    if operation:
        body["operation"] = operation
    return body
