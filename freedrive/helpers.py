import asyncio
import logging
import math
import os
import re
import secrets
import time
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

MB = 1024 * 1024


def bytes_to_mb(size_bytes: float) -> float:
    return size_bytes / MB


def mb_to_bytes(size_mb: float) -> float:
    return size_mb * MB


def format_bytes(size_bytes: float, decimals: int = 2) -> str:
    if not size_bytes:
        return "0 Bytes"
    sizes = ["Bytes", "KB", "MB", "GB", "TB"]
    i = 0
    while size_bytes >= 1024 ** (i + 1) and i < len(sizes) - 1:
        i += 1
    value = round(size_bytes / math.pow(1024, i), max(decimals, 0))
    # 1.50 -> 1.5, 2.00 -> 2
    return f"{value:g} {sizes[i]}"


def random_string(length: int = 32) -> str:
    return secrets.token_hex((length + 1) // 2)[:length]


def sanitize_filename(filename: str) -> str:
    name = re.sub(r'[<>:"/\\|?*]', "_", filename or "")
    name = re.sub(r"\s+", "_", name)
    name = re.sub(r"_{2,}", "_", name)
    name = name.strip("_")
    return name[:255]


def file_extension(filename: str) -> str:
    return os.path.splitext(filename)[1].lstrip(".").lower()


def generate_unique_filename(original_name: str) -> str:
    """Storage filename: sanitized base, nanosecond timestamp and 16 hex chars of randomness.

    The original extension is preserved, so ``report.final.pdf`` becomes
    something like ``report_final_1739876543210123456_9f86d081884c7d65.pdf``.
    """
    sanitized = sanitize_filename(original_name)
    base, ext = os.path.splitext(sanitized)
    base = re.sub(r"[^a-zA-Z0-9]", "_", base) or "file"
    unique = f"{base}_{time.time_ns()}_{secrets.token_hex(8)}"
    return f"{unique}{ext}" if ext else unique


def generate_repo_name(user_id: str, sequence_number: int = 1) -> str:
    clean_user_id = re.sub(r"[^a-zA-Z0-9]", "", str(user_id))[:20]
    return f"user_{clean_user_id}_bucket_{sequence_number}"


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    attempts: int = 3,
    base_delay: float = 1.0,
    should_retry: Optional[Callable[[Exception], bool]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await ``fn`` up to ``attempts`` times, doubling the delay after each failure.

    Errors for which ``should_retry`` returns False are raised immediately.
    """
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as e:
            attempt += 1
            if attempt >= attempts or (should_retry is not None and not should_retry(e)):
                raise
            delay = base_delay * (2 ** (attempt - 1))
            logger.warning("Attempt %d/%d failed (%s), retrying in %.2fs", attempt, attempts, e, delay)
            await sleep(delay)
