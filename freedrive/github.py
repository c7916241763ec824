"""GitHub as a storage provider: repositories are buckets, release assets are files."""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Protocol

import httpx

from freedrive.config import Settings
from freedrive.errors import ErrorCode, RemoteProviderError
from freedrive.helpers import random_string, retry_with_backoff
from freedrive.records import Asset, AssetUsage, Release, RemoteRepository, UploadedObject

logger = logging.getLogger(__name__)

PER_PAGE = 100


class StorageProvider(Protocol):
    async def repository_exists(self, name: str) -> bool: ...

    async def create_repository_with_retry(self, name: str, description: str) -> RemoteRepository: ...

    async def upload_file(self, repo_name: str, filename: str, content: bytes,
                          content_type: str) -> UploadedObject: ...

    async def delete_asset(self, repo_name: str, asset_id: str) -> None: ...

    async def get_aggregate_asset_size(self, repo_name: str) -> AssetUsage: ...


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text
    if not isinstance(body, dict):
        return str(body)
    messages = [body.get("message") or ""]
    for err in body.get("errors") or []:
        if isinstance(err, dict) and err.get("message"):
            messages.append(err["message"])
        elif isinstance(err, str):
            messages.append(err)
    return "; ".join(m for m in messages if m)


def classify_error(response: httpx.Response, operation: str) -> RemoteProviderError:
    status = response.status_code
    detail = _error_detail(response)

    if status == 401:
        return RemoteProviderError(
            "GitHub authentication failed", operation,
            code=ErrorCode.GITHUB_UNAUTHORIZED, status_code=401,
            details="Invalid or expired GitHub token", remote_status=status,
        )

    if status == 429 or (status == 403 and response.headers.get("x-ratelimit-remaining") == "0"):
        reset = response.headers.get("x-ratelimit-reset")
        reset_at = datetime.fromtimestamp(int(reset), tz=timezone.utc).isoformat() if reset else "unknown"
        return RemoteProviderError(
            "GitHub API rate limit exceeded", operation,
            code=ErrorCode.GITHUB_RATE_LIMIT, status_code=429,
            details=f"Rate limit resets at {reset_at}", remote_status=status,
        )

    if status == 403:
        return RemoteProviderError(
            "GitHub API access forbidden", operation,
            code=ErrorCode.GITHUB_UNAUTHORIZED, status_code=403,
            details=detail or "Insufficient permissions or repository access denied", remote_status=status,
        )

    if status == 404:
        return RemoteProviderError(
            "GitHub resource not found", operation,
            status_code=404, details=f"Repository or resource not found for {operation}", remote_status=status,
        )

    if status == 422:
        return RemoteProviderError(
            "GitHub API validation error", operation,
            status_code=422, details=detail or "Invalid request data", remote_status=status,
        )

    return RemoteProviderError(
        f"GitHub {operation} failed", operation,
        status_code=502 if status >= 500 else status, details=detail, remote_status=status,
    )


def _should_retry_creation(error: Exception) -> bool:
    if not isinstance(error, RemoteProviderError):
        return False
    # bad credentials and taken names do not get better by waiting
    return error.remote_status not in (401, 422)


def _json_body(response: httpx.Response, operation: str):
    try:
        return response.json()
    except ValueError as e:
        raise RemoteProviderError(
            f"GitHub {operation} returned an unreadable response", operation,
            status_code=502, details=str(e), remote_status=response.status_code,
        ) from e


class GitHubClient:
    def __init__(self, token: str, username: str, base_url: str = "https://api.github.com",
                 timeout: float = 30.0, create_attempts: int = 3, create_delay: float = 1.0,
                 transport: httpx.AsyncBaseTransport = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        if not token or not username:
            raise ValueError("GitHub configuration is missing. Set GITHUB_TOKEN and GITHUB_USERNAME.")
        self.username = username
        self.create_attempts = create_attempts
        self.create_delay = create_delay
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
                "User-Agent": "freedrive-storage",
            },
        )

    @classmethod
    def from_settings(cls, settings: Settings, transport: httpx.AsyncBaseTransport = None) -> "GitHubClient":
        return cls(
            settings.github_token,
            settings.github_username,
            base_url=settings.github_api_url,
            timeout=settings.request_timeout_seconds,
            create_attempts=settings.repo_create_attempts,
            create_delay=settings.repo_create_delay_ms / 1000,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, operation: str, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise RemoteProviderError(
                f"GitHub {operation} timed out", operation, status_code=504, details=str(e)
            ) from e
        except httpx.RequestError as e:
            raise RemoteProviderError(
                f"GitHub {operation} failed", operation, status_code=502, details=str(e)
            ) from e

        if response.is_error:
            error = classify_error(response, operation)
            logger.debug("GitHub %s error %s: %s", operation, response.status_code, error.details)
            raise error
        return response

    # repositories

    async def repository_exists(self, name: str) -> bool:
        try:
            await self._request("repository existence check", "GET", f"/repos/{self.username}/{name}")
        except RemoteProviderError as e:
            if e.is_not_found:
                return False
            raise
        return True

    async def create_repository(self, name: str, description: str = "FreeDrive storage bucket") -> RemoteRepository:
        response = await self._request("repository creation", "POST", "/user/repos", json={
            "name": name,
            "description": description,
            "private": False,
            "has_issues": False,
            "has_projects": False,
            "has_wiki": False,
            "auto_init": True,
            "license_template": "mit",
        })
        data = _json_body(response, "repository creation")
        logger.info("Created GitHub repository %s", data["name"])
        return RemoteRepository(provider_id=str(data["id"]), name=data["name"], url=data.get("html_url", ""))

    async def create_repository_with_retry(self, name: str, description: str) -> RemoteRepository:
        return await retry_with_backoff(
            lambda: self.create_repository(name, description),
            attempts=self.create_attempts,
            base_delay=self.create_delay,
            should_retry=_should_retry_creation,
            sleep=self._sleep,
        )

    # releases and assets

    async def create_release(self, repo_name: str, tag_name: str,
                             release_name: str = "File Storage Release") -> Release:
        response = await self._request(
            "release creation", "POST", f"/repos/{self.username}/{repo_name}/releases",
            json={
                "tag_name": tag_name,
                "name": release_name,
                "body": "Automated release for file storage",
                "draft": False,
                "prerelease": False,
            },
        )
        data = _json_body(response, "release creation")
        return Release(release_id=str(data["id"]), tag_name=data["tag_name"], upload_url=data["upload_url"])

    async def upload_asset(self, upload_url: str, filename: str, content: bytes, content_type: str) -> Asset:
        # upload_url is a URI template: .../assets{?name,label}
        url = upload_url.split("{", 1)[0]
        response = await self._request(
            "asset upload", "POST", url,
            params={"name": filename, "label": filename},
            headers={"Content-Type": content_type},
            content=content,
        )
        data = _json_body(response, "asset upload")
        return Asset(
            asset_id=str(data["id"]),
            name=data["name"],
            size=data.get("size", len(content)),
            download_url=data["browser_download_url"],
        )

    async def upload_file(self, repo_name: str, filename: str, content: bytes,
                          content_type: str) -> UploadedObject:
        """Create a uniquely tagged release in ``repo_name`` and attach ``content`` to it."""
        tag_name = f"upload-{int(time.time() * 1000)}-{random_string(8)}"
        release_name = f"File Upload {datetime.now(timezone.utc).isoformat()}"

        release = await self.create_release(repo_name, tag_name, release_name)
        asset = await self.upload_asset(release.upload_url, filename, content, content_type)
        return UploadedObject(
            release_id=release.release_id,
            asset_id=asset.asset_id,
            filename=asset.name,
            size=asset.size,
            download_url=asset.download_url,
        )

    async def delete_asset(self, repo_name: str, asset_id: str) -> None:
        try:
            await self._request(
                "asset deletion", "DELETE",
                f"/repos/{self.username}/{repo_name}/releases/assets/{asset_id}",
            )
        except RemoteProviderError as e:
            if e.is_not_found:
                logger.info("Asset %s already deleted or not found", asset_id)
                return
            raise
        logger.info("Deleted asset %s from %s", asset_id, repo_name)

    async def get_aggregate_asset_size(self, repo_name: str) -> AssetUsage:
        total_bytes = 0
        asset_count = 0
        release_count = 0
        page = 1
        while True:
            response = await self._request(
                "repository stats retrieval", "GET", f"/repos/{self.username}/{repo_name}/releases",
                params={"per_page": PER_PAGE, "page": page},
            )
            releases = _json_body(response, "repository stats retrieval")
            for release in releases:
                release_count += 1
                for asset in release.get("assets") or []:
                    asset_count += 1
                    total_bytes += asset.get("size", 0)
            if len(releases) < PER_PAGE:
                break
            page += 1
        return AssetUsage(asset_count=asset_count, total_bytes=total_bytes, release_count=release_count)

    async def get_rate_limit(self) -> dict:
        response = await self._request("rate limit check", "GET", "/rate_limit")
        core = _json_body(response, "rate limit check")["resources"]["core"]
        return {
            "limit": core["limit"],
            "remaining": core["remaining"],
            "used": core.get("used", core["limit"] - core["remaining"]),
            "reset": datetime.fromtimestamp(core["reset"], tz=timezone.utc),
        }
