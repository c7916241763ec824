"""Pytest configuration and fixtures for the storage backend tests."""

from datetime import datetime, timezone

import pytest
import pytest_asyncio

from freedrive.config import Settings
from freedrive.coordinator import FileCoordinator
from freedrive.database import build_engine, build_session_factory, init_db
from freedrive.errors import RemoteProviderError
from freedrive.helpers import generate_repo_name
from freedrive.records import AssetUsage, IncomingFile, RemoteRepository, UploadedObject
from freedrive.store import RecordStore

USER_ID = "5f0c3c1e-2b7d-4c1a-9a77-0d6c1e8b9f10"
OTHER_USER_ID = "a9d2b7c4-1e3f-4b6a-8c5d-7e9f0a1b2c3d"


class FakeProvider:
    """In-memory stand-in for the GitHub client."""

    def __init__(self):
        self.repositories = {}
        self.assets = {}
        self.taken_names = set()
        self.conflict_on_create = set()
        self.fail_create = None
        self.fail_upload = None
        self.fail_delete = None
        self.fail_rate_limit = None
        self.fail_usage = {}
        self.usage_override = {}
        self.create_calls = []
        self.upload_calls = []
        self.delete_calls = []
        self._next_id = 1000

    def _new_id(self):
        self._next_id += 1
        return str(self._next_id)

    async def repository_exists(self, name):
        return name in self.repositories or name in self.taken_names

    async def create_repository_with_retry(self, name, description):
        self.create_calls.append(name)
        if self.fail_create is not None:
            raise self.fail_create
        if name in self.conflict_on_create:
            raise RemoteProviderError(
                "GitHub API validation error", "repository creation", status_code=422,
                details="Repository creation failed.; name already exists on this account",
                remote_status=422,
            )
        repo = RemoteRepository(provider_id=self._new_id(), name=name)
        self.repositories[name] = repo
        return repo

    async def upload_file(self, repo_name, filename, content, content_type):
        self.upload_calls.append((repo_name, filename))
        if self.fail_upload is not None:
            raise self.fail_upload
        asset_id = self._new_id()
        self.assets[asset_id] = (repo_name, len(content))
        return UploadedObject(
            release_id=self._new_id(),
            asset_id=asset_id,
            filename=filename,
            size=len(content),
            download_url=f"https://github.com/octo/{repo_name}/releases/download/t/{filename}",
        )

    async def delete_asset(self, repo_name, asset_id):
        self.delete_calls.append((repo_name, asset_id))
        if self.fail_delete is not None:
            raise self.fail_delete
        # unknown assets count as already deleted
        self.assets.pop(asset_id, None)

    async def get_aggregate_asset_size(self, repo_name):
        if repo_name in self.fail_usage:
            raise self.fail_usage[repo_name]
        if repo_name in self.usage_override:
            return AssetUsage(asset_count=1, total_bytes=self.usage_override[repo_name])
        sizes = [size for name, size in self.assets.values() if name == repo_name]
        return AssetUsage(asset_count=len(sizes), total_bytes=sum(sizes))

    async def get_rate_limit(self):
        if self.fail_rate_limit is not None:
            raise self.fail_rate_limit
        return {"limit": 5000, "remaining": 4990, "used": 10, "reset": datetime.now(timezone.utc)}


def make_file(name="report.pdf", size=1024, content_type="application/pdf"):
    return IncomingFile(filename=name, content=b"x" * size, content_type=content_type)


async def seed_repository(store, provider, user_id, sequence, size_mb=0.0, max_size_mb=10.0):
    name = generate_repo_name(user_id, sequence)
    remote = RemoteRepository(provider_id=f"gh-{user_id[:4]}-{sequence}", name=name)
    provider.repositories[name] = remote
    repo = await store.create_repository(user_id, name, remote.provider_id, sequence, max_size_mb)
    if size_mb:
        repo = await store.update_repository_size(repo.id, size_mb)
    return repo


@pytest.fixture
def settings():
    return Settings(
        github_token="test-token",
        github_username="octo",
        jwt_secret="test-secret",
        max_repo_size_mb=10,
        repo_create_delay_ms=0,
        batch_upload_delay_ms=0,
        rate_limit_requests=1000,
    )


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'freedrive.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine):
    return RecordStore(build_session_factory(engine))


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def coordinator(store, provider, settings):
    return FileCoordinator.build(store, provider, settings)


@pytest_asyncio.fixture
async def user_id(store):
    await store.ensure_user(USER_ID, "alice@example.com")
    return USER_ID


@pytest_asyncio.fixture
async def other_user_id(store):
    await store.ensure_user(OTHER_USER_ID, "bob@example.com")
    return OTHER_USER_ID
