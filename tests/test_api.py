from dataclasses import replace

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from freedrive.coordinator import FileCoordinator
from freedrive.errors import RemoteProviderError
from freedrive.helpers import MB, generate_repo_name
from freedrive.main import create_app, get_coordinator
from tests.conftest import USER_ID


def make_token(secret="test-secret", sub=USER_ID, email="alice@example.com", audience="authenticated"):
    claims = {"sub": sub, "email": email, "aud": audience}
    return jwt.encode(claims, secret, algorithm="HS256")


def build_client(settings, store, provider):
    app = create_app(settings, store)
    coordinator = FileCoordinator.build(store, provider, settings)
    app.dependency_overrides[get_coordinator] = lambda: coordinator
    return TestClient(app)


@pytest.fixture
def client(settings, store, provider):
    return build_client(settings, store, provider)


@pytest.fixture
def auth():
    return {"Authorization": f"Bearer {make_token()}"}


def upload(client, auth, name="report.pdf", content=b"%PDF-1.4 test", content_type="application/pdf"):
    return client.post("/files/upload", headers=auth, files={"file": (name, content, content_type)})


def test_ping(client):
    assert client.get("/ping").json() == {"status": "backend ok"}


class TestAuthentication:
    def test_missing_token(self, client):
        response = client.get("/files")
        assert response.status_code == 401

    def test_wrong_secret(self, client):
        response = client.get("/files", headers={"Authorization": f"Bearer {make_token(secret='other')}"})
        assert response.status_code == 401

    def test_wrong_audience(self, client):
        token = make_token(audience="anon")
        assert client.get("/files", headers={"Authorization": f"Bearer {token}"}).status_code == 401

    def test_token_without_subject(self, client):
        token = jwt.encode({"aud": "authenticated"}, "test-secret", algorithm="HS256")
        assert client.get("/files", headers={"Authorization": f"Bearer {token}"}).status_code == 401


class TestFiles:
    def test_upload_get_list_delete(self, client, auth):
        response = upload(client, auth)
        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        assert body["code"] == "FILE_UPLOADED"
        data = body["data"]
        assert data["file"]["original_name"] == "report.pdf"
        assert data["repository"]["name"] == generate_repo_name(USER_ID, 1)
        assert data["warnings"] == []
        file_id = data["file"]["id"]

        fetched = client.get(f"/files/{file_id}", headers=auth).json()["data"]
        assert fetched["id"] == file_id
        assert fetched["content_type"] == "application/pdf"

        listing = client.get("/files", headers=auth).json()["data"]
        assert listing["total"] == 1
        assert listing["has_more"] is False

        deleted = client.delete(f"/files/{file_id}", headers=auth)
        assert deleted.status_code == 200
        assert deleted.json()["data"]["id"] == file_id
        assert client.get(f"/files/{file_id}", headers=auth).status_code == 404

    def test_invalid_type_envelope(self, client, auth):
        response = upload(client, auth, name="tool.exe", content_type="application/x-msdownload")
        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["kind"] == "validation"
        assert body["code"] == "INVALID_FILE_TYPE"
        assert "error_id" in body

    def test_unknown_file(self, client, auth):
        response = client.get("/files/does-not-exist", headers=auth)
        assert response.status_code == 404
        assert response.json()["code"] == "FILE_NOT_FOUND"

    def test_other_user_cannot_delete(self, client, auth):
        file_id = upload(client, auth).json()["data"]["file"]["id"]
        other = {"Authorization": f"Bearer {make_token(sub='someone-else', email='eve@example.com')}"}
        assert client.delete(f"/files/{file_id}", headers=other).status_code == 404
        assert client.get(f"/files/{file_id}", headers=auth).status_code == 200

    def test_upload_multiple(self, client, auth):
        files = [
            ("files", ("a.txt", b"alpha", "text/plain")),
            ("files", ("b.exe", b"MZ", "application/x-msdownload")),
        ]
        response = client.post("/files/upload-multiple", headers=auth, files=files)
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["success"] is False
        assert data["summary"] == {"total": 2, "successful": 1, "failed": 1}
        assert data["failed"][0]["item"] == "b.exe"

    def test_batch_delete(self, client, auth):
        file_id = upload(client, auth).json()["data"]["file"]["id"]
        response = client.request("DELETE", "/files/batch", headers=auth,
                                  json={"file_ids": [file_id, "missing"]})
        data = response.json()["data"]
        assert data["summary"] == {"total": 2, "successful": 1, "failed": 1}

    def test_download_redirects(self, client, auth):
        file_id = upload(client, auth).json()["data"]["file"]["id"]
        download_url = client.get(f"/files/{file_id}", headers=auth).json()["data"]["download_url"]

        response = client.get(f"/files/{file_id}/download", headers=auth, follow_redirects=False)
        assert response.status_code == 302
        assert response.headers["location"] == download_url

    def test_download_url_as_json(self, client, auth):
        file_id = upload(client, auth, content=b"x" * 2048).json()["data"]["file"]["id"]
        response = client.get(f"/files/{file_id}/download", params={"url": "true"}, headers=auth)
        assert response.status_code == 200
        body = response.json()
        assert body["code"] == "DOWNLOAD_URL_RETRIEVED"
        assert body["data"]["filename"] == "report.pdf"
        assert body["data"]["size"] == 2048
        assert body["data"]["size_formatted"] == "2 KB"
        assert body["data"]["download_url"].startswith("https://github.com/octo/")

    def test_download_unknown_file(self, client, auth):
        response = client.get("/files/missing/download", headers=auth, follow_redirects=False)
        assert response.status_code == 404
        assert response.json()["code"] == "FILE_NOT_FOUND"

    def test_file_statistics(self, client, auth):
        upload(client, auth, content=b"x" * 1024)
        upload(client, auth, name="notes.txt", content=b"x" * 512, content_type="text/plain")
        response = client.get("/files/stats/summary", headers=auth)
        assert response.status_code == 200
        body = response.json()
        assert body["code"] == "FILE_STATS_RETRIEVED"
        stats = body["data"]["statistics"]
        assert stats["total_files"] == 2
        assert stats["total_size"] == 1536
        assert stats["file_types"] == {"pdf": 1, "txt": 1}

    def test_oversized_upload_rejected(self, settings, store, provider, auth):
        client = build_client(replace(settings, max_file_size_mb=1), store, provider)
        response = upload(client, auth, content=b"x" * (MB + 1))
        assert response.status_code == 413
        assert response.json()["code"] == "FILE_TOO_LARGE"
        assert provider.upload_calls == []

    def test_oversized_file_in_batch(self, settings, store, provider, auth):
        client = build_client(replace(settings, max_file_size_mb=1), store, provider)
        files = [
            ("files", ("big.pdf", b"x" * (MB + 1), "application/pdf")),
            ("files", ("small.txt", b"alpha", "text/plain")),
        ]
        data = client.post("/files/upload-multiple", headers=auth, files=files).json()["data"]
        assert data["summary"] == {"total": 2, "successful": 1, "failed": 1}
        assert data["failed"][0]["code"] == "FILE_TOO_LARGE"


class TestRepositories:
    def test_list_and_stats(self, client, auth):
        upload(client, auth)
        repos = client.get("/repos", headers=auth).json()["data"]
        assert repos["total"] == 1
        assert repos["repositories"][0]["name"] == generate_repo_name(USER_ID, 1)

        stats = client.get("/repos/usage/stats", headers=auth).json()["data"]["storage"]
        assert stats["totals"]["total_files"] == 1

    def test_create_until_limit(self, settings, store, provider, auth):
        client = build_client(replace(settings, max_repositories=1), store, provider)
        assert client.post("/repos/create", headers=auth).status_code == 201
        response = client.post("/repos/create", headers=auth)
        assert response.status_code == 400
        assert response.json()["code"] == "REPO_LIMIT_REACHED"

    def test_sync_and_validate(self, client, auth):
        repo_id = client.post("/repos/create", headers=auth).json()["data"]["repository"]["id"]

        sync = client.post(f"/repos/{repo_id}/sync", headers=auth)
        assert sync.status_code == 200
        assert sync.json()["data"]["sync"]["updated"] is False

        validation = client.post("/repos/validate", headers=auth).json()["data"]["validation"]
        assert validation["invalid"] == []
        assert len(validation["valid"]) == 1

    def test_sync_unknown_repository(self, client, auth):
        response = client.post("/repos/unknown/sync", headers=auth)
        assert response.status_code == 404
        assert response.json()["code"] == "REPO_NOT_FOUND"

    def test_cleanup(self, client, auth, provider):
        name = client.post("/repos/create", headers=auth).json()["data"]["repository"]["name"]
        del provider.repositories[name]
        cleanup = client.post("/repos/cleanup", headers=auth).json()["data"]["cleanup"]
        assert cleanup["cleaned"] == [name]

    def test_provider_rate_limit(self, client, auth):
        data = client.get("/repos/github/rate-limit", headers=auth).json()["data"]
        assert data["rate_limit"]["remaining"] == 4990

    def test_repository_details(self, client, auth):
        file_id = upload(client, auth).json()["data"]["file"]["id"]
        repo_id = client.get("/repos", headers=auth).json()["data"]["repositories"][0]["id"]

        response = client.get(f"/repos/{repo_id}", headers=auth)
        assert response.status_code == 200
        body = response.json()
        assert body["code"] == "REPO_DETAILS_RETRIEVED"
        repo = body["data"]["repository"]
        assert repo["id"] == repo_id
        assert repo["file_count"] == 1
        assert [f["id"] for f in repo["files"]] == [file_id]

    def test_repository_details_unknown(self, client, auth):
        response = client.get("/repos/unknown", headers=auth)
        assert response.status_code == 404
        assert response.json()["code"] == "REPO_NOT_FOUND"

    def test_provider_failure_names_operation(self, client, auth, provider, caplog):
        provider.fail_rate_limit = RemoteProviderError(
            "GitHub rate limit check failed", "rate limit check", status_code=502, remote_status=503,
        )
        with caplog.at_level("ERROR", logger="freedrive.main"):
            response = client.get("/repos/github/rate-limit", headers=auth)
        assert response.status_code == 502
        body = response.json()
        assert body["kind"] == "remote_provider"
        assert body["operation"] == "rate limit check"
        assert "during rate limit check" in caplog.text


def test_request_rate_limit(settings, store, provider, auth):
    client = build_client(replace(settings, rate_limit_requests=2), store, provider)
    assert client.get("/files", headers=auth).status_code == 200
    assert client.get("/files", headers=auth).status_code == 200
    response = client.get("/files", headers=auth)
    assert response.status_code == 429
    assert response.json()["kind"] == "rate_limited"
