from __future__ import annotations

import hashlib

import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from unishare.api.deps import get_upload_coordinator
from unishare.core.config import settings
from unishare.core.errors import BackendUnavailable
from unishare.db.session import get_db_session
from unishare.main import app
from unishare.utils.security import create_access_token


def auth(user: str = "u1", roles: tuple[str, ...] = ()) -> dict[str, str]:
    token, _ = create_access_token(user, roles)
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def client(coordinator, session_factory):
    """HTTP client against the app, wired to the test database and coordinator."""

    async def override_db_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_db_session
    app.dependency_overrides[get_upload_coordinator] = lambda: coordinator
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


async def initialize(client, *, size=4, chunks=2, user="u1", **extra):
    payload = {"filename": "lab-report.pdf", "size": size, "chunks_total": chunks, **extra}
    response = await client.post("/api/uploads/initialize", json=payload, headers=auth(user))
    assert response.status_code == 201, response.text
    return response.json()["session"]["session_token"]


class TestAuthentication:
    async def test_requires_token(self, client):
        response = await client.post("/api/uploads/initialize", json={"filename": "a.txt", "size": 1})
        assert response.status_code == 401

    async def test_rejects_garbage_token(self, client):
        response = await client.get("/api/uploads/x", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    async def test_rejects_unusable_subject(self, client):
        response = await client.post(
            "/api/uploads/initialize", json={"filename": "a.txt", "size": 1}, headers=auth("jane doe+1")
        )
        assert response.status_code == 401


class TestChunkedUpload:
    async def test_initialize(self, client):
        response = await client.post(
            "/api/uploads/initialize",
            json={"filename": "lab-report.pdf", "size": 10, "chunks_total": 2, "owner_kind": "group_cover"},
            headers=auth(),
        )
        assert response.status_code == 201
        body = response.json()
        assert body["is_duplicate"] is False
        assert body["session"]["status"] == "pending"
        assert body["session"]["owner_kind"] == "group_cover"
        assert body["session"]["storage_backend"] == "local"

    async def test_full_flow(self, client):
        token = await initialize(client)

        first = await client.put(f"/api/uploads/{token}/chunks/1", content=b"cd", headers=auth())
        assert first.status_code == 200
        assert first.json()["received"] == 1
        assert first.json()["is_complete"] is False

        status_response = await client.get(f"/api/uploads/{token}", headers=auth())
        assert status_response.json()["progress"] == 50.0

        last = await client.put(f"/api/uploads/{token}/chunks/0?chunks_total=2", content=b"ab", headers=auth())
        body = last.json()
        assert body["is_complete"] is True
        assert body["session"]["status"] == "completed"
        assert body["file_url"].startswith("http://files.test/storage/uploads/u1/")

        content = await client.get(f"/api/uploads/{token}/content", headers=auth())
        assert content.content == b"abcd"
        assert 'filename="lab-report.pdf"' in content.headers["content-disposition"]

    async def test_empty_chunk(self, client):
        token = await initialize(client)
        response = await client.put(f"/api/uploads/{token}/chunks/0", content=b"", headers=auth())
        assert response.status_code == 400

    async def test_chunk_too_large(self, client, monkeypatch):
        monkeypatch.setattr(settings, "max_chunk_size", 4)
        token = await initialize(client)
        response = await client.put(f"/api/uploads/{token}/chunks/0", content=b"12345", headers=auth())
        assert response.status_code == 413

    async def test_checksum_header(self, client):
        token = await initialize(client)
        bad = await client.put(
            f"/api/uploads/{token}/chunks/0", content=b"ab", headers={**auth(), "X-Chunk-Checksum": "00"}
        )
        assert bad.status_code == 422
        good = await client.put(
            f"/api/uploads/{token}/chunks/0",
            content=b"ab",
            headers={**auth(), "X-Chunk-Checksum": hashlib.sha256(b"ab").hexdigest()},
        )
        assert good.status_code == 200

    async def test_chunk_index_out_of_range(self, client):
        token = await initialize(client)
        response = await client.put(f"/api/uploads/{token}/chunks/5", content=b"ab", headers=auth())
        assert response.status_code == 400
        assert response.json()["retryable"] is False

    async def test_too_many_chunks(self, client):
        response = await client.post(
            "/api/uploads/initialize",
            json={"filename": "huge.iso", "size": 10, "chunks_total": settings.max_chunks_total + 1},
            headers=auth(),
        )
        assert response.status_code == 422

    async def test_resume(self, client):
        token = await initialize(client, size=3, chunks=3)
        await client.put(f"/api/uploads/{token}/chunks/2", content=b"c", headers=auth())
        response = await client.post(f"/api/uploads/{token}/resume", headers=auth())
        body = response.json()
        assert body["can_resume"] is True
        assert body["received"] == [2]
        assert body["missing"] == [0, 1]

    async def test_attach_owner(self, client):
        token = await initialize(client, owner_kind="message_attachment")
        response = await client.patch(f"/api/uploads/{token}/owner", json={"owner_id": 99}, headers=auth())
        assert response.status_code == 200
        assert response.json()["owner_id"] == 99


class TestSingleUpload:
    async def test_upload_and_dedup(self, client):
        files = {"file": ("notes.txt", b"hello world", "text/plain")}
        first = await client.post(
            "/api/uploads/single", files=files, data={"owner_kind": "post_attachment"}, headers=auth()
        )
        assert first.status_code == 201, first.text
        assert first.json()["is_complete"] is True
        assert first.json()["session"]["mime_type"] == "text/plain"

        second = await client.post("/api/uploads/single", files=files, headers=auth("u2"))
        assert second.status_code == 201
        assert second.json()["session"]["session_token"] == first.json()["session"]["session_token"]

    async def test_empty_file(self, client):
        response = await client.post("/api/uploads/single", files={"file": ("a.txt", b"", "text/plain")}, headers=auth())
        assert response.status_code == 400


class TestAccessRules:
    async def test_other_user_cannot_see_session(self, client):
        token = await initialize(client)
        response = await client.get(f"/api/uploads/{token}", headers=auth("u2"))
        assert response.status_code == 404

    async def test_moderator_can_see_session(self, client):
        token = await initialize(client)
        response = await client.get(f"/api/uploads/{token}", headers=auth("u2", ("moderator",)))
        assert response.status_code == 200

    async def test_only_owner_or_admin_can_cancel(self, client):
        token = await initialize(client)
        denied = await client.delete(f"/api/uploads/{token}", headers=auth("u2"))
        assert denied.status_code == 403
        allowed = await client.delete(f"/api/uploads/{token}", headers=auth("u3", ("admin",)))
        assert allowed.status_code == 204
        gone = await client.get(f"/api/uploads/{token}", headers=auth())
        assert gone.status_code == 404


class TestErrorMapping:
    async def test_unknown_session(self, client):
        response = await client.get("/api/uploads/does-not-exist", headers=auth())
        assert response.status_code == 404
        assert response.json() == {"detail": "Upload session not found", "retryable": False}

    async def test_insufficient_space(self, client, object_store):
        object_store.capacity = 1
        response = await client.post(
            "/api/uploads/initialize",
            json={"filename": "video.mp4", "size": 100, "storage_backend": "minio"},
            headers=auth(),
        )
        assert response.status_code == 507
        assert response.json()["retryable"] is False

    async def test_backend_outage_is_retryable(self, client, object_store):
        object_store.failures.append(BackendUnavailable("minio down"))
        response = await client.post(
            "/api/uploads/initialize",
            json={"filename": "a.bin", "size": 2, "storage_backend": "minio"},
            headers=auth(),
        )
        token = response.json()["session"]["session_token"]
        failed = await client.put(f"/api/uploads/{token}/chunks/0", content=b"ab", headers=auth())
        assert failed.status_code == 503
        assert failed.json() == {"detail": "minio down", "retryable": True}

        retried = await client.put(f"/api/uploads/{token}/chunks/0", content=b"ab", headers=auth())
        assert retried.json()["is_complete"] is True

    async def test_unconfigured_backend(self, client):
        response = await client.post(
            "/api/uploads/initialize",
            json={"filename": "a.bin", "size": 2, "storage_backend": "google_drive"},
            headers=auth(),
        )
        assert response.status_code == 500
