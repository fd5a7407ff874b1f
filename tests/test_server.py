"""Tests for the StreamDrop FastAPI server: middleware, health, auth, routing."""

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from streamdrop.config import (
    AuthConfig,
    CorsConfig,
    MetadataConfig,
    ObservabilityConfig,
    StorageConfig,
    StreamDropConfig,
    UploadConfig,
)
from streamdrop.identity import IdentityValidator
from streamdrop.server import attach_services, create_app, create_storage_backend
from streamdrop.storage.local import LocalStorageBackend
from streamdrop.storage.memory import MemoryStorageBackend


class TestHealthCheck:
    async def test_health_reports_checks(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["checks"]["metadata"]["status"] == "ok"
        assert data["checks"]["storage"]["status"] == "ok"
        assert data["checks"]["metadata"]["sessions"]["pending"] == 0

    async def test_healthz(self, client):
        resp = await client.get("/healthz")
        assert resp.status_code == 200
        assert resp.content == b""

    async def test_readyz(self, client):
        assert (await client.get("/readyz")).status_code == 200

    async def test_health_degraded_when_storage_missing(self, client, storage, tmp_path):
        storage.root = tmp_path / "gone"
        resp = await client.get("/health")
        assert resp.status_code == 503
        assert resp.json()["status"] == "degraded"
        assert (await client.get("/readyz")).status_code == 503


class TestCommonHeaders:
    async def test_request_id_is_hex(self, client):
        resp = await client.get("/health")
        req_id = resp.headers["x-request-id"]
        assert len(req_id) == 16
        int(req_id, 16)
        assert resp.headers["server"] == "StreamDrop"
        assert "date" in resp.headers

    async def test_headers_on_error_response(self, client):
        resp = await client.get("/missing/object.mp4")
        assert resp.status_code == 404
        assert "x-request-id" in resp.headers
        assert resp.headers["access-control-allow-origin"] == "*"


class TestCors:
    async def test_preflight(self, client):
        resp = await client.options(
            "/any/key.mp4",
            headers={
                "Origin": "https://app.example.com",
                "Access-Control-Request-Method": "PUT",
            },
        )
        assert resp.status_code == 204
        assert resp.headers["access-control-allow-origin"] == "*"
        assert "PUT" in resp.headers["access-control-allow-methods"]
        assert resp.headers["access-control-max-age"] == "86400"
        assert resp.headers["access-control-allow-private-network"] == "true"
        assert "Content-Range" in resp.headers["access-control-expose-headers"]
        assert resp.headers["cross-origin-resource-policy"] == "cross-origin"
        assert "cross-origin-embedder-policy" not in resp.headers

    async def test_cors_on_object_get(self, client):
        await client.put("/a.mp4", content=b"x", headers={"Content-Type": "video/mp4"})
        resp = await client.get("/a.mp4", headers={"Origin": "https://elsewhere.test"})
        assert resp.headers["access-control-allow-origin"] == "*"


def _isolated_app(tmp_path, **sections) -> tuple:
    """Build a separate app (metrics off) with fresh stores."""
    config = StreamDropConfig(
        uploads=UploadConfig(allowed_content_types=["video/mp4"]),
        metadata=MetadataConfig(engine="memory"),
        storage=StorageConfig(backend="local", local_root=str(tmp_path / "objects")),
        observability=ObservabilityConfig(metrics=False),
        **sections,
    )
    return create_app(config), config


async def _attach(app, tmp_path):
    from streamdrop.metadata.memory import MemorySessionStore

    storage = LocalStorageBackend(str(tmp_path / "objects"))
    await storage.init()
    store = MemorySessionStore()
    await store.init_db()
    attach_services(app, storage, store)


class TestCorsAllowList:
    async def test_echoes_allowed_origin_only(self, tmp_path):
        app, _ = _isolated_app(
            tmp_path,
            auth=AuthConfig(enabled=False),
            cors=CorsConfig(
                allowed_origins=["https://app.example.com"], cross_origin_isolation=True
            ),
        )
        await _attach(app, tmp_path)
        async with AsyncClient(
            transport=ASGITransport(app=app), base_url="http://testserver"
        ) as client:
            ok = await client.get("/health", headers={"Origin": "https://app.example.com"})
            assert ok.headers["access-control-allow-origin"] == "https://app.example.com"
            assert ok.headers["vary"] == "Origin"
            assert ok.headers["cross-origin-embedder-policy"] == "require-corp"
            assert ok.headers["cross-origin-opener-policy"] == "same-origin"

            denied = await client.get("/health", headers={"Origin": "https://evil.test"})
            assert "access-control-allow-origin" not in denied.headers


@pytest.fixture
async def auth_client(tmp_path):
    """Client for an app whose identity service accepts only 'good-token'."""

    def identity(request: httpx.Request) -> httpx.Response:
        if request.headers.get("authorization") == "Bearer good-token":
            return httpx.Response(200, json={"id": "user-1"})
        return httpx.Response(401)

    app, config = _isolated_app(
        tmp_path,
        auth=AuthConfig(
            enabled=True, identity_url="https://id.example.com/me", protect_writes=True
        ),
    )
    await _attach(app, tmp_path)
    app.state.identity = IdentityValidator(
        config.auth, client=httpx.AsyncClient(transport=httpx.MockTransport(identity))
    )
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as ac:
        yield ac


class TestAuth:
    async def test_upload_url_requires_token(self, auth_client):
        resp = await auth_client.post("/getUploadUrl", json={"fileType": "video/mp4"})
        assert resp.status_code == 401
        assert resp.json()["code"] == "Unauthorized"
        assert resp.headers["access-control-allow-origin"] == "*"

    async def test_upload_url_rejects_bad_token(self, auth_client):
        resp = await auth_client.post(
            "/getUploadUrl",
            json={"fileType": "video/mp4"},
            headers={"Authorization": "Bearer bad-token"},
        )
        assert resp.status_code == 401

    async def test_upload_url_with_good_token(self, auth_client):
        resp = await auth_client.post(
            "/getUploadUrl",
            json={"fileType": "video/mp4"},
            headers={"Authorization": "Bearer good-token"},
        )
        assert resp.status_code == 200

    async def test_protected_writes(self, auth_client):
        resp = await auth_client.put(
            "/a.mp4", content=b"x", headers={"Content-Type": "video/mp4"}
        )
        assert resp.status_code == 401

        resp = await auth_client.put(
            "/a.mp4",
            content=b"x",
            headers={"Content-Type": "video/mp4", "Authorization": "Bearer good-token"},
        )
        assert resp.status_code == 200

    async def test_reads_and_preflight_are_open(self, auth_client):
        assert (await auth_client.get("/a.mp4")).status_code == 404
        assert (await auth_client.options("/a.mp4")).status_code == 204
        assert (await auth_client.get("/health")).status_code == 200


class TestRouting:
    async def test_post_to_object_not_allowed(self, client):
        resp = await client.post("/a.mp4")
        assert resp.status_code == 405
        assert resp.json()["code"] == "MethodNotAllowed"

    async def test_combine_get_not_allowed(self, client):
        assert (await client.get("/combine")).status_code == 405

    async def test_metrics_endpoint(self, client):
        await client.put("/m.mp4", content=b"abc", headers={"Content-Type": "video/mp4"})
        resp = await client.get("/metrics")
        assert resp.status_code == 200
        assert "streamdrop_upload_operations_total" in resp.text


class TestStorageFactory:
    def test_local(self, tmp_path):
        config = StreamDropConfig(storage=StorageConfig(local_root=str(tmp_path)))
        assert isinstance(create_storage_backend(config), LocalStorageBackend)

    def test_memory(self):
        config = StreamDropConfig(storage=StorageConfig(backend="memory"))
        assert isinstance(create_storage_backend(config), MemoryStorageBackend)

    def test_aws_requires_bucket(self):
        config = StreamDropConfig(storage=StorageConfig(backend="aws"))
        with pytest.raises(ValueError):
            create_storage_backend(config)

    def test_unknown(self):
        config = StreamDropConfig(storage=StorageConfig(backend="ftp"))
        with pytest.raises(ValueError):
            create_storage_backend(config)


class TestLifespan:
    async def test_lifespan_wires_services(self, tmp_path):
        app, _ = _isolated_app(tmp_path, auth=AuthConfig(enabled=False))

        async with app.router.lifespan_context(app):
            assert app.state.sweeper is not None
            assert app.state.assembly is not None
            async with AsyncClient(
                transport=ASGITransport(app=app), base_url="http://testserver"
            ) as client:
                resp = await client.put(
                    "/l.mp4", content=b"abc", headers={"Content-Type": "video/mp4"}
                )
                assert resp.status_code == 200
