"""Shared pytest fixtures for StreamDrop tests.

A single FastAPI app is created per test session to avoid duplicate
Prometheus metric registration errors (the instrumentator registers
gauges in the global prometheus_client registry).

The session store and object store are attached to the app manually for
every test, so each test starts from empty stores without running the
lifespan.
"""

import pytest
from httpx import ASGITransport, AsyncClient

from streamdrop.config import (
    AuthConfig,
    MetadataConfig,
    ServerConfig,
    StorageConfig,
    StreamDropConfig,
    UploadConfig,
)
from streamdrop.metadata.memory import MemorySessionStore
from streamdrop.server import attach_services, create_app
from streamdrop.storage.local import LocalStorageBackend


def make_config(**overrides) -> StreamDropConfig:
    """Build a small-limits test config. Keyword args replace whole sections."""
    sections = {
        "server": ServerConfig(host="127.0.0.1", port=9787),
        "uploads": UploadConfig(
            max_upload_size=64 * 1024,
            max_chunk_size=16 * 1024,
            allowed_content_types=["video/mp4", "image/png", "text/plain"],
            sweep_interval_seconds=0,
        ),
        "auth": AuthConfig(enabled=False),
        "metadata": MetadataConfig(engine="memory"),
        "storage": StorageConfig(backend="local", local_root="/tmp/streamdrop-test"),
    }
    sections.update(overrides)
    return StreamDropConfig(**sections)


@pytest.fixture(scope="session")
def config() -> StreamDropConfig:
    """Create a test config with auth disabled.

    test_server.py builds its own apps with auth enabled.
    """
    return make_config()


@pytest.fixture(scope="session")
def app(config: StreamDropConfig):
    """Create a single test FastAPI application for the whole session."""
    return create_app(config)


@pytest.fixture
async def storage(tmp_path):
    backend = LocalStorageBackend(str(tmp_path / "objects"))
    await backend.init()
    yield backend
    await backend.close()


@pytest.fixture
async def session_store():
    store = MemorySessionStore()
    await store.init_db()
    yield store
    await store.close()


@pytest.fixture
async def client(app, storage, session_store) -> AsyncClient:
    """Create an async test client for the StreamDrop app.

    Fresh stores are attached to app.state before each test (the lifespan
    context doesn't auto-run with ASGITransport).
    """
    attach_services(app, storage, session_store)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac
