"""Tests for the upload session stores (SQLite and memory).

Every test runs against both backends through the parametrized ``store``
fixture.
"""

import asyncio

import pytest

from streamdrop.config import MetadataConfig
from streamdrop.metadata import SessionState, UploadSession, create_session_store
from streamdrop.metadata.memory import MemorySessionStore
from streamdrop.metadata.models import iso_after, now_iso
from streamdrop.metadata.sqlite import SQLiteSessionStore


@pytest.fixture(params=["sqlite", "memory"])
async def store(request):
    if request.param == "sqlite":
        s = SQLiteSessionStore(":memory:")
    else:
        s = MemorySessionStore()
    await s.init_db()
    yield s
    await s.close()


def _session(upload_id="u1", key="uploads/a.mp4", **kwargs) -> UploadSession:
    now = now_iso()
    defaults = dict(
        content_type="video/mp4",
        created_at=now,
        updated_at=now,
        expires_at=iso_after(3600),
    )
    defaults.update(kwargs)
    return UploadSession(upload_id=upload_id, target_key=key, **defaults)


class TestFactory:
    def test_sqlite(self):
        store = create_session_store(MetadataConfig(engine="sqlite", sqlite_path=":memory:"))
        assert isinstance(store, SQLiteSessionStore)

    def test_memory(self):
        assert isinstance(create_session_store(MetadataConfig(engine="memory")), MemorySessionStore)

    def test_unknown(self):
        with pytest.raises(ValueError):
            create_session_store(MetadataConfig(engine="redis"))


class TestRecords:
    async def test_create_and_get(self, store):
        assert await store.create_session(_session()) is True
        got = await store.get_session("u1")
        assert got.target_key == "uploads/a.mp4"
        assert got.state == SessionState.PENDING
        assert got.total_parts is None

    async def test_create_duplicate(self, store):
        await store.create_session(_session())
        assert await store.create_session(_session(key="other")) is False
        assert (await store.get_session("u1")).target_key == "uploads/a.mp4"

    async def test_get_missing(self, store):
        assert await store.get_session("nope") is None

    async def test_delete(self, store):
        await store.create_session(_session())
        await store.delete_session("u1")
        await store.delete_session("u1")
        assert await store.get_session("u1") is None

    async def test_find_by_target_key(self, store):
        await store.create_session(_session("u1", "k"))
        await store.create_session(_session("u2", "k"))
        await store.create_session(_session("u3", "other"))
        found = await store.find_by_target_key("k")
        assert {s.upload_id for s in found} == {"u1", "u2"}


class TestCompareAndSet:
    async def test_set_total_parts_once(self, store):
        await store.create_session(_session())
        assert await store.set_total_parts("u1", 3) is True
        assert await store.set_total_parts("u1", 4) is False
        assert (await store.get_session("u1")).total_parts == 3

    async def test_transition(self, store):
        await store.create_session(_session())
        assert await store.transition("u1", SessionState.PENDING, SessionState.COMBINING)
        assert not await store.transition("u1", SessionState.PENDING, SessionState.COMBINING)
        assert (await store.get_session("u1")).state == SessionState.COMBINING

    async def test_transition_missing(self, store):
        assert not await store.transition("nope", SessionState.PENDING, SessionState.FAILED)

    async def test_concurrent_transition_has_one_winner(self, store):
        await store.create_session(_session())
        results = await asyncio.gather(
            *[
                store.transition("u1", SessionState.PENDING, SessionState.COMBINING)
                for _ in range(10)
            ]
        )
        assert results.count(True) == 1


class TestQueries:
    async def test_list_sessions_by_state(self, store):
        await store.create_session(_session("u1"))
        await store.create_session(_session("u2"))
        await store.transition("u2", SessionState.PENDING, SessionState.FAILED)

        assert len(await store.list_sessions()) == 2
        failed = await store.list_sessions(SessionState.FAILED)
        assert [s.upload_id for s in failed] == ["u2"]
        assert len(await store.list_sessions(limit=1)) == 1

    async def test_list_expired(self, store):
        await store.create_session(_session("old", expires_at=iso_after(-10)))
        await store.create_session(_session("new"))
        await store.create_session(_session("done", expires_at=iso_after(-10)))
        await store.transition("done", SessionState.PENDING, SessionState.FAILED)

        expired = await store.list_expired(now_iso())
        assert [s.upload_id for s in expired] == ["old"]

    async def test_list_terminal_before(self, store):
        await store.create_session(_session("u1"))
        await store.create_session(_session("u2"))
        await store.transition("u1", SessionState.PENDING, SessionState.FAILED)

        assert await store.list_terminal_before(iso_after(-60)) == []
        old = await store.list_terminal_before(iso_after(60))
        assert [s.upload_id for s in old] == ["u1"]

    async def test_count_by_state(self, store):
        await store.create_session(_session("u1"))
        await store.create_session(_session("u2"))
        await store.transition("u2", SessionState.PENDING, SessionState.COMBINING)

        counts = await store.count_by_state()
        assert counts == {"pending": 1, "combining": 1, "complete": 0, "failed": 0}


class TestSQLitePersistence:
    async def test_survives_reopen(self, tmp_path):
        path = str(tmp_path / "db" / "sessions.db")
        first = SQLiteSessionStore(path)
        await first.init_db()
        await first.create_session(_session())
        await first.set_total_parts("u1", 2)
        await first.close()

        second = SQLiteSessionStore(path)
        await second.init_db()
        got = await second.get_session("u1")
        await second.close()
        assert got.total_parts == 2
