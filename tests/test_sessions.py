"""Tests for upload session management."""

import re

import pytest

from streamdrop.config import UploadConfig
from streamdrop.errors import (
    CombineInProgress,
    PayloadTooLarge,
    UploadClosed,
    UploadExpired,
    ValidationError,
)
from streamdrop.metadata import SessionState
from streamdrop.metadata.models import iso_after
from streamdrop.sessions import UploadSessionManager


@pytest.fixture
def upload_config() -> UploadConfig:
    return UploadConfig(
        max_upload_size=1000,
        max_chunk_size=100,
        allowed_content_types=["video/mp4"],
        key_prefix="uploads",
    )


@pytest.fixture
def manager(session_store, upload_config) -> UploadSessionManager:
    return UploadSessionManager(session_store, upload_config)


class TestBeginUpload:
    async def test_begin_creates_pending_session(self, manager):
        ticket = await manager.begin_upload("Video/MP4")
        assert ticket.content_type == "video/mp4"
        assert ticket.expires_in == 3600
        assert re.fullmatch(r"uploads/\d{13}-[0-9a-f-]{36}", ticket.target_key)

        session = await manager.get_session(ticket.upload_id)
        assert session.state == SessionState.PENDING
        assert session.target_key == ticket.target_key

    async def test_begin_rejects_type(self, manager):
        with pytest.raises(ValidationError, match="Invalid file type"):
            await manager.begin_upload("application/zip")

    async def test_begin_requires_type(self, manager):
        with pytest.raises(ValidationError):
            await manager.begin_upload(None)

    async def test_keys_are_unique(self, manager):
        keys = {manager.new_target_key() for _ in range(50)}
        assert len(keys) == 50


class TestRegisterChunk:
    async def test_first_chunk_creates_session(self, manager):
        session = await manager.register_chunk("k", "u1", 0, 3, "video/mp4")
        assert session.total_parts == 3
        assert (await manager.get_session("u1")).total_parts == 3

    async def test_total_parts_mismatch(self, manager):
        await manager.register_chunk("k", "u1", 0, 3, "video/mp4")
        with pytest.raises(ValidationError, match="does not match"):
            await manager.register_chunk("k", "u1", 1, 4, "video/mp4")

    async def test_key_mismatch(self, manager):
        await manager.register_chunk("k", "u1", 0, 3, "video/mp4")
        with pytest.raises(ValidationError, match="different key"):
            await manager.register_chunk("other", "u1", 1, 3, "video/mp4")

    async def test_index_out_of_range(self, manager):
        with pytest.raises(ValidationError, match="out of range"):
            await manager.register_chunk("k", "u1", 3, 3, "video/mp4")

    async def test_too_many_parts(self, manager):
        with pytest.raises(PayloadTooLarge):
            await manager.register_chunk("k", "u1", 0, 11, "video/mp4")

    async def test_closed_session(self, manager, session_store):
        await manager.register_chunk("k", "u1", 0, 2, "video/mp4")
        await session_store.transition("u1", SessionState.PENDING, SessionState.COMBINING)
        with pytest.raises(UploadClosed):
            await manager.register_chunk("k", "u1", 1, 2, "video/mp4")

    async def test_expired_session(self, manager, session_store):
        session = await manager.ensure_session("k", "u1", "video/mp4")
        session.expires_at = iso_after(-1)
        await session_store.delete_session("u1")
        await session_store.create_session(session)
        with pytest.raises(UploadExpired):
            await manager.register_chunk("k", "u1", 0, 2, "video/mp4")


class TestAbort:
    async def test_abort_pending(self, manager):
        await manager.register_chunk("k", "u1", 0, 2, "video/mp4")
        session = await manager.abort("k", "u1")
        assert session.state == SessionState.FAILED
        assert not await manager.is_pending("u1")

    async def test_abort_unknown(self, manager):
        assert await manager.abort("k", "nope") is None

    async def test_abort_combining(self, manager, session_store):
        await manager.register_chunk("k", "u1", 0, 2, "video/mp4")
        await session_store.transition("u1", SessionState.PENDING, SessionState.COMBINING)
        with pytest.raises(CombineInProgress):
            await manager.abort("k", "u1")

    async def test_abort_complete_is_noop(self, manager, session_store):
        await manager.register_chunk("k", "u1", 0, 1, "video/mp4")
        await session_store.transition("u1", SessionState.PENDING, SessionState.COMBINING)
        await session_store.transition("u1", SessionState.COMBINING, SessionState.COMPLETE)
        session = await manager.abort("k", "u1")
        assert session.state == SessionState.COMPLETE

    async def test_abort_wrong_key(self, manager):
        await manager.register_chunk("k", "u1", 0, 2, "video/mp4")
        with pytest.raises(ValidationError):
            await manager.abort("other", "u1")
