"""In-memory session store for StreamDrop.

Useful for testing and ephemeral deployments. Data is lost on restart.
"""

import asyncio
from dataclasses import replace

from streamdrop.metadata.models import SessionState, UploadSession, now_iso


class MemorySessionStore:
    """In-memory session store using a Python dict.

    Every mutation runs under one asyncio.Lock so compare-and-set updates
    are atomic across coroutines. Records are copied in and out so callers
    never hold a reference to the stored value.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, UploadSession] = {}
        self._lock = asyncio.Lock()

    async def init_db(self) -> None:
        pass

    async def close(self) -> None:
        self._sessions.clear()

    async def create_session(self, session: UploadSession) -> bool:
        async with self._lock:
            if session.upload_id in self._sessions:
                return False
            now = now_iso()
            self._sessions[session.upload_id] = replace(
                session,
                created_at=session.created_at or now,
                updated_at=session.updated_at or now,
            )
            return True

    async def get_session(self, upload_id: str) -> UploadSession | None:
        session = self._sessions.get(upload_id)
        return replace(session) if session is not None else None

    async def delete_session(self, upload_id: str) -> None:
        async with self._lock:
            self._sessions.pop(upload_id, None)

    async def find_by_target_key(self, target_key: str) -> list[UploadSession]:
        found = [replace(s) for s in self._sessions.values() if s.target_key == target_key]
        return sorted(found, key=lambda s: s.created_at)

    async def set_total_parts(self, upload_id: str, total_parts: int) -> bool:
        async with self._lock:
            session = self._sessions.get(upload_id)
            if session is None or session.total_parts is not None:
                return False
            session.total_parts = total_parts
            session.updated_at = now_iso()
            return True

    async def transition(
        self,
        upload_id: str,
        from_state: SessionState,
        to_state: SessionState,
    ) -> bool:
        async with self._lock:
            session = self._sessions.get(upload_id)
            if session is None or session.state != from_state:
                return False
            session.state = to_state
            session.updated_at = now_iso()
            return True

    async def list_sessions(
        self, state: SessionState | None = None, limit: int = 1000
    ) -> list[UploadSession]:
        sessions = [
            replace(s) for s in self._sessions.values() if state is None or s.state == state
        ]
        sessions.sort(key=lambda s: s.created_at)
        return sessions[:limit]

    async def list_expired(self, now: str) -> list[UploadSession]:
        expired = [
            replace(s)
            for s in self._sessions.values()
            if s.state == SessionState.PENDING and s.expires_at <= now
        ]
        return sorted(expired, key=lambda s: s.expires_at)

    async def list_terminal_before(self, cutoff: str) -> list[UploadSession]:
        old = [
            replace(s)
            for s in self._sessions.values()
            if s.state.is_terminal and s.updated_at < cutoff
        ]
        return sorted(old, key=lambda s: s.updated_at)

    async def count_by_state(self) -> dict[str, int]:
        counts = {state.value: 0 for state in SessionState}
        for session in self._sessions.values():
            counts[session.state.value] += 1
        return counts
