"""Abstract session store protocol for StreamDrop."""

from typing import Protocol

from streamdrop.metadata.models import SessionState, UploadSession


class SessionStore(Protocol):
    """Protocol defining the upload session store interface.

    All session backends (SQLite, memory) must implement this interface.
    State changes go through ``transition``, a compare-and-set that is
    atomic with respect to every other caller of the same store, which is
    what guarantees at most one combine per upload id.
    """

    async def init_db(self) -> None:
        """Initialize the database schema.

        Creates tables and indices if they do not already exist.
        Must be idempotent (safe to call on every startup).
        """
        ...

    async def close(self) -> None:
        """Close the database connection and release resources."""
        ...

    # -- Session records -------------------------------------------------------

    async def create_session(self, session: UploadSession) -> bool:
        """Insert a session record unless one with the same id exists.

        Args:
            session: The session to insert.

        Returns:
            True if the record was inserted, False if the id was taken.
        """
        ...

    async def get_session(self, upload_id: str) -> UploadSession | None:
        """Return the session for ``upload_id``, or None if absent."""
        ...

    async def delete_session(self, upload_id: str) -> None:
        """Delete a session record. Missing ids are ignored."""
        ...

    async def find_by_target_key(self, target_key: str) -> list[UploadSession]:
        """Return every session that targets ``target_key``."""
        ...

    # -- Compare-and-set updates -----------------------------------------------

    async def set_total_parts(self, upload_id: str, total_parts: int) -> bool:
        """Fix ``total_parts`` if it is still unset.

        Returns:
            True if this call set the value, False if it was already set
            (or the session does not exist).
        """
        ...

    async def transition(
        self,
        upload_id: str,
        from_state: SessionState,
        to_state: SessionState,
    ) -> bool:
        """Atomically move a session from ``from_state`` to ``to_state``.

        Args:
            upload_id: The session id.
            from_state: The state the session must currently be in.
            to_state: The new state.

        Returns:
            True if the session was in ``from_state`` and now is in
            ``to_state``, False otherwise.
        """
        ...

    # -- Queries ---------------------------------------------------------------

    async def list_sessions(
        self, state: SessionState | None = None, limit: int = 1000
    ) -> list[UploadSession]:
        """List sessions ordered by creation time, optionally by state."""
        ...

    async def list_expired(self, now: str) -> list[UploadSession]:
        """Return pending sessions whose ``expires_at`` is at or before ``now``."""
        ...

    async def list_terminal_before(self, cutoff: str) -> list[UploadSession]:
        """Return complete/failed sessions last updated before ``cutoff``."""
        ...

    async def count_by_state(self) -> dict[str, int]:
        """Return the number of sessions in each state."""
        ...
