"""SQLite-backed session store for StreamDrop.

Implements the SessionStore protocol using aiosqlite for async access.
All tables use CREATE TABLE IF NOT EXISTS for schema idempotency.
State transitions are single conditional UPDATE statements, so two
concurrent combines for the same upload id cannot both succeed.
"""

import logging
from pathlib import Path

import aiosqlite

from streamdrop.metadata.models import SessionState, UploadSession, now_iso

logger = logging.getLogger(__name__)

_TERMINAL_STATES = (SessionState.COMPLETE.value, SessionState.FAILED.value)


class SQLiteSessionStore:
    """Session store backed by a local SQLite database.

    Attributes:
        db_path: Path to the SQLite database file.
        _db: The aiosqlite connection, set after init_db().
    """

    def __init__(self, db_path: str) -> None:
        """Initialize the SQLite session store.

        Args:
            db_path: Filesystem path to the SQLite database file.
                     Use ':memory:' for an in-memory database (useful in tests).
        """
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def init_db(self) -> None:
        """Open the database and create tables if they do not exist.

        Sets WAL journal mode, NORMAL synchronous, and a 5-second busy
        timeout. Idempotent -- safe to call on every startup (crash-only
        design).
        """
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row

        await self._db.execute("PRAGMA journal_mode = WAL")
        await self._db.execute("PRAGMA synchronous = NORMAL")
        await self._db.execute("PRAGMA busy_timeout = 5000")

        await self._create_tables()
        logger.info("SQLite session store initialized at %s", self.db_path)

    async def _create_tables(self) -> None:
        """Create all tables and indexes if they do not already exist."""
        assert self._db is not None

        await self._db.executescript("""
            CREATE TABLE IF NOT EXISTS upload_sessions (
                upload_id     TEXT PRIMARY KEY,
                target_key    TEXT NOT NULL,
                content_type  TEXT NOT NULL DEFAULT 'application/octet-stream',
                total_parts   INTEGER,
                state         TEXT NOT NULL DEFAULT 'pending',
                created_at    TEXT NOT NULL,
                updated_at    TEXT NOT NULL,
                expires_at    TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_sessions_target_key
                ON upload_sessions(target_key);
            CREATE INDEX IF NOT EXISTS idx_sessions_state_expires
                ON upload_sessions(state, expires_at);

            CREATE TABLE IF NOT EXISTS schema_version (
                version    INTEGER PRIMARY KEY,
                applied_at TEXT NOT NULL
            );
        """)

        async with self._db.execute(
            "SELECT version FROM schema_version WHERE version = 1"
        ) as cursor:
            if await cursor.fetchone() is None:
                await self._db.execute(
                    "INSERT INTO schema_version (version, applied_at) VALUES (1, ?)",
                    (now_iso(),),
                )

        await self._db.commit()

    async def close(self) -> None:
        """Close the database connection."""
        if self._db is not None:
            await self._db.close()
            self._db = None

    # -- Session records -------------------------------------------------------

    async def create_session(self, session: UploadSession) -> bool:
        assert self._db is not None
        now = now_iso()
        cursor = await self._db.execute(
            """INSERT OR IGNORE INTO upload_sessions
               (upload_id, target_key, content_type, total_parts, state,
                created_at, updated_at, expires_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                session.upload_id,
                session.target_key,
                session.content_type,
                session.total_parts,
                session.state.value,
                session.created_at or now,
                session.updated_at or now,
                session.expires_at,
            ),
        )
        await self._db.commit()
        return cursor.rowcount == 1

    async def get_session(self, upload_id: str) -> UploadSession | None:
        assert self._db is not None
        async with self._db.execute(
            "SELECT * FROM upload_sessions WHERE upload_id = ?", (upload_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return UploadSession.from_row(row) if row is not None else None

    async def delete_session(self, upload_id: str) -> None:
        assert self._db is not None
        await self._db.execute("DELETE FROM upload_sessions WHERE upload_id = ?", (upload_id,))
        await self._db.commit()

    async def find_by_target_key(self, target_key: str) -> list[UploadSession]:
        assert self._db is not None
        async with self._db.execute(
            "SELECT * FROM upload_sessions WHERE target_key = ? ORDER BY created_at",
            (target_key,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [UploadSession.from_row(row) for row in rows]

    # -- Compare-and-set updates -----------------------------------------------

    async def set_total_parts(self, upload_id: str, total_parts: int) -> bool:
        assert self._db is not None
        cursor = await self._db.execute(
            """UPDATE upload_sessions SET total_parts = ?, updated_at = ?
               WHERE upload_id = ? AND total_parts IS NULL""",
            (total_parts, now_iso(), upload_id),
        )
        await self._db.commit()
        return cursor.rowcount == 1

    async def transition(
        self,
        upload_id: str,
        from_state: SessionState,
        to_state: SessionState,
    ) -> bool:
        assert self._db is not None
        cursor = await self._db.execute(
            """UPDATE upload_sessions SET state = ?, updated_at = ?
               WHERE upload_id = ? AND state = ?""",
            (to_state.value, now_iso(), upload_id, from_state.value),
        )
        await self._db.commit()
        return cursor.rowcount == 1

    # -- Queries ---------------------------------------------------------------

    async def list_sessions(
        self, state: SessionState | None = None, limit: int = 1000
    ) -> list[UploadSession]:
        assert self._db is not None
        if state is None:
            sql = "SELECT * FROM upload_sessions ORDER BY created_at LIMIT ?"
            params: tuple = (limit,)
        else:
            sql = "SELECT * FROM upload_sessions WHERE state = ? ORDER BY created_at LIMIT ?"
            params = (state.value, limit)
        async with self._db.execute(sql, params) as cursor:
            rows = await cursor.fetchall()
        return [UploadSession.from_row(row) for row in rows]

    async def list_expired(self, now: str) -> list[UploadSession]:
        assert self._db is not None
        async with self._db.execute(
            """SELECT * FROM upload_sessions
               WHERE state = ? AND expires_at <= ?
               ORDER BY expires_at""",
            (SessionState.PENDING.value, now),
        ) as cursor:
            rows = await cursor.fetchall()
        return [UploadSession.from_row(row) for row in rows]

    async def list_terminal_before(self, cutoff: str) -> list[UploadSession]:
        assert self._db is not None
        async with self._db.execute(
            """SELECT * FROM upload_sessions
               WHERE state IN (?, ?) AND updated_at < ?
               ORDER BY updated_at""",
            (*_TERMINAL_STATES, cutoff),
        ) as cursor:
            rows = await cursor.fetchall()
        return [UploadSession.from_row(row) for row in rows]

    async def count_by_state(self) -> dict[str, int]:
        assert self._db is not None
        counts = {state.value: 0 for state in SessionState}
        async with self._db.execute(
            "SELECT state, COUNT(*) AS n FROM upload_sessions GROUP BY state"
        ) as cursor:
            async for row in cursor:
                counts[row["state"]] = row["n"]
        return counts
