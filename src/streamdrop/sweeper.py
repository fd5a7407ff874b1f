"""Background reclamation of abandoned uploads.

Every sweep:
    - fails pending sessions past their expiry and deletes their parts,
    - deletes parts whose session is complete, failed, or gone,
    - purges complete/failed session rows older than the retention period.

Crash-only design: the sweeper keeps no state between runs, so a sweep
interrupted by a crash is simply redone by the next one.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass

from streamdrop import metrics
from streamdrop.chunks import ChunkStore
from streamdrop.config import UploadConfig
from streamdrop.metadata import SessionState, SessionStore, UploadSession
from streamdrop.metadata.models import iso_after, now_iso

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    """Counts of what one sweep reclaimed."""

    expired_sessions: int = 0
    orphan_chunks: int = 0
    purged_sessions: int = 0
    failed_deletes: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class UploadSweeper:
    """Reclaims expired sessions and leftover parts.

    Attributes:
        store: The session store.
        chunks: The chunk store holding parts.
        config: Upload lifetimes and sweep interval.
    """

    def __init__(self, store: SessionStore, chunks: ChunkStore, config: UploadConfig) -> None:
        self.store = store
        self.chunks = chunks
        self.config = config
        self._task: asyncio.Task | None = None

    async def sweep(self) -> SweepReport:
        """Run one full reclamation pass."""
        report = SweepReport()

        # -- Expired pending sessions -----------------------------------------
        for session in await self.store.list_expired(now_iso()):
            if not await self.store.transition(
                session.upload_id, SessionState.PENDING, SessionState.FAILED
            ):
                continue
            report.expired_sessions += 1
            report.failed_deletes += await self.chunks.delete_chunks(
                session.target_key, session.upload_id, session.total_parts
            )
            logger.info(
                "Expired upload %s",
                session.upload_id,
                extra={"upload_id": session.upload_id, "key": session.target_key},
            )

        # -- Parts that outlived their session --------------------------------
        known: dict[str, UploadSession | None] = {}
        for key in await self.chunks.list_chunk_keys():
            parsed = self.chunks.parse_chunk_key(key)
            if parsed is None:
                continue
            _target_key, upload_id, _index = parsed
            if upload_id not in known:
                known[upload_id] = await self.store.get_session(upload_id)
            session = known[upload_id]
            if session is not None and not session.state.is_terminal:
                continue
            try:
                await self.chunks.storage.delete(key)
                report.orphan_chunks += 1
            except Exception:
                report.failed_deletes += 1
                logger.warning("Failed to delete leftover part %s", key, exc_info=True)

        # -- Old terminal session rows ----------------------------------------
        cutoff = iso_after(-self.config.session_retention_seconds)
        for session in await self.store.list_terminal_before(cutoff):
            await self.store.delete_session(session.upload_id)
            report.purged_sessions += 1

        if metrics.chunks_reclaimed_total is not None and report.orphan_chunks:
            metrics.chunks_reclaimed_total.inc(report.orphan_chunks)
        if metrics.upload_sessions is not None:
            for state, count in (await self.store.count_by_state()).items():
                metrics.upload_sessions.labels(state=state).set(count)

        if report.expired_sessions or report.orphan_chunks or report.purged_sessions:
            logger.info(
                "Sweep reclaimed %d expired sessions, %d leftover parts, %d old sessions",
                report.expired_sessions,
                report.orphan_chunks,
                report.purged_sessions,
            )
        return report

    def start(self) -> None:
        """Start the periodic sweep task (no-op if the interval is 0)."""
        if self._task is None and self.config.sweep_interval_seconds > 0:
            self._task = asyncio.create_task(self._periodic_sweep())

    async def stop(self) -> None:
        """Cancel the periodic sweep task and wait for it to finish."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _periodic_sweep(self) -> None:
        """Background task that sweeps every ``sweep_interval_seconds``.

        Runs indefinitely until cancelled. Catches all exceptions to avoid
        crashing the background task.
        """
        while True:
            try:
                await asyncio.sleep(self.config.sweep_interval_seconds)
                await self.sweep()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Periodic sweep failed")
