"""Reassembly of chunked uploads into a single published object.

Combine protocol:
    1. Compare-and-set the session ``pending -> combining``. Only the
       caller that wins the swap continues; every other caller gets a
       CombineResult describing the state it found, with no side effects.
    2. Head every part ``0 .. total_parts - 1``; the first absent index
       aborts with MissingChunk.
    3. Stream the parts in index order into one ``put_stream`` call, so the
       object appears at the target key atomically and memory does not grow
       with the object size.
    4. Delete the parts and move the session to ``complete``.

Any failure after step 1 deletes the parts, deletes the object if this
attempt published it, moves the session to ``failed``, and re-raises the
original error. Cleanup failures are logged and never replace it.
"""

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from enum import Enum

from streamdrop import metrics
from streamdrop.chunks import ChunkStore
from streamdrop.config import UploadConfig
from streamdrop.errors import MissingChunk, PayloadTooLarge, SizeMismatch, UploadExpired
from streamdrop.metadata import SessionState
from streamdrop.metadata.models import now_iso
from streamdrop.sessions import UploadSessionManager
from streamdrop.storage.backend import ObjectStore

logger = logging.getLogger(__name__)


class CombineOutcome(str, Enum):
    """Result of a combine request."""

    COMBINED = "combined"
    ALREADY_COMPLETE = "already_complete"
    IN_PROGRESS = "in_progress"
    ALREADY_FAILED = "already_failed"

    @property
    def http_status(self) -> int:
        if self in (CombineOutcome.COMBINED, CombineOutcome.ALREADY_COMPLETE):
            return 200
        return 409


_OUTCOME_MESSAGES = {
    CombineOutcome.COMBINED: "Chunks combined successfully",
    CombineOutcome.ALREADY_COMPLETE: "Upload already combined",
    CombineOutcome.IN_PROGRESS: "A combine for this upload is already in progress",
    CombineOutcome.ALREADY_FAILED: "Upload has failed and cannot be combined",
}


@dataclass
class CombineResult:
    """What a combine request achieved.

    Attributes:
        outcome: Which of the combine outcomes applied.
        target_key: The object key.
        upload_id: The upload id.
        size: Size of the published object, when known.
        etag: Unquoted ETag of the published object, when known.
    """

    outcome: CombineOutcome
    target_key: str
    upload_id: str
    size: int | None = None
    etag: str | None = None

    @property
    def message(self) -> str:
        return _OUTCOME_MESSAGES[self.outcome]

    def to_dict(self) -> dict:
        return {
            "success": self.outcome.http_status == 200,
            "message": self.message,
            "key": self.target_key,
            "uploadId": self.upload_id,
            "size": self.size,
            "etag": self.etag,
            "outcome": self.outcome.value,
        }


class ReassemblyEngine:
    """Combines the stored parts of an upload into the final object.

    Attributes:
        storage: Object store the final object is published to.
        chunks: Chunk store holding the parts.
        sessions: Session manager guarding the upload state.
        config: Upload limits.
    """

    def __init__(
        self,
        storage: ObjectStore,
        chunks: ChunkStore,
        sessions: UploadSessionManager,
        config: UploadConfig,
    ) -> None:
        self.storage = storage
        self.chunks = chunks
        self.sessions = sessions
        self.config = config

    async def combine(
        self,
        target_key: str,
        upload_id: str,
        content_type: str,
        total_parts: int,
        declared_total_size: int | None = None,
    ) -> CombineResult:
        """Combine parts ``0 .. total_parts - 1`` into ``target_key``.

        Args:
            target_key: Key the object is published under.
            upload_id: The upload whose parts are combined.
            content_type: MIME type of the published object.
            total_parts: Number of parts the client sent.
            declared_total_size: Expected object size, if the client gave one.

        Returns:
            A CombineResult. Lost races are reported through its outcome,
            not raised.

        Raises:
            ValidationError: If the request disagrees with the session.
            UploadExpired: If the pending session outlived its time-to-live.
            MissingChunk: If a part is absent.
            SizeMismatch: If the parts do not add up to the declared size.
            PayloadTooLarge: If the parts add up to more than the upload limit.
        """
        session = await self.sessions.ensure_session(target_key, upload_id, content_type)
        if session.state == SessionState.PENDING:
            session = await self.sessions.fix_total_parts(session, total_parts)
            if session.is_expired():
                raise UploadExpired(upload_id)

        won = await self.sessions.store.transition(
            upload_id, SessionState.PENDING, SessionState.COMBINING
        )
        if not won:
            result = await self._lost_race(target_key, upload_id)
            metrics.record_combine(result.outcome.value)
            logger.info(
                "Combine of %s skipped: %s",
                upload_id,
                result.outcome.value,
                extra={"upload_id": upload_id, "key": target_key},
            )
            return result

        published = False
        try:
            sizes = await self._head_parts(target_key, upload_id, total_parts)
            total = sum(sizes)
            if total > self.config.max_upload_size:
                raise PayloadTooLarge(
                    f"Combined size {total} exceeds limit of {self.config.max_upload_size}"
                )
            if declared_total_size is not None and total != declared_total_size:
                raise SizeMismatch(declared_total_size, total)

            info = await self.storage.put_stream(
                target_key,
                self._concat(target_key, upload_id, total_parts, total),
                content_type=content_type,
                custom_metadata={
                    "uploadId": upload_id,
                    "size": str(total),
                    "partCount": str(total_parts),
                    "publishedAt": now_iso(),
                },
            )
            published = True
            if info.size != total:
                raise SizeMismatch(total, info.size)
        except BaseException as exc:
            await self._fail(target_key, upload_id, total_parts, published)
            if isinstance(exc, Exception):
                metrics.record_combine("error")
            raise

        failures = await self.chunks.delete_chunks(target_key, upload_id, total_parts)
        if failures:
            logger.warning(
                "%d parts of %s were not deleted after combine",
                failures,
                upload_id,
                extra={"upload_id": upload_id, "key": target_key},
            )
        if not await self.sessions.store.transition(
            upload_id, SessionState.COMBINING, SessionState.COMPLETE
        ):
            logger.warning(
                "Upload %s left the combining state during combine", upload_id,
                extra={"upload_id": upload_id, "key": target_key},
            )

        metrics.record_combine(CombineOutcome.COMBINED.value)
        logger.info(
            "Combined %d parts of %s into %s (%d bytes)",
            total_parts,
            upload_id,
            target_key,
            info.size,
            extra={"upload_id": upload_id, "key": target_key},
        )
        return CombineResult(
            outcome=CombineOutcome.COMBINED,
            target_key=target_key,
            upload_id=upload_id,
            size=info.size,
            etag=info.etag,
        )

    async def _lost_race(self, target_key: str, upload_id: str) -> CombineResult:
        session = await self.sessions.get_session(upload_id)
        state = session.state if session is not None else SessionState.FAILED

        if state == SessionState.COMPLETE:
            info = await self.storage.head(target_key)
            return CombineResult(
                outcome=CombineOutcome.ALREADY_COMPLETE,
                target_key=target_key,
                upload_id=upload_id,
                size=info.size if info is not None else None,
                etag=info.etag if info is not None else None,
            )
        if state == SessionState.FAILED:
            outcome = CombineOutcome.ALREADY_FAILED
        else:
            outcome = CombineOutcome.IN_PROGRESS
        return CombineResult(outcome=outcome, target_key=target_key, upload_id=upload_id)

    async def _head_parts(self, target_key: str, upload_id: str, total_parts: int) -> list[int]:
        sizes = []
        for index in range(total_parts):
            info = await self.chunks.head_chunk(target_key, upload_id, index)
            if info is None:
                raise MissingChunk(index)
            sizes.append(info.size)
        return sizes

    async def _concat(
        self, target_key: str, upload_id: str, total_parts: int, expected: int
    ) -> AsyncIterator[bytes]:
        """Yield every part's bytes in index order, counting as it goes."""
        streamed = 0
        for index in range(total_parts):
            try:
                async for chunk in self.chunks.open_chunk(target_key, upload_id, index):
                    streamed += len(chunk)
                    if streamed > expected:
                        raise SizeMismatch(expected, streamed)
                    yield chunk
            except FileNotFoundError:
                raise MissingChunk(index) from None
        if streamed != expected:
            raise SizeMismatch(expected, streamed)

    async def _fail(
        self, target_key: str, upload_id: str, total_parts: int, published: bool
    ) -> None:
        """Undo a combine attempt. Never raises."""
        try:
            await self.chunks.delete_chunks(target_key, upload_id, total_parts)
        except Exception:
            logger.warning("Failed to delete parts of %s", upload_id, exc_info=True)

        if published:
            try:
                await self.storage.delete(target_key)
            except Exception:
                logger.warning(
                    "Failed to delete object %s after failed combine", target_key,
                    exc_info=True,
                )

        try:
            await self.sessions.store.transition(
                upload_id, SessionState.COMBINING, SessionState.FAILED
            )
        except Exception:
            logger.warning("Failed to mark upload %s as failed", upload_id, exc_info=True)

        logger.info(
            "Combine of %s failed; parts removed",
            upload_id,
            extra={"upload_id": upload_id, "key": target_key},
        )
