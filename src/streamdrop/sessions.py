"""Upload session management.

Issues upload ids and target keys, and validates every chunk against the
durable session record before the chunk store accepts it.
"""

import logging
import time
import uuid
from dataclasses import dataclass

from streamdrop.config import UploadConfig
from streamdrop.errors import (
    CombineInProgress,
    PayloadTooLarge,
    UploadClosed,
    UploadExpired,
    ValidationError,
)
from streamdrop.metadata import SessionState, SessionStore, UploadSession
from streamdrop.metadata.models import iso_after, now_iso
from streamdrop.validation import validate_content_type

logger = logging.getLogger(__name__)


@dataclass
class UploadTicket:
    """What a client needs to start uploading parts.

    Attributes:
        upload_id: Identifier to send with every part.
        target_key: Key the parts are sent to and the object is published at.
        expires_in: Seconds the upload URL is advertised as valid.
        content_type: Normalized MIME type of the final object.
    """

    upload_id: str
    target_key: str
    expires_in: int
    content_type: str


class UploadSessionManager:
    """Creates and validates upload sessions.

    Attributes:
        store: The durable session store.
        config: Upload limits and lifetimes.
    """

    def __init__(self, store: SessionStore, config: UploadConfig) -> None:
        self.store = store
        self.config = config

    def new_target_key(self) -> str:
        """Return a fresh time-ordered key: ``{key_prefix}/{epoch_ms}-{uuid4}``."""
        return f"{self.config.key_prefix.strip('/')}/{int(time.time() * 1000)}-{uuid.uuid4()}"

    def _new_session(
        self,
        upload_id: str,
        target_key: str,
        content_type: str,
        total_parts: int | None = None,
    ) -> UploadSession:
        now = now_iso()
        return UploadSession(
            upload_id=upload_id,
            target_key=target_key,
            content_type=content_type,
            total_parts=total_parts,
            state=SessionState.PENDING,
            created_at=now,
            updated_at=now,
            expires_at=iso_after(self.config.session_ttl_seconds),
        )

    async def begin_upload(self, content_type: str | None) -> UploadTicket:
        """Start a new chunked upload.

        Raises:
            ValidationError: If the content type is missing or not allowed.
        """
        content_type = validate_content_type(content_type, self.config.allowed_content_types)
        upload_id = str(uuid.uuid4())
        target_key = self.new_target_key()
        await self.store.create_session(
            self._new_session(upload_id, target_key, content_type)
        )
        logger.info(
            "Began upload %s for %s",
            upload_id,
            target_key,
            extra={"upload_id": upload_id, "key": target_key},
        )
        return UploadTicket(
            upload_id=upload_id,
            target_key=target_key,
            expires_in=self.config.upload_url_ttl_seconds,
            content_type=content_type,
        )

    async def get_session(self, upload_id: str) -> UploadSession | None:
        return await self.store.get_session(upload_id)

    async def ensure_session(
        self,
        target_key: str,
        upload_id: str,
        content_type: str,
        total_parts: int | None = None,
    ) -> UploadSession:
        """Return the session for ``upload_id``, creating it if absent.

        Raises:
            ValidationError: If the session exists for a different key.
        """
        session = await self.store.get_session(upload_id)
        if session is None:
            await self.store.create_session(
                self._new_session(upload_id, target_key, content_type, total_parts)
            )
            # Re-read: a concurrent request may have created it first.
            session = await self.store.get_session(upload_id)
            assert session is not None
        if session.target_key != target_key:
            raise ValidationError(
                f"Upload {upload_id} belongs to a different key"
            )
        return session

    async def fix_total_parts(self, session: UploadSession, total_parts: int) -> UploadSession:
        """Fix ``total_parts`` on first use and check it on every later use.

        Raises:
            ValidationError: If ``total_parts`` differs from the fixed value.
            PayloadTooLarge: If the declared parts cannot fit the upload limit.
        """
        if total_parts < 1:
            raise ValidationError("totalParts must be at least 1")
        if total_parts * self.config.max_chunk_size > self.config.max_upload_size:
            max_parts = self.config.max_upload_size // self.config.max_chunk_size
            raise PayloadTooLarge(
                f"Upload declares {total_parts} parts; at most {max_parts} are allowed"
            )
        if session.total_parts is None:
            if not await self.store.set_total_parts(session.upload_id, total_parts):
                refreshed = await self.store.get_session(session.upload_id)
                assert refreshed is not None
                session = refreshed
            else:
                session.total_parts = total_parts
        if session.total_parts != total_parts:
            raise ValidationError(
                f"totalParts {total_parts} does not match the upload's "
                f"{session.total_parts} parts"
            )
        return session

    async def register_chunk(
        self,
        target_key: str,
        upload_id: str,
        part_index: int,
        total_parts: int,
        content_type: str,
    ) -> UploadSession:
        """Validate a part against its session before it is stored.

        Creates the session on the first part when the client skipped the
        explicit begin.

        Raises:
            ValidationError: On key, total_parts, or index mismatches.
            UploadClosed: If the session is no longer pending.
            UploadExpired: If the session outlived its time-to-live.
            PayloadTooLarge: If the declared parts cannot fit the upload limit.
        """
        session = await self.ensure_session(target_key, upload_id, content_type)
        self.check_pending(session)
        session = await self.fix_total_parts(session, total_parts)
        if not 0 <= part_index < total_parts:
            raise ValidationError(
                f"partNumber {part_index} is out of range for {total_parts} parts"
            )
        return session

    def check_pending(self, session: UploadSession) -> None:
        """Raise unless the session still accepts parts.

        Raises:
            UploadClosed: If the session is combining, complete, or failed.
            UploadExpired: If the session is pending but expired.
        """
        if session.state != SessionState.PENDING:
            raise UploadClosed(session.upload_id, session.state.value)
        if session.is_expired():
            raise UploadExpired(session.upload_id)

    async def is_pending(self, upload_id: str) -> bool:
        session = await self.store.get_session(upload_id)
        return session is not None and session.state == SessionState.PENDING

    async def abort(self, target_key: str, upload_id: str) -> UploadSession | None:
        """Move a pending session to ``failed``.

        Aborting a complete or failed session is a no-op. Returns the
        session as it stands after the call, or None if it never existed.

        Raises:
            ValidationError: If the session belongs to a different key.
            CombineInProgress: If the session is being combined.
        """
        session = await self.store.get_session(upload_id)
        if session is None:
            return None
        if session.target_key != target_key:
            raise ValidationError(f"Upload {upload_id} belongs to a different key")
        if session.state == SessionState.PENDING:
            await self.store.transition(upload_id, SessionState.PENDING, SessionState.FAILED)
            session = await self.store.get_session(upload_id)
            assert session is not None
        if session.state == SessionState.COMBINING:
            raise CombineInProgress(upload_id)
        logger.info(
            "Aborted upload %s", upload_id, extra={"upload_id": upload_id, "key": target_key},
        )
        return session
