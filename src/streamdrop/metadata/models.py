"""Data model types for StreamDrop upload sessions.

An upload session tracks one chunked upload from the first chunk (or an
explicit begin) until its chunks are combined into the target object, it
is aborted, or it expires.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def now_iso() -> str:
    """Return the current UTC time as an ISO 8601 string."""
    return datetime.now(timezone.utc).strftime(ISO_FORMAT)


def iso_after(seconds: float, start: datetime | None = None) -> str:
    """Return the ISO 8601 timestamp ``seconds`` after ``start`` (default now).

    Negative values give a timestamp in the past, which is how cutoffs are
    computed.
    """
    start = start or datetime.now(timezone.utc)
    return (start + timedelta(seconds=seconds)).strftime(ISO_FORMAT)


class SessionState(str, Enum):
    """Lifecycle state of an upload session.

    Transitions only move forward: ``pending -> combining -> complete|failed``
    and ``pending -> failed``.
    """

    PENDING = "pending"
    COMBINING = "combining"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.COMPLETE, SessionState.FAILED)


@dataclass
class UploadSession:
    """Durable bookkeeping record for one chunked upload.

    Attributes:
        upload_id: Opaque identifier chosen at begin (or by the client).
        target_key: Object key the combined upload is published under.
        content_type: MIME type of the final object.
        total_parts: Number of parts, fixed by the first accepted chunk.
            None until then.
        state: Current lifecycle state.
        created_at: ISO 8601 creation timestamp.
        updated_at: ISO 8601 timestamp of the last state change.
        expires_at: ISO 8601 timestamp after which a pending session no
            longer accepts chunks.
    """

    upload_id: str
    target_key: str
    content_type: str
    total_parts: int | None = None
    state: SessionState = SessionState.PENDING
    created_at: str = ""
    updated_at: str = ""
    expires_at: str = ""

    def is_expired(self, now: str | None = None) -> bool:
        """Return True if the session is past its expiry timestamp."""
        if not self.expires_at:
            return False
        return self.expires_at <= (now or now_iso())

    def to_dict(self) -> dict[str, Any]:
        return {
            "uploadId": self.upload_id,
            "key": self.target_key,
            "contentType": self.content_type,
            "totalParts": self.total_parts,
            "state": self.state.value,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "expiresAt": self.expires_at,
        }

    @classmethod
    def from_row(cls, row: Any) -> UploadSession:
        """Build a session from a mapping or ``aiosqlite.Row``."""
        total_parts = row["total_parts"]
        return cls(
            upload_id=row["upload_id"],
            target_key=row["target_key"],
            content_type=row["content_type"],
            total_parts=int(total_parts) if total_parts is not None else None,
            state=SessionState(row["state"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            expires_at=row["expires_at"],
        )
