"""Object-level request handlers for StreamDrop.

Implements:
    - GetObject (GET /{key}) with single byte-range support
    - HeadObject (HEAD /{key})
    - PutObject (PUT /{key}) single-shot upload
    - DeleteObject (DELETE /{key}) with cascade to leftover parts and sessions
"""

import email.utils
import logging
import re
from collections.abc import AsyncIterator
from datetime import datetime, timezone

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse

from streamdrop import metrics
from streamdrop.errors import NotFound, PayloadTooLarge, StorageError, UnsatisfiableRange
from streamdrop.metadata.models import now_iso
from streamdrop.storage.backend import DEFAULT_CONTENT_TYPE, ObjectInfo
from streamdrop.validation import (
    check_declared_length,
    is_reserved_key,
    validate_content_type,
    validate_object_key,
    validate_writable_key,
)

logger = logging.getLogger(__name__)


def _iso_to_http_date(iso_str: str) -> str:
    """Convert an ISO 8601 timestamp to an HTTP date string (RFC 1123).

    Args:
        iso_str: An ISO 8601 timestamp string.

    Returns:
        An RFC 1123 HTTP date string, or the original string if parsing fails.
    """
    for fmt in ("%Y-%m-%dT%H:%M:%S.%fZ", "%Y-%m-%dT%H:%M:%SZ"):
        try:
            dt = datetime.strptime(iso_str, fmt).replace(tzinfo=timezone.utc)
            return email.utils.format_datetime(dt, usegmt=True)
        except (ValueError, TypeError):
            continue
    return iso_str


# ---------------------------------------------------------------------------
# Range request parsing
# ---------------------------------------------------------------------------

_RANGE_RE = re.compile(r"^bytes=(\d*)-(\d*)$")


def parse_range_header(header: str | None, total: int) -> tuple[int, int] | None:
    """Parse an HTTP Range header into (start, end) byte offsets.

    Supports three forms:
        - bytes=start-end  (both specified)
        - bytes=start-     (from start to end of file)
        - bytes=-suffix    (last N bytes)

    Args:
        header: The Range header value, e.g. "bytes=0-4".
        total: The total size of the resource in bytes.

    Returns:
        A (start, end) tuple of inclusive byte offsets, or None if the
        header is absent, malformed, or asks for more than one range. The
        caller then serves the whole object.

    Raises:
        UnsatisfiableRange: If the parsed range lies outside the object.
    """
    if not header:
        return None
    header = header.strip()

    # Multiple ranges are not supported; serve the full body instead
    if "," in header:
        return None

    m = _RANGE_RE.match(header)
    if not m:
        return None

    start_str, end_str = m.group(1), m.group(2)

    if not start_str and not end_str:
        return None

    if not start_str:
        # Suffix range: bytes=-N  -> last N bytes
        suffix_length = int(end_str)
        if suffix_length == 0 or total == 0:
            raise UnsatisfiableRange(total)
        start = max(total - suffix_length, 0)
        end = total - 1
    elif not end_str:
        # Open-ended: bytes=N-  -> from N to end
        start = int(start_str)
        if start >= total:
            raise UnsatisfiableRange(total)
        end = total - 1
    else:
        # Closed range: bytes=N-M
        start = int(start_str)
        end = int(end_str)
        if start > end or start >= total:
            raise UnsatisfiableRange(total)
        end = min(end, total - 1)

    return (start, end)


# ---------------------------------------------------------------------------
# Request body readers
# ---------------------------------------------------------------------------


async def stream_body(request: Request, limit: int) -> AsyncIterator[bytes]:
    """Yield the request body, failing once more than ``limit`` bytes arrive.

    Raises:
        PayloadTooLarge: If the body exceeds ``limit``.
    """
    received = 0
    async for chunk in request.stream():
        if not chunk:
            continue
        received += len(chunk)
        if received > limit:
            raise PayloadTooLarge(f"File too large: body exceeds limit of {limit} bytes")
        yield chunk
    if metrics.bytes_received_total is not None and received:
        metrics.bytes_received_total.inc(received)


async def read_body(request: Request, limit: int) -> bytes:
    """Read the whole request body, enforcing ``limit`` while reading."""
    check_declared_length(request.headers.get("content-length"), limit)
    return b"".join([chunk async for chunk in stream_body(request, limit)])


class ObjectHandler:
    """Handles reads, single-shot writes, and deletes of stored objects.

    Attributes:
        app: The parent FastAPI application.
    """

    def __init__(self, app: FastAPI) -> None:
        """Initialize the object handler.

        Args:
            app: The FastAPI application instance.
        """
        self.app = app

    @property
    def storage(self):
        """Shortcut to the object store on app.state."""
        return self.app.state.storage

    @property
    def sessions(self):
        """Shortcut to the upload session manager on app.state."""
        return self.app.state.sessions

    @property
    def chunks(self):
        """Shortcut to the chunk store on app.state."""
        return self.app.state.chunks

    @property
    def config(self):
        """Shortcut to the StreamDropConfig on app.state."""
        return self.app.state.config

    async def _head_or_404(self, key: str) -> ObjectInfo:
        validate_object_key(key)
        # Staged parts are not objects
        if is_reserved_key(key, self.config.uploads.chunk_prefix):
            raise NotFound(key)
        info = await self.storage.head(key)
        if info is None:
            raise NotFound(key)
        return info

    def _build_object_headers(self, info: ObjectInfo) -> dict[str, str]:
        """Build response headers from object metadata.

        Args:
            info: Metadata of the stored object.

        Returns:
            A dict of response headers.
        """
        headers: dict[str, str] = {
            "ETag": info.http_etag,
            "Content-Type": info.content_type or DEFAULT_CONTENT_TYPE,
            "Content-Length": str(info.size),
            "Accept-Ranges": "bytes",
        }
        if info.last_modified:
            headers["Last-Modified"] = _iso_to_http_date(info.last_modified)
        if self.config.cors.cache_control:
            headers["Cache-Control"] = self.config.cors.cache_control
        return headers

    def _apply_range(
        self, request: Request, info: ObjectInfo, headers: dict[str, str]
    ) -> tuple[int, int, int | None]:
        """Resolve the Range header into (status, offset, length)."""
        parsed = parse_range_header(request.headers.get("range"), info.size)
        if parsed is None:
            return 200, 0, None
        start, end = parsed
        length = end - start + 1
        headers["Content-Range"] = f"bytes {start}-{end}/{info.size}"
        headers["Content-Length"] = str(length)
        return 206, start, length

    async def get_object(self, request: Request, key: str) -> Response:
        """Stream an object, or one byte range of it.

        Implements: GET /{key}

        Returns:
            200 with the full body, or 206 with the requested range.
        """
        info = await self._head_or_404(key)
        headers = self._build_object_headers(info)
        status, offset, length = self._apply_range(request, info, headers)

        if metrics.bytes_sent_total is not None:
            metrics.bytes_sent_total.inc(length if length is not None else info.size)
        metrics.record_operation("GetObject", status)

        return StreamingResponse(
            content=self.storage.get_stream(key, offset=offset, length=length),
            status_code=status,
            headers=headers,
            media_type=headers["Content-Type"],
        )

    async def head_object(self, request: Request, key: str) -> Response:
        """Return the headers GET would return, without the body.

        Implements: HEAD /{key}
        """
        info = await self._head_or_404(key)
        headers = self._build_object_headers(info)
        status, _offset, _length = self._apply_range(request, info, headers)
        metrics.record_operation("HeadObject", status)
        return Response(status_code=status, headers=headers)

    async def put_object(self, request: Request, key: str) -> Response:
        """Store a whole object from the request body.

        Implements: PUT /{key} (without chunk headers)

        The body is streamed into the object store and only becomes visible
        once it has been received completely.

        Returns:
            200 with ``{success, message, key, etag, size}``.
        """
        upload_cfg = self.config.uploads
        validate_writable_key(key, upload_cfg.chunk_prefix)
        content_type = validate_content_type(
            request.headers.get("content-type") or DEFAULT_CONTENT_TYPE,
            upload_cfg.allowed_content_types,
        )
        check_declared_length(request.headers.get("content-length"), upload_cfg.max_upload_size)

        try:
            info = await self.storage.put_stream(
                key,
                stream_body(request, upload_cfg.max_upload_size),
                content_type=content_type,
                custom_metadata={"publishedAt": now_iso()},
            )
        except OSError as exc:
            logger.exception("Failed to store %s", key)
            raise StorageError(f"Failed to store {key}") from exc

        logger.info(
            "Stored %s (%d bytes)", key, info.size, extra={"key": key},
        )
        metrics.record_operation("PutObject", 200)
        return JSONResponse(
            content={
                "success": True,
                "message": "File uploaded successfully",
                "key": key,
                "etag": info.etag,
                "size": info.size,
            },
            headers={"ETag": info.http_etag},
        )

    async def delete_object(self, request: Request, key: str) -> Response:
        """Delete an object and whatever its uploads left behind.

        Implements: DELETE /{key}

        The object goes first. Then the parts of the upload recorded in the
        object's metadata are removed, along with the parts of any other
        finished session for the same key. Session rows stay in their
        terminal state until the sweeper's retention pass purges them, so a
        retried combine for a deleted upload is still answered from its
        record. Cascade failures are logged and never fail the request.

        Returns:
            200 with ``{success, message}``.

        Raises:
            NotFound: If the object does not exist.
        """
        validate_writable_key(key, self.config.uploads.chunk_prefix)
        info = await self._head_or_404(key)
        await self.storage.delete(key)

        cascade: dict[str, int | None] = {}
        upload_id = info.custom_metadata.get("uploadId")
        if upload_id:
            part_count = info.custom_metadata.get("partCount", "")
            cascade[upload_id] = int(part_count) if part_count.isdigit() else None
        try:
            for session in await self.sessions.store.find_by_target_key(key):
                if session.state.is_terminal:
                    cascade.setdefault(session.upload_id, session.total_parts)
        except Exception:
            logger.warning("Failed to look up sessions for %s", key, exc_info=True)

        for cascade_id, total_parts in cascade.items():
            await self.chunks.delete_chunks(key, cascade_id, total_parts)

        logger.info("Deleted %s", key, extra={"key": key})
        metrics.record_operation("DeleteObject", 200)
        return JSONResponse(content={"success": True, "message": "File deleted successfully"})
