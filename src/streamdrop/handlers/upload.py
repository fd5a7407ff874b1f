"""Chunked upload request handlers for StreamDrop.

Implements:
    - GetUploadUrl (POST /getUploadUrl)
    - PutChunk (PUT /{key} with X-Upload-Id, X-Part-Number, X-Total-Parts)
    - Combine (POST /combine)
    - AbortUpload (DELETE /{key}?uploadId=...)

Crash-only design:
    - Parts are ordinary objects in the object store, written atomically.
    - Session state lives in the session store; nothing here is kept in
      process memory between requests.
    - A part that lands after its session finished is deleted before the
      request fails. A part that lands while a combine is running is left
      for that combine, which removes every part when it ends.
"""

import logging

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from streamdrop import metrics
from streamdrop.errors import CombineInProgress, StorageError, UploadClosed, ValidationError
from streamdrop.handlers.object import read_body
from streamdrop.metadata import SessionState
from streamdrop.validation import (
    check_declared_length,
    parse_int,
    validate_content_type,
    validate_writable_key,
)

logger = logging.getLogger(__name__)

UPLOAD_ID_HEADER = "x-upload-id"
PART_NUMBER_HEADER = "x-part-number"
TOTAL_PARTS_HEADER = "x-total-parts"


def is_chunk_request(request: Request) -> bool:
    """Return True when all three chunk headers are present."""
    return all(
        request.headers.get(name)
        for name in (UPLOAD_ID_HEADER, PART_NUMBER_HEADER, TOTAL_PARTS_HEADER)
    )


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("Request body must be valid JSON")
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


class UploadHandler:
    """Handles the chunked upload protocol.

    Attributes:
        app: The parent FastAPI application.
    """

    def __init__(self, app: FastAPI) -> None:
        """Initialize the upload handler.

        Args:
            app: The FastAPI application instance.
        """
        self.app = app

    @property
    def sessions(self):
        """Shortcut to the upload session manager on app.state."""
        return self.app.state.sessions

    @property
    def chunks(self):
        """Shortcut to the chunk store on app.state."""
        return self.app.state.chunks

    @property
    def assembly(self):
        """Shortcut to the reassembly engine on app.state."""
        return self.app.state.assembly

    @property
    def config(self):
        """Shortcut to the StreamDropConfig on app.state."""
        return self.app.state.config

    def _public_url(self, request: Request, key: str) -> str:
        base = self.config.server.public_base_url or str(request.base_url)
        return f"{base.rstrip('/')}/{key}"

    async def get_upload_url(self, request: Request) -> Response:
        """Begin a chunked upload and tell the client where to send parts.

        Implements: POST /getUploadUrl

        Body: ``{"fileType": "<mime type>"}``. The bearer token has already
        been checked by the auth middleware.

        Returns:
            200 with ``{uploadUrl, key, uploadId, expiresIn, maxFileSize,
            maxChunkSize, contentType}``.
        """
        body = await _json_body(request)
        ticket = await self.sessions.begin_upload(body.get("fileType"))
        upload_cfg = self.config.uploads

        metrics.record_operation("GetUploadUrl", 200)
        return JSONResponse(
            content={
                "uploadUrl": self._public_url(request, ticket.target_key),
                "key": ticket.target_key,
                "uploadId": ticket.upload_id,
                "expiresIn": ticket.expires_in,
                "maxFileSize": upload_cfg.max_upload_size,
                "maxChunkSize": upload_cfg.max_chunk_size,
                "contentType": ticket.content_type,
            }
        )

    async def put_chunk(self, request: Request, key: str) -> Response:
        """Store one part of a chunked upload.

        Implements: PUT /{key} with X-Upload-Id, X-Part-Number (0-based)
        and X-Total-Parts headers.

        The session is validated before the body is read, and checked again
        after the part is stored. When ``uploads.auto_combine`` is on and
        every part is present, the upload is combined before responding.

        Returns:
            200 with ``{success, message, key, etag, size, uploadId,
            partNumber, totalParts, complete}``.

        Raises:
            UploadClosed: If the session finished while the part was written.
            CombineInProgress: If a combine claimed the session meanwhile.
        """
        upload_cfg = self.config.uploads
        validate_writable_key(key, upload_cfg.chunk_prefix)

        upload_id = request.headers.get(UPLOAD_ID_HEADER, "").strip()
        if not upload_id or "/" in upload_id:
            raise ValidationError("X-Upload-Id is invalid")
        part_index = parse_int(request.headers.get(PART_NUMBER_HEADER), "X-Part-Number")
        total_parts = parse_int(request.headers.get(TOTAL_PARTS_HEADER), "X-Total-Parts", 1)
        content_type = validate_content_type(
            request.headers.get("content-type"), upload_cfg.allowed_content_types
        )
        check_declared_length(request.headers.get("content-length"), upload_cfg.max_chunk_size)

        await self.sessions.register_chunk(key, upload_id, part_index, total_parts, content_type)
        payload = await read_body(request, upload_cfg.max_chunk_size)
        try:
            ack = await self.chunks.put_chunk(
                key, upload_id, part_index, total_parts, content_type, payload
            )
        except OSError as exc:
            logger.exception("Failed to store part %d of %s", part_index, upload_id)
            raise StorageError(f"Failed to store part {part_index}") from exc

        session = await self.sessions.get_session(upload_id)
        if session is not None and session.state == SessionState.COMBINING:
            # The running combine may already have headed this part
            raise CombineInProgress(upload_id)
        if session is None or session.state != SessionState.PENDING:
            await self.chunks.delete_chunk(key, upload_id, part_index)
            state = session.state.value if session is not None else ""
            raise UploadClosed(upload_id, state)

        if metrics.chunks_written_total is not None:
            metrics.chunks_written_total.inc()

        complete = await self.chunks.has_all_parts(key, upload_id, total_parts)
        message = "All chunks uploaded" if complete else "Chunk uploaded"
        body = {
            "success": True,
            "message": message,
            "key": key,
            "etag": ack.etag,
            "size": ack.size,
            "uploadId": upload_id,
            "partNumber": part_index,
            "totalParts": total_parts,
            "complete": complete,
        }

        if complete and upload_cfg.auto_combine:
            result = await self.assembly.combine(key, upload_id, content_type, total_parts)
            body["message"] = "All chunks uploaded and combined"
            body["combine"] = result.to_dict()

        metrics.record_operation("PutChunk", 200)
        return JSONResponse(content=body)

    async def combine(self, request: Request) -> Response:
        """Combine the parts of an upload into the final object.

        Implements: POST /combine

        Body: ``{"key", "uploadId", "contentType", "totalChunks",
        "totalSize"?}``.

        Returns:
            200 when combined (or already combined), 409 when another
            combine is running or the upload has failed.
        """
        body = await _json_body(request)
        key = body.get("key")
        upload_id = body.get("uploadId")
        if not key or not upload_id or not body.get("contentType") or not body.get("totalChunks"):
            raise ValidationError("Missing required parameters")

        upload_cfg = self.config.uploads
        validate_writable_key(str(key), upload_cfg.chunk_prefix)
        content_type = validate_content_type(
            body.get("contentType"), upload_cfg.allowed_content_types
        )
        total_parts = parse_int(body.get("totalChunks"), "totalChunks", 1)
        total_size = body.get("totalSize")
        declared_size = parse_int(total_size, "totalSize") if total_size is not None else None

        result = await self.assembly.combine(
            str(key), str(upload_id), content_type, total_parts, declared_size
        )

        metrics.record_operation("Combine", result.outcome.http_status)
        return JSONResponse(content=result.to_dict(), status_code=result.outcome.http_status)

    async def abort_upload(self, request: Request, key: str) -> Response:
        """Abort a chunked upload and delete its parts.

        Implements: DELETE /{key}?uploadId=...

        Aborting a finished upload, or one the server never saw, only
        removes leftover parts.

        Returns:
            200 with ``{success, message, key, uploadId, state}``.

        Raises:
            CombineInProgress: If the upload is being combined.
        """
        validate_writable_key(key, self.config.uploads.chunk_prefix)
        upload_id = request.query_params.get("uploadId", "").strip()
        if not upload_id or "/" in upload_id:
            raise ValidationError("uploadId is invalid")

        session = await self.sessions.abort(key, upload_id)
        total_parts = session.total_parts if session is not None else None
        failures = await self.chunks.delete_chunks(key, upload_id, total_parts)
        if failures:
            logger.warning(
                "%d parts of %s were not deleted on abort", failures, upload_id,
                extra={"upload_id": upload_id, "key": key},
            )

        metrics.record_operation("AbortUpload", 200)
        return JSONResponse(
            content={
                "success": True,
                "message": "Upload aborted",
                "key": key,
                "uploadId": upload_id,
                "state": session.state.value if session is not None else None,
            }
        )
