"""Abstract object store protocol for StreamDrop."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AsyncIterator, Protocol

DEFAULT_CONTENT_TYPE = "application/octet-stream"


def now_iso() -> str:
    """Return the current UTC time as an ISO 8601 string."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


@dataclass
class ObjectInfo:
    """Metadata for a stored blob.

    Attributes:
        key: The object key.
        size: Size in bytes.
        etag: Unquoted hex MD5 of the body (or the upstream ETag).
        content_type: MIME type recorded at write time.
        custom_metadata: Small string map written alongside the body.
        last_modified: ISO 8601 timestamp of the write.
    """

    key: str
    size: int
    etag: str
    content_type: str = DEFAULT_CONTENT_TYPE
    custom_metadata: dict[str, str] = field(default_factory=dict)
    last_modified: str = ""

    @property
    def http_etag(self) -> str:
        """The ETag as sent in HTTP headers (always quoted)."""
        return f'"{self.etag}"'

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "size": self.size,
            "etag": self.etag,
            "content_type": self.content_type,
            "custom_metadata": dict(self.custom_metadata),
            "last_modified": self.last_modified,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ObjectInfo":
        return cls(
            key=data["key"],
            size=int(data["size"]),
            etag=data["etag"],
            content_type=data.get("content_type") or DEFAULT_CONTENT_TYPE,
            custom_metadata={
                str(k): str(v) for k, v in (data.get("custom_metadata") or {}).items()
            },
            last_modified=data.get("last_modified", ""),
        )


class ObjectStore(Protocol):
    """Protocol defining the object store interface.

    All storage backends (local filesystem, memory, S3-compatible gateway)
    must implement this interface. Each blob carries its content type, size,
    ETag, and a custom metadata map. A write to an existing key fully
    replaces the previous body and metadata, and readers never observe a
    partially written body.
    """

    async def init(self) -> None:
        """Initialize the backend (create directories, connect, etc.)."""
        ...

    async def close(self) -> None:
        """Release resources held by the backend."""
        ...

    async def put(
        self,
        key: str,
        data: bytes,
        content_type: str = DEFAULT_CONTENT_TYPE,
        custom_metadata: dict[str, str] | None = None,
    ) -> ObjectInfo:
        """Store a blob from an in-memory buffer.

        Args:
            key: The object key.
            data: The raw bytes to store.
            content_type: MIME type recorded with the blob.
            custom_metadata: Optional string map recorded with the blob.

        Returns:
            The metadata of the stored blob.
        """
        ...

    async def put_stream(
        self,
        key: str,
        stream: AsyncIterator[bytes],
        content_type: str = DEFAULT_CONTENT_TYPE,
        custom_metadata: dict[str, str] | None = None,
    ) -> ObjectInfo:
        """Store a blob from an async byte stream.

        The blob becomes visible only after the stream is fully consumed.
        If the stream raises, nothing is published and the previous blob
        at ``key`` (if any) is left untouched.

        Args:
            key: The object key.
            stream: Async iterator of byte chunks.
            content_type: MIME type recorded with the blob.
            custom_metadata: Optional string map recorded with the blob.

        Returns:
            The metadata of the stored blob.
        """
        ...

    async def head(self, key: str) -> ObjectInfo | None:
        """Return the metadata for ``key``, or None if it does not exist."""
        ...

    async def get_stream(
        self, key: str, offset: int = 0, length: int | None = None
    ) -> AsyncIterator[bytes]:
        """Retrieve a blob's bytes as an async stream.

        Args:
            key: The object key.
            offset: Byte offset to start reading from.
            length: Number of bytes to read, or None for all remaining.

        Returns:
            An async iterator yielding byte chunks.

        Raises:
            FileNotFoundError: If the blob does not exist.
        """
        ...

    async def delete(self, key: str) -> None:
        """Delete a blob. Missing keys are ignored."""
        ...

    async def list_keys(self, prefix: str = "") -> list[str]:
        """Return all keys starting with ``prefix``, sorted."""
        ...
