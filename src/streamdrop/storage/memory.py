"""In-memory object store for StreamDrop.

Implements the ObjectStore protocol using a Python dictionary. Useful for
tests and ephemeral deployments; all data is lost on restart.
"""

import hashlib
import logging
from collections.abc import AsyncIterator

from streamdrop.storage.backend import DEFAULT_CONTENT_TYPE, ObjectInfo, now_iso

logger = logging.getLogger(__name__)

# Streaming chunk size: 64 KB (matches local backend)
_CHUNK_SIZE = 64 * 1024


class MemoryStorageError(Exception):
    """Raised when the memory backend cannot fulfill a request."""


class MemoryCapacityError(MemoryStorageError):
    """Raised when a put would exceed the configured max_size_bytes."""


class MemoryStorageBackend:
    """Object store that holds all blobs in memory.

    Blobs are stored in a dictionary keyed by object key with values of
    (data_bytes, ObjectInfo). Replacing an entry is a single assignment, so
    readers never see a half-written object.

    Attributes:
        max_size_bytes: Maximum total bytes allowed (0 = unlimited).
    """

    def __init__(self, max_size_bytes: int = 0) -> None:
        self.max_size_bytes = max_size_bytes
        self._objects: dict[str, tuple[bytes, ObjectInfo]] = {}
        self._current_size: int = 0

    def _check_capacity(self, key: str, new_size: int) -> None:
        """Check whether replacing ``key`` with ``new_size`` bytes fits.

        Raises:
            MemoryCapacityError: If the store would exceed capacity.
        """
        if self.max_size_bytes <= 0:
            return
        old_size = len(self._objects[key][0]) if key in self._objects else 0
        projected = self._current_size - old_size + new_size
        if projected > self.max_size_bytes:
            raise MemoryCapacityError(
                f"Cannot store {new_size} bytes at {key}: would exceed "
                f"max_size_bytes ({projected} > {self.max_size_bytes})"
            )

    def _store(
        self,
        key: str,
        data: bytes,
        etag: str,
        content_type: str,
        custom_metadata: dict[str, str] | None,
    ) -> ObjectInfo:
        self._check_capacity(key, len(data))
        info = ObjectInfo(
            key=key,
            size=len(data),
            etag=etag,
            content_type=content_type or DEFAULT_CONTENT_TYPE,
            custom_metadata={str(k): str(v) for k, v in (custom_metadata or {}).items()},
            last_modified=now_iso(),
        )
        if key in self._objects:
            self._current_size -= len(self._objects[key][0])
        self._objects[key] = (data, info)
        self._current_size += len(data)
        return info

    async def init(self) -> None:
        logger.info(
            "Memory storage backend initialized (max_size=%s)",
            self.max_size_bytes if self.max_size_bytes > 0 else "unlimited",
        )

    async def close(self) -> None:
        self._objects.clear()
        self._current_size = 0

    async def put(
        self,
        key: str,
        data: bytes,
        content_type: str = DEFAULT_CONTENT_TYPE,
        custom_metadata: dict[str, str] | None = None,
    ) -> ObjectInfo:
        data = bytes(data)
        return self._store(key, data, hashlib.md5(data).hexdigest(), content_type, custom_metadata)

    async def put_stream(
        self,
        key: str,
        stream: AsyncIterator[bytes],
        content_type: str = DEFAULT_CONTENT_TYPE,
        custom_metadata: dict[str, str] | None = None,
    ) -> ObjectInfo:
        """Collect the stream, then publish it with a single assignment."""
        chunks: list[bytes] = []
        md5 = hashlib.md5()
        async for chunk in stream:
            chunks.append(chunk)
            md5.update(chunk)
        return self._store(key, b"".join(chunks), md5.hexdigest(), content_type, custom_metadata)

    async def head(self, key: str) -> ObjectInfo | None:
        entry = self._objects.get(key)
        return entry[1] if entry is not None else None

    async def get_stream(
        self, key: str, offset: int = 0, length: int | None = None
    ) -> AsyncIterator[bytes]:
        """Yield 64 KB slices of the blob from ``offset``.

        Raises:
            FileNotFoundError: If the blob does not exist.
        """
        entry = self._objects.get(key)
        if entry is None:
            raise FileNotFoundError(f"Object not found: {key}")
        data = entry[0]

        end = min(offset + length, len(data)) if length is not None else len(data)
        pos = offset
        while pos < end:
            chunk_end = min(pos + _CHUNK_SIZE, end)
            yield data[pos:chunk_end]
            pos = chunk_end

    async def delete(self, key: str) -> None:
        entry = self._objects.pop(key, None)
        if entry is not None:
            self._current_size -= len(entry[0])

    async def list_keys(self, prefix: str = "") -> list[str]:
        return sorted(k for k in self._objects if k.startswith(prefix))
