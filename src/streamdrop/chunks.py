"""Chunk staging for chunked uploads.

Each part of a chunked upload is stored as its own blob in the object
store under::

    {chunk_prefix}/{target_key}/{upload_id}/part{index}

with custom metadata recording which upload it belongs to. Parts are
0-indexed. Writing the same part twice overwrites it, so clients may
retry or send parts out of order and concurrently.
"""

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass

from streamdrop.storage.backend import ObjectInfo, ObjectStore

logger = logging.getLogger(__name__)


@dataclass
class ChunkAck:
    """Acknowledgement returned after a part is stored.

    Attributes:
        part_index: The 0-based part index.
        size: Number of bytes stored.
        etag: Unquoted MD5 of the part body.
    """

    part_index: int
    size: int
    etag: str


class ChunkStore:
    """Stores, inspects, and removes the parts of chunked uploads.

    The chunk store never triggers reassembly; it only persists parts.

    Attributes:
        storage: The object store parts are written to.
        prefix: Key prefix reserved for parts.
    """

    def __init__(self, storage: ObjectStore, prefix: str = "chunks") -> None:
        self.storage = storage
        self.prefix = prefix.strip("/")

    def upload_prefix(self, target_key: str, upload_id: str) -> str:
        """Return the key prefix shared by every part of one upload."""
        return f"{self.prefix}/{target_key}/{upload_id}/"

    def chunk_key(self, target_key: str, upload_id: str, part_index: int) -> str:
        """Return the object key a part is stored under."""
        return f"{self.upload_prefix(target_key, upload_id)}part{part_index}"

    async def put_chunk(
        self,
        target_key: str,
        upload_id: str,
        part_index: int,
        total_parts: int,
        content_type: str,
        payload: bytes,
    ) -> ChunkAck:
        """Persist one part, replacing any previous copy.

        Args:
            target_key: Key the combined object will be published under.
            upload_id: The upload the part belongs to.
            part_index: 0-based part index.
            total_parts: Number of parts the upload declares.
            content_type: MIME type of the final object.
            payload: The part body.

        Returns:
            A ChunkAck describing the stored part.
        """
        info = await self.storage.put(
            self.chunk_key(target_key, upload_id, part_index),
            payload,
            content_type="application/octet-stream",
            custom_metadata={
                "uploadId": upload_id,
                "partNumber": str(part_index),
                "totalParts": str(total_parts),
                "originalKey": target_key,
                "contentType": content_type,
                "size": str(len(payload)),
            },
        )
        logger.debug(
            "Stored part %d/%d of %s (%d bytes)",
            part_index,
            total_parts,
            upload_id,
            info.size,
            extra={"upload_id": upload_id, "key": target_key, "part_index": part_index},
        )
        return ChunkAck(part_index=part_index, size=info.size, etag=info.etag)

    async def head_chunk(
        self, target_key: str, upload_id: str, part_index: int
    ) -> ObjectInfo | None:
        return await self.storage.head(self.chunk_key(target_key, upload_id, part_index))

    def open_chunk(
        self, target_key: str, upload_id: str, part_index: int
    ) -> AsyncIterator[bytes]:
        """Stream a stored part. Raises FileNotFoundError when iterated if absent."""
        return self.storage.get_stream(self.chunk_key(target_key, upload_id, part_index))

    async def missing_parts(
        self, target_key: str, upload_id: str, total_parts: int
    ) -> list[int]:
        """Return the indexes in ``[0, total_parts)`` with no stored part."""
        missing = []
        for index in range(total_parts):
            if await self.head_chunk(target_key, upload_id, index) is None:
                missing.append(index)
        return missing

    async def has_all_parts(self, target_key: str, upload_id: str, total_parts: int) -> bool:
        stored = set(await self.storage.list_keys(self.upload_prefix(target_key, upload_id)))
        return all(
            self.chunk_key(target_key, upload_id, i) in stored for i in range(total_parts)
        )

    async def delete_chunk(self, target_key: str, upload_id: str, part_index: int) -> None:
        await self.storage.delete(self.chunk_key(target_key, upload_id, part_index))

    async def delete_chunks(
        self, target_key: str, upload_id: str, total_parts: int | None = None
    ) -> int:
        """Delete the parts of an upload, best-effort.

        Parts ``[0, total_parts)`` are deleted, plus any other part found
        under the upload's prefix (e.g. indexes sent before the upload was
        rejected). Individual failures are logged and counted, never raised.

        Returns:
            The number of parts that could not be deleted.
        """
        keys = set()
        if total_parts:
            keys.update(self.chunk_key(target_key, upload_id, i) for i in range(total_parts))
        try:
            keys.update(await self.storage.list_keys(self.upload_prefix(target_key, upload_id)))
        except Exception:
            logger.warning(
                "Failed to list parts of upload %s", upload_id, exc_info=True,
            )

        failures = 0
        for key in sorted(keys):
            try:
                await self.storage.delete(key)
            except Exception:
                failures += 1
                logger.warning("Failed to delete part %s", key, exc_info=True)
        return failures

    async def list_chunk_keys(self) -> list[str]:
        """Return every stored part key across all uploads."""
        return await self.storage.list_keys(f"{self.prefix}/")

    def parse_chunk_key(self, key: str) -> tuple[str, str, int] | None:
        """Split a part key into ``(target_key, upload_id, part_index)``.

        Returns None for keys that are not part keys.
        """
        if not key.startswith(f"{self.prefix}/"):
            return None
        rest = key[len(self.prefix) + 1:]
        head, _, name = rest.rpartition("/")
        target_key, _, upload_id = head.rpartition("/")
        if not target_key or not upload_id or not name.startswith("part"):
            return None
        index = name[len("part"):]
        if not index.isdigit():
            return None
        return target_key, upload_id, int(index)
