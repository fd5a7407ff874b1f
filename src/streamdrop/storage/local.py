"""Local filesystem object store for StreamDrop.

Implements the ObjectStore protocol on the local filesystem.

Layout::

    {root}/.blobs/{hh}/{sha256(key)}.{version}   object bodies
    {root}/.meta/{key}.json                      object metadata
    {root}/.tmp/{random}                         in-flight writes

The metadata file names the body version it belongs to, and it is the
commit point of every write: a body is written under a fresh version name
first, then the metadata file is atomically replaced to point at it, then
the superseded body is removed. Readers resolve the metadata first, so
they see either the previous complete object or the new one.

Crash-only design:
    - Atomic writes via temp-fsync-rename pattern.
    - Never acknowledge before data is fsync'd to disk.
    - Startup empties ``.tmp/`` and removes bodies no metadata refers to.
"""

import hashlib
import json
import logging
import os
import uuid
from collections.abc import AsyncIterator
from pathlib import Path

from streamdrop.storage.backend import DEFAULT_CONTENT_TYPE, ObjectInfo, now_iso

logger = logging.getLogger(__name__)

# Streaming chunk size: 64 KB
_CHUNK_SIZE = 64 * 1024
_META_SUFFIX = ".json"


class LocalStorageBackend:
    """Object store that persists blobs on the local filesystem.

    Attributes:
        root: The root directory for all stored data.
    """

    def __init__(self, root: str | Path) -> None:
        """Initialize the local storage backend.

        Args:
            root: Root directory path for object storage.
        """
        self.root = Path(root)
        self._meta_root = self.root / ".meta"
        self._blob_root = self.root / ".blobs"
        self._tmp_root = self.root / ".tmp"

    def _meta_path(self, key: str) -> Path:
        """Return the metadata file path for ``key``.

        Raises:
            ValueError: If the key would escape the storage root.
        """
        path = (self._meta_root / f"{key}{_META_SUFFIX}").resolve()
        if not path.is_relative_to(self._meta_root.resolve()):
            raise ValueError(f"Invalid object key: {key!r}")
        return path

    def _blob_path(self, key: str, version: str) -> Path:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return self._blob_root / digest[:2] / f"{digest}.{version}"

    async def init(self) -> None:
        """Create the storage directories and recover from interrupted writes.

        Crash-only design: every startup is a recovery. Remove whatever an
        interrupted write left in ``.tmp/`` and bodies that no metadata file
        references.
        """
        self._meta_root.mkdir(parents=True, exist_ok=True)
        self._blob_root.mkdir(parents=True, exist_ok=True)
        self._tmp_root.mkdir(parents=True, exist_ok=True)

        self._clean_temp_files()
        self._clean_orphan_blobs()

        logger.info("Local storage backend initialized at %s", self.root)

    def _clean_temp_files(self) -> None:
        """Remove orphan temp files left by interrupted atomic writes."""
        count = 0
        for tmp in self._tmp_root.iterdir():
            try:
                tmp.unlink()
                count += 1
            except OSError:
                logger.warning("Failed to remove temp file %s", tmp, exc_info=True)
        if count > 0:
            logger.info("Cleaned %d orphan temp files on startup", count)

    def _clean_orphan_blobs(self) -> None:
        """Remove bodies whose metadata commit never happened."""
        referenced: set[str] = set()
        for meta_file in self._meta_root.rglob(f"*{_META_SUFFIX}"):
            try:
                record = json.loads(meta_file.read_text())
            except (OSError, ValueError):
                continue
            blob = self._blob_path(record.get("key", ""), record.get("version", ""))
            referenced.add(str(blob))

        count = 0
        for blob in self._blob_root.rglob("*"):
            if blob.is_file() and str(blob) not in referenced:
                try:
                    blob.unlink()
                    count += 1
                except OSError:
                    pass
        if count > 0:
            logger.info("Cleaned %d unreferenced object bodies on startup", count)

    async def close(self) -> None:
        """No-op for local filesystem backend."""
        pass

    def _read_record(self, key: str) -> dict | None:
        try:
            return json.loads(self._meta_path(key).read_text())
        except FileNotFoundError:
            return None

    def _new_tmp_path(self) -> Path:
        self._tmp_root.mkdir(parents=True, exist_ok=True)
        return self._tmp_root / uuid.uuid4().hex

    def _write_atomic(self, path: Path, chunks) -> None:
        """Write byte chunks to ``path`` via temp-fsync-rename."""
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._new_tmp_path()
        try:
            fd = os.open(str(tmp), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o644)
            try:
                for chunk in chunks:
                    os.write(fd, chunk)
                os.fsync(fd)
            finally:
                os.close(fd)
            tmp.replace(path)
        except Exception:
            try:
                tmp.unlink(missing_ok=True)
            except OSError:
                pass
            raise

    def _commit(
        self,
        key: str,
        version: str,
        size: int,
        etag: str,
        content_type: str,
        custom_metadata: dict[str, str] | None,
    ) -> ObjectInfo:
        """Point the metadata for ``key`` at a fully written body version."""
        info = ObjectInfo(
            key=key,
            size=size,
            etag=etag,
            content_type=content_type or DEFAULT_CONTENT_TYPE,
            custom_metadata={str(k): str(v) for k, v in (custom_metadata or {}).items()},
            last_modified=now_iso(),
        )
        previous = self._read_record(key)
        record = info.to_dict()
        record["version"] = version
        self._write_atomic(self._meta_path(key), [json.dumps(record).encode("utf-8")])

        if previous is not None and previous.get("version") != version:
            try:
                self._blob_path(key, previous["version"]).unlink(missing_ok=True)
            except OSError:
                logger.warning("Failed to remove superseded body for %s", key, exc_info=True)
        return info

    async def put(
        self,
        key: str,
        data: bytes,
        content_type: str = DEFAULT_CONTENT_TYPE,
        custom_metadata: dict[str, str] | None = None,
    ) -> ObjectInfo:
        """Store a blob's bytes on the local filesystem.

        Args:
            key: The object key.
            data: The raw bytes to store.
            content_type: MIME type recorded with the blob.
            custom_metadata: Optional string map recorded with the blob.

        Returns:
            The metadata of the stored blob.
        """
        self._meta_path(key)  # validates key before any write
        version = uuid.uuid4().hex
        blob = self._blob_path(key, version)
        self._write_atomic(blob, [data])
        try:
            return self._commit(
                key, version, len(data), hashlib.md5(data).hexdigest(),
                content_type, custom_metadata,
            )
        except Exception:
            blob.unlink(missing_ok=True)
            raise

    async def put_stream(
        self,
        key: str,
        stream: AsyncIterator[bytes],
        content_type: str = DEFAULT_CONTENT_TYPE,
        custom_metadata: dict[str, str] | None = None,
    ) -> ObjectInfo:
        """Stream-write a blob from an async iterator.

        Chunks go straight to a temp file, so memory use does not depend on
        the object size. If the stream raises, the temp file is removed and
        nothing is published.

        Args:
            key: The object key.
            stream: Async iterator of byte chunks.
            content_type: MIME type recorded with the blob.
            custom_metadata: Optional string map recorded with the blob.

        Returns:
            The metadata of the stored blob.
        """
        self._meta_path(key)
        version = uuid.uuid4().hex
        blob = self._blob_path(key, version)
        blob.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._new_tmp_path()
        md5 = hashlib.md5()
        total = 0

        try:
            fd = os.open(str(tmp), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o644)
            try:
                async for chunk in stream:
                    os.write(fd, chunk)
                    md5.update(chunk)
                    total += len(chunk)
                os.fsync(fd)
            finally:
                os.close(fd)
            tmp.replace(blob)
        except BaseException:
            try:
                tmp.unlink(missing_ok=True)
            except OSError:
                pass
            raise

        try:
            return self._commit(key, version, total, md5.hexdigest(), content_type, custom_metadata)
        except Exception:
            blob.unlink(missing_ok=True)
            raise

    async def head(self, key: str) -> ObjectInfo | None:
        """Return the metadata for ``key``, or None if it does not exist."""
        record = self._read_record(key)
        if record is None:
            return None
        return ObjectInfo.from_dict(record)

    def _open_current(self, key: str):
        """Open the body the metadata currently points at.

        Retries once when the body is replaced between reading the metadata
        and opening the file.
        """
        for _ in range(2):
            record = self._read_record(key)
            if record is None:
                break
            try:
                return open(self._blob_path(key, record["version"]), "rb")
            except FileNotFoundError:
                continue
        raise FileNotFoundError(f"Object not found: {key}")

    async def get_stream(
        self, key: str, offset: int = 0, length: int | None = None
    ) -> AsyncIterator[bytes]:
        """Retrieve a blob as an async byte stream.

        Yields 64 KB chunks from the specified offset up to ``length``
        bytes (or end of file if ``length`` is None).

        Args:
            key: The object key.
            offset: Byte offset to start reading from.
            length: Number of bytes to read, or None for all remaining.

        Yields:
            Chunks of bytes from the blob.

        Raises:
            FileNotFoundError: If the blob does not exist.
        """
        remaining = length

        with self._open_current(key) as f:
            if offset > 0:
                f.seek(offset)

            while True:
                if remaining is not None:
                    to_read = min(_CHUNK_SIZE, remaining)
                    if to_read <= 0:
                        break
                else:
                    to_read = _CHUNK_SIZE

                chunk = f.read(to_read)
                if not chunk:
                    break

                yield chunk

                if remaining is not None:
                    remaining -= len(chunk)

    async def delete(self, key: str) -> None:
        """Delete a blob from the local filesystem.

        Silently ignores missing keys (idempotent). Removes the metadata
        first so readers stop resolving the body, then the body, then any
        empty metadata directories.

        Args:
            key: The object key.
        """
        meta_path = self._meta_path(key)
        record = self._read_record(key)
        if record is None:
            return

        try:
            meta_path.unlink()
        except FileNotFoundError:
            return
        self._blob_path(key, record["version"]).unlink(missing_ok=True)

        parent = meta_path.parent
        while parent != self._meta_root and parent.is_relative_to(self._meta_root):
            try:
                parent.rmdir()  # Only removes empty dirs
            except OSError:
                break
            parent = parent.parent

    async def list_keys(self, prefix: str = "") -> list[str]:
        """Return all keys starting with ``prefix``, sorted."""
        keys = []
        for meta_file in self._meta_root.rglob(f"*{_META_SUFFIX}"):
            key = meta_file.relative_to(self._meta_root).as_posix()[: -len(_META_SUFFIX)]
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)
