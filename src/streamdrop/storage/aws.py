"""S3-compatible gateway object store for StreamDrop.

Proxies all blob operations to an upstream S3-compatible bucket (AWS S3,
Cloudflare R2, MinIO) via aiobotocore. Content type and custom metadata
travel as native S3 object metadata.

Key mapping:
    {prefix}{key}

Credentials are resolved via the standard AWS credential chain
(env vars, ~/.aws/credentials, IAM role, etc.) unless explicit keys are
configured.
"""

import hashlib
import logging
from collections.abc import AsyncIterator

from aiobotocore.session import AioSession
from botocore.exceptions import ClientError

from streamdrop.storage.backend import DEFAULT_CONTENT_TYPE, ObjectInfo, now_iso

logger = logging.getLogger(__name__)

# Streaming chunk size: 64 KB (matches local backend)
_CHUNK_SIZE = 64 * 1024
# Upstream multipart part size; S3 requires >= 5 MiB for all but the last part.
_UPSTREAM_PART_SIZE = 8 * 1024 * 1024

_NOT_FOUND_CODES = ("NoSuchKey", "404", "NotFound")


def _error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "")


class AWSGatewayBackend:
    """Object store that proxies to an S3-compatible bucket.

    Attributes:
        bucket_name: The upstream bucket name.
        region: The region for the bucket.
        prefix: Key prefix for all objects in the upstream bucket.
    """

    def __init__(
        self,
        bucket_name: str,
        region: str = "us-east-1",
        prefix: str = "",
        endpoint_url: str = "",
        use_path_style: bool = False,
        access_key_id: str = "",
        secret_access_key: str = "",
    ) -> None:
        self.bucket_name = bucket_name
        self.region = region
        self.prefix = prefix
        self.endpoint_url = endpoint_url
        self.use_path_style = use_path_style
        self.access_key_id = access_key_id
        self.secret_access_key = secret_access_key
        self._session = AioSession()
        self._client = None
        self._client_ctx = None

    def _s3_key(self, key: str) -> str:
        """Map a StreamDrop key to an upstream S3 key."""
        return f"{self.prefix}{key}"

    async def init(self) -> None:
        """Create the aiobotocore S3 client and verify the upstream bucket exists.

        Raises:
            ValueError: If the upstream bucket does not exist or is inaccessible.
        """
        client_kwargs: dict = {"region_name": self.region}
        if self.endpoint_url:
            client_kwargs["endpoint_url"] = self.endpoint_url
        if self.use_path_style:
            from botocore.config import Config as BotoConfig
            client_kwargs["config"] = BotoConfig(s3={"addressing_style": "path"})

        if self.access_key_id and self.secret_access_key:
            session = AioSession()
            session.set_credentials(self.access_key_id, self.secret_access_key)
            self._session = session
        self._client_ctx = self._session.create_client("s3", **client_kwargs)
        self._client = await self._client_ctx.__aenter__()

        try:
            await self._client.head_bucket(Bucket=self.bucket_name)
        except ClientError as e:
            await self._client_ctx.__aexit__(None, None, None)
            self._client = None
            self._client_ctx = None
            raise ValueError(
                f"Cannot access upstream S3 bucket '{self.bucket_name}': {_error_code(e)}"
            ) from e

        logger.info(
            "S3 gateway backend initialized: bucket=%s region=%s prefix='%s'",
            self.bucket_name,
            self.region,
            self.prefix,
        )

    async def close(self) -> None:
        """Close the aiobotocore client session."""
        if self._client_ctx is not None:
            await self._client_ctx.__aexit__(None, None, None)
            self._client = None
            self._client_ctx = None

    async def put(
        self,
        key: str,
        data: bytes,
        content_type: str = DEFAULT_CONTENT_TYPE,
        custom_metadata: dict[str, str] | None = None,
    ) -> ObjectInfo:
        """Upload a blob with a single PutObject call.

        Computes MD5 locally for a consistent ETag (upstream may differ with SSE).
        """
        metadata = {str(k): str(v) for k, v in (custom_metadata or {}).items()}
        await self._client.put_object(
            Bucket=self.bucket_name,
            Key=self._s3_key(key),
            Body=data,
            ContentType=content_type or DEFAULT_CONTENT_TYPE,
            Metadata=metadata,
        )
        return ObjectInfo(
            key=key,
            size=len(data),
            etag=hashlib.md5(data).hexdigest(),
            content_type=content_type or DEFAULT_CONTENT_TYPE,
            custom_metadata=metadata,
            last_modified=now_iso(),
        )

    async def put_stream(
        self,
        key: str,
        stream: AsyncIterator[bytes],
        content_type: str = DEFAULT_CONTENT_TYPE,
        custom_metadata: dict[str, str] | None = None,
    ) -> ObjectInfo:
        """Stream-write a blob using an upstream multipart upload.

        Buffers at most one upstream part (8 MiB) at a time. Streams that
        fit in a single part are sent with PutObject. The upstream object
        only becomes visible on CompleteMultipartUpload; any failure aborts
        the upstream upload.
        """
        s3_key = self._s3_key(key)
        metadata = {str(k): str(v) for k, v in (custom_metadata or {}).items()}
        content_type = content_type or DEFAULT_CONTENT_TYPE
        md5 = hashlib.md5()
        total = 0
        buffer = bytearray()
        aws_upload_id = None
        parts_manifest: list[dict] = []

        try:
            async for chunk in stream:
                md5.update(chunk)
                total += len(chunk)
                buffer.extend(chunk)
                if len(buffer) < _UPSTREAM_PART_SIZE:
                    continue
                if aws_upload_id is None:
                    created = await self._client.create_multipart_upload(
                        Bucket=self.bucket_name,
                        Key=s3_key,
                        ContentType=content_type,
                        Metadata=metadata,
                    )
                    aws_upload_id = created["UploadId"]
                resp = await self._client.upload_part(
                    Bucket=self.bucket_name,
                    Key=s3_key,
                    UploadId=aws_upload_id,
                    PartNumber=len(parts_manifest) + 1,
                    Body=bytes(buffer),
                )
                parts_manifest.append({"ETag": resp["ETag"], "PartNumber": len(parts_manifest) + 1})
                buffer.clear()

            if aws_upload_id is None:
                await self._client.put_object(
                    Bucket=self.bucket_name,
                    Key=s3_key,
                    Body=bytes(buffer),
                    ContentType=content_type,
                    Metadata=metadata,
                )
            else:
                if buffer:
                    resp = await self._client.upload_part(
                        Bucket=self.bucket_name,
                        Key=s3_key,
                        UploadId=aws_upload_id,
                        PartNumber=len(parts_manifest) + 1,
                        Body=bytes(buffer),
                    )
                    parts_manifest.append(
                        {"ETag": resp["ETag"], "PartNumber": len(parts_manifest) + 1}
                    )
                await self._client.complete_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=s3_key,
                    UploadId=aws_upload_id,
                    MultipartUpload={"Parts": parts_manifest},
                )
        except BaseException:
            if aws_upload_id is not None:
                try:
                    await self._client.abort_multipart_upload(
                        Bucket=self.bucket_name,
                        Key=s3_key,
                        UploadId=aws_upload_id,
                    )
                except Exception:
                    logger.warning("Failed to abort upstream multipart upload %s", aws_upload_id)
            raise

        return ObjectInfo(
            key=key,
            size=total,
            etag=md5.hexdigest(),
            content_type=content_type,
            custom_metadata=metadata,
            last_modified=now_iso(),
        )

    async def head(self, key: str) -> ObjectInfo | None:
        """Return upstream metadata for ``key``, or None if absent."""
        try:
            resp = await self._client.head_object(Bucket=self.bucket_name, Key=self._s3_key(key))
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                return None
            raise

        last_modified = resp.get("LastModified")
        return ObjectInfo(
            key=key,
            size=int(resp.get("ContentLength", 0)),
            etag=resp.get("ETag", "").strip('"'),
            content_type=resp.get("ContentType") or DEFAULT_CONTENT_TYPE,
            custom_metadata=dict(resp.get("Metadata") or {}),
            last_modified=(
                last_modified.strftime("%Y-%m-%dT%H:%M:%S.%fZ") if last_modified else ""
            ),
        )

    async def get_stream(
        self, key: str, offset: int = 0, length: int | None = None
    ) -> AsyncIterator[bytes]:
        """Stream a blob from the upstream bucket in 64KB chunks.

        Raises:
            FileNotFoundError: If the blob does not exist.
        """
        kwargs: dict = {"Bucket": self.bucket_name, "Key": self._s3_key(key)}
        if offset > 0 or length is not None:
            if length is not None:
                kwargs["Range"] = f"bytes={offset}-{offset + length - 1}"
            else:
                kwargs["Range"] = f"bytes={offset}-"

        try:
            resp = await self._client.get_object(**kwargs)
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                raise FileNotFoundError(f"Object not found: {key}") from e
            raise

        async with resp["Body"] as stream:
            while True:
                chunk = await stream.read(_CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk

    async def delete(self, key: str) -> None:
        """Delete a blob. Idempotent: S3 delete_object does not error on missing keys."""
        await self._client.delete_object(Bucket=self.bucket_name, Key=self._s3_key(key))

    async def list_keys(self, prefix: str = "") -> list[str]:
        """List keys under ``prefix`` with the list_objects_v2 paginator."""
        keys: list[str] = []
        paginator = self._client.get_paginator("list_objects_v2")
        async for page in paginator.paginate(
            Bucket=self.bucket_name, Prefix=self._s3_key(prefix)
        ):
            for obj in page.get("Contents", []):
                keys.append(obj["Key"][len(self.prefix):])
        return sorted(keys)
