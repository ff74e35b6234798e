"""
S3 object store implementation.

Uses aiobotocore for async access to S3. Uploads always go through the
multipart API so that an archive of any size is sent part by part while it
is still being produced.

Invariants:
    - At most one upload part is buffered per put()
    - A failed put() aborts its multipart upload, so no partial object
      ever becomes visible under the destination key
    - Read streams are closed even when the caller fails mid-read

How to change safely:
    - Test with MinIO or LocalStack before deploying to AWS
    - Keep upload_part_size_bytes >= 5MB, S3 rejects smaller non-final parts
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator

from aiobotocore.session import get_session
from botocore.exceptions import BotoCoreError, ClientError

from .._aws import client_kwargs, error_code
from ..errors import ObjectNotFoundError, ObjectStoreError
from .base import ByteSource

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = {"NoSuchKey", "404", "NotFound"}


class S3ObjectReader:
    """Read stream over one S3 object.

    Attributes:
        key: Object key
        content_length: Size reported by GetObject
    """

    def __init__(self, key: str, response: dict[str, Any], chunk_size: int) -> None:
        self.key = key
        self.content_length: int | None = response.get("ContentLength")
        self._body = response["Body"]
        self._chunk_size = chunk_size
        self._closed = False

    async def chunks(self) -> AsyncIterator[bytes]:
        """Yield the object's bytes in chunks of at most chunk_size."""
        while True:
            try:
                chunk = await self._body.read(self._chunk_size)
            except Exception as e:
                raise ObjectStoreError(f"Failed to read s3 object {self.key}: {e}", key=self.key) from e
            if not chunk:
                return
            yield chunk

    async def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._body.close()


class S3ObjectStore:
    """S3 implementation of the ObjectStore protocol.

    Attributes:
        config: S3 configuration
        read_chunk_bytes: Size of each read from a source object
        upload_part_size_bytes: Multipart upload part size

    Example:
        >>> store = S3ObjectStore(S3Config(bucket="media"))
        >>> await store.connect()
        >>> reader = await store.get("images/a.jpg")
    """

    def __init__(
        self,
        config: Any,
        read_chunk_bytes: int = 64 * 1024,
        upload_part_size_bytes: int = 8 * 1024 * 1024,
    ) -> None:
        """Initialize the store.

        Args:
            config: S3Config instance
            read_chunk_bytes: Size of each read from a source object
            upload_part_size_bytes: Multipart upload part size
        """
        self.config = config
        self.read_chunk_bytes = read_chunk_bytes
        self.upload_part_size_bytes = upload_part_size_bytes
        self._session = None
        self._client = None
        self._client_ctx = None

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> None:
        """Create the S3 client."""
        if self._client:
            return

        self._session = get_session()
        self._client_ctx = self._session.create_client(
            "s3",
            **client_kwargs(
                self.config.region,
                self.config.endpoint_url,
                self.config.access_key_id,
                self.config.secret_access_key,
            ),
        )
        self._client = await self._client_ctx.__aenter__()
        logger.debug(
            "S3 client created",
            extra={"bucket": self.config.bucket, "endpoint": self.config.endpoint_url or "AWS"},
        )

    async def close(self) -> None:
        """Close the S3 client."""
        if self._client:
            await self._client_ctx.__aexit__(None, None, None)
            self._client = None
            self._session = None

    def _require_client(self) -> Any:
        if not self._client:
            raise ObjectStoreError("S3 object store is not connected")
        return self._client

    async def list_pages(self, prefix: str, page_size: int = 1000) -> AsyncIterator[list[str]]:
        """Yield pages of keys under prefix using ListObjectsV2."""
        client = self._require_client()
        paginator = client.get_paginator("list_objects_v2")

        try:
            async for page in paginator.paginate(
                Bucket=self.config.bucket,
                Prefix=prefix,
                PaginationConfig={"PageSize": page_size},
            ):
                yield [obj["Key"] for obj in page.get("Contents", [])]
        except (ClientError, BotoCoreError) as e:
            raise ObjectStoreError(f"Failed to list s3://{self.config.bucket}/{prefix}: {e}") from e

    async def get(self, key: str) -> S3ObjectReader:
        """Open a streaming read of an object."""
        client = self._require_client()
        try:
            response = await client.get_object(Bucket=self.config.bucket, Key=key)
        except ClientError as e:
            if error_code(e) in _NOT_FOUND_CODES:
                raise ObjectNotFoundError(key) from e
            raise ObjectStoreError(f"Failed to get s3 object {key}: {e}", key=key) from e
        except BotoCoreError as e:
            raise ObjectStoreError(f"Failed to get s3 object {key}: {e}", key=key) from e

        return S3ObjectReader(key, response, self.read_chunk_bytes)

    async def put(
        self,
        key: str,
        source: ByteSource,
        content_type: str = "application/octet-stream",
    ) -> int:
        """Upload a byte source as a multipart upload.

        Parts are sent as soon as upload_part_size_bytes have been read. The
        upload is completed only after the source reports EOF and aborted
        on any failure, including failures raised by the source itself.
        """
        client = self._require_client()
        bucket = self.config.bucket

        try:
            upload = await client.create_multipart_upload(
                Bucket=bucket,
                Key=key,
                ContentType=content_type,
            )
        except (ClientError, BotoCoreError) as e:
            raise ObjectStoreError(f"Failed to start upload of {key}: {e}", key=key) from e

        upload_id = upload["UploadId"]
        parts: list[dict[str, Any]] = []
        buffer = bytearray()
        total = 0

        try:
            while True:
                chunk = await source.read()
                if chunk:
                    buffer += chunk
                    total += len(chunk)

                # The last part may be short; an empty object still needs one part
                eof = not chunk
                if len(buffer) >= self.upload_part_size_bytes or (eof and (buffer or not parts)):
                    part_number = len(parts) + 1
                    try:
                        response = await client.upload_part(
                            Bucket=bucket,
                            Key=key,
                            UploadId=upload_id,
                            PartNumber=part_number,
                            Body=bytes(buffer),
                        )
                    except (ClientError, BotoCoreError) as e:
                        raise ObjectStoreError(
                            f"Failed to upload part {part_number} of {key}: {e}", key=key
                        ) from e
                    parts.append({"ETag": response["ETag"], "PartNumber": part_number})
                    buffer.clear()

                if eof:
                    break

            try:
                await client.complete_multipart_upload(
                    Bucket=bucket,
                    Key=key,
                    UploadId=upload_id,
                    MultipartUpload={"Parts": parts},
                )
            except (ClientError, BotoCoreError) as e:
                raise ObjectStoreError(f"Failed to complete upload of {key}: {e}", key=key) from e

        except BaseException:
            await self._abort_upload(key, upload_id)
            raise

        logger.debug(
            "Uploaded object",
            extra={"key": key, "size_bytes": total, "parts": len(parts)},
        )
        return total

    async def _abort_upload(self, key: str, upload_id: str) -> None:
        """Abort a multipart upload, logging (not raising) abort failures."""
        try:
            await self._client.abort_multipart_upload(
                Bucket=self.config.bucket,
                Key=key,
                UploadId=upload_id,
            )
            logger.info("Aborted multipart upload", extra={"key": key, "upload_id": upload_id})
        except (ClientError, BotoCoreError) as e:
            logger.warning(
                f"Failed to abort multipart upload of {key}: {e}",
                extra={"key": key, "upload_id": upload_id},
            )

    async def delete(self, key: str) -> None:
        """Delete an object (S3 deletes are idempotent)."""
        client = self._require_client()
        try:
            await client.delete_object(Bucket=self.config.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise ObjectStoreError(f"Failed to delete s3 object {key}: {e}", key=key) from e
