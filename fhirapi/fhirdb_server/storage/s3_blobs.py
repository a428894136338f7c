"""
S3 blob backend for the resource history log.

History entries are stored as one object per resource version:
    s3://<bucket>/<prefix>/<type>/<id>/<versionId>

Invariants:
    - put() returns only after S3 acknowledges the object
    - Objects are never overwritten in normal operation (versionIds are unique)
    - delete() of a missing key succeeds (S3 DeleteObject is idempotent)

How to change safely:
    - Never change the key layout; existing history would become unreachable
    - Test against MinIO (S3_ENDPOINT) before changing client options
"""

from __future__ import annotations

import logging
from typing import Any

from aiobotocore.session import get_session
from botocore.exceptions import BotoCoreError, ClientError

from ..errors import BlobStoreError
from .base import BlobInfo

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = {"NoSuchKey", "404", "NotFound"}


class S3BlobStore:
    """BlobStore over an S3 bucket using aiobotocore.

    Attributes:
        s3_config: S3 configuration (bucket, region, endpoint, credentials)

    Example:
        >>> blobs = S3BlobStore(S3Config(bucket="fhirhistory"))
        >>> await blobs.connect()
        >>> await blobs.put("Patient/p1/v1", b"{...}")
        >>> await blobs.close()
    """

    def __init__(self, s3_config: Any) -> None:
        """Initialize the blob store.

        Args:
            s3_config: S3Config instance
        """
        self.s3_config = s3_config
        self._prefix = s3_config.history_prefix.strip("/")
        self._session = None
        self._s3_ctx = None
        self._s3_client = None

    @property
    def is_connected(self) -> bool:
        return self._s3_client is not None

    async def connect(self) -> None:
        """Initialize S3 client."""
        if self._s3_client is not None:
            return

        self._session = get_session()

        client_kwargs = {
            "region_name": self.s3_config.region,
        }

        if self.s3_config.endpoint_url:
            client_kwargs["endpoint_url"] = self.s3_config.endpoint_url

        if self.s3_config.access_key_id:
            client_kwargs["aws_access_key_id"] = self.s3_config.access_key_id
            client_kwargs["aws_secret_access_key"] = self.s3_config.secret_access_key

        self._s3_ctx = self._session.create_client("s3", **client_kwargs)
        self._s3_client = await self._s3_ctx.__aenter__()

        logger.info(
            "Connected to S3 history bucket",
            extra={"bucket": self.s3_config.bucket, "prefix": self._prefix},
        )

    async def close(self) -> None:
        """Close S3 client."""
        if self._s3_client:
            await self._s3_ctx.__aexit__(None, None, None)
            self._s3_client = None
            self._s3_ctx = None

    def _full_key(self, key: str) -> str:
        return f"{self._prefix}/{key}" if self._prefix else key

    def _strip_prefix(self, full_key: str) -> str:
        if self._prefix and full_key.startswith(self._prefix + "/"):
            return full_key[len(self._prefix) + 1 :]
        return full_key

    def _client(self) -> Any:
        if self._s3_client is None:
            raise BlobStoreError("S3 blob store is not connected", bucket=self.s3_config.bucket)
        return self._s3_client

    async def put(self, key: str, data: bytes) -> None:
        client = self._client()
        try:
            await client.put_object(
                Bucket=self.s3_config.bucket,
                Key=self._full_key(key),
                Body=data,
                ContentType="application/fhir+json",
            )
        except (ClientError, BotoCoreError) as e:
            raise BlobStoreError(f"Failed to put {key}: {e}", key=key) from e

    async def get(self, key: str) -> bytes | None:
        client = self._client()
        try:
            response = await client.get_object(
                Bucket=self.s3_config.bucket,
                Key=self._full_key(key),
            )
            async with response["Body"] as stream:
                return await stream.read()
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in _NOT_FOUND_CODES:
                return None
            raise BlobStoreError(f"Failed to get {key}: {e}", key=key) from e
        except BotoCoreError as e:
            raise BlobStoreError(f"Failed to get {key}: {e}", key=key) from e

    async def delete(self, key: str) -> None:
        client = self._client()
        try:
            await client.delete_object(
                Bucket=self.s3_config.bucket,
                Key=self._full_key(key),
            )
        except (ClientError, BotoCoreError) as e:
            raise BlobStoreError(f"Failed to delete {key}: {e}", key=key) from e

    async def list(self, prefix: str) -> list[BlobInfo]:
        client = self._client()
        blobs = []
        try:
            paginator = client.get_paginator("list_objects_v2")
            async for page in paginator.paginate(
                Bucket=self.s3_config.bucket, Prefix=self._full_key(prefix)
            ):
                for obj in page.get("Contents", []):
                    blobs.append(
                        BlobInfo(
                            key=self._strip_prefix(obj["Key"]),
                            size=obj["Size"],
                            last_modified=obj["LastModified"],
                        )
                    )
        except (ClientError, BotoCoreError) as e:
            raise BlobStoreError(f"Failed to list {prefix}: {e}", prefix=prefix) from e

        return blobs
