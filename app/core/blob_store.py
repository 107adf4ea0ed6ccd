"""
S3-compatible blob storage for note attachments and standalone images.

Keys are ``{note_id}/{attachment_id}`` for attachments and
``uploads/{image_id}`` for standalone images. There is no versioning:
``put`` on an existing key overwrites it.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, BinaryIO, Iterable, List, Optional, Union

import boto3
from botocore.client import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from app.core.config import settings
from app.core.exceptions import StorageError

logger = logging.getLogger(__name__)

# S3 DeleteObjects accepts at most 1000 keys per call
DELETE_BATCH_SIZE = 1000

_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}


@dataclass
class BlobObject:
    key: str
    body: bytes
    content_type: Optional[str] = None
    size: int = 0
    etag: Optional[str] = None


def attachment_key(note_id: int, file_id: str) -> str:
    return f"{note_id}/{file_id}"


def standalone_image_key(image_id: str) -> str:
    return f"uploads/{image_id}"


def note_prefix(note_id: int) -> str:
    return f"{note_id}/"


def _is_missing(error: ClientError) -> bool:
    return str(error.response.get("Error", {}).get("Code")) in _MISSING_CODES


class BlobStore:
    """Thin async wrapper over a boto3 S3 client"""

    def __init__(
        self,
        bucket: str,
        endpoint_url: Optional[str] = None,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        region: str = "auto",
        max_retry_attempts: int = 3,
    ):
        self.bucket = bucket
        self.endpoint_url = endpoint_url or None
        self.access_key_id = access_key_id or None
        self.secret_access_key = secret_access_key or None
        self.region = region
        self.max_retry_attempts = max_retry_attempts
        self._client = None

    @classmethod
    def from_settings(cls) -> "BlobStore":
        return cls(
            bucket=settings.S3_BUCKET_NAME,
            endpoint_url=settings.S3_ENDPOINT_URL,
            access_key_id=settings.S3_ACCESS_KEY_ID,
            secret_access_key=settings.S3_SECRET_ACCESS_KEY,
            region=settings.S3_REGION,
            max_retry_attempts=settings.S3_MAX_RETRY_ATTEMPTS,
        )

    def _ensure_client(self):
        if self._client is None:
            boto_config = BotoConfig(
                signature_version="s3v4",
                region_name=self.region,
                retries={"max_attempts": self.max_retry_attempts, "mode": "standard"},
            )
            self._client = boto3.client(
                "s3",
                endpoint_url=self.endpoint_url,
                aws_access_key_id=self.access_key_id,
                aws_secret_access_key=self.secret_access_key,
                config=boto_config,
            )
        return self._client

    async def _call(self, operation: str, **kwargs) -> Any:
        client = self._ensure_client()
        try:
            return await asyncio.to_thread(getattr(client, operation), **kwargs)
        except ClientError:
            raise
        except BotoCoreError as e:
            raise StorageError(f"Blob storage {operation} failed", details={"error": str(e)}) from e

    async def initialize(self) -> None:
        try:
            await self._call("head_bucket", Bucket=self.bucket)
        except ClientError as e:
            raise StorageError("Blob storage bucket is not reachable", details={"error": str(e)}) from e
        logger.info("Blob storage ready (bucket=%s)", self.bucket)

    async def close(self) -> None:
        self._client = None

    async def put(self, key: str, data: Union[bytes, BinaryIO], content_type: Optional[str] = None) -> None:
        """Store ``data`` under ``key``, overwriting any existing object"""
        extra = {"ContentType": content_type} if content_type else {}
        try:
            await self._call("put_object", Bucket=self.bucket, Key=key, Body=data, **extra)
        except ClientError as e:
            raise StorageError(f"Failed to store {key}", details={"error": str(e)}) from e

    async def get(self, key: str) -> Optional[BlobObject]:
        try:
            response = await self._call("get_object", Bucket=self.bucket, Key=key)
        except ClientError as e:
            if _is_missing(e):
                return None
            raise StorageError(f"Failed to read {key}", details={"error": str(e)}) from e

        body = await asyncio.to_thread(response["Body"].read)
        return BlobObject(
            key=key,
            body=body,
            content_type=response.get("ContentType"),
            size=response.get("ContentLength", len(body)),
            etag=response.get("ETag"),
        )

    async def head(self, key: str) -> bool:
        try:
            await self._call("head_object", Bucket=self.bucket, Key=key)
        except ClientError as e:
            if _is_missing(e):
                return False
            raise StorageError(f"Failed to inspect {key}", details={"error": str(e)}) from e
        return True

    async def copy(self, source_key: str, dest_key: str) -> None:
        try:
            await self._call(
                "copy_object",
                Bucket=self.bucket,
                Key=dest_key,
                CopySource={"Bucket": self.bucket, "Key": source_key},
            )
        except ClientError as e:
            raise StorageError(f"Failed to copy {source_key}", details={"error": str(e)}) from e

    async def delete(self, keys: Iterable[str]) -> None:
        keys = list(dict.fromkeys(keys))
        for start in range(0, len(keys), DELETE_BATCH_SIZE):
            batch = keys[start:start + DELETE_BATCH_SIZE]
            try:
                await self._call(
                    "delete_objects",
                    Bucket=self.bucket,
                    Delete={"Objects": [{"Key": k} for k in batch], "Quiet": True},
                )
            except ClientError as e:
                raise StorageError("Failed to delete objects", details={"error": str(e), "keys": batch}) from e

    async def list(self, prefix: str) -> List[str]:
        """Return every key under ``prefix``"""
        keys: List[str] = []
        kwargs = {"Bucket": self.bucket, "Prefix": prefix}
        while True:
            try:
                response = await self._call("list_objects_v2", **kwargs)
            except ClientError as e:
                raise StorageError(f"Failed to list {prefix}", details={"error": str(e)}) from e
            keys.extend(obj["Key"] for obj in response.get("Contents", []))
            if not response.get("IsTruncated"):
                return keys
            kwargs["ContinuationToken"] = response["NextContinuationToken"]


blob_store: Optional[BlobStore] = None


async def init_blob_store() -> BlobStore:
    global blob_store
    blob_store = BlobStore.from_settings()
    await blob_store.initialize()
    return blob_store


async def get_blob_store() -> BlobStore:
    """Get blob store"""
    return blob_store
