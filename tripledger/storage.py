"""
Storage abstraction for S3-compatible object storage and in-memory testing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)


class StorageError(RuntimeError):
    """Raised when the storage provider rejects an operation."""


class StorageClient(Protocol):
    """Defines the operations the API needs from object storage."""

    def upload_bytes(self, path: str, data: bytes, content_type: str) -> None:
        ...

    def presign_get(self, path: str, expires_in: int = 3600) -> str:
        ...

    def delete(self, path: str) -> None:
        ...

    def exists(self, path: str) -> bool:
        ...


@dataclass
class InMemoryStorageClient:
    """Test double for storage interactions."""

    base_url: str = "https://example.test/storage"
    stored_objects: dict = field(default_factory=dict)
    content_types: dict = field(default_factory=dict)

    def upload_bytes(self, path: str, data: bytes, content_type: str) -> None:
        if path in self.stored_objects:
            raise StorageError(f"Object already exists: {path}")
        self.stored_objects[path] = bytes(data)
        self.content_types[path] = content_type

    def presign_get(self, path: str, expires_in: int = 3600) -> str:
        if path not in self.stored_objects:
            raise StorageError(f"Could not sign URL for missing object {path}")
        return f"{self.base_url}/{path}?op=get&expires={expires_in}"

    def delete(self, path: str) -> None:
        if self.stored_objects.pop(path, None) is None:
            raise StorageError(f"Object not found: {path}")
        self.content_types.pop(path, None)

    def exists(self, path: str) -> bool:
        return path in self.stored_objects

    def get_bytes(self, path: str) -> bytes:
        stored = self.stored_objects.get(path)
        if stored is None:
            raise FileNotFoundError(path)
        return stored


@dataclass
class S3StorageClient:
    """
    S3-compatible storage client for a single private receipts bucket.
    """

    bucket: str
    access_key_id: str
    secret_access_key: str
    region: Optional[str] = None
    endpoint: Optional[str] = None

    def __post_init__(self):
        config = Config(
            s3={"addressing_style": "path" if self.endpoint else "auto"},
            signature_version="s3v4",
        )
        self._client = boto3.client(
            "s3",
            endpoint_url=self.endpoint or None,
            region_name=self.region or None,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
            config=config,
        )

    def ensure_bucket(self) -> None:
        """Create the bucket as private when it does not exist yet."""
        try:
            self._client.head_bucket(Bucket=self.bucket)
            return
        except ClientError as exc:
            code = str(exc.response.get("Error", {}).get("Code", ""))
            if code not in ("404", "NoSuchBucket", "NotFound"):
                raise StorageError(f"Cannot access bucket {self.bucket}: {exc}") from exc

        params = {"Bucket": self.bucket, "ACL": "private"}
        if self.region and self.region != "us-east-1":
            params["CreateBucketConfiguration"] = {
                "LocationConstraint": self.region
            }
        try:
            self._client.create_bucket(**params)
        except ClientError as exc:
            raise StorageError(f"Cannot create bucket {self.bucket}: {exc}") from exc
        logger.info("Created storage bucket: %s", self.bucket)

    def upload_bytes(self, path: str, data: bytes, content_type: str) -> None:
        try:
            self._client.put_object(
                Bucket=self.bucket,
                Key=path,
                Body=data,
                ContentType=content_type,
            )
        except ClientError as exc:
            raise StorageError(f"Error uploading file: {exc}") from exc

    def presign_get(self, path: str, expires_in: int = 3600) -> str:
        try:
            return self._client.generate_presigned_url(
                ClientMethod="get_object",
                Params={"Bucket": self.bucket, "Key": path},
                ExpiresIn=expires_in,
            )
        except ClientError as exc:
            raise StorageError(f"Could not generate signed URL for {path}") from exc

    def delete(self, path: str) -> None:
        try:
            self._client.delete_object(Bucket=self.bucket, Key=path)
        except ClientError as exc:
            raise StorageError(f"Error deleting file: {exc}") from exc

    def exists(self, path: str) -> bool:
        try:
            self._client.head_object(Bucket=self.bucket, Key=path)
        except ClientError as exc:
            code = str(exc.response.get("Error", {}).get("Code", ""))
            if code in ("404", "NoSuchKey", "NotFound"):
                return False
            raise StorageError(f"Error checking file: {exc}") from exc
        return True
