"""
Blob storage for uploaded files: Tencent COS (S3-compatible) and in-memory testing.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from typing import Optional, Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

# SigV4 presigned URLs are capped at seven days.
MAX_PRESIGN_SECONDS = 7 * 24 * 3600


class StorageClient(Protocol):
    """Defines the operations the API needs from blob storage."""

    def save(self, data: bytes, name: str) -> str:
        ...

    def get_bytes(self, path: str) -> bytes:
        ...


class StorageError(RuntimeError):
    """Raised when an upload is rejected by the storage backend."""


def object_key(name: str) -> str:
    """Build a collision-free storage key that keeps the original file name readable."""
    safe = re.sub(r"[^A-Za-z0-9._-]+", "_", name or "").strip("._") or "file"
    return f"uploads/{uuid.uuid4().hex}-{safe}"


@dataclass
class InMemoryStorageClient:
    """Test double for storage interactions."""

    base_url: str = "https://example.test/storage"
    stored_objects: dict = None

    def __post_init__(self):
        if self.stored_objects is None:
            self.stored_objects = {}

    def save(self, data: bytes, name: str) -> str:
        key = object_key(name)
        self.stored_objects[key] = bytes(data)
        return f"{self.base_url.rstrip('/')}/{key}"

    def get_bytes(self, path: str) -> bytes:
        stored = self.stored_objects.get(path)
        if stored is None:
            raise FileNotFoundError(path)
        return stored


@dataclass
class CosStorageClient:
    """
    S3-compatible storage client for Tencent COS.
    """

    bucket: str
    region: str
    endpoint: str
    access_key_id: str
    secret_access_key: str
    public_base_url: Optional[str] = None

    def __post_init__(self):
        # Use virtual-hosted style addressing to satisfy COS requirements.
        config = Config(
            s3={"addressing_style": "virtual"},
            signature_version="s3v4",
        )
        self._client = boto3.client(
            "s3",
            endpoint_url=self.endpoint,
            region_name=self.region,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
            config=config,
        )

    def presign_get(self, path: str, expires_in: int = 3600) -> str:
        return self._client.generate_presigned_url(
            ClientMethod="get_object",
            Params={"Bucket": self.bucket, "Key": path},
            ExpiresIn=expires_in,
        )

    def save(self, data: bytes, name: str) -> str:
        key = object_key(name)
        try:
            self._client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType="application/octet-stream",
            )
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"upload of {name!r} failed: {exc}") from exc
        if self.public_base_url:
            return f"{self.public_base_url.rstrip('/')}/{key}"
        return self.presign_get(key, expires_in=MAX_PRESIGN_SECONDS)

    def get_bytes(self, path: str) -> bytes:
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=path)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                raise FileNotFoundError(path) from exc
            raise StorageError(f"download of {path!r} failed: {exc}") from exc
        return response["Body"].read()
