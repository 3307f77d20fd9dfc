"""Object storage for uploaded document versions.

The database only keeps the key, size and checksum of each version; the
bytes live in an S3 compatible bucket (MinIO in most deployments) or, for
local development, on the filesystem.  Callers use the module level
``storage_client`` which implements :class:`StorageBackend` whichever
backend is configured.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError

logger = logging.getLogger(__name__)


def _env(name: str, default: str | None = None) -> str | None:
    """Read ``storage.foo`` style settings from ``STORAGE__FOO`` variables."""

    return os.getenv(name.replace(".", "__").upper(), default)


def document_key(document_id: int, version_number: int, filename: str) -> str:
    """Storage key for one version of a document."""
    name = Path(filename.replace("\\", "/")).name or "file"
    return f"documents/{document_id}/v{version_number}/{name}"


class StorageBackend:
    """Interface every storage backend implements."""

    bucket: str | None = None
    signed_url_expire_seconds: int = int(_env("storage.signed_url_expire_seconds", "3600") or "3600")

    def put(self, key: str, body: bytes, content_type: str | None = None) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    def get(self, key: str) -> bytes | None:  # pragma: no cover - interface only
        raise NotImplementedError

    def delete(self, key: str) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    def exists(self, key: str) -> bool:  # pragma: no cover - interface only
        raise NotImplementedError

    def generate_presigned_url(  # pragma: no cover - interface only
        self, key: str, expires_in: int | None = None, filename: str | None = None
    ) -> str | None:
        raise NotImplementedError


class MinIOBackend(StorageBackend):
    """Backend for MinIO or any other S3 compatible service."""

    def __init__(self) -> None:
        self.endpoint = os.getenv("S3_ENDPOINT")
        self.public_endpoint = os.getenv("S3_PUBLIC_ENDPOINT")
        self.access_key = os.getenv("S3_ACCESS_KEY") or os.getenv("S3_ACCESS_KEY_ID")
        self.secret_key = os.getenv("S3_SECRET_KEY") or os.getenv("S3_SECRET_ACCESS_KEY")
        self.bucket = os.getenv("S3_BUCKET_MAIN") or os.getenv("S3_BUCKET") or "policywiki"

        self.client = boto3.client(
            "s3",
            endpoint_url=self.endpoint,
            aws_access_key_id=self.access_key,
            aws_secret_access_key=self.secret_key,
            config=Config(signature_version="s3v4"),
        )
        if self.public_endpoint:
            self.public_client = boto3.client(
                "s3",
                endpoint_url=self.public_endpoint,
                aws_access_key_id=self.access_key,
                aws_secret_access_key=self.secret_key,
                config=Config(signature_version="s3v4"),
            )
        else:
            self.public_client = self.client

        self.ensure_bucket()

    def ensure_bucket(self) -> None:
        """Create the documents bucket on startup if it does not exist."""
        try:
            existing = {b["Name"] for b in self.client.list_buckets().get("Buckets", [])}
        except (BotoCoreError, ClientError) as exc:
            logger.warning("Unable to list buckets: %s", exc)
            return
        if self.bucket in existing:
            return
        try:
            self.client.create_bucket(Bucket=self.bucket)
            self.client.put_bucket_versioning(
                Bucket=self.bucket,
                VersioningConfiguration={"Status": "Enabled"},
            )
        except (BotoCoreError, ClientError) as exc:
            logger.warning("Unable to create bucket %s: %s", self.bucket, exc)

    def put(self, key: str, body: bytes, content_type: str | None = None) -> None:
        kwargs: dict[str, Any] = {"Bucket": self.bucket, "Key": key, "Body": body}
        if content_type:
            kwargs["ContentType"] = content_type
        self.client.put_object(**kwargs)

    def get(self, key: str) -> bytes | None:
        try:
            obj = self.client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in ("404", "NoSuchKey"):
                return None
            raise
        return obj["Body"].read()

    def delete(self, key: str) -> None:
        self.client.delete_object(Bucket=self.bucket, Key=key)

    def exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise
        return True

    def generate_presigned_url(
        self, key: str, expires_in: int | None = None, filename: str | None = None
    ) -> str | None:
        params = {"Bucket": self.bucket, "Key": key}
        if filename:
            params["ResponseContentDisposition"] = f'attachment; filename="{filename}"'
        try:
            return self.public_client.generate_presigned_url(
                "get_object",
                Params=params,
                ExpiresIn=expires_in or self.signed_url_expire_seconds,
            )
        except NoCredentialsError:
            base = self.public_endpoint or self.endpoint
            if base:
                return f"{base.rstrip('/')}/{self.bucket}/{key}"
            return None


class FSBackend(StorageBackend):
    """Filesystem storage served by the front-end web server."""

    def __init__(self, base_path: str | None = None, public_url: str | None = None) -> None:
        self.base_path = Path(base_path or _env("storage.fs_path", "/tmp/policywiki-files")).resolve()
        self.public_url = (public_url or _env("storage.fs_public_url", "/fs")).rstrip("/")
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _full_path(self, key: str) -> Path:
        path = (self.base_path / key).resolve()
        if self.base_path not in path.parents:
            raise ValueError(f"Key escapes storage root: {key}")
        return path

    def put(self, key: str, body: bytes, content_type: str | None = None) -> None:
        path = self._full_path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "wb") as f:
            f.write(body)

    def get(self, key: str) -> bytes | None:
        path = self._full_path(key)
        if not path.exists():
            return None
        return path.read_bytes()

    def delete(self, key: str) -> None:
        path = self._full_path(key)
        if path.exists():
            path.unlink()

    def exists(self, key: str) -> bool:
        return self._full_path(key).exists()

    def generate_presigned_url(
        self, key: str, expires_in: int | None = None, filename: str | None = None
    ) -> str | None:
        if not self.exists(key):
            return None
        return f"{self.public_url}/{key}"


def _load_backend() -> StorageBackend:
    backend_type = (_env("storage.type", "minio") or "minio").lower()
    if backend_type == "fs":
        return FSBackend()
    return MinIOBackend()


# Global instance used throughout the app
storage_client: StorageBackend = _load_backend()


__all__ = [
    "StorageBackend",
    "MinIOBackend",
    "FSBackend",
    "document_key",
    "storage_client",
]
