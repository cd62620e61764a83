"""Durable storage for sources and packaged archives.

Storage references of the form ``store://<key>`` name objects in durable
storage; anything else is treated as a local path. ``S3Storage`` talks to any
S3-compatible endpoint (Cloudflare R2 in production); ``LocalStorage`` keeps
objects under a directory and is used for development and tests.
"""

import base64
import logging
import re
import secrets
import shutil
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .errors import MaterializationError, UploadError
from .models import StorageConfig

logger = logging.getLogger(__name__)

STORE_SCHEME = "store://"
ZIP_CONTENT_TYPE = "application/zip"


@dataclass
class UploadConfirmation:
    """Where an upload landed."""
    key: str
    location: str
    size_bytes: int
    etag: Optional[str] = None


def owner_namespace(owner: Optional[str]) -> str:
    """Path prefix isolating one owner's objects.

    Owners map to ``user-<8 base64 chars>`` (with ``+/=`` removed); jobs
    without an owner go under ``system``.
    """
    if not owner:
        return "system"
    encoded = base64.b64encode(owner.encode("utf-8")).decode("ascii")
    return "user-" + re.sub(r"[+/=]", "", encoded[:8])


def sanitize_filename(name: str) -> str:
    """Keep letters, digits, dot, dash and underscore; collapse the rest to ``_``."""
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", name).strip("_")
    return cleaned or "archive"


def is_store_ref(ref: str) -> bool:
    return ref.startswith(STORE_SCHEME)


def store_key(ref: str) -> str:
    return ref[len(STORE_SCHEME):] if is_store_ref(ref) else ref


class DurableStorage(ABC):
    """Storage collaborator used by the engine and the packager."""

    def is_remote(self, ref: str) -> bool:
        """Whether ``ref`` must be materialized before transcoding."""
        return is_store_ref(ref)

    def archive_key(self, owner: Optional[str], archive_name: str) -> str:
        """Unique destination key for an archive, namespaced by owner."""
        stem = Path(archive_name).stem
        suffix = Path(archive_name).suffix or ".zip"
        stamp = int(time.time() * 1000)
        return (
            f"{owner_namespace(owner)}/exports/{stamp}-{secrets.token_hex(3)}-"
            f"{sanitize_filename(stem)}{suffix}"
        )

    @abstractmethod
    def materialize(self, ref: str, dest_path: str) -> str:
        """Copy a stored object to a local file.

        Raises:
            MaterializationError: If the object cannot be fetched
        """

    @abstractmethod
    def upload_archive(self, data: bytes, destination_key: str, content_type: str,
                       owner_namespace: str) -> UploadConfirmation:
        """Store an archive as a single object.

        Raises:
            UploadError: If the object cannot be stored
        """

    @abstractmethod
    def signed_url(self, key: str, expires_s: Optional[int] = None) -> Optional[str]:
        """Time-limited download URL for a stored object, if the backend has one."""


class LocalStorage(DurableStorage):
    """Filesystem-backed storage rooted at a directory."""

    def __init__(self, root: str):
        self.root = Path(root)

    def path_for(self, key: str) -> Path:
        path = (self.root / store_key(key)).resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError(f"Key escapes storage root: {key}")
        return path

    def materialize(self, ref: str, dest_path: str) -> str:
        try:
            src = self.path_for(ref)
            Path(dest_path).parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(src, dest_path)
        except (OSError, ValueError) as e:
            raise MaterializationError(f"Could not fetch {ref}: {e}") from e
        return dest_path

    def upload_archive(self, data, destination_key, content_type=ZIP_CONTENT_TYPE,
                       owner_namespace="system") -> UploadConfirmation:
        try:
            path = self.path_for(destination_key)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except (OSError, ValueError) as e:
            raise UploadError(f"Could not store {destination_key}: {e}") from e
        return UploadConfirmation(key=destination_key, location=STORE_SCHEME + destination_key,
                                  size_bytes=len(data))

    def signed_url(self, key: str, expires_s: Optional[int] = None) -> Optional[str]:
        path = self.path_for(key)
        return path.as_uri() if path.exists() else None

    def put(self, key: str, data: bytes) -> str:
        """Store raw bytes and return the ``store://`` reference."""
        path = self.path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return STORE_SCHEME + key


class S3Storage(DurableStorage):
    """S3-compatible object storage (Cloudflare R2)."""

    def __init__(self, config: StorageConfig, client=None):
        if not config.bucket:
            raise ValueError("storage.bucket is required for the s3 backend")
        self.config = config
        self.bucket = config.bucket
        self._client = client or self._build_client(config)

    @staticmethod
    def _build_client(config: StorageConfig):
        endpoint = config.endpoint_url
        if endpoint:
            # Endpoints are sometimes pasted with the bucket appended
            endpoint = endpoint.rstrip("/")
            if endpoint.endswith(f"/{config.bucket}"):
                endpoint = endpoint[: -(len(config.bucket) + 1)]
        return boto3.client(
            "s3",
            endpoint_url=endpoint,
            aws_access_key_id=config.access_key_id,
            aws_secret_access_key=config.secret_access_key,
            region_name=config.region,
            config=Config(signature_version="s3v4", s3={"addressing_style": "path"}),
        )

    def materialize(self, ref: str, dest_path: str) -> str:
        key = store_key(ref)
        Path(dest_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self._client.download_file(self.bucket, key, dest_path)
        except (BotoCoreError, ClientError, OSError) as e:
            Path(dest_path).unlink(missing_ok=True)
            raise MaterializationError(f"Could not fetch {key}: {e}") from e
        logger.info("Materialized %s to %s", key, dest_path)
        return dest_path

    def upload_archive(self, data, destination_key, content_type=ZIP_CONTENT_TYPE,
                       owner_namespace="system") -> UploadConfirmation:
        try:
            response = self._client.put_object(
                Bucket=self.bucket,
                Key=destination_key,
                Body=data,
                ContentType=content_type,
                Metadata={"owner-namespace": owner_namespace},
            )
        except (BotoCoreError, ClientError) as e:
            raise UploadError(f"Could not upload {destination_key}: {e}") from e
        return UploadConfirmation(
            key=destination_key,
            location=STORE_SCHEME + destination_key,
            size_bytes=len(data),
            etag=(response or {}).get("ETag"),
        )

    def signed_url(self, key: str, expires_s: Optional[int] = None) -> Optional[str]:
        return self._client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": store_key(key)},
            ExpiresIn=expires_s or self.config.signed_url_expiry_s,
        )


def build_storage(config: StorageConfig) -> DurableStorage:
    """Storage backend selected by configuration."""
    if config.backend == "s3":
        return S3Storage(config)
    return LocalStorage(config.local_root)
