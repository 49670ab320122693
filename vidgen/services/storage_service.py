"""
Artifact storage for finished videos.

Providers:
- s3: boto3 put_object into AWS_S3_BUCKET, public https URL returned
- local: files written under LOCAL_STORAGE_DIR, served from PUBLIC_BASE_URL/uploads

``build_storage`` returns None when storage is disabled; the worker then
records the provider's own URL as the artifact reference.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from vidgen.utils import get_extension_for_content_type, now_ms, sanitize_filename

logger = logging.getLogger("vidgen.storage")


class StorageError(Exception):
    """Raised when an artifact cannot be persisted."""
    pass


def build_object_name(name: str, content_type: str = "video/mp4") -> str:
    """``{epoch_ms}-{safe_name}`` with an extension matching the content type."""
    safe = sanitize_filename(name)
    ext = get_extension_for_content_type(content_type)
    if ext and not safe.lower().endswith(ext):
        safe = os.path.splitext(safe)[0] + ext
    return f"{now_ms()}-{safe}"


class ArtifactStorage:
    """Contract for durable artifact storage."""

    def store(self, data: bytes, name: str, content_type: str = "video/mp4") -> str:
        raise NotImplementedError


class S3ArtifactStorage(ArtifactStorage):
    def __init__(
        self,
        bucket: str,
        region: str,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        prefix: str = "videos",
        client=None,
    ):
        self.bucket = bucket
        self.region = region
        self.prefix = prefix.strip("/")
        self._s3 = client or boto3.client(
            "s3",
            region_name=region,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
        )

    def public_url(self, key: str) -> str:
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    def store(self, data: bytes, name: str, content_type: str = "video/mp4") -> str:
        key = f"{self.prefix}/{build_object_name(name, content_type)}"
        try:
            self._s3.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"S3 upload failed for {key}: {e}") from e
        url = self.public_url(key)
        logger.info("[STORAGE] Uploaded %d bytes to s3://%s/%s", len(data), self.bucket, key)
        return url


class LocalArtifactStorage(ArtifactStorage):
    def __init__(self, root_dir: str, public_base_url: str, prefix: str = "videos"):
        self.root_dir = root_dir
        self.public_base_url = public_base_url.rstrip("/")
        self.prefix = prefix.strip("/")

    def store(self, data: bytes, name: str, content_type: str = "video/mp4") -> str:
        file_name = build_object_name(name, content_type)
        directory = os.path.join(self.root_dir, self.prefix)
        path = os.path.join(directory, file_name)
        try:
            os.makedirs(directory, exist_ok=True)
            with open(path, "wb") as f:
                f.write(data)
        except OSError as e:
            raise StorageError(f"Local write failed for {path}: {e}") from e
        logger.info("[STORAGE] Wrote %d bytes to %s", len(data), path)
        return f"{self.public_base_url}/uploads/{self.prefix}/{file_name}"


def build_storage(cfg) -> Optional[ArtifactStorage]:
    """Storage backend for the given Config, or None when disabled."""
    if not cfg.STORAGE_ENABLED:
        logger.warning("[STORAGE] Disabled (provider=%s) - provider URLs will be stored as-is", cfg.STORAGE_PROVIDER)
        return None
    if cfg.STORAGE_PROVIDER == "s3":
        return S3ArtifactStorage(
            bucket=cfg.AWS_S3_BUCKET,
            region=cfg.AWS_REGION,
            access_key_id=cfg.AWS_ACCESS_KEY_ID,
            secret_access_key=cfg.AWS_SECRET_ACCESS_KEY,
        )
    return LocalArtifactStorage(cfg.LOCAL_STORAGE_DIR, cfg.PUBLIC_BASE_URL)
