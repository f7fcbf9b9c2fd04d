"""Write-once storage for message bodies, keyed by Gmail message id."""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional, Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .config import settings
from .errors import BlobNotFound, BlobStoreError

logger = logging.getLogger(__name__)

_SAFE_KEY = re.compile(r"^[A-Za-z0-9_\-]+$")


class BlobStore(Protocol):
    def put(self, key: str, data: bytes) -> None: ...

    def get(self, key: str) -> bytes: ...


@dataclass(frozen=True)
class S3StoreConfig:
    bucket: str
    region: str
    access_key: Optional[str] = None
    secret_key: Optional[str] = None
    endpoint: Optional[str] = None


class S3BlobStore:
    def __init__(self, cfg: S3StoreConfig, client=None) -> None:
        self.cfg = cfg
        self.client = client or boto3.client(
            "s3",
            endpoint_url=cfg.endpoint,
            aws_access_key_id=cfg.access_key,
            aws_secret_access_key=cfg.secret_key,
            region_name=cfg.region,
            config=Config(retries={"max_attempts": 3, "mode": "standard"}),
        )

    def put(self, key: str, data: bytes) -> None:
        try:
            self.client.put_object(
                Bucket=self.cfg.bucket,
                Key=key,
                Body=data,
                ContentType="text/html; charset=utf-8",
            )
        except (BotoCoreError, ClientError) as e:
            raise BlobStoreError(f"Failed to write blob {key}: {e}") from e

    def get(self, key: str) -> bytes:
        try:
            resp = self.client.get_object(Bucket=self.cfg.bucket, Key=key)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("NoSuchKey", "404"):
                raise BlobNotFound(f"No blob stored for {key}") from e
            raise BlobStoreError(f"Failed to read blob {key}: {e}") from e
        except BotoCoreError as e:
            raise BlobStoreError(f"Failed to read blob {key}: {e}") from e
        return resp["Body"].read()


class FilesystemBlobStore:
    """Local-dev store: one file per key under root."""

    def __init__(self, root: str) -> None:
        self.root = root

    def _path(self, key: str) -> str:
        # Gmail ids are hex; anything else must not escape root.
        if not _SAFE_KEY.match(key):
            raise BlobStoreError(f"Invalid blob key {key!r}")
        return os.path.join(self.root, key)

    def put(self, key: str, data: bytes) -> None:
        path = self._path(key)
        tmp = f"{path}.tmp"
        try:
            os.makedirs(self.root, exist_ok=True)
            with open(tmp, "wb") as f:
                f.write(data)
            os.replace(tmp, path)
        except OSError as e:
            raise BlobStoreError(f"Failed to write blob {key}: {e}") from e

    def get(self, key: str) -> bytes:
        path = self._path(key)
        try:
            with open(path, "rb") as f:
                return f.read()
        except FileNotFoundError as e:
            raise BlobNotFound(f"No blob stored for {key}") from e
        except OSError as e:
            raise BlobStoreError(f"Failed to read blob {key}: {e}") from e


@lru_cache(maxsize=1)
def get_blob_store() -> BlobStore:
    """S3 when S3_BUCKET_NAME is set, else the filesystem under BLOB_DIR."""
    if settings.s3_bucket_name:
        return S3BlobStore(
            S3StoreConfig(
                bucket=settings.s3_bucket_name,
                region=settings.aws_region,
                access_key=settings.aws_access_key_id,
                secret_key=settings.aws_secret_access_key,
                endpoint=settings.s3_endpoint_url,
            )
        )
    logger.info(f"S3_BUCKET_NAME not set; storing message bodies under {settings.blob_dir}")
    return FilesystemBlobStore(settings.blob_dir)
