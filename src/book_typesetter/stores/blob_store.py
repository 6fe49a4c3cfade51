"""Blob storage for uploaded sources and produced artifacts.

Keys are namespaced per job::

    jobs/<job_id>/source/<filename>
    jobs/<job_id>/output/<name>

Two backends: a local directory tree and S3 (boto3).
"""

from __future__ import annotations

import logging
from pathlib import Path, PurePosixPath
from typing import Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..errors import InfrastructureError
from ..models import ServiceConfig

logger = logging.getLogger(__name__)


class BlobNotFoundError(KeyError):
    """No object stored under the requested key."""


class BlobStore(Protocol):
    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str: ...
    def get(self, key: str) -> bytes: ...


def source_key(job_id: str, filename: str) -> str:
    return f"jobs/{job_id}/source/{PurePosixPath(filename).name}"


def output_key(job_id: str, name: str) -> str:
    return f"jobs/{job_id}/output/{PurePosixPath(name).name}"


def _check_key(key: str) -> str:
    parts = PurePosixPath(key).parts
    if not parts or key.startswith("/") or ".." in parts:
        raise ValueError(f"Invalid blob key: {key!r}")
    return key


# ---------------------------------------------------------------------------
# Local filesystem
# ---------------------------------------------------------------------------


class LocalBlobStore:
    """Store blobs as files under a root directory (content type is not kept)."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        return self.root / _check_key(key)

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as exc:
            raise InfrastructureError(f"Could not write blob {key}: {exc}") from exc
        logger.debug("Stored %s (%d bytes, %s)", key, len(data), content_type)
        return key

    def get(self, key: str) -> bytes:
        path = self._path(key)
        if not path.is_file():
            raise BlobNotFoundError(key)
        try:
            return path.read_bytes()
        except OSError as exc:
            raise InfrastructureError(f"Could not read blob {key}: {exc}") from exc


# ---------------------------------------------------------------------------
# S3
# ---------------------------------------------------------------------------


class S3BlobStore:
    """Store blobs as objects in one S3 bucket."""

    def __init__(self, bucket: str, region: str = "eu-central-1", client=None) -> None:
        self._bucket = bucket
        self._region = region
        self._s3_client = client or boto3.client("s3", region_name=region)

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        try:
            self._s3_client.put_object(
                Bucket=self._bucket,
                Key=_check_key(key),
                Body=data,
                ContentType=content_type,
            )
        except (ClientError, BotoCoreError) as exc:
            raise InfrastructureError(f"S3 upload failed for {key}: {exc}") from exc
        return key

    def get(self, key: str) -> bytes:
        try:
            response = self._s3_client.get_object(Bucket=self._bucket, Key=_check_key(key))
            return response["Body"].read()
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code")
            if code in ("404", "NoSuchKey"):
                raise BlobNotFoundError(key) from exc
            raise InfrastructureError(f"S3 download failed for {key}: {exc}") from exc
        except BotoCoreError as exc:
            raise InfrastructureError(f"S3 download failed for {key}: {exc}") from exc


def build_blob_store(config: ServiceConfig) -> LocalBlobStore | S3BlobStore:
    if config.blob_backend == "s3":
        if not config.s3_bucket:
            raise ValueError("blob_backend 's3' requires s3_bucket")
        return S3BlobStore(config.s3_bucket, region=config.s3_region)
    return LocalBlobStore(config.blob_root)
