"""Blob storage and the persistent job record."""

from .blob_store import BlobNotFoundError, LocalBlobStore, S3BlobStore, build_blob_store
from .job_store import JobStore

__all__ = [
    "BlobNotFoundError",
    "JobStore",
    "LocalBlobStore",
    "S3BlobStore",
    "build_blob_store",
]
