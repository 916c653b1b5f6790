"""Remote blob storage for checkpoint volumes and manifests.

Main Classes:
    - BlobStore: Interface (upload, download, delete, exists)
    - LocalBlobStore: Directory-backed store
    - HttpBlobStore: Client for a BlobServer
    - BlobServer: aiohttp server exposing a directory

Main Functions:
    - open_blob_store(): Build the store selected by the configuration
"""
from __future__ import annotations

from typing import TYPE_CHECKING

from build_checkpoint.exceptions import PreconditionFailure

from .base import BlobStore
from .http import HttpBlobStore
from .local import LocalBlobStore

if TYPE_CHECKING:
    from build_checkpoint.config.settings import CheckpointConfig


def open_blob_store(config: CheckpointConfig) -> BlobStore:
    """Return an HTTP store if store_url is set, else a directory store."""
    if config.store_url:
        return HttpBlobStore(
            config.store_url,
            token=config.store_token,
            timeout_seconds=config.http_timeout_seconds,
        )
    if config.store_dir:
        return LocalBlobStore(config.store_dir)
    raise PreconditionFailure("No blob store configured: set store_url or store_dir")


__all__ = [
    "BlobStore",
    "HttpBlobStore",
    "LocalBlobStore",
    "open_blob_store",
]
