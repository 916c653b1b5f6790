"""Blob store backed by a local or shared directory."""

from __future__ import annotations

import os
import shutil
from pathlib import Path

from build_checkpoint.exceptions import BlobNotFoundError, TransferFailure
from build_checkpoint.logging import get_logger
from build_checkpoint.naming import validate_blob_name

from .base import BlobStore

log = get_logger(source=__name__)


class LocalBlobStore(BlobStore):
    """Stores each blob as one file in a root directory."""

    def __init__(self, root: Path | str):
        self.root = Path(root)

    def _blob_path(self, name: str) -> Path:
        return self.root / validate_blob_name(name)

    def upload(self, name: str, local_path: Path) -> None:
        target = self._blob_path(name)
        partial = target.with_name(f".{target.name}.partial")
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(local_path, partial)
            os.replace(partial, target)
        except OSError as e:
            partial.unlink(missing_ok=True)
            raise TransferFailure(f"Failed to store {name}: {e}", blob_name=name) from e
        log.debug(f"Stored {name} ({target.stat().st_size} bytes)")

    def download(self, name: str, destination_dir: Path) -> Path:
        source = self._blob_path(name)
        if not source.is_file():
            raise BlobNotFoundError(name)
        destination = Path(destination_dir) / name
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, destination)
        except FileNotFoundError as e:
            raise BlobNotFoundError(name) from e
        except OSError as e:
            destination.unlink(missing_ok=True)
            raise TransferFailure(f"Failed to fetch {name}: {e}", blob_name=name) from e
        return destination

    def delete(self, name: str) -> None:
        try:
            self._blob_path(name).unlink()
            log.debug(f"Deleted blob {name}")
        except FileNotFoundError:
            pass
        except OSError as e:
            raise TransferFailure(f"Failed to delete {name}: {e}", blob_name=name) from e

    def exists(self, name: str) -> bool:
        return self._blob_path(name).is_file()

    def list_blobs(self) -> list[str]:
        """Names of all stored blobs, sorted."""
        if not self.root.is_dir():
            return []
        return sorted(
            entry.name
            for entry in self.root.iterdir()
            if entry.is_file() and not entry.name.startswith(".")
        )
