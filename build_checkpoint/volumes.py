"""Volume boundary processing for checkpoint creation and restoration.

The archive engine calls a VolumeBoundaryHandler synchronously every time it
finishes one volume and needs the next. On the create path the handler turns
the finished volume into a settled remote blob; on the restore path it turns
the next manifest entry into a raw local file. Neither returns until its
local files are in the expected state, which keeps at most one raw and one
compressed volume on disk at any time.
"""
from __future__ import annotations

import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from build_checkpoint.blobstore import BlobStore
from build_checkpoint.compression import Compressor
from build_checkpoint.encryption import Encryptor
from build_checkpoint.exceptions import ArchiveToolFailure, TransferFailure
from build_checkpoint.logging import EventLogger, get_logger
from build_checkpoint.naming import volume_blob_name, volume_file_name

log = get_logger(source=__name__)

DEFAULT_UPLOAD_ATTEMPTS = 5
DEFAULT_UPLOAD_RETRY_DELAY = 10.0


@dataclass(frozen=True)
class VolumeInfo:
    """A volume the archive engine has finished producing or consuming."""

    index: int  # 1-based
    path: Path
    size_bytes: int
    final: bool = False


class VolumeBoundaryHandler(ABC):
    """Strategy invoked by the archive engine at every volume boundary."""

    @abstractmethod
    def on_volume_boundary(self, prior: Optional[VolumeInfo]) -> Optional[str]:
        """Settle the prior volume and name the next one.

        Args:
            prior: The volume just finished, or None before the first volume

        Returns:
            Local path of the next volume, or None when there is no next volume
        """


def _log_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    name = retry_state.args[0] if retry_state.args else "blob"
    log.warning(
        f"Upload attempt {retry_state.attempt_number} of {name} failed: {error}; "
        f"retrying in {retry_state.next_action.sleep if retry_state.next_action else 0:.0f}s"
    )


def upload_with_retry(
    store: BlobStore,
    name: str,
    path: Path,
    attempts: int = DEFAULT_UPLOAD_ATTEMPTS,
    delay: float = DEFAULT_UPLOAD_RETRY_DELAY,
) -> None:
    """Upload a file, retrying TransferFailure with a fixed delay.

    Raises:
        TransferFailure: Every attempt failed (the last error is re-raised)
    """
    retrying = Retrying(
        stop=stop_after_attempt(attempts),
        wait=wait_fixed(delay),
        retry=retry_if_exception_type(TransferFailure),
        before_sleep=_log_retry,
        reraise=True,
    )
    try:
        retrying(store.upload, name, path)
    except TransferFailure as e:
        log.error(f"Failed to upload {name} after {attempts} attempts: {e}")
        raise


class UploadingVolumeProcessor(VolumeBoundaryHandler):
    """Compresses, uploads and deletes each volume as the archive produces it."""

    def __init__(
        self,
        base_name: str,
        scratch_dir: Path,
        store: BlobStore,
        compressor: Compressor,
        encryptor: Encryptor | None = None,
        upload_attempts: int = DEFAULT_UPLOAD_ATTEMPTS,
        upload_retry_delay: float = DEFAULT_UPLOAD_RETRY_DELAY,
    ):
        self.base_name = base_name
        self.scratch_dir = Path(scratch_dir)
        self.store = store
        self.compressor = compressor
        self.encryptor = encryptor
        self.upload_attempts = upload_attempts
        self.upload_retry_delay = upload_retry_delay
        self.uploaded_volumes: list[str] = []

    def volume_path(self, index: int) -> Path:
        return self.scratch_dir / volume_file_name(self.base_name, index)

    def on_volume_boundary(self, prior: Optional[VolumeInfo]) -> Optional[str]:
        if prior is None:
            # First call happens before any data exists; it only names volume 1
            log.debug(f"Volume 1 will be written to {self.volume_path(1)}")
            return str(self.volume_path(1))

        expected = len(self.uploaded_volumes) + 1
        if prior.index != expected:
            raise ArchiveToolFailure(
                f"Volume {prior.index} completed out of order (expected volume {expected})"
            )

        self._settle(prior)
        if prior.final:
            return None
        return str(self.volume_path(prior.index + 1))

    def _settle(self, volume: VolumeInfo) -> None:
        blob_name = volume_blob_name(self.base_name, volume.index)
        log.info(f"Processing volume {volume.index} ({volume.size_bytes} bytes)")

        upload_path = self.compressor.compress(volume.path)
        if self.encryptor is not None:
            upload_path = self.encryptor.encrypt(upload_path)
        stored_bytes = upload_path.stat().st_size

        upload_with_retry(
            self.store,
            blob_name,
            upload_path,
            attempts=self.upload_attempts,
            delay=self.upload_retry_delay,
        )
        upload_path.unlink(missing_ok=True)

        self.uploaded_volumes.append(blob_name)
        EventLogger.log_volume_uploaded(log, blob_name, volume.index, volume.size_bytes, stored_bytes)


class DownloadingVolumeProcessor(VolumeBoundaryHandler):
    """Downloads and decompresses volumes in manifest order, deleting consumed ones."""

    def __init__(
        self,
        volume_names: Sequence[str],
        base_name: str,
        scratch_dir: Path,
        store: BlobStore,
        compressor: Compressor,
        encryptor: Encryptor | None = None,
    ):
        self.volume_names = list(volume_names)
        self.base_name = base_name
        self.scratch_dir = Path(scratch_dir)
        self.store = store
        self.compressor = compressor
        self.encryptor = encryptor
        self.restored_volumes: list[str] = []

    def volume_path(self, index: int) -> Path:
        return self.scratch_dir / volume_file_name(self.base_name, index)

    def on_volume_boundary(self, prior: Optional[VolumeInfo]) -> Optional[str]:
        if prior is not None:
            prior.path.unlink(missing_ok=True)
            log.debug(f"Released consumed volume {prior.index}")
            if prior.final:
                return None

        index = prior.index + 1 if prior is not None else 1
        if index > len(self.volume_names):
            return None
        return str(self._fetch(index))

    def _fetch(self, index: int) -> Path:
        blob_name = self.volume_names[index - 1]
        download_dir = self.scratch_dir / f"dl-{index}"
        raw_path = self.volume_path(index)
        log.info(f"Fetching volume {index}/{len(self.volume_names)}: {blob_name}")
        try:
            downloaded = self.store.download(blob_name, download_dir)
            if self.encryptor is not None:
                downloaded = self.encryptor.decrypt(
                    downloaded, downloaded.with_name(downloaded.name + self.compressor.extension)
                )
            self.compressor.decompress(downloaded, raw_path)
        finally:
            shutil.rmtree(download_dir, ignore_errors=True)

        self.restored_volumes.append(blob_name)
        EventLogger.log_volume_restored(log, blob_name, index, raw_path.stat().st_size)
        return raw_path
