"""Checkpoint creation and restoration for a working tree.

The orchestrator ties the archive engine, the volume processors and the
manifest together. Volumes go to the blob store while the tree is being
archived; the manifest is published last, so an interrupted create leaves no
restorable checkpoint behind.

Usage:
    orchestrator = CheckpointOrchestrator.from_config(CheckpointConfig.from_settings())
    manifest_name = orchestrator.create_checkpoint(["src", "out"], "/build")
    ...
    orchestrator.restore_checkpoint("/build")
"""

from __future__ import annotations

import os
import shutil
import tempfile
from pathlib import Path
from typing import Iterable, Sequence

from build_checkpoint.archive import create_archive, restore_archive
from build_checkpoint.blobstore import BlobStore, open_blob_store
from build_checkpoint.compression import Compressor
from build_checkpoint.config.settings import CheckpointConfig
from build_checkpoint.disk import log_disk_usage
from build_checkpoint.encryption import Encryptor
from build_checkpoint.exceptions import PreconditionFailure, TransferFailure
from build_checkpoint.logging import EventLogger, get_logger, operation_context
from build_checkpoint.manifest import (
    CheckpointManifest,
    build_manifest,
    load_manifest,
    publish_manifest,
)
from build_checkpoint.naming import (
    CREATE_SCRATCH_DIR,
    RESTORE_SCRATCH_DIR,
    manifest_blob_name,
    scratch_prefix,
    volume_blob_name,
)
from build_checkpoint.volumes import DownloadingVolumeProcessor, UploadingVolumeProcessor

log = get_logger(source=__name__)


class CheckpointOrchestrator:
    """Creates, restores and cleans up the checkpoint of one base name."""

    def __init__(
        self,
        store: BlobStore,
        *,
        base_name: str,
        volume_size: int,
        volume_size_label: str,
        compressor: Compressor,
        encryptor: Encryptor | None = None,
        max_volumes: int = 40,
        upload_attempts: int = 5,
        upload_retry_delay: float = 10.0,
    ):
        self.store = store
        self.base_name = base_name
        self.volume_size = volume_size
        self.volume_size_label = volume_size_label
        self.compressor = compressor
        self.encryptor = encryptor
        self.max_volumes = max_volumes
        self.upload_attempts = upload_attempts
        self.upload_retry_delay = upload_retry_delay

    @classmethod
    def from_config(
        cls, config: CheckpointConfig, store: BlobStore | None = None
    ) -> CheckpointOrchestrator:
        compressor = Compressor(
            config.compression,
            level=config.compression_level,
            threads=config.compression_threads,
        )
        return cls(
            store if store is not None else open_blob_store(config),
            base_name=config.base_name,
            volume_size=config.volume_size_bytes,
            volume_size_label=config.volume_size,
            compressor=compressor,
            encryptor=Encryptor(config.password) if config.encrypted else None,
            max_volumes=config.max_volumes,
            upload_attempts=config.upload_attempts,
            upload_retry_delay=config.upload_retry_delay_seconds,
        )

    @property
    def manifest_name(self) -> str:
        return manifest_blob_name(self.base_name)

    def check_preconditions(self) -> None:
        """Raise PreconditionFailure if a required tool is missing."""
        self.compressor.ensure_available()
        if self.encryptor is not None:
            self.encryptor.ensure_available()

    def has_checkpoint(self) -> bool:
        return self.store.exists(self.manifest_name)

    def cleanup_previous(self) -> int:
        """Delete the previous checkpoint of this base name, best-effort.

        The manifest goes first so that a partial cleanup never leaves a
        manifest pointing at deleted volumes.

        Returns:
            Number of delete calls that succeeded
        """
        names = [self.manifest_name] + [
            volume_blob_name(self.base_name, index)
            for index in range(1, self.max_volumes + 1)
        ]
        log.info(f"Cleaning up previous checkpoint {self.base_name}")
        return self._delete_blobs(names)

    def _delete_blobs(self, names: Iterable[str]) -> int:
        deleted = 0
        for name in names:
            try:
                self.store.delete(name)
                deleted += 1
            except TransferFailure as e:
                log.warning(f"Could not delete {name}: {e}")
        return deleted

    def _make_scratch_dir(self, working_dir: Path, name: str) -> Path:
        """Create a fresh hidden scratch directory that no tree entry can share."""
        working_dir.mkdir(parents=True, exist_ok=True)
        return Path(tempfile.mkdtemp(prefix=scratch_prefix(name), dir=working_dir))

    def create_checkpoint(self, paths: Sequence[str | Path], working_dir: Path | str) -> str:
        """Archive paths into a new checkpoint, removing them from disk.

        Args:
            paths: Files or directories to checkpoint, relative to working_dir
            working_dir: Directory the archived names are relative to

        Returns:
            Blob name of the published manifest

        Raises:
            PreconditionFailure: A required tool is missing
            TransferFailure: A volume or the manifest could not be uploaded
            ArchiveToolFailure: The tree could not be archived
        """
        working_dir = Path(os.path.abspath(working_dir))

        with operation_context(
            "checkpoint", base_name=self.base_name, volume_size=self.volume_size_label
        ) as op_log:
            self.check_preconditions()
            log_disk_usage(working_dir, "before checkpoint")
            self.cleanup_previous()

            scratch_dir = self._make_scratch_dir(working_dir, CREATE_SCRATCH_DIR)
            processor = UploadingVolumeProcessor(
                self.base_name,
                scratch_dir,
                self.store,
                self.compressor,
                encryptor=self.encryptor,
                upload_attempts=self.upload_attempts,
                upload_retry_delay=self.upload_retry_delay,
            )
            try:
                create_archive(paths, working_dir, self.volume_size, processor)
                volume_names = list(processor.uploaded_volumes)
                if len(volume_names) > self.max_volumes:
                    op_log.warning(
                        f"Checkpoint produced {len(volume_names)} volumes, more than the "
                        f"{self.max_volumes} that cleanup removes; raise max_volumes"
                    )
                manifest = build_manifest(
                    self.base_name,
                    volume_names,
                    self.volume_size_label,
                    paths=[str(p) for p in paths],
                    compression=self.compressor.compression,
                    encrypted=self.encryptor is not None,
                )
                name = publish_manifest(
                    manifest,
                    self.store,
                    scratch_dir,
                    attempts=self.upload_attempts,
                    delay=self.upload_retry_delay,
                )
            except Exception:
                if processor.uploaded_volumes:
                    op_log.warning(
                        f"Removing {len(processor.uploaded_volumes)} volume(s) of the failed checkpoint"
                    )
                    self._delete_blobs(processor.uploaded_volumes)
                raise
            finally:
                shutil.rmtree(scratch_dir, ignore_errors=True)

            EventLogger.log_checkpoint_published(op_log, name, manifest.volume_count)
            log_disk_usage(working_dir, "after checkpoint")
            return name

    def _restore_compressor(self, manifest: CheckpointManifest) -> Compressor:
        if manifest.compression == self.compressor.compression:
            return self.compressor
        compressor = Compressor(
            manifest.compression,
            level=self.compressor.level,
            threads=self.compressor.threads,
        )
        compressor.ensure_available()
        return compressor

    def _restore_encryptor(self, manifest: CheckpointManifest) -> Encryptor | None:
        if not manifest.encrypted:
            return None
        if self.encryptor is None:
            raise PreconditionFailure(
                f"Checkpoint {self.base_name} is encrypted but no password is configured"
            )
        return self.encryptor

    def restore_checkpoint(self, working_dir: Path | str) -> CheckpointManifest:
        """Restore the checkpoint into working_dir.

        Returns:
            The manifest that was restored

        Raises:
            ManifestNotFoundError: There is no checkpoint for this base name
            ManifestCorrupt: The manifest is unusable
            TransferFailure: A volume could not be downloaded
            ArchiveToolFailure: The volumes do not form a valid archive
        """
        working_dir = Path(os.path.abspath(working_dir))

        with operation_context("restore", base_name=self.base_name) as op_log:
            self.check_preconditions()
            working_dir.mkdir(parents=True, exist_ok=True)
            log_disk_usage(working_dir, "before restore")

            scratch_dir = self._make_scratch_dir(working_dir, RESTORE_SCRATCH_DIR)
            try:
                manifest = load_manifest(self.base_name, self.store, scratch_dir)
                if manifest.volume_count == 0:
                    op_log.warning(f"Checkpoint {self.base_name} has no volumes; nothing to restore")
                    return manifest

                processor = DownloadingVolumeProcessor(
                    manifest.volumes,
                    self.base_name,
                    scratch_dir,
                    self.store,
                    self._restore_compressor(manifest),
                    encryptor=self._restore_encryptor(manifest),
                )
                members = restore_archive(processor, working_dir)
            finally:
                shutil.rmtree(scratch_dir, ignore_errors=True)

            op_log.info(
                f"Restored {members} entries from {manifest.volume_count} volume(s) into {working_dir}"
            )
            log_disk_usage(working_dir, "after restore")
            return manifest
