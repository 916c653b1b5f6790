"""Checkpoint manifest model and its publication to the blob store.

The manifest is the single source of truth for which volumes make up a
checkpoint and in which order they are restored. It is written last, so a
checkpoint without a manifest does not exist as far as restore is concerned.
"""

from __future__ import annotations

import json
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Sequence

from build_checkpoint.blobstore import BlobStore
from build_checkpoint.compression import COMPRESSION_EXTENSIONS
from build_checkpoint.exceptions import BlobNotFoundError, ManifestCorrupt, ManifestNotFoundError
from build_checkpoint.logging import get_logger
from build_checkpoint.naming import MANIFEST_FILENAME, manifest_blob_name, validate_blob_name
from build_checkpoint.volumes import (
    DEFAULT_UPLOAD_ATTEMPTS,
    DEFAULT_UPLOAD_RETRY_DELAY,
    upload_with_retry,
)

log = get_logger(source=__name__)


@dataclass(frozen=True)
class CheckpointManifest:
    """Ordered list of the volumes of one checkpoint.

    Serialized with camelCase keys so manifests stay readable by other
    tooling that consumes archive-manifest.json.
    """

    base_name: str
    volumes: tuple[str, ...]
    created_at: str  # ISO-8601, informational
    volume_size_nominal: str  # e.g. "5G", informational
    paths: tuple[str, ...] = ()
    compression: str = "zstd"
    encrypted: bool = False

    @property
    def volume_count(self) -> int:
        return len(self.volumes)

    @property
    def name(self) -> str:
        """Blob name the manifest is published under."""
        return manifest_blob_name(self.base_name)

    def to_dict(self) -> dict[str, Any]:
        return {
            "baseName": self.base_name,
            "volumeCount": self.volume_count,
            "volumes": list(self.volumes),
            "createdAt": self.created_at,
            "volumeSizeNominal": self.volume_size_nominal,
            "paths": list(self.paths),
            "compression": self.compression,
            "encrypted": self.encrypted,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    @classmethod
    def from_dict(cls, data: Any, base_name: str | None = None) -> CheckpointManifest:
        """Validate and convert a decoded manifest.

        Args:
            data: Decoded JSON document
            base_name: Expected base name, if known

        Raises:
            ManifestCorrupt: Missing fields, wrong types or inconsistent counts
        """
        label = base_name or "checkpoint"
        if not isinstance(data, dict):
            raise ManifestCorrupt(label, "manifest is not a JSON object")

        for key in ("baseName", "volumeCount", "volumes", "createdAt", "volumeSizeNominal"):
            if key not in data:
                raise ManifestCorrupt(label, f"missing field {key!r}")

        name = data["baseName"]
        count = data["volumeCount"]
        volumes = data["volumes"]
        if not isinstance(name, str) or not name:
            raise ManifestCorrupt(label, "baseName must be a non-empty string")
        if base_name is not None and name != base_name:
            raise ManifestCorrupt(label, f"baseName is {name!r}")
        # bool is an int subclass; reject it explicitly
        if not isinstance(count, int) or isinstance(count, bool) or count < 0:
            raise ManifestCorrupt(label, "volumeCount must be a non-negative integer")
        if not isinstance(volumes, list) or not all(isinstance(v, str) for v in volumes):
            raise ManifestCorrupt(label, "volumes must be a list of strings")
        if len(volumes) != count:
            raise ManifestCorrupt(
                label, f"volumeCount is {count} but {len(volumes)} volumes are listed"
            )
        for volume in volumes:
            try:
                validate_blob_name(volume)
            except ValueError as e:
                raise ManifestCorrupt(label, f"invalid volume name {volume!r}") from e
        for key in ("createdAt", "volumeSizeNominal"):
            if not isinstance(data[key], str):
                raise ManifestCorrupt(label, f"{key} must be a string")

        paths = data.get("paths", [])
        if not isinstance(paths, list) or not all(isinstance(p, str) for p in paths):
            raise ManifestCorrupt(label, "paths must be a list of strings")
        compression = data.get("compression", "zstd")
        if compression not in COMPRESSION_EXTENSIONS:
            raise ManifestCorrupt(label, f"unknown compression {compression!r}")
        encrypted = data.get("encrypted", False)
        if not isinstance(encrypted, bool):
            raise ManifestCorrupt(label, "encrypted must be a boolean")

        return cls(
            base_name=name,
            volumes=tuple(volumes),
            created_at=data["createdAt"],
            volume_size_nominal=data["volumeSizeNominal"],
            paths=tuple(paths),
            compression=compression,
            encrypted=encrypted,
        )

    @classmethod
    def from_json(cls, text: str, base_name: str | None = None) -> CheckpointManifest:
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ManifestCorrupt(base_name or "checkpoint", f"invalid JSON: {e}") from e
        return cls.from_dict(data, base_name=base_name)


def build_manifest(
    base_name: str,
    volume_names: Sequence[str],
    size_label: str,
    *,
    paths: Iterable[str] = (),
    compression: str = "zstd",
    encrypted: bool = False,
) -> CheckpointManifest:
    """Create a manifest for volumes that have all been uploaded."""
    return CheckpointManifest(
        base_name=base_name,
        volumes=tuple(volume_names),
        created_at=datetime.now(timezone.utc).isoformat(timespec="seconds"),
        volume_size_nominal=size_label,
        paths=tuple(str(p) for p in paths),
        compression=compression,
        encrypted=encrypted,
    )


def publish_manifest(
    manifest: CheckpointManifest,
    store: BlobStore,
    scratch_dir: Path,
    *,
    attempts: int = DEFAULT_UPLOAD_ATTEMPTS,
    delay: float = DEFAULT_UPLOAD_RETRY_DELAY,
) -> str:
    """Upload the manifest and return its blob name.

    Raises:
        TransferFailure: Every upload attempt failed
    """
    scratch_dir = Path(scratch_dir)
    scratch_dir.mkdir(parents=True, exist_ok=True)
    manifest_path = scratch_dir / MANIFEST_FILENAME
    manifest_path.write_text(manifest.to_json(), encoding="utf-8")

    name = manifest.name
    try:
        upload_with_retry(store, name, manifest_path, attempts=attempts, delay=delay)
    finally:
        manifest_path.unlink(missing_ok=True)

    log.info(f"Manifest {name} uploaded ({manifest.volume_count} volumes)")
    return name


def load_manifest(base_name: str, store: BlobStore, scratch_dir: Path) -> CheckpointManifest:
    """Download and validate the manifest for base_name.

    Raises:
        ManifestNotFoundError: No checkpoint exists for base_name
        ManifestCorrupt: The manifest is unreadable or inconsistent
        TransferFailure: The download failed
    """
    name = manifest_blob_name(base_name)
    download_dir = Path(scratch_dir) / "manifest"
    log.info(f"Downloading manifest {name}")
    try:
        path = store.download(name, download_dir)
        text = path.read_text(encoding="utf-8")
    except BlobNotFoundError as e:
        raise ManifestNotFoundError(name) from e
    except (OSError, UnicodeDecodeError) as e:
        raise ManifestCorrupt(base_name, f"unreadable manifest file: {e}") from e
    finally:
        shutil.rmtree(download_dir, ignore_errors=True)

    manifest = CheckpointManifest.from_json(text, base_name=base_name)
    log.info(
        f"Manifest loaded: {manifest.volume_count} volume(s), "
        f"created {manifest.created_at or 'unknown'}"
    )
    return manifest
