"""Naming rules for volumes, manifests and scratch areas.

Every name is derived from the checkpoint's base name, so independent
checkpoint lineages never collide in the blob store.
"""

from __future__ import annotations

import re

MANIFEST_FILENAME = "archive-manifest.json"
# Scratch directories are hidden and uniquely suffixed, e.g. ".checkpoint-temp-k2j4x1"
CREATE_SCRATCH_DIR = "checkpoint-temp"
RESTORE_SCRATCH_DIR = "extract-temp"


def scratch_prefix(name: str) -> str:
    return f".{name}-"


BLOB_NAME_PATTERN = re.compile(r"^[A-Za-z0-9._-]+$")


def validate_blob_name(name: str) -> str:
    """Return name unchanged, or raise ValueError if it is not a safe blob name."""
    if not name or name in (".", "..") or not BLOB_NAME_PATTERN.match(name):
        raise ValueError(f"Invalid blob name: {name!r}")
    return name


def volume_blob_name(base_name: str, index: int) -> str:
    """Remote name of volume ``index`` (1-based), e.g. ``build-artifact-vol003``."""
    if index < 1:
        raise ValueError(f"Volume index must be >= 1, got {index}")
    return validate_blob_name(f"{base_name}-vol{index:03d}")


def manifest_blob_name(base_name: str) -> str:
    return validate_blob_name(f"{base_name}-manifest")


def volume_file_name(base_name: str, index: int) -> str:
    """Local raw file name, following GNU tar's multi-volume convention."""
    if index < 1:
        raise ValueError(f"Volume index must be >= 1, got {index}")
    if index == 1:
        return f"{base_name}.tar"
    return f"{base_name}.tar-{index}"
