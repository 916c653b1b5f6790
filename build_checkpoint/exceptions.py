"""Custom exceptions for checkpoint operations.

This module defines a hierarchy of exceptions for checkpoint creation and
restoration so that callers can tell a lost volume from a broken archive or a
missing tool.

Exception Hierarchy:
    CheckpointError (base)
        ├── TransferFailure
        │   └── BlobNotFoundError
        │       └── ManifestNotFoundError
        ├── ArchiveToolFailure
        │   ├── CommandFailedError
        │   └── CompressionError
        ├── ManifestCorrupt
        └── PreconditionFailure

Usage:
    from build_checkpoint.exceptions import BlobNotFoundError

    if not blob_path.exists():
        raise BlobNotFoundError(name)
"""

from __future__ import annotations


class CheckpointError(Exception):
    """Base exception for all checkpoint operations."""


class TransferFailure(CheckpointError):
    """An upload or download to the blob store failed."""

    def __init__(self, message: str, blob_name: str | None = None):
        self.blob_name = blob_name
        super().__init__(message)


class BlobNotFoundError(TransferFailure):
    """The requested blob does not exist in the store."""

    def __init__(self, blob_name: str):
        super().__init__(f"Blob not found: {blob_name}", blob_name=blob_name)


class ManifestNotFoundError(BlobNotFoundError):
    """No manifest exists, so there is no checkpoint to restore."""


class ArchiveToolFailure(CheckpointError):
    """The multi-volume split/join operation failed."""


class CommandFailedError(ArchiveToolFailure):
    """A child process exited with a non-zero status."""

    def __init__(self, command: list[str], returncode: int, output: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.output = output
        message = f"Command failed with exit code {returncode}: {' '.join(command)}"
        if output:
            message += f": {output}"
        super().__init__(message)


class CompressionError(ArchiveToolFailure):
    """Compressing, decompressing or encrypting a volume failed."""

    def __init__(self, message: str, path: str | None = None):
        self.path = path
        super().__init__(message)


class ManifestCorrupt(CheckpointError):
    """The manifest could not be parsed or is internally inconsistent."""

    def __init__(self, base_name: str, reason: str):
        self.base_name = base_name
        self.reason = reason
        super().__init__(f"Manifest for {base_name} is corrupt: {reason}")


class PreconditionFailure(CheckpointError):
    """A required external tool or setting is missing."""
