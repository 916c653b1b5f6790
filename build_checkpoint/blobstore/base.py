"""Interface for name-addressed blob storage."""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path


class BlobStore(ABC):
    """Exact-name put/get/delete storage for volumes and manifests.

    Implementations make a single attempt per call; retry policy belongs to
    the callers.
    """

    @abstractmethod
    def upload(self, name: str, local_path: Path) -> None:
        """Store the file at local_path under name, replacing any existing blob.

        Raises:
            TransferFailure: The upload did not complete
        """

    @abstractmethod
    def download(self, name: str, destination_dir: Path) -> Path:
        """Write blob name to destination_dir/name and return that path.

        Raises:
            BlobNotFoundError: No blob with that name exists
            TransferFailure: The download did not complete
        """

    @abstractmethod
    def delete(self, name: str) -> None:
        """Delete blob name. Deleting an absent blob is not an error."""

    @abstractmethod
    def exists(self, name: str) -> bool:
        """Return True if blob name exists."""
