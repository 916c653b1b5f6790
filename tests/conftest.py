"""
Pytest configuration and shared fixtures for build-checkpoint tests.

This module provides working trees, an in-process compressor stand-in and an
instrumented directory blob store so checkpoint flows can be tested without
external tools.
"""

from __future__ import annotations

import os
import random
import shutil
from collections import Counter
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest

from build_checkpoint.blobstore import LocalBlobStore
from build_checkpoint.compression import Compressor
from build_checkpoint.disk import directory_size
from build_checkpoint.exceptions import TransferFailure
from build_checkpoint.logging import logger
from build_checkpoint.orchestrator import CheckpointOrchestrator
from build_checkpoint.volumes import VolumeBoundaryHandler, VolumeInfo

KIB = 1024


# ==============================================================================
# Tree helpers
# ==============================================================================


def write_random(path: Path, size: int, seed: int) -> Path:
    """Write size pseudo-random (incompressible) bytes to path."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(random.Random(seed).randbytes(size))
    return path


def build_tree(root: Path, volume_size: int) -> Path:
    """Create a nested tree with empty files, an empty dir and boundary-sized files."""
    src = root / "src"
    (src / "chrome" / "browser").mkdir(parents=True)
    (src / "empty_dir").mkdir()
    (src / "out" / "Release" / "obj").mkdir(parents=True)

    (src / "README").write_text("checkpoint me\n")
    (src / "chrome" / "empty.txt").write_bytes(b"")
    write_random(src / "chrome" / "browser" / "exact.bin", volume_size, seed=1)
    write_random(src / "out" / "Release" / "obj" / "big.o", volume_size * 2 + 777, seed=2)
    write_random(src / "out" / "Release" / "small.o", 3000, seed=3)
    os.symlink("small.o", src / "out" / "Release" / "link.o")
    return src


def snapshot(root: Path) -> Dict[str, object]:
    """Map every path under root to its type and content."""
    result: Dict[str, object] = {}
    for dirpath, dirnames, filenames in os.walk(root):
        for name in dirnames + filenames:
            path = Path(dirpath) / name
            relative = path.relative_to(root).as_posix()
            if path.is_symlink():
                result[relative] = ("link", os.readlink(path))
            elif path.is_dir():
                result[relative] = ("dir", None)
            else:
                result[relative] = ("file", path.read_bytes())
    return result


# ==============================================================================
# Instrumented collaborators
# ==============================================================================


class DiskProbe:
    """Records the peak combined size of the directories matching watched globs."""

    def __init__(self) -> None:
        self.globs: List[Tuple[Path, str]] = []
        self.peak = 0

    def watch(self, root: Path, pattern: str) -> None:
        self.globs.append((root, pattern))

    def measure(self) -> None:
        total = sum(
            directory_size(d) for root, pattern in self.globs for d in root.glob(pattern)
        )
        self.peak = max(self.peak, total)


def scratch_dirs(root: Path) -> List[Path]:
    """Hidden scratch directories the orchestrator left under root."""
    return sorted(root.glob(".*-temp-*"))


class FakeCompressor(Compressor):
    """Compressor stand-in that copies instead of running zstd.

    Both the input and output exist while "compressing", as with the real tool,
    so the disk probe sees the same peak usage.
    """

    def __init__(self, probe: Optional[DiskProbe] = None):
        super().__init__("zstd", level=3, threads=2)
        self.probe = probe
        self.compressed: List[str] = []
        self.decompressed: List[str] = []

    def ensure_available(self) -> None:
        return None

    def _measure(self) -> None:
        if self.probe is not None:
            self.probe.measure()

    def compress(self, source: Path) -> Path:
        destination = self.compressed_path(source)
        shutil.copyfile(source, destination)
        self._measure()
        source.unlink()
        self.compressed.append(source.name)
        return destination

    def decompress(self, source: Path, destination: Path) -> Path:
        shutil.copyfile(source, destination)
        self._measure()
        source.unlink()
        self.decompressed.append(destination.name)
        return destination


class RecordingStore(LocalBlobStore):
    """Directory blob store that records calls and can inject failures."""

    def __init__(self, root: Path, probe: Optional[DiskProbe] = None):
        super().__init__(root)
        self.probe = probe
        self.uploads: List[str] = []
        self.upload_attempts: Counter = Counter()
        self.deletes: List[str] = []
        self.upload_failures: Dict[str, int] = {}
        self.failing_deletes: set = set()

    def fail_upload(self, name: str, times: int = 1_000_000) -> None:
        self.upload_failures[name] = times

    def upload(self, name: str, local_path: Path) -> None:
        self.upload_attempts[name] += 1
        if self.probe is not None:
            self.probe.measure()
        if self.upload_failures.get(name, 0) > 0:
            self.upload_failures[name] -= 1
            raise TransferFailure(f"injected upload failure for {name}", blob_name=name)
        super().upload(name, local_path)
        self.uploads.append(name)

    def download(self, name: str, destination_dir: Path) -> Path:
        path = super().download(name, destination_dir)
        if self.probe is not None:
            self.probe.measure()
        return path

    def delete(self, name: str) -> None:
        if name in self.failing_deletes:
            raise TransferFailure(f"injected delete failure for {name}", blob_name=name)
        super().delete(name)
        self.deletes.append(name)


class ShelfWriterHandler(VolumeBoundaryHandler):
    """Create-side handler that moves finished volumes to a shelf directory."""

    def __init__(self, scratch: Path, shelf: Path):
        self.scratch = scratch
        self.shelf = shelf
        self.calls: List[Optional[VolumeInfo]] = []
        self.shelved: List[Path] = []
        shelf.mkdir(parents=True, exist_ok=True)

    def on_volume_boundary(self, prior):
        self.calls.append(prior)
        if prior is not None:
            target = self.shelf / f"vol{prior.index:03d}"
            shutil.move(str(prior.path), target)
            self.shelved.append(target)
            if prior.final:
                return None
        index = 1 if prior is None else prior.index + 1
        return str(self.scratch / f"part-{index}")


class ShelfReaderHandler(VolumeBoundaryHandler):
    """Restore-side handler serving shelved volumes in a given order."""

    def __init__(self, volumes: List[Path], scratch: Path):
        self.volumes = list(volumes)
        self.scratch = scratch
        self.calls: List[Optional[VolumeInfo]] = []
        scratch.mkdir(parents=True, exist_ok=True)

    def on_volume_boundary(self, prior):
        self.calls.append(prior)
        if prior is not None:
            prior.path.unlink(missing_ok=True)
            if prior.final:
                return None
        index = 1 if prior is None else prior.index + 1
        if index > len(self.volumes):
            return None
        target = self.scratch / f"in-{index}"
        shutil.copyfile(self.volumes[index - 1], target)
        return str(target)


# ==============================================================================
# Fixtures
# ==============================================================================


@pytest.fixture
def probe() -> DiskProbe:
    return DiskProbe()


@pytest.fixture
def store(tmp_path, probe) -> RecordingStore:
    """Instrumented blob store rooted in the test's temp directory."""
    return RecordingStore(tmp_path / "store", probe=probe)


@pytest.fixture
def compressor(probe) -> FakeCompressor:
    return FakeCompressor(probe)


@pytest.fixture
def working_dir(tmp_path) -> Path:
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture
def make_orchestrator(store, compressor):
    """Factory for orchestrators wired to the fake compressor and store."""

    def _make(volume_size: int = 64 * KIB, **kwargs) -> CheckpointOrchestrator:
        options = {
            "base_name": "build-artifact",
            "volume_size": volume_size,
            "volume_size_label": f"{volume_size // KIB}K",
            "compressor": compressor,
            "max_volumes": 40,
            "upload_attempts": 5,
            "upload_retry_delay": 0,
        }
        options.update(kwargs)
        return CheckpointOrchestrator(store, **options)

    return _make


@pytest.fixture
def log_records():
    """Capture loguru records emitted during the test."""
    records: List[dict] = []
    handler_id = logger.add(lambda message: records.append(message.record), level="TRACE")
    yield records
    logger.remove(handler_id)
