"""Multi-volume archive creation and extraction.

A PAX tar stream is written into (or read from) a file object that splits it
into volumes of at most ``volume_size`` bytes. At every volume boundary the
file object hands control to a VolumeBoundaryHandler and only continues once
the handler returns, so volumes are produced and consumed strictly in order.

Source files are deleted as soon as they are in the stream, which lets a
checkpoint shrink the working tree while it is being written.
"""
from __future__ import annotations

import io
import os
import tarfile
from pathlib import Path
from typing import Iterator, Optional, Sequence

from build_checkpoint.exceptions import ArchiveToolFailure, CheckpointError
from build_checkpoint.logging import ThrottledLogger, get_logger
from build_checkpoint.volumes import VolumeBoundaryHandler, VolumeInfo

log = get_logger(source=__name__)

DRAIN_CHUNK_SIZE = 1024 * 1024


class MultiVolumeWriter(io.RawIOBase):
    """Writable file object that splits its output into bounded volumes.

    A new volume is only opened when the current one is full and more data
    arrives, so the last volume is never empty. The last volume reaches the
    handler only through finish(); close() (including from garbage
    collection) behaves like abort(). Once aborted, further output is
    discarded.
    """

    def __init__(self, volume_size: int, handler: VolumeBoundaryHandler):
        super().__init__()
        if volume_size <= 0:
            raise ValueError(f"volume_size must be positive, got {volume_size}")
        self.volume_size = volume_size
        self.handler = handler
        self.volumes: list[VolumeInfo] = []
        self._index = 0
        self._file = None
        self._path: Optional[Path] = None
        self._written = 0
        self._aborted = False

        first = handler.on_volume_boundary(None)
        if first is None:
            raise ArchiveToolFailure("Volume handler did not name the first volume")
        self._open(Path(first))

    def writable(self) -> bool:
        return True

    @property
    def volume_count(self) -> int:
        return self._index

    def _open(self, path: Path) -> None:
        self._index += 1
        path.parent.mkdir(parents=True, exist_ok=True)
        self._path = path
        self._file = open(path, "wb")
        self._written = 0

    def _finish_current(self, final: bool) -> VolumeInfo:
        self._file.close()
        self._file = None
        info = VolumeInfo(self._index, self._path, self._written, final)
        self.volumes.append(info)
        return info

    def _rotate(self) -> None:
        completed = self._finish_current(final=False)
        next_path = self.handler.on_volume_boundary(completed)
        if next_path is None:
            raise ArchiveToolFailure(
                f"Volume handler did not name volume {completed.index + 1}"
            )
        self._open(Path(next_path))

    def write(self, data) -> int:
        view = memoryview(data).cast("B")
        total = len(view)
        if self._aborted:
            return total
        if self.closed:
            raise ValueError("write to closed volume writer")
        try:
            while view:
                if self._written >= self.volume_size:
                    self._rotate()
                chunk = view[: self.volume_size - self._written]
                self._file.write(chunk)
                self._written += len(chunk)
                view = view[len(chunk):]
        except BaseException:
            self.abort()
            raise
        return total

    def finish(self) -> list[VolumeInfo]:
        """Settle the last volume with the handler and close.

        Returns:
            Every volume written, in order
        """
        if self.closed:
            raise ValueError("finish on closed volume writer")
        try:
            completed = self._finish_current(final=True)
            self.handler.on_volume_boundary(completed)
        except BaseException:
            self._aborted = True
            raise
        finally:
            super().close()
        return list(self.volumes)

    def close(self) -> None:
        """Close without settling; only finish() hands the last volume over."""
        if not self.closed:
            self.abort()

    def abort(self) -> None:
        """Close the current volume without handing it to the handler."""
        self._aborted = True
        if self._file is not None:
            self._file.close()
            self._file = None
        super().close()


class MultiVolumeReader(io.RawIOBase):
    """Readable file object that joins volumes supplied by a handler.

    The handler is told about each consumed volume before it names the next,
    so it can delete the consumed file.
    """

    def __init__(self, handler: VolumeBoundaryHandler):
        super().__init__()
        self.handler = handler
        self.volumes: list[VolumeInfo] = []
        self._index = 0
        self._file = None
        self._path: Optional[Path] = None
        self._bytes_read = 0
        self._exhausted = False
        self.trailing_data = False

    def readable(self) -> bool:
        return True

    def _advance(self, prior: Optional[VolumeInfo]) -> None:
        try:
            next_path = self.handler.on_volume_boundary(prior)
        except BaseException:
            self._exhausted = True
            raise
        if next_path is None:
            self._exhausted = True
            return
        self._index += 1
        self._path = Path(next_path)
        self._file = open(self._path, "rb")
        self._bytes_read = 0

    def _finish_current(self, final: bool) -> VolumeInfo:
        self._file.close()
        self._file = None
        info = VolumeInfo(self._index, self._path, self._bytes_read, final)
        self.volumes.append(info)
        return info

    def readinto(self, buffer) -> int:
        while not self._exhausted:
            if self._file is None:
                self._advance(None)
                continue
            count = self._file.readinto(buffer)
            if count:
                self._bytes_read += count
                return count
            self._advance(self._finish_current(final=False))
        return 0

    def drain(self) -> int:
        """Consume every remaining volume; returns the number of bytes skipped.

        Sets trailing_data if any skipped byte was non-zero.
        """
        skipped = 0
        buffer = bytearray(DRAIN_CHUNK_SIZE)
        while True:
            count = self.readinto(buffer)
            if not count:
                return skipped
            if buffer[:count].count(0) != count:
                self.trailing_data = True
            skipped += count

    def close(self) -> None:
        if self.closed:
            return
        try:
            if self._file is not None:
                self.handler.on_volume_boundary(self._finish_current(final=True))
                self._exhausted = True
        finally:
            super().close()

    def abort(self) -> None:
        self._exhausted = True
        if self._file is not None:
            self._file.close()
            self._file = None
        super().close()


def _resolve_sources(
    source_paths: Sequence[str | Path], working_dir: Path
) -> list[tuple[Path, str]]:
    """Map source paths to (absolute path, archive name) pairs.

    Raises:
        ArchiveToolFailure: A path is missing, outside working_dir, or nested in another
    """
    if not source_paths:
        raise ArchiveToolFailure("No paths to archive")

    resolved: list[tuple[Path, str]] = []
    for source in source_paths:
        candidate = Path(source)
        if not candidate.is_absolute():
            candidate = working_dir / candidate
        candidate = Path(os.path.normpath(candidate))
        try:
            arcname = candidate.relative_to(working_dir).as_posix()
        except ValueError:
            raise ArchiveToolFailure(f"Path {source} is outside {working_dir}")
        if arcname in ("", "."):
            raise ArchiveToolFailure("Cannot archive the working directory itself")
        if not os.path.lexists(candidate):
            raise ArchiveToolFailure(f"Cannot stat {candidate}: No such file or directory")
        resolved.append((candidate, arcname))

    names = [arcname for _, arcname in resolved]
    for name in names:
        for other in names:
            if name != other and other.startswith(name + "/"):
                raise ArchiveToolFailure(f"Path {other} is already included by {name}")
    if len(set(names)) != len(names):
        raise ArchiveToolFailure("Duplicate paths to archive")
    return resolved


def _walk(path: Path) -> Iterator[Path]:
    """Yield path and everything below it in sorted pre-order, without following links."""
    yield path
    if path.is_dir() and not path.is_symlink():
        for child in sorted(path.iterdir(), key=lambda entry: entry.name):
            yield from _walk(child)


def _archive_and_remove(
    tar: tarfile.TarFile, root: Path, arcname: str, progress: ThrottledLogger
) -> int:
    added = 0
    directories: list[Path] = []
    for entry in _walk(root):
        relative = entry.relative_to(root).as_posix()
        name = arcname if relative == "." else f"{arcname}/{relative}"
        tarinfo = tar.gettarinfo(str(entry), arcname=name)
        if tarinfo is None:
            log.warning(f"Skipping unsupported file type: {entry}")
            continue

        if tarinfo.isreg():
            with open(entry, "rb") as f:
                tar.addfile(tarinfo, f)
        else:
            tar.addfile(tarinfo)
        added += 1

        if tarinfo.isdir():
            directories.append(entry)
        else:
            entry.unlink()
        progress.info("archive", f"Archived {added} entries from {arcname}, last: {name}")

    for directory in reversed(directories):
        try:
            directory.rmdir()
        except OSError as e:
            log.warning(f"Could not remove archived directory {directory}: {e}")
    return added


def create_archive(
    source_paths: Sequence[str | Path],
    working_dir: Path,
    volume_size: int,
    handler: VolumeBoundaryHandler,
) -> list[VolumeInfo]:
    """Archive source_paths into bounded volumes, removing sources as they go.

    Args:
        source_paths: Files or directories, absolute or relative to working_dir
        working_dir: Directory that archive names are relative to
        volume_size: Maximum bytes per volume
        handler: Called synchronously at every volume boundary

    Returns:
        The produced volumes in creation order

    Raises:
        ArchiveToolFailure: The tree could not be archived
        CheckpointError: Raised by the handler; propagated unchanged
    """
    working_dir = Path(os.path.abspath(working_dir))
    sources = _resolve_sources(source_paths, working_dir)
    log.info(f"Archiving {', '.join(name for _, name in sources)} from {working_dir}")
    log.info("Files will be removed as they are archived to save disk space")

    progress = ThrottledLogger(log, interval_seconds=10.0)
    writer = MultiVolumeWriter(volume_size, handler)
    total = 0
    try:
        tar = tarfile.open(fileobj=writer, mode="w|", format=tarfile.PAX_FORMAT)
        for path, arcname in sources:
            total += _archive_and_remove(tar, path, arcname, progress)
        tar.close()
        volumes = writer.finish()
    except CheckpointError:
        writer.abort()
        raise
    except (tarfile.TarError, OSError) as e:
        writer.abort()
        raise ArchiveToolFailure(f"Archiving failed: {e}") from e
    except BaseException:
        writer.abort()
        raise

    log.info(f"Archived {total} entries into {len(volumes)} volume(s)")
    return volumes


def _restore_filter(member: tarfile.TarInfo, dest_path: str) -> Optional[tarfile.TarInfo]:
    """Apply the "tar" extraction filter but keep the archived permission bits.

    Paths escaping dest_path and absolute links are still rejected.
    """
    safe = tarfile.tar_filter(member, dest_path)
    if safe is None or safe.mode == member.mode:
        return safe
    return safe.replace(mode=member.mode, deep=False)


def restore_archive(handler: VolumeBoundaryHandler, destination_dir: Path) -> int:
    """Extract the volumes supplied by handler into destination_dir.

    Volume order comes only from the handler, never from the filesystem.

    Returns:
        Number of archive members extracted

    Raises:
        ArchiveToolFailure: The joined stream is not a valid archive
        CheckpointError: Raised by the handler; propagated unchanged
    """
    destination_dir = Path(destination_dir)
    destination_dir.mkdir(parents=True, exist_ok=True)
    reader = MultiVolumeReader(handler)
    try:
        with tarfile.open(fileobj=reader, mode="r|") as tar:
            tar.extractall(path=destination_dir, filter=_restore_filter)
            members = len(tar.getmembers())
        skipped = reader.drain()
        reader.close()
        if reader.trailing_data:
            # A valid archive is followed by zero padding only
            raise ArchiveToolFailure(
                "Archive ended before the last volume was consumed; "
                "volumes are missing, reordered or corrupt"
            )
    except CheckpointError:
        reader.abort()
        raise
    except (tarfile.TarError, OSError) as e:
        reader.abort()
        raise ArchiveToolFailure(f"Extraction failed: {e}") from e
    except BaseException:
        reader.abort()
        raise

    if skipped:
        log.debug(f"Skipped {skipped} bytes of padding after the end of the archive")
    log.info(f"Extracted {members} entries from {len(reader.volumes)} volume(s)")
    return members
