"""Streaming compression of volume files with external multi-threaded tools."""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Callable, Optional

from build_checkpoint.exceptions import CheckpointError, CompressionError, PreconditionFailure
from build_checkpoint.logging import get_logger
from build_checkpoint.process import run_command

log = get_logger(source=__name__)

COMPRESSION_EXTENSIONS = {
    "zstd": ".zst",
    "gzip": ".gz",
}

# Preferred tool first; zstd is multi-threaded on its own
COMPRESSION_TOOLS = {
    "zstd": ("zstd",),
    "gzip": ("pigz", "gzip"),
}

Runner = Callable[..., int]


def get_compression_tool(compression: str) -> Optional[str]:
    """Get the path of the compression tool for an algorithm.

    Returns:
        Tool path, or None if no tool for the algorithm is installed

    Raises:
        ValueError: Unknown compression type
    """
    if compression not in COMPRESSION_TOOLS:
        raise ValueError(f"Unknown compression type: {compression}")
    for tool in COMPRESSION_TOOLS[compression]:
        path = shutil.which(tool)
        if path:
            return path
    return None


class Compressor:
    """Compresses and decompresses single files, replacing the input.

    The input file is always gone once a call returns successfully, so a raw
    volume and its compressed copy only coexist while the tool is running.
    """

    def __init__(
        self,
        compression: str = "zstd",
        level: int = 3,
        threads: int = 2,
        runner: Runner = run_command,
    ):
        if compression not in COMPRESSION_TOOLS:
            raise ValueError(f"Unknown compression type: {compression}")
        self.compression = compression
        self.level = level
        self.threads = threads
        self.runner = runner

    @property
    def extension(self) -> str:
        return COMPRESSION_EXTENSIONS[self.compression]

    def _tool(self) -> str:
        tool = get_compression_tool(self.compression)
        if not tool:
            raise PreconditionFailure(f"Compression tool not available: {self.compression}")
        return tool

    def ensure_available(self) -> None:
        """Raise PreconditionFailure if no tool for the algorithm is installed."""
        self._tool()

    def compressed_path(self, source: Path) -> Path:
        return source.with_name(source.name + self.extension)

    def compress(self, source: Path) -> Path:
        """Compress source next to itself and delete it.

        Returns:
            Path of the compressed file
        """
        source = Path(source)
        destination = self.compressed_path(source)
        tool = self._tool()
        if self.compression == "zstd":
            command = [
                tool, f"-{self.level}", f"-T{self.threads}", "-q", "-f", "--rm",
                str(source), "-o", str(destination),
            ]
        elif Path(tool).name == "pigz":
            command = [tool, f"-{self.level}", "-p", str(self.threads), "-f", str(source)]
        else:
            command = [tool, f"-{self.level}", "-f", str(source)]

        self._run(command, source)
        if not destination.exists():
            raise CompressionError(f"Compressor produced no output for {source}", str(source))
        source.unlink(missing_ok=True)
        log.debug(f"Compressed {source.name} to {destination.stat().st_size} bytes")
        return destination

    def decompress(self, source: Path, destination: Path) -> Path:
        """Decompress source into destination and delete source."""
        source = Path(source)
        destination = Path(destination)
        tool = self._tool()
        if self.compression == "zstd":
            command = [tool, "-d", "-q", "-f", "--rm", str(source), "-o", str(destination)]
            self._run(command, source)
        else:
            # gzip only knows how to strip its own suffix
            if not source.name.endswith(self.extension):
                staged = source.with_name(source.name + self.extension)
                source.rename(staged)
                source = staged
            self._run([tool, "-d", "-f", str(source)], source)
            produced = source.with_name(source.name[: -len(self.extension)])
            if produced != destination:
                produced.replace(destination)
        if not destination.exists():
            raise CompressionError(f"Decompressor produced no output for {source}", str(source))
        source.unlink(missing_ok=True)
        log.debug(f"Decompressed {source.name} to {destination.stat().st_size} bytes")
        return destination

    def _run(self, command: list[str], source: Path) -> None:
        try:
            returncode = self.runner(command)
        except CheckpointError:
            raise
        except OSError as e:
            raise CompressionError(f"Failed to run {command[0]}: {e}", str(source)) from e
        if returncode != 0:
            raise CompressionError(
                f"{Path(command[0]).name} failed on {source.name} (exit code {returncode})",
                str(source),
            )
