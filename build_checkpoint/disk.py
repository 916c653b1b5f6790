"""Disk usage reporting around checkpoint operations."""

from __future__ import annotations

import os
from pathlib import Path

import psutil

from build_checkpoint.logging import get_logger

log = get_logger(source=__name__)


def format_bytes(num_bytes: int) -> str:
    """Format bytes to human readable string."""
    value = float(num_bytes)
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if abs(value) < 1024.0:
            return f"{value:.1f}{unit}"
        value /= 1024.0
    return f"{value:.1f}PB"


def directory_size(path: Path) -> int:
    """Total size in bytes of the files under path, without following links."""
    path = Path(path)
    if not os.path.lexists(path):
        return 0
    if not path.is_dir() or path.is_symlink():
        return path.lstat().st_size

    total = 0
    for root, _dirs, files in os.walk(path):
        for name in files:
            try:
                total += os.lstat(os.path.join(root, name)).st_size
            except FileNotFoundError:
                continue
    return total


def log_disk_usage(path: Path, label: str):
    """Log free/used/total space of the filesystem holding path."""
    try:
        usage = psutil.disk_usage(str(path))
    except OSError as e:
        log.warning(f"Disk usage unavailable for {path}: {e}")
        return None
    log.info(
        f"Disk {label}: {format_bytes(usage.free)} free, "
        f"{format_bytes(usage.used)}/{format_bytes(usage.total)} used ({usage.percent:.1f}%)"
    )
    return usage
