from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

DEFAULT_LOG_DIR = Path(
    os.environ.get(
        "BUILD_CHECKPOINT_LOG_DIR",
        Path.home() / ".local" / "state" / "build-checkpoint" / "logs",
    )
)


def _should_log_process_output(record) -> bool:
    """Drop blank lines echoed from child processes."""
    tags = record["extra"].get("tags", [])
    if "process" in tags and not record["message"].strip():
        return False
    return True


def _should_log_progress(record) -> bool:
    """Filter per-chunk progress logs - only show in TRACE mode."""
    tags = record["extra"].get("tags", [])

    if "chunk" in tags:
        return record["level"].no <= logger.level("TRACE").no

    return True


def _combined_filter(record) -> bool:
    """Combined filter for all log suppression rules."""
    return _should_log_process_output(record) and _should_log_progress(record)


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
    file_logging: bool = True,
) -> Logger:
    """
    Setup multi-tier logging with separate sinks for different log levels.

    Logging Tiers:
    - CRITICAL/ERROR: Failed checkpoints, lost volumes
    - SUCCESS/INFO: Volume uploads, restores, manifest publication
    - DEBUG: Child process output, retry details
    - TRACE: Ultra-verbose (per-chunk transfer progress)

    Log Files:
    - operations.log: INFO+ events (7 day retention)
    - debug.log: DEBUG+ events when --debug is enabled (3 day retention)
    - structured.jsonl: Structured JSON logs for analysis (7 day retention)

    Args:
        debug: Enable DEBUG level logging
        trace: Enable TRACE level logging (very verbose)
        log_dir: Custom log directory (defaults to ~/.local/state/build-checkpoint/logs)
        file_logging: Write the log files in addition to the console
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "APP"})

    if trace:
        console_level = "TRACE"
    elif debug:
        console_level = "DEBUG"
    else:
        console_level = "INFO"

    # SINK 1: Console (stderr) - CI job log
    logger.add(
        sys.stderr,
        level=console_level,
        backtrace=False,
        diagnose=False,
        filter=_combined_filter,
        colorize=None,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <22}</cyan> | "
            "<blue>{extra[job_id]: <20}</blue> | "
            "{message}"
        ),
    )

    if not file_logging:
        return logger

    log_dir = log_dir or DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    # SINK 2: Operations Log - Important events only (INFO+)
    logger.add(
        log_dir / "operations.log",
        level="INFO",
        rotation="5 MB",
        retention="7 days",
        compression="zip",
        backtrace=False,
        diagnose=False,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{extra[source]: <22} | "
            "{extra[job_id]: <20} | "
            "{message}"
        ),
    )

    # SINK 3: Debug Log - Detailed diagnostics (DEBUG+ when debug=True)
    if debug or trace:
        logger.add(
            log_dir / "debug.log",
            level="TRACE" if trace else "DEBUG",
            rotation="10 MB",
            retention="3 days",
            compression="zip",
            backtrace=True,
            diagnose=True,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{extra[source]: <22} | "
                "{extra[job_id]: <20} | "
                "{extra[tags]} | "
                "{message}"
            ),
        )

    # SINK 4: Structured JSON Log - For analysis tools (INFO+)
    logger.add(
        log_dir / "structured.jsonl",
        level="INFO",
        rotation="10 MB",
        retention="7 days",
        compression="zip",
        serialize=True,
        format="{message}",
    )

    return logger


def get_logger(
    *,
    job_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """
    Get a logger with bound context.

    Args:
        job_id: Job identifier for tracking operations
        tags: Tags for filtering (e.g., ["process", "zstd"])
        source: Source component (usually the module name)

    Returns:
        Logger with bound context
    """
    extras: dict[str, object] = {}
    if job_id is not None:
        extras["job_id"] = job_id
    if tags is not None:
        extras["tags"] = list(tags)
    if source is not None:
        extras["source"] = source
    return logger.bind(**extras)


@contextmanager
def operation_context(operation: str, **details):
    """
    Context manager for tracking long-running operations with automatic timing.

    Automatically logs operation start, completion, and failure with duration tracking.

    Args:
        operation: Operation name (e.g., "checkpoint", "restore")
        **details: Operation-specific details to log

    Yields:
        Logger bound with job_id and operation context

    Example:
        with operation_context("checkpoint", base_name="build-artifact") as log:
            log.debug("Cleaning up previous checkpoint")
    """
    job_id = f"{operation}-{uuid.uuid4().hex[:8]}"

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        start_time = time.time()
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])

        log.info(f"{operation.capitalize()} started", **details)

        try:
            yield log
            duration = time.time() - start_time
            log.success(
                f"{operation.capitalize()} completed", duration_seconds=round(duration, 2)
            )
        except Exception as e:
            duration = time.time() - start_time
            log.error(
                f"{operation.capitalize()} failed",
                error=str(e),
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            )
            raise


class ThrottledLogger:
    """
    Logger wrapper that throttles high-frequency log events.

    Useful for archiving progress, which would otherwise log once per file.
    """

    def __init__(self, log: Logger, interval_seconds: float = 5.0):
        self.log = log
        self.interval = interval_seconds
        self.last_log_time: dict[str, float] = {}

    def debug(self, key: str, message: str, **kwargs) -> None:
        """Log at DEBUG level, throttled by key."""
        self._throttled_log("DEBUG", key, message, **kwargs)

    def info(self, key: str, message: str, **kwargs) -> None:
        """Log at INFO level, throttled by key."""
        self._throttled_log("INFO", key, message, **kwargs)

    def _throttled_log(self, level: str, key: str, message: str, **kwargs) -> None:
        now = time.time()
        last_time = self.last_log_time.get(key, 0)

        if now - last_time >= self.interval:
            log_method = getattr(self.log, level.lower())
            log_method(message, **kwargs)
            self.last_log_time[key] = now


class EventLogger:
    """
    Structured event logger using standardized schemas.

    Provides methods for logging volume and checkpoint events with
    consistent structure and fields.
    """

    @staticmethod
    def log_volume_uploaded(
        log: Logger, blob_name: str, index: int, raw_bytes: int, stored_bytes: int, **extra
    ) -> None:
        """Log a volume that reached the blob store."""
        log.info(
            f"Volume {index} uploaded as {blob_name}",
            event_type="volume_uploaded",
            blob_name=blob_name,
            volume_index=index,
            raw_bytes=raw_bytes,
            stored_bytes=stored_bytes,
            **extra,
        )

    @staticmethod
    def log_volume_restored(log: Logger, blob_name: str, index: int, raw_bytes: int, **extra) -> None:
        """Log a volume that was downloaded and handed to the archive engine."""
        log.info(
            f"Volume {index} ready from {blob_name}",
            event_type="volume_restored",
            blob_name=blob_name,
            volume_index=index,
            raw_bytes=raw_bytes,
            **extra,
        )

    @staticmethod
    def log_checkpoint_published(
        log: Logger, manifest_name: str, volume_count: int, **extra
    ) -> None:
        """Log publication of a manifest."""
        log.success(
            f"Checkpoint {manifest_name} published with {volume_count} volume(s)",
            event_type="checkpoint_published",
            manifest_name=manifest_name,
            volume_count=volume_count,
            **extra,
        )
