"""Settings storage for checkpoint configuration."""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping


SETTINGS_PATH = Path(
    os.environ.get(
        "BUILD_CHECKPOINT_SETTINGS_PATH",
        Path.home() / ".config" / "build-checkpoint" / "settings.json",
    )
)

ENV_PREFIX = "BUILD_CHECKPOINT_"
PASSWORD_ENV = "BUILD_CHECKPOINT_PASSWORD"

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_BASE_NAME = "build-artifact"
DEFAULT_VOLUME_SIZE = "5G"
DEFAULT_COMPRESSION = "zstd"
DEFAULT_COMPRESSION_LEVEL = 3
DEFAULT_COMPRESSION_THREADS = 2
DEFAULT_MAX_VOLUMES = 40
DEFAULT_UPLOAD_ATTEMPTS = 5
DEFAULT_UPLOAD_RETRY_DELAY = 10.0
DEFAULT_HTTP_TIMEOUT = 600

DEFAULT_SETTINGS: dict[str, Any] = {
    "base_name": DEFAULT_BASE_NAME,
    "volume_size": DEFAULT_VOLUME_SIZE,
    "compression": DEFAULT_COMPRESSION,
    "compression_level": DEFAULT_COMPRESSION_LEVEL,
    "compression_threads": DEFAULT_COMPRESSION_THREADS,
    "max_volumes": DEFAULT_MAX_VOLUMES,
    "upload_attempts": DEFAULT_UPLOAD_ATTEMPTS,
    "upload_retry_delay_seconds": DEFAULT_UPLOAD_RETRY_DELAY,
    "store_dir": None,
    "store_url": None,
    "store_token": None,
    "http_timeout_seconds": DEFAULT_HTTP_TIMEOUT,
}

_SIZE_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([KMGT]?)(?:i?B)?\s*$", re.IGNORECASE)
_SIZE_MULTIPLIERS = {
    "": 1,
    "K": 1024,
    "M": 1024**2,
    "G": 1024**3,
    "T": 1024**4,
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def _coerce(key: str, raw: str) -> Any:
    default = DEFAULT_SETTINGS.get(key)
    if isinstance(default, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    return raw or None


def load_settings(
    path: Path | None = None, environ: Mapping[str, str] | None = None
) -> dict[str, Any]:
    """Load defaults, then the settings file, then environment overrides."""
    settings_path = path or SETTINGS_PATH
    environ = os.environ if environ is None else environ
    settings_store.values = dict(DEFAULT_SETTINGS)
    if settings_path.exists():
        try:
            data = json.loads(settings_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            data = None
        if isinstance(data, dict):
            settings_store.values.update(data)
    for key in DEFAULT_SETTINGS:
        env_key = f"{ENV_PREFIX}{key.upper()}"
        if env_key in environ:
            settings_store.values[key] = _coerce(key, environ[env_key])
    return settings_store.values


def parse_size(text: str) -> int:
    """Convert a human-readable size such as "5G" or "512MiB" to bytes.

    Raises:
        ValueError: If the text is not a positive size
    """
    match = _SIZE_PATTERN.match(str(text))
    if not match:
        raise ValueError(f"Invalid size: {text!r}")
    number, unit = match.groups()
    size = int(float(number) * _SIZE_MULTIPLIERS[unit.upper()])
    if size <= 0:
        raise ValueError(f"Size must be positive: {text!r}")
    return size


@dataclass(frozen=True)
class CheckpointConfig:
    """Validated configuration for one checkpoint lineage."""

    base_name: str = DEFAULT_BASE_NAME
    volume_size: str = DEFAULT_VOLUME_SIZE
    compression: str = DEFAULT_COMPRESSION
    compression_level: int = DEFAULT_COMPRESSION_LEVEL
    compression_threads: int = DEFAULT_COMPRESSION_THREADS
    max_volumes: int = DEFAULT_MAX_VOLUMES
    upload_attempts: int = DEFAULT_UPLOAD_ATTEMPTS
    upload_retry_delay_seconds: float = DEFAULT_UPLOAD_RETRY_DELAY
    store_dir: str | None = None
    store_url: str | None = None
    store_token: str | None = None
    http_timeout_seconds: int = DEFAULT_HTTP_TIMEOUT
    password: str | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if not self.base_name:
            raise ValueError("base_name must not be empty")
        if self.compression not in ("zstd", "gzip"):
            raise ValueError(f"Unknown compression type: {self.compression}")
        if self.upload_attempts < 1:
            raise ValueError("upload_attempts must be at least 1")
        if self.max_volumes < 1:
            raise ValueError("max_volumes must be at least 1")
        parse_size(self.volume_size)

    @property
    def volume_size_bytes(self) -> int:
        return parse_size(self.volume_size)

    @property
    def encrypted(self) -> bool:
        return bool(self.password)

    @classmethod
    def from_settings(
        cls,
        values: Mapping[str, Any] | None = None,
        environ: Mapping[str, str] | None = None,
        **overrides: Any,
    ) -> CheckpointConfig:
        """Build a config from loaded settings plus explicit overrides.

        None-valued overrides are ignored so argparse defaults can be passed
        straight through.
        """
        environ = os.environ if environ is None else environ
        merged = dict(DEFAULT_SETTINGS)
        merged.update(settings_store.values if values is None else values)
        merged.update({key: value for key, value in overrides.items() if value is not None})
        known = {key: merged[key] for key in DEFAULT_SETTINGS if key in merged}
        return cls(password=environ.get(PASSWORD_ENV) or None, **known)
