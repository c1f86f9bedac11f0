"""Configuration loading from environment variables and memtier.toml."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib
from pathlib import Path

_DEFAULT_HOME = Path.home() / ".memtier"
_CONFIG_FILENAME = "memtier.toml"

DEFAULT_RETENTION_DAYS = 90
DEFAULT_CACHE_SIZE_THRESHOLD_MB = 5.0


def _as_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class ArchiveConfig:
    """Eviction and archival settings."""

    retention_days: int = DEFAULT_RETENTION_DAYS
    cache_size_threshold_mb: float = DEFAULT_CACHE_SIZE_THRESHOLD_MB
    lock_timeout: float = 10.0
    auto_archive: bool = True


@dataclass
class MemtierConfig:
    """Top-level memtier configuration."""

    home: Path = _DEFAULT_HOME
    sessions_dir: Path = _DEFAULT_HOME / "sessions"
    archive: ArchiveConfig = field(default_factory=ArchiveConfig)
    log_level: str = "INFO"


def load_config(config_path: Path | None = None) -> MemtierConfig:
    """Load configuration from environment variables and optional memtier.toml.

    Priority: environment variables > memtier.toml > defaults.
    """
    home = Path(os.getenv("MEMTIER_HOME", str(_DEFAULT_HOME)))

    file_data: dict = {}
    if config_path and config_path.exists():
        file_data = tomllib.loads(config_path.read_text())
    else:
        # Search current dir and the memtier home
        for candidate in [Path.cwd() / _CONFIG_FILENAME, home / _CONFIG_FILENAME]:
            if candidate.exists():
                file_data = tomllib.loads(candidate.read_text())
                break

    archive_data = file_data.get("archive", {})
    sessions_default = file_data.get("sessions_dir", str(home / "sessions"))

    config = MemtierConfig(
        home=home,
        sessions_dir=Path(os.getenv("MEMTIER_SESSIONS_DIR", sessions_default)).expanduser(),
        archive=ArchiveConfig(
            retention_days=int(
                os.getenv(
                    "MEMTIER_RETENTION_DAYS",
                    archive_data.get("retention_days", DEFAULT_RETENTION_DAYS),
                )
            ),
            cache_size_threshold_mb=float(
                os.getenv(
                    "MEMTIER_CACHE_THRESHOLD_MB",
                    archive_data.get("cache_size_threshold_mb", DEFAULT_CACHE_SIZE_THRESHOLD_MB),
                )
            ),
            lock_timeout=float(
                os.getenv("MEMTIER_LOCK_TIMEOUT", archive_data.get("lock_timeout", 10.0))
            ),
            auto_archive=_as_bool(
                os.getenv("MEMTIER_AUTO_ARCHIVE", archive_data.get("auto_archive", True))
            ),
        ),
        log_level=os.getenv("MEMTIER_LOG_LEVEL", file_data.get("log_level", "INFO")),
    )
    return config
