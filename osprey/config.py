"""Server configuration and its TOML loader."""

import dataclasses
import tomllib
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path


@dataclass
class Config:
    """Settings for the network listener, storage, expiry and logging."""

    # Network
    listen_addr: str = "0.0.0.0:7070"
    max_clients: int = 10000

    # Limits
    max_key_bytes: int = 256
    max_value_bytes: int = 16 * 1024 * 1024

    # Persistence
    data_dir: str = "./data"
    wal_max_bytes: int = 256 * 1024 * 1024
    sync_policy: str = "batch"
    batch_fsync_ms: int = 100
    batch_fsync_bytes: int = 1024 * 1024

    # Snapshot
    enable_snapshot: bool = True
    snapshot_pause_max_ms: int = 500
    busy_warn_ms: int = 50

    # Expiry
    sweep_interval_ms: int = 200
    sweep_batch: int = 1000

    # Metrics
    metrics_enable: bool = True

    # Logging
    log_level: str = "INFO"
    log_file: str = ""
    slowlog_threshold_ms: int = 50

    def batch_fsync_duration(self) -> timedelta:
        return timedelta(milliseconds=self.batch_fsync_ms)

    def sweep_interval(self) -> timedelta:
        return timedelta(milliseconds=self.sweep_interval_ms)

    def busy_warn_duration(self) -> timedelta:
        return timedelta(milliseconds=self.busy_warn_ms)

    def slowlog_threshold(self) -> timedelta:
        return timedelta(milliseconds=self.slowlog_threshold_ms)


def default_config() -> Config:
    """Return a configuration holding the built-in defaults."""
    return Config()


def _matches(value, expected: type) -> bool:
    if expected is bool:
        return isinstance(value, bool)
    if expected is int:
        return isinstance(value, int) and not isinstance(value, bool)
    return isinstance(value, expected)


def _checked_values(document: dict) -> dict:
    values = {}
    for field in dataclasses.fields(Config):
        if field.name not in document:
            continue
        value = document[field.name]
        if not _matches(value, field.type):
            raise ValueError(
                f"{field.name}: expected {field.type.__name__}, "
                f"got {type(value).__name__}"
            )
        values[field.name] = value
    return values


def load_config(path) -> Config:
    """Load a TOML configuration file; a missing file yields the defaults."""
    try:
        with Path(path).open("rb") as handle:
            document = tomllib.load(handle)
    except FileNotFoundError:
        return default_config()
    return dataclasses.replace(default_config(), **_checked_values(document))