"""
Sync runtime settings (``harvest_config.settings``).

Retry policy, retention window and worker pool size for the offline sync
layer, loaded from ``sync.yaml``.  Defaults match the shipped file so a
missing key never changes behaviour silently.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path

from harvest_config.loader import DEFAULT_DATA_DIR, SYNC_FILE, load_yaml_file, parse_decimal
from harvest_kernel.exceptions import MalformedTableError


@dataclass(frozen=True)
class SyncSettings:
    max_attempts: int = 8
    base_delay_seconds: Decimal = Decimal("1")
    backoff_factor: Decimal = Decimal("2")
    max_delay_seconds: Decimal = Decimal("60")
    conflict_retention_days: int = 7
    worker_threads: int = 2


def load_sync_settings(data_dir: Path | None = None) -> SyncSettings:
    """
    Raises:
        MalformedTableError: If a value is out of range.
    """
    path = (data_dir or DEFAULT_DATA_DIR) / SYNC_FILE
    if not path.exists():
        return SyncSettings()
    data = load_yaml_file(path).get("sync") or {}
    defaults = SyncSettings()
    settings = SyncSettings(
        max_attempts=int(data.get("max_attempts", defaults.max_attempts)),
        base_delay_seconds=parse_decimal(
            data.get("base_delay_seconds", defaults.base_delay_seconds),
            SYNC_FILE,
            "base_delay_seconds",
        ),
        backoff_factor=parse_decimal(
            data.get("backoff_factor", defaults.backoff_factor), SYNC_FILE, "backoff_factor"
        ),
        max_delay_seconds=parse_decimal(
            data.get("max_delay_seconds", defaults.max_delay_seconds),
            SYNC_FILE,
            "max_delay_seconds",
        ),
        conflict_retention_days=int(
            data.get("conflict_retention_days", defaults.conflict_retention_days)
        ),
        worker_threads=int(data.get("worker_threads", defaults.worker_threads)),
    )
    if settings.max_attempts < 1 or settings.worker_threads < 1:
        raise MalformedTableError(SYNC_FILE, "max_attempts and worker_threads must be >= 1")
    if settings.base_delay_seconds <= 0 or settings.backoff_factor < 1:
        raise MalformedTableError(SYNC_FILE, "backoff must start positive and not shrink")
    return settings
