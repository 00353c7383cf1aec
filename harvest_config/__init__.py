"""
harvest_config -- region, crop and category tables for the simulation.

Responsibility:
    The single place content tables are read.  ``get_default_provider()``
    returns a ``YamlContentProvider`` over the tables shipped in
    ``harvest_config/data`` (or a caller-supplied directory);
    ``load_sync_settings()`` returns the sync runtime knobs.

Architecture position:
    Configuration -- sits above ``harvest_kernel`` and below
    ``harvest_services``.  The kernel MUST NEVER import from here.

Invariants enforced:
    - Tables are parsed and validated once, then frozen for the lifetime
      of the provider.  Changing them means building a new provider.

Failure modes:
    - ``MalformedTableError`` for tables missing keys or required
      expense categories.
"""

from __future__ import annotations

from pathlib import Path

from harvest_config.loader import ContentTables, compute_checksum, load_tables
from harvest_config.provider import (
    NATIONAL_REGION,
    YamlContentProvider,
    profile_with_fallback,
)
from harvest_config.settings import SyncSettings, load_sync_settings
from harvest_kernel.logging_config import get_logger

_logger = get_logger("config")


def get_default_provider(data_dir: Path | None = None) -> YamlContentProvider:
    """Load tables and wrap them in a provider; logs the table checksum."""
    tables = load_tables(data_dir)
    _logger.info(
        "content_tables_loaded",
        extra={
            "source": str(tables.source),
            "checksum": tables.checksum,
            "region_count": len(tables.regions),
            "crop_count": len(tables.crops),
        },
    )
    return YamlContentProvider(tables)


__all__ = [
    "NATIONAL_REGION",
    "ContentTables",
    "SyncSettings",
    "YamlContentProvider",
    "compute_checksum",
    "get_default_provider",
    "load_sync_settings",
    "load_tables",
    "profile_with_fallback",
]
