"""
Content Table Loader (``harvest_config.loader``).

Responsibility
--------------
Loads the category, region, crop and sync YAML files and parses them into
the kernel's frozen profile dataclasses.  Services obtain tables through
``harvest_config.get_default_provider()``; this module is the parsing
layer underneath it.

Architecture position
---------------------
**Config layer** -- sits above ``harvest_kernel`` and below
``harvest_services``.  The kernel never imports from here.

Invariants enforced
-------------------
* Every amount and rate is parsed as ``Decimal`` from its string form.
* Every region's category table contains the required recurring expense
  categories with a positive share.
* ``compute_checksum`` gives a deterministic identity for a loaded table
  set, so device and server can confirm they run identical tables.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing keys or bad values  -> ``MalformedTableError``.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

import yaml

from harvest_kernel.domain.profiles import (
    REQUIRED_EXPENSE_CATEGORIES,
    CategoryKind,
    CategoryRate,
    CropEconomics,
    Liquidity,
    RegionProfile,
    freeze_mapping,
)
from harvest_kernel.domain.state import EventType
from harvest_kernel.exceptions import MalformedTableError

DEFAULT_DATA_DIR = Path(__file__).parent / "data"

CATEGORIES_FILE = "categories.yaml"
REGIONS_FILE = "regions.yaml"
CROPS_FILE = "crops.yaml"
SYNC_FILE = "sync.yaml"


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def parse_decimal(value: Any, table: str, key: str) -> Decimal:
    if value is None or isinstance(value, (bool, float)):
        raise MalformedTableError(table, f"{key} must be a decimal string or integer")
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise MalformedTableError(table, f"{key} is not numeric: {value!r}") from exc


def _check_event_types(names, table: str, key: str):
    known = {e.value for e in EventType}
    unknown = sorted(set(names) - known)
    if unknown:
        raise MalformedTableError(table, f"{key} names unknown event types {unknown}")
    return names


def _require(data: Mapping[str, Any], key: str, table: str) -> Any:
    if key not in data:
        raise MalformedTableError(table, f"missing key {key!r}")
    return data[key]


# ---------------------------------------------------------------------------
# Categories
# ---------------------------------------------------------------------------


def parse_category_rate(name: str, data: Mapping[str, Any]) -> CategoryRate:
    """Parse one row of the category table."""
    table = f"categories.{name}"
    try:
        kind = CategoryKind(_require(data, "kind", table))
        liquidity = Liquidity(data.get("liquidity", Liquidity.NONE.value))
    except ValueError as exc:
        raise MalformedTableError(table, str(exc)) from exc

    max_amount = data.get("max_amount")
    return CategoryRate(
        category=name,
        kind=kind,
        annual_rate=parse_decimal(data.get("annual_rate", "0"), table, "annual_rate"),
        compounding_per_year=int(data.get("compounding_per_year", 1)),
        liquidity=liquidity,
        essential=bool(data.get("essential", False)),
        expense_share=parse_decimal(data.get("expense_share", "0"), table, "expense_share"),
        coverage_multiple=parse_decimal(
            data.get("coverage_multiple", "0"), table, "coverage_multiple"
        ),
        covers=_check_event_types(frozenset(data.get("covers", ())), table, "covers"),
        max_amount=(
            parse_decimal(max_amount, table, "max_amount") if max_amount is not None else None
        ),
    )


def parse_categories(data: Mapping[str, Any]) -> dict[str, Mapping[str, Any]]:
    """Raw category rows keyed by name; parsed per region after overrides."""
    rows = _require(data, "categories", CATEGORIES_FILE)
    if not isinstance(rows, Mapping) or not rows:
        raise MalformedTableError(CATEGORIES_FILE, "categories must be a non-empty mapping")
    return {str(name): dict(row) for name, row in rows.items()}


# ---------------------------------------------------------------------------
# Regions
# ---------------------------------------------------------------------------


def parse_region_profile(
    region: str,
    data: Mapping[str, Any],
    categories: Mapping[str, Mapping[str, Any]],
) -> RegionProfile:
    """
    Parse one region, merging its category overrides over the shared table.

    Raises:
        MalformedTableError: on missing keys, bad numbers, or a category
            table lacking a required recurring expense.
    """
    table = f"regions.{region}"
    crops = frozenset(_require(data, "crops", table))
    calendar = {
        str(crop): tuple(int(m) for m in months)
        for crop, months in _require(data, "season_calendar", table).items()
    }
    for crop, months in calendar.items():
        if any(m < 1 or m > 12 for m in months):
            raise MalformedTableError(table, f"harvest months for {crop} must be 1..12")

    event_weights = {
        str(k): parse_decimal(v, table, f"event_weights.{k}")
        for k, v in _require(data, "event_weights", table).items()
    }
    severity_weights = {
        str(k): parse_decimal(v, table, f"severity_weights.{k}")
        for k, v in _require(data, "severity_weights", table).items()
    }
    _check_event_types(event_weights, table, "event_weights")
    if not any(w > 0 for w in event_weights.values()):
        raise MalformedTableError(table, "event_weights needs a positive weight")

    overrides = data.get("category_overrides") or {}
    rates = {}
    for name, row in categories.items():
        merged = dict(row)
        merged.update(overrides.get(name, {}))
        rates[name] = parse_category_rate(name, merged)

    for required in REQUIRED_EXPENSE_CATEGORIES:
        rate = rates.get(required)
        if rate is None or rate.kind is not CategoryKind.EXPENSE or rate.expense_share <= 0:
            raise MalformedTableError(
                table, f"required recurring expense {required!r} is missing or has no share"
            )

    return RegionProfile(
        region=region,
        crops=crops,
        season_calendar=freeze_mapping(calendar),
        event_weights=freeze_mapping(event_weights),
        severity_weights=freeze_mapping(severity_weights),
        category_rates=freeze_mapping(rates),
    )


# ---------------------------------------------------------------------------
# Crops
# ---------------------------------------------------------------------------


def parse_crop_economics(data: Mapping[str, Any]) -> CropEconomics:
    crop = str(_require(data, "crop", CROPS_FILE))
    region = str(_require(data, "region", CROPS_FILE))
    table = f"crops.{crop}.{region}"
    economics = CropEconomics(
        crop=crop,
        region=region,
        seasonal_income=parse_decimal(
            _require(data, "seasonal_income", table), table, "seasonal_income"
        ),
        monthly_expense_min=parse_decimal(
            _require(data, "monthly_expense_min", table), table, "monthly_expense_min"
        ),
        monthly_expense_max=parse_decimal(
            _require(data, "monthly_expense_max", table), table, "monthly_expense_max"
        ),
        opening_capital=parse_decimal(
            _require(data, "opening_capital", table), table, "opening_capital"
        ),
    )
    if economics.monthly_expense_min > economics.monthly_expense_max:
        raise MalformedTableError(table, "monthly_expense_min exceeds monthly_expense_max")
    return economics


# ---------------------------------------------------------------------------
# Table set
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ContentTables:
    """All region and crop tables loaded from one directory."""

    regions: Mapping[str, RegionProfile]
    crops: Mapping[tuple[str, str], CropEconomics]
    checksum: str
    source: Path = field(default=DEFAULT_DATA_DIR)


def load_tables(data_dir: Path | None = None) -> ContentTables:
    """
    Load and validate categories, regions and crops from ``data_dir``.

    Raises:
        FileNotFoundError, yaml.YAMLError, MalformedTableError.
    """
    data_dir = data_dir or DEFAULT_DATA_DIR
    raw_categories = load_yaml_file(data_dir / CATEGORIES_FILE)
    raw_regions = load_yaml_file(data_dir / REGIONS_FILE)
    raw_crops = load_yaml_file(data_dir / CROPS_FILE)

    categories = parse_categories(raw_categories)
    regions_data = _require(raw_regions, "regions", REGIONS_FILE)
    regions = {
        str(name).lower(): parse_region_profile(str(name).lower(), row, categories)
        for name, row in regions_data.items()
    }

    crops: dict[tuple[str, str], CropEconomics] = {}
    for row in _require(raw_crops, "crops", CROPS_FILE):
        economics = parse_crop_economics(row)
        key = (economics.crop, economics.region)
        if key in crops:
            raise MalformedTableError(CROPS_FILE, f"duplicate entry for {key}")
        if economics.region not in regions:
            raise MalformedTableError(CROPS_FILE, f"unknown region {economics.region!r}")
        crops[key] = economics

    return ContentTables(
        regions=MappingProxyType(regions),
        crops=MappingProxyType(crops),
        checksum=compute_checksum(
            {"categories": raw_categories, "regions": raw_regions, "crops": raw_crops}
        ),
        source=data_dir,
    )


def compute_checksum(data: dict[str, Any]) -> str:
    """
    Compute SHA-256 checksum of canonical JSON serialization.

    Identical ``data`` always produces identical checksums.
    """
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
