"""
Content table loading and validation tests.

Verifies:
- The shipped tables load, validate and checksum deterministically
- Malformed tables fail with MalformedTableError naming the table
- Region and crop economics fall back to the national tables
- Sync settings defaults and validation
"""

import shutil
from decimal import Decimal

import pytest
import yaml

from harvest_config import get_default_provider, load_sync_settings, load_tables
from harvest_config.loader import DEFAULT_DATA_DIR
from harvest_config.provider import NATIONAL_REGION, profile_with_fallback
from harvest_config.settings import SyncSettings
from harvest_kernel.domain.profiles import CategoryKind, Liquidity
from harvest_kernel.exceptions import (
    InvalidConfigError,
    MalformedTableError,
    UnknownRegionError,
)
from harvest_services import EngineCatalog


@pytest.fixture
def data_dir(tmp_path):
    """Writable copy of the shipped tables."""
    target = tmp_path / "data"
    shutil.copytree(DEFAULT_DATA_DIR, target)
    return target


def _edit(path, mutate):
    with open(path) as f:
        data = yaml.safe_load(f)
    mutate(data)
    with open(path, "w") as f:
        yaml.safe_dump(data, f)


# ---------------------------------------------------------------------------
# Shipped tables
# ---------------------------------------------------------------------------


class TestShippedTables:
    def test_regions_loaded(self, provider):
        assert provider.regions == ("bihar", "maharashtra", NATIONAL_REGION, "punjab")

    def test_checksum_is_deterministic(self):
        assert load_tables().checksum == load_tables().checksum

    def test_copy_has_same_checksum(self, data_dir):
        assert load_tables(data_dir).checksum == load_tables().checksum

    def test_punjab_wheat_economics(self, provider):
        economics = provider.get_crop_economics("Wheat", " Punjab ")
        assert economics.seasonal_income == Decimal("60000")
        assert economics.monthly_expense_range == (Decimal("2500"), Decimal("4000"))
        assert economics.opening_capital == Decimal("20000")

    def test_category_rates(self, provider):
        punjab = provider.get_region_profile("punjab")
        deposit = punjab.rate_for("fixed_deposit")
        assert deposit.kind is CategoryKind.INVESTMENT
        assert deposit.liquidity is Liquidity.LOCKED
        assert punjab.rate_for("crop_insurance").coverage_multiple == Decimal("20")
        assert punjab.rate_for("kisan_credit_card").max_amount == Decimal("50000")

    def test_region_override_only_touches_its_region(self, provider):
        assert provider.get_region_profile("maharashtra").rate_for(
            "moneylender"
        ).annual_rate == Decimal("0.48")
        assert provider.get_region_profile("bihar").rate_for(
            "moneylender"
        ).annual_rate == Decimal("0.36")

    def test_tables_are_frozen(self, provider):
        with pytest.raises(TypeError):
            provider.get_region_profile("punjab").category_rates["x"] = None


# ---------------------------------------------------------------------------
# Malformed tables
# ---------------------------------------------------------------------------


class TestMalformedTables:
    def test_missing_region_key(self, data_dir):
        _edit(data_dir / "regions.yaml", lambda d: d["regions"]["bihar"].pop("event_weights"))
        with pytest.raises(MalformedTableError) as exc_info:
            load_tables(data_dir)
        assert exc_info.value.table == "regions.bihar"

    def test_unknown_event_type(self, data_dir):
        _edit(
            data_dir / "regions.yaml",
            lambda d: d["regions"]["bihar"]["event_weights"].update({"locusts": "0.10"}),
        )
        with pytest.raises(MalformedTableError, match="locusts"):
            load_tables(data_dir)

    def test_missing_required_expense(self, data_dir):
        _edit(data_dir / "categories.yaml", lambda d: d["categories"].pop("healthcare"))
        with pytest.raises(MalformedTableError):
            load_tables(data_dir)

    def test_expense_range_inverted(self, data_dir):
        def invert(d):
            d["crops"][0]["monthly_expense_min"] = "5000"

        _edit(data_dir / "crops.yaml", invert)
        with pytest.raises(MalformedTableError):
            load_tables(data_dir)

    def test_duplicate_crop_row(self, data_dir):
        _edit(data_dir / "crops.yaml", lambda d: d["crops"].append(dict(d["crops"][0])))
        with pytest.raises(MalformedTableError):
            load_tables(data_dir)

    def test_float_rate_rejected(self, data_dir):
        def floaty(d):
            d["categories"]["fixed_deposit"]["annual_rate"] = 0.07

        _edit(data_dir / "categories.yaml", floaty)
        with pytest.raises(MalformedTableError):
            load_tables(data_dir)

    def test_harvest_month_out_of_range(self, data_dir):
        def bad_month(d):
            d["regions"]["punjab"]["season_calendar"]["wheat"] = [13]

        _edit(data_dir / "regions.yaml", bad_month)
        with pytest.raises(MalformedTableError):
            load_tables(data_dir)

    def test_missing_file(self, data_dir):
        (data_dir / "crops.yaml").unlink()
        with pytest.raises(FileNotFoundError):
            load_tables(data_dir)


# ---------------------------------------------------------------------------
# Fallbacks
# ---------------------------------------------------------------------------


class TestFallbacks:
    def test_unknown_region_raises_on_direct_lookup(self, provider):
        with pytest.raises(UnknownRegionError):
            provider.get_region_profile("kerala")

    def test_unknown_region_falls_back_to_national(self, provider, captured_logs):
        profile = profile_with_fallback(provider, "kerala")

        assert profile.region == NATIONAL_REGION
        records = [r for r in captured_logs() if r["message"] == "region_profile_fallback"]
        assert records[0]["requested_region"] == "kerala"
        assert records[0]["level"] == "WARNING"

    def test_engine_for_unknown_region_uses_national(self, engines):
        engine = engines("wheat", "kerala")
        assert engine.profile.region == NATIONAL_REGION
        assert engine.economics.seasonal_income == Decimal("50000")

    def test_crop_economics_fall_back(self, engines, captured_logs):
        economics = engines.economics("rice", "maharashtra")

        assert economics.region == NATIONAL_REGION
        records = [r for r in captured_logs() if r["message"] == "crop_economics_fallback"]
        assert records[0]["requested_region"] == "maharashtra"
        assert records[0]["level"] == "WARNING"

    def test_untabulated_national_crop(self, engines):
        with pytest.raises(InvalidConfigError):
            engines.economics("saffron", "national")

    def test_catalog_caches_engines(self, provider):
        catalog = EngineCatalog(provider)
        assert catalog("wheat", "punjab") is catalog(" WHEAT", "Punjab")

    def test_custom_data_dir_provider(self, data_dir):
        provider = get_default_provider(data_dir)
        assert provider.checksum == load_tables(data_dir).checksum


# ---------------------------------------------------------------------------
# Sync settings
# ---------------------------------------------------------------------------


class TestSyncSettings:
    def test_shipped_settings_match_defaults(self):
        assert load_sync_settings() == SyncSettings()

    def test_missing_file_gives_defaults(self, tmp_path):
        assert load_sync_settings(tmp_path) == SyncSettings()

    def test_partial_file(self, data_dir):
        _edit(data_dir / "sync.yaml", lambda d: d["sync"].update(max_attempts=3))
        settings = load_sync_settings(data_dir)
        assert settings.max_attempts == 3
        assert settings.max_delay_seconds == Decimal("60")

    @pytest.mark.parametrize(
        "key, value",
        [("max_attempts", 0), ("worker_threads", 0), ("base_delay_seconds", "0")],
    )
    def test_out_of_range(self, data_dir, key, value):
        _edit(data_dir / "sync.yaml", lambda d: d["sync"].update({key: value}))
        with pytest.raises(MalformedTableError):
            load_sync_settings(data_dir)
