"""
YAML-backed content provider (``harvest_config.provider``).

Implements the kernel's ``ContentProvider`` protocol over loaded
``ContentTables`` and adds the national fallback used at simulation start:
an unknown region is logged and replaced by the ``national`` profile
instead of blocking the farmer from playing.
"""

from __future__ import annotations

from harvest_config.loader import ContentTables
from harvest_kernel.domain.profiles import CropEconomics, RegionProfile
from harvest_kernel.exceptions import InvalidConfigError, UnknownRegionError
from harvest_kernel.logging_config import get_logger

logger = get_logger("config.provider")

NATIONAL_REGION = "national"


def normalize_key(value: str) -> str:
    return value.strip().lower()


class YamlContentProvider:
    """Read-only lookups over one loaded table set."""

    def __init__(self, tables: ContentTables):
        self._tables = tables

    @property
    def checksum(self) -> str:
        return self._tables.checksum

    @property
    def regions(self) -> tuple[str, ...]:
        return tuple(sorted(self._tables.regions))

    def get_region_profile(self, region: str) -> RegionProfile:
        """
        Raises:
            UnknownRegionError: If the region has no profile.
        """
        profile = self._tables.regions.get(normalize_key(region))
        if profile is None:
            raise UnknownRegionError(region)
        return profile

    def get_crop_economics(self, crop: str, region: str) -> CropEconomics:
        """
        Raises:
            InvalidConfigError: If the crop is not tabulated for the region.
        """
        economics = self._tables.crops.get((normalize_key(crop), normalize_key(region)))
        if economics is None:
            raise InvalidConfigError(
                f"no economics for crop {crop!r} in region {region!r}",
                crop=crop,
                region=region,
            )
        return economics


def profile_with_fallback(provider, region: str) -> RegionProfile:
    """
    The region's profile, or the national profile if the region is unknown.

    The returned profile's ``region`` is the effective region; callers store
    that, not the requested name.
    """
    try:
        return provider.get_region_profile(region)
    except UnknownRegionError:
        logger.warning(
            "region_profile_fallback",
            extra={"requested_region": region, "effective_region": NATIONAL_REGION},
        )
        return provider.get_region_profile(NATIONAL_REGION)
