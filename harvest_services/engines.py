"""
EngineCatalog -- one SimulationEngine per (crop, effective region).

Shared by SimulationService and the server-side ReplayEngine so the device
and the replica build engines from identical tables.
"""

from __future__ import annotations

import threading

from harvest_config.provider import NATIONAL_REGION, normalize_key, profile_with_fallback
from harvest_kernel.domain.profiles import ContentProvider, CropEconomics, RegionProfile
from harvest_kernel.domain.simulation import SimulationEngine
from harvest_kernel.exceptions import InvalidConfigError
from harvest_kernel.logging_config import get_logger

logger = get_logger("services.engines")


class EngineCatalog:
    def __init__(self, provider: ContentProvider):
        self.provider = provider
        self._lock = threading.Lock()
        self._engines: dict[tuple[str, str], SimulationEngine] = {}

    def profile(self, region: str) -> RegionProfile:
        """The region's profile, falling back to national for unknown regions."""
        return profile_with_fallback(self.provider, region)

    def economics(self, crop: str, region: str) -> CropEconomics:
        """
        Crop economics for the region, else the national figures.

        Raises:
            InvalidConfigError: If neither is tabulated.
        """
        try:
            return self.provider.get_crop_economics(crop, region)
        except InvalidConfigError:
            if normalize_key(region) == NATIONAL_REGION:
                raise
            logger.warning(
                "crop_economics_fallback",
                extra={"crop": crop, "requested_region": region},
            )
            return self.provider.get_crop_economics(crop, NATIONAL_REGION)

    def __call__(self, crop: str, region: str) -> SimulationEngine:
        key = (normalize_key(crop), normalize_key(region))
        with self._lock:
            engine = self._engines.get(key)
        if engine is not None:
            return engine
        profile = self.profile(region)
        engine = SimulationEngine(profile, self.economics(crop, profile.region))
        with self._lock:
            return self._engines.setdefault(key, engine)
