"""Kernel persistence services."""

from harvest_kernel.services.base import BaseService
from harvest_kernel.services.sequence_service import SequenceCounter, SequenceService
from harvest_kernel.services.simulation_repository import SimulationRepository

__all__ = [
    "BaseService",
    "SequenceCounter",
    "SequenceService",
    "SimulationRepository",
]
