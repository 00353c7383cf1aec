"""
harvest_services -- the imperative shell of the harvest simulation.

``SimulationService`` is the public API; ``SimulationStore`` /
``SqlSimulationStore`` hold state per simulation id; ``EngineCatalog``
builds domain engines from the content tables.
"""

from harvest_services.engines import EngineCatalog
from harvest_services.simulation_service import SimulationService, diff_fields, retry_policy_from
from harvest_services.store import SimulationStore, SqlSimulationStore

__all__ = [
    "EngineCatalog",
    "SimulationService",
    "SimulationStore",
    "SqlSimulationStore",
    "diff_fields",
    "retry_policy_from",
]
