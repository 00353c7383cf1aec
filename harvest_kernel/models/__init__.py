"""ORM models for the harvest kernel."""

from harvest_kernel.models.simulation import SimulationRecord, YearSummaryRecord
from harvest_kernel.models.sync_action import ConflictAuditRecord, SyncActionRecord

__all__ = [
    "SimulationRecord",
    "YearSummaryRecord",
    "SyncActionRecord",
    "ConflictAuditRecord",
]
