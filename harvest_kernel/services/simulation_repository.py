"""
SimulationRepository -- SQL persistence of states, summaries and sync logs.

Responsibility:
    Writes the last validated SimulationState per simulation (JSON plus
    checksum), the derived YearSummary of a completed year, the
    append-only sync action log and the conflict audit trail, and reads
    them back.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.  Used by the
    SQL-backed simulation store in harvest_services.  Flushes only; the
    caller owns the transaction.

Invariants enforced:
    - A loaded state's checksum must equal the stored checksum.
    - Sync actions are numbered by SequenceService, per simulation.

Failure modes:
    - SimulationNotFoundError when loading an unknown simulation.
    - ChecksumMismatchError when a stored state was altered out of band.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from harvest_kernel.domain.serialization import (
    state_checksum,
    state_from_dict,
    state_to_dict,
    summary_to_dict,
)
from harvest_kernel.domain.state import SimulationState, YearSummary
from harvest_kernel.exceptions import ChecksumMismatchError, SimulationNotFoundError
from harvest_kernel.logging_config import get_logger
from harvest_kernel.models.simulation import SimulationRecord, YearSummaryRecord
from harvest_kernel.models.sync_action import ConflictAuditRecord, SyncActionRecord
from harvest_kernel.services.base import BaseService
from harvest_kernel.services.sequence_service import SequenceService, sync_sequence_name
from harvest_kernel.utils.hashing import hash_payload

logger = get_logger("services.simulation_repository")


class SimulationRepository(BaseService[SimulationRecord]):
    """Row-level reads and writes for one session."""

    def __init__(self, session: Session):
        super().__init__(session)
        self._sequences = SequenceService(session)

    # ------------------------------------------------------------------
    # Simulation state
    # ------------------------------------------------------------------

    def _record(self, simulation_id: str) -> SimulationRecord | None:
        return self.session.execute(
            select(SimulationRecord).where(SimulationRecord.simulation_id == simulation_id)
        ).scalar_one_or_none()

    def exists(self, simulation_id: str) -> bool:
        return self._record(simulation_id) is not None

    def save_state(self, state: SimulationState) -> SimulationRecord:
        """Insert or overwrite the snapshot row for ``state.simulation_id``."""
        data = state_to_dict(state)
        checksum = hash_payload(data)
        record = self._record(state.simulation_id)
        if record is None:
            record = SimulationRecord(
                simulation_id=state.simulation_id,
                owner_id=state.owner_id,
                status=state.status.value,
                period_index=state.period_index,
                revision=state.revision,
                state=data,
                checksum=checksum,
            )
            self.session.add(record)
        else:
            record.status = state.status.value
            record.period_index = state.period_index
            record.revision = state.revision
            record.state = data
            record.checksum = checksum
        self.session.flush()
        logger.debug(
            "simulation_saved",
            extra={
                "simulation_id": state.simulation_id,
                "revision": state.revision,
                "checksum": checksum,
            },
        )
        return record

    def load_state(self, simulation_id: str) -> SimulationState:
        """
        Raises:
            SimulationNotFoundError: If no row exists.
            ChecksumMismatchError: If the stored JSON does not match its checksum.
        """
        record = self._record(simulation_id)
        if record is None:
            raise SimulationNotFoundError(simulation_id)
        state = state_from_dict(record.state)
        actual = state_checksum(state)
        if actual != record.checksum:
            raise ChecksumMismatchError(record.checksum, actual)
        return state

    def list_simulation_ids(self, owner_id: str | None = None) -> list[str]:
        query = select(SimulationRecord.simulation_id).order_by(SimulationRecord.simulation_id)
        if owner_id is not None:
            query = query.where(SimulationRecord.owner_id == owner_id)
        return list(self.session.execute(query).scalars())

    def save_summary(self, summary: YearSummary) -> YearSummaryRecord:
        """Write the summary once; later calls for the same simulation are no-ops."""
        existing = self.session.execute(
            select(YearSummaryRecord).where(
                YearSummaryRecord.simulation_id == summary.simulation_id
            )
        ).scalar_one_or_none()
        if existing is not None:
            return existing
        record = YearSummaryRecord(
            simulation_id=summary.simulation_id,
            total_income=summary.total_income,
            total_expenses=summary.total_expenses,
            net_savings=summary.net_savings,
            closing_cash=summary.closing_cash,
            event_count=summary.event_count,
            decision_count=summary.decision_count,
            score=summary.score,
            summary=summary_to_dict(summary),
        )
        self.session.add(record)
        self.session.flush()
        return record

    # ------------------------------------------------------------------
    # Sync action log
    # ------------------------------------------------------------------

    def next_sequence(self, simulation_id: str) -> int:
        return self._sequences.next_value(sync_sequence_name(simulation_id))

    def append_action(self, **fields: Any) -> SyncActionRecord:
        """Append one sync action row; ``fields`` mirror SyncActionRecord columns."""
        record = SyncActionRecord(**fields)
        self.session.add(record)
        self.session.flush()
        return record

    def _action(self, action_id: str) -> SyncActionRecord | None:
        return self.session.execute(
            select(SyncActionRecord).where(SyncActionRecord.action_id == action_id)
        ).scalar_one_or_none()

    def update_action(self, action_id: str, **changes: Any) -> SyncActionRecord | None:
        """Update delivery columns of an existing action; None if unknown."""
        record = self._action(action_id)
        if record is None:
            return None
        for key, value in changes.items():
            setattr(record, key, value)
        self.session.flush()
        return record

    def delete_action(self, action_id: str) -> bool:
        """Remove a withdrawn action; False if unknown."""
        record = self._action(action_id)
        if record is None:
            return False
        self.session.delete(record)
        self.session.flush()
        return True

    def list_actions(self, simulation_id: str) -> list[SyncActionRecord]:
        return list(
            self.session.execute(
                select(SyncActionRecord)
                .where(SyncActionRecord.simulation_id == simulation_id)
                .order_by(SyncActionRecord.sequence)
            ).scalars()
        )

    # ------------------------------------------------------------------
    # Conflict audit
    # ------------------------------------------------------------------

    def record_conflict(self, **fields: Any) -> ConflictAuditRecord:
        record = ConflictAuditRecord(**fields)
        self.session.add(record)
        self.session.flush()
        return record

    def purge_conflicts(self, before: datetime) -> int:
        """Delete audit rows detected before ``before``; returns the count."""
        result = self.session.execute(
            delete(ConflictAuditRecord).where(ConflictAuditRecord.detected_at < before)
        )
        self.session.flush()
        return result.rowcount or 0
