"""
SimulationService over the SQL-backed store (in-memory SQLite).

Verifies:
- States round-trip through the simulations table with their checksum
- Completed years write one year_summaries row
- The sync action log mirrors the queue, including withdrawals
- Conflict audit rows are written on reconcile and purged after retention
- A row altered outside the service is refused on load
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from harvest_kernel.db.engine import session_scope
from harvest_kernel.domain.serialization import state_checksum
from harvest_kernel.exceptions import ChecksumMismatchError, SimulationNotFoundError
from harvest_kernel.models.simulation import SimulationRecord, YearSummaryRecord
from harvest_kernel.models.sync_action import ConflictAuditRecord, SyncActionRecord
from harvest_services import SqlSimulationStore


def _count(model) -> int:
    with session_scope() as session:
        return session.execute(select(func.count()).select_from(model)).scalar_one()


def _action_rows(simulation_id):
    with session_scope() as session:
        rows = session.execute(
            select(SyncActionRecord.kind, SyncActionRecord.status, SyncActionRecord.sequence)
            .where(SyncActionRecord.simulation_id == simulation_id)
            .order_by(SyncActionRecord.sequence)
        ).all()
        return [tuple(row) for row in rows]


class TestStatePersistence:
    def test_full_year_persisted(self, sql_service, make_config):
        sim = sql_service.start_new_year(make_config()).simulation_id
        sql_service.make_decision(sim, {"type": "saving", "amount": "2000"})
        state = sql_service.advance_time(sim, 12)

        assert sql_service.get_state(sim) == state
        assert state.summary is not None
        with session_scope() as session:
            row = session.execute(
                select(YearSummaryRecord).where(YearSummaryRecord.simulation_id == sim)
            ).scalar_one()
            assert row.total_income == Decimal("60000.00")
            assert row.event_count == state.summary.event_count
            assert row.summary["closing_cash"] == str(state.cash)

        sql_service.complete_year(sim)
        assert _count(YearSummaryRecord) == 1

    def test_state_survives_new_store(self, sql_service, make_config):
        sim = sql_service.start_new_year(make_config()).simulation_id
        sql_service.make_decision(sim, {"type": "saving", "amount": "300"})

        reloaded = SqlSimulationStore().get(sim)
        assert state_checksum(reloaded) == state_checksum(sql_service.get_state(sim))
        assert SqlSimulationStore().simulation_ids() == [sim]

    def test_unknown_simulation(self, sql_service):
        with pytest.raises(SimulationNotFoundError):
            sql_service.get_state("missing")

    def test_tampered_row_rejected(self, sql_service, make_config):
        sim = sql_service.start_new_year(make_config()).simulation_id
        with session_scope() as session:
            record = session.execute(
                select(SimulationRecord).where(SimulationRecord.simulation_id == sim)
            ).scalar_one()
            record.state = {**record.state, "score": 999}

        with pytest.raises(ChecksumMismatchError):
            sql_service.get_state(sim)


class TestActionLog:
    def test_rows_follow_queue(self, sql_service, make_config):
        sim = sql_service.start_new_year(make_config()).simulation_id
        sql_service.make_decision(sim, {"type": "saving", "amount": "100"})
        sql_service.advance_time(sim)

        assert _action_rows(sim) == [
            ("start", "pending", 1),
            ("decision", "pending", 2),
            ("advance", "pending", 3),
        ]

        sql_service.worker.drain_now()
        assert {status for _, status, _ in _action_rows(sim)} == {"applied"}

    def test_withdrawn_decision_row_deleted(self, sql_service, make_config):
        sim = sql_service.start_new_year(make_config()).simulation_id
        sql_service.make_decision(sim, {"type": "saving", "amount": "100"})
        sql_service.undo_decision(sim)

        assert _action_rows(sim) == [("start", "pending", 1)]
        # the withdrawn sequence number is not reused
        sql_service.advance_time(sim)
        assert [seq for _, _, seq in _action_rows(sim)] == [1, 3]

    def test_failed_delivery_recorded(self, sql_service, transport, make_config):
        sim = sql_service.start_new_year(make_config()).simulation_id
        transport.set_offline(True)
        sql_service.worker.drain_now()

        with session_scope() as session:
            row = session.execute(
                select(SyncActionRecord).where(SyncActionRecord.simulation_id == sim)
            ).scalar_one()
            assert row.status == "failed"
            assert row.attempts == 1
            assert row.last_error == "offline"

        actions = sql_service.store.actions(sim)
        assert actions[0].next_attempt_at.tzinfo is not None


class TestConflictAudit:
    def test_conflict_rows_written_and_purged(self, sql_service, transport, clock, make_config):
        sim = sql_service.start_new_year(make_config()).simulation_id
        sql_service.worker.drain_now()
        transport.apply_server_update(sim, {"cash": "1.00"})

        resolution = sql_service.reconcile(sim).result()
        assert len(resolution.conflicts) == 1
        with session_scope() as session:
            row = session.execute(select(ConflictAuditRecord)).scalar_one()
            assert (row.field_path, row.winner, row.field_class) == ("cash", "local", "simulation")
            assert row.server_value == '"1.00"'

        clock.advance(timedelta(days=8).total_seconds())
        sql_service.reconcile(sim).result()
        assert _count(ConflictAuditRecord) == 0
