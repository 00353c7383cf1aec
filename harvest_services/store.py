"""
harvest_services.store -- simulation-id keyed state, locks and action log.

Responsibility:
    Holds the last validated SimulationState per simulation id, hands out
    one re-entrant lock per simulation, allocates sync sequence numbers,
    and keeps the local copy of the sync action log, the conflict audit
    trail and the server-owned ranking fields.

Architecture position:
    Services -- the imperative shell's storage seam.  ``SimulationStore``
    keeps everything in memory (device default, tests);
    ``SqlSimulationStore`` writes through ``SimulationRepository`` inside
    ``session_scope()`` so state survives restarts.

Invariants enforced:
    - One RLock per simulation id, created under a registry lock, so two
      threads never get different locks for the same simulation.
    - Different simulations share no mutable state besides the registry.
    - Sequence numbers are strictly increasing per simulation.

Failure modes:
    - SimulationNotFoundError from ``get()`` for unknown ids.
    - ChecksumMismatchError from ``SqlSimulationStore.get()`` when a
      stored row was altered outside the service.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator

from harvest_kernel.db.engine import session_scope
from harvest_kernel.domain.serialization import summary_to_dict
from harvest_kernel.domain.state import SimulationState, YearSummary
from harvest_kernel.exceptions import SimulationNotFoundError
from harvest_kernel.logging_config import get_logger
from harvest_kernel.models.sync_action import SyncActionRecord
from harvest_kernel.services.simulation_repository import SimulationRepository
from harvest_kernel.utils.hashing import canonicalize_json
from harvest_sync.actions import SyncAction, action_from_dict
from harvest_sync.conflicts import ConflictRecord

logger = get_logger("services.store")


class SimulationStore:
    """In-memory store; the base for the SQL-backed one."""

    def __init__(self) -> None:
        self._registry_lock = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}
        self._states: dict[str, SimulationState] = {}
        self._summaries: dict[str, dict[str, Any]] = {}
        self._sequences: dict[str, int] = {}
        self._actions: dict[str, dict[str, SyncAction]] = {}
        self._conflicts: list[ConflictRecord] = []
        self._ranking: dict[str, dict[str, Any]] = {}
        self._reconciled_at: dict[str, datetime] = {}

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    def lock_for(self, simulation_id: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(simulation_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[simulation_id] = lock
            return lock

    @contextmanager
    def exclusive(self, simulation_id: str) -> Iterator[None]:
        """Serialize every mutation of one simulation."""
        with self.lock_for(simulation_id):
            yield

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def exists(self, simulation_id: str) -> bool:
        with self._registry_lock:
            return simulation_id in self._states

    def get(self, simulation_id: str) -> SimulationState:
        with self._registry_lock:
            state = self._states.get(simulation_id)
        if state is None:
            raise SimulationNotFoundError(simulation_id)
        return state

    def put(self, state: SimulationState) -> None:
        with self._registry_lock:
            self._states[state.simulation_id] = state

    def save_summary(self, summary: YearSummary) -> None:
        with self._registry_lock:
            self._summaries.setdefault(summary.simulation_id, summary_to_dict(summary))

    def simulation_ids(self) -> list[str]:
        with self._registry_lock:
            return sorted(self._states)

    # ------------------------------------------------------------------
    # Sync action log
    # ------------------------------------------------------------------

    def next_sequence(self, simulation_id: str) -> int:
        with self._registry_lock:
            value = self._sequences.get(simulation_id, 0) + 1
            self._sequences[simulation_id] = value
            return value

    def record_action(self, action: SyncAction) -> None:
        """Insert or update one action; wired as the queue's ``on_update``."""
        with self._registry_lock:
            self._actions.setdefault(action.simulation_id, {})[action.action_id] = action

    def discard_action(self, action: SyncAction) -> None:
        """Drop a withdrawn action; wired as the queue's ``on_withdraw``."""
        with self._registry_lock:
            self._actions.get(action.simulation_id, {}).pop(action.action_id, None)

    def actions(self, simulation_id: str) -> list[SyncAction]:
        with self._registry_lock:
            log = list(self._actions.get(simulation_id, {}).values())
        return sorted(log, key=lambda a: a.sequence)

    # ------------------------------------------------------------------
    # Conflicts and server-owned fields
    # ------------------------------------------------------------------

    def record_conflict(self, record: ConflictRecord) -> None:
        with self._registry_lock:
            self._conflicts.append(record)

    def purge_conflicts(self, before: datetime) -> int:
        with self._registry_lock:
            kept = [r for r in self._conflicts if r.detected_at >= before]
            purged = len(self._conflicts) - len(kept)
            self._conflicts = kept
            return purged

    def ranking(self, simulation_id: str) -> dict[str, Any]:
        with self._registry_lock:
            return dict(self._ranking.get(simulation_id, {}))

    def update_ranking(self, simulation_id: str, fields: dict[str, Any]) -> None:
        with self._registry_lock:
            self._ranking.setdefault(simulation_id, {}).update(fields)

    def last_reconciled_at(self, simulation_id: str) -> datetime | None:
        with self._registry_lock:
            return self._reconciled_at.get(simulation_id)

    def mark_reconciled(self, simulation_id: str, at: datetime) -> None:
        with self._registry_lock:
            self._reconciled_at[simulation_id] = at


def _aware(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on DateTime(timezone=True) columns
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _record_to_action(record: SyncActionRecord) -> SyncAction:
    return action_from_dict(
        {
            "action_id": record.action_id,
            "simulation_id": record.simulation_id,
            "sequence": record.sequence,
            "kind": record.kind,
            "payload": record.payload,
            "client_timestamp": _aware(record.client_timestamp).isoformat(),
            "priority": record.priority,
            "idempotency_key": record.idempotency_key,
            "status": record.status,
            "attempts": record.attempts,
            "next_attempt_at": (
                _aware(record.next_attempt_at).isoformat() if record.next_attempt_at else None
            ),
            "last_error": record.last_error,
        }
    )


class SqlSimulationStore(SimulationStore):
    """
    Write-through store over the ``simulations``, ``sync_actions``,
    ``year_summaries`` and ``conflict_audit`` tables.

    The engine must be initialized (``init_engine_from_url``) and the
    tables created before use.  Locks and the ranking cache stay in memory.
    """

    def exists(self, simulation_id: str) -> bool:
        with session_scope() as session:
            return SimulationRepository(session).exists(simulation_id)

    def get(self, simulation_id: str) -> SimulationState:
        with session_scope() as session:
            return SimulationRepository(session).load_state(simulation_id)

    def put(self, state: SimulationState) -> None:
        with session_scope() as session:
            SimulationRepository(session).save_state(state)

    def save_summary(self, summary: YearSummary) -> None:
        with session_scope() as session:
            SimulationRepository(session).save_summary(summary)

    def simulation_ids(self) -> list[str]:
        with session_scope() as session:
            return SimulationRepository(session).list_simulation_ids()

    def next_sequence(self, simulation_id: str) -> int:
        with session_scope() as session:
            return SimulationRepository(session).next_sequence(simulation_id)

    def record_action(self, action: SyncAction) -> None:
        with session_scope() as session:
            repo = SimulationRepository(session)
            updated = repo.update_action(
                action.action_id,
                status=action.status.value,
                attempts=action.attempts,
                next_attempt_at=action.next_attempt_at,
                last_error=action.last_error,
            )
            if updated is None:
                repo.append_action(
                    action_id=action.action_id,
                    simulation_id=action.simulation_id,
                    sequence=action.sequence,
                    kind=action.kind.value,
                    payload=dict(action.payload),
                    client_timestamp=action.client_timestamp,
                    priority=action.priority.value,
                    status=action.status.value,
                    attempts=action.attempts,
                    next_attempt_at=action.next_attempt_at,
                    last_error=action.last_error,
                    idempotency_key=action.idempotency_key,
                )

    def discard_action(self, action: SyncAction) -> None:
        with session_scope() as session:
            SimulationRepository(session).delete_action(action.action_id)

    def actions(self, simulation_id: str) -> list[SyncAction]:
        with session_scope() as session:
            records = SimulationRepository(session).list_actions(simulation_id)
            return [_record_to_action(r) for r in records]

    def record_conflict(self, record: ConflictRecord) -> None:
        with session_scope() as session:
            SimulationRepository(session).record_conflict(
                simulation_id=record.simulation_id,
                field_path=record.field_path,
                field_class=record.field_class.value,
                winner=record.winner.value,
                local_value=canonicalize_json(record.local_value),
                server_value=canonicalize_json(record.server_value),
                resolved_value=canonicalize_json(record.resolved_value),
                detected_at=record.detected_at,
            )

    def purge_conflicts(self, before: datetime) -> int:
        with session_scope() as session:
            purged = SimulationRepository(session).purge_conflicts(before)
        logger.info("conflict_rows_purged", extra={"purged": purged})
        return purged
