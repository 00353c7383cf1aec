"""
Conflict resolution between local and server versions of a simulation.

Responsibility:
    Compares field changes made on the device with changes the server
    made since the last common ancestor, resolves every conflicting field
    with a fixed policy, and keeps an audit trail of each resolution for
    a bounded retention window.

Architecture position:
    Sync layer -- imports harvest_kernel only.

Invariants enforced:
    - The policy is total and deterministic: simulation fields (ledger,
      histories, period, status, score) -> local wins; ranking fields
      (``rank``, ``percentile``, ``badges``, ``ranking.*``,
      ``leaderboard.*``) -> server wins.
    - Values are compared by canonical JSON; equal values on both sides
      are not a conflict.
    - Paths are resolved in sorted order; the same inputs always give the
      same records in the same order.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Iterable, Mapping

from harvest_kernel.logging_config import get_logger
from harvest_kernel.utils.hashing import canonicalize_json
from harvest_sync.actions import SyncAction

logger = get_logger("sync.conflicts")

RANKING_PREFIXES = ("ranking.", "leaderboard.")
RANKING_FIELDS = frozenset({"rank", "percentile", "badges"})
DEFAULT_RETENTION = timedelta(days=7)

_MISSING = object()


class FieldClass(str, Enum):
    SIMULATION = "simulation"
    RANKING = "ranking"


class Winner(str, Enum):
    LOCAL = "local"
    SERVER = "server"


WINNER_BY_CLASS = {
    FieldClass.SIMULATION: Winner.LOCAL,
    FieldClass.RANKING: Winner.SERVER,
}


def classify(field_path: str) -> FieldClass:
    if field_path in RANKING_FIELDS or field_path.startswith(RANKING_PREFIXES):
        return FieldClass.RANKING
    return FieldClass.SIMULATION


def same_value(a: Any, b: Any) -> bool:
    if a is _MISSING or b is _MISSING:
        return a is b
    return _canonical(a) == _canonical(b)


def _canonical(value: Any) -> str:
    if isinstance(value, dict):
        return canonicalize_json(value)
    return canonicalize_json([value])


@dataclass(frozen=True)
class ConflictRecord:
    simulation_id: str
    field_path: str
    local_value: Any
    server_value: Any
    field_class: FieldClass
    resolved_value: Any
    winner: Winner
    detected_at: datetime


@dataclass(frozen=True)
class Resolution:
    """
    Outcome of one reconciliation.

    ``values`` holds the winning value of every path either side changed
    since the ancestor; ``conflicts`` only the paths both sides changed to
    different values.
    """

    simulation_id: str
    values: Mapping[str, Any]
    conflicts: tuple[ConflictRecord, ...]

    def values_of(self, field_class: FieldClass) -> dict[str, Any]:
        return {p: v for p, v in self.values.items() if classify(p) is field_class}


class ConflictResolver:
    def resolve_field(
        self,
        simulation_id: str,
        field_path: str,
        local_value: Any,
        server_value: Any,
        detected_at: datetime,
    ) -> ConflictRecord:
        field_class = classify(field_path)
        winner = WINNER_BY_CLASS[field_class]
        resolved = local_value if winner is Winner.LOCAL else server_value
        return ConflictRecord(
            simulation_id=simulation_id,
            field_path=field_path,
            local_value=local_value,
            server_value=server_value,
            field_class=field_class,
            resolved_value=resolved,
            winner=winner,
            detected_at=detected_at,
        )

    def detect(
        self,
        local_action: SyncAction,
        server_action: SyncAction,
        ancestor: datetime | None,
        detected_at: datetime,
    ) -> list[ConflictRecord]:
        """Conflicts between two actions on the same simulation made after ``ancestor``."""
        if ancestor is not None and (
            local_action.client_timestamp <= ancestor
            or server_action.client_timestamp <= ancestor
        ):
            return []
        local = local_action.changes
        server = server_action.changes
        return [
            self.resolve_field(
                local_action.simulation_id, path, local[path], server[path], detected_at
            )
            for path in sorted(local.keys() & server.keys())
            if not same_value(local[path], server[path])
        ]

    def reconcile(
        self,
        simulation_id: str,
        local_changes: Mapping[str, Any],
        server_fields: Mapping[str, Any],
        server_timestamps: Mapping[str, datetime],
        ancestor: datetime | None,
        detected_at: datetime,
    ) -> Resolution:
        """
        Merge local changes with server changes made after ``ancestor``.

        ``ancestor`` is the time both sides last agreed; None means they
        never have and every server field counts as changed.
        """
        server_changed = {
            path
            for path, ts in server_timestamps.items()
            if ancestor is None or ts > ancestor
        }
        values: dict[str, Any] = {}
        conflicts: list[ConflictRecord] = []
        for path in sorted(local_changes.keys() | server_changed):
            local = local_changes.get(path, _MISSING)
            server = server_fields.get(path, _MISSING)
            if path not in server_changed or server is _MISSING:
                values[path] = local
            elif local is _MISSING:
                values[path] = server
            elif same_value(local, server):
                values[path] = local
            else:
                record = self.resolve_field(simulation_id, path, local, server, detected_at)
                conflicts.append(record)
                values[path] = record.resolved_value
        values = {p: v for p, v in values.items() if v is not _MISSING}
        for record in conflicts:
            logger.info(
                "conflict_resolved",
                extra={
                    "simulation_id": simulation_id,
                    "field_path": record.field_path,
                    "field_class": record.field_class,
                    "winner": record.winner,
                },
            )
        return Resolution(simulation_id=simulation_id, values=values, conflicts=tuple(conflicts))


class ConflictAuditLog:
    """Retains ConflictRecords for ``retention``; ``on_record`` mirrors them elsewhere."""

    def __init__(
        self,
        retention: timedelta = DEFAULT_RETENTION,
        on_record: Callable[[ConflictRecord], None] | None = None,
    ):
        self.retention = retention
        self._on_record = on_record
        self._lock = threading.Lock()
        self._records: list[ConflictRecord] = []

    def record(self, records: Iterable[ConflictRecord]) -> None:
        records = list(records)
        with self._lock:
            self._records.extend(records)
        if self._on_record is not None:
            for record in records:
                self._on_record(record)

    def records(self, simulation_id: str | None = None) -> list[ConflictRecord]:
        with self._lock:
            return [
                r
                for r in self._records
                if simulation_id is None or r.simulation_id == simulation_id
            ]

    def purge(self, now: datetime) -> int:
        """Drop records older than the retention window; returns how many."""
        cutoff = now - self.retention
        with self._lock:
            kept = [r for r in self._records if r.detected_at >= cutoff]
            purged = len(self._records) - len(kept)
            self._records = kept
        if purged:
            logger.info("conflict_audit_purged", extra={"purged": purged})
        return purged
