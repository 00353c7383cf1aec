"""
Sync actions -- the serializable record of one local mutation.

Responsibility:
    Defines SyncAction and its enums, the default priority per action
    kind, construction with a fresh action id and idempotency key, and the
    dict round trip used by the SQL action log and the transport.

Architecture position:
    Sync layer -- imports harvest_kernel only.

Invariants enforced:
    - ``action_id`` is a uuid4 string and ``idempotency_key`` is derived
      from it, so a resend of the same action is recognizable anywhere.
    - Queue order is the total order ``(client_timestamp, action_id)``,
      with the per-simulation sequence breaking timestamp ties.
    - Actions are frozen; delivery state changes produce a new instance.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Mapping

from harvest_kernel.utils.idempotency import generate_idempotency_key


class SyncKind(str, Enum):
    START = "start"
    DECISION = "decision"
    UNDO = "undo"
    ADVANCE = "advance"
    TRIGGER_EVENT = "trigger_event"
    COMPLETE = "complete"
    FIELD_UPDATE = "field_update"


class SyncPriority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        """0 is sent first."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    SyncPriority.CRITICAL: 0,
    SyncPriority.HIGH: 1,
    SyncPriority.NORMAL: 2,
    SyncPriority.LOW: 3,
}


class SyncStatus(str, Enum):
    PENDING = "pending"
    SYNCING = "syncing"
    FAILED = "failed"
    APPLIED = "applied"


DEFAULT_PRIORITY: dict[SyncKind, SyncPriority] = {
    SyncKind.START: SyncPriority.CRITICAL,
    SyncKind.COMPLETE: SyncPriority.CRITICAL,
    SyncKind.DECISION: SyncPriority.HIGH,
    SyncKind.UNDO: SyncPriority.HIGH,
    SyncKind.ADVANCE: SyncPriority.NORMAL,
    SyncKind.TRIGGER_EVENT: SyncPriority.NORMAL,
    SyncKind.FIELD_UPDATE: SyncPriority.LOW,
}


@dataclass(frozen=True)
class SyncAction:
    """
    One mutation awaiting server acknowledgement.

    ``payload`` holds ``request`` (what to replay), ``changes`` (field path
    -> new value, for conflict detection) and ``result_checksum`` (state
    checksum after the mutation, for replay verification).
    """

    action_id: str
    simulation_id: str
    sequence: int
    kind: SyncKind
    payload: Mapping[str, Any]
    client_timestamp: datetime
    priority: SyncPriority
    idempotency_key: str
    status: SyncStatus = SyncStatus.PENDING
    attempts: int = 0
    next_attempt_at: datetime | None = None
    last_error: str | None = None

    @property
    def order_key(self) -> tuple[datetime, int, str]:
        return self.client_timestamp, self.sequence, self.action_id

    @property
    def request(self) -> Mapping[str, Any]:
        return self.payload.get("request", {})

    @property
    def changes(self) -> Mapping[str, Any]:
        return self.payload.get("changes", {})

    @property
    def result_checksum(self) -> str | None:
        return self.payload.get("result_checksum")

    def with_status(self, status: SyncStatus, **changes: Any) -> SyncAction:
        return replace(self, status=status, **changes)


def new_action(
    *,
    simulation_id: str,
    sequence: int,
    kind: SyncKind,
    request: Mapping[str, Any],
    client_timestamp: datetime,
    changes: Mapping[str, Any] | None = None,
    result_checksum: str | None = None,
    priority: SyncPriority | None = None,
    action_id: str | None = None,
) -> SyncAction:
    """Build a pending action with a fresh id and its idempotency key."""
    action_id = action_id or str(uuid.uuid4())
    return SyncAction(
        action_id=action_id,
        simulation_id=simulation_id,
        sequence=sequence,
        kind=kind,
        payload={
            "request": dict(request),
            "changes": dict(changes or {}),
            "result_checksum": result_checksum,
        },
        client_timestamp=client_timestamp,
        priority=priority or DEFAULT_PRIORITY[kind],
        idempotency_key=generate_idempotency_key(simulation_id, kind.value, action_id),
    )


def action_to_dict(action: SyncAction) -> dict[str, Any]:
    return {
        "action_id": action.action_id,
        "simulation_id": action.simulation_id,
        "sequence": action.sequence,
        "kind": action.kind.value,
        "payload": dict(action.payload),
        "client_timestamp": action.client_timestamp.isoformat(),
        "priority": action.priority.value,
        "idempotency_key": action.idempotency_key,
        "status": action.status.value,
        "attempts": action.attempts,
        "next_attempt_at": (
            action.next_attempt_at.isoformat() if action.next_attempt_at else None
        ),
        "last_error": action.last_error,
    }


def action_from_dict(data: Mapping[str, Any]) -> SyncAction:
    next_attempt_at = data.get("next_attempt_at")
    return SyncAction(
        action_id=data["action_id"],
        simulation_id=data["simulation_id"],
        sequence=int(data["sequence"]),
        kind=SyncKind(data["kind"]),
        payload=dict(data["payload"]),
        client_timestamp=datetime.fromisoformat(data["client_timestamp"]),
        priority=SyncPriority(data["priority"]),
        idempotency_key=data["idempotency_key"],
        status=SyncStatus(data.get("status", SyncStatus.PENDING.value)),
        attempts=int(data.get("attempts", 0)),
        next_attempt_at=datetime.fromisoformat(next_attempt_at) if next_attempt_at else None,
        last_error=data.get("last_error"),
    )


@dataclass(frozen=True)
class Ack:
    """Server acknowledgement; ``duplicate`` means the action was already applied."""

    action_id: str
    server_timestamp: datetime
    duplicate: bool = False
    server_checksum: str | None = None


@dataclass(frozen=True)
class SyncStatusReport:
    pending: int
    failed: int
    last_sync_timestamp: datetime | None
    permanent_failures: tuple[str, ...] = field(default=())
