"""
Replay -- rebuild a simulation from its sync action log.

Responsibility:
    Applies SyncActions to a ServerReplica in order using the same pure
    domain functions the device used, skips action ids that were already
    applied, and verifies each result against the checksum the device
    recorded.

Architecture position:
    Sync layer -- imports harvest_kernel only.  The engine for a
    (crop, region) pair comes from an injected resolver so this module
    never touches configuration.

Invariants enforced:
    - Idempotence: an already-applied action id is a no-op.
    - A replica is only changed by an action that replays to the
      checksum the device recorded; otherwise it is left untouched.

Failure modes:
    - PermanentSyncFailureError when an action cannot be replayed
      (domain error or checksum mismatch).  Replay is deterministic, so
      retrying would fail identically.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable

from harvest_kernel.db.types import to_money
from harvest_kernel.domain.decisions import decision_from_payload
from harvest_kernel.domain.serialization import flatten_state, state_checksum
from harvest_kernel.domain.simulation import SimulationEngine, start_new_year
from harvest_kernel.domain.state import (
    PeriodUnit,
    Severity,
    SimulationConfig,
    SimulationState,
)
from harvest_kernel.exceptions import HarvestKernelError, PermanentSyncFailureError
from harvest_kernel.logging_config import get_logger
from harvest_sync.actions import SyncAction, SyncKind

logger = get_logger("sync.replay")

EngineResolver = Callable[[str, str], SimulationEngine]


@dataclass
class ServerReplica:
    """Server-side copy of one simulation plus the server-owned fields."""

    simulation_id: str
    state: SimulationState | None = None
    server_fields: dict[str, Any] = field(default_factory=dict)
    applied_action_ids: set[str] = field(default_factory=set)
    field_timestamps: dict[str, datetime] = field(default_factory=dict)
    last_applied_at: datetime | None = None

    @property
    def checksum(self) -> str | None:
        return state_checksum(self.state) if self.state is not None else None


def config_from_request(request: dict[str, Any]) -> SimulationConfig:
    data = request["config"]
    opening = data.get("opening_capital")
    return SimulationConfig(
        simulation_id=data["simulation_id"],
        owner_id=data["owner_id"],
        crop=data["crop"],
        region=data["region"],
        seed=int(data["seed"]),
        period_unit=PeriodUnit(data.get("period_unit", PeriodUnit.MONTH.value)),
        year_length=data.get("year_length"),
        opening_capital=to_money(opening) if opening is not None else None,
    )


def config_to_request(config: SimulationConfig) -> dict[str, Any]:
    return {
        "config": {
            "simulation_id": config.simulation_id,
            "owner_id": config.owner_id,
            "crop": config.crop,
            "region": config.region,
            "seed": config.seed,
            "period_unit": config.period_unit.value,
            "year_length": config.year_length,
            "opening_capital": (
                str(config.opening_capital) if config.opening_capital is not None else None
            ),
        }
    }


class ReplayEngine:
    def __init__(self, engine_for: EngineResolver):
        self._engine_for = engine_for

    def apply(self, replica: ServerReplica, action: SyncAction, now: datetime) -> bool:
        """
        Apply one action; False if it was already applied.

        Raises:
            PermanentSyncFailureError: If the action does not replay cleanly.
        """
        if action.action_id in replica.applied_action_ids:
            logger.info("replay_duplicate_skipped", extra={"action_id": action.action_id})
            return False

        before = replica.state
        try:
            after = self._transition(replica, action)
        except PermanentSyncFailureError:
            raise
        except HarvestKernelError as exc:
            raise PermanentSyncFailureError(
                action.action_id, action.attempts + 1, f"{exc.code}: {exc}"
            ) from exc

        expected = action.result_checksum
        if after is not None and expected is not None:
            actual = state_checksum(after)
            if actual != expected:
                logger.error(
                    "replay_checksum_mismatch",
                    extra={
                        "action_id": action.action_id,
                        "expected_checksum": expected,
                        "actual_checksum": actual,
                    },
                )
                raise PermanentSyncFailureError(
                    action.action_id, action.attempts + 1, "replayed state checksum mismatch"
                )

        if action.kind is SyncKind.FIELD_UPDATE:
            fields = dict(action.request.get("fields", {}))
            replica.server_fields.update(fields)
            changed = set(fields)
        else:
            changed = _changed_paths(before, after)
            replica.state = after
        for path in changed:
            replica.field_timestamps[path] = action.client_timestamp
        replica.applied_action_ids.add(action.action_id)
        replica.last_applied_at = now
        logger.debug(
            "replay_action_applied",
            extra={
                "action_id": action.action_id,
                "kind": action.kind,
                "changed_fields": len(changed),
            },
        )
        return True

    def replay(
        self, replica: ServerReplica, actions: Iterable[SyncAction], now: datetime
    ) -> list[bool]:
        """Apply ``actions`` in queue order."""
        return [
            self.apply(replica, action, now)
            for action in sorted(actions, key=lambda a: a.order_key)
        ]

    def _transition(
        self, replica: ServerReplica, action: SyncAction
    ) -> SimulationState | None:
        request = action.request
        kind = action.kind

        if kind is SyncKind.START:
            if replica.state is not None:
                return replica.state
            config = config_from_request(dict(request))
            engine = self._engine_for(config.crop, config.region)
            return start_new_year(config, engine.profile, engine.economics)

        if kind is SyncKind.FIELD_UPDATE:
            return replica.state

        state = replica.state
        if state is None:
            raise PermanentSyncFailureError(
                action.action_id, action.attempts + 1, "simulation was never started"
            )
        engine = self._engine_for(state.crop, state.region)

        if kind is SyncKind.DECISION:
            decision = decision_from_payload(request["decision"])
            state, _ = engine.make_decision(state, decision)
            return state
        if kind is SyncKind.UNDO:
            target = request.get("target_action_id")
            if target is not None and target not in replica.applied_action_ids:
                # the decision never reached this replica
                return state
            last = state.last_decision
            decision_id = request.get("decision_id")
            if last is None or (decision_id and last.decision.decision_id != decision_id):
                raise PermanentSyncFailureError(
                    action.action_id, action.attempts + 1, "undo target is not the last decision"
                )
            return engine.undo_decision(state)
        if kind is SyncKind.ADVANCE:
            return engine.advance_time(state, int(request.get("periods", 1)))
        if kind is SyncKind.TRIGGER_EVENT:
            severity = request.get("severity")
            state, _ = engine.trigger_risk_event(
                state,
                event_type=request.get("event_type"),
                severity=Severity(severity) if severity else None,
            )
            return state
        if kind is SyncKind.COMPLETE:
            state, _ = engine.complete_year(state)
            return state
        raise PermanentSyncFailureError(
            action.action_id, action.attempts + 1, f"unknown action kind {kind}"
        )


def _changed_paths(
    before: SimulationState | None, after: SimulationState | None
) -> set[str]:
    old = flatten_state(before) if before is not None else {}
    new = flatten_state(after) if after is not None else {}
    return {path for path in old.keys() | new.keys() if old.get(path) != new.get(path)}

