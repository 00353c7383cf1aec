"""
harvest_services.simulation_service -- public API of the simulation kernel.

Responsibility:
    The imperative shell around the pure domain: loads the last validated
    state, runs one domain transition inside the simulation's exclusive
    section, re-checks the balance invariant, persists the result and
    records a SyncAction for it.  Sync delivery and reconciliation are
    exposed here too but never block gameplay.

Architecture position:
    Services -- top layer.  Wires harvest_config (tables), harvest_kernel
    (domain, persistence) and harvest_sync (queue, worker, resolver).
    Presentation adapters call only this module.

Invariants enforced:
    - Every mutation of one simulation runs under that simulation's lock.
    - A state is stored only after ledger.assert_balanced() passed; a
      failed transition leaves the last validated state in place.
    - Each stored mutation has exactly one SyncAction, except an undo whose
      decision was still pending: that decision is withdrawn instead.
    - ConsistencyError never reaches the caller; it is logged at ERROR and
      replaced by StateRestoredError.

Failure modes:
    - ValidationError / StateError subclasses from the domain pass through
      unchanged; nothing was mutated.
    - StateRestoredError after an internal inconsistency.
    - SimulationNotFoundError for unknown simulation ids.
    - RuntimeError from flush_sync() / reconcile() without a transport.

Usage:
    provider = get_default_provider()
    engines = EngineCatalog(provider)
    transport = InMemoryServerTransport(ReplayEngine(engines), clock)
    service = SimulationService(engines, transport=transport, clock=clock)

    state = service.start_new_year(SimulationConfig(...))
    outcome = service.make_decision(state.simulation_id, {"type": "saving", "amount": "5000"})
    service.flush_sync().result()
"""

from __future__ import annotations

import uuid
from concurrent.futures import Future
from contextlib import contextmanager
from dataclasses import replace
from datetime import timedelta
from typing import Any, Callable, Iterator, Mapping

from harvest_config.settings import SyncSettings
from harvest_kernel.domain import ledger
from harvest_kernel.domain.clock import Clock, SystemClock
from harvest_kernel.domain.decisions import (
    FinancialDecision,
    decision_from_payload,
    decision_to_payload,
)
from harvest_kernel.domain.processor import DecisionOutcome, ValidationResult
from harvest_kernel.domain.serialization import flatten_state, state_checksum
from harvest_kernel.domain.simulation import SimulationEngine, start_new_year
from harvest_kernel.domain.state import (
    RiskEvent,
    Severity,
    SimulationConfig,
    SimulationState,
    YearSummary,
)
from harvest_kernel.exceptions import (
    ActionNotWithdrawableError,
    ConsistencyError,
    StateRestoredError,
)
from harvest_kernel.logging_config import LogContext, get_logger
from harvest_services.engines import EngineCatalog
from harvest_services.store import SimulationStore
from harvest_sync.actions import SyncAction, SyncKind, SyncStatus, SyncStatusReport, new_action
from harvest_sync.backoff import RetryPolicy
from harvest_sync.conflicts import ConflictAuditLog, ConflictResolver, FieldClass, Resolution
from harvest_sync.queue import SyncQueue
from harvest_sync.replay import config_to_request
from harvest_sync.transport import InMemoryServerTransport
from harvest_sync.worker import SyncWorker

logger = get_logger("services.simulation")


def retry_policy_from(settings: SyncSettings) -> RetryPolicy:
    return RetryPolicy(
        base_delay=settings.base_delay_seconds,
        factor=settings.backoff_factor,
        max_delay=settings.max_delay_seconds,
        max_attempts=settings.max_attempts,
    )


def diff_fields(before: Mapping[str, Any], after: Mapping[str, Any]) -> dict[str, Any]:
    """Paths whose value differs; removed paths map to None."""
    return {
        path: after.get(path)
        for path in sorted(before.keys() | after.keys())
        if before.get(path) != after.get(path)
    }


class SimulationService:
    """
    Synchronous simulation API over a SimulationStore.

    Contract:
        Every public method returns as soon as the local transition is
        stored; network delivery happens on the SyncWorker's threads.

    Non-goals:
        - Does NOT render text; returns identifiers and numbers only.
        - Does NOT authenticate owners.
    """

    def __init__(
        self,
        engines: EngineCatalog,
        *,
        store: SimulationStore | None = None,
        transport: InMemoryServerTransport | None = None,
        clock: Clock | None = None,
        settings: SyncSettings | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.engines = engines
        self.store = store or SimulationStore()
        self.settings = settings or SyncSettings()
        self._clock = clock or SystemClock()
        self.queue = SyncQueue(
            retry_policy_from(self.settings),
            on_update=self.store.record_action,
            on_withdraw=self.store.discard_action,
        )
        self.transport = transport
        self.worker: SyncWorker | None = None
        if transport is not None:
            worker_kwargs: dict[str, Any] = {"max_workers": self.settings.worker_threads}
            if sleep is not None:
                worker_kwargs["sleep"] = sleep
            self.worker = SyncWorker(self.queue, transport, self._clock, **worker_kwargs)
        self.resolver = ConflictResolver()
        self.audit_log = ConflictAuditLog(
            retention=timedelta(days=self.settings.conflict_retention_days),
            on_record=self.store.record_conflict,
        )

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _engine(self, state: SimulationState) -> SimulationEngine:
        return self.engines(state.crop, state.region)

    @contextmanager
    def _guarded(self, simulation_id: str) -> Iterator[None]:
        """Exclusive section that turns ConsistencyError into StateRestoredError."""
        with LogContext.bind(simulation_id=simulation_id), self.store.exclusive(simulation_id):
            try:
                yield
            except ConsistencyError as exc:
                logger.error(
                    "state_restored",
                    extra={
                        "error_code": exc.code,
                        "error": str(exc),
                        "error_type": type(exc).__name__,
                    },
                )
                raise StateRestoredError(simulation_id) from exc

    def _commit(
        self,
        kind: SyncKind,
        before: SimulationState | None,
        after: SimulationState,
        request: Mapping[str, Any],
    ) -> SyncAction:
        ledger.assert_balanced(after.ledger)
        self.store.put(after)
        if after.summary is not None and (before is None or before.summary is None):
            self.store.save_summary(after.summary)
        action = self._new_action(kind, before, after, request)
        self.queue.enqueue(action)
        return action

    def _new_action(
        self,
        kind: SyncKind,
        before: SimulationState | None,
        after: SimulationState,
        request: Mapping[str, Any],
    ) -> SyncAction:
        old = flatten_state(before) if before is not None else {}
        return new_action(
            simulation_id=after.simulation_id,
            sequence=self.store.next_sequence(after.simulation_id),
            kind=kind,
            request=request,
            client_timestamp=self._clock.now(),
            changes=diff_fields(old, flatten_state(after)),
            result_checksum=state_checksum(after),
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start_new_year(self, config: SimulationConfig) -> SimulationState:
        """
        Start a simulation; an unknown region plays with the national profile.

        Starting an id that already exists returns the stored state.

        Raises:
            InvalidConfigError: Crop not grown in the effective region or
                a year shorter than four periods.
        """
        with LogContext.bind(owner_id=config.owner_id), self._guarded(config.simulation_id):
            if self.store.exists(config.simulation_id):
                logger.info("simulation_already_started")
                return self.store.get(config.simulation_id)
            profile = self.engines.profile(config.region)
            effective = replace(
                config,
                region=profile.region,
                started_at=config.started_at or self._clock.now(),
            )
            engine = self.engines(effective.crop, effective.region)
            state = start_new_year(effective, engine.profile, engine.economics)
            self._commit(SyncKind.START, None, state, config_to_request(effective))
            return state

    def get_state(self, simulation_id: str) -> SimulationState:
        return self.store.get(simulation_id)

    def complete_year(self, simulation_id: str) -> YearSummary:
        """
        Raises:
            YearNotCompleteError: Before the final period is processed.
        """
        with self._guarded(simulation_id):
            before = self.store.get(simulation_id)
            after, summary = self._engine(before).complete_year(before)
            if after is not before:
                self._commit(SyncKind.COMPLETE, before, after, {})
            return summary

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def _as_decision(self, decision: FinancialDecision | Mapping[str, Any]) -> FinancialDecision:
        if isinstance(decision, Mapping):
            return decision_from_payload(
                decision,
                default_id=str(uuid.uuid4()),
                default_timestamp=self._clock.now(),
            )
        return decision

    def validate_decision(
        self, simulation_id: str, decision: FinancialDecision | Mapping[str, Any]
    ) -> ValidationResult:
        state = self.store.get(simulation_id)
        return self._engine(state).validate_decision(state, self._as_decision(decision))

    def make_decision(
        self, simulation_id: str, decision: FinancialDecision | Mapping[str, Any]
    ) -> DecisionOutcome:
        """
        Raises:
            DecisionRejectedError: Validation failed; state unchanged.
            SimulationCompletedError: The year is completed.
        """
        decision = self._as_decision(decision)
        with self._guarded(simulation_id):
            before = self.store.get(simulation_id)
            after, outcome = self._engine(before).make_decision(before, decision)
            self._commit(
                SyncKind.DECISION,
                before,
                after,
                {"decision": decision_to_payload(decision)},
            )
            logger.info(
                "decision_recorded",
                extra={
                    "decision_id": outcome.decision_id,
                    "decision_type": outcome.decision_type,
                    "points_earned": outcome.points_earned,
                },
            )
            return outcome

    def _decision_action(self, simulation_id: str, decision_id: str) -> SyncAction | None:
        for action in reversed(self.queue.actions(simulation_id)):
            if (
                action.kind is SyncKind.DECISION
                and action.request.get("decision", {}).get("decision_id") == decision_id
            ):
                return action
        return None

    def undo_decision(self, simulation_id: str) -> SimulationState:
        """
        Undo the last decision of the current period.

        A decision still waiting in the sync queue is withdrawn; otherwise a
        compensating undo action follows it to the server.

        Raises:
            NothingToUndoError: No decision to undo.
            UndoWindowClosedError: Time advanced or another mutation followed.
        """
        with self._guarded(simulation_id):
            before = self.store.get(simulation_id)
            record = before.last_decision
            after = self._engine(before).undo_decision(before)
            ledger.assert_balanced(after.ledger)

            decision_id = record.decision.decision_id
            target = self._decision_action(simulation_id, decision_id)
            if target is not None and target.status is SyncStatus.PENDING:
                try:
                    self.queue.withdraw(target.action_id)
                except ActionNotWithdrawableError:
                    logger.info("withdraw_lost_to_delivery", extra={"decision_id": decision_id})
                else:
                    self.store.put(after)
                    return after

            self.store.put(after)
            compensation = self._new_action(
                SyncKind.UNDO,
                before,
                after,
                {
                    "decision_id": decision_id,
                    "target_action_id": target.action_id if target else None,
                },
            )
            if target is None:
                self.queue.enqueue(compensation)
            else:
                self.queue.compensate(target.action_id, compensation)
            return after

    # ------------------------------------------------------------------
    # Time and events
    # ------------------------------------------------------------------

    def advance_time(self, simulation_id: str, periods: int = 1) -> SimulationState:
        """
        Raises:
            InvalidAmountError: ``periods`` < 1.
            SimulationCompletedError: The year is completed.
        """
        with self._guarded(simulation_id):
            before = self.store.get(simulation_id)
            after = self._engine(before).advance_time(before, periods)
            self._commit(SyncKind.ADVANCE, before, after, {"periods": periods})
            return after

    def trigger_risk_event(
        self,
        simulation_id: str,
        event_type: str | None = None,
        severity: Severity | None = None,
    ) -> RiskEvent:
        """
        Raises:
            EventBudgetExhaustedError: Five events already realized.
            SimulationCompletedError: The year is completed.
        """
        with self._guarded(simulation_id):
            before = self.store.get(simulation_id)
            after, event = self._engine(before).trigger_risk_event(before, event_type, severity)
            self._commit(
                SyncKind.TRIGGER_EVENT,
                before,
                after,
                {"event_type": event.event_type, "severity": event.severity.value},
            )
            return event

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    def get_sync_status(self, simulation_id: str | None = None) -> SyncStatusReport:
        return self.queue.status(simulation_id)

    def flush_sync(self) -> Future:
        """
        Ask the worker to drain the queue; returns immediately.

        Raises:
            RuntimeError: If the service has no transport.
        """
        if self.worker is None:
            raise RuntimeError("no transport configured")
        return self.worker.submit_drain()

    def reconcile(self, simulation_id: str) -> Future:
        """
        Settle fields changed on both sides since the last reconciliation.

        The server fetch and the merge run on the SyncWorker; the returned
        Future yields the Resolution, or raises NetworkError if the server
        cannot be reached.  Simulation fields stay as stored locally;
        ranking fields take the resolved value into the local ranking cache.

        Raises:
            RuntimeError: If the service has no transport.
        """
        if self.worker is None:
            raise RuntimeError("no transport configured")
        with LogContext.bind(simulation_id=simulation_id):
            return self.worker.submit(self._reconcile_now, simulation_id)

    def _reconcile_now(self, simulation_id: str) -> Resolution:
        view = self.transport.fetch(simulation_id)
        with self._guarded(simulation_id):
            state = self.store.get(simulation_id)
            ancestor = self.store.last_reconciled_at(simulation_id)
            current = flatten_state(state)
            touched: set[str] = set()
            for action in self.store.actions(simulation_id):
                if ancestor is None or action.client_timestamp > ancestor:
                    touched.update(action.changes)
            local_changes = {path: current.get(path) for path in touched}

            now = self._clock.now()
            resolution = self.resolver.reconcile(
                simulation_id,
                local_changes,
                view.fields,
                view.field_timestamps,
                ancestor,
                now,
            )
            self.audit_log.record(resolution.conflicts)
            self.store.update_ranking(simulation_id, resolution.values_of(FieldClass.RANKING))
            self.store.mark_reconciled(simulation_id, view.server_timestamp)
            self.audit_log.purge(now)
            self.store.purge_conflicts(now - self.audit_log.retention)
            logger.info(
                "simulation_reconciled",
                extra={
                    "conflicts": len(resolution.conflicts),
                    "server_checksum": view.checksum,
                },
            )
            return resolution

    def ranking(self, simulation_id: str) -> dict[str, Any]:
        """Server-owned ranking fields as last reconciled."""
        return self.store.ranking(simulation_id)

    def close(self) -> None:
        if self.worker is not None:
            self.worker.shutdown()
