"""
SyncQueue -- ordered, idempotent outbox of local mutations.

Responsibility:
    Holds every SyncAction until the server acknowledges it, sends due
    actions through a Transport in priority order, schedules retries with
    exponential backoff, withdraws still-pending actions, and defers
    compensating actions while their target is in flight.

Architecture position:
    Sync layer -- imports harvest_kernel only.  Driven by SyncWorker on a
    background thread; gameplay only ever enqueues, withdraws and reads
    status, none of which wait on the network.

Invariants enforced:
    - Total order ``(client_timestamp, sequence, action_id)``.  Within one
      simulation, actions are sent strictly in that order (head of line);
      across simulations the highest priority head goes first.
    - An action id is enqueued at most once.
    - Only ``pending`` actions can be withdrawn.  A compensating action
      for a ``syncing`` target is held until the target's send finishes.
    - After ``max_attempts`` failures an action is a permanent failure:
      removed from the queue and reported, never retried again.

Failure modes:
    - ActionNotWithdrawableError when withdrawing a non-pending action.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Protocol

from harvest_kernel.exceptions import (
    ActionNotWithdrawableError,
    NetworkError,
    PermanentSyncFailureError,
)
from harvest_kernel.logging_config import LogContext, get_logger
from harvest_sync.actions import Ack, SyncAction, SyncStatus, SyncStatusReport
from harvest_sync.backoff import RetryPolicy

logger = get_logger("sync.queue")


class Transport(Protocol):
    """Delivers one action; raises NetworkError when it cannot."""

    def send(self, action: SyncAction) -> Ack:
        ...


@dataclass(frozen=True)
class DrainReport:
    sent: tuple[str, ...] = ()
    failed: tuple[str, ...] = ()
    permanent_failures: tuple[SyncAction, ...] = ()
    next_attempt_at: datetime | None = None

    @property
    def idle(self) -> bool:
        return not self.sent and not self.failed and not self.permanent_failures


@dataclass
class _DrainProgress:
    sent: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    permanent: list[SyncAction] = field(default_factory=list)
    blocked: set[str] = field(default_factory=set)


class SyncQueue:
    """
    Thread-safe outbox.

    ``on_update`` is called with every new version of an action (enqueue,
    status change) and ``on_withdraw`` with every withdrawn action, so a
    store can keep the action log in step with the queue.
    """

    def __init__(
        self,
        retry_policy: RetryPolicy | None = None,
        on_update: Callable[[SyncAction], None] | None = None,
        on_withdraw: Callable[[SyncAction], None] | None = None,
    ):
        self.retry_policy = retry_policy or RetryPolicy()
        self._on_update = on_update
        self._on_withdraw = on_withdraw
        self._lock = threading.RLock()
        self._actions: dict[str, SyncAction] = {}
        self._deferred: dict[str, list[SyncAction]] = {}
        self._permanent: dict[str, SyncAction] = {}
        self._last_sync: datetime | None = None

    # ------------------------------------------------------------------
    # Local operations
    # ------------------------------------------------------------------

    def _publish(self, action: SyncAction) -> None:
        # called with the lock held so listeners see versions in order
        if self._on_update is not None:
            self._on_update(action)

    def enqueue(self, action: SyncAction) -> bool:
        """Add a pending action; False if its id is already known."""
        with self._lock:
            if action.action_id in self._actions or action.action_id in self._permanent:
                logger.debug("sync_action_duplicate", extra={"action_id": action.action_id})
                return False
            action = action.with_status(SyncStatus.PENDING)
            self._actions[action.action_id] = action
            self._publish(action)
        logger.debug(
            "sync_action_enqueued",
            extra={
                "action_id": action.action_id,
                "simulation_id": action.simulation_id,
                "kind": action.kind,
                "priority": action.priority,
            },
        )
        return True

    def get(self, action_id: str) -> SyncAction | None:
        with self._lock:
            return self._actions.get(action_id) or self._permanent.get(action_id)

    def withdraw(self, action_id: str) -> SyncAction:
        """
        Remove a pending action before it is sent.

        Raises:
            ActionNotWithdrawableError: If the action is not pending.
        """
        with self._lock:
            action = self._actions.get(action_id)
            if action is None:
                raise ActionNotWithdrawableError(action_id, "unknown")
            if action.status is not SyncStatus.PENDING:
                raise ActionNotWithdrawableError(action_id, action.status.value)
            del self._actions[action_id]
            if self._on_withdraw is not None:
                self._on_withdraw(action)
        logger.info(
            "sync_action_withdrawn",
            extra={"action_id": action_id, "simulation_id": action.simulation_id},
        )
        return action

    def compensate(self, target_action_id: str, compensation: SyncAction) -> str:
        """
        Queue ``compensation`` for an action that can no longer be withdrawn.

        Returns "enqueued" or "deferred" (target is being sent right now).
        """
        with self._lock:
            target = self._actions.get(target_action_id)
            if target is not None and target.status is SyncStatus.SYNCING:
                self._deferred.setdefault(target_action_id, []).append(compensation)
                logger.info(
                    "sync_compensation_deferred",
                    extra={
                        "action_id": compensation.action_id,
                        "target_action_id": target_action_id,
                    },
                )
                return "deferred"
        self.enqueue(compensation)
        return "enqueued"

    def _release_deferred(self, target_action_id: str) -> None:
        with self._lock:
            released = self._deferred.pop(target_action_id, [])
        for action in released:
            self.enqueue(action)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def actions(self, simulation_id: str | None = None) -> list[SyncAction]:
        """Queued actions in queue order."""
        with self._lock:
            selected = [
                a
                for a in self._actions.values()
                if simulation_id is None or a.simulation_id == simulation_id
            ]
        return sorted(selected, key=lambda a: a.order_key)

    def permanent_failures(self) -> list[SyncAction]:
        with self._lock:
            return sorted(self._permanent.values(), key=lambda a: a.order_key)

    def status(self, simulation_id: str | None = None) -> SyncStatusReport:
        queued = self.actions(simulation_id)
        with self._lock:
            permanent = [
                a
                for a in self._permanent.values()
                if simulation_id is None or a.simulation_id == simulation_id
            ]
            deferred = sum(
                1
                for group in self._deferred.values()
                for a in group
                if simulation_id is None or a.simulation_id == simulation_id
            )
            last_sync = self._last_sync
        pending = sum(
            1 for a in queued if a.status in (SyncStatus.PENDING, SyncStatus.SYNCING)
        )
        failed = sum(1 for a in queued if a.status is SyncStatus.FAILED)
        return SyncStatusReport(
            pending=pending + deferred,
            failed=failed + len(permanent),
            last_sync_timestamp=last_sync,
            permanent_failures=tuple(sorted(a.action_id for a in permanent)),
        )

    def __len__(self) -> int:
        with self._lock:
            return len(self._actions)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def _next_candidate(self, now: datetime, blocked: set[str]) -> SyncAction | None:
        """Highest-priority head of line among simulations with a due action."""
        heads: dict[str, SyncAction] = {}
        for action in sorted(self._actions.values(), key=lambda a: a.order_key):
            if action.simulation_id in heads or action.simulation_id in blocked:
                continue
            heads[action.simulation_id] = action
        due = [
            a
            for a in heads.values()
            if a.status is SyncStatus.PENDING
            or (
                a.status is SyncStatus.FAILED
                and (a.next_attempt_at is None or a.next_attempt_at <= now)
            )
        ]
        if not due:
            return None
        return min(due, key=lambda a: (a.priority.rank, a.order_key))

    def drain(self, transport: Transport, now: datetime) -> DrainReport:
        """
        Send every due action once, in priority order.

        A simulation whose head action fails is skipped for the rest of
        this drain so its later actions never overtake it.
        """
        progress = _DrainProgress()
        while True:
            with self._lock:
                action = self._next_candidate(now, progress.blocked)
                if action is None:
                    break
                action = action.with_status(SyncStatus.SYNCING)
                self._actions[action.action_id] = action
                self._publish(action)
            self._send_one(transport, action, now, progress)

        return DrainReport(
            sent=tuple(progress.sent),
            failed=tuple(progress.failed),
            permanent_failures=tuple(progress.permanent),
            next_attempt_at=self.next_attempt_at(),
        )

    def _send_one(
        self,
        transport: Transport,
        action: SyncAction,
        now: datetime,
        progress: _DrainProgress,
    ) -> None:
        with LogContext.bind(simulation_id=action.simulation_id, action_id=action.action_id):
            try:
                ack = transport.send(action)
            except PermanentSyncFailureError as exc:
                self._fail_permanently(
                    action.with_status(SyncStatus.FAILED, attempts=action.attempts + 1),
                    str(exc),
                    progress,
                )
            except NetworkError as exc:
                self._fail(action, exc.reason, now, progress)
            else:
                self._applied(action, ack, progress)
        self._release_deferred(action.action_id)

    def _applied(self, action: SyncAction, ack: Ack, progress: _DrainProgress) -> None:
        applied = action.with_status(SyncStatus.APPLIED, attempts=action.attempts + 1)
        with self._lock:
            self._actions.pop(action.action_id, None)
            if self._last_sync is None or ack.server_timestamp > self._last_sync:
                self._last_sync = ack.server_timestamp
            self._publish(applied)
        progress.sent.append(action.action_id)
        logger.info(
            "sync_action_applied",
            extra={"kind": action.kind, "duplicate": ack.duplicate},
        )

    def _fail(
        self, action: SyncAction, reason: str, now: datetime, progress: _DrainProgress
    ) -> None:
        attempts = action.attempts + 1
        if self.retry_policy.is_exhausted(attempts):
            self._fail_permanently(
                action.with_status(SyncStatus.FAILED, attempts=attempts), reason, progress
            )
            return
        failed = action.with_status(
            SyncStatus.FAILED,
            attempts=attempts,
            next_attempt_at=self.retry_policy.next_attempt_at(now, attempts),
            last_error=reason,
        )
        with self._lock:
            self._actions[action.action_id] = failed
            self._publish(failed)
        progress.failed.append(action.action_id)
        progress.blocked.add(action.simulation_id)
        logger.warning(
            "sync_action_failed",
            extra={
                "attempts": attempts,
                "next_attempt_at": failed.next_attempt_at,
                "reason": reason,
            },
        )

    def _fail_permanently(
        self, action: SyncAction, reason: str, progress: _DrainProgress
    ) -> None:
        final = action.with_status(
            SyncStatus.FAILED,
            attempts=max(action.attempts, 1),
            next_attempt_at=None,
            last_error=reason,
        )
        with self._lock:
            self._actions.pop(action.action_id, None)
            self._permanent[action.action_id] = final
            self._publish(final)
        progress.permanent.append(final)
        progress.blocked.add(action.simulation_id)
        logger.error(
            "sync_action_permanent_failure",
            extra={"attempts": final.attempts, "reason": reason},
        )

    def next_attempt_at(self) -> datetime | None:
        """Earliest retry time among failed actions, if any."""
        with self._lock:
            times = [
                a.next_attempt_at
                for a in self._actions.values()
                if a.status is SyncStatus.FAILED and a.next_attempt_at is not None
            ]
        return min(times) if times else None

    def has_due(self, now: datetime) -> bool:
        with self._lock:
            return self._next_candidate(now, set()) is not None
