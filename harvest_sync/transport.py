"""
In-memory server transport.

``InMemoryServerTransport`` is the reference ``Transport``: it keeps one
ServerReplica per simulation, replays every delivered action through a
ReplayEngine, and lets tests take it offline or make the next sends fail.
A real network client implements the same ``send``/``fetch`` pair.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping

from harvest_kernel.domain.clock import Clock, SystemClock
from harvest_kernel.domain.serialization import flatten_state
from harvest_kernel.exceptions import NetworkError, SimulationNotFoundError
from harvest_kernel.logging_config import get_logger
from harvest_sync.actions import Ack, SyncAction
from harvest_sync.replay import ReplayEngine, ServerReplica

logger = get_logger("sync.transport")


@dataclass(frozen=True)
class ServerView:
    """What the server currently holds for one simulation, by field path."""

    simulation_id: str
    fields: Mapping[str, Any]
    field_timestamps: Mapping[str, datetime]
    checksum: str | None
    server_timestamp: datetime


class InMemoryServerTransport:
    def __init__(self, replay: ReplayEngine, clock: Clock | None = None):
        self._replay = replay
        self._clock = clock or SystemClock()
        self._lock = threading.Lock()
        self._replicas: dict[str, ServerReplica] = {}
        self._offline = False
        self._failures_remaining = 0
        self.received: list[str] = []

    # Failure injection

    def set_offline(self, offline: bool) -> None:
        with self._lock:
            self._offline = offline

    def fail_next(self, count: int = 1) -> None:
        with self._lock:
            self._failures_remaining += count

    # Transport

    def send(self, action: SyncAction) -> Ack:
        """
        Deliver and replay one action.

        Raises:
            NetworkError: While offline or while injected failures remain.
            PermanentSyncFailureError: If the action cannot be replayed.
        """
        with self._lock:
            if self._offline:
                raise NetworkError(action.action_id, "offline")
            if self._failures_remaining:
                self._failures_remaining -= 1
                raise NetworkError(action.action_id, "injected failure")

            now = self._clock.now()
            replica = self._replicas.get(action.simulation_id)
            if replica is None:
                replica = ServerReplica(simulation_id=action.simulation_id)
            applied = self._replay.apply(replica, action, now)
            self._replicas[action.simulation_id] = replica
            self.received.append(action.action_id)
            return Ack(
                action_id=action.action_id,
                server_timestamp=now,
                duplicate=not applied,
                server_checksum=replica.checksum,
            )

    def fetch(self, simulation_id: str) -> ServerView:
        """
        Raises:
            NetworkError: While offline.
            SimulationNotFoundError: If the server has never seen the simulation.
        """
        with self._lock:
            if self._offline:
                raise NetworkError(simulation_id, "offline")
            replica = self._replicas.get(simulation_id)
            if replica is None:
                raise SimulationNotFoundError(simulation_id)
            fields = flatten_state(replica.state) if replica.state is not None else {}
            fields.update(replica.server_fields)
            return ServerView(
                simulation_id=simulation_id,
                fields=fields,
                field_timestamps=dict(replica.field_timestamps),
                checksum=replica.checksum,
                server_timestamp=self._clock.now(),
            )

    # Server-side writes

    def apply_server_update(
        self,
        simulation_id: str,
        fields: Mapping[str, Any],
        at: datetime | None = None,
    ) -> None:
        """Write fields on the server outside the action log (leaderboard jobs, admin edits)."""
        with self._lock:
            replica = self._replicas.setdefault(
                simulation_id, ServerReplica(simulation_id=simulation_id)
            )
            when = at or self._clock.now()
            for path, value in fields.items():
                replica.server_fields[path] = value
                replica.field_timestamps[path] = when
        logger.info(
            "server_fields_updated",
            extra={"simulation_id": simulation_id, "fields": sorted(fields)},
        )

    def replica(self, simulation_id: str) -> ServerReplica | None:
        with self._lock:
            return self._replicas.get(simulation_id)
