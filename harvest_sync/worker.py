"""
SyncWorker -- background delivery of the sync queue.

Gameplay threads call ``submit_drain()`` or ``submit()`` and get a Future
back immediately; the drain and every fetch (all network I/O) run on the
worker's ThreadPoolExecutor.  Only one drain runs at a time: a submission while a
drain is in flight returns the in-flight Future.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from typing import Any, Callable, TypeVar

from harvest_kernel.domain.clock import Clock, SystemClock
from harvest_kernel.logging_config import LogContext, get_logger
from harvest_sync.queue import DrainReport, SyncQueue, Transport

logger = get_logger("sync.worker")

T = TypeVar("T")


class SyncWorker:
    def __init__(
        self,
        queue: SyncQueue,
        transport: Transport,
        clock: Clock | None = None,
        max_workers: int = 1,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.queue = queue
        self.transport = transport
        self._clock = clock or SystemClock()
        self._sleep = sleep
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="harvest-sync"
        )
        self._lock = threading.Lock()
        self._in_flight: Future | None = None

    def drain_now(self) -> DrainReport:
        """Drain on the calling thread."""
        report = self.queue.drain(self.transport, self._clock.now())
        if not report.idle:
            logger.info(
                "sync_drain_finished",
                extra={
                    "sent": len(report.sent),
                    "failed": len(report.failed),
                    "permanent_failures": len(report.permanent_failures),
                },
            )
        return report

    def submit_drain(self) -> Future:
        with self._lock:
            if self._in_flight is not None and not self._in_flight.done():
                return self._in_flight
            self._in_flight = self._executor.submit(LogContext.carry(self.drain_now))
            return self._in_flight

    def submit(self, fn: Callable[..., T], *args: Any) -> Future[T]:
        """Run one sync step (fetch, reconcile) on the worker threads."""
        return self._executor.submit(LogContext.carry(fn), *args)

    def run_until_idle(self, max_rounds: int = 100) -> list[DrainReport]:
        """
        Drain repeatedly, sleeping until the next retry is due, until the
        queue is empty or nothing is left to retry.
        """
        reports: list[DrainReport] = []
        for _ in range(max_rounds):
            reports.append(self.submit_drain().result())
            if not len(self.queue):
                break
            next_at = self.queue.next_attempt_at()
            if next_at is None:
                break
            self._wait_until(next_at)
        return reports

    def _wait_until(self, when: datetime) -> None:
        delay = (when - self._clock.now()).total_seconds()
        if delay > 0:
            self._sleep(delay)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> SyncWorker:
        return self

    def __exit__(self, *exc) -> None:
        self.shutdown()
