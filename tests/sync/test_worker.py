"""SyncWorker: background drains, coalescing and retry sleeps."""

import threading
from datetime import datetime, timezone

from harvest_kernel.domain.serialization import state_checksum
from harvest_sync import Ack, SyncKind, SyncQueue, SyncWorker, new_action

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class BlockingTransport:
    """Holds every send until ``release`` is set."""

    def __init__(self):
        self.entered = threading.Event()
        self.release = threading.Event()
        self.sends = 0

    def send(self, action):
        self.sends += 1
        self.entered.set()
        assert self.release.wait(timeout=10)
        return Ack(action_id=action.action_id, server_timestamp=T0)


def _action(sequence):
    return new_action(
        simulation_id="sim-w",
        sequence=sequence,
        kind=SyncKind.ADVANCE,
        request={"periods": 1},
        client_timestamp=T0,
    )


class TestSubmitDrain:
    def test_in_flight_drain_is_shared(self, clock):
        queue = SyncQueue()
        queue.enqueue(_action(1))
        transport = BlockingTransport()

        with SyncWorker(queue, transport, clock) as worker:
            first = worker.submit_drain()
            assert transport.entered.wait(timeout=10)
            second = worker.submit_drain()
            assert second is first

            transport.release.set()
            report = first.result(timeout=10)
            assert len(report.sent) == 1

            third = worker.submit_drain()
            assert third is not first
            assert third.result(timeout=10).idle
        assert transport.sends == 1

    def test_drain_now_logs_progress(self, clock, captured_logs):
        queue = SyncQueue()
        queue.enqueue(_action(1))
        transport = BlockingTransport()
        transport.release.set()

        with SyncWorker(queue, transport, clock) as worker:
            worker.drain_now()
            worker.drain_now()

        finished = [r for r in captured_logs() if r["message"] == "sync_drain_finished"]
        assert len(finished) == 1
        assert finished[0]["sent"] == 1


class TestRunUntilIdle:
    def test_retries_through_injected_failures(self, service, transport, clock, make_config):
        state = service.start_new_year(make_config())
        service.make_decision(state.simulation_id, {"type": "saving", "amount": "100"})
        transport.fail_next(2)
        started = clock.now()

        reports = service.worker.run_until_idle()

        assert [len(r.failed) for r in reports] == [1, 1, 0]
        assert len(reports[-1].sent) == 2
        assert len(service.queue) == 0
        # slept 1s then 2s of backoff
        assert (clock.now() - started).total_seconds() == 3
        assert transport.replica(state.simulation_id).checksum == state_checksum(
            service.get_state(state.simulation_id)
        )

    def test_stops_when_nothing_to_retry(self, service):
        reports = service.worker.run_until_idle()
        assert len(reports) == 1
        assert reports[0].idle
