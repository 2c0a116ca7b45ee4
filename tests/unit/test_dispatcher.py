"""Unit tests for batch assignment, failure handling and preemption."""

import asyncio

import pytest

from stt_fleet.dispatcher import Dispatcher
from stt_fleet.engine.fake import FakeEngine
from stt_fleet.models import Batch, RequestStatus, WorkerState
from stt_fleet.request_queue import RequestQueue


class Harness:
    """A dispatcher wired to a queue, recording terminal requests."""

    def __init__(self, catalog, clock, engine=None, max_retries=2):
        self.clock = clock
        self.queue = RequestQueue(100, clock=clock)
        self.finished = []
        self.dispatcher = Dispatcher(
            self.queue,
            engine or FakeEngine(catalog),
            catalog,
            max_retries=max_retries,
            on_terminal=self.finished.append,
            clock=clock,
        )

    def ready(self, worker_id, worker_class="gpu"):
        self.dispatcher.register_worker(worker_id, worker_class)
        self.dispatcher.mark_ready(worker_id)

    def batch(self, requests, worker_class="gpu"):
        return Batch(requests=requests, target_worker_class=worker_class, created_at=self.clock())


class TestAssignment:
    """Tests for worker selection."""

    @pytest.mark.asyncio
    async def test_least_loaded_worker(self, catalog, clock, make_request, blocking_engine):
        """Batches spread over workers before stacking on one."""
        h = Harness(catalog, clock, engine=blocking_engine)
        h.ready("gpu-1")
        h.ready("gpu-2")
        try:
            assert h.dispatcher.assign(h.batch([make_request()]))
            assert h.dispatcher.assign(h.batch([make_request()]))
            assert len(h.dispatcher.in_flight("gpu-1")) == 1
            assert len(h.dispatcher.in_flight("gpu-2")) == 1
            assert h.dispatcher.spare_slots("gpu") == 8
            assert h.dispatcher.utilization("gpu") == pytest.approx(0.2)
        finally:
            blocking_engine.release.set()
        await h.dispatcher.wait_idle()
        assert h.dispatcher.spare_slots("gpu") == 10

    @pytest.mark.asyncio
    async def test_no_capacity_requeues_without_retry(self, catalog, clock, make_request):
        h = Harness(catalog, clock)
        request = make_request()
        assert not h.dispatcher.assign(h.batch([request]))
        assert request.id in h.queue
        assert request.status == RequestStatus.QUEUED
        assert request.retries == 0

    @pytest.mark.asyncio
    async def test_draining_worker_gets_no_work(self, catalog, clock, make_request):
        h = Harness(catalog, clock)
        h.ready("gpu-1")
        h.dispatcher.drain_worker("gpu-1")
        assert not h.dispatcher.assign(h.batch([make_request()]))
        assert len(h.queue) == 1

    @pytest.mark.asyncio
    async def test_expired_at_assignment(self, catalog, clock, make_request):
        h = Harness(catalog, clock)
        h.ready("gpu-1")
        request = make_request(deadline=5)
        clock.advance(10)
        assert not h.dispatcher.assign(h.batch([request]))
        assert request.status == RequestStatus.EXPIRED
        assert h.finished == [request]
        assert h.dispatcher.in_flight() == []

    def test_unknown_class_rejected(self, catalog, clock):
        h = Harness(catalog, clock)
        with pytest.raises(ValueError):
            h.dispatcher.register_worker("tpu-1", "tpu")


class TestOutcomes:
    """Tests for completion, retries and failure."""

    @pytest.mark.asyncio
    async def test_completion(self, catalog, clock, make_request):
        h = Harness(catalog, clock)
        h.ready("gpu-1")
        requests = [make_request(duration=5), make_request(duration=7)]
        assert h.dispatcher.assign(h.batch(requests))
        assert all(r.status == RequestStatus.DISPATCHED for r in requests)

        await h.dispatcher.wait_idle()
        for request in requests:
            assert request.status == RequestStatus.COMPLETED
            assert request.text.startswith("[fake:")
            assert request.served_by == "gpu"
            assert request.inference_seconds == 0.0
            assert request.completed_at == clock()
        assert h.finished == requests
        assert h.dispatcher.spare_slots("gpu") == 5

    @pytest.mark.asyncio
    async def test_retry_then_fail(self, catalog, clock, make_request):
        """A request fails only after exhausting its retries."""
        request = make_request()
        h = Harness(catalog, clock, engine=FakeEngine(catalog, fail_ids={request.id}))
        h.ready("gpu-1")

        queued = [request]
        for attempt in range(1, 3):
            assert h.dispatcher.assign(h.batch(queued))
            await h.dispatcher.wait_idle()
            assert request.status == RequestStatus.QUEUED
            assert request.retries == attempt
            queued = h.queue.remove([request.id])

        assert h.dispatcher.assign(h.batch(queued))
        await h.dispatcher.wait_idle()
        assert request.status == RequestStatus.FAILED
        assert request.retries == 3
        assert "injected failure" in request.error
        assert h.finished == [request]
        assert request.id not in h.queue

    @pytest.mark.asyncio
    async def test_failure_past_deadline_expires(self, catalog, clock, make_request):
        request = make_request(deadline=5)
        h = Harness(catalog, clock, engine=FakeEngine(catalog, fail_ids={request.id}))
        h.ready("gpu-1")
        assert h.dispatcher.assign(h.batch([request]))
        clock.advance(10)
        await h.dispatcher.wait_idle()
        assert request.status == RequestStatus.EXPIRED
        assert request.id not in h.queue

    @pytest.mark.asyncio
    async def test_short_result_is_a_failure(self, catalog, clock, make_request):
        class ShortEngine:
            def infer(self, requests, worker_class):
                return []

            def warmup(self):
                pass

        h = Harness(catalog, clock, engine=ShortEngine())
        h.ready("gpu-1")
        request = make_request()
        assert h.dispatcher.assign(h.batch([request]))
        await h.dispatcher.wait_idle()
        assert request.status == RequestStatus.QUEUED
        assert request.retries == 1


class TestPreemption:
    """Tests for interruption notices and lost workers."""

    @pytest.mark.asyncio
    async def test_interruption_requeues_all_batches(
        self, spot_catalog, clock, make_request, blocking_engine
    ):
        """Three in-flight batches all return to the queue; none fail."""
        h = Harness(spot_catalog, clock, engine=blocking_engine)
        h.ready("spot-gpu-1", "spot-gpu")
        requests = [make_request() for _ in range(5)]
        try:
            assert h.dispatcher.assign(h.batch(requests[:2], "spot-gpu"))
            assert h.dispatcher.assign(h.batch(requests[2:4], "spot-gpu"))
            assert h.dispatcher.assign(h.batch(requests[4:], "spot-gpu"))
            assert len(h.dispatcher.in_flight("spot-gpu-1")) == 3

            evacuated = h.dispatcher.handle_interruption("spot-gpu-1", clock() + 120)
        finally:
            blocking_engine.release.set()
        await asyncio.sleep(0)

        assert sorted(r.id for r in evacuated) == sorted(r.id for r in requests)
        for request in requests:
            assert request.status == RequestStatus.QUEUED
            assert request.retries == 1
            assert request.id in h.queue
        assert h.finished == []
        assert h.dispatcher.in_flight() == []

        worker = h.dispatcher.workers("spot-gpu")[0]
        assert worker.state == WorkerState.DRAINING
        assert worker.interruption_deadline == clock() + 120
        assert worker.active_job_count == 0
        assert h.dispatcher.spare_slots("spot-gpu") == 0

    @pytest.mark.asyncio
    async def test_interruption_ignored_for_on_demand_worker(
        self, catalog, clock, make_request, blocking_engine
    ):
        """Only preemptible classes can be put under notice."""
        h = Harness(catalog, clock, engine=blocking_engine)
        h.ready("gpu-1")
        request = make_request()
        try:
            assert h.dispatcher.assign(h.batch([request]))
            assert h.dispatcher.handle_interruption("gpu-1", clock() + 120) == []

            worker = h.dispatcher.workers("gpu")[0]
            assert worker.state == WorkerState.READY
            assert worker.interruption_deadline is None
            assert request.status == RequestStatus.DISPATCHED
        finally:
            blocking_engine.release.set()
        await h.dispatcher.wait_idle()
        assert request.status == RequestStatus.COMPLETED
        assert request.retries == 0

    @pytest.mark.asyncio
    async def test_worker_lost(self, catalog, clock, make_request, blocking_engine):
        h = Harness(catalog, clock, engine=blocking_engine)
        h.ready("gpu-1")
        request = make_request()
        try:
            h.dispatcher.assign(h.batch([request]))
            assert h.dispatcher.handle_worker_lost("gpu-1") == [request]
        finally:
            blocking_engine.release.set()
        await asyncio.sleep(0)

        assert request.status == RequestStatus.QUEUED
        assert request.retries == 1
        assert h.dispatcher.workers("gpu")[0].state == WorkerState.TERMINATED
        assert h.dispatcher.handle_worker_lost("gpu-1") == []

    def test_interruption_for_unknown_worker(self, catalog, clock):
        h = Harness(catalog, clock)
        assert h.dispatcher.handle_interruption("ghost", clock() + 10) == []


class TestDraining:
    """Tests for voluntary scale-down."""

    def test_idle_worker_drained_at_once(self, catalog, clock):
        h = Harness(catalog, clock)
        drained = []
        h.dispatcher.on_drained = drained.append
        h.ready("gpu-1")
        h.dispatcher.drain_worker("gpu-1")
        assert drained == ["gpu-1"]

    @pytest.mark.asyncio
    async def test_busy_worker_finishes_its_batches(
        self, catalog, clock, make_request, blocking_engine
    ):
        """A draining worker keeps its batches; on_drained waits for the last one."""
        h = Harness(catalog, clock, engine=blocking_engine)
        drained = []
        h.dispatcher.on_drained = drained.append
        h.ready("gpu-1")
        requests = [make_request(), make_request()]
        try:
            assert h.dispatcher.assign(h.batch(requests[:1]))
            assert h.dispatcher.assign(h.batch(requests[1:]))
            h.dispatcher.drain_worker("gpu-1")
            assert drained == []
            assert h.dispatcher.active_jobs("gpu-1") == 2
            assert not h.dispatcher.assign(h.batch([make_request()]))
        finally:
            blocking_engine.release.set()
        await h.dispatcher.wait_idle()

        assert drained == ["gpu-1"]
        for request in requests:
            assert request.status == RequestStatus.COMPLETED
            assert request.retries == 0

    @pytest.mark.asyncio
    async def test_interrupted_worker_not_reported_drained(
        self, spot_catalog, clock, make_request
    ):
        h = Harness(spot_catalog, clock)
        drained = []
        h.dispatcher.on_drained = drained.append
        h.ready("spot-gpu-1", "spot-gpu")
        assert h.dispatcher.assign(h.batch([make_request()], "spot-gpu"))
        h.dispatcher.handle_interruption("spot-gpu-1", clock() + 120)
        await h.dispatcher.wait_idle()
        assert drained == []


class TestCostToDate:
    """Tests for billed fleet cost."""

    def test_running_and_terminated_workers(self, catalog, clock):
        h = Harness(catalog, clock)
        h.ready("gpu-1")
        clock.advance(1800)
        assert h.dispatcher.cost_to_date() == pytest.approx(0.60)

        h.dispatcher.handle_worker_lost("gpu-1")
        clock.advance(3600)
        assert h.dispatcher.cost_to_date() == pytest.approx(0.60)

    def test_worker_counts(self, catalog, clock):
        h = Harness(catalog, clock)
        h.ready("gpu-1")
        h.dispatcher.register_worker("cpu-1", "cpu")
        counts = h.dispatcher.worker_counts()
        assert counts["gpu"]["ready"] == 1
        assert counts["cpu"]["provisioning"] == 1
        assert counts["cpu"]["ready"] == 0
