"""Unit tests for the admission queue."""

import pytest

from stt_fleet.errors import AdmissionRejected
from stt_fleet.models import Backlog, RequestStatus
from stt_fleet.request_queue import RequestQueue


class TestAdmission:
    """Tests for enqueue and capacity."""

    def test_enqueue_and_len(self, clock, make_request):
        queue = RequestQueue(10, clock=clock)
        request = make_request()
        queue.enqueue(request)
        assert len(queue) == 1
        assert request.id in queue
        assert request.status == RequestStatus.QUEUED

    def test_elapsed_deadline_rejected(self, clock, make_request):
        """A request whose deadline already passed never enters the queue."""
        queue = RequestQueue(10, clock=clock)
        queue.enqueue(make_request())
        with pytest.raises(AdmissionRejected) as exc_info:
            queue.enqueue(make_request(deadline=-1.0))
        assert exc_info.value.reason == AdmissionRejected.DEADLINE_ELAPSED
        assert len(queue) == 1

    def test_zero_deadline_rejected(self, clock, make_request):
        queue = RequestQueue(10, clock=clock)
        with pytest.raises(AdmissionRejected):
            queue.enqueue(make_request(deadline=0.0))
        assert len(queue) == 0

    def test_full_queue_rejected(self, clock, make_request):
        queue = RequestQueue(2, clock=clock)
        queue.enqueue(make_request())
        queue.enqueue(make_request())
        with pytest.raises(AdmissionRejected) as exc_info:
            queue.enqueue(make_request())
        assert exc_info.value.reason == AdmissionRejected.QUEUE_FULL
        assert len(queue) == 2

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            RequestQueue(0)


class TestOrdering:
    """Tests for priority and FIFO order."""

    def test_priority_then_arrival(self, clock, make_request):
        queue = RequestQueue(10, clock=clock)
        first = make_request()
        clock.advance(1)
        urgent = make_request(priority=5)
        clock.advance(1)
        last = make_request()
        for request in (first, urgent, last):
            queue.enqueue(request)
        assert queue.ids() == [urgent.id, first.id, last.id]

    def test_requeue_restores_position(self, clock, make_request):
        queue = RequestQueue(10, clock=clock)
        first = make_request()
        clock.advance(1)
        second = make_request()
        clock.advance(1)
        third = make_request()
        for request in (first, second, third):
            queue.enqueue(request)
        queue.remove([first.id])
        first.status = RequestStatus.DISPATCHED
        queue.requeue(first)
        assert queue.ids()[0] == first.id
        assert first.status == RequestStatus.QUEUED

    def test_requeue_ignores_capacity(self, clock, make_request):
        queue = RequestQueue(1, clock=clock)
        held = make_request()
        queue.enqueue(held)
        queue.remove([held.id])
        queue.enqueue(make_request())
        queue.requeue(held)
        assert len(queue) == 2

    def test_requeue_twice_is_noop(self, clock, make_request):
        queue = RequestQueue(10, clock=clock)
        request = make_request()
        queue.requeue(request)
        queue.requeue(request)
        assert len(queue) == 1


class TestPeekAndRemove:
    """Tests for batch selection."""

    def test_peek_does_not_remove(self, clock, make_request):
        queue = RequestQueue(10, clock=clock)
        for _ in range(3):
            queue.enqueue(make_request(duration=10))
        picked = queue.peek_batchable("gpu", max_items=2, max_total_duration=100)
        assert len(picked) == 2
        assert len(queue) == 3

    def test_peek_stops_at_duration_bound(self, clock, make_request):
        queue = RequestQueue(10, clock=clock)
        for duration in (20, 20, 5):
            queue.enqueue(make_request(duration=duration))
        picked = queue.peek_batchable("gpu", max_items=10, max_total_duration=30)
        assert [r.audio_duration_seconds for r in picked] == [20]

    def test_peek_skips_oversized_and_pinned(self, clock, make_request):
        queue = RequestQueue(10, clock=clock)
        huge = make_request(duration=500)
        pinned = make_request(worker_class="cpu")
        normal = make_request(duration=10)
        for request in (huge, pinned, normal):
            queue.enqueue(request)
        picked = queue.peek_batchable("gpu", max_items=10, max_total_duration=100)
        assert picked == [normal]
        assert queue.oversized("gpu", 100) == [huge]

    def test_oversized_pinned_only(self, clock, make_request):
        queue = RequestQueue(10, clock=clock)
        unpinned = [make_request(duration=500) for _ in range(2)]
        pinned = make_request(duration=500, worker_class="cpu")
        for request in (*unpinned, pinned):
            queue.enqueue(request)
        assert queue.oversized("cpu", 100, limit=1) == unpinned[:1]
        assert queue.oversized("cpu", 100, limit=1, pinned_only=True) == [pinned]

    def test_peek_applies_accept(self, clock, make_request):
        queue = RequestQueue(10, clock=clock)
        short, long = make_request(duration=2), make_request(duration=20)
        queue.enqueue(short)
        queue.enqueue(long)
        picked = queue.peek_batchable(
            "gpu", 10, 100, accept=lambda r: r.audio_duration_seconds > 5
        )
        assert picked == [long]

    def test_remove_is_idempotent(self, clock, make_request):
        """A request removed once cannot be taken by a second batch."""
        queue = RequestQueue(10, clock=clock)
        request = make_request()
        queue.enqueue(request)
        assert queue.remove([request.id]) == [request]
        assert queue.remove([request.id]) == []
        assert len(queue) == 0


class TestExpiry:
    """Tests for sweep and backlog."""

    def test_sweep_expired(self, clock, make_request):
        queue = RequestQueue(10, clock=clock)
        short = make_request(deadline=5)
        long = make_request(deadline=50)
        queue.enqueue(short)
        queue.enqueue(long)
        clock.advance(10)
        expired = list(queue.sweep_expired())
        assert expired == [short]
        assert short.status == RequestStatus.EXPIRED
        assert short.completed_at == clock()
        assert queue.ids() == [long.id]

    def test_expired_requests_not_batchable(self, clock, make_request):
        queue = RequestQueue(10, clock=clock)
        queue.enqueue(make_request(deadline=5))
        clock.advance(5)
        assert queue.peek_batchable("gpu", 10, 100) == []

    def test_backlog_by_pin(self, clock, make_request):
        queue = RequestQueue(10, clock=clock)
        queue.enqueue(make_request(duration=10))
        queue.enqueue(make_request(duration=5))
        queue.enqueue(make_request(duration=30, worker_class="gpu"))
        backlog = queue.backlog()
        assert backlog[None] == Backlog(2, 15)
        assert backlog["gpu"] == Backlog(1, 30)
