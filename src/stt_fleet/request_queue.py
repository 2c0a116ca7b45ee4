"""Priority-ordered admission queue with deadline-aware eviction.

The queue is the sole owner of pending requests. Entries are kept sorted by
(-priority, enqueued_at, sequence) so higher priorities are served first and
ties fall back to arrival order. A requeued request keeps its original
enqueued_at and therefore regains its original position.
"""

import bisect
import itertools
import threading
import time
from collections.abc import Callable, Iterable, Iterator

from stt_fleet.errors import AdmissionRejected
from stt_fleet.logging_config import get_logger
from stt_fleet.models import Backlog, Request, RequestStatus

logger = get_logger(__name__)

Clock = Callable[[], float]


class RequestQueue:
    """Bounded, lock-guarded holding area for admitted requests."""

    def __init__(self, capacity: int, clock: Clock = time.monotonic):
        """Initialize the queue.

        Args:
            capacity: Maximum number of requests accepted through admission.
            clock: Monotonic time source shared with the rest of the service.
        """
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._capacity = capacity
        self._clock = clock
        self._lock = threading.Lock()
        self._order: list[tuple[int, float, int, str]] = []
        self._requests: dict[str, Request] = {}
        self._seq = itertools.count()

    def __len__(self) -> int:
        with self._lock:
            return len(self._requests)

    def __contains__(self, request_id: str) -> bool:
        with self._lock:
            return request_id in self._requests

    @property
    def capacity(self) -> int:
        return self._capacity

    def ids(self) -> list[str]:
        """Request ids in service order."""
        with self._lock:
            return [key[3] for key in self._order]

    def enqueue(self, request: Request) -> None:
        """Admit a new request.

        Raises:
            AdmissionRejected: The queue is full or the deadline already passed.
        """
        now = self._clock()
        if request.is_expired(now):
            raise AdmissionRejected(
                AdmissionRejected.DEADLINE_ELAPSED,
                f"request {request.id} deadline elapsed at admission",
            )
        with self._lock:
            if len(self._requests) >= self._capacity:
                raise AdmissionRejected(
                    AdmissionRejected.QUEUE_FULL,
                    f"queue at capacity ({self._capacity})",
                )
            self._insert(request)

    def requeue(self, request: Request) -> None:
        """Return a request from the dispatcher to its original position.

        Capacity is not enforced: the request was already admitted.
        """
        with self._lock:
            if request.id in self._requests:
                return
            self._insert(request)

    def _insert(self, request: Request) -> None:
        request.status = RequestStatus.QUEUED
        key = (-request.priority, request.enqueued_at, next(self._seq), request.id)
        bisect.insort(self._order, key)
        self._requests[request.id] = request

    def _eligible(self, request: Request, worker_class: str, now: float) -> bool:
        if request.worker_class is not None and request.worker_class != worker_class:
            return False
        return not request.is_expired(now)

    def peek_batchable(
        self,
        worker_class: str,
        max_items: int,
        max_total_duration: float,
        accept: Callable[[Request], bool] | None = None,
    ) -> list[Request]:
        """Return, without removing, the next run of requests that fits one batch.

        Requests that individually exceed max_total_duration are skipped here
        and picked up through oversized().

        Args:
            worker_class: Class the batch is being formed for.
            max_items: Maximum number of requests.
            max_total_duration: Per-batch capacity in audio seconds.
            accept: Optional extra routing predicate.

        Returns:
            Requests in service order.
        """
        now = self._clock()
        selected: list[Request] = []
        total = 0.0
        with self._lock:
            for key in self._order:
                if len(selected) >= max_items:
                    break
                request = self._requests[key[3]]
                if not self._eligible(request, worker_class, now):
                    continue
                if request.audio_duration_seconds > max_total_duration:
                    continue
                if accept is not None and not accept(request):
                    continue
                if total + request.audio_duration_seconds > max_total_duration:
                    break
                selected.append(request)
                total += request.audio_duration_seconds
        return selected

    def oversized(
        self,
        worker_class: str,
        max_total_duration: float,
        limit: int | None = None,
        pinned_only: bool = False,
    ) -> list[Request]:
        """Eligible requests too long to share a batch on this class.

        With pinned_only, unpinned requests are skipped before the limit applies.
        """
        now = self._clock()
        found = []
        with self._lock:
            for key in self._order:
                if limit is not None and len(found) >= limit:
                    break
                request = self._requests[key[3]]
                if pinned_only and request.worker_class != worker_class:
                    continue
                if (
                    self._eligible(request, worker_class, now)
                    and request.audio_duration_seconds > max_total_duration
                ):
                    found.append(request)
        return found

    def remove(self, ids: Iterable[str]) -> list[Request]:
        """Atomically remove requests. Ids no longer queued are ignored.

        Returns:
            The requests that were actually removed.
        """
        wanted = set(ids)
        with self._lock:
            removed = [self._requests.pop(i) for i in wanted if i in self._requests]
            if removed:
                gone = {r.id for r in removed}
                self._order = [key for key in self._order if key[3] not in gone]
        return removed

    def sweep_expired(self, now: float | None = None) -> Iterator[Request]:
        """Evict every request whose deadline has passed.

        The eviction happens on the first next(); the expired requests are
        then yielded one at a time with status EXPIRED.
        """
        if now is None:
            now = self._clock()
        with self._lock:
            expired = [r for r in self._requests.values() if r.deadline < now]
            if expired:
                gone = {r.id for r in expired}
                self._order = [key for key in self._order if key[3] not in gone]
                for request in expired:
                    del self._requests[request.id]
                    request.status = RequestStatus.EXPIRED
                    request.completed_at = now
        if expired:
            logger.info(f"Swept {len(expired)} expired requests from the queue.")
        yield from expired

    def backlog(self) -> dict[str | None, Backlog]:
        """Queued work keyed by routing pin; None collects unpinned requests."""
        totals: dict[str | None, Backlog] = {}
        with self._lock:
            for request in self._requests.values():
                key = request.worker_class
                totals[key] = totals.get(key, Backlog()) + Backlog(
                    1, request.audio_duration_seconds
                )
        return totals
