"""Batch formation across worker classes.

Collects queued requests into batches sized for each worker class and hands
them to the dispatcher. A round runs every batch window, or as soon as the
queue gets deep enough that waiting would only add latency.
"""

import asyncio
import time
from collections.abc import Callable, Mapping

from stt_fleet.cost import CostModel
from stt_fleet.dispatcher import Dispatcher
from stt_fleet.logging_config import get_logger
from stt_fleet.models import Batch, Request, RequestStatus, WorkerDescriptor
from stt_fleet.request_queue import RequestQueue

logger = get_logger(__name__)


class Batcher:
    """Turns queued requests into per-class batches.

    Larger batches amortize per-inference overhead but make the first request
    wait; batch_window_ms bounds that wait and low_latency_threshold cuts it
    short under load.
    """

    def __init__(
        self,
        queue: RequestQueue,
        dispatcher: Dispatcher,
        descriptors: Mapping[str, WorkerDescriptor],
        cost_model: CostModel | None = None,
        batch_window_ms: int = 250,
        low_latency_threshold: int = 32,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the batcher.

        Args:
            queue: Source of pending requests.
            dispatcher: Receives formed batches; reports spare capacity.
            descriptors: Worker class catalog.
            cost_model: Orders classes so cheaper capacity is filled first.
            batch_window_ms: Maximum time between batch rounds.
            low_latency_threshold: Queue depth that triggers an immediate round.
            clock: Monotonic time source.
        """
        self._queue = queue
        self._dispatcher = dispatcher
        self._descriptors = dict(descriptors)
        self._cost = cost_model or CostModel(descriptors)
        self._batch_window_ms = batch_window_ms
        self._low_latency_threshold = low_latency_threshold
        self._clock = clock
        self._wakeup = asyncio.Event()
        self._running = False
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        """Start the background batch loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._batch_loop())

    async def stop(self) -> None:
        """Stop the background batch loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    def notify(self, depth: int) -> None:
        """Called on admission; wakes the loop once the queue is deep enough."""
        if depth >= self._low_latency_threshold:
            self._wakeup.set()

    def wake(self) -> None:
        """Run a round as soon as possible (e.g. a worker slot freed up)."""
        self._wakeup.set()

    async def _batch_loop(self) -> None:
        """Run batch rounds until stopped."""
        while self._running:
            try:
                await asyncio.wait_for(
                    self._wakeup.wait(), timeout=self._batch_window_ms / 1000
                )
            except asyncio.TimeoutError:
                pass
            self._wakeup.clear()
            self.run_once()

    def run_once(self) -> int:
        """Form batches and hand them to the dispatcher.

        Returns:
            Number of batches dispatched.
        """
        dispatched = 0
        for batch in self.form_batches():
            if self._dispatcher.assign(batch):
                dispatched += 1
        return dispatched

    def form_batches(self, now: float | None = None) -> list[Batch]:
        """Take requests off the queue as batches, one per spare worker slot."""
        if now is None:
            now = self._clock()
        spare = {c: self._dispatcher.spare_slots(c) for c in self._descriptors}
        batches: list[Batch] = []

        for worker_class in self._cost.cheapest_first(c for c, s in spare.items() if s > 0):
            descriptor = self._descriptors[worker_class]
            accept = self._placement_filter(worker_class, spare, now)
            while spare[worker_class] > 0:
                candidates = self._queue.peek_batchable(
                    worker_class,
                    max_items=descriptor.max_batch_size,
                    max_total_duration=descriptor.max_batch_duration,
                    accept=accept,
                )
                if not candidates:
                    break
                taken = self._take(candidates)
                if not taken:
                    break
                batches.append(self._wrap(taken, worker_class, now))
                spare[worker_class] -= 1

        batches.extend(self._route_oversized(spare, now))
        if batches:
            logger.debug(
                f"Formed {len(batches)} batches; {len(self._queue)} requests still queued."
            )
        return batches

    def _placement_filter(
        self, worker_class: str, spare: dict[str, int], now: float
    ) -> Callable[[Request], bool]:
        """Keep requests off a class that would miss their deadline.

        A request is only left behind when some other class with a free slot
        could finish it in time; otherwise it is served best-effort.
        """
        descriptor = self._descriptors[worker_class]
        alternatives = [
            self._descriptors[c] for c, s in spare.items() if s > 0 and c != worker_class
        ]

        def in_time(d: WorkerDescriptor, request: Request) -> bool:
            return now + d.processing_seconds(request.audio_duration_seconds) <= request.deadline

        def accept(request: Request) -> bool:
            if request.worker_class is not None or in_time(descriptor, request):
                return True
            return not any(
                in_time(d, request)
                and request.audio_duration_seconds <= d.max_batch_duration
                for d in alternatives
            )

        return accept

    def _route_oversized(self, spare: dict[str, int], now: float) -> list[Batch]:
        """Send requests too long for any batch alone to the biggest class.

        Pinned requests go alone to their own class instead.
        """
        available = [c for c, s in spare.items() if s > 0]
        if not available:
            return []
        target = max(
            available,
            key=lambda c: (
                self._descriptors[c].max_batch_duration,
                -self._cost.cost_per_audio_second(c),
            ),
        )

        batches = []
        for worker_class in [target] + [c for c in available if c != target]:
            descriptor = self._descriptors[worker_class]
            for request in self._queue.oversized(
                worker_class,
                descriptor.max_batch_duration,
                limit=spare[worker_class],
                pinned_only=worker_class != target,
            ):
                if spare[worker_class] <= 0:
                    break
                taken = self._take([request])
                if taken:
                    logger.info(
                        f"Routing oversized request {request.id} "
                        f"({request.audio_duration_seconds:.0f}s) alone to {worker_class}."
                    )
                    batches.append(self._wrap(taken, worker_class, now))
                    spare[worker_class] -= 1
        return batches

    def _take(self, requests: list[Request]) -> list[Request]:
        removed = {r.id for r in self._queue.remove(r.id for r in requests)}
        return [r for r in requests if r.id in removed]

    @staticmethod
    def _wrap(requests: list[Request], worker_class: str, now: float) -> Batch:
        for request in requests:
            request.status = RequestStatus.BATCHED
        return Batch(requests=requests, target_worker_class=worker_class, created_at=now)

    @property
    def queue_size(self) -> int:
        """Current number of pending requests."""
        return len(self._queue)

    @property
    def is_running(self) -> bool:
        """Whether the batch loop is running."""
        return self._running
