"""Assigns batches to workers and turns inference outcomes into request statuses.

The dispatcher owns in-flight batches and the worker registry. Inference runs
in one asyncio task per batch, off the control loop, with the engine call
itself pushed to the default thread-pool executor.
"""

import asyncio
import dataclasses
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass

import numpy as np

from stt_fleet.cost import CostModel
from stt_fleet.engine.protocol import Engine
from stt_fleet.errors import InferenceError, WorkerLost
from stt_fleet.logging_config import get_logger
from stt_fleet.models import (
    Batch,
    Request,
    RequestStatus,
    Worker,
    WorkerDescriptor,
    WorkerState,
)
from stt_fleet.request_queue import RequestQueue

logger = get_logger(__name__)


class WorkerRegistry:
    """Id-keyed, lock-guarded table of workers.

    Callers get copies from snapshot(); all mutation goes through methods.
    """

    def __init__(self, descriptors: Mapping[str, WorkerDescriptor]):
        self._descriptors = dict(descriptors)
        self._workers: dict[str, Worker] = {}
        self._lock = threading.Lock()

    def add(self, worker: Worker) -> None:
        with self._lock:
            self._workers[worker.id] = worker

    def snapshot(self, worker_class: str | None = None) -> list[Worker]:
        with self._lock:
            return [
                dataclasses.replace(w)
                for w in self._workers.values()
                if worker_class is None or w.worker_class == worker_class
            ]

    def get(self, worker_id: str) -> Worker | None:
        with self._lock:
            worker = self._workers.get(worker_id)
            return dataclasses.replace(worker) if worker else None

    def transition(self, worker_id: str, state: WorkerState, now: float) -> Worker | None:
        with self._lock:
            worker = self._workers.get(worker_id)
            if worker is None or worker.state == WorkerState.TERMINATED:
                return None
            worker.state = state
            worker.last_heartbeat = now
            if state == WorkerState.READY and worker.ready_at is None:
                worker.ready_at = now
            if state == WorkerState.TERMINATED:
                worker.terminated_at = now
            return dataclasses.replace(worker)

    def interrupt(self, worker_id: str, deadline: float) -> Worker | None:
        """Put a preemptible worker under notice.

        Returns None for unknown, terminated and non-preemptible workers.
        """
        with self._lock:
            worker = self._workers.get(worker_id)
            if worker is None or worker.state == WorkerState.TERMINATED:
                return None
            if not self._descriptors[worker.worker_class].preemptible:
                return None
            worker.interruption_deadline = deadline
            worker.state = WorkerState.DRAINING
            return dataclasses.replace(worker)

    def heartbeat(self, worker_id: str, now: float) -> bool:
        with self._lock:
            worker = self._workers.get(worker_id)
            if worker is None:
                return False
            worker.last_heartbeat = now
            return True

    def acquire(self, worker_class: str, key: Callable[[Worker], tuple]) -> Worker | None:
        """Pick the best worker with a free slot and take that slot."""
        limit = self._descriptors[worker_class].max_concurrency
        with self._lock:
            candidates = [
                w
                for w in self._workers.values()
                if w.worker_class == worker_class
                and w.accepts_work
                and w.active_job_count < limit
            ]
            if not candidates:
                return None
            worker = min(candidates, key=key)
            worker.active_job_count += 1
            return dataclasses.replace(worker)

    def release(self, worker_id: str) -> Worker | None:
        with self._lock:
            worker = self._workers.get(worker_id)
            if worker is None:
                return None
            if worker.active_job_count > 0:
                worker.active_job_count -= 1
            return dataclasses.replace(worker)


@dataclass
class InFlight:
    """A batch running on a worker."""

    batch: Batch
    worker_id: str
    dispatched_at: float
    task: asyncio.Task | None = None


class Dispatcher:
    """Routes batches to ready workers and handles failure and preemption.

    Every terminal request transition is reported through on_terminal. Requests
    that need another attempt go back to the queue with their original
    enqueued_at; after max_retries retries they fail instead.
    """

    def __init__(
        self,
        queue: RequestQueue,
        engine: Engine,
        descriptors: Mapping[str, WorkerDescriptor],
        cost_model: CostModel | None = None,
        max_retries: int = 2,
        on_terminal: Callable[[Request], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the dispatcher.

        Args:
            queue: Queue that receives requeued requests.
            engine: Inference backend.
            descriptors: Worker class catalog.
            cost_model: Used to break ties between equally loaded workers.
            max_retries: Requeues a request may consume before failing.
            on_terminal: Called once per request reaching a terminal status.
            clock: Monotonic time source.
        """
        self._queue = queue
        self._engine = engine
        self._descriptors = dict(descriptors)
        self._cost = cost_model or CostModel(descriptors)
        self._max_retries = max_retries
        self._on_terminal = on_terminal or (lambda request: None)
        self._clock = clock
        self._registry = WorkerRegistry(descriptors)
        self._in_flight: dict[str, InFlight] = {}
        self._lock = threading.Lock()
        # Called whenever a slot frees up, so the batcher can react early
        self.on_capacity: Callable[[], None] | None = None
        # Called with the worker id once a scaled-down worker has no work left
        self.on_drained: Callable[[str], None] | None = None

    # --- Worker lifecycle -------------------------------------------------

    def register_worker(self, worker_id: str, worker_class: str) -> Worker:
        if worker_class not in self._descriptors:
            raise ValueError(f"unknown worker class {worker_class!r}")
        now = self._clock()
        worker = Worker(
            id=worker_id,
            worker_class=worker_class,
            last_heartbeat=now,
            started_at=now,
        )
        self._registry.add(worker)
        logger.info(f"Registered {worker_class} worker {worker_id} (provisioning).")
        return dataclasses.replace(worker)

    def mark_ready(self, worker_id: str) -> Worker | None:
        worker = self._registry.transition(worker_id, WorkerState.READY, self._clock())
        if worker is None:
            logger.warning(f"Ignoring ready event for unknown worker {worker_id}.")
            return None
        logger.info(f"Worker {worker_id} ({worker.worker_class}) is ready.")
        self._capacity_changed()
        return worker

    def drain_worker(self, worker_id: str) -> Worker | None:
        """Stop assigning new batches; in-flight batches run to completion.

        on_drained fires as soon as the worker has no batch left, which may be
        right away.
        """
        worker = self._registry.transition(worker_id, WorkerState.DRAINING, self._clock())
        if worker is None:
            logger.warning(f"Ignoring drain request for unknown worker {worker_id}.")
            return None
        logger.info(
            f"Draining worker {worker_id} with {worker.active_job_count} batches in flight."
        )
        self._check_drained(worker)
        return worker

    def heartbeat(self, worker_id: str) -> bool:
        return self._registry.heartbeat(worker_id, self._clock())

    def active_jobs(self, worker_id: str) -> int:
        """Batches running on the worker; 0 for unknown workers."""
        worker = self._registry.get(worker_id)
        return worker.active_job_count if worker else 0

    def handle_interruption(self, worker_id: str, deadline: float) -> list[Request]:
        """React to a spot interruption notice.

        The worker stops taking work and every batch on it is requeued now,
        well before the instance is reclaimed. Notices for workers of a
        non-preemptible class are ignored.

        Returns:
            Requests taken off the worker.
        """
        known = self._registry.get(worker_id)
        if known is None:
            logger.warning(f"Interruption notice for unknown worker {worker_id}.")
            return []
        if not self._descriptors[known.worker_class].preemptible:
            logger.warning(
                f"Ignoring interruption notice for {worker_id}: "
                f"{known.worker_class} is not preemptible."
            )
            return []
        worker = self._registry.interrupt(worker_id, deadline)
        if worker is None:
            return []
        evacuated = self._evacuate(worker_id, WorkerLost(f"worker {worker_id} preempted"))
        logger.warning(
            f"Worker {worker_id} interrupted; requeued {len(evacuated)} requests "
            f"{max(0.0, deadline - self._clock()):.0f}s before reclaim."
        )
        return evacuated

    def handle_worker_lost(self, worker_id: str) -> list[Request]:
        """The worker is gone: requeue whatever was running on it."""
        worker = self._registry.transition(worker_id, WorkerState.TERMINATED, self._clock())
        if worker is None:
            return []
        evacuated = self._evacuate(worker_id, WorkerLost(f"worker {worker_id} lost"))
        if evacuated:
            logger.warning(
                f"Worker {worker_id} lost with {len(evacuated)} requests in flight."
            )
        else:
            logger.info(f"Worker {worker_id} terminated.")
        return evacuated

    # --- Introspection ----------------------------------------------------

    def workers(self, worker_class: str | None = None) -> list[Worker]:
        return self._registry.snapshot(worker_class)

    def spare_slots(self, worker_class: str) -> int:
        limit = self._descriptors[worker_class].max_concurrency
        return sum(
            max(0, limit - w.active_job_count)
            for w in self._registry.snapshot(worker_class)
            if w.accepts_work
        )

    def utilization(self, worker_class: str) -> float:
        """Mean active/max_concurrency over running workers of the class."""
        limit = self._descriptors[worker_class].max_concurrency
        loads = [
            w.active_job_count / limit
            for w in self._registry.snapshot(worker_class)
            if w.state in (WorkerState.READY, WorkerState.DRAINING)
        ]
        return float(np.mean(loads)) if loads else 0.0

    def worker_counts(self) -> dict[str, dict[str, int]]:
        counts = {name: {s.value: 0 for s in WorkerState} for name in self._descriptors}
        for w in self._registry.snapshot():
            counts[w.worker_class][w.state.value] += 1
        return counts

    def cost_to_date(self, now: float | None = None) -> float:
        """Billed cost of every worker ever registered, up to now."""
        if now is None:
            now = self._clock()
        total = 0.0
        for w in self._registry.snapshot():
            end = w.terminated_at if w.terminated_at is not None else now
            total += self._cost.cost(w.worker_class, max(0.0, end - w.started_at))
        return total

    def in_flight(self, worker_id: str | None = None) -> list[Batch]:
        with self._lock:
            return [
                f.batch
                for f in self._in_flight.values()
                if worker_id is None or f.worker_id == worker_id
            ]

    async def wait_idle(self) -> None:
        """Wait until every running batch has finished."""
        while True:
            with self._lock:
                tasks = [f.task for f in self._in_flight.values() if f.task is not None]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    # --- Assignment -------------------------------------------------------

    def assign(self, batch: Batch) -> bool:
        """Start a batch on the least-loaded ready worker of its class.

        Must be called from within the running event loop.

        Returns:
            True if the batch was dispatched, False if its requests went back
            to the queue (no capacity) or all of them had expired.
        """
        now = self._clock()
        live = []
        for request in batch.requests:
            if request.is_expired(now):
                self._finalize(request, RequestStatus.EXPIRED)
            else:
                live.append(request)
        batch.requests = live
        if not live:
            return False

        worker = self._registry.acquire(
            batch.target_worker_class,
            key=lambda w: (
                w.active_job_count,
                self._cost.batch_cost(w.worker_class, batch.total_duration),
                w.id,
            ),
        )
        if worker is None:
            for request in live:
                self._queue.requeue(request)
            logger.debug(
                f"No {batch.target_worker_class} capacity; returned "
                f"{len(live)} requests to the queue."
            )
            return False

        for request in live:
            request.status = RequestStatus.DISPATCHED
        flight = InFlight(batch=batch, worker_id=worker.id, dispatched_at=now)
        with self._lock:
            self._in_flight[batch.id] = flight
        flight.task = asyncio.create_task(self._run(flight))
        logger.debug(
            f"Dispatched batch {batch.id} ({len(batch)} requests, "
            f"{batch.total_duration:.1f}s audio) to worker {worker.id}."
        )
        return True

    async def _run(self, flight: InFlight) -> None:
        """Run inference for one batch and settle its requests."""
        batch = flight.batch
        loop = asyncio.get_event_loop()
        started = self._clock()
        try:
            texts = await loop.run_in_executor(
                None, self._engine.infer, list(batch.requests), batch.target_worker_class
            )
            if len(texts) != len(batch.requests):
                raise InferenceError(
                    f"engine returned {len(texts)} results for {len(batch.requests)} requests"
                )
        except asyncio.CancelledError:
            # Evacuated by an interruption; the requests are already requeued
            raise
        except Exception as e:
            if self._release(batch.id) is None:
                return
            logger.warning(
                f"Batch {batch.id} failed on worker {flight.worker_id}: {e}"
            )
            for request in batch.requests:
                self._retry_or_fail(request, str(e))
            return

        elapsed = self._clock() - started
        if self._release(batch.id) is None:
            return
        for request, text in zip(batch.requests, texts):
            request.text = text
            request.served_by = batch.target_worker_class
            request.inference_seconds = elapsed
            self._finalize(request, RequestStatus.COMPLETED)

    def _release(self, batch_id: str) -> InFlight | None:
        """Drop a batch from the in-flight table and free its worker slot.

        Returns None when the batch was already settled elsewhere.
        """
        with self._lock:
            flight = self._in_flight.pop(batch_id, None)
        if flight is None:
            return None
        worker = self._registry.release(flight.worker_id)
        if worker is not None:
            self._check_drained(worker)
        self._capacity_changed()
        return flight

    def _check_drained(self, worker: Worker) -> None:
        # Interrupted workers are left for the provider to reclaim
        if (
            worker.state == WorkerState.DRAINING
            and worker.interruption_deadline is None
            and worker.active_job_count == 0
            and self.on_drained is not None
        ):
            self.on_drained(worker.id)

    def _evacuate(self, worker_id: str, error: WorkerLost) -> list[Request]:
        with self._lock:
            batch_ids = [
                batch_id
                for batch_id, f in self._in_flight.items()
                if f.worker_id == worker_id
            ]
        evacuated = []
        for batch_id in batch_ids:
            flight = self._release(batch_id)
            if flight is None:
                continue
            if flight.task is not None:
                flight.task.cancel()
            for request in flight.batch.requests:
                self._retry_or_fail(request, str(error))
                evacuated.append(request)
        return evacuated

    def _retry_or_fail(self, request: Request, reason: str) -> None:
        if request.is_expired(self._clock()):
            self._finalize(request, RequestStatus.EXPIRED)
            return
        request.retries += 1
        if request.retries > self._max_retries:
            request.error = reason
            self._finalize(request, RequestStatus.FAILED)
            return
        self._queue.requeue(request)

    def _finalize(self, request: Request, status: RequestStatus) -> None:
        request.status = status
        request.completed_at = self._clock()
        self._on_terminal(request)

    def _capacity_changed(self) -> None:
        if self.on_capacity is not None:
            self.on_capacity()
