"""Admission API and control loop for the transcription fleet.

DispatchService owns one queue, batcher, dispatcher and autoscaler, and is the
only place where they are wired together. Components never reach into each
other's collections; the service passes events and plans between them.
"""

import asyncio
import time
from collections import Counter
from collections.abc import Callable, Mapping

import numpy as np

from stt_fleet.autoscaler import Autoscaler, ClassObservation, FleetObservation
from stt_fleet.batching import Batcher
from stt_fleet.config import Settings, get_settings
from stt_fleet.cost import CostModel
from stt_fleet.dispatcher import Dispatcher
from stt_fleet.engine.protocol import Engine
from stt_fleet.errors import (
    AdmissionRejected,
    RequestExpired,
    RequestFailed,
    UnknownWorkerClass,
)
from stt_fleet.logging_config import get_logger
from stt_fleet.metrics import (
    ClassMetrics,
    LatencyTracker,
    LoggingMetricsSink,
    MetricsSink,
    MetricsSnapshot,
)
from stt_fleet.models import (
    Backlog,
    CapacityPlan,
    Request,
    RequestStatus,
    WorkerDescriptor,
)
from stt_fleet.provisioning import (
    Provisioner,
    SimulatedProvisioner,
    WorkerEvent,
    WorkerEventKind,
)
from stt_fleet.request_queue import RequestQueue

logger = get_logger(__name__)


def create_engine(settings: Settings, descriptors: Mapping[str, WorkerDescriptor]) -> Engine:
    """Build the inference engine selected by settings.ENGINE."""
    if settings.ENGINE == "kyutai":
        # Imported lazily: requires the gpu extra
        from stt_fleet.engine.kyutai import KyutaiEngine

        return KyutaiEngine()
    from stt_fleet.engine.fake import FakeEngine

    return FakeEngine(descriptors, time_scale=settings.FAKE_TIME_SCALE)


class DispatchService:
    """Accepts transcription requests and runs them on an autoscaled fleet."""

    def __init__(
        self,
        settings: Settings | None = None,
        engine: Engine | None = None,
        provisioner: Provisioner | None = None,
        metrics_sink: MetricsSink | None = None,
        descriptors: Mapping[str, WorkerDescriptor] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the service.

        Args:
            settings: Configuration; defaults to the cached environment settings.
            engine: Inference backend; defaults to create_engine(settings).
            provisioner: Receives capacity plans; defaults to a simulated one.
            metrics_sink: Receives a snapshot every tick; defaults to logging.
            descriptors: Worker class catalog; defaults to settings.worker_classes().
            clock: Monotonic time source shared by all components.
        """
        self.settings = settings or get_settings()
        self.descriptors = dict(descriptors or self.settings.worker_classes())
        self._clock = clock

        self.engine = engine or create_engine(self.settings, self.descriptors)
        self.cost_model = CostModel(self.descriptors)
        self.queue = RequestQueue(self.settings.QUEUE_CAPACITY, clock=clock)
        self.dispatcher = Dispatcher(
            self.queue,
            self.engine,
            self.descriptors,
            cost_model=self.cost_model,
            max_retries=self.settings.MAX_RETRIES,
            on_terminal=self._on_terminal,
            clock=clock,
        )
        self.batcher = Batcher(
            self.queue,
            self.dispatcher,
            self.descriptors,
            cost_model=self.cost_model,
            batch_window_ms=self.settings.BATCH_WINDOW_MS,
            low_latency_threshold=self.settings.LOW_LATENCY_THRESHOLD,
            clock=clock,
        )
        self.dispatcher.on_capacity = self.batcher.wake
        self.autoscaler = Autoscaler(
            self.descriptors,
            cost_model=self.cost_model,
            target_latency_seconds=self.settings.TARGET_LATENCY_SECONDS,
            scale_up_threshold=self.settings.SCALE_UP_THRESHOLD,
            scale_down_threshold=self.settings.SCALE_DOWN_THRESHOLD,
            scale_up_step=self.settings.SCALE_UP_STEP,
            cooldown_seconds=self.settings.COOLDOWN_SECONDS,
            clock=clock,
        )
        self.provisioner = provisioner or SimulatedProvisioner(
            self.descriptors,
            startup_seconds=self.settings.PROVISIONER_STARTUP_SECONDS,
            grace_seconds=self.settings.PREEMPTION_GRACE_SECONDS,
            clock=clock,
        )
        self.provisioner.subscribe(self.handle_worker_event)
        track_load = getattr(self.provisioner, "track_load", None)
        if track_load is not None:
            track_load(self.dispatcher.active_jobs)
        self.dispatcher.on_drained = self.provisioner.terminate
        self.metrics_sink = metrics_sink or LoggingMetricsSink()

        self._requests: dict[str, Request] = {}
        self._waiters: dict[str, list[asyncio.Future]] = {}
        self._callbacks: dict[str, Callable[[Request], None]] = {}
        self._latency = LatencyTracker(self.settings.LATENCY_WINDOW)
        self._counters: Counter[str] = Counter()
        self._running = False
        self._task: asyncio.Task | None = None

    # --- Lifecycle --------------------------------------------------------

    async def start(self) -> None:
        """Bring up the minimum fleet and start the batcher and control loop."""
        if self._running:
            return
        self._running = True
        self.provisioner.apply(self.autoscaler.plan)
        loop = asyncio.get_event_loop()
        await loop.run_in_executor(None, self.engine.warmup)
        await self.batcher.start()
        self._task = asyncio.create_task(self._control_loop())
        logger.info(f"Dispatch service started with classes {sorted(self.descriptors)}.")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.batcher.stop()
        close = getattr(self.provisioner, "close", None)
        if close is not None:
            close()
        logger.info("Dispatch service stopped.")

    @property
    def is_running(self) -> bool:
        return self._running

    def now(self) -> float:
        """Current time on the service clock; deadlines are expressed on it."""
        return self._clock()

    async def _control_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.settings.CONTROL_INTERVAL_SECONDS)
            try:
                self.tick()
            except Exception:
                logger.exception("Control loop tick failed.")

    # --- Admission API ----------------------------------------------------

    def submit(
        self,
        audio_duration_seconds: float,
        deadline_seconds: float,
        priority: int = 0,
        worker_class: str | None = None,
        audio: np.ndarray | None = None,
        on_done: Callable[[Request], None] | None = None,
    ) -> str:
        """Admit a transcription request.

        Args:
            audio_duration_seconds: Length of the audio.
            deadline_seconds: Latency budget from now; <= 0 is already elapsed.
            priority: Higher values are served first.
            worker_class: Optional pin to one worker class.
            audio: Optional float32 24kHz mono samples for the engine.
            on_done: Called once the request reaches a terminal status.

        Returns:
            The request id.

        Raises:
            AdmissionRejected: Queue full or deadline already elapsed.
            UnknownWorkerClass: The pinned class is not in the catalog.
        """
        if audio_duration_seconds <= 0:
            raise ValueError("audio_duration_seconds must be > 0")
        if worker_class is not None and worker_class not in self.descriptors:
            raise UnknownWorkerClass(worker_class)

        now = self._clock()
        request = Request(
            audio_duration_seconds=audio_duration_seconds,
            enqueued_at=now,
            deadline=now + deadline_seconds,
            priority=priority,
            worker_class=worker_class,
            audio=audio,
        )
        try:
            self.queue.enqueue(request)
        except AdmissionRejected as e:
            self._counters["rejected"] += 1
            logger.info(f"Rejected request: {e.reason}.")
            raise

        self._requests[request.id] = request
        if on_done is not None:
            self._callbacks[request.id] = on_done
        self.batcher.notify(len(self.queue))
        return request.id

    def status(self, request_id: str) -> Request:
        """Current state of a request.

        Raises:
            KeyError: Unknown (or pruned) request id.
        """
        return self._requests[request_id]

    async def result(self, request_id: str, timeout: float | None = None) -> Request:
        """Wait for a request to finish.

        Returns:
            The completed request, with its text.

        Raises:
            KeyError: Unknown request id.
            RequestExpired: The deadline passed first.
            RequestFailed: Retries were exhausted.
            asyncio.TimeoutError: timeout elapsed before a terminal status.
        """
        request = self._requests[request_id]
        if not request.status.is_terminal:
            future = asyncio.get_event_loop().create_future()
            self._waiters.setdefault(request_id, []).append(future)
            await asyncio.wait_for(future, timeout=timeout)

        if request.status == RequestStatus.EXPIRED:
            raise RequestExpired(request_id)
        if request.status == RequestStatus.FAILED:
            raise RequestFailed(request_id, request.error or "unknown error")
        return request

    def _on_terminal(self, request: Request) -> None:
        self._counters[request.status.value] += 1
        if request.status == RequestStatus.COMPLETED and request.served_by:
            self._latency.record(request.served_by, request.latency_seconds)
        logger.debug(f"Request {request.id} finished as {request.status.value}.")

        for future in self._waiters.pop(request.id, []):
            if not future.done():
                future.set_result(request)
        callback = self._callbacks.pop(request.id, None)
        if callback is not None:
            callback(request)

    # --- Provisioning events ----------------------------------------------

    def handle_worker_event(self, event: WorkerEvent) -> None:
        """Apply a worker lifecycle event from the provisioning layer."""
        if event.worker_class not in self.descriptors:
            logger.warning(f"Ignoring event for unknown class {event.worker_class!r}.")
            return
        if event.kind == WorkerEventKind.PROVISION_FAILED:
            self.autoscaler.mark_degraded(event.worker_class)
            return
        if event.worker_id is None:
            logger.warning(f"Ignoring {event.kind.value} event without a worker id.")
            return

        known = self.dispatcher.workers(event.worker_class)
        if event.kind == WorkerEventKind.PROVISIONING:
            self.dispatcher.register_worker(event.worker_id, event.worker_class)
        elif event.kind == WorkerEventKind.READY:
            if all(w.id != event.worker_id for w in known):
                self.dispatcher.register_worker(event.worker_id, event.worker_class)
            self.dispatcher.mark_ready(event.worker_id)
            self.autoscaler.clear_degraded(event.worker_class)
        elif event.kind == WorkerEventKind.HEARTBEAT:
            self.dispatcher.heartbeat(event.worker_id)
        elif event.kind == WorkerEventKind.DRAINING:
            self.dispatcher.drain_worker(event.worker_id)
        elif event.kind == WorkerEventKind.INTERRUPTION:
            deadline = event.interruption_deadline
            if deadline is None:
                deadline = self._clock() + self.settings.PREEMPTION_GRACE_SECONDS
            if self.dispatcher.handle_interruption(event.worker_id, deadline):
                self.batcher.wake()
        elif event.kind == WorkerEventKind.TERMINATED:
            if self.dispatcher.handle_worker_lost(event.worker_id):
                self.batcher.wake()

    # --- Control loop -----------------------------------------------------

    def observe(self) -> FleetObservation:
        backlog = self.queue.backlog()
        counts = self.dispatcher.worker_counts()
        classes = {
            name: ClassObservation(
                backlog=backlog.get(name, Backlog()),
                utilization=self.dispatcher.utilization(name),
                ready_workers=counts[name]["ready"],
            )
            for name in self.descriptors
        }
        return FleetObservation(unpinned=backlog.get(None, Backlog()), classes=classes)

    def tick(self, now: float | None = None) -> CapacityPlan:
        """One control-loop step: expire, plan, provision, report."""
        if now is None:
            now = self._clock()
        for request in self.queue.sweep_expired(now):
            self._on_terminal(request)

        plan = self.autoscaler.tick(self.observe(), now)
        self.provisioner.apply(plan)
        self.metrics_sink.push(self.snapshot(now))
        self._prune(now)
        return plan

    def snapshot(self, now: float | None = None) -> MetricsSnapshot:
        if now is None:
            now = self._clock()
        counts = self.dispatcher.worker_counts()
        plan = self.autoscaler.plan
        classes = {}
        for name in self.descriptors:
            p50 = p95 = p99 = None
            percentiles = self._latency.percentiles(name)
            if percentiles is not None:
                p50, p95, p99 = percentiles
            classes[name] = ClassMetrics(
                desired=plan.get(name),
                ready=counts[name]["ready"],
                provisioning=counts[name]["provisioning"],
                draining=counts[name]["draining"],
                utilization=self.dispatcher.utilization(name),
                latency_p50=p50,
                latency_p95=p95,
                latency_p99=p99,
            )
        return MetricsSnapshot(
            at=now,
            queue_depth=len(self.queue),
            cost_to_date=self.dispatcher.cost_to_date(now),
            completed=self._counters["completed"],
            failed=self._counters["failed"],
            expired=self._counters["expired"],
            rejected=self._counters["rejected"],
            classes=classes,
        )

    def _prune(self, now: float) -> None:
        horizon = now - self.settings.RESULT_RETENTION_SECONDS
        stale = [
            request_id
            for request_id, request in self._requests.items()
            if request.status.is_terminal
            and request.completed_at is not None
            and request.completed_at < horizon
        ]
        for request_id in stale:
            del self._requests[request_id]
