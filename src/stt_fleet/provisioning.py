"""Provisioning collaborator interface and an in-process simulation of it.

A provisioner consumes capacity plans and reconciles the running fleet
towards them at its own pace. It reports what actually happened through
worker events, which the service routes to the dispatcher and autoscaler.
"""

import asyncio
import itertools
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from stt_fleet.logging_config import get_logger
from stt_fleet.models import CapacityPlan, WorkerDescriptor

logger = get_logger(__name__)


class WorkerEventKind(str, Enum):
    PROVISIONING = "provisioning"
    READY = "ready"
    HEARTBEAT = "heartbeat"
    INTERRUPTION = "interruption"
    DRAINING = "draining"
    TERMINATED = "terminated"
    PROVISION_FAILED = "provision_failed"


@dataclass(frozen=True)
class WorkerEvent:
    """A worker lifecycle transition reported by the provisioning layer.

    interruption_deadline is only set on INTERRUPTION events and is expressed
    on the service's monotonic clock. worker_id is None on PROVISION_FAILED.
    """

    kind: WorkerEventKind
    worker_class: str
    worker_id: str | None = None
    interruption_deadline: float | None = None
    detail: str = ""


EventCallback = Callable[[WorkerEvent], None]


class Provisioner(Protocol):
    """Protocol for the component that starts and stops worker instances."""

    def subscribe(self, callback: EventCallback) -> None:
        """Register the receiver of worker events."""
        ...

    def apply(self, plan: CapacityPlan) -> None:
        """Start reconciling towards the plan. Must not block.

        Surplus instances that may still be running work are reported with a
        DRAINING event and kept until terminate() is called for them.
        """
        ...

    def terminate(self, worker_id: str) -> None:
        """Stop an instance; called once a draining worker has no work left."""
        ...


class SimulatedProvisioner:
    """Reconciles plans in-process with asyncio timers.

    Used for tests and simulations. Instances become ready after
    startup_seconds. On scale-down, idle instances are stopped first and busy
    ones are drained, newest first. Spot interruptions of preemptible classes
    and provisioning failures can be injected.
    """

    def __init__(
        self,
        descriptors: Mapping[str, WorkerDescriptor],
        startup_seconds: float = 0.0,
        grace_seconds: float = 120.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the simulated provisioner.

        Args:
            descriptors: Worker class catalog.
            startup_seconds: Delay between PROVISIONING and READY.
            grace_seconds: Time between an interruption notice and reclaim.
            clock: Monotonic time source shared with the service.
        """
        self._descriptors = dict(descriptors)
        self._startup_seconds = startup_seconds
        self._grace_seconds = grace_seconds
        self._clock = clock
        self._callback: EventCallback | None = None
        self._load: Callable[[str], int] | None = None
        self._instances: dict[str, str] = {}
        self._interrupted: set[str] = set()
        self._draining: set[str] = set()
        self._failing: set[str] = set()
        self._timers: list[asyncio.TimerHandle] = []
        self._ids = itertools.count(1)

    def subscribe(self, callback: EventCallback) -> None:
        self._callback = callback

    def track_load(self, load: Callable[[str], int]) -> None:
        """Use load(worker_id) -> running batches to pick instances to stop.

        Without it every surplus instance is drained rather than stopped.
        """
        self._load = load

    def running(self, worker_class: str | None = None) -> list[str]:
        """Instance ids counted towards the plan.

        Interrupted and draining instances are excluded.
        """
        return [
            worker_id
            for worker_id, name in self._instances.items()
            if worker_id not in self._interrupted
            and worker_id not in self._draining
            and (worker_class is None or name == worker_class)
        ]

    def draining(self) -> list[str]:
        return [worker_id for worker_id in self._instances if worker_id in self._draining]

    def apply(self, plan: CapacityPlan) -> None:
        for worker_class, desired in plan.desired.items():
            current = self.running(worker_class)
            if desired > len(current):
                if worker_class in self._failing:
                    self._emit(
                        WorkerEvent(
                            WorkerEventKind.PROVISION_FAILED,
                            worker_class,
                            detail=f"cannot start {desired - len(current)} instances",
                        )
                    )
                    continue
                for _ in range(desired - len(current)):
                    self._launch(worker_class)
            elif desired < len(current):
                self._shrink(current, len(current) - desired)

    def fail_class(self, worker_class: str, failing: bool = True) -> None:
        """Make future launches of the class fail (or succeed again)."""
        if failing:
            self._failing.add(worker_class)
        else:
            self._failing.discard(worker_class)

    def interrupt(self, worker_id: str, grace_seconds: float | None = None) -> float:
        """Send a spot interruption notice; reclaim the instance after the grace period.

        Returns:
            The interruption deadline.

        Raises:
            ValueError: The instance belongs to a non-preemptible class.
        """
        worker_class = self._instances[worker_id]
        if not self._descriptors[worker_class].preemptible:
            raise ValueError(f"{worker_class} instances cannot be interrupted")
        grace = self._grace_seconds if grace_seconds is None else grace_seconds
        deadline = self._clock() + grace
        self._interrupted.add(worker_id)
        self._emit(
            WorkerEvent(
                WorkerEventKind.INTERRUPTION,
                worker_class,
                worker_id,
                interruption_deadline=deadline,
            )
        )
        if grace > 0:
            self._later(grace, self.terminate, worker_id)
        else:
            self.terminate(worker_id)
        return deadline

    def terminate(self, worker_id: str) -> None:
        worker_class = self._instances.pop(worker_id, None)
        self._interrupted.discard(worker_id)
        self._draining.discard(worker_id)
        if worker_class is not None:
            self._emit(WorkerEvent(WorkerEventKind.TERMINATED, worker_class, worker_id))

    def close(self) -> None:
        """Cancel pending timers."""
        for timer in self._timers:
            timer.cancel()
        self._timers.clear()

    def _shrink(self, current: list[str], surplus: int) -> None:
        newest_first = list(reversed(current))
        if self._load is not None:
            # Stable sort; ties keep the newest-first order
            loads = {worker_id: self._load(worker_id) for worker_id in newest_first}
            newest_first.sort(key=lambda worker_id: loads[worker_id] > 0)
        else:
            loads = {}
        for worker_id in newest_first[:surplus]:
            if loads.get(worker_id, 1) == 0:
                self.terminate(worker_id)
            else:
                self._draining.add(worker_id)
                self._emit(
                    WorkerEvent(
                        WorkerEventKind.DRAINING, self._instances[worker_id], worker_id
                    )
                )

    def _launch(self, worker_class: str) -> None:
        worker_id = f"{worker_class}-{next(self._ids)}"
        self._instances[worker_id] = worker_class
        self._emit(WorkerEvent(WorkerEventKind.PROVISIONING, worker_class, worker_id))
        if self._startup_seconds > 0:
            self._later(self._startup_seconds, self._ready, worker_id)
        else:
            self._ready(worker_id)

    def _ready(self, worker_id: str) -> None:
        worker_class = self._instances.get(worker_id)
        if worker_class is not None and worker_id not in self._draining:
            self._emit(WorkerEvent(WorkerEventKind.READY, worker_class, worker_id))

    def _later(self, delay: float, fn: Callable[[str], None], worker_id: str) -> None:
        loop = asyncio.get_running_loop()
        self._timers.append(loop.call_later(delay, fn, worker_id))

    def _emit(self, event: WorkerEvent) -> None:
        logger.debug(f"Provisioner event {event.kind.value} for {event.worker_id}.")
        if self._callback is not None:
            self._callback(event)
