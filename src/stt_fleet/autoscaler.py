"""Capacity planning control loop.

Each tick turns observed backlog and utilization into a new CapacityPlan.
The autoscaler never talks to the provisioner itself; the service hands the
plan over, and provisioning happens asynchronously.

Scaling rules per worker class:

- needed workers come from the backlog divided by what one worker can absorb
  within the target latency. Unpinned backlog is spread over classes cheapest
  first, skipping classes too slow for the latency target and escalating to
  the next class once a cheaper one is at its ceiling.
- scale up when needed exceeds the current count, or when every desired worker
  is ready and utilization is above scale_up_threshold; at most scale_up_step
  workers per tick.
- scale down by one when utilization has stayed below scale_down_threshold for
  cooldown_seconds and no scale-up happened within cooldown_seconds.
- a class whose provisioning failed is held at its current size.
"""

import math
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field

from stt_fleet.cost import CostModel
from stt_fleet.logging_config import get_logger
from stt_fleet.models import Backlog, CapacityPlan, WorkerDescriptor

logger = get_logger(__name__)


@dataclass(frozen=True)
class ClassObservation:
    """What the autoscaler sees about one worker class."""

    backlog: Backlog = Backlog()  # requests pinned to this class
    utilization: float = 0.0
    ready_workers: int = 0


@dataclass(frozen=True)
class FleetObservation:
    unpinned: Backlog = Backlog()
    classes: dict[str, ClassObservation] = field(default_factory=dict)

    @property
    def total_backlog(self) -> Backlog:
        total = self.unpinned
        for observation in self.classes.values():
            total = total + observation.backlog
        return total


class Autoscaler:
    """Computes the desired worker count per class."""

    def __init__(
        self,
        descriptors: Mapping[str, WorkerDescriptor],
        cost_model: CostModel | None = None,
        target_latency_seconds: float = 10.0,
        scale_up_threshold: float = 0.7,
        scale_down_threshold: float = 0.3,
        scale_up_step: int = 4,
        cooldown_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if not 0 <= scale_down_threshold < scale_up_threshold <= 1:
            raise ValueError("need 0 <= scale_down_threshold < scale_up_threshold <= 1")
        if scale_up_step < 1:
            raise ValueError("scale_up_step must be >= 1")
        self._descriptors = dict(descriptors)
        self._cost = cost_model or CostModel(descriptors)
        self._target_latency = target_latency_seconds
        self._up = scale_up_threshold
        self._down = scale_down_threshold
        self._step = scale_up_step
        self._cooldown = cooldown_seconds
        self._clock = clock

        self._plan = CapacityPlan(
            {name: d.min_instances for name, d in self._descriptors.items()},
            generated_at=clock(),
        )
        self._last_scale_up: dict[str, float] = {}
        self._low_since: dict[str, float] = {}
        self._degraded: set[str] = set()

    @property
    def plan(self) -> CapacityPlan:
        return self._plan

    @property
    def degraded(self) -> frozenset[str]:
        return frozenset(self._degraded)

    def mark_degraded(self, worker_class: str) -> None:
        """Provisioning could not deliver this class; stop growing it."""
        if worker_class not in self._degraded:
            logger.warning(f"Worker class {worker_class} degraded; holding its size.")
        self._degraded.add(worker_class)

    def clear_degraded(self, worker_class: str) -> None:
        if worker_class in self._degraded:
            logger.info(f"Worker class {worker_class} recovered.")
        self._degraded.discard(worker_class)

    def needed_workers(self, observation: FleetObservation) -> dict[str, int]:
        """Workers per class required to drain the backlog within the target latency."""
        needed = {name: 0 for name in self._descriptors}

        for name, class_obs in observation.classes.items():
            if name not in needed or class_obs.backlog.count == 0:
                continue
            per_worker = self._descriptors[name].capacity_audio_seconds(self._target_latency)
            needed[name] = max(1, math.ceil(class_obs.backlog.duration / per_worker))

        unpinned = observation.unpinned
        if unpinned.count == 0:
            return needed

        order = self._cost.cheapest_first(self._descriptors)
        mean = unpinned.mean_duration
        feasible = [
            name
            for name in order
            if self._descriptors[name].processing_seconds(mean) <= self._target_latency
        ]
        if not feasible:
            # Nothing meets the target; the fastest class comes closest
            feasible = [min(order, key=lambda n: self._descriptors[n].processing_seconds(mean))]

        remaining = unpinned.duration
        for name in feasible:
            if remaining <= 0:
                break
            descriptor = self._descriptors[name]
            ceiling = (
                self._plan.get(name) if name in self._degraded else descriptor.max_instances
            )
            room = ceiling - needed[name]
            if room <= 0:
                continue
            per_worker = descriptor.capacity_audio_seconds(self._target_latency)
            take = min(room, max(1, math.ceil(remaining / per_worker)))
            needed[name] += take
            remaining -= take * per_worker

        if remaining > 0:
            logger.warning(
                f"Backlog exceeds fleet capacity by {remaining:.0f} audio seconds."
            )
        return needed

    def tick(self, observation: FleetObservation, now: float | None = None) -> CapacityPlan:
        """Observe, decide, and replace the capacity plan."""
        if now is None:
            now = self._clock()
        needed = self.needed_workers(observation)
        desired = {}

        for name, descriptor in self._descriptors.items():
            current = self._plan.get(name)
            class_obs = observation.classes.get(name, ClassObservation())
            target = current

            grow_to = needed[name]
            if (
                current > 0
                and class_obs.ready_workers >= current
                and class_obs.utilization > self._up
            ):
                grow_to = max(grow_to, current + 1)
            if name in self._degraded:
                grow_to = min(grow_to, current)

            if grow_to > current:
                target = min(grow_to, current + self._step)
                self._low_since.pop(name, None)
            elif class_obs.utilization < self._down and needed[name] < current:
                low_since = self._low_since.setdefault(name, now)
                last_up = self._last_scale_up.get(name)
                if now - low_since >= self._cooldown and (
                    last_up is None or now - last_up >= self._cooldown
                ):
                    target = current - 1
                    self._low_since[name] = now
            else:
                self._low_since.pop(name, None)

            target = max(descriptor.min_instances, min(descriptor.max_instances, target))
            if target > current:
                self._last_scale_up[name] = now
            if target != current:
                logger.info(
                    f"Scaling {name} from {current} to {target} "
                    f"(needed={needed[name]}, utilization={class_obs.utilization:.2f})."
                )
            desired[name] = target

        self._plan = CapacityPlan(desired, generated_at=now)
        return self._plan
