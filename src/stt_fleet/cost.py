"""Monetary cost of running worker classes.

Everything here is pure: no clocks, no mutable state.
"""

from collections.abc import Iterable, Mapping

from stt_fleet.errors import UnknownWorkerClass
from stt_fleet.models import WorkerDescriptor


def cost(descriptor: WorkerDescriptor, seconds: float) -> float:
    """Cost of running one instance of the class for the given wall time."""
    if seconds < 0:
        raise ValueError("seconds must be >= 0")
    return descriptor.cost_per_hour * seconds / 3600.0


class CostModel:
    """Looks up descriptors by class name and prices work on them."""

    def __init__(self, descriptors: Mapping[str, WorkerDescriptor]):
        self._descriptors = dict(descriptors)

    def descriptor(self, worker_class: str) -> WorkerDescriptor:
        try:
            return self._descriptors[worker_class]
        except KeyError:
            raise UnknownWorkerClass(worker_class) from None

    def cost(self, worker_class: str, seconds: float) -> float:
        return cost(self.descriptor(worker_class), seconds)

    def batch_cost(self, worker_class: str, audio_seconds: float) -> float:
        """Cost of the wall time a batch of this much audio occupies one slot.

        A slot is 1/max_concurrency of the instance.
        """
        d = self.descriptor(worker_class)
        return cost(d, d.processing_seconds(audio_seconds)) / d.max_concurrency

    def cost_per_audio_second(self, worker_class: str) -> float:
        return self.batch_cost(worker_class, 1.0)

    def cheapest_first(self, classes: Iterable[str]) -> list[str]:
        """Order classes by price per transcribed audio second, then name."""
        return sorted(classes, key=lambda c: (self.cost_per_audio_second(c), c))
