"""Per-tick metrics snapshots and the sinks they are pushed to."""

from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Protocol

import numpy as np

from stt_fleet.logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ClassMetrics:
    desired: int
    ready: int
    provisioning: int
    draining: int
    utilization: float
    latency_p50: float | None = None
    latency_p95: float | None = None
    latency_p99: float | None = None


@dataclass(frozen=True)
class MetricsSnapshot:
    at: float
    queue_depth: int
    cost_to_date: float
    completed: int = 0
    failed: int = 0
    expired: int = 0
    rejected: int = 0
    classes: dict[str, ClassMetrics] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


class LatencyTracker:
    """Rolling window of end-to-end latencies per worker class."""

    def __init__(self, window: int = 1024):
        self._window = window
        self._samples: dict[str, deque[float]] = {}

    def record(self, worker_class: str, seconds: float) -> None:
        samples = self._samples.setdefault(worker_class, deque(maxlen=self._window))
        samples.append(seconds)

    def percentiles(self, worker_class: str) -> tuple[float, float, float] | None:
        """p50, p95 and p99 over the window, or None without samples."""
        samples = self._samples.get(worker_class)
        if not samples:
            return None
        p50, p95, p99 = np.percentile(np.fromiter(samples, dtype=float), [50, 95, 99])
        return float(p50), float(p95), float(p99)


class MetricsSink(Protocol):
    """Receives one snapshot per control-loop tick."""

    def push(self, snapshot: MetricsSnapshot) -> None: ...


class LoggingMetricsSink:
    """Emits each snapshot as a structured log line."""

    def push(self, snapshot: MetricsSnapshot) -> None:
        logger.info("fleet metrics", extra={"fields": snapshot.to_dict()})


class InMemoryMetricsSink:
    """Keeps the most recent snapshots."""

    def __init__(self, limit: int = 1000):
        self.snapshots: deque[MetricsSnapshot] = deque(maxlen=limit)

    def push(self, snapshot: MetricsSnapshot) -> None:
        self.snapshots.append(snapshot)

    @property
    def latest(self) -> MetricsSnapshot | None:
        return self.snapshots[-1] if self.snapshots else None
