"""Data model for requests, worker classes, workers, batches and capacity plans.

Worker classes are tagged variants of a single WorkerDescriptor shape, so the
cost model and autoscaler can treat CPU, GPU, spot and managed backends alike.
"""

import uuid
from dataclasses import dataclass, field
from enum import Enum

import numpy as np


class RequestStatus(str, Enum):
    QUEUED = "queued"
    BATCHED = "batched"
    DISPATCHED = "dispatched"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (RequestStatus.COMPLETED, RequestStatus.FAILED, RequestStatus.EXPIRED)


class WorkerState(str, Enum):
    PROVISIONING = "provisioning"
    READY = "ready"
    DRAINING = "draining"
    TERMINATED = "terminated"


def new_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass
class Request:
    """One transcription job.

    Times are absolute seconds on the service's monotonic clock. Only the
    lifecycle fields (status, retries and the outcome) change after creation.
    """

    audio_duration_seconds: float
    enqueued_at: float
    deadline: float
    priority: int = 0
    worker_class: str | None = None  # routing pin; None means any class
    audio: np.ndarray | None = field(default=None, repr=False)
    id: str = field(default_factory=new_id)

    status: RequestStatus = RequestStatus.QUEUED
    retries: int = 0
    text: str | None = None
    error: str | None = None
    served_by: str | None = None
    inference_seconds: float | None = None
    completed_at: float | None = None

    def is_expired(self, now: float) -> bool:
        return now >= self.deadline

    @property
    def latency_seconds(self) -> float | None:
        if self.completed_at is None:
            return None
        return self.completed_at - self.enqueued_at

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "status": self.status.value,
            "audio_duration_seconds": self.audio_duration_seconds,
            "priority": self.priority,
            "worker_class": self.worker_class,
            "retries": self.retries,
            "text": self.text,
            "error": self.error,
            "served_by": self.served_by,
            "inference_seconds": self.inference_seconds,
            "latency_seconds": self.latency_seconds,
        }


@dataclass(frozen=True)
class WorkerDescriptor:
    """Static capability and cost profile of one worker class.

    Attributes:
        worker_class: Class name, e.g. "cpu", "gpu", "spot-gpu", "managed".
        vcpu: Virtual CPUs per instance.
        memory_gb: Memory per instance.
        gpu_count: GPUs per instance.
        throughput_per_hour: Jobs of reference_audio_seconds each that one
            concurrency slot completes per hour. Measured, not derived.
        cost_per_hour: Price of one running instance.
        preemptible: Whether the provider may reclaim the instance on short notice.
        max_concurrency: Batches one instance runs at the same time.
        max_batch_duration: Per-batch capacity in audio seconds.
        max_batch_size: Maximum requests per batch.
        min_instances: Lower bound for the capacity plan.
        max_instances: Upper bound for the capacity plan.
        reference_audio_seconds: Audio length the throughput was measured on.
    """

    worker_class: str
    vcpu: int
    memory_gb: float
    gpu_count: int
    throughput_per_hour: float
    cost_per_hour: float
    preemptible: bool = False
    max_concurrency: int = 1
    max_batch_duration: float = 300.0
    max_batch_size: int = 8
    min_instances: int = 0
    max_instances: int = 10
    reference_audio_seconds: float = 30.0

    def __post_init__(self):
        if self.throughput_per_hour <= 0:
            raise ValueError(f"{self.worker_class}: throughput_per_hour must be > 0")
        if self.cost_per_hour < 0:
            raise ValueError(f"{self.worker_class}: cost_per_hour must be >= 0")
        if self.max_concurrency < 1:
            raise ValueError(f"{self.worker_class}: max_concurrency must be >= 1")
        if self.max_batch_size < 1:
            raise ValueError(f"{self.worker_class}: max_batch_size must be >= 1")
        if self.max_batch_duration <= 0 or self.reference_audio_seconds <= 0:
            raise ValueError(f"{self.worker_class}: durations must be > 0")
        if not 0 <= self.min_instances <= self.max_instances:
            raise ValueError(
                f"{self.worker_class}: need 0 <= min_instances <= max_instances"
            )

    @property
    def seconds_per_job(self) -> float:
        return 3600.0 / self.throughput_per_hour

    @property
    def realtime_factor(self) -> float:
        """Audio seconds one concurrency slot processes per wall second."""
        return self.reference_audio_seconds / self.seconds_per_job

    def processing_seconds(self, audio_seconds: float) -> float:
        """Expected inference time for the given amount of audio."""
        return audio_seconds / self.realtime_factor

    def capacity_audio_seconds(self, horizon_seconds: float) -> float:
        """Audio seconds one instance can absorb within the horizon."""
        return self.realtime_factor * horizon_seconds * self.max_concurrency

    @classmethod
    def from_dict(cls, data: dict) -> "WorkerDescriptor":
        data = dict(data)
        if "class" in data:
            data["worker_class"] = data.pop("class")
        return cls(**data)


@dataclass
class Worker:
    """One running instance of a worker class."""

    id: str
    worker_class: str
    state: WorkerState = WorkerState.PROVISIONING
    active_job_count: int = 0
    last_heartbeat: float = 0.0
    interruption_deadline: float | None = None
    started_at: float = 0.0
    ready_at: float | None = None
    terminated_at: float | None = None

    @property
    def accepts_work(self) -> bool:
        return self.state == WorkerState.READY and self.interruption_deadline is None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "worker_class": self.worker_class,
            "state": self.state.value,
            "active_job_count": self.active_job_count,
            "interruption_deadline": self.interruption_deadline,
        }


@dataclass
class Batch:
    """Requests dispatched together to one worker."""

    requests: list[Request]
    target_worker_class: str
    created_at: float
    id: str = field(default_factory=new_id)

    @property
    def total_duration(self) -> float:
        return sum(r.audio_duration_seconds for r in self.requests)

    @property
    def request_ids(self) -> list[str]:
        return [r.id for r in self.requests]

    def __len__(self) -> int:
        return len(self.requests)


@dataclass(frozen=True)
class CapacityPlan:
    """Desired worker count per class, as decided by one autoscaler tick."""

    desired: dict[str, int]
    generated_at: float = 0.0

    def get(self, worker_class: str) -> int:
        return self.desired.get(worker_class, 0)

    def to_dict(self) -> dict:
        return {"desired": dict(self.desired), "generated_at": self.generated_at}


@dataclass(frozen=True)
class Backlog:
    """Queued work awaiting assignment."""

    count: int = 0
    duration: float = 0.0

    def __add__(self, other: "Backlog") -> "Backlog":
        return Backlog(self.count + other.count, self.duration + other.duration)

    @property
    def mean_duration(self) -> float:
        return self.duration / self.count if self.count else 0.0
