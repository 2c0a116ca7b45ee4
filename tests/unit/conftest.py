"""Shared fixtures for unit tests."""

import dataclasses
import threading

import pytest

from stt_fleet.models import Request, WorkerDescriptor


class BlockingEngine:
    """Engine whose batches stay in flight until released."""

    def __init__(self):
        self.release = threading.Event()
        self.calls = 0

    def infer(self, requests: list[Request], worker_class: str) -> list[str]:
        self.calls += 1
        self.release.wait(timeout=5)
        return [f"done:{r.id}" for r in requests]

    def warmup(self) -> None:
        pass


@pytest.fixture
def blocking_engine():
    engine = BlockingEngine()
    yield engine
    engine.release.set()


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def catalog():
    """A cheap slow CPU class and a fast GPU class.

    cpu: 60s per 30s clip, 2 slots, absorbs 10 audio-seconds per 10s horizon.
    gpu: ~13s per 30s clip, 5 slots, absorbs 115 audio-seconds per 10s horizon.
    """
    return {
        "cpu": WorkerDescriptor(
            worker_class="cpu",
            vcpu=4,
            memory_gb=16,
            gpu_count=0,
            throughput_per_hour=60,
            cost_per_hour=0.05,
            max_concurrency=2,
            max_batch_duration=60,
            max_batch_size=4,
            min_instances=0,
            max_instances=4,
        ),
        "gpu": WorkerDescriptor(
            worker_class="gpu",
            vcpu=8,
            memory_gb=32,
            gpu_count=1,
            throughput_per_hour=276,
            cost_per_hour=1.20,
            max_concurrency=5,
            max_batch_duration=120,
            max_batch_size=4,
            min_instances=0,
            max_instances=8,
        ),
    }


@pytest.fixture
def spot_catalog(catalog):
    """The test catalog plus a preemptible copy of the gpu class at a third of the price."""
    catalog["spot-gpu"] = dataclasses.replace(
        catalog["gpu"], worker_class="spot-gpu", cost_per_hour=0.40, preemptible=True
    )
    return catalog


@pytest.fixture
def make_request(clock):
    """Factory for requests admitted at the current fake time."""

    def factory(
        duration: float = 10.0,
        deadline: float = 60.0,
        priority: int = 0,
        worker_class: str | None = None,
    ) -> Request:
        return Request(
            audio_duration_seconds=duration,
            enqueued_at=clock(),
            deadline=clock() + deadline,
            priority=priority,
            worker_class=worker_class,
        )

    return factory
