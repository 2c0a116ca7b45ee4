import dataclasses
import json
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

from stt_fleet import constants
from stt_fleet.models import WorkerDescriptor


class Settings(BaseSettings):
    """
    Dispatcher settings, loaded from FLEET_* environment variables or a .env file.

    Per-class options (MIN_INSTANCES, MAX_INSTANCES, MAX_BATCH_DURATION) are
    JSON objects keyed by worker class and override the catalog values.
    """

    model_config = SettingsConfigDict(
        env_prefix="FLEET_", env_file=".env", env_file_encoding="utf-8"
    )

    LOG_LEVEL: str = "INFO"

    # --- Admission ---
    QUEUE_CAPACITY: int = constants.QUEUE_CAPACITY
    MAX_RETRIES: int = constants.MAX_RETRIES

    # --- Batching ---
    BATCH_WINDOW_MS: int = constants.BATCH_WINDOW_MS
    LOW_LATENCY_THRESHOLD: int = constants.LOW_LATENCY_THRESHOLD

    # --- Autoscaling ---
    CONTROL_INTERVAL_SECONDS: float = constants.CONTROL_INTERVAL_SECONDS
    TARGET_LATENCY_SECONDS: float = constants.TARGET_LATENCY_SECONDS
    SCALE_UP_THRESHOLD: float = constants.SCALE_UP_THRESHOLD
    SCALE_DOWN_THRESHOLD: float = constants.SCALE_DOWN_THRESHOLD
    SCALE_UP_STEP: int = constants.SCALE_UP_STEP
    COOLDOWN_SECONDS: float = constants.COOLDOWN_SECONDS
    PREEMPTION_GRACE_SECONDS: float = constants.PREEMPTION_GRACE_SECONDS

    # --- Worker classes ---
    WORKER_CLASSES_FILE: Path | None = None
    MIN_INSTANCES: dict[str, int] = {}
    MAX_INSTANCES: dict[str, int] = {}
    MAX_BATCH_DURATION: dict[str, float] = {}

    # --- Runtime ---
    ENGINE: Literal["fake", "kyutai"] = "fake"
    FAKE_TIME_SCALE: float = 1.0  # 1.0 sleeps for the full simulated inference time
    PROVISIONER_STARTUP_SECONDS: float = 5.0
    RESULT_RETENTION_SECONDS: float = constants.RESULT_RETENTION_SECONDS
    LATENCY_WINDOW: int = constants.LATENCY_WINDOW

    def worker_classes(self) -> dict[str, WorkerDescriptor]:
        """Build the catalog and apply per-class overrides."""
        if self.WORKER_CLASSES_FILE is not None:
            catalog = load_worker_classes(self.WORKER_CLASSES_FILE)
        else:
            catalog = dict(DEFAULT_WORKER_CLASSES)

        for name, descriptor in catalog.items():
            overrides = {}
            if name in self.MIN_INSTANCES:
                overrides["min_instances"] = self.MIN_INSTANCES[name]
            if name in self.MAX_INSTANCES:
                overrides["max_instances"] = self.MAX_INSTANCES[name]
            if name in self.MAX_BATCH_DURATION:
                overrides["max_batch_duration"] = self.MAX_BATCH_DURATION[name]
            if overrides:
                catalog[name] = dataclasses.replace(descriptor, **overrides)
        return catalog


# --- Worker class catalog ---
# Throughput figures differ between benchmarks for the same model/GPU pairing,
# so they are measured parameters. Replace them via WORKER_CLASSES_FILE.
DEFAULT_WORKER_CLASSES: dict[str, WorkerDescriptor] = {
    "cpu": WorkerDescriptor(
        worker_class="cpu",
        vcpu=4,
        memory_gb=16,
        gpu_count=0,
        throughput_per_hour=60,  # 60s per 30s clip
        cost_per_hour=0.05,
        max_concurrency=4,
        max_batch_duration=60,
        max_batch_size=4,
        min_instances=1,
        max_instances=20,
    ),
    "gpu": WorkerDescriptor(
        worker_class="gpu",
        vcpu=8,
        memory_gb=32,
        gpu_count=1,
        throughput_per_hour=276,  # ~13s per 30s clip
        cost_per_hour=1.21,
        max_concurrency=5,
        max_batch_duration=600,
        max_batch_size=16,
        min_instances=0,
        max_instances=10,
    ),
    "spot-gpu": WorkerDescriptor(
        worker_class="spot-gpu",
        vcpu=8,
        memory_gb=32,
        gpu_count=1,
        throughput_per_hour=276,
        cost_per_hour=0.40,
        preemptible=True,
        max_concurrency=5,
        max_batch_duration=600,
        max_batch_size=16,
        min_instances=0,
        max_instances=10,
    ),
    "managed": WorkerDescriptor(
        worker_class="managed",
        vcpu=0,
        memory_gb=0,
        gpu_count=1,
        throughput_per_hour=1200,  # ~3s per 30s clip
        cost_per_hour=4.00,
        max_concurrency=8,
        max_batch_duration=900,
        max_batch_size=32,
        min_instances=0,
        max_instances=4,
    ),
}


def load_worker_classes(path: str | Path) -> dict[str, WorkerDescriptor]:
    """
    Loads a worker-class catalog from a JSON file.

    The file holds a list of objects with WorkerDescriptor fields; "class" is
    accepted as an alias for "worker_class".

    Args:
        path: Path to the JSON catalog.

    Returns:
        Descriptors keyed by class name.
    """
    entries = json.loads(Path(path).read_text())
    catalog = {}
    for entry in entries:
        descriptor = WorkerDescriptor.from_dict(entry)
        if descriptor.worker_class in catalog:
            raise ValueError(f"duplicate worker class {descriptor.worker_class!r}")
        catalog[descriptor.worker_class] = descriptor
    if not catalog:
        raise ValueError(f"{path}: catalog is empty")
    return catalog


@lru_cache
def get_settings() -> Settings:
    """
    Returns a cached instance of the settings.
    """
    return Settings()
