"""Admission, batching and autoscaling dispatcher for an STT fleet."""

from stt_fleet.constants import (
    BATCH_WINDOW_MS,
    MAX_RETRIES,
    PREEMPTION_GRACE_SECONDS,
    QUEUE_CAPACITY,
    SAMPLE_RATE,
)

__all__ = [
    "SAMPLE_RATE",
    "BATCH_WINDOW_MS",
    "QUEUE_CAPACITY",
    "MAX_RETRIES",
    "PREEMPTION_GRACE_SECONDS",
]
