"""Fake engine for CPU-based testing and simulation.

Returns deterministic output based on request properties and sleeps for the
inference time the worker class would need, scaled down by time_scale.
"""

import hashlib
import time
from collections.abc import Mapping

import numpy as np

from stt_fleet.errors import InferenceError
from stt_fleet.models import Request, WorkerDescriptor


class FakeEngine:
    """Deterministic CPU engine for testing.

    Generates predictable transcriptions from each request's audio content (or
    id when no audio was uploaded) and duration. Failures can be injected per
    request id or at random with a seeded generator.
    """

    def __init__(
        self,
        descriptors: Mapping[str, WorkerDescriptor] | None = None,
        time_scale: float = 0.0,
        failure_rate: float = 0.0,
        fail_ids: set[str] | None = None,
        seed: int = 0,
    ):
        """Initialize the fake engine.

        Args:
            descriptors: Worker classes used to derive simulated latency.
            time_scale: Multiplier applied to the simulated inference time.
                0 disables sleeping entirely.
            failure_rate: Probability that a batch raises InferenceError.
            fail_ids: Request ids whose batches always fail.
            seed: Seed for the failure generator.
        """
        self._descriptors = dict(descriptors or {})
        self._time_scale = time_scale
        self._failure_rate = failure_rate
        self._fail_ids = set(fail_ids or ())
        self._rng = np.random.default_rng(seed)
        self._call_count = 0

    def infer(self, requests: list[Request], worker_class: str) -> list[str]:
        """Generate deterministic transcriptions for a batch.

        Args:
            requests: Batch members.
            worker_class: Class of the worker running the batch.

        Returns:
            List of fake transcription strings.
        """
        self._call_count += 1

        delay = self.simulated_seconds(requests, worker_class) * self._time_scale
        if delay > 0:
            time.sleep(delay)

        if any(r.id in self._fail_ids for r in requests):
            raise InferenceError(f"injected failure on {worker_class}")
        if self._failure_rate > 0 and self._rng.random() < self._failure_rate:
            raise InferenceError(f"random failure on {worker_class}")

        return [
            f"[fake:{self._fingerprint(r)[:8]}|{r.audio_duration_seconds:.2f}s|{worker_class}]"
            for r in requests
        ]

    def simulated_seconds(self, requests: list[Request], worker_class: str) -> float:
        """Inference time of the batch on the class; members run in parallel."""
        descriptor = self._descriptors.get(worker_class)
        if descriptor is None or not requests:
            return 0.0
        return max(descriptor.processing_seconds(r.audio_duration_seconds) for r in requests)

    def warmup(self) -> None:
        """No-op warmup for fake engine."""
        pass

    @property
    def call_count(self) -> int:
        """Number of infer calls made."""
        return self._call_count

    @staticmethod
    def _fingerprint(request: Request) -> str:
        """Short hash of the audio content, or of the id when there is none."""
        if request.audio is not None:
            # Use first 100 samples (or all if shorter) for hash
            data = request.audio[: min(100, len(request.audio))].tobytes()
        else:
            data = request.id.encode()
        return hashlib.sha256(data).hexdigest()
