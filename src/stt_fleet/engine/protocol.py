"""Engine protocol defining the interface for inference backends.

This is the sealed boundary between the dispatcher and the transcription
model runtime. The dispatcher only ever sees text or an exception.
"""

from typing import Protocol

from stt_fleet.models import Request


class Engine(Protocol):
    """Protocol for speech-to-text inference engines.

    Implementations are called from a thread pool, one call per batch, and may
    block for several seconds. Real GPU engines and the fake CPU engine are
    interchangeable.
    """

    def infer(self, requests: list[Request], worker_class: str) -> list[str]:
        """Transcribe one batch on a worker of the given class.

        Args:
            requests: Batch members. Each carries audio_duration_seconds and,
                when the caller uploaded it, a float32 24kHz mono `audio` array.
            worker_class: Class of the worker running the batch.

        Returns:
            One transcription per request, in order.

        Raises:
            InferenceError: The worker failed the batch.
        """
        ...

    def warmup(self) -> None:
        """Warm up the engine (e.g., load weights, compile kernels)."""
        ...
