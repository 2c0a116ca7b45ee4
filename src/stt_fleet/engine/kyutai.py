"""Real GPU engine using the Kyutai STT model via transformers.

This module requires torch and transformers (the `gpu` extra) and should only
be imported on workers that run inference in-process.
"""

from pathlib import Path

import numpy as np
import torch

from stt_fleet.constants import SAMPLE_RATE
from stt_fleet.errors import InferenceError
from stt_fleet.logging_config import get_logger
from stt_fleet.models import Request

MODEL_ID = "kyutai/stt-1b-en_fr-trfs"

logger = get_logger(__name__)


class KyutaiEngine:
    """GPU-accelerated STT engine using kyutai/stt-1b-en_fr-trfs.

    The model is loaded lazily and reused for every batch. Requests must carry
    their audio as float32 24kHz mono arrays.
    """

    def __init__(
        self,
        model_path: str | Path | None = None,
        device: str = "cuda",
        dtype: torch.dtype = torch.bfloat16,
    ):
        """Initialize the Kyutai engine.

        Args:
            model_path: Local path to model weights, or None to download from HuggingFace.
            device: Device to run inference on ("cuda" or "cpu").
            dtype: Model dtype (bfloat16 recommended on GPU).
        """
        self._model_path = Path(model_path) if model_path else None
        self._device = device
        self._dtype = dtype

        self._processor = None
        self._model = None

    def _load_model(self) -> None:
        """Load model and processor (lazy initialization)."""
        if self._model is not None:
            return

        from transformers import (
            KyutaiSpeechToTextForConditionalGeneration,
            KyutaiSpeechToTextProcessor,
        )

        model_id = str(self._model_path) if self._model_path else MODEL_ID

        self._processor = KyutaiSpeechToTextProcessor.from_pretrained(model_id)
        self._model = KyutaiSpeechToTextForConditionalGeneration.from_pretrained(
            model_id,
            torch_dtype=self._dtype,
            device_map="auto" if self._device == "cuda" else None,
        )

        if self._device != "cuda":
            self._model = self._model.to(self._device)

        self._model.eval()

    def infer(self, requests: list[Request], worker_class: str) -> list[str]:
        """Transcribe a batch of requests.

        Args:
            requests: Batch members, each with an `audio` array.
            worker_class: Class of the worker running the batch (logged only).

        Returns:
            List of transcription strings.

        Raises:
            InferenceError: A request has no audio or the model call failed.
        """
        if not requests:
            return []

        missing = [r.id for r in requests if r.audio is None]
        if missing:
            raise InferenceError(f"requests without audio payload: {missing}")

        self._load_model()
        audio_list = [r.audio for r in requests]

        # Roughly 1 token per 40ms of audio
        longest_ms = max(len(a) for a in audio_list) / SAMPLE_RATE * 1000
        max_tokens = max(10, min(500, int(longest_ms / 40)))

        try:
            with torch.no_grad():
                inputs = self._processor(
                    audio=audio_list,
                    sampling_rate=SAMPLE_RATE,
                    return_tensors="pt",
                    padding=True,
                )
                input_values = inputs.input_values.to(self._model.device)
                output_ids = self._model.generate(
                    input_values=input_values, max_new_tokens=max_tokens
                )
                texts = self._processor.batch_decode(output_ids, skip_special_tokens=True)
        except RuntimeError as e:
            raise InferenceError(f"{worker_class} inference failed: {e}") from e

        logger.debug(f"Transcribed batch of {len(requests)} on {worker_class}.")
        return texts

    def warmup(self) -> None:
        """Load model and run a dummy inference to warm up CUDA kernels."""
        self._load_model()

        # Generate 1 second of dummy audio
        dummy_audio = np.random.randn(SAMPLE_RATE).astype(np.float32) * 0.1

        with torch.no_grad():
            inputs = self._processor(
                audio=dummy_audio,
                sampling_rate=SAMPLE_RATE,
                return_tensors="pt",
            )
            input_values = inputs.input_values.to(self._model.device)
            _ = self._model.generate(input_values=input_values, max_new_tokens=10)

        logger.info(f"KyutaiEngine warmed up on {self._device}")

    @property
    def device(self) -> str:
        """Return the device the model is running on."""
        return self._device

    @property
    def is_loaded(self) -> bool:
        """Check if the model is loaded."""
        return self._model is not None
