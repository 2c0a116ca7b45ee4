"""Audio conversion utilities for raw uploads.

All functions work with 24kHz mono PCM16 audio as bytes or float32 numpy arrays.
"""

import numpy as np

from stt_fleet.constants import BYTES_PER_SAMPLE, SAMPLE_RATE


def pcm16_to_float32(data: bytes) -> np.ndarray:
    """Convert PCM16 bytes to float32 array normalized to [-1, 1].

    Args:
        data: Raw PCM16 little-endian audio bytes.

    Returns:
        Float32 numpy array with values in [-1, 1].
    """
    audio = np.frombuffer(data, dtype=np.int16).astype(np.float32)
    audio /= 32768.0
    return audio


def validate_audio_format(data: bytes) -> bool:
    """Check that the upload is non-empty, whole-sample PCM16."""
    return len(data) > 0 and len(data) % BYTES_PER_SAMPLE == 0


def duration_seconds(audio: np.ndarray) -> float:
    """Length of a 24kHz audio array in seconds."""
    return len(audio) / SAMPLE_RATE
