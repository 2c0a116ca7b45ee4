"""Unit tests for audio conversion utilities."""

import numpy as np

from stt_fleet.audio import (
    duration_seconds,
    pcm16_to_float32,
    validate_audio_format,
)
from stt_fleet.constants import SAMPLE_RATE


class TestPCM16Conversion:
    """Tests for PCM16 <-> float32 conversion."""

    def test_pcm16_to_float32_zeros(self):
        """Zero bytes should produce zero array."""
        data = bytes(100)  # 50 samples of zeros
        result = pcm16_to_float32(data)
        assert result.dtype == np.float32
        assert len(result) == 50
        np.testing.assert_array_equal(result, np.zeros(50, dtype=np.float32))

    def test_pcm16_to_float32_max_values(self):
        """Max int16 should map to ~1.0."""
        data = np.array([32767], dtype=np.int16).tobytes()
        result = pcm16_to_float32(data)
        assert abs(result[0] - 1.0) < 0.0001

        data = np.array([-32768], dtype=np.int16).tobytes()
        result = pcm16_to_float32(data)
        assert abs(result[0] - (-1.0)) < 0.0001


class TestValidation:
    """Tests for upload validation."""

    def test_validate_audio_format_valid(self):
        """Even, non-zero byte count is valid PCM16."""
        assert validate_audio_format(bytes(100)) is True
        assert validate_audio_format(bytes(2)) is True

    def test_validate_audio_format_invalid(self):
        """Odd byte counts and empty uploads are rejected."""
        assert validate_audio_format(bytes(0)) is False
        assert validate_audio_format(bytes(1)) is False
        assert validate_audio_format(bytes(101)) is False

    def test_duration_seconds(self):
        """Duration follows the 24kHz sample rate."""
        assert duration_seconds(np.zeros(SAMPLE_RATE, dtype=np.float32)) == 1.0
        assert duration_seconds(np.zeros(SAMPLE_RATE // 2, dtype=np.float32)) == 0.5
