"""Core constants for the STT fleet dispatcher.

Audio arrives as 24kHz mono PCM16, the format the transcription engines expect.
Scheduling defaults are tuned for a 5-10 second end-to-end latency budget.
"""

# Audio format requirements
SAMPLE_RATE: int = 24000  # Hz
BYTES_PER_SAMPLE: int = 2  # 16-bit PCM

# Batching
BATCH_WINDOW_MS: int = 250
LOW_LATENCY_THRESHOLD: int = 32  # queued requests that trigger an early batch round

# Admission
QUEUE_CAPACITY: int = 1000
MAX_RETRIES: int = 2

# Control loop
CONTROL_INTERVAL_SECONDS: float = 1.0
TARGET_LATENCY_SECONDS: float = 10.0
SCALE_UP_THRESHOLD: float = 0.7
SCALE_DOWN_THRESHOLD: float = 0.3
SCALE_UP_STEP: int = 4
COOLDOWN_SECONDS: float = 60.0

# Spot instances get roughly two minutes between notice and reclaim
PREEMPTION_GRACE_SECONDS: float = 120.0

# Rolling window of completed requests used for latency percentiles
LATENCY_WINDOW: int = 1024

# Terminal requests stay queryable this long
RESULT_RETENTION_SECONDS: float = 3600.0
