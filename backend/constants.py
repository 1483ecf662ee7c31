"""
BEHAVIOR-AS-CONSTANTS
---------------------
Single source of truth for all behavioral constants of the dictation core.

Rules:
- If changing a value changes runtime behavior, it belongs here.
- No magic numbers elsewhere in the codebase.
- Other modules MUST import from this file.
"""

from __future__ import annotations

from typing import Final, Tuple

# =============================================================================
# Audio Format (PCM16 mono @ 24kHz)
# =============================================================================

AUDIO_SAMPLE_RATE_HZ: Final[int] = 24_000
AUDIO_CHANNELS: Final[int] = 1
AUDIO_SAMPLE_WIDTH_BYTES: Final[int] = 2  # PCM16 (signed 16-bit)

PCM16_MAX: Final[int] = 32_767
PCM16_MIN: Final[int] = -32_768

# =============================================================================
# Send queue / backpressure
# =============================================================================

SEND_QUEUE_CAPACITY_FRAMES: Final[int] = 50

# =============================================================================
# Session engine timing
# =============================================================================

CONNECT_TIMEOUT_S: Final[float] = 10.0
SESSION_READY_TIMEOUT_S: Final[float] = 5.0
KEEPALIVE_INTERVAL_S: Final[float] = 30.0

# =============================================================================
# Controller timing
# =============================================================================

MAX_SESSION_DURATION_S: Final[float] = 60.0
FINAL_TRANSCRIPT_TIMEOUT_S: Final[float] = 3.0
SENDER_DRAIN_TIMEOUT_S: Final[float] = 1.0

DEFAULT_SILENCE_THRESHOLD_MS: Final[int] = 10_000
SILENCE_THRESHOLD_MIN_MS: Final[int] = 1_000
SILENCE_THRESHOLD_MAX_MS: Final[int] = 60_000

DEFAULT_HOTKEY_INTERVAL_MS: Final[int] = 300
HOTKEY_INTERVAL_MIN_MS: Final[int] = 100
HOTKEY_INTERVAL_MAX_MS: Final[int] = 1_000

# =============================================================================
# Reconnection
# =============================================================================

RECONNECT_MAX_ATTEMPTS: Final[int] = 3
RECONNECT_BASE_DELAY_S: Final[float] = 0.5
RECONNECT_JITTER_CAP_S: Final[float] = 0.3

# =============================================================================
# Remote service defaults
# =============================================================================

DEFAULT_MODEL: Final[str] = "gpt-4o-transcribe"
DEFAULT_TRANSCRIPTION_PROMPT: Final[str] = (
    "Transcribe in any language including mixed language content"
)
OPENAI_REALTIME_URL: Final[str] = "wss://api.openai.com/v1/realtime?intent=transcription"

TURN_DETECTION_MODE: Final[str] = "server_vad"
TURN_DETECTION_THRESHOLD: Final[float] = 0.5
TURN_DETECTION_PREFIX_PADDING_MS: Final[int] = 100
TURN_DETECTION_SILENCE_DURATION_MS: Final[int] = 300

# =============================================================================
# Transcript filtering
# =============================================================================

# Known junk phrases echoed back by the backend from its own prompt.
HALLUCINATION_PATTERNS: Final[Tuple[str, ...]] = (
    "transcribe in any language",
    "including mixed language content",
)

# =============================================================================
# Telemetry
# =============================================================================

METRICS_HISTORY_CAPACITY: Final[int] = 100
RECENT_SESSIONS_DEFAULT: Final[int] = 10

# =============================================================================
# Local energy VAD
# =============================================================================

VAD_ENERGY_THRESHOLD: Final[float] = 0.01
VAD_SILENCE_DURATION_S: Final[float] = 0.5
