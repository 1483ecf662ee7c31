"""PCM conversion utilities."""
import base64

import numpy as np

from constants import PCM16_MAX


def float32_to_pcm16le(samples: np.ndarray) -> bytes:
    """
    Convert mono float samples to PCM16 little-endian bytes.

    Samples are clamped to [-1.0, 1.0] before scaling by 32767, so
    out-of-range input saturates instead of wrapping.
    No resampling. No channel mixing.
    """
    f32 = np.asarray(samples, dtype=np.float32)
    if f32.size == 0:
        return b""
    clamped = np.clip(f32, -1.0, 1.0)
    # Truncate toward zero, matching Int16(x * 32767)
    audio_i16 = (clamped * PCM16_MAX).astype("<i2")
    return audio_i16.tobytes()


def pcm16le_to_float32(pcm_bytes: bytes) -> np.ndarray:
    """
    Convert PCM16 little-endian mono bytes to float32 in [-1.0, 1.0].

    Inverse of float32_to_pcm16le (scale 32767).
    """
    if len(pcm_bytes) % 2 != 0:
        # Truncated sample; caller should treat as malformed frame upstream.
        pcm_bytes = pcm_bytes[: len(pcm_bytes) - 1]

    audio_i16 = np.frombuffer(pcm_bytes, dtype="<i2")  # little-endian int16
    audio_f32 = audio_i16.astype(np.float32) / float(PCM16_MAX)
    return audio_f32


def encode_audio_b64(samples: np.ndarray) -> str:
    """PCM16-encode samples and wrap them in base64 for a JSON payload."""
    return base64.b64encode(float32_to_pcm16le(samples)).decode("ascii")
