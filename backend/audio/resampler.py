"""
Frame resampler: arbitrary rate / channel count -> fixed-rate mono float32.

Contract:
- Zero-length input returns None (no error)
- Quality path: polyphase filtering via scipy.signal.resample_poly
- Fallback path: linear interpolation between nearest source samples
- No reordering or duplication beyond the interpolation itself
- Stateless across calls except the cached converter, which is keyed by the
  last-seen source format and rebuilt only when that format changes

Channel handling:
- Multi-channel input is down-mixed to mono by averaging all channels
  before resampling. Input may be a 2-D (frames, channels) array or a 1-D
  interleaved array with channels > 1.
"""

from __future__ import annotations

from dataclasses import dataclass
from math import gcd
from typing import Optional

import numpy as np
from numpy.typing import NDArray
from scipy import signal

from constants import AUDIO_SAMPLE_RATE_HZ
from observability.logger import log_event


@dataclass(frozen=True)
class SourceFormat:
    """Cache key for converter setup."""
    sample_rate_hz: int
    channels: int


@dataclass(frozen=True)
class _Converter:
    """
    Precomputed polyphase ratio for one source format.

    up/down are reduced by gcd so resample_poly filters stay short.
    """
    source: SourceFormat
    up: int
    down: int


class FrameResampler:
    """
    Resample audio blocks to a fixed target rate, mono.

    Use one instance per capture stream. The only state is the converter
    cache; call reset() when the capture device changes.
    """

    def __init__(
        self,
        *,
        target_rate_hz: int = AUDIO_SAMPLE_RATE_HZ,
        use_quality_path: bool = True,
    ) -> None:
        if target_rate_hz <= 0:
            raise ValueError("target_rate_hz must be > 0")

        self._target_rate_hz = target_rate_hz
        self._use_quality_path = use_quality_path
        self._converter: Optional[_Converter] = None
        self.converter_builds: int = 0

    @property
    def target_rate_hz(self) -> int:
        return self._target_rate_hz

    # -------------------------
    # Public API
    # -------------------------

    def resample(
        self,
        block: np.ndarray,
        *,
        source_rate_hz: int,
        channels: int = 1,
    ) -> Optional[NDArray[np.float32]]:
        """
        Convert one audio block to target-rate mono float32.

        Returns:
            Resampled samples, or None for empty input or an output
            length that rounds down to zero.
        """
        if source_rate_hz <= 0 or channels <= 0:
            raise ValueError("source_rate_hz and channels must be > 0")

        mono = _downmix(np.asarray(block, dtype=np.float32), channels)
        if mono.size == 0:
            return None

        target_len = int(mono.shape[0] * self._target_rate_hz / source_rate_hz)
        if target_len <= 0:
            return None

        if source_rate_hz == self._target_rate_hz:
            return mono

        converter = self._converter_for(SourceFormat(source_rate_hz, channels))

        if self._use_quality_path:
            try:
                out = signal.resample_poly(mono, converter.up, converter.down)
                return np.asarray(out, dtype=np.float32)
            except (ValueError, MemoryError) as e:
                log_event({
                    "level": "WARNING",
                    "event_type": "RESAMPLER_QUALITY_PATH_FAILED",
                    "error": repr(e),
                    "source_rate_hz": source_rate_hz,
                })

        return linear_resample(mono, source_rate_hz, self._target_rate_hz)

    def reset(self) -> None:
        """Drop the cached converter; the next block rebuilds it."""
        self._converter = None

    # -------------------------
    # Internal
    # -------------------------

    def _converter_for(self, source: SourceFormat) -> _Converter:
        conv = self._converter
        if conv is not None and conv.source == source:
            return conv

        g = gcd(source.sample_rate_hz, self._target_rate_hz)
        conv = _Converter(
            source=source,
            up=self._target_rate_hz // g,
            down=source.sample_rate_hz // g,
        )
        self._converter = conv
        self.converter_builds += 1

        log_event({
            "level": "DEBUG",
            "event_type": "RESAMPLER_CONVERTER_BUILT",
            "source_rate_hz": source.sample_rate_hz,
            "source_channels": source.channels,
            "target_rate_hz": self._target_rate_hz,
        })
        return conv


# -------------------------
# Helpers
# -------------------------

def _downmix(block: NDArray[np.float32], channels: int) -> NDArray[np.float32]:
    """Average channels into one. 1-D input with channels > 1 is interleaved."""
    if block.ndim == 2:
        if block.shape[1] == 1:
            return block[:, 0]
        return block.mean(axis=1, dtype=np.float32)

    if channels == 1:
        return block

    whole = (block.shape[0] // channels) * channels
    frames = block[:whole].reshape(-1, channels)
    return frames.mean(axis=1, dtype=np.float32)


def linear_resample(
    samples: NDArray[np.float32],
    source_rate_hz: int,
    target_rate_hz: int,
) -> Optional[NDArray[np.float32]]:
    """
    Linear interpolation between the two nearest source samples.

    Output sample i sits at source position i * (source / target).
    Positions past the last pair reuse the last sample.
    """
    n = samples.shape[0]
    target_len = int(n * target_rate_hz / source_rate_hz)
    if n == 0 or target_len <= 0:
        return None

    ratio = source_rate_hz / target_rate_hz
    positions = np.arange(target_len, dtype=np.float64) * ratio
    idx = positions.astype(np.int64)
    frac = (positions - idx).astype(np.float32)

    nxt = np.minimum(idx + 1, n - 1)
    idx = np.minimum(idx, n - 1)

    out = samples[idx] * (1.0 - frac) + samples[nxt] * frac
    return out.astype(np.float32)
