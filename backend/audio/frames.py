"""
Audio frame primitives.

Pure data containers only.
No behavior, no queues, no timing logic.
"""

from __future__ import annotations
from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray


@dataclass(frozen=True)
class AudioFrame:
    """
    Canonical audio frame on the way from the resampler to the sender.

    sequence_num:
        Monotonic per-session index assigned by the producer.
        Queue order is authoritative; this is for debugging only.

    samples:
        Mono float32 samples at constants.AUDIO_SAMPLE_RATE_HZ.

    ts_ms:
        Wall-clock timestamp (milliseconds) when the frame was produced.
        Used for observability only (not control logic).
    """
    sequence_num: int
    samples: NDArray[np.float32]
    ts_ms: int

    def __len__(self) -> int:
        return int(self.samples.shape[0])
