"""
A minimal, energy-based Voice Activity Detection (VAD) module.

Local endpointing hint for transports that do not send speech.started /
speech.stopped. It tracks whether the caller is currently speaking and
reports the transitions, so the controller can drive the same silence
timer logic it uses for server-side hints.
"""
from __future__ import annotations

from enum import Enum
from typing import Optional

import numpy as np

from constants import AUDIO_SAMPLE_RATE_HZ, VAD_ENERGY_THRESHOLD, VAD_SILENCE_DURATION_S


class SpeechTransition(str, Enum):
    STARTED = "started"
    STOPPED = "stopped"


def rms(f32: np.ndarray) -> float:
    if f32.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(np.square(f32, dtype=np.float64))))


class EnergyVAD:
    """
    Simple energy-based Voice Activity Detector (VAD).

    For each observed block, the RMS energy is compared against a fixed
    threshold. Speech starts on the first block at or above threshold and
    stops once `silence_duration_s` worth of consecutive samples fall
    below it. Short dips inside a word therefore do not end speech.
    """

    def __init__(
        self,
        *,
        threshold: float = VAD_ENERGY_THRESHOLD,
        silence_duration_s: float = VAD_SILENCE_DURATION_S,
        sample_rate_hz: int = AUDIO_SAMPLE_RATE_HZ,
    ) -> None:
        self._threshold = threshold
        self._silence_samples_required = int(silence_duration_s * sample_rate_hz)
        self._silent_samples = 0
        self._speaking = False

    @property
    def speaking(self) -> bool:
        return self._speaking

    def observe(self, f32: np.ndarray) -> Optional[SpeechTransition]:
        """
        Observe one block of mono float32 samples.

        Returns:
            SpeechTransition when speaking state changed on this block,
            else None.
        """
        if rms(f32) >= self._threshold:
            self._silent_samples = 0
            if not self._speaking:
                self._speaking = True
                return SpeechTransition.STARTED
            return None

        if not self._speaking:
            return None

        self._silent_samples += int(f32.shape[0])
        if self._silent_samples >= self._silence_samples_required:
            self._speaking = False
            self._silent_samples = 0
            return SpeechTransition.STOPPED
        return None

    def reset(self) -> None:
        """
        Reset the internal VAD state.
        """
        self._silent_samples = 0
        self._speaking = False
