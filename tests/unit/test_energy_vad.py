# pylint: disable=missing-module-docstring,missing-function-docstring

import numpy as np

from audio.vad import EnergyVAD, SpeechTransition, rms


def loud(n: int = 480) -> np.ndarray:
    return np.full(n, 0.2, dtype=np.float32)


def quiet(n: int = 480) -> np.ndarray:
    return np.zeros(n, dtype=np.float32)


def test_rms_of_constant_signal() -> None:
    assert abs(rms(np.full(100, 0.5, dtype=np.float32)) - 0.5) < 1e-6
    assert rms(np.zeros(0, dtype=np.float32)) == 0.0


def test_speech_start_reported_once() -> None:
    vad = EnergyVAD(threshold=0.05, silence_duration_s=0.1, sample_rate_hz=24_000)

    assert vad.observe(loud()) is SpeechTransition.STARTED
    assert vad.observe(loud()) is None
    assert vad.speaking


def test_speech_stops_after_enough_silence() -> None:
    # 0.1s @ 24kHz = 2400 samples = 5 quiet blocks of 480
    vad = EnergyVAD(threshold=0.05, silence_duration_s=0.1, sample_rate_hz=24_000)
    vad.observe(loud())

    results = [vad.observe(quiet()) for _ in range(5)]

    assert results[:4] == [None, None, None, None]
    assert results[4] is SpeechTransition.STOPPED
    assert not vad.speaking


def test_short_dip_does_not_end_speech() -> None:
    vad = EnergyVAD(threshold=0.05, silence_duration_s=0.1, sample_rate_hz=24_000)
    vad.observe(loud())
    vad.observe(quiet())
    vad.observe(quiet())
    vad.observe(loud())

    results = [vad.observe(quiet()) for _ in range(4)]
    assert SpeechTransition.STOPPED not in results
    assert vad.speaking


def test_silence_before_speech_reports_nothing() -> None:
    vad = EnergyVAD(threshold=0.05)
    assert vad.observe(quiet()) is None
    assert not vad.speaking


def test_reset_clears_speaking() -> None:
    vad = EnergyVAD(threshold=0.05)
    vad.observe(loud())
    vad.reset()

    assert not vad.speaking
    assert vad.observe(loud()) is SpeechTransition.STARTED
