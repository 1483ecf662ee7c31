"""
External collaborator boundaries.

The dictation core talks to the outside world only through these narrow
Protocols (capabilities, not implementations):

- TextInjector:          places the final transcript (cursor, clipboard, stdout)
- AudioSource:           microphone capture feeding SessionController.push_audio
- TranscriptionBackend:  swappable on-device inference; not implemented here
- ControllerListener:    observer for state, transcript and metrics values

This module contains:
- Narrow Protocols
- StdoutInjector, the injector used by the CLI
- Zero orchestration logic
"""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING, Callable, Optional, Protocol, TextIO, runtime_checkable

import numpy as np

from engine.errors import InjectionError

if TYPE_CHECKING:
    from observability.metrics import SessionMetrics
    from orchestrator.state_dataclass import ControllerState


# ---------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------

@runtime_checkable
class TextInjector(Protocol):
    async def inject(self, text: str) -> None:
        """
        Place text at the user's cursor (or equivalent).

        Raises InjectionError on failure.
        """


class StdoutInjector:
    """Writes each transcript as one line to a text stream."""

    def __init__(self, stream: Optional[TextIO] = None) -> None:
        self._stream = stream if stream is not None else sys.stdout
        self.injected: list[str] = []

    async def inject(self, text: str) -> None:
        try:
            self._stream.write(text + "\n")
            self._stream.flush()
        except (OSError, ValueError) as e:
            raise InjectionError(f"stdout write failed: {e}") from e
        self.injected.append(text)


# ---------------------------------------------------------------------
# Input
# ---------------------------------------------------------------------

AudioCallback = Callable[[np.ndarray, int, int], None]
"""(block, sample_rate_hz, channels) -> None; must not block."""


@runtime_checkable
class AudioSource(Protocol):
    def start(self, callback: AudioCallback) -> None: ...
    def stop(self) -> None: ...


@runtime_checkable
class TranscriptionBackend(Protocol):
    """
    Local inference backend, swappable with the remote session.

    Only the interface lives in this package.
    """

    async def load(self) -> None: ...
    async def transcribe(self, samples: np.ndarray, sample_rate_hz: int) -> str: ...
    async def unload(self) -> None: ...


# ---------------------------------------------------------------------
# Observer
# ---------------------------------------------------------------------

class ControllerListener:
    """
    Observer interface for SessionController.

    Override any subset. Values are delivered on the event loop thread;
    exceptions raised here are logged by the controller, never propagated.
    """

    def on_state_change(self, state: ControllerState) -> None:
        pass

    def on_partial_transcription(self, delta: str) -> None:
        pass

    def on_final_transcription(self, text: str) -> None:
        pass

    def on_session_metrics(self, metrics: SessionMetrics) -> None:
        pass
