"""
Authoritative controller state enumeration.

Rules:
- This enum defines ONLY the control-plane states.
- No behavior, no helper methods, no side effects.
- Transitions are defined exclusively in the reducer.
"""

from __future__ import annotations

from enum import Enum


class State(str, Enum):
    """
    High-level deterministic control states for the dictation controller.

    These states represent orchestration intent, NOT engine connection
    status. Payloads (reconnect progress, error message) live on
    ControllerState.
    """

    IDLE = "idle"
    CONNECTING = "connecting"
    LISTENING = "listening"
    RECONNECTING = "reconnecting"
    FINALIZING = "finalizing"
    ERROR = "error"
