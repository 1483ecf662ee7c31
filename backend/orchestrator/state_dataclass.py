"""
Authoritative controller state containers.

Rules:
- These dataclasses are pure data models.
- OrchestratorState contains ALL state the reducer may ever need.
- ControllerState is the observable value handed to listeners.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from constants import (
    DEFAULT_SILENCE_THRESHOLD_MS,
    MAX_SESSION_DURATION_S,
    RECONNECT_MAX_ATTEMPTS,
)
from observability.metrics import DisconnectReason, USER_INITIATED
from orchestrator.enums.state import State


# =============================================================================
# Observable state
# =============================================================================

@dataclass(frozen=True)
class ControllerState:
    """
    Tagged controller state.

    attempt/max_attempts are meaningful only for RECONNECTING,
    message only for ERROR. Equality compares all fields, so
    reconnecting(1, 3) != reconnecting(2, 3).
    """
    state: State
    attempt: int = 0
    max_attempts: int = 0
    message: Optional[str] = None

    @staticmethod
    def idle() -> ControllerState:
        return ControllerState(State.IDLE)

    @staticmethod
    def connecting() -> ControllerState:
        return ControllerState(State.CONNECTING)

    @staticmethod
    def listening() -> ControllerState:
        return ControllerState(State.LISTENING)

    @staticmethod
    def reconnecting(attempt: int, max_attempts: int) -> ControllerState:
        return ControllerState(State.RECONNECTING, attempt=attempt, max_attempts=max_attempts)

    @staticmethod
    def finalizing() -> ControllerState:
        return ControllerState(State.FINALIZING)

    @staticmethod
    def error(message: str) -> ControllerState:
        return ControllerState(State.ERROR, message=message)

    def describe(self) -> str:
        if self.state is State.RECONNECTING:
            return f"reconnecting ({self.attempt}/{self.max_attempts})"
        if self.state is State.ERROR:
            return f"error: {self.message}"
        return self.state.value


# =============================================================================
# Reducer state
# =============================================================================

@dataclass(frozen=True)
class OrchestratorState:
    """Immutable snapshot of all controller-owned state."""

    status: ControllerState = ControllerState(State.IDLE)

    # Current session; None outside a session (IDLE, ERROR).
    session_id: Optional[str] = None

    # speech.started seen without a matching speech.stopped
    speech_active: bool = False

    # Max-duration timer fired while RECONNECTING; finalize on resume.
    max_duration_elapsed: bool = False

    # Why the current session is ending (set on entering FINALIZING).
    end_reason: DisconnectReason = USER_INITIATED

    last_error: Optional[str] = None

    # Session-start configuration snapshot used by timer commands.
    silence_timeout_ms: int = DEFAULT_SILENCE_THRESHOLD_MS
    max_duration_ms: int = int(MAX_SESSION_DURATION_S * 1000)
    max_reconnect_attempts: int = RECONNECT_MAX_ATTEMPTS

    @property
    def state(self) -> State:
        return self.status.state
