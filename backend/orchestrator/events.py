"""
Unified event definitions for the controller reducer.

Rules:
- Events describe facts that have occurred.
- Events carry data only (no behavior).
- All reducer decisions are based on these events.
- No clocks, no timers, no async, no side effects.

Session-scoped events carry session_id. The reducer ignores any whose
session_id does not match the current session (stale gating).
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from engine.errors import ServiceError
from orchestrator.reconnect import ReconnectOutcome


# =============================================================================
# Event Type Enumeration
# =============================================================================

class EventType(str, Enum):
    """
    Canonical event types understood by the reducer.

    Every (state, event_type) pair must be explicitly handled
    or explicitly ignored by the reducer.
    """

    # ------------------------------------------------------------------
    # External control
    # ------------------------------------------------------------------
    TRIGGER = "TRIGGER"
    ACKNOWLEDGE = "ACKNOWLEDGE"
    SHUTDOWN = "SHUTDOWN"

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------
    CONNECT_SUCCEEDED = "CONNECT_SUCCEEDED"
    CONNECT_FAILED = "CONNECT_FAILED"
    CONNECTION_LOST = "CONNECTION_LOST"

    # ------------------------------------------------------------------
    # Reconnection
    # ------------------------------------------------------------------
    RECONNECT_ATTEMPT = "RECONNECT_ATTEMPT"
    RECONNECT_FINISHED = "RECONNECT_FINISHED"

    # ------------------------------------------------------------------
    # Transcription service
    # ------------------------------------------------------------------
    TRANSCRIPT_DELTA = "TRANSCRIPT_DELTA"
    SEGMENT_COMPLETED = "SEGMENT_COMPLETED"
    SPEECH_STARTED = "SPEECH_STARTED"
    SPEECH_STOPPED = "SPEECH_STOPPED"
    SERVICE_ERROR = "SERVICE_ERROR"

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------
    SILENCE_TIMEOUT = "SILENCE_TIMEOUT"
    MAX_DURATION_TIMEOUT = "MAX_DURATION_TIMEOUT"

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------
    FINALIZE_COMPLETED = "FINALIZE_COMPLETED"
    INJECTION_FAILED = "INJECTION_FAILED"


# =============================================================================
# Base Event
# =============================================================================

@dataclass(frozen=True)
class Event:
    """
    Base event type.

    All events must specify:
    - event_type: discriminant
    - ts_ms: timestamp provided by the source (or fake in tests)
    """

    event_type: EventType
    ts_ms: int


@dataclass(frozen=True)
class SessionEvent(Event):
    """
    Base class for events scoped to one dictation session.

    The reducer MUST ignore events whose session_id does not match the
    current session.
    """

    session_id: str


# =============================================================================
# External Control Events
# =============================================================================

@dataclass(frozen=True)
class Trigger(Event):
    """
    Hotkey / UI trigger.

    new_session_id is minted by the runtime and only used when the
    trigger starts a new session from IDLE.
    """
    new_session_id: str


@dataclass(frozen=True)
class Acknowledge(Event):
    """User acknowledged an error."""


@dataclass(frozen=True)
class Shutdown(Event):
    """Controller is stopping; end everything."""


# =============================================================================
# Connection Events
# =============================================================================

@dataclass(frozen=True)
class ConnectSucceeded(SessionEvent):
    """Initial connect() reached READY."""


@dataclass(frozen=True)
class ConnectFailed(SessionEvent):
    """
    Initial connect() failed.

    timed_out distinguishes ConnectionTimeout from other failures.
    error is set when the service rejected the session.
    """
    message: str
    timed_out: bool = False
    error: Optional[ServiceError] = None


@dataclass(frozen=True)
class ConnectionLostEvent(SessionEvent):
    """Engine reported an unintentional disconnect."""
    reason: str
    error: Optional[ServiceError] = None


@dataclass(frozen=True)
class ReconnectAttempt(SessionEvent):
    attempt: int
    max_attempts: int


@dataclass(frozen=True)
class ReconnectFinished(SessionEvent):
    outcome: ReconnectOutcome
    attempts: int
    message: Optional[str] = None


# =============================================================================
# Transcription Events
# =============================================================================

@dataclass(frozen=True)
class TranscriptDelta(SessionEvent):
    text: str


@dataclass(frozen=True)
class SegmentCompleted(SessionEvent):
    transcript: str


@dataclass(frozen=True)
class SpeechStarted(SessionEvent):
    """Endpointing hint: speech began (server or local VAD)."""


@dataclass(frozen=True)
class SpeechStopped(SessionEvent):
    """Endpointing hint: speech ended."""


@dataclass(frozen=True)
class ServiceErrorReceived(SessionEvent):
    error: ServiceError


# =============================================================================
# Timer Events
# =============================================================================

@dataclass(frozen=True)
class SilenceTimeout(SessionEvent):
    pass


@dataclass(frozen=True)
class MaxDurationTimeout(SessionEvent):
    pass


# =============================================================================
# Finalization Events
# =============================================================================

@dataclass(frozen=True)
class FinalizeCompleted(SessionEvent):
    """
    Finalization finished.

    text is the delivered transcript ("" when nothing was said).
    """
    text: str


@dataclass(frozen=True)
class InjectionFailed(SessionEvent):
    message: str
