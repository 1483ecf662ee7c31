"""
Side-effect command definitions for the controller.

Rules:
- Commands are declarative requests for side effects.
- Commands are emitted by the reducer and executed by the runtime.
- No behavior, no async, no I/O, no clocks.
- Reducer logic remains pure and deterministic.
Invariant:
    - All concrete Command subclasses MUST be frozen dataclasses.
    - Commands are immutable value objects emitted by the reducer.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from engine.errors import ServiceError
from observability.metrics import DisconnectReason
from orchestrator.events import EventType

# =============================================================================
# Command Type Enumeration
# =============================================================================

class CommandType(str, Enum):
    """
    Canonical command types emitted by the reducer.

    These are stable discriminants used for logging, replay,
    and runtime dispatch.
    """

    # Session lifecycle
    BEGIN_SESSION = "BEGIN_SESSION"
    END_SESSION = "END_SESSION"

    # Engine
    CONNECT_ENGINE = "CONNECT_ENGINE"
    START_RECONNECT = "START_RECONNECT"

    # Audio
    START_AUDIO = "START_AUDIO"
    STOP_AUDIO = "STOP_AUDIO"

    # Transcript
    APPEND_TRANSCRIPT = "APPEND_TRANSCRIPT"
    COMPLETE_SEGMENT = "COMPLETE_SEGMENT"
    START_FINALIZE = "START_FINALIZE"
    FORCE_FINALIZE = "FORCE_FINALIZE"

    # Timers
    START_TIMER = "START_TIMER"
    CANCEL_TIMER = "CANCEL_TIMER"

    # Observability
    LOG_EVENT = "LOG_EVENT"


# =============================================================================
# Base Command
# =============================================================================

class Command:
    """
    Base command type.

    command_type is an explicit discriminant and must never be inferred
    from Python type identity.
    """

    command_type: CommandType


# =============================================================================
# Session Lifecycle
# =============================================================================

@dataclass(frozen=True)
class BeginSession(Command):
    """
    Create the session record and reset shared resources
    (accumulator, send queue, metrics collector).
    """
    session_id: str
    command_type: CommandType = CommandType.BEGIN_SESSION


@dataclass(frozen=True)
class EndSession(Command):
    """
    Tear down the session: cancel its tasks, disconnect the engine
    intentionally, finalize and publish metrics, drop the record.
    """
    session_id: str
    reason: DisconnectReason
    command_type: CommandType = CommandType.END_SESSION


# =============================================================================
# Engine
# =============================================================================

@dataclass(frozen=True)
class ConnectEngine(Command):
    session_id: str
    command_type: CommandType = CommandType.CONNECT_ENGINE


@dataclass(frozen=True)
class StartReconnect(Command):
    session_id: str
    reason: str
    error: Optional[ServiceError] = None
    command_type: CommandType = CommandType.START_RECONNECT


# =============================================================================
# Audio
# =============================================================================

@dataclass(frozen=True)
class StartAudio(Command):
    """Start (or resume) the sender task draining the send queue."""
    session_id: str
    command_type: CommandType = CommandType.START_AUDIO


@dataclass(frozen=True)
class StopAudio(Command):
    """
    Stop the sender.

    drain=True: stop accepting frames, let the sender flush what is queued.
    drain=False: cancel the sender now; queued frames stay for a resume.
    """
    drain: bool
    command_type: CommandType = CommandType.STOP_AUDIO


# =============================================================================
# Transcript
# =============================================================================

@dataclass(frozen=True)
class AppendTranscript(Command):
    text: str
    command_type: CommandType = CommandType.APPEND_TRANSCRIPT


@dataclass(frozen=True)
class CompleteSegment(Command):
    transcript: str
    command_type: CommandType = CommandType.COMPLETE_SEGMENT


@dataclass(frozen=True)
class StartFinalize(Command):
    """Commit, await the final transcript, disconnect, deliver."""
    session_id: str
    command_type: CommandType = CommandType.START_FINALIZE


@dataclass(frozen=True)
class ForceFinalize(Command):
    """Stop waiting for the final transcript; use what is accumulated."""
    command_type: CommandType = CommandType.FORCE_FINALIZE


# =============================================================================
# Timers
# =============================================================================

@dataclass(frozen=True)
class StartTimer(Command):
    """
    Request to start (or restart) a named timer.

    On expiry the runtime emits an event of timeout_event_type for the
    current session.
    """
    timer_id: str
    duration_ms: int
    timeout_event_type: EventType
    command_type: CommandType = CommandType.START_TIMER


@dataclass(frozen=True)
class CancelTimer(Command):
    """Request to cancel a previously scheduled timer."""
    timer_id: str
    command_type: CommandType = CommandType.CANCEL_TIMER


# =============================================================================
# Observability
# =============================================================================

@dataclass(frozen=True)
class LogEvent(Command):
    """Structured log line; runtime adds session context."""
    event: dict[str, Any]
    command_type: CommandType = CommandType.LOG_EVENT
