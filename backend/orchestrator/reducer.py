"""
Pure controller reducer.

(state, event) -> (new_state, commands)

Rules:
- Pure: no side effects, no IO, no clocks.
- Deterministic: output depends only on inputs.
- Total: every (state, event) pair is handled or explicitly ignored (logged).

Transition table:

    IDLE         --trigger-->            CONNECTING
    CONNECTING   --connect ok-->         LISTENING
    CONNECTING   --connect failed-->     ERROR
    CONNECTING   --trigger-->            IDLE        (cancel in flight)
    LISTENING    --trigger|silence|max-> FINALIZING
    LISTENING    --connection lost-->    RECONNECTING(1, max) | ERROR (fatal)
    LISTENING    --fatal service error-> ERROR
    RECONNECTING --attempt n-->          RECONNECTING(n, max)
    RECONNECTING --reconnected-->        LISTENING | FINALIZING (max elapsed)
    RECONNECTING --failed|fatal-->       ERROR
    RECONNECTING --trigger-->            IDLE
    FINALIZING   --trigger-->            FINALIZING  (force with current text)
    FINALIZING   --completed-->          IDLE
    FINALIZING   --injection failed-->   ERROR
    ERROR        --ack|trigger-->        IDLE
    any          --shutdown-->           IDLE
"""

from __future__ import annotations

from dataclasses import replace
from typing import Any

from observability.metrics import (
    CANCELLED,
    CONNECTION_LOST,
    CONNECTION_TIMEOUT,
    MAX_DURATION,
    RECONNECT_FAILED,
    SILENCE_TIMEOUT,
    USER_INITIATED,
    DisconnectReason,
)
from orchestrator.commands import (
    AppendTranscript,
    BeginSession,
    CancelTimer,
    Command,
    CompleteSegment,
    ConnectEngine,
    EndSession,
    ForceFinalize,
    LogEvent,
    StartAudio,
    StartFinalize,
    StartReconnect,
    StartTimer,
    StopAudio,
)
from orchestrator.enums.state import State
from orchestrator.events import (
    Acknowledge,
    ConnectFailed,
    ConnectionLostEvent,
    ConnectSucceeded,
    Event,
    EventType,
    FinalizeCompleted,
    InjectionFailed,
    MaxDurationTimeout,
    ReconnectAttempt,
    ReconnectFinished,
    SegmentCompleted,
    ServiceErrorReceived,
    SessionEvent,
    Shutdown,
    SilenceTimeout,
    SpeechStarted,
    SpeechStopped,
    TranscriptDelta,
    Trigger,
)
from orchestrator.reconnect import ReconnectOutcome
from orchestrator.retry import classify_failure
from orchestrator.state_dataclass import ControllerState, OrchestratorState


# =============================================================================
# Timer IDs
# =============================================================================

TIMER_SILENCE = "silence_timeout"
TIMER_MAX_DURATION = "max_duration"

INJECTION_FAILED_MESSAGE = "Failed to inject text"
RECONNECT_FAILED_MESSAGE = "Reconnect failed"


# =============================================================================
# Small helpers
# =============================================================================

def _log(
    state: OrchestratorState,
    event: Event,
    decision: str,
    details: dict[str, Any] | None = None,
) -> LogEvent:
    return LogEvent(
        event={
            "ts_ms": event.ts_ms,
            "state": state.status.describe(),
            "event_type": event.event_type.value,
            "decision": decision,
            "session_id": state.session_id,
            "details": details or {},
        }
    )


def _logs_last(commands: tuple[Command, ...]) -> tuple[Command, ...]:
    non_logs: list[Command] = []
    logs: list[Command] = []
    state_change_logs: list[Command] = []

    for command in commands:
        if isinstance(command, LogEvent):
            if command.event.get("decision") == "state_changed":
                state_change_logs.append(command)
            else:
                logs.append(command)
        else:
            non_logs.append(command)

    return tuple(non_logs + logs + state_change_logs)


def _ignore(
    state: OrchestratorState, event: Event, reason: str
) -> tuple[OrchestratorState, tuple[Command, ...]]:
    return state, (_log(state, event, "ignore", {"reason": reason}),)


def _transition(
    state: OrchestratorState,
    new_state: OrchestratorState,
    event: Event,
    source: str,
    commands: tuple[Command, ...] = (),
) -> tuple[OrchestratorState, tuple[Command, ...]]:
    """Swap state, emit commands, and log the change (last)."""
    log_state = new_state if new_state.session_id is not None else state
    return new_state, _logs_last(commands + (
        _log(
            log_state,
            event,
            "state_changed",
            {
                "from_state": state.status.describe(),
                "to_state": new_state.status.describe(),
                "source": source,
            },
        ),
    ))


def _silence_timer(state: OrchestratorState) -> StartTimer:
    return StartTimer(
        timer_id=TIMER_SILENCE,
        duration_ms=state.silence_timeout_ms,
        timeout_event_type=EventType.SILENCE_TIMEOUT,
    )


def _stop_timers() -> tuple[Command, ...]:
    return (CancelTimer(TIMER_SILENCE), CancelTimer(TIMER_MAX_DURATION))


def _end_session(
    state: OrchestratorState,
    event: Event,
    status: ControllerState,
    reason: DisconnectReason,
    source: str,
) -> tuple[OrchestratorState, tuple[Command, ...]]:
    """Leave the current session for IDLE or ERROR."""
    assert state.session_id is not None
    new_state = replace(
        state,
        status=status,
        session_id=None,
        speech_active=False,
        last_error=status.message if status.state is State.ERROR else state.last_error,
    )
    return _transition(
        state,
        new_state,
        event,
        source,
        _stop_timers() + (EndSession(session_id=state.session_id, reason=reason),),
    )


def _enter_error(
    state: OrchestratorState,
    event: Event,
    message: str,
    reason: DisconnectReason,
) -> tuple[OrchestratorState, tuple[Command, ...]]:
    return _end_session(state, event, ControllerState.error(message), reason, "enter_error")


def _enter_finalizing(
    state: OrchestratorState,
    event: Event,
    reason: DisconnectReason,
) -> tuple[OrchestratorState, tuple[Command, ...]]:
    assert state.session_id is not None
    new_state = replace(
        state,
        status=ControllerState.finalizing(),
        end_reason=reason,
        speech_active=False,
    )
    return _transition(
        state,
        new_state,
        event,
        reason.kind.value,
        _stop_timers() + (
            StopAudio(drain=True),
            StartFinalize(session_id=state.session_id),
        ),
    )


def _fatal_reason(message: str) -> DisconnectReason:
    return DisconnectReason.fatal_error(message)


# =============================================================================
# Reducer
# =============================================================================

def reduce(
    state: OrchestratorState, event: Event
) -> tuple[OrchestratorState, tuple[Command, ...]]:
    """
    Pure reducer for the dictation controller state machine.

    Given the current state and a single event, returns:
    - the next state
    - a tuple of commands describing required side effects

    Properties:
    - Deterministic: no IO, clocks, or randomness
    - Total: every (state, event) pair is handled or explicitly ignored
    - Session-safe: ignores events for a session that is no longer current
    """
    if isinstance(event, Shutdown):
        if state.session_id is None:
            if state.state is State.IDLE:
                return _ignore(state, event, "already_idle")
            return _transition(
                state, replace(state, status=ControllerState.idle()), event, "shutdown"
            )
        return _end_session(state, event, ControllerState.idle(), CANCELLED, "shutdown")

    if isinstance(event, SessionEvent) and event.session_id != state.session_id:
        return _ignore(state, event, "stale_session")

    if state.state is State.IDLE:
        return _reduce_idle(state, event)
    if state.state is State.CONNECTING:
        return _reduce_connecting(state, event)
    if state.state is State.LISTENING:
        return _reduce_listening(state, event)
    if state.state is State.RECONNECTING:
        return _reduce_reconnecting(state, event)
    if state.state is State.FINALIZING:
        return _reduce_finalizing(state, event)
    if state.state is State.ERROR:
        return _reduce_error(state, event)

    return _ignore(state, event, "unknown_state")


# -----------------------------------------------------------------------------
# IDLE
# -----------------------------------------------------------------------------

def _reduce_idle(
    state: OrchestratorState, event: Event
) -> tuple[OrchestratorState, tuple[Command, ...]]:
    if isinstance(event, Trigger):
        sid = event.new_session_id
        new_state = replace(
            state,
            status=ControllerState.connecting(),
            session_id=sid,
            speech_active=False,
            max_duration_elapsed=False,
            end_reason=USER_INITIATED,
            last_error=None,
        )
        return _transition(
            state,
            new_state,
            event,
            "trigger",
            (BeginSession(session_id=sid), ConnectEngine(session_id=sid)),
        )

    return _ignore(state, event, "idle")


# -----------------------------------------------------------------------------
# CONNECTING
# -----------------------------------------------------------------------------

def _reduce_connecting(
    state: OrchestratorState, event: Event
) -> tuple[OrchestratorState, tuple[Command, ...]]:
    assert state.session_id is not None
    sid = state.session_id

    if isinstance(event, ConnectSucceeded):
        new_state = replace(state, status=ControllerState.listening())
        cmds: tuple[Command, ...] = (
            StartAudio(session_id=sid),
            StartTimer(
                timer_id=TIMER_MAX_DURATION,
                duration_ms=state.max_duration_ms,
                timeout_event_type=EventType.MAX_DURATION_TIMEOUT,
            ),
        )
        if not state.speech_active:
            cmds += (_silence_timer(state),)
        return _transition(state, new_state, event, "connect_succeeded", cmds)

    if isinstance(event, ConnectFailed):
        if event.timed_out:
            reason = CONNECTION_TIMEOUT
        elif event.error is not None and event.error.is_fatal:
            reason = _fatal_reason(event.message)
        else:
            reason = CONNECTION_LOST
        return _enter_error(state, event, event.message, reason)

    if isinstance(event, Trigger):
        return _end_session(state, event, ControllerState.idle(), CANCELLED, "cancel_connect")

    if isinstance(event, ServiceErrorReceived):
        # connect() fails on its own if the error is fatal
        return _ignore(state, event, "connect_in_progress")

    # The receive loop can deliver these before ConnectSucceeded is processed.
    if isinstance(event, TranscriptDelta):
        return state, (AppendTranscript(text=event.text),)

    if isinstance(event, SegmentCompleted):
        return state, (CompleteSegment(transcript=event.transcript),)

    if isinstance(event, SpeechStarted):
        return replace(state, speech_active=True), ()

    if isinstance(event, SpeechStopped):
        return replace(state, speech_active=False), ()

    return _ignore(state, event, "connecting")


# -----------------------------------------------------------------------------
# LISTENING
# -----------------------------------------------------------------------------

def _reduce_listening(
    state: OrchestratorState, event: Event
) -> tuple[OrchestratorState, tuple[Command, ...]]:
    assert state.session_id is not None
    sid = state.session_id

    if isinstance(event, Trigger):
        return _enter_finalizing(state, event, USER_INITIATED)

    if isinstance(event, SilenceTimeout):
        return _enter_finalizing(state, event, SILENCE_TIMEOUT)

    if isinstance(event, MaxDurationTimeout):
        return _enter_finalizing(state, event, MAX_DURATION)

    if isinstance(event, TranscriptDelta):
        cmds: tuple[Command, ...] = (AppendTranscript(text=event.text),)
        if not state.speech_active:
            cmds += (_silence_timer(state),)
        return state, cmds

    if isinstance(event, SegmentCompleted):
        cmds = (CompleteSegment(transcript=event.transcript),)
        if not state.speech_active:
            cmds += (_silence_timer(state),)
        return state, cmds

    if isinstance(event, SpeechStarted):
        return replace(state, speech_active=True), (
            CancelTimer(TIMER_SILENCE),
            _log(state, event, "silence_timer_suspended"),
        )

    if isinstance(event, SpeechStopped):
        return replace(state, speech_active=False), (
            _silence_timer(state),
            _log(state, event, "silence_timer_armed"),
        )

    if isinstance(event, ServiceErrorReceived):
        if event.error.is_fatal:
            message = event.error.user_message
            return _enter_error(state, event, message, _fatal_reason(message))
        return state, (
            _log(state, event, "service_error_transient", {
                "code": event.error.code,
                "message": event.error.message,
            }),
        )

    if isinstance(event, ConnectionLostEvent):
        classification = classify_failure(event.error)
        if classification.is_fatal:
            message = classification.user_message or event.reason
            return _enter_error(state, event, message, _fatal_reason(message))

        new_state = replace(
            state,
            status=ControllerState.reconnecting(1, state.max_reconnect_attempts),
            speech_active=False,
        )
        return _transition(
            state,
            new_state,
            event,
            "connection_lost",
            (
                CancelTimer(TIMER_SILENCE),
                StopAudio(drain=False),
                StartReconnect(session_id=sid, reason=event.reason, error=event.error),
            ),
        )

    return _ignore(state, event, "listening")


# -----------------------------------------------------------------------------
# RECONNECTING
# -----------------------------------------------------------------------------

def _reduce_reconnecting(
    state: OrchestratorState, event: Event
) -> tuple[OrchestratorState, tuple[Command, ...]]:
    assert state.session_id is not None
    sid = state.session_id

    if isinstance(event, ReconnectAttempt):
        status = ControllerState.reconnecting(event.attempt, event.max_attempts)
        if status == state.status:
            return state, ()
        return _transition(state, replace(state, status=status), event, "reconnect_attempt")

    if isinstance(event, ReconnectFinished):
        if event.outcome is ReconnectOutcome.RECONNECTED:
            if state.max_duration_elapsed:
                return _enter_finalizing(state, event, MAX_DURATION)
            new_state = replace(state, status=ControllerState.listening())
            return _transition(
                state,
                new_state,
                event,
                "reconnected",
                (StartAudio(session_id=sid), _silence_timer(state)),
            )

        if event.outcome is ReconnectOutcome.FATAL:
            message = event.message or "Fatal error"
            return _enter_error(state, event, message, _fatal_reason(message))

        if event.outcome is ReconnectOutcome.FAILED:
            return _enter_error(
                state, event, event.message or RECONNECT_FAILED_MESSAGE, RECONNECT_FAILED
            )

        return _ignore(state, event, "reconnect_superseded")

    if isinstance(event, Trigger):
        return _end_session(state, event, ControllerState.idle(), CANCELLED, "cancel_reconnect")

    if isinstance(event, MaxDurationTimeout):
        return replace(state, max_duration_elapsed=True), (
            _log(state, event, "max_duration_deferred"),
        )

    if isinstance(event, TranscriptDelta):
        # Late delta from the lost connection; keep it.
        return state, (AppendTranscript(text=event.text),)

    if isinstance(event, SegmentCompleted):
        return state, (CompleteSegment(transcript=event.transcript),)

    return _ignore(state, event, "reconnecting")


# -----------------------------------------------------------------------------
# FINALIZING
# -----------------------------------------------------------------------------

def _reduce_finalizing(
    state: OrchestratorState, event: Event
) -> tuple[OrchestratorState, tuple[Command, ...]]:
    if isinstance(event, Trigger):
        return state, (
            ForceFinalize(),
            _log(state, event, "force_finalize"),
        )

    if isinstance(event, TranscriptDelta):
        return state, (AppendTranscript(text=event.text),)

    if isinstance(event, SegmentCompleted):
        return state, (CompleteSegment(transcript=event.transcript),)

    if isinstance(event, FinalizeCompleted):
        return _end_session(
            state, event, ControllerState.idle(), state.end_reason, "finalize_completed"
        )

    if isinstance(event, InjectionFailed):
        return _enter_error(
            state, event, INJECTION_FAILED_MESSAGE, _fatal_reason(event.message)
        )

    return _ignore(state, event, "finalizing")


# -----------------------------------------------------------------------------
# ERROR
# -----------------------------------------------------------------------------

def _reduce_error(
    state: OrchestratorState, event: Event
) -> tuple[OrchestratorState, tuple[Command, ...]]:
    if isinstance(event, (Acknowledge, Trigger)):
        return _transition(
            state, replace(state, status=ControllerState.idle()), event, "error_acknowledged"
        )

    return _ignore(state, event, "error")
