"""
Runtime execution shell for the dictation controller.

Responsibilities:
- Own controller state
- Call the pure reducer
- Execute commands with side effects (engine, audio, timers, finalize)
- Convert engine callbacks and timer expiry into events
- Deliver state / transcript / metrics values to listeners

Non-responsibilities:
- No orchestration decisions (reducer only)
- No wire protocol knowledge (session engine only)
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import replace
from typing import Any, Awaitable, Callable, Coroutine, Optional

import numpy as np

from audio.frames import AudioFrame
from audio.queues import AudioSendQueue
from audio.resampler import FrameResampler
from audio.vad import EnergyVAD, SpeechTransition
from config import SessionConfig
from constants import FINAL_TRANSCRIPT_TIMEOUT_S, MAX_SESSION_DURATION_S, SENDER_DRAIN_TIMEOUT_S
from engine.errors import (
    ConfigurationError,
    ConnectionTimeout,
    FatalServiceError,
    InjectionError,
    NotConnectedError,
    ServiceError,
    SessionConnectError,
)
from engine.session_engine import ConnectionLost, EngineEvent, SessionEngine
from observability.logger import log_event, now_ms
from observability.metrics import MetricsAggregator
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
    Shutdown,
    SilenceTimeout,
    SpeechStarted,
    SpeechStopped,
    TranscriptDelta,
    Trigger,
)
from orchestrator.reconnect import ReconnectOutcome, ReconnectSupervisor
from orchestrator.reducer import reduce
from orchestrator.retry import BackoffPolicy
from orchestrator.state_dataclass import ControllerState, OrchestratorState
from protocol.messages import InboundKind
from session.collaborators import AudioSource, TextInjector
from session.dictation_session import DictationSession, new_session_id
from transcript.accumulator import TranscriptAccumulator


_AUDIO_STATES = (State.LISTENING, State.RECONNECTING)


class SessionController:
    """
    Runtime execution boundary for dictation sessions.

    Responsibilities:
    - Own the authoritative controller state
    - Act as the universal event sink
      (public API calls, engine events, timers, background tasks)
    - Invoke the pure reducer deterministically
    - Execute emitted commands with side effects

    Guarantees:
    - Reducer is called exactly once per incoming event
    - handle_event is serialized by an asyncio.Lock; no two transitions
      interleave
    - Command execution never awaits network I/O while holding the lock.
      Connect, reconnect, finalize and disconnect run as named background
      tasks that post events back through handle_event
    - Listeners receive values, never exceptions
    """

    def __init__(
        self,
        *,
        engine: SessionEngine,
        injector: TextInjector,
        aggregator: Optional[MetricsAggregator] = None,
        accumulator: Optional[TranscriptAccumulator] = None,
        send_queue: Optional[AudioSendQueue] = None,
        resampler: Optional[FrameResampler] = None,
        audio_source: Optional[AudioSource] = None,
        local_vad: Optional[EnergyVAD] = None,
        backoff: BackoffPolicy = BackoffPolicy(),
        reconnect_sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
        max_duration_s: float = MAX_SESSION_DURATION_S,
        final_transcript_timeout_s: float = FINAL_TRANSCRIPT_TIMEOUT_S,
        session_id_factory: Callable[[], str] = new_session_id,
    ) -> None:
        self._engine = engine
        self._injector = injector
        self.aggregator = aggregator if aggregator is not None else MetricsAggregator()
        self._accumulator = accumulator if accumulator is not None else TranscriptAccumulator()
        self._queue = send_queue if send_queue is not None else AudioSendQueue()
        self._resampler = resampler if resampler is not None else FrameResampler()
        self._audio_source = audio_source
        self._local_vad = local_vad
        self._backoff = backoff
        self._reconnect_sleep = reconnect_sleep
        self._rng = rng
        self._max_duration_ms = int(max_duration_s * 1000)
        self._final_timeout_s = final_transcript_timeout_s
        self._session_id_factory = session_id_factory

        self._state = OrchestratorState()
        self._lock = asyncio.Lock()
        self._timers: dict[str, asyncio.Task[None]] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._posted: set[asyncio.Task[None]] = set()
        self._listeners: list[Any] = []

        self._config: Optional[SessionConfig] = None
        self._session: Optional[DictationSession] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._started = False
        self._finalize_forced = False

        self.last_transcript: str = ""

        self._engine.add_listener(self._on_engine_event)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> ControllerState:
        """
        Current observable state.

        Only mutated internally via the reducer.
        """
        return self._state.status

    @property
    def session_id(self) -> Optional[str]:
        return self._state.session_id

    @property
    def accumulator(self) -> TranscriptAccumulator:
        return self._accumulator

    def add_listener(self, listener: Any) -> None:
        """
        Register an observer.

        The listener may implement any of on_state_change,
        on_partial_transcription, on_final_transcription,
        on_session_metrics (see session.collaborators.ControllerListener).
        """
        self._listeners.append(listener)

    def remove_listener(self, listener: Any) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def start(self, config: SessionConfig) -> None:
        """
        Validate configuration and make the controller ready for triggers.

        Raises:
            ConfigurationError before any session starts.
            RuntimeError if already started.
        """
        if self._started:
            raise RuntimeError("controller already started; call stop() first")

        config.validate()

        self._config = config
        self._loop = asyncio.get_running_loop()
        self._state = replace(
            OrchestratorState(),
            silence_timeout_ms=config.silence_threshold_ms,
            max_duration_ms=self._max_duration_ms,
            max_reconnect_attempts=self._backoff.max_attempts,
        )
        self._started = True

        if self._audio_source is not None:
            self._audio_source.start(self.push_audio_threadsafe)

        log_event({
            "event_type": "CONTROLLER_STARTED",
            "model": config.model,
            "language": config.language,
            "silence_threshold_ms": config.silence_threshold_ms,
            "dialect": self._engine.dialect.value,
        })

    async def stop(self) -> None:
        """
        End any session, cancel every task, disconnect intentionally.

        Idempotent: repeated calls are no-ops.
        """
        if not self._started:
            return
        self._started = False

        if self._audio_source is not None:
            self._audio_source.stop()

        await self.handle_event(Shutdown(event_type=EventType.SHUTDOWN, ts_ms=now_ms()))

        for timer_id in list(self._timers.keys()):
            self._cancel_timer(timer_id)

        tasks = list(self._tasks.values()) + list(self._posted)
        for task in tasks:
            if task.get_name() != "controller:disconnect":
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        await self._engine.disconnect()

        log_event({"event_type": "CONTROLLER_STOPPED"})

    async def trigger(self) -> None:
        """Hotkey / UI trigger. Meaning depends on the current state."""
        if not self._started:
            raise ConfigurationError("start() must be called before trigger()")
        await self.handle_event(Trigger(
            event_type=EventType.TRIGGER,
            ts_ms=now_ms(),
            new_session_id=self._session_id_factory(),
        ))

    async def acknowledge(self) -> None:
        """Leave ERROR for IDLE."""
        await self.handle_event(Acknowledge(event_type=EventType.ACKNOWLEDGE, ts_ms=now_ms()))

    def push_audio(self, block: np.ndarray, source_rate_hz: int, channels: int = 1) -> bool:
        """
        Producer entry point. Never blocks.

        Audio outside LISTENING / RECONNECTING is discarded. A full send
        queue drops the incoming frame (counted in session metrics).

        Returns True if a frame was queued.
        """
        session = self._session
        if session is None or self._state.state not in _AUDIO_STATES:
            return False

        samples = self._resampler.resample(block, source_rate_hz=source_rate_hz, channels=channels)
        if samples is None:
            return False

        if self._local_vad is not None:
            transition = self._local_vad.observe(samples)
            if transition is SpeechTransition.STARTED:
                self._post(SpeechStarted(
                    event_type=EventType.SPEECH_STARTED,
                    ts_ms=now_ms(),
                    session_id=session.session_id,
                ))
            elif transition is SpeechTransition.STOPPED:
                self._post(SpeechStopped(
                    event_type=EventType.SPEECH_STOPPED,
                    ts_ms=now_ms(),
                    session_id=session.session_id,
                ))

        frame = AudioFrame(
            sequence_num=session.next_sequence_num(),
            samples=samples,
            ts_ms=now_ms(),
        )
        if not self._queue.enqueue(frame):
            session.metrics.record_frame_dropped()
            return False
        return True

    def push_audio_threadsafe(self, block: np.ndarray, source_rate_hz: int, channels: int) -> None:
        """AudioSource callback; safe to call from a capture thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self.push_audio, block, source_rate_hz, channels)

    # ------------------------------------------------------------------
    # Event pipeline
    # ------------------------------------------------------------------

    async def handle_event(self, event: Event) -> None:
        """
        Process a single event through the reducer.

        Processing steps:
        1. Pass the current state and event to the pure reducer
        2. Swap in the new state
        3. Notify listeners if the observable state changed
        4. Execute all emitted commands in order
        """
        async with self._lock:
            prev = self._state
            new_state, commands = reduce(prev, event)
            self._state = new_state

            if new_state.status != prev.status:
                self._notify("on_state_change", new_state.status)

            for cmd in commands:
                self._execute_command(cmd)

    def _post(self, event: Event) -> None:
        """Queue an event from a synchronous context (engine callback, producer)."""
        task = asyncio.create_task(self.handle_event(event))
        self._posted.add(task)
        task.add_done_callback(self._posted.discard)

    def _is_current(self, session_id: str) -> bool:
        return self._state.session_id == session_id

    def _on_engine_event(self, event: EngineEvent) -> None:
        sid = self._state.session_id
        if sid is None:
            return
        ts = now_ms()

        mapped: Optional[Event] = None
        if isinstance(event, ConnectionLost):
            mapped = ConnectionLostEvent(
                event_type=EventType.CONNECTION_LOST,
                ts_ms=ts,
                session_id=sid,
                reason=event.reason,
                error=event.error,
            )
        elif event.kind is InboundKind.TRANSCRIPT_DELTA:
            mapped = TranscriptDelta(
                event_type=EventType.TRANSCRIPT_DELTA, ts_ms=ts, session_id=sid,
                text=event.text or "",
            )
        elif event.kind is InboundKind.SEGMENT_COMPLETED:
            mapped = SegmentCompleted(
                event_type=EventType.SEGMENT_COMPLETED, ts_ms=ts, session_id=sid,
                transcript=event.text or "",
            )
        elif event.kind is InboundKind.SPEECH_STARTED:
            mapped = SpeechStarted(
                event_type=EventType.SPEECH_STARTED, ts_ms=ts, session_id=sid,
            )
        elif event.kind is InboundKind.SPEECH_STOPPED:
            mapped = SpeechStopped(
                event_type=EventType.SPEECH_STOPPED, ts_ms=ts, session_id=sid,
            )
        elif event.kind is InboundKind.ERROR and event.error is not None:
            mapped = ServiceErrorReceived(
                event_type=EventType.SERVICE_ERROR, ts_ms=ts, session_id=sid,
                error=event.error,
            )

        if mapped is not None:
            self._post(mapped)

    # ------------------------------------------------------------------
    # Command execution (side effects)
    # ------------------------------------------------------------------

    def _execute_command(self, cmd: Command) -> None:
        """Execute a single command. Never awaits."""

        if isinstance(cmd, LogEvent):
            event = dict(cmd.event)
            if event.get("session_id") is None and self._session is not None:
                event["session_id"] = self._session.session_id
            log_event(event)

        elif isinstance(cmd, BeginSession):
            self._begin_session(cmd.session_id)

        elif isinstance(cmd, ConnectEngine):
            session = self._require_session(cmd.session_id)
            prior = self._tasks.get("disconnect")
            self._spawn("connect", self._run_connect(session, prior))

        elif isinstance(cmd, StartAudio):
            session = self._require_session(cmd.session_id)
            self._queue.reopen()
            self._spawn("sender", self._run_sender(session))

        elif isinstance(cmd, StopAudio):
            if cmd.drain:
                self._queue.close()
            else:
                self._cancel_task("sender")

        elif isinstance(cmd, AppendTranscript):
            if self._accumulator.apply_delta(cmd.text):
                if self._session is not None:
                    self._session.metrics.record_transcription(len(cmd.text))
                self._notify("on_partial_transcription", cmd.text)

        elif isinstance(cmd, CompleteSegment):
            before = len(self._accumulator.current())
            self._accumulator.apply_segment_completed(cmd.transcript)
            seeded = len(self._accumulator.current()) - before
            if seeded > 0 and self._session is not None:
                self._session.metrics.record_transcription(seeded)

        elif isinstance(cmd, StartFinalize):
            session = self._require_session(cmd.session_id)
            self._spawn("finalize", self._run_finalize(session))

        elif isinstance(cmd, ForceFinalize):
            self._finalize_forced = True
            self._cancel_task("sender")
            self._accumulator.force_final()

        elif isinstance(cmd, StartReconnect):
            session = self._require_session(cmd.session_id)
            self._spawn("reconnect", self._run_reconnect(session, cmd.reason, cmd.error))

        elif isinstance(cmd, StartTimer):
            self._start_timer(
                timer_id=cmd.timer_id,
                duration_ms=cmd.duration_ms,
                timeout_event_type=cmd.timeout_event_type,
            )

        elif isinstance(cmd, CancelTimer):
            self._cancel_timer(cmd.timer_id)

        elif isinstance(cmd, EndSession):
            self._end_session(cmd)

        else:
            log_event({
                "level": "ERROR",
                "event_type": "COMMAND_NOT_IMPLEMENTED",
                "command_type": type(cmd).__name__,
            })

    def _require_session(self, session_id: str) -> DictationSession:
        session = self._session
        assert session is not None and session.session_id == session_id, "session mismatch"
        return session

    def _begin_session(self, session_id: str) -> None:
        assert self._config is not None, "start() not called"

        self._session = DictationSession(session_id=session_id, config=self._config)
        self._accumulator.clear()
        self._queue.clear()
        self._queue.reset_counters()
        self._queue.reopen()
        self._resampler.reset()
        if self._local_vad is not None:
            self._local_vad.reset()
        self._finalize_forced = False

        log_event({
            "event_type": "SESSION_STARTED",
            "session_id": session_id,
        })

    def _end_session(self, cmd: EndSession) -> None:
        waits = [
            t for t in (
                self._cancel_task(name)
                for name in ("sender", "connect", "reconnect", "finalize")
            )
            if t is not None
        ]

        prior = self._tasks.pop("disconnect", None)
        if prior is not None:
            waits.append(prior)

        self._queue.close()
        self._queue.clear()

        self._spawn("disconnect", self._run_disconnect(waits))

        session = self._session
        self._session = None
        if session is None or session.session_id != cmd.session_id:
            return

        session.metrics.record_disconnect(cmd.reason)
        metrics = session.metrics.finalize()
        self.aggregator.record(metrics)
        self._notify("on_session_metrics", metrics)

        log_event({
            "event_type": "SESSION_ENDED",
            "session_id": cmd.session_id,
            "reason": cmd.reason.describe(),
            "queue": self._queue.snapshot(),
        })

    # ------------------------------------------------------------------
    # Background work
    # ------------------------------------------------------------------

    async def _run_connect(
        self,
        session: DictationSession,
        prior: Optional[asyncio.Task[None]],
    ) -> None:
        if prior is not None:
            await asyncio.gather(prior, return_exceptions=True)

        sid = session.session_id
        session.metrics.record_connection_start()

        failure: Optional[ConnectFailed] = None
        try:
            await self._engine.connect(session.config, session_id=sid)
        except ConnectionTimeout as e:
            failure = ConnectFailed(
                event_type=EventType.CONNECT_FAILED, ts_ms=now_ms(), session_id=sid,
                message=str(e), timed_out=True,
            )
        except FatalServiceError as e:
            failure = ConnectFailed(
                event_type=EventType.CONNECT_FAILED, ts_ms=now_ms(), session_id=sid,
                message=e.error.user_message, error=e.error,
            )
        except SessionConnectError as e:
            failure = ConnectFailed(
                event_type=EventType.CONNECT_FAILED, ts_ms=now_ms(), session_id=sid,
                message=f"Connection failed: {e}",
            )

        if failure is not None:
            await self.handle_event(failure)
            return

        session.metrics.record_connection_established()
        await self.handle_event(ConnectSucceeded(
            event_type=EventType.CONNECT_SUCCEEDED, ts_ms=now_ms(), session_id=sid,
        ))

    async def _run_sender(self, session: DictationSession) -> None:
        """Drain the send queue one frame at a time, strictly FIFO."""
        while True:
            frame = await self._queue.get()
            if frame is None:
                return
            try:
                sent = await self._engine.send(frame)
            except NotConnectedError:
                sent = False
            if sent:
                session.metrics.record_frame_sent()
            else:
                session.metrics.record_frame_dropped()

    async def _run_finalize(self, session: DictationSession) -> None:
        """
        Commit, wait for the final transcript, disconnect, deliver.

        Delivery (listeners + injector) happens at most once per session.
        """
        sid = session.session_id

        sender = self._tasks.get("sender")
        if sender is not None and not self._finalize_forced:
            await asyncio.wait({sender}, timeout=SENDER_DRAIN_TIMEOUT_S)

        try:
            await self._engine.commit()
        except NotConnectedError as e:
            log_event({
                "level": "WARNING",
                "event_type": "FINALIZE_COMMIT_SKIPPED",
                "session_id": sid,
                "error": str(e),
            })

        if self._finalize_forced:
            text = self._accumulator.current()
        else:
            text = await self._accumulator.await_final(self._final_timeout_s)

        await self._engine.disconnect()

        if not self._is_current(sid):
            log_event({"event_type": "FINALIZE_SUPERSEDED", "session_id": sid})
            return

        text = text.strip()
        self.last_transcript = text

        if text:
            self._notify("on_final_transcription", text)
            try:
                await self._injector.inject(text)
            except InjectionError as e:
                log_event({
                    "level": "ERROR",
                    "event_type": "INJECTION_FAILED",
                    "session_id": sid,
                    "error": str(e),
                    "chars": len(text),
                })
                await self.handle_event(InjectionFailed(
                    event_type=EventType.INJECTION_FAILED, ts_ms=now_ms(), session_id=sid,
                    message=str(e),
                ))
                return

        await self.handle_event(FinalizeCompleted(
            event_type=EventType.FINALIZE_COMPLETED, ts_ms=now_ms(), session_id=sid,
            text=text,
        ))

    async def _run_reconnect(
        self,
        session: DictationSession,
        reason: str,
        error: Optional[ServiceError],
    ) -> None:
        sid = session.session_id

        async def _on_attempt(attempt: int, max_attempts: int) -> None:
            session.metrics.record_reconnect_attempt()
            await self.handle_event(ReconnectAttempt(
                event_type=EventType.RECONNECT_ATTEMPT, ts_ms=now_ms(), session_id=sid,
                attempt=attempt, max_attempts=max_attempts,
            ))

        supervisor = ReconnectSupervisor(
            engine=self._engine,
            is_current=self._is_current,
            policy=self._backoff,
            on_attempt=_on_attempt,
            sleep=self._reconnect_sleep,
            rng=self._rng,
        )
        result = await supervisor.run(
            session_id=sid,
            config=session.config,
            reason=reason,
            error=error,
        )

        if result.outcome is ReconnectOutcome.SUPERSEDED:
            return
        if result.outcome is ReconnectOutcome.RECONNECTED:
            session.metrics.record_reconnect_success()

        await self.handle_event(ReconnectFinished(
            event_type=EventType.RECONNECT_FINISHED, ts_ms=now_ms(), session_id=sid,
            outcome=result.outcome, attempts=result.attempts, message=result.message,
        ))

    async def _run_disconnect(self, waits: list[asyncio.Task[None]]) -> None:
        if waits:
            await asyncio.gather(*waits, return_exceptions=True)
        await self._engine.disconnect()

    # ------------------------------------------------------------------
    # Task management
    # ------------------------------------------------------------------

    def _spawn(self, name: str, coro: Coroutine[Any, Any, None]) -> None:
        """Start a named background task, replacing any previous one."""
        self._cancel_task(name)
        task = asyncio.create_task(coro, name=f"controller:{name}")
        self._tasks[name] = task
        task.add_done_callback(lambda t, n=name: self._on_task_done(n, t))

    def _on_task_done(self, name: str, task: asyncio.Task[None]) -> None:
        if self._tasks.get(name) is task:
            del self._tasks[name]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log_event({
                "level": "ERROR",
                "event_type": "BACKGROUND_TASK_FAILED",
                "task": name,
                "error": repr(exc),
            })

    def _cancel_task(self, name: str) -> Optional[asyncio.Task[None]]:
        """
        Cancel a named task if it exists.

        The calling task is never cancelled (commands may be executed by the
        very task they would cancel).
        """
        task = self._tasks.pop(name, None)
        if task is None:
            return None
        if task is not asyncio.current_task() and not task.done():
            task.cancel()
        return task

    # ------------------------------------------------------------------
    # Timer management
    # ------------------------------------------------------------------

    def _start_timer(
        self,
        *,
        timer_id: str,
        duration_ms: int,
        timeout_event_type: EventType,
    ) -> None:
        """
        Start or replace a timer that emits a timeout event.

        Timer tasks re-enter handle_event() when they expire,
        maintaining the single event entry point invariant.
        """
        self._cancel_timer(timer_id)

        session_id = self._state.session_id
        if session_id is None:
            return

        async def _timer_task() -> None:
            try:
                await asyncio.sleep(duration_ms / 1000.0)
                event = self._construct_timeout_event(
                    timeout_event_type=timeout_event_type,
                    session_id=session_id,
                )
                await self.handle_event(event)
            except asyncio.CancelledError:
                return

        self._timers[timer_id] = asyncio.create_task(_timer_task(), name=f"timer:{timer_id}")

    def _cancel_timer(self, timer_id: str) -> None:
        """
        Cancel an in-flight timer if it exists.

        Idempotent. A timer whose task is delivering its own timeout is
        only forgotten, not cancelled.
        """
        task = self._timers.pop(timer_id, None)
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    def _construct_timeout_event(
        self,
        *,
        timeout_event_type: EventType,
        session_id: str,
    ) -> Event:
        ts = now_ms()

        if timeout_event_type is EventType.SILENCE_TIMEOUT:
            return SilenceTimeout(
                event_type=EventType.SILENCE_TIMEOUT, ts_ms=ts, session_id=session_id,
            )

        if timeout_event_type is EventType.MAX_DURATION_TIMEOUT:
            return MaxDurationTimeout(
                event_type=EventType.MAX_DURATION_TIMEOUT, ts_ms=ts, session_id=session_id,
            )

        raise ValueError(f"Unknown timeout event type: {timeout_event_type}")

    # ------------------------------------------------------------------
    # Listener delivery
    # ------------------------------------------------------------------

    def _notify(self, method: str, value: Any) -> None:
        for listener in list(self._listeners):
            fn = getattr(listener, method, None)
            if fn is None:
                continue
            try:
                fn(value)
            except Exception as e:  # pylint: disable=broad-exception-caught
                log_event({
                    "level": "ERROR",
                    "event_type": "LISTENER_FAILED",
                    "callback": method,
                    "error": repr(e),
                })
