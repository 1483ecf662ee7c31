"""
Session engine: one persistent connection to the transcription service.

Connection state per attempt:

    DISCONNECTED -> CONNECTING -> AWAITING_READY -> READY -> CLOSING -> DISCONNECTED

Core model (IMPORTANT):
- connect() opens a fresh transport, sends the session configuration and
  waits for session.created before any audio is accepted.
- Both the overall connect deadline and the ready-wait sub-deadline are
  asyncio.wait_for races. The ready wait is a future resolved exactly once
  by the receive loop. No polling.
- Audio sent before READY is dropped and counted. Nothing is buffered
  waiting for readiness.
- disconnect() marks the close as intentional, so the receive loop ending
  is never reported as a lost connection.
- An unintentional end of the receive loop is reported to listeners as
  ConnectionLost. The engine never reconnects on its own.

Design constraints:
- Engine does not own session identity; it only tags logs with the id it
  was given.
- Engine does not know about the controller state machine.
- Listeners are plain callables, invoked synchronously from the receive
  loop. A listener that raises is logged and skipped.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Union

from audio.frames import AudioFrame
from config import SessionConfig
from constants import CONNECT_TIMEOUT_S, KEEPALIVE_INTERVAL_S, SESSION_READY_TIMEOUT_S
from engine.errors import (
    ConnectionTimeout,
    FatalServiceError,
    NotConnectedError,
    ProtocolError,
    ServiceError,
    SessionConnectError,
)
from engine.transport import TransportClosed, TransportFactory, TransportProtocol
from observability.logger import log_event
from protocol.messages import (
    InboundKind,
    InboundMessage,
    WireDialect,
    decode_message,
    encode_audio_append,
    encode_audio_commit,
    encode_session_configure,
)


class EngineState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AWAITING_READY = "awaiting_ready"
    READY = "ready"
    CLOSING = "closing"


@dataclass(frozen=True)
class ConnectionLost:
    """
    The connection ended without disconnect() being called.

    error:
        Last service error seen on this connection, if any. The
        reconnection supervisor classifies it.
    """
    reason: str
    error: Optional[ServiceError] = None


EngineEvent = Union[InboundMessage, ConnectionLost]
EngineListener = Callable[[EngineEvent], None]


class SessionEngine:
    """
    Owns the transport for one dictation session at a time.

    Public interface:
    - connect(config, session_id): open + configure + await ready
    - send(frame): transmit one audio frame (READY only)
    - commit(): flush server-side audio buffer
    - disconnect(): intentional, idempotent teardown
    - add_listener(fn): receive decoded events and ConnectionLost
    """

    def __init__(
        self,
        *,
        transport_factory: TransportFactory,
        dialect: WireDialect = WireDialect.OPENAI_REALTIME,
        connect_timeout_s: float = CONNECT_TIMEOUT_S,
        ready_timeout_s: float = SESSION_READY_TIMEOUT_S,
        keepalive_interval_s: float = KEEPALIVE_INTERVAL_S,
    ) -> None:
        self._transport_factory = transport_factory
        self._dialect = dialect
        self._connect_timeout_s = connect_timeout_s
        self._ready_timeout_s = ready_timeout_s
        self._keepalive_interval_s = keepalive_interval_s

        self._state: EngineState = EngineState.DISCONNECTED
        self._transport: Optional[TransportProtocol] = None
        self._recv_task: Optional[asyncio.Task[None]] = None
        self._keepalive_task: Optional[asyncio.Task[None]] = None
        self._ready: Optional[asyncio.Future[None]] = None
        self._intentional_close: bool = False
        self._listeners: list[EngineListener] = []
        self._session_id: Optional[str] = None

        self.last_error: Optional[ServiceError] = None
        self.frames_sent: int = 0
        self.frames_dropped_not_ready: int = 0
        self.frames_failed: int = 0
        self.malformed_messages: int = 0
        self.ping_failures: int = 0

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is EngineState.READY

    @property
    def dialect(self) -> WireDialect:
        return self._dialect

    def add_listener(self, listener: EngineListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: EngineListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def snapshot(self) -> dict[str, object]:
        return {
            "state": self._state.value,
            "frames_sent": self.frames_sent,
            "frames_dropped_not_ready": self.frames_dropped_not_ready,
            "frames_failed": self.frames_failed,
            "malformed_messages": self.malformed_messages,
            "ping_failures": self.ping_failures,
        }

    # -------------------------------------------------------------------------
    # Connect
    # -------------------------------------------------------------------------

    async def connect(self, config: SessionConfig, *, session_id: Optional[str] = None) -> None:
        """
        Open a fresh connection and wait until the session is ready.

        Any previous connection is torn down first (intentionally).

        Raises:
            ConnectionTimeout: overall deadline or ready-wait deadline hit
            FatalServiceError: the service rejected the session configuration
            SessionConnectError: transport could not be opened or closed early
        """
        if self._transport is not None or self._state is not EngineState.DISCONNECTED:
            self._intentional_close = True
            await self._teardown()

        self._session_id = session_id
        self._intentional_close = False
        self.last_error = None
        self._state = EngineState.CONNECTING
        self._ready = asyncio.get_running_loop().create_future()

        log_event({
            "event_type": "ENGINE_CONNECTING",
            "session_id": session_id,
            "dialect": self._dialect.value,
        })

        try:
            await asyncio.wait_for(self._handshake(config), timeout=self._connect_timeout_s)
        except asyncio.TimeoutError as e:
            await self._teardown()
            log_event({
                "level": "WARNING",
                "event_type": "ENGINE_CONNECT_TIMEOUT",
                "session_id": session_id,
                "timeout_s": self._connect_timeout_s,
            })
            raise ConnectionTimeout() from e
        except (SessionConnectError, FatalServiceError) as e:
            await self._teardown()
            log_event({
                "level": "WARNING",
                "event_type": "ENGINE_CONNECT_FAILED",
                "session_id": session_id,
                "error": str(e),
            })
            raise
        except TransportClosed as e:
            await self._teardown()
            raise SessionConnectError(f"connection closed during handshake: {e.reason}") from e
        except asyncio.CancelledError:
            await self._teardown()
            raise

        log_event({
            "event_type": "ENGINE_READY",
            "session_id": session_id,
        })

    async def _handshake(self, config: SessionConfig) -> None:
        transport = await self._transport_factory(config)
        self._transport = transport

        await transport.send_text(encode_session_configure(config, dialect=self._dialect))
        self._state = EngineState.AWAITING_READY

        self._recv_task = asyncio.create_task(
            self._receive_loop(transport), name="engine:receive"
        )

        assert self._ready is not None
        try:
            await asyncio.wait_for(self._ready, timeout=self._ready_timeout_s)
        except asyncio.TimeoutError as e:
            raise ConnectionTimeout("Session ready timed out") from e

        self._state = EngineState.READY
        self._keepalive_task = asyncio.create_task(
            self._keepalive_loop(transport), name="engine:keepalive"
        )

    # -------------------------------------------------------------------------
    # Outbound
    # -------------------------------------------------------------------------

    async def send(self, frame: AudioFrame) -> bool:
        """
        Send one audio frame.

        Returns:
            True if transmitted, False if dropped (not ready or the
            connection closed underneath us).

        Raises:
            NotConnectedError if there is no transport at all.
        """
        transport = self._transport
        if transport is None:
            raise NotConnectedError()

        if self._state is not EngineState.READY:
            self.frames_dropped_not_ready += 1
            return False

        try:
            await transport.send_text(encode_audio_append(frame.samples, dialect=self._dialect))
        except TransportClosed as e:
            # Receive loop reports the loss; the frame is gone.
            self.frames_failed += 1
            log_event({
                "level": "DEBUG",
                "event_type": "ENGINE_SEND_FAILED",
                "session_id": self._session_id,
                "seq_num": frame.sequence_num,
                "reason": e.reason,
            })
            return False

        self.frames_sent += 1
        return True

    async def commit(self) -> None:
        """
        Ask the service to finalize buffered audio.

        Raises:
            NotConnectedError if there is no open transport.
        """
        transport = self._transport
        if transport is None:
            raise NotConnectedError()

        try:
            await transport.send_text(encode_audio_commit(dialect=self._dialect))
        except TransportClosed as e:
            raise NotConnectedError(f"commit failed: {e.reason}") from e

        log_event({
            "event_type": "ENGINE_COMMIT_SENT",
            "session_id": self._session_id,
        })

    # -------------------------------------------------------------------------
    # Disconnect
    # -------------------------------------------------------------------------

    async def disconnect(self) -> None:
        """
        Intentional teardown.

        Idempotent: safe with no connection and safe to call repeatedly.
        """
        if self._state is EngineState.DISCONNECTED and self._transport is None:
            return

        self._intentional_close = True
        self._state = EngineState.CLOSING
        await self._teardown()

        log_event({
            "event_type": "ENGINE_DISCONNECTED",
            "session_id": self._session_id,
            **self.snapshot(),
        })

    async def _teardown(self) -> None:
        current = asyncio.current_task()

        tasks = [
            t for t in (self._keepalive_task, self._recv_task)
            if t is not None and t is not current
        ]
        self._keepalive_task = None
        self._recv_task = None
        for task in tasks:
            if not task.done():
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        ready = self._ready
        self._ready = None
        if ready is not None and not ready.done():
            ready.cancel()

        transport = self._transport
        self._transport = None
        if transport is not None:
            try:
                await transport.close()
            except Exception as e:  # pylint: disable=broad-exception-caught
                log_event({
                    "level": "DEBUG",
                    "event_type": "ENGINE_CLOSE_FAILED",
                    "session_id": self._session_id,
                    "error": repr(e),
                })

        self._state = EngineState.DISCONNECTED

    # -------------------------------------------------------------------------
    # Background loops
    # -------------------------------------------------------------------------

    async def _receive_loop(self, transport: TransportProtocol) -> None:
        """
        Decode inbound frames and dispatch them until the transport ends.

        RULES:
        - Malformed message: log, count, skip. Session continues.
        - Unknown type: debug log, skip.
        - session.created resolves the ready future (once).
        - Fatal error before READY fails the ready future.
        """
        try:
            while True:
                raw = await transport.receive()
                self._handle_raw(raw)
        except asyncio.CancelledError:
            return
        except TransportClosed as e:
            reason = e.reason
        except Exception as e:  # pylint: disable=broad-exception-caught
            reason = f"receive failed: {e!r}"

        await self._on_receive_ended(transport, reason)

    def _handle_raw(self, raw: str | bytes) -> None:
        try:
            msg = decode_message(raw, dialect=self._dialect)
        except ProtocolError as e:
            self.malformed_messages += 1
            log_event({
                "level": "WARNING",
                "event_type": "ENGINE_MESSAGE_MALFORMED",
                "session_id": self._session_id,
                "error": str(e),
            })
            return

        if msg is None:
            log_event({
                "level": "DEBUG",
                "event_type": "ENGINE_MESSAGE_IGNORED",
                "session_id": self._session_id,
            })
            return

        ready = self._ready
        if msg.kind is InboundKind.SESSION_CREATED:
            if ready is not None and not ready.done():
                ready.set_result(None)

        elif msg.kind is InboundKind.ERROR and msg.error is not None:
            self.last_error = msg.error
            log_event({
                "level": "WARNING",
                "event_type": "ENGINE_SERVICE_ERROR",
                "session_id": self._session_id,
                "code": msg.error.code,
                "message": msg.error.message,
                "fatal": msg.error.is_fatal,
            })
            if msg.error.is_fatal and ready is not None and not ready.done():
                ready.set_exception(FatalServiceError(msg.error))

        self._dispatch(msg)

    async def _on_receive_ended(self, transport: TransportProtocol, reason: str) -> None:
        if transport is not self._transport:
            return  # stale connection

        ready = self._ready
        if ready is not None and not ready.done():
            # connect() is still waiting; it owns the teardown.
            ready.set_exception(SessionConnectError(reason))
            return

        if self._intentional_close:
            return

        log_event({
            "level": "WARNING",
            "event_type": "ENGINE_CONNECTION_LOST",
            "session_id": self._session_id,
            "reason": reason,
        })
        await self._teardown()
        self._dispatch(ConnectionLost(reason=reason, error=self.last_error))

    async def _keepalive_loop(self, transport: TransportProtocol) -> None:
        try:
            while True:
                await asyncio.sleep(self._keepalive_interval_s)
                if self._state is not EngineState.READY:
                    continue
                try:
                    await transport.ping()
                except Exception as e:  # pylint: disable=broad-exception-caught
                    # Not fatal: the receive loop decides if the link is dead.
                    self.ping_failures += 1
                    log_event({
                        "level": "WARNING",
                        "event_type": "ENGINE_PING_FAILED",
                        "session_id": self._session_id,
                        "error": repr(e),
                    })
        except asyncio.CancelledError:
            return

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    def _dispatch(self, event: EngineEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:  # pylint: disable=broad-exception-caught
                log_event({
                    "level": "ERROR",
                    "event_type": "ENGINE_LISTENER_FAILED",
                    "session_id": self._session_id,
                    "error": repr(e),
                })
