"""
Transport abstraction for the session engine.

The engine only needs four capabilities from a connection: send a text
frame, receive the next frame, ping, and close. Anything satisfying
TransportProtocol can carry the session (WebSocket by default, in-memory
fakes in tests).

This module contains:
- The narrow TransportProtocol (capabilities, not implementation)
- TransportClosed, raised by receive() once the peer or caller closes
- WebSocketTransport, the default adapter over `websockets`
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Protocol, runtime_checkable

from websockets.asyncio.client import ClientConnection, connect as ws_connect
from websockets.exceptions import ConnectionClosed, InvalidStatus, WebSocketException

from config import SessionConfig
from engine.errors import DictationError, FatalServiceError, ServiceError, SessionConnectError
from observability.logger import log_event
from protocol.messages import WireDialect


class TransportClosed(DictationError):
    """Raised by receive() when the connection is gone."""

    def __init__(self, reason: str = "closed") -> None:
        super().__init__(reason)
        self.reason = reason


# ---------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------

@runtime_checkable
class TransportProtocol(Protocol):
    async def send_text(self, message: str) -> None: ...

    async def receive(self) -> str | bytes:
        """
        Wait for the next inbound frame.

        Raises TransportClosed when the connection ends, for any reason.
        """

    async def ping(self) -> None: ...

    async def close(self) -> None:
        """Idempotent."""


TransportFactory = Callable[[SessionConfig], Awaitable[TransportProtocol]]


# ---------------------------------------------------------------------
# WebSocket adapter
# ---------------------------------------------------------------------

_PONG_TIMEOUT_S = 10.0

# Handshake statuses that mean the credential was refused.
_AUTH_REJECTED_STATUSES = (401, 403)


class WebSocketTransport:
    """
    TransportProtocol over a `websockets` client connection.

    Keepalive is driven by the session engine, so the library's own
    ping loop is disabled.
    """

    def __init__(self, ws: ClientConnection) -> None:
        self._ws = ws
        self._closed = False

    @classmethod
    async def open(
        cls,
        config: SessionConfig,
        *,
        dialect: WireDialect = WireDialect.OPENAI_REALTIME,
    ) -> WebSocketTransport:
        """
        Open a connection to config.endpoint_url.

        Raises:
            FatalServiceError if the handshake is refused as unauthorized.
            SessionConnectError if the handshake fails otherwise.
        """
        headers = {"Authorization": f"Bearer {config.api_key}"}
        if dialect is WireDialect.OPENAI_REALTIME:
            headers["OpenAI-Beta"] = "realtime=v1"

        try:
            ws = await ws_connect(
                config.endpoint_url,
                additional_headers=headers,
                max_size=2**22,
                ping_interval=None,
            )
        except InvalidStatus as e:
            status = e.response.status_code
            if status in _AUTH_REJECTED_STATUSES:
                raise FatalServiceError(ServiceError(
                    code="invalid_api_key",
                    message=f"handshake rejected with HTTP {status}",
                )) from e
            raise SessionConnectError(f"websocket connect rejected with HTTP {status}") from e
        except (OSError, WebSocketException) as e:
            raise SessionConnectError(f"websocket connect failed: {e!r}") from e

        log_event({
            "level": "DEBUG",
            "event_type": "TRANSPORT_OPENED",
            "endpoint_url": config.endpoint_url,
        })
        return cls(ws)

    async def send_text(self, message: str) -> None:
        try:
            await self._ws.send(message)
        except ConnectionClosed as e:
            raise TransportClosed(_close_reason(e)) from e

    async def receive(self) -> str | bytes:
        try:
            return await self._ws.recv()
        except ConnectionClosed as e:
            raise TransportClosed(_close_reason(e)) from e

    async def ping(self) -> None:
        pong_waiter = await self._ws.ping()
        await asyncio.wait_for(pong_waiter, timeout=_PONG_TIMEOUT_S)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._ws.close()


def make_websocket_factory(dialect: WireDialect) -> TransportFactory:
    """Bind a dialect so the result matches TransportFactory."""

    async def _factory(config: SessionConfig) -> TransportProtocol:
        return await WebSocketTransport.open(config, dialect=dialect)

    return _factory


def _close_reason(e: ConnectionClosed) -> str:
    rcvd = e.rcvd
    if rcvd is None:
        return "connection closed abnormally"
    if rcvd.reason:
        return f"closed ({rcvd.code}): {rcvd.reason}"
    return f"closed ({rcvd.code})"
