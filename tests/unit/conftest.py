# pylint: disable=missing-module-docstring,missing-function-docstring,missing-class-docstring

import asyncio
import json
from typing import Any, Optional

import pytest

from config import SessionConfig
from engine.errors import SessionConnectError
from engine.transport import TransportClosed
from observability import logger
from protocol.messages import WireDialect


# ---------------------------------------------------------------------
# In-memory transport
# ---------------------------------------------------------------------

class FakeTransport:
    """
    Scripted transport.

    - Every outbound text is recorded in `sent` (decoded JSON in `sent_json`)
    - feed() queues an inbound message
    - drop() ends receive() as if the peer went away
    - auto_ready: answer the session configure message with session.created
    """

    def __init__(self, *, dialect: WireDialect, auto_ready: bool = True) -> None:
        self.dialect = dialect
        self.auto_ready = auto_ready
        self.sent: list[str] = []
        self.closed = False
        self.close_calls = 0
        self.pings = 0
        # set to an unset Event to hold audio appends until it is set
        self.stall_appends: Optional[asyncio.Event] = None
        self._inbox: asyncio.Queue[Optional[str | bytes]] = asyncio.Queue()

    @property
    def sent_json(self) -> list[dict[str, Any]]:
        return [json.loads(s) for s in self.sent]

    def sent_types(self) -> list[str]:
        return [m["type"] for m in self.sent_json]

    def feed(self, message: dict[str, Any] | str | bytes) -> None:
        if isinstance(message, dict):
            message = json.dumps(message)
        self._inbox.put_nowait(message)

    def drop(self) -> None:
        self._inbox.put_nowait(None)

    async def send_text(self, message: str) -> None:
        if self.closed:
            raise TransportClosed("closed")
        if self.stall_appends is not None and json.loads(message)["type"].endswith(".append"):
            await self.stall_appends.wait()
        self.sent.append(message)
        if self.auto_ready and len(self.sent) == 1:
            self.feed({"type": created_type(self.dialect)})

    async def receive(self) -> str | bytes:
        if self.closed:
            raise TransportClosed("closed")
        item = await self._inbox.get()
        if item is None:
            self.closed = True
            raise TransportClosed("peer closed")
        return item

    async def ping(self) -> None:
        self.pings += 1

    async def close(self) -> None:
        self.close_calls += 1
        if not self.closed:
            self.closed = True
            self._inbox.put_nowait(None)


class FakeTransportFactory:
    """
    Transport factory with scripted failures.

    fail_next: number of upcoming calls that raise SessionConnectError
    hang: factory never returns (connect deadline tests)
    """

    def __init__(self, *, dialect: WireDialect = WireDialect.OPENAI_REALTIME) -> None:
        self.dialect = dialect
        self.auto_ready = True
        self.fail_next = 0
        self.hang = False
        self.calls = 0
        self.transports: list[FakeTransport] = []

    @property
    def last(self) -> FakeTransport:
        return self.transports[-1]

    async def __call__(self, config: SessionConfig) -> FakeTransport:
        self.calls += 1
        if self.hang:
            await asyncio.Event().wait()
        if self.fail_next > 0:
            self.fail_next -= 1
            raise SessionConnectError("connection refused")
        transport = FakeTransport(dialect=self.dialect, auto_ready=self.auto_ready)
        self.transports.append(transport)
        return transport


def created_type(dialect: WireDialect) -> str:
    if dialect is WireDialect.OPENAI_REALTIME:
        return "transcription_session.created"
    return "session.created"


# ---------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------

@pytest.fixture
def session_config() -> SessionConfig:
    return SessionConfig(api_key="sk-test", silence_threshold_ms=1_000)


@pytest.fixture
def transport_factory() -> FakeTransportFactory:
    return FakeTransportFactory()


@pytest.fixture
def captured_logs(monkeypatch: pytest.MonkeyPatch) -> list[dict[str, Any]]:
    """Decoded JSONL events written through the logger sink."""
    captured: list[dict[str, Any]] = []

    def fake_print(line: str) -> None:
        captured.append(json.loads(line))

    monkeypatch.setattr(logger, "_print", fake_print)
    return captured
