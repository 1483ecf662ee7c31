# pylint: disable=missing-module-docstring,missing-function-docstring

import asyncio

import numpy as np
import pytest

from config import SessionConfig
from engine.errors import ConfigurationError, InjectionError
from engine.session_engine import EngineState, SessionEngine
from observability.metrics import (
    CANCELLED,
    CONNECTION_LOST,
    MAX_DURATION,
    SILENCE_TIMEOUT,
    USER_INITIATED,
    DisconnectReason,
    SessionMetrics,
)
from orchestrator.enums.state import State
from orchestrator.runtime import SessionController
from orchestrator.state_dataclass import ControllerState
from session.collaborators import ControllerListener


DELTA = "conversation.item.input_audio_transcription.delta"
COMPLETED = "conversation.item.input_audio_transcription.completed"


# ---------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------

class RecordingInjector:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.injected: list[str] = []

    async def inject(self, text: str) -> None:
        if self.fail:
            raise InjectionError("no focused text field")
        self.injected.append(text)


class RecordingListener(ControllerListener):
    def __init__(self) -> None:
        self.states: list[ControllerState] = []
        self.partials: list[str] = []
        self.finals: list[str] = []
        self.metrics: list[SessionMetrics] = []

    def on_state_change(self, state: ControllerState) -> None:
        self.states.append(state)

    def on_partial_transcription(self, delta: str) -> None:
        self.partials.append(delta)

    def on_final_transcription(self, text: str) -> None:
        self.finals.append(text)

    def on_session_metrics(self, metrics: SessionMetrics) -> None:
        self.metrics.append(metrics)


async def no_sleep(_delay: float) -> None:
    return None


def make_controller(factory, *, injector=None, **kwargs):
    engine = SessionEngine(transport_factory=factory, dialect=factory.dialect)
    injector = injector or RecordingInjector()
    kwargs.setdefault("final_transcript_timeout_s", 0.2)
    kwargs.setdefault("reconnect_sleep", no_sleep)
    controller = SessionController(
        engine=engine,
        injector=injector,
        **kwargs,
    )
    listener = RecordingListener()
    controller.add_listener(listener)
    return controller, engine, injector, listener


async def wait_until(predicate, timeout_s: float = 3.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.001)
    await asyncio.wait_for(_poll(), timeout=timeout_s)


async def wait_for_state(controller: SessionController, state: State, timeout_s: float = 3.0) -> None:
    await wait_until(lambda: controller.state.state is state, timeout_s)


async def start_listening(controller, config) -> None:
    await controller.start(config)
    await controller.trigger()
    await wait_for_state(controller, State.LISTENING)


# ---------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_start_rejects_invalid_configuration(transport_factory) -> None:
    controller, _, _, _ = make_controller(transport_factory)

    with pytest.raises(ConfigurationError):
        await controller.start(SessionConfig(api_key=""))

    assert controller.state == ControllerState.idle()


@pytest.mark.asyncio
async def test_trigger_before_start_raises(transport_factory) -> None:
    controller, _, _, _ = make_controller(transport_factory)

    with pytest.raises(ConfigurationError):
        await controller.trigger()


@pytest.mark.asyncio
async def test_start_twice_raises(transport_factory, session_config, captured_logs) -> None:
    controller, _, _, _ = make_controller(transport_factory)
    await controller.start(session_config)

    with pytest.raises(RuntimeError):
        await controller.start(session_config)

    await controller.stop()


@pytest.mark.asyncio
async def test_stop_twice_is_safe(transport_factory, session_config, captured_logs) -> None:
    controller, engine, _, _ = make_controller(transport_factory)
    await controller.stop()

    await start_listening(controller, session_config)
    await controller.stop()
    await controller.stop()

    assert controller.state == ControllerState.idle()
    assert engine.state is EngineState.DISCONNECTED
    assert controller.aggregator.get_recent_sessions()[0].disconnect_reason == CANCELLED


@pytest.mark.asyncio
async def test_push_audio_outside_session_is_discarded(transport_factory, session_config, captured_logs) -> None:
    controller, _, _, _ = make_controller(transport_factory)
    await controller.start(session_config)

    assert controller.push_audio(np.zeros(480, dtype=np.float32), 24_000) is False

    await controller.stop()


# ---------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_user_trigger_finalizes_and_injects(transport_factory, session_config, captured_logs) -> None:
    controller, _, injector, listener = make_controller(transport_factory, final_transcript_timeout_s=2.0)
    await start_listening(controller, session_config)
    transport = transport_factory.last

    assert controller.push_audio(np.zeros((960, 2), dtype=np.float32), 48_000, 2)
    await wait_until(lambda: "input_audio_buffer.append" in transport.sent_types())
    appended = [m for m in transport.sent_json if m["type"] == "input_audio_buffer.append"]
    assert len(appended[0]["audio"]) > 0

    transport.feed({"type": DELTA, "delta": "Hello "})
    transport.feed({"type": DELTA, "delta": "world"})
    await wait_until(lambda: controller.accumulator.current() == "Hello world")

    await controller.trigger()
    await wait_until(lambda: "input_audio_buffer.commit" in transport.sent_types())
    assert controller.state == ControllerState.finalizing()

    transport.feed({"type": COMPLETED, "transcript": "Hello world."})
    await wait_for_state(controller, State.IDLE)

    assert injector.injected == ["Hello world"]
    assert listener.finals == ["Hello world"]
    assert listener.partials == ["Hello ", "world"]
    assert controller.last_transcript == "Hello world"
    assert [s.state for s in listener.states] == [
        State.CONNECTING, State.LISTENING, State.FINALIZING, State.IDLE,
    ]

    metrics = listener.metrics[0]
    assert metrics.disconnect_reason == USER_INITIATED
    assert metrics.frames_sent == 1
    assert metrics.transcribed_characters == len("Hello world")
    assert metrics.first_transcript_latency_ms is not None
    assert controller.aggregator.get_recent_sessions() == [metrics]

    await controller.stop()


@pytest.mark.asyncio
async def test_silence_timeout_delivers_text_once(transport_factory, session_config, captured_logs) -> None:
    controller, engine, injector, listener = make_controller(transport_factory, final_transcript_timeout_s=0.05)
    await start_listening(controller, session_config)

    transport_factory.last.feed({"type": DELTA, "delta": "quick note"})
    await wait_for_state(controller, State.IDLE, timeout_s=3.0)

    assert injector.injected == ["quick note"]
    assert listener.finals == ["quick note"]
    assert listener.metrics[0].disconnect_reason == SILENCE_TIMEOUT
    await wait_until(lambda: engine.state is EngineState.DISCONNECTED)

    await controller.stop()
    assert injector.injected == ["quick note"]


@pytest.mark.asyncio
async def test_empty_session_injects_nothing(transport_factory, session_config, captured_logs) -> None:
    controller, _, injector, listener = make_controller(transport_factory, final_transcript_timeout_s=0.01)
    await start_listening(controller, session_config)

    await controller.trigger()
    await wait_for_state(controller, State.IDLE)

    assert injector.injected == []
    assert listener.finals == []

    await controller.stop()


@pytest.mark.asyncio
async def test_max_duration_finalizes(transport_factory, session_config, captured_logs) -> None:
    controller, _, _, listener = make_controller(
        transport_factory, max_duration_s=0.05, final_transcript_timeout_s=0.01
    )
    await controller.start(session_config)
    await controller.trigger()

    await wait_for_state(controller, State.IDLE)

    assert State.LISTENING in [s.state for s in listener.states]
    assert listener.metrics[0].disconnect_reason == MAX_DURATION
    await controller.stop()


@pytest.mark.asyncio
async def test_second_trigger_while_finalizing_forces_current_text(
    transport_factory, session_config, captured_logs
) -> None:
    controller, _, injector, _ = make_controller(transport_factory, final_transcript_timeout_s=10.0)
    await start_listening(controller, session_config)
    transport = transport_factory.last

    transport.feed({"type": DELTA, "delta": "impatient"})
    await wait_until(lambda: controller.accumulator.current() == "impatient")

    await controller.trigger()
    await wait_until(lambda: "input_audio_buffer.commit" in transport.sent_types())
    await controller.trigger()
    await wait_for_state(controller, State.IDLE, timeout_s=2.0)

    assert injector.injected == ["impatient"]
    await controller.stop()


@pytest.mark.asyncio
async def test_finalize_after_completed_segment_does_not_wait_for_timeout(
    transport_factory, session_config, captured_logs
) -> None:
    controller, _, injector, _ = make_controller(transport_factory, final_transcript_timeout_s=5.0)
    await start_listening(controller, session_config)
    transport = transport_factory.last

    transport.feed({"type": DELTA, "delta": "Hello."})
    transport.feed({"type": COMPLETED, "transcript": "Hello."})
    await wait_until(lambda: controller.accumulator.final_text == "Hello.")

    await controller.trigger()
    await wait_for_state(controller, State.IDLE, timeout_s=1.0)

    assert injector.injected == ["Hello."]
    assert not any(e.get("event_type") == "TRANSCRIPT_FINAL_TIMEOUT" for e in captured_logs)
    await controller.stop()


@pytest.mark.asyncio
async def test_forced_trigger_does_not_wait_for_stalled_sender(
    transport_factory, session_config, captured_logs
) -> None:
    controller, _, injector, _ = make_controller(transport_factory, final_transcript_timeout_s=10.0)
    await start_listening(controller, session_config)
    transport = transport_factory.last
    transport.stall_appends = asyncio.Event()

    transport.feed({"type": DELTA, "delta": "held"})
    await wait_until(lambda: controller.accumulator.current() == "held")
    assert controller.push_audio(np.zeros(480, dtype=np.float32), 24_000, 1)
    await asyncio.sleep(0.05)

    await controller.trigger()
    await controller.trigger()
    await wait_for_state(controller, State.IDLE, timeout_s=0.5)

    assert injector.injected == ["held"]
    assert "input_audio_buffer.append" not in transport.sent_types()
    await controller.stop()


# ---------------------------------------------------------------------
# Cancellation / failures
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_trigger_while_connecting_cancels(transport_factory, session_config, captured_logs) -> None:
    transport_factory.auto_ready = False
    controller, engine, injector, listener = make_controller(transport_factory)
    await controller.start(session_config)

    await controller.trigger()
    assert controller.state == ControllerState.connecting()
    await wait_until(lambda: engine.state is EngineState.AWAITING_READY)

    await controller.trigger()

    assert controller.state == ControllerState.idle()
    await wait_until(lambda: engine.state is EngineState.DISCONNECTED)
    assert transport_factory.last.closed
    assert injector.injected == []
    assert listener.metrics[0].disconnect_reason == CANCELLED

    await controller.stop()


@pytest.mark.asyncio
async def test_connect_failure_enters_error_until_acknowledged(
    transport_factory, session_config, captured_logs
) -> None:
    transport_factory.fail_next = 1
    controller, _, _, listener = make_controller(transport_factory)
    await controller.start(session_config)

    await controller.trigger()
    await wait_for_state(controller, State.ERROR)

    assert controller.state == ControllerState.error("Connection failed: connection refused")
    assert listener.metrics[0].disconnect_reason == CONNECTION_LOST

    await controller.acknowledge()
    assert controller.state == ControllerState.idle()

    await controller.stop()


@pytest.mark.asyncio
async def test_fatal_handshake_error_enters_error(transport_factory, session_config, captured_logs) -> None:
    transport_factory.auto_ready = False
    controller, engine, _, listener = make_controller(transport_factory)
    await controller.start(session_config)

    await controller.trigger()
    await wait_until(lambda: engine.state is EngineState.AWAITING_READY)
    transport_factory.last.feed({
        "type": "error",
        "error": {"code": "invalid_api_key", "message": "Incorrect API key provided"},
    })
    await wait_for_state(controller, State.ERROR)

    assert controller.state == ControllerState.error("Invalid API key")
    assert listener.metrics[0].disconnect_reason == DisconnectReason.fatal_error("Invalid API key")
    assert transport_factory.calls == 1

    await controller.stop()


@pytest.mark.asyncio
async def test_connection_loss_reconnects(transport_factory, session_config, captured_logs) -> None:
    controller, _, _, listener = make_controller(transport_factory)
    await start_listening(controller, session_config)

    transport_factory.last.drop()
    await wait_until(lambda: ControllerState.reconnecting(1, 3) in listener.states)
    await wait_for_state(controller, State.LISTENING)

    assert transport_factory.calls == 2
    assert transport_factory.last.sent_types()[0] == "transcription_session.update"

    await controller.trigger()
    await wait_for_state(controller, State.IDLE)

    metrics = listener.metrics[0]
    assert metrics.reconnect_attempts == 1
    assert metrics.reconnect_successes == 1

    await controller.stop()


@pytest.mark.asyncio
async def test_max_duration_still_applies_after_reconnect(
    transport_factory, session_config, captured_logs
) -> None:
    async def slow_sleep(_delay: float) -> None:
        await asyncio.sleep(0.5)

    controller, _, _, listener = make_controller(
        transport_factory,
        max_duration_s=0.3,
        reconnect_sleep=slow_sleep,
        final_transcript_timeout_s=0.01,
    )
    await start_listening(controller, session_config)

    transport_factory.last.drop()
    await wait_until(lambda: ControllerState.reconnecting(1, 3) in listener.states)
    await wait_for_state(controller, State.IDLE, timeout_s=3.0)

    assert [s.state for s in listener.states] == [
        State.CONNECTING, State.LISTENING, State.RECONNECTING, State.FINALIZING, State.IDLE,
    ]
    assert transport_factory.calls == 2
    assert listener.metrics[0].disconnect_reason == MAX_DURATION
    await controller.stop()


@pytest.mark.asyncio
async def test_reconnect_exhaustion_enters_error(transport_factory, session_config, captured_logs) -> None:
    controller, _, _, listener = make_controller(transport_factory)
    await start_listening(controller, session_config)

    transport_factory.fail_next = 3
    transport_factory.last.drop()
    await wait_for_state(controller, State.ERROR)

    assert controller.state == ControllerState.error("Reconnect failed")
    assert [s for s in listener.states if s.state is State.RECONNECTING] == [
        ControllerState.reconnecting(1, 3),
        ControllerState.reconnecting(2, 3),
        ControllerState.reconnecting(3, 3),
    ]
    assert transport_factory.calls == 4
    assert listener.metrics[0].reconnect_attempts == 3

    await controller.stop()


@pytest.mark.asyncio
async def test_injection_failure_keeps_transcript(transport_factory, session_config, captured_logs) -> None:
    controller, _, _, listener = make_controller(
        transport_factory,
        injector=RecordingInjector(fail=True),
        final_transcript_timeout_s=0.01,
    )
    await start_listening(controller, session_config)

    transport_factory.last.feed({"type": DELTA, "delta": "keep me"})
    await wait_until(lambda: controller.accumulator.current() == "keep me")
    await controller.trigger()
    await wait_for_state(controller, State.ERROR)

    assert controller.state == ControllerState.error("Failed to inject text")
    assert controller.last_transcript == "keep me"
    assert listener.finals == ["keep me"]

    await controller.stop()


# ---------------------------------------------------------------------
# Backpressure / listeners
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_queue_overflow_is_counted(transport_factory, session_config, captured_logs) -> None:
    controller, _, _, listener = make_controller(transport_factory, final_transcript_timeout_s=0.01)
    await start_listening(controller, session_config)

    block = np.zeros(480, dtype=np.float32)
    accepted = [controller.push_audio(block, 24_000) for _ in range(80)]

    assert accepted.count(True) == 50
    assert accepted.count(False) == 30

    await controller.trigger()
    await wait_for_state(controller, State.IDLE)

    metrics = listener.metrics[0]
    assert metrics.frames_dropped == 30
    assert metrics.frames_sent == 50

    await controller.stop()


@pytest.mark.asyncio
async def test_listener_exceptions_are_contained(transport_factory, session_config, captured_logs) -> None:
    class Broken(ControllerListener):
        def on_state_change(self, state: ControllerState) -> None:
            raise RuntimeError("ui bug")

    controller, _, _, listener = make_controller(transport_factory)
    controller.add_listener(Broken())

    await start_listening(controller, session_config)

    assert listener.states[-1] == ControllerState.listening()
    assert any(e["event_type"] == "LISTENER_FAILED" for e in captured_logs)

    await controller.stop()
