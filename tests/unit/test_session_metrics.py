# pylint: disable=missing-module-docstring,missing-function-docstring

from observability.metrics import (
    CANCELLED,
    SILENCE_TIMEOUT,
    DisconnectKind,
    DisconnectReason,
    MetricsAggregator,
    SessionMetricsCollector,
)


class FakeClock:
    def __init__(self, start: int = 1_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


def make_collector(session_id: str = "sess_a", clock: FakeClock | None = None):
    clock = clock or FakeClock()
    return SessionMetricsCollector(session_id, monotonic_ms=clock, wall_ms=clock), clock


def test_latencies_are_measured_from_connection_start(captured_logs) -> None:
    collector, clock = make_collector()

    clock.advance(10)
    collector.record_connection_start()
    clock.advance(150)
    collector.record_connection_established()
    clock.advance(250)
    collector.record_transcription(5)
    clock.advance(100)
    collector.record_transcription(7)

    m = collector.finalize()

    assert m.connection_latency_ms == 150
    assert m.first_transcript_latency_ms == 400
    assert m.transcribed_characters == 12
    assert m.duration_ms == 510


def test_first_transcript_latency_ignores_empty_fragments(captured_logs) -> None:
    collector, clock = make_collector()
    collector.record_connection_start()
    clock.advance(50)
    collector.record_transcription(0)
    clock.advance(50)
    collector.record_transcription(3)

    assert collector.finalize().first_transcript_latency_ms == 100


def test_finalize_is_idempotent_and_logs_once(captured_logs) -> None:
    collector, _ = make_collector()
    collector.record_frame_sent()
    collector.record_frame_dropped(3)
    collector.record_disconnect(SILENCE_TIMEOUT)

    first = collector.finalize()
    collector.record_frame_sent()
    second = collector.finalize()

    assert first is second
    assert first.frames_sent == 1
    assert first.drop_rate == 0.75

    logged = [e for e in captured_logs if e["event_type"] == "SESSION_METRICS"]
    assert len(logged) == 1
    assert logged[0]["disconnect_reason"] == "silence_timeout"
    assert logged[0]["session_id"] == "sess_a"


def test_disconnect_reason_equality() -> None:
    assert DisconnectReason.fatal_error("a") == DisconnectReason.fatal_error("a")
    assert DisconnectReason.fatal_error("a") != DisconnectReason.fatal_error("b")
    assert CANCELLED.kind is DisconnectKind.CANCELLED
    assert DisconnectReason.fatal_error("bad key").describe() == "fatal_error: bad key"


def test_aggregator_keeps_most_recent(captured_logs) -> None:
    agg = MetricsAggregator(capacity=100)
    for i in range(105):
        collector, _ = make_collector(f"sess_{i}")
        agg.record(collector.finalize())

    assert len(agg) == 100
    recent = agg.get_recent_sessions(3)
    assert [m.session_id for m in recent] == ["sess_102", "sess_103", "sess_104"]
    assert agg.get_recent_sessions()[0].session_id == "sess_95"
    assert agg.get_recent_sessions(0) == []


def test_aggregate_stats(captured_logs) -> None:
    agg = MetricsAggregator()
    assert agg.get_aggregate_stats().total_sessions == 0

    for latency, sent, dropped, attempts, successes in (
        (100, 9, 1, 2, 1),
        (201, 10, 0, 0, 0),
    ):
        collector, clock = make_collector()
        collector.record_connection_start()
        clock.advance(latency)
        collector.record_connection_established()
        for _ in range(sent):
            collector.record_frame_sent()
        collector.record_frame_dropped(dropped)
        for _ in range(attempts):
            collector.record_reconnect_attempt()
        for _ in range(successes):
            collector.record_reconnect_success()
        agg.record(collector.finalize())

    stats = agg.get_aggregate_stats()
    assert stats.total_sessions == 2
    assert stats.avg_connection_latency_ms == 150
    assert stats.overall_drop_rate == 0.05
    assert stats.total_reconnect_attempts == 2
    assert stats.successful_reconnects == 1

    agg.clear()
    assert len(agg) == 0
