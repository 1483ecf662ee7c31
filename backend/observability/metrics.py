"""
Session telemetry: per-session collector and rolling aggregator.

Responsibilities:
- Measure latencies and durations using monotonic time (immune to clock changes)
- Record wall-clock start/end only for log correlation
- Finalize exactly one immutable SessionMetrics per session
- Emit it as a single SESSION_METRICS JSONL event

Design notes:
- The aggregator is an ordinary object injected where needed, not a
  process-wide singleton.
- Clocks are injectable so tests can drive time deterministically.
"""

from __future__ import annotations

import time
from collections import deque
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Callable, Deque, Optional

from constants import METRICS_HISTORY_CAPACITY, RECENT_SESSIONS_DEFAULT
from observability.logger import log_event, now_ms


def _monotonic_ms() -> int:
    return time.monotonic_ns() // 1_000_000


# -----------------------------------------------------------------------------
# Disconnect reason
# -----------------------------------------------------------------------------

class DisconnectKind(str, Enum):
    USER_INITIATED = "user_initiated"
    SILENCE_TIMEOUT = "silence_timeout"
    MAX_DURATION = "max_duration"
    CONNECTION_LOST = "connection_lost"
    CONNECTION_TIMEOUT = "connection_timeout"
    FATAL_ERROR = "fatal_error"
    RECONNECT_FAILED = "reconnect_failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class DisconnectReason:
    """
    Why a session ended.

    Only FATAL_ERROR carries a message; two fatal reasons are equal only
    when their messages match.
    """
    kind: DisconnectKind
    message: Optional[str] = None

    @staticmethod
    def fatal_error(message: str) -> DisconnectReason:
        return DisconnectReason(DisconnectKind.FATAL_ERROR, message)

    def describe(self) -> str:
        if self.message:
            return f"{self.kind.value}: {self.message}"
        return self.kind.value


USER_INITIATED = DisconnectReason(DisconnectKind.USER_INITIATED)
SILENCE_TIMEOUT = DisconnectReason(DisconnectKind.SILENCE_TIMEOUT)
MAX_DURATION = DisconnectReason(DisconnectKind.MAX_DURATION)
CONNECTION_LOST = DisconnectReason(DisconnectKind.CONNECTION_LOST)
CONNECTION_TIMEOUT = DisconnectReason(DisconnectKind.CONNECTION_TIMEOUT)
RECONNECT_FAILED = DisconnectReason(DisconnectKind.RECONNECT_FAILED)
CANCELLED = DisconnectReason(DisconnectKind.CANCELLED)


# -----------------------------------------------------------------------------
# Snapshot
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class SessionMetrics:
    session_id: str
    start_ts_ms: int
    end_ts_ms: int
    duration_ms: int
    connection_latency_ms: int
    first_transcript_latency_ms: Optional[int]
    frames_sent: int
    frames_dropped: int
    reconnect_attempts: int
    reconnect_successes: int
    transcribed_characters: int
    disconnect_reason: DisconnectReason

    @property
    def drop_rate(self) -> float:
        total = self.frames_sent + self.frames_dropped
        if total == 0:
            return 0.0
        return self.frames_dropped / total

    def to_log_dict(self) -> dict[str, object]:
        d = asdict(self)
        d["disconnect_reason"] = self.disconnect_reason.describe()
        d["drop_rate"] = round(self.drop_rate, 4)
        return d


# -----------------------------------------------------------------------------
# Collector
# -----------------------------------------------------------------------------

class SessionMetricsCollector:
    """
    Mutable counters for one session. finalize() may be called once.
    """

    def __init__(
        self,
        session_id: str,
        *,
        monotonic_ms: Callable[[], int] = _monotonic_ms,
        wall_ms: Callable[[], int] = now_ms,
    ) -> None:
        self._session_id = session_id
        self._mono = monotonic_ms
        self._wall = wall_ms

        self._start_mono = monotonic_ms()
        self._start_wall = wall_ms()
        self._connection_start: Optional[int] = None
        self._connection_latency_ms: int = 0
        self._first_transcript_latency_ms: Optional[int] = None

        self.frames_sent: int = 0
        self.frames_dropped: int = 0
        self.reconnect_attempts: int = 0
        self.reconnect_successes: int = 0
        self.transcribed_characters: int = 0
        self.disconnect_reason: DisconnectReason = USER_INITIATED
        self._finalized: Optional[SessionMetrics] = None

    @property
    def session_id(self) -> str:
        return self._session_id

    def record_connection_start(self) -> None:
        self._connection_start = self._mono()

    def record_connection_established(self) -> None:
        if self._connection_start is not None:
            self._connection_latency_ms = self._mono() - self._connection_start

    def record_frame_sent(self) -> None:
        self.frames_sent += 1

    def record_frame_dropped(self, count: int = 1) -> None:
        self.frames_dropped += count

    def record_transcription(self, chars: int) -> None:
        """
        Count transcribed characters.

        First-transcript latency (from connection start) is captured once,
        on the first non-empty fragment.
        """
        if chars <= 0:
            return
        if self._first_transcript_latency_ms is None and self._connection_start is not None:
            self._first_transcript_latency_ms = self._mono() - self._connection_start
        self.transcribed_characters += chars

    def record_reconnect_attempt(self) -> None:
        self.reconnect_attempts += 1

    def record_reconnect_success(self) -> None:
        self.reconnect_successes += 1

    def record_disconnect(self, reason: DisconnectReason) -> None:
        self.disconnect_reason = reason

    def finalize(self) -> SessionMetrics:
        """
        Freeze the counters into a SessionMetrics and log it.

        Repeated calls return the first snapshot without logging again.
        """
        if self._finalized is not None:
            return self._finalized

        metrics = SessionMetrics(
            session_id=self._session_id,
            start_ts_ms=self._start_wall,
            end_ts_ms=self._wall(),
            duration_ms=self._mono() - self._start_mono,
            connection_latency_ms=self._connection_latency_ms,
            first_transcript_latency_ms=self._first_transcript_latency_ms,
            frames_sent=self.frames_sent,
            frames_dropped=self.frames_dropped,
            reconnect_attempts=self.reconnect_attempts,
            reconnect_successes=self.reconnect_successes,
            transcribed_characters=self.transcribed_characters,
            disconnect_reason=self.disconnect_reason,
        )
        self._finalized = metrics

        log_event({
            "event_type": "SESSION_METRICS",
            **metrics.to_log_dict(),
        })
        return metrics


# -----------------------------------------------------------------------------
# Aggregator
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class AggregateStats:
    total_sessions: int = 0
    avg_connection_latency_ms: int = 0
    avg_session_duration_ms: int = 0
    overall_drop_rate: float = 0.0
    total_reconnect_attempts: int = 0
    successful_reconnects: int = 0


class MetricsAggregator:
    """Bounded rolling history of finalized sessions (drop oldest)."""

    def __init__(self, *, capacity: int = METRICS_HISTORY_CAPACITY) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        self._history: Deque[SessionMetrics] = deque(maxlen=capacity)

    def __len__(self) -> int:
        return len(self._history)

    def record(self, metrics: SessionMetrics) -> None:
        self._history.append(metrics)

    def get_recent_sessions(self, n: int = RECENT_SESSIONS_DEFAULT) -> list[SessionMetrics]:
        if n <= 0:
            return []
        return list(self._history)[-n:]

    def get_aggregate_stats(self) -> AggregateStats:
        history = list(self._history)
        if not history:
            return AggregateStats()

        total = len(history)
        sent = sum(m.frames_sent for m in history)
        dropped = sum(m.frames_dropped for m in history)

        return AggregateStats(
            total_sessions=total,
            avg_connection_latency_ms=sum(m.connection_latency_ms for m in history) // total,
            avg_session_duration_ms=sum(m.duration_ms for m in history) // total,
            overall_drop_rate=(dropped / (sent + dropped)) if (sent + dropped) else 0.0,
            total_reconnect_attempts=sum(m.reconnect_attempts for m in history),
            successful_reconnects=sum(m.reconnect_successes for m in history),
        )

    def clear(self) -> None:
        self._history.clear()
