"""
Dictation session container.

- One record per dictation (trigger -> finalize / cancel / error)
- Owned and mutated by SessionController only
- NOT a state machine
- Contains no orchestration logic
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field

from config import SessionConfig
from observability.logger import now_ms
from observability.metrics import SessionMetricsCollector


def new_session_id() -> str:
    return f"sess_{uuid.uuid4().hex[:12]}"


@dataclass
class DictationSession:
    """Mutable runtime container for a single dictation session."""

    # ------------------------------------------------------------------
    # Identity / lifecycle
    # ------------------------------------------------------------------

    session_id: str
    config: SessionConfig
    created_ts_ms: int = field(default_factory=now_ms)

    # ------------------------------------------------------------------
    # Telemetry
    # ------------------------------------------------------------------

    metrics: SessionMetricsCollector = field(init=False)

    # ------------------------------------------------------------------
    # Audio sequencing
    # ------------------------------------------------------------------

    _next_seq: int = field(default=1, init=False, repr=False)

    def __post_init__(self) -> None:
        """
        Construct session-owned objects that require session_id.
        """
        self.metrics = SessionMetricsCollector(self.session_id)

    def next_sequence_num(self) -> int:
        seq = self._next_seq
        self._next_seq += 1
        return seq
