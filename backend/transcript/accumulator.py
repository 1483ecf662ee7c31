"""
Transcript accumulator.

Builds one ordered transcript for a dictation session from delta and
segment-completed events.

Rules:
- Deltas are appended verbatim, unless they contain a denylisted phrase
  (case-insensitive substring), in which case they are discarded.
- segment.completed never overwrites or truncates accumulated text.
  It only seeds the transcript when nothing has been accumulated yet.
  Multiple segments therefore concatenate through their deltas.
- await_final() never raises on timeout; it returns the best text
  available.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Iterable, Optional

from constants import HALLUCINATION_PATTERNS
from observability.logger import log_event


@dataclass(frozen=True)
class SegmentRecord:
    """
    Boundary of one completed segment within the accumulated text.

    start/end are character offsets into the transcript at completion time.
    reported is the segment transcript as sent by the service.
    """
    index: int
    start: int
    end: int
    reported: str


@dataclass(frozen=True)
class TranscriptState:
    """Immutable snapshot of the accumulator."""
    text: str
    final_text: Optional[str]
    segments: tuple[SegmentRecord, ...]


class TranscriptAccumulator:
    """
    Single-session transcript builder.

    Mutated only from the event loop thread. Call clear() before every
    new session.
    """

    def __init__(self, *, denylist: Iterable[str] = HALLUCINATION_PATTERNS) -> None:
        self._denylist: tuple[str, ...] = tuple(p.lower() for p in denylist if p)
        self._text: str = ""
        self._final_text: Optional[str] = None
        self._segments: list[SegmentRecord] = []
        self._segment_start: int = 0
        self._final_waiter: Optional[asyncio.Future[str]] = None
        self.filtered_deltas: int = 0

    # -------------------------
    # Event input
    # -------------------------

    def is_junk(self, fragment: str) -> bool:
        lower = fragment.lower()
        return any(pattern in lower for pattern in self._denylist)

    def apply_delta(self, delta: str) -> bool:
        """
        Append one incremental fragment.

        Returns:
            True if appended, False if empty or filtered.
        """
        if not delta:
            return False

        if self.is_junk(delta):
            self.filtered_deltas += 1
            log_event({
                "event_type": "TRANSCRIPT_DELTA_FILTERED",
                "chars": len(delta),
            })
            return False

        self._text += delta
        return True

    def apply_segment_completed(self, transcript: str) -> None:
        """
        Record the end of one service-delimited segment.

        The reported transcript seeds the accumulation only if nothing has
        been accumulated yet (and it is not junk).
        """
        if not self._text and transcript and not self.is_junk(transcript):
            self._text = transcript

        record = SegmentRecord(
            index=len(self._segments),
            start=self._segment_start,
            end=len(self._text),
            reported=transcript,
        )
        self._segments.append(record)
        self._segment_start = len(self._text)
        self._final_text = self._text

        self._resolve_waiter(self._text)

    # -------------------------
    # Reads
    # -------------------------

    def current(self) -> str:
        return self._text

    @property
    def final_text(self) -> Optional[str]:
        return self._final_text

    @property
    def segment_count(self) -> int:
        return len(self._segments)

    def snapshot(self) -> TranscriptState:
        return TranscriptState(
            text=self._text,
            final_text=self._final_text,
            segments=tuple(self._segments),
        )

    async def await_final(self, timeout_s: float) -> str:
        """
        Wait for the next segment completion, up to timeout_s.

        Returns at once if the last completed segment already covers
        everything accumulated (no deltas since). Returns the accumulated
        text either way. Never raises on timeout.
        """
        if self._final_text is not None and self._final_text == self._text:
            return self._final_text

        loop = asyncio.get_running_loop()
        if self._final_waiter is None or self._final_waiter.done():
            self._final_waiter = loop.create_future()
        waiter = self._final_waiter

        try:
            return await asyncio.wait_for(asyncio.shield(waiter), timeout=timeout_s)
        except asyncio.TimeoutError:
            log_event({
                "event_type": "TRANSCRIPT_FINAL_TIMEOUT",
                "timeout_s": timeout_s,
                "chars": len(self._text),
            })
            return self._text

    def force_final(self) -> None:
        """Resolve a pending await_final() immediately with the current text."""
        self._resolve_waiter(self._text)

    def clear(self) -> None:
        """Reset for a new session. A pending waiter is released with ""."""
        self._resolve_waiter("")
        self._text = ""
        self._final_text = None
        self._segments = []
        self._segment_start = 0
        self._final_waiter = None
        self.filtered_deltas = 0

    # -------------------------
    # Internal
    # -------------------------

    def _resolve_waiter(self, text: str) -> None:
        waiter = self._final_waiter
        if waiter is not None and not waiter.done():
            waiter.set_result(text)
