# backend/audio/queues.py
"""
Bounded audio send queue between the capture callback and the sender task.

Requirements:
- Fixed capacity in frames
- Enqueue never blocks the producer
- Full queue drops the NEWEST (incoming) frame and counts it
- Strict FIFO delivery to a single consumer; no frame delivered twice
- Cleared (without counting drops) when a new session starts
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass
from typing import Deque, Optional

from audio.frames import AudioFrame
from constants import SEND_QUEUE_CAPACITY_FRAMES


@dataclass
class DropCounters:
    """
    Drop counters for observability.
    """
    overflow: int = 0
    after_close: int = 0


class AudioSendQueue:
    """
    Single-producer / single-consumer bounded FIFO for AudioFrame objects.

    Producer side (enqueue) is synchronous and safe to call from the event
    loop thread only. Consumer side (get) is a coroutine that waits until a
    frame is available or the queue is closed.
    """

    def __init__(self, *, capacity: int = SEND_QUEUE_CAPACITY_FRAMES) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be > 0")

        self._capacity: int = capacity
        self._frames: Deque[AudioFrame] = deque()
        self._not_empty: asyncio.Event = asyncio.Event()
        self._closed: bool = False
        self.drops: DropCounters = DropCounters()

    # -------------------------
    # Producer
    # -------------------------

    def enqueue(self, frame: AudioFrame) -> bool:
        """
        Enqueue an AudioFrame without blocking.

        Returns:
            True if enqueued
            False if dropped (queue full or closed)
        """
        if self._closed:
            self.drops.after_close += 1
            return False

        if len(self._frames) >= self._capacity:
            self.drops.overflow += 1
            return False

        self._frames.append(frame)
        self._not_empty.set()
        return True

    # -------------------------
    # Consumer
    # -------------------------

    async def get(self) -> Optional[AudioFrame]:
        """
        Wait for the oldest frame.

        Returns None once the queue is closed and drained.
        """
        while not self._frames:
            if self._closed:
                return None
            self._not_empty.clear()
            await self._not_empty.wait()

        frame = self._frames.popleft()
        if not self._frames:
            self._not_empty.clear()
        return frame

    def get_nowait(self) -> Optional[AudioFrame]:
        """Pop the oldest frame, or None if empty."""
        if not self._frames:
            return None
        return self._frames.popleft()

    # -------------------------
    # Lifecycle
    # -------------------------

    def close(self) -> None:
        """
        Stop accepting frames and wake a waiting consumer.

        Frames already queued remain available to get().
        """
        self._closed = True
        self._not_empty.set()

    def reopen(self) -> None:
        """Accept frames again after close()."""
        self._closed = False
        if not self._frames:
            self._not_empty.clear()

    def clear(self) -> None:
        """
        Drop all queued frames without counting them as drops.

        Used when a new session starts.
        """
        self._frames.clear()
        self._not_empty.clear()

    def reset_counters(self) -> None:
        self.drops = DropCounters()

    # -------------------------
    # Introspection helpers
    # -------------------------

    def __len__(self) -> int:
        return len(self._frames)

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def closed(self) -> bool:
        return self._closed

    def is_empty(self) -> bool:
        """Check if the queue is empty."""
        return not self._frames

    def total_drops(self) -> int:
        """
        Total frames dropped for any reason.
        """
        return self.drops.overflow + self.drops.after_close

    def snapshot(self) -> dict[str, int | bool]:
        """
        Lightweight snapshot for logging / metrics.
        """
        return {
            "frames": len(self._frames),
            "capacity": self._capacity,
            "closed": self._closed,
            "dropped_overflow": self.drops.overflow,
            "dropped_after_close": self.drops.after_close,
            "dropped_total": self.total_drops(),
        }
