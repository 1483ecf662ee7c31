"""
Reconnection supervisor.

Runs after an unexpected disconnect while a session is listening.

Rules:
- Classify first. Fatal errors (credential, quota, unknown model) are never
  retried.
- Transient: up to policy.max_attempts full connect() calls, each preceded
  by an exponential backoff delay with jitter.
- Supersession: before each attempt and after each sleep the supervisor
  asks whether its session is still the current one. If not, it stops
  silently (SUPERSEDED) and never touches the engine again.
- Exhausting all attempts is FAILED, a distinct outcome from the original
  disconnect reason.

The supervisor owns no session state. It receives the session id, reports
progress through an async callback, and returns a ReconnectResult.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

from config import SessionConfig
from engine.errors import FatalServiceError, ServiceError, SessionConnectError
from engine.session_engine import SessionEngine
from observability.logger import log_event
from orchestrator.retry import (
    BackoffPolicy,
    classify_failure,
    next_attempt,
    reset_attempt,
)


class ReconnectOutcome(str, Enum):
    RECONNECTED = "reconnected"
    FATAL = "fatal"
    FAILED = "reconnect_failed"
    SUPERSEDED = "superseded"


@dataclass(frozen=True)
class ReconnectContext:
    """Immutable description of one supervision run (for logs and callbacks)."""
    session_id: str
    max_attempts: int
    last_reason: str
    base_delay_s: float
    jitter_cap_s: float


@dataclass(frozen=True)
class ReconnectResult:
    outcome: ReconnectOutcome
    attempts: int
    message: Optional[str] = None


AttemptCallback = Callable[[int, int], Awaitable[None]]
SleepFn = Callable[[float], Awaitable[None]]


class ReconnectSupervisor:
    def __init__(
        self,
        *,
        engine: SessionEngine,
        is_current: Callable[[str], bool],
        policy: BackoffPolicy = BackoffPolicy(),
        on_attempt: Optional[AttemptCallback] = None,
        sleep: SleepFn = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._engine = engine
        self._is_current = is_current
        self._policy = policy
        self._on_attempt = on_attempt
        self._sleep = sleep
        self._rng = rng

    @property
    def policy(self) -> BackoffPolicy:
        return self._policy

    async def run(
        self,
        *,
        session_id: str,
        config: SessionConfig,
        reason: str,
        error: Optional[ServiceError] = None,
    ) -> ReconnectResult:
        ctx = ReconnectContext(
            session_id=session_id,
            max_attempts=self._policy.max_attempts,
            last_reason=reason,
            base_delay_s=self._policy.base_delay_s,
            jitter_cap_s=self._policy.jitter_cap_s,
        )

        classification = classify_failure(error)
        if classification.is_fatal:
            log_event({
                "level": "WARNING",
                "event_type": "RECONNECT_SKIPPED_FATAL",
                "session_id": session_id,
                "reason": reason,
                "message": classification.user_message,
            })
            return ReconnectResult(ReconnectOutcome.FATAL, 0, classification.user_message)

        attempt = reset_attempt()
        while self._policy.should_retry(attempt):
            attempt = next_attempt(attempt)

            if not self._is_current(session_id):
                return self._superseded(ctx, attempt.attempt - 1)

            if self._on_attempt is not None:
                await self._on_attempt(attempt.attempt, ctx.max_attempts)

            delay_s = self._policy.delay_for(attempt.attempt, rng=self._rng)
            log_event({
                "event_type": "RECONNECT_ATTEMPT_SCHEDULED",
                "session_id": session_id,
                "attempt": attempt.attempt,
                "max_attempts": ctx.max_attempts,
                "delay_s": round(delay_s, 3),
                "last_reason": ctx.last_reason,
            })
            await self._sleep(delay_s)

            if not self._is_current(session_id):
                return self._superseded(ctx, attempt.attempt)

            try:
                await self._engine.connect(config, session_id=session_id)
            except FatalServiceError as e:
                log_event({
                    "level": "WARNING",
                    "event_type": "RECONNECT_FATAL",
                    "session_id": session_id,
                    "attempt": attempt.attempt,
                    "error": str(e),
                })
                return ReconnectResult(
                    ReconnectOutcome.FATAL, attempt.attempt, e.error.user_message
                )
            except SessionConnectError as e:
                log_event({
                    "level": "WARNING",
                    "event_type": "RECONNECT_ATTEMPT_FAILED",
                    "session_id": session_id,
                    "attempt": attempt.attempt,
                    "error": str(e),
                })
                continue

            if not self._is_current(session_id):
                await self._engine.disconnect()
                return self._superseded(ctx, attempt.attempt)

            log_event({
                "event_type": "RECONNECT_SUCCEEDED",
                "session_id": session_id,
                "attempt": attempt.attempt,
            })
            return ReconnectResult(ReconnectOutcome.RECONNECTED, attempt.attempt)

        log_event({
            "level": "WARNING",
            "event_type": "RECONNECT_EXHAUSTED",
            "session_id": session_id,
            "attempts": attempt.attempt,
            "last_reason": ctx.last_reason,
        })
        return ReconnectResult(ReconnectOutcome.FAILED, attempt.attempt, "Reconnect failed")

    def _superseded(self, ctx: ReconnectContext, attempts: int) -> ReconnectResult:
        log_event({
            "event_type": "RECONNECT_SUPERSEDED",
            "session_id": ctx.session_id,
            "attempts": attempts,
        })
        return ReconnectResult(ReconnectOutcome.SUPERSEDED, attempts)
