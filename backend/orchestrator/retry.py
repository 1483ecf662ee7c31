"""
Retry policy helpers.

Purpose:
- Centralize reconnection rules (classification, attempt limit, backoff)
- Keep the reducer pure
- Allow the reconnection supervisor to make deterministic decisions

This module contains NO timers, NO async, NO side effects.
Randomness is injected (random.Random) so delays are reproducible in tests.
"""
from __future__ import annotations

import random
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from constants import (
    RECONNECT_BASE_DELAY_S,
    RECONNECT_JITTER_CAP_S,
    RECONNECT_MAX_ATTEMPTS,
)
from engine.errors import FatalServiceError, ServiceError


# =============================================================================
# Failure Types
# =============================================================================

class FailureType(str, Enum):
    """
    Failure classification used by retry policy.

    FATAL:
        Credential, quota/billing, or unknown-model failure.
        Retrying cannot help. Never retried.

    TRANSIENT:
        Everything else: timeouts, dropped connections, server errors,
        rate limiting. Retried with backoff.
    """

    FATAL = "fatal"
    TRANSIENT = "transient"


@dataclass(frozen=True)
class FailureClassification:
    failure: FailureType
    user_message: Optional[str] = None

    @property
    def is_fatal(self) -> bool:
        return self.failure is FailureType.FATAL


def classify_failure(
    error: Optional[ServiceError] = None,
    exc: Optional[BaseException] = None,
) -> FailureClassification:
    """
    Classify the condition that ended a connection.

    error: last service error seen on the connection, if any
    exc:   exception raised by a connect attempt, if any
    """
    if isinstance(exc, FatalServiceError):
        error = exc.error

    if error is not None and error.is_fatal:
        return FailureClassification(FailureType.FATAL, error.user_message)

    return FailureClassification(FailureType.TRANSIENT)


# =============================================================================
# Retry State
# =============================================================================

@dataclass(frozen=True)
class RetryAttempt:
    """
    Immutable reconnect attempt counter.

    Semantics:
    - attempt == 0: no reconnect attempted yet
    - attempt >= 1: the Nth reconnect attempt
    """
    attempt: int


def next_attempt(current: RetryAttempt) -> RetryAttempt:
    return RetryAttempt(attempt=current.attempt + 1)


def reset_attempt() -> RetryAttempt:
    """Returns a fresh retry attempt counter."""
    return RetryAttempt(attempt=0)


# =============================================================================
# Policy
# =============================================================================

@dataclass(frozen=True)
class BackoffPolicy:
    """
    Exponential backoff with bounded jitter.

        delay(n) = base_delay_s * 2**(n-1) + jitter,   jitter in [0, jitter_cap_s)

    With the defaults: 0.5s, 1.0s, 2.0s (+ jitter < 0.3s), then give up.
    """
    max_attempts: int = RECONNECT_MAX_ATTEMPTS
    base_delay_s: float = RECONNECT_BASE_DELAY_S
    jitter_cap_s: float = RECONNECT_JITTER_CAP_S

    def should_retry(self, attempt: RetryAttempt) -> bool:
        """
        True if another attempt is allowed.

        attempt = number of reconnect attempts already performed
        """
        return attempt.attempt < self.max_attempts

    def base_delay_for(self, attempt: int) -> float:
        """Delay before attempt N (1-based), without jitter."""
        if attempt < 1:
            raise ValueError("attempt is 1-based")
        return self.base_delay_s * (2 ** (attempt - 1))

    def delay_for(self, attempt: int, *, rng: Optional[random.Random] = None) -> float:
        """Delay before attempt N (1-based), with jitter drawn from [0, jitter_cap_s)."""
        r = rng if rng is not None else random
        jitter = r.random() * self.jitter_cap_s if self.jitter_cap_s > 0 else 0.0
        return self.base_delay_for(attempt) + jitter
