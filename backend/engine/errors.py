"""
Error taxonomy for the dictation core.

Propagation rules:
- ConfigurationError is raised before a session starts and is never retried.
- SessionConnectError (and ConnectionTimeout) are retried by the reconnection
  supervisor unless the last service error is fatal.
- ProtocolError never leaves the receive loop: the offending message is logged
  and skipped.
- FatalServiceError ends the session immediately, no retry.
- InjectionError moves the controller to ERROR; the transcript is kept.
"""

from __future__ import annotations

from dataclasses import dataclass


# -------------------------
# Exceptions
# -------------------------

class DictationError(Exception):
    """Base class for all dictation core errors."""


class ConfigurationError(DictationError):
    """
    Raised when the session configuration is unusable.

    Examples: missing credential, silence threshold out of range.
    """


class SessionConnectError(DictationError):
    """Raised when the handshake with the remote service fails."""


class ConnectionTimeout(SessionConnectError):
    """Raised when connect or the session-ready wait exceeds its deadline."""

    def __init__(self, message: str = "Connection timed out") -> None:
        super().__init__(message)


class NotConnectedError(DictationError):
    """Raised when audio or a commit is sent without an open transport."""

    def __init__(self, message: str = "Transcription engine not connected") -> None:
        super().__init__(message)


class ProtocolError(DictationError):
    """
    Raised when an inbound message is malformed or has an unexpected shape.

    Only the offending message is affected; the session continues.
    """


class FatalServiceError(DictationError):
    """Raised when the remote service rejects the session for a non-retryable reason."""

    def __init__(self, error: ServiceError) -> None:
        super().__init__(error.describe())
        self.error = error


class InjectionError(DictationError):
    """Raised by a text injector that failed to place the transcript."""


# -------------------------
# Service error value
# -------------------------

_FATAL_CODES: dict[str, str] = {
    "invalid_api_key": "Invalid API key",
    "authentication_error": "Invalid API key",
    "unauthorized": "Invalid API key",
    "model_not_found": "Model not available",
    "insufficient_quota": "API quota exceeded",
    "billing_error": "API quota exceeded",
}

_FATAL_MESSAGE_HINTS: tuple[tuple[str, str], ...] = (
    ("invalid api key", "Invalid API key"),
    ("authentication", "Invalid API key"),
    ("unauthorized", "Invalid API key"),
    ("model not found", "Model not available"),
    ("billing", "API quota exceeded"),
    ("quota", "API quota exceeded"),
)


@dataclass(frozen=True)
class ServiceError:
    """
    Error reported by the remote service in an `error` message.

    code:
        Optional machine-readable code (e.g. "invalid_api_key").
    message:
        Human-readable message as sent by the service.
    """
    code: str | None
    message: str

    @property
    def fatal_reason(self) -> str | None:
        """
        User-facing reason if this error is fatal, else None.

        Codes are checked first, then message heuristics.
        """
        if self.code is not None:
            reason = _FATAL_CODES.get(self.code.lower())
            if reason is not None:
                return reason

        lower = self.message.lower()
        for hint, reason in _FATAL_MESSAGE_HINTS:
            if hint in lower:
                return reason
        return None

    @property
    def is_fatal(self) -> bool:
        return self.fatal_reason is not None

    @property
    def user_message(self) -> str:
        return self.fatal_reason or self.message

    @property
    def recovery_hint(self) -> str | None:
        """Short hint for the user, keyed on the error code."""
        if self.code is None:
            return None
        code = self.code.lower()
        if "invalid_api_key" in code or "authentication" in code:
            return "Check OPENAI_API_KEY environment variable"
        if "insufficient_quota" in code or "billing" in code:
            return "Check your account billing status"
        if "model_not_found" in code:
            return "Update the model name in your configuration"
        if "rate_limit" in code:
            return "Wait a moment and try again"
        return None

    def describe(self) -> str:
        if self.code:
            return f"[{self.code}] {self.message}"
        return self.message
