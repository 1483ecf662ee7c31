"""
Application configuration.

Responsibilities:
- Read environment variables
- Provide typed, immutable config objects
- Validate ranges before a session starts

Non-responsibilities:
- No config-file loading (external collaborator)
- No protocol constants
- No runtime mutation
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from constants import (
    DEFAULT_HOTKEY_INTERVAL_MS,
    DEFAULT_MODEL,
    DEFAULT_SILENCE_THRESHOLD_MS,
    DEFAULT_TRANSCRIPTION_PROMPT,
    HOTKEY_INTERVAL_MAX_MS,
    HOTKEY_INTERVAL_MIN_MS,
    OPENAI_REALTIME_URL,
    SILENCE_THRESHOLD_MAX_MS,
    SILENCE_THRESHOLD_MIN_MS,
    TURN_DETECTION_MODE,
    TURN_DETECTION_PREFIX_PADDING_MS,
    TURN_DETECTION_SILENCE_DURATION_MS,
    TURN_DETECTION_THRESHOLD,
)
from engine.errors import ConfigurationError


def resolve_env_value(value: str | None) -> str:
    """
    Resolve `env:NAME` indirection.

    "env:OPENAI_API_KEY" -> value of $OPENAI_API_KEY (or "" if unset).
    Any other string is returned unchanged.
    """
    if value is None:
        return ""
    if value.startswith("env:"):
        return os.environ.get(value[4:], "")
    return value


@dataclass(frozen=True)
class TurnDetection:
    """Server-side turn detection thresholds sent in session.configure."""
    mode: str = TURN_DETECTION_MODE
    threshold: float = TURN_DETECTION_THRESHOLD
    prefix_padding_ms: int = TURN_DETECTION_PREFIX_PADDING_MS
    silence_duration_ms: int = TURN_DETECTION_SILENCE_DURATION_MS


@dataclass(frozen=True)
class SessionConfig:
    """
    Immutable configuration snapshot taken when a session starts.

    Sessions never observe later changes to AppConfig.
    """

    api_key: str
    model: str = DEFAULT_MODEL
    language: str | None = None
    prompt: str = DEFAULT_TRANSCRIPTION_PROMPT
    endpoint_url: str = OPENAI_REALTIME_URL
    turn_detection: TurnDetection = field(default_factory=TurnDetection)
    silence_threshold_ms: int = DEFAULT_SILENCE_THRESHOLD_MS

    # Consumed by the external hotkey collaborator, validated here only.
    hotkey_interval_ms: int = DEFAULT_HOTKEY_INTERVAL_MS

    @property
    def silence_timeout_s(self) -> float:
        return self.silence_threshold_ms / 1000.0

    def validate(self) -> None:
        """
        Reject unusable configuration before any session starts.

        Raises:
            ConfigurationError with a human-readable description.
        """
        if not self.api_key:
            raise ConfigurationError("OPENAI_API_KEY is not set")

        if not self.model:
            raise ConfigurationError("Model name cannot be empty")

        if not (
            SILENCE_THRESHOLD_MIN_MS
            <= self.silence_threshold_ms
            <= SILENCE_THRESHOLD_MAX_MS
        ):
            raise ConfigurationError(
                f"Silence threshold {self.silence_threshold_ms}ms is out of range "
                f"({SILENCE_THRESHOLD_MIN_MS}-{SILENCE_THRESHOLD_MAX_MS}ms)"
            )

        if not (
            HOTKEY_INTERVAL_MIN_MS
            <= self.hotkey_interval_ms
            <= HOTKEY_INTERVAL_MAX_MS
        ):
            raise ConfigurationError(
                f"Hotkey interval {self.hotkey_interval_ms}ms is out of range "
                f"({HOTKEY_INTERVAL_MIN_MS}-{HOTKEY_INTERVAL_MAX_MS}ms)"
            )


@dataclass(frozen=True)
class AppConfig:
    """
    Immutable application configuration.

    Constructed once at process startup and passed downward
    (controller, CLI). No process-wide singleton.
    """

    # ------------------------------------------------------------------
    # Environment
    # ------------------------------------------------------------------

    log_level: str

    # ------------------------------------------------------------------
    # Remote transcription service
    # ------------------------------------------------------------------

    api_key: str
    model: str
    language: str | None
    endpoint_url: str
    wire_dialect: str

    # ------------------------------------------------------------------
    # Endpointing / hotkey
    # ------------------------------------------------------------------

    silence_threshold_ms: int
    hotkey_interval_ms: int

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    enable_json_logs: bool

    # ------------------------------------------------------------------
    # Factory
    # ------------------------------------------------------------------

    @staticmethod
    def load_from_env() -> AppConfig:
        """
        Load configuration from environment variables.

        Raises:
            ConfigurationError if a numeric variable is not an integer.
        """
        raw_key = os.environ.get("DICTATION_API_KEY", "env:OPENAI_API_KEY")
        return AppConfig(
            log_level=os.environ.get("LOG_LEVEL", "INFO"),

            api_key=resolve_env_value(raw_key),
            model=os.environ.get("DICTATION_MODEL", DEFAULT_MODEL),
            language=os.environ.get("DICTATION_LANGUAGE") or None,
            endpoint_url=os.environ.get("DICTATION_ENDPOINT_URL", OPENAI_REALTIME_URL),
            wire_dialect=os.environ.get("DICTATION_WIRE_DIALECT", "openai"),

            silence_threshold_ms=_int_from_env(
                "DICTATION_SILENCE_THRESHOLD_MS", DEFAULT_SILENCE_THRESHOLD_MS
            ),
            hotkey_interval_ms=_int_from_env(
                "DICTATION_HOTKEY_INTERVAL_MS", DEFAULT_HOTKEY_INTERVAL_MS
            ),

            enable_json_logs=os.environ.get("ENABLE_JSON_LOGS", "1") == "1",
        )

    def session_config(self) -> SessionConfig:
        """Snapshot the per-session part of this configuration."""
        return SessionConfig(
            api_key=self.api_key,
            model=self.model,
            language=self.language,
            endpoint_url=self.endpoint_url,
            silence_threshold_ms=self.silence_threshold_ms,
            hotkey_interval_ms=self.hotkey_interval_ms,
        )


def _int_from_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e
