"""
JSONL event logger.

- Write one JSON object per line
- Output to stdout
- No buffering, no batching
- No side effects beyond logging
- DEBUG events are dropped unless the configured level allows them
- The whole stream can be switched off (ENABLE_JSON_LOGS=0)
"""

from __future__ import annotations

import json
import sys
import time
from typing import Any, Mapping, Callable


_LEVELS: dict[str, int] = {
    "DEBUG": 10,
    "INFO": 20,
    "WARNING": 30,
    "ERROR": 40,
}


# ------------------------------------------------------------------
# Explicit output sink (patchable in tests)
# ------------------------------------------------------------------

def _stdout_print(line: str) -> None:
    sys.stdout.write(line + "\n")
    sys.stdout.flush()

_print: Callable[[str], None] = _stdout_print

_threshold: int = _LEVELS["INFO"]
_enabled: bool = True


def set_log_level(level: str) -> None:
    """
    Set the minimum level that reaches the sink.

    Unknown level names fall back to INFO.
    """
    global _threshold  # pylint: disable=global-statement
    _threshold = _LEVELS.get(level.upper(), _LEVELS["INFO"])


def set_json_logs(enabled: bool) -> None:
    """Turn JSONL output on or off. Off means log_event writes nothing."""
    global _enabled  # pylint: disable=global-statement
    _enabled = enabled


def now_ms() -> int:
    """Wall-clock milliseconds for event timestamps."""
    return time.time_ns() // 1_000_000


def log_event(event: Mapping[str, Any]) -> None:
    """
    Write a single JSONL event to stdout.

    The caller supplies a fully-formed event dict (event_type, session_id,
    details...). `level` defaults to INFO; `ts_ms` is filled in when absent.

    This function:
    - Serializes to JSON
    - Writes at most one line
    - Flushes immediately (no buffering)
    - Never raises
    """
    if not _enabled:
        return

    level = str(event.get("level", "INFO")).upper()
    if _LEVELS.get(level, _LEVELS["INFO"]) < _threshold:
        return

    payload: dict[str, Any] = dict(event)
    payload.setdefault("ts_ms", now_ms())

    try:
        line = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    except (TypeError, ValueError) as e:
        # Last-resort fallback: logging must never crash the runtime
        fallback: dict[str, Any] = {
            "ts_ms": payload.get("ts_ms"),
            "event_type": "LOGGER_SERIALIZATION_ERROR",
            "error": str(e),
            "original_event_repr": repr(event),
        }
        line = json.dumps(fallback, ensure_ascii=False, separators=(",", ":"))

    _print(line)
