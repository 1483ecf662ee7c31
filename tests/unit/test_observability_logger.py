# pylint: disable=missing-module-docstring,missing-function-docstring

import json
from typing import Any

import pytest

from observability import logger


@pytest.fixture(autouse=True)
def _restore_level():
    yield
    logger.set_log_level("INFO")
    logger.set_json_logs(True)


def test_log_event_emits_valid_jsonl(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """
    - log_event emits exactly one JSONL line
    - payload is serialized as-is (plus ts_ms when absent)
    - output sink is patchable
    """
    captured: list[str] = []

    def fake_print(line: str) -> None:
        captured.append(line)

    monkeypatch.setattr(logger, "_print", fake_print)

    payload: dict[str, Any] = {
        "ts_ms": 42,
        "event_type": "TEST",
        "session_id": "sess_1",
        "value": 123,
    }

    logger.log_event(payload)

    assert len(captured) == 1
    assert "\n" not in captured[0]
    assert json.loads(captured[0]) == payload


def test_log_event_fills_missing_timestamp(captured_logs) -> None:
    logger.log_event({"event_type": "TEST"})

    assert len(captured_logs) == 1
    assert isinstance(captured_logs[0]["ts_ms"], int)
    assert captured_logs[0]["ts_ms"] > 0


def test_log_event_does_not_mutate_input(captured_logs) -> None:
    payload = {"event_type": "TEST"}
    logger.log_event(payload)

    assert payload == {"event_type": "TEST"}


def test_debug_events_suppressed_by_default(captured_logs) -> None:
    logger.log_event({"event_type": "QUIET", "level": "DEBUG"})
    logger.log_event({"event_type": "LOUD", "level": "WARNING"})

    assert [e["event_type"] for e in captured_logs] == ["LOUD"]


def test_set_log_level_enables_debug(captured_logs) -> None:
    logger.set_log_level("debug")
    logger.log_event({"event_type": "QUIET", "level": "DEBUG"})

    assert [e["event_type"] for e in captured_logs] == ["QUIET"]


def test_set_log_level_unknown_falls_back_to_info(captured_logs) -> None:
    logger.set_log_level("chatty")
    logger.log_event({"event_type": "QUIET", "level": "DEBUG"})
    logger.log_event({"event_type": "NORMAL"})

    assert [e["event_type"] for e in captured_logs] == ["NORMAL"]


def test_unserializable_payload_never_raises(captured_logs) -> None:
    logger.log_event({"event_type": "BAD", "obj": object()})

    assert len(captured_logs) == 1
    assert captured_logs[0]["event_type"] == "LOGGER_SERIALIZATION_ERROR"
    assert "BAD" in captured_logs[0]["original_event_repr"]


def test_disabled_json_logs_write_nothing(captured_logs) -> None:
    logger.set_json_logs(False)
    logger.log_event({"event_type": "HIDDEN", "level": "ERROR"})
    logger.set_json_logs(True)
    logger.log_event({"event_type": "SHOWN"})

    assert [e["event_type"] for e in captured_logs] == ["SHOWN"]
