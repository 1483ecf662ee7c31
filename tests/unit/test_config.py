# pylint: disable=missing-module-docstring,missing-function-docstring

import pytest

from config import AppConfig, SessionConfig, resolve_env_value
from engine.errors import ConfigurationError


def test_defaults_are_valid() -> None:
    config = SessionConfig(api_key="sk-test")
    config.validate()

    assert config.model == "gpt-4o-transcribe"
    assert config.silence_threshold_ms == 10_000
    assert config.silence_timeout_s == 10.0


def test_missing_api_key_rejected() -> None:
    with pytest.raises(ConfigurationError, match="OPENAI_API_KEY"):
        SessionConfig(api_key="").validate()


def test_empty_model_rejected() -> None:
    with pytest.raises(ConfigurationError):
        SessionConfig(api_key="k", model="").validate()


@pytest.mark.parametrize("value", [999, 60_001])
def test_silence_threshold_out_of_range(value: int) -> None:
    with pytest.raises(ConfigurationError, match="Silence threshold"):
        SessionConfig(api_key="k", silence_threshold_ms=value).validate()


@pytest.mark.parametrize("value", [1_000, 60_000])
def test_silence_threshold_bounds_inclusive(value: int) -> None:
    SessionConfig(api_key="k", silence_threshold_ms=value).validate()


@pytest.mark.parametrize("value", [99, 1_001])
def test_hotkey_interval_out_of_range(value: int) -> None:
    with pytest.raises(ConfigurationError, match="Hotkey interval"):
        SessionConfig(api_key="k", hotkey_interval_ms=value).validate()


def test_env_indirection(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MY_KEY", "sk-from-env")

    assert resolve_env_value("env:MY_KEY") == "sk-from-env"
    assert resolve_env_value("env:UNSET_KEY_FOR_TEST") == ""
    assert resolve_env_value("literal") == "literal"
    assert resolve_env_value(None) == ""


def test_load_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("DICTATION_API_KEY", raising=False)
    monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
    monkeypatch.setenv("DICTATION_LANGUAGE", "fr")
    monkeypatch.setenv("DICTATION_SILENCE_THRESHOLD_MS", "5000")
    monkeypatch.setenv("DICTATION_WIRE_DIALECT", "abstract")
    monkeypatch.setenv("ENABLE_JSON_LOGS", "0")

    app = AppConfig.load_from_env()
    session = app.session_config()

    assert app.wire_dialect == "abstract"
    assert app.enable_json_logs is False
    assert session.api_key == "sk-env"
    assert session.language == "fr"
    assert session.silence_threshold_ms == 5_000
    session.validate()


def test_load_from_env_rejects_non_integer(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DICTATION_SILENCE_THRESHOLD_MS", "soon")

    with pytest.raises(ConfigurationError):
        AppConfig.load_from_env()
