# backend/protocol/messages.py
"""
JSON wire messages for the realtime transcription session.

Every message is a JSON object with a `type` discriminator.

Client -> Server:
    session.configure   model, prompt, optional language, turn detection
    audio.append        base64 PCM16LE mono @ AUDIO_SAMPLE_RATE_HZ
    audio.commit        flush signal, no payload

Server -> Client:
    session.created     session ready (gates audio)
    session.updated
    transcript.delta    {"delta": "..."}
    segment.completed   {"transcript": "..."} (informational)
    speech.started / speech.stopped
    audio.committed
    error               {"code": "...", "message": "..."}

Two dialects share one decoded representation:
- ABSTRACT uses the names above verbatim.
- OPENAI_REALTIME uses the OpenAI realtime transcription names
  (transcription_session.*, input_audio_buffer.*,
  conversation.item.input_audio_transcription.*), and nests error details
  under an `error` object.

Usage example:

    raw = encode_session_configure(config, dialect=WireDialect.OPENAI_REALTIME)
    await transport.send_text(raw)

    msg = decode_message(incoming, dialect=WireDialect.OPENAI_REALTIME)
    if msg is not None and msg.kind is InboundKind.TRANSCRIPT_DELTA:
        accumulator.apply_delta(msg.text)
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

import numpy as np

from audio.pcm import encode_audio_b64
from config import SessionConfig
from engine.errors import ProtocolError, ServiceError


class WireDialect(str, Enum):
    ABSTRACT = "abstract"
    OPENAI_REALTIME = "openai"


class InboundKind(str, Enum):
    """
    Decoded inbound message kinds (dialect independent).
    """
    SESSION_CREATED = "session.created"
    SESSION_UPDATED = "session.updated"
    TRANSCRIPT_DELTA = "transcript.delta"
    SEGMENT_COMPLETED = "segment.completed"
    SPEECH_STARTED = "speech.started"
    SPEECH_STOPPED = "speech.stopped"
    AUDIO_COMMITTED = "audio.committed"
    ERROR = "error"


class OutboundKind(str, Enum):
    SESSION_CONFIGURE = "session.configure"
    AUDIO_APPEND = "audio.append"
    AUDIO_COMMIT = "audio.commit"


# -------------------------
# Dialect name tables
# -------------------------

_OPENAI_OUTBOUND: dict[OutboundKind, str] = {
    OutboundKind.SESSION_CONFIGURE: "transcription_session.update",
    OutboundKind.AUDIO_APPEND: "input_audio_buffer.append",
    OutboundKind.AUDIO_COMMIT: "input_audio_buffer.commit",
}

_OPENAI_INBOUND: dict[str, InboundKind] = {
    "transcription_session.created": InboundKind.SESSION_CREATED,
    "transcription_session.updated": InboundKind.SESSION_UPDATED,
    "conversation.item.input_audio_transcription.delta": InboundKind.TRANSCRIPT_DELTA,
    "conversation.item.input_audio_transcription.completed": InboundKind.SEGMENT_COMPLETED,
    "input_audio_buffer.speech_started": InboundKind.SPEECH_STARTED,
    "input_audio_buffer.speech_stopped": InboundKind.SPEECH_STOPPED,
    "input_audio_buffer.committed": InboundKind.AUDIO_COMMITTED,
    "error": InboundKind.ERROR,
}

_ABSTRACT_INBOUND: dict[str, InboundKind] = {k.value: k for k in InboundKind}


def _outbound_type(kind: OutboundKind, dialect: WireDialect) -> str:
    if dialect is WireDialect.OPENAI_REALTIME:
        return _OPENAI_OUTBOUND[kind]
    return kind.value


def _dumps(payload: dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


# -------------------------
# Outbound
# -------------------------

def encode_session_configure(config: SessionConfig, *, dialect: WireDialect) -> str:
    """Build the session configuration message sent right after connect."""
    td = config.turn_detection
    turn_detection = {
        "type": td.mode,
        "threshold": td.threshold,
        "prefix_padding_ms": td.prefix_padding_ms,
        "silence_duration_ms": td.silence_duration_ms,
    }

    transcription: dict[str, Any] = {
        "model": config.model,
        "prompt": config.prompt,
    }
    if config.language:
        transcription["language"] = config.language

    if dialect is WireDialect.OPENAI_REALTIME:
        return _dumps({
            "type": _outbound_type(OutboundKind.SESSION_CONFIGURE, dialect),
            "session": {
                "input_audio_format": "pcm16",
                "input_audio_transcription": transcription,
                "turn_detection": turn_detection,
            },
        })

    return _dumps({
        "type": OutboundKind.SESSION_CONFIGURE.value,
        "input_audio_format": "pcm16",
        **transcription,
        "turn_detection": turn_detection,
    })


def encode_audio_append(samples: np.ndarray, *, dialect: WireDialect) -> str:
    """Wrap one block of float32 samples as a base64 PCM16 append message."""
    return _dumps({
        "type": _outbound_type(OutboundKind.AUDIO_APPEND, dialect),
        "audio": encode_audio_b64(samples),
    })


def encode_audio_commit(*, dialect: WireDialect) -> str:
    return _dumps({"type": _outbound_type(OutboundKind.AUDIO_COMMIT, dialect)})


# -------------------------
# Inbound
# -------------------------

@dataclass(frozen=True)
class InboundMessage:
    """
    Decoded server message.

    text:
        Delta fragment for TRANSCRIPT_DELTA, segment transcript for
        SEGMENT_COMPLETED, else None.
    error:
        ServiceError for ERROR, else None.
    raw_type:
        The `type` string exactly as received.
    """
    kind: InboundKind
    raw_type: str
    text: Optional[str] = None
    error: Optional[ServiceError] = None


def decode_message(raw: str | bytes, *, dialect: WireDialect) -> Optional[InboundMessage]:
    """
    Decode one inbound text (or UTF-8 binary) message.

    Returns:
        InboundMessage, or None for a well-formed message of unknown type.

    Raises:
        ProtocolError if the message is not a JSON object with a string
        `type`, or a known type is missing its required payload.
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError(f"binary message is not UTF-8: {e}") from e

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"invalid JSON: {e.msg}") from e

    if not isinstance(data, dict):
        raise ProtocolError("message is not a JSON object")

    raw_type = data.get("type")
    if not isinstance(raw_type, str):
        raise ProtocolError("message has no string `type`")

    table = _OPENAI_INBOUND if dialect is WireDialect.OPENAI_REALTIME else _ABSTRACT_INBOUND
    kind = table.get(raw_type)
    if kind is None:
        return None

    if kind is InboundKind.TRANSCRIPT_DELTA:
        return InboundMessage(kind=kind, raw_type=raw_type, text=_require_str(data, "delta"))

    if kind is InboundKind.SEGMENT_COMPLETED:
        return InboundMessage(kind=kind, raw_type=raw_type, text=_require_str(data, "transcript"))

    if kind is InboundKind.ERROR:
        return InboundMessage(kind=kind, raw_type=raw_type, error=_decode_error(data))

    return InboundMessage(kind=kind, raw_type=raw_type)


def _require_str(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str):
        raise ProtocolError(f"{data.get('type')}: missing string field `{key}`")
    return value


def _decode_error(data: dict[str, Any]) -> ServiceError:
    # Nested {"error": {...}} (OpenAI) or flat {"code", "message"}
    details = data.get("error")
    if not isinstance(details, dict):
        details = data

    message = details.get("message")
    if not isinstance(message, str):
        raise ProtocolError("error: missing string field `message`")

    code = details.get("code")
    if code is not None and not isinstance(code, str):
        code = str(code)

    return ServiceError(code=code, message=message)
