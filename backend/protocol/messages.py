# backend/protocol/messages.py
"""
JSON text records exchanged over the session WebSocket.

Client → Server control:
    {"type": "pause" | "resume" | "stop" | "end_utterance"}

Server → Client (camelCase keys, one JSON object per text message):
    {"type": "session", "sessionId", "inputAudio", "outputAudio", "state"}
    {"type": "transcript", "text", "isFinal", "utteranceId"}
    {"type": "reply_chunk", "text", "replyId", "sequenceNumber"}
    {"type": "audio_chunk", "data": <base64>, "replyId", "sequenceNumber", "isFinal"}
    {"type": "error", "message"}
    {"type": "state", "value"}

Builders are pure; the reducer uses them to shape SendToClient payloads.
"""

from __future__ import annotations

import base64
import json
from enum import Enum
from typing import Any, Mapping

from constants import AudioFormat


# -------------------------
# Client → Server
# -------------------------

class ControlType(str, Enum):
    """Client control record types."""
    PAUSE = "pause"
    RESUME = "resume"
    STOP = "stop"
    END_UTTERANCE = "end_utterance"


class InvalidControlMessage(ValueError):
    """Inbound text record is not valid JSON or not a known control."""


def parse_control(payload: str) -> ControlType:
    """
    Parse one inbound text record.

    Raises:
        InvalidControlMessage for malformed JSON or unknown types.
    """
    try:
        data = json.loads(payload)
    except ValueError as exc:
        raise InvalidControlMessage(f"not JSON: {exc}") from exc

    if not isinstance(data, dict):
        raise InvalidControlMessage("control record must be a JSON object")

    raw_type = data.get("type")
    try:
        return ControlType(raw_type)
    except ValueError as exc:
        raise InvalidControlMessage(f"unknown control type: {raw_type!r}") from exc


# -------------------------
# Server → Client
# -------------------------

def encode(message: Mapping[str, Any]) -> str:
    """Compact JSON for the wire."""
    return json.dumps(message, ensure_ascii=False, separators=(",", ":"))


def session_message(
    *,
    session_id: str,
    input_audio: AudioFormat,
    output_audio: AudioFormat,
    state: str,
) -> dict[str, Any]:
    return {
        "type": "session",
        "sessionId": session_id,
        "inputAudio": input_audio.as_message(),
        "outputAudio": output_audio.as_message(),
        "state": state,
    }


def transcript_message(*, text: str, is_final: bool, utterance_id: str) -> dict[str, Any]:
    return {
        "type": "transcript",
        "text": text,
        "isFinal": is_final,
        "utteranceId": utterance_id,
    }


def reply_chunk_message(*, text: str, reply_id: str, sequence_number: int) -> dict[str, Any]:
    return {
        "type": "reply_chunk",
        "text": text,
        "replyId": reply_id,
        "sequenceNumber": sequence_number,
    }


def audio_chunk_message(
    *,
    data: bytes,
    reply_id: str,
    sequence_number: int,
    is_final: bool,
) -> dict[str, Any]:
    return {
        "type": "audio_chunk",
        "data": base64.b64encode(data).decode("ascii"),
        "replyId": reply_id,
        "sequenceNumber": sequence_number,
        "isFinal": is_final,
    }


def error_message(message: str) -> dict[str, Any]:
    return {"type": "error", "message": message}


def state_message(value: str) -> dict[str, Any]:
    return {"type": "state", "value": value}
