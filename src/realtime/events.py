"""Realtime endpoint event framing.

Client events are plain dicts ready for ``json.dumps``. Server events are
classified into the small set of typed events the turn arbiter reacts to.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Union

LOGGER = logging.getLogger(__name__)

ACTIVE_RESPONSE_CONFLICT = "conversation_already_has_active_response"
CANCEL_NOT_ACTIVE = "response_cancel_not_active"

AUDIO_DELTA_TYPES = frozenset({"response.audio.delta", "response.output_audio.delta"})


@dataclass(frozen=True, slots=True)
class SpeechStarted:
    pass


@dataclass(frozen=True, slots=True)
class SpeechStopped:
    pass


@dataclass(frozen=True, slots=True)
class InputCommitted:
    item_id: str | None = None


@dataclass(frozen=True, slots=True)
class ResponseCreated:
    response_id: str | None = None


@dataclass(frozen=True, slots=True)
class AudioDelta:
    payload: str
    response_id: str | None = None


@dataclass(frozen=True, slots=True)
class ResponseDone:
    response_id: str | None = None
    status: str | None = None


@dataclass(frozen=True, slots=True)
class EndpointError:
    code: str | None = None
    message: str | None = None

    @property
    def is_active_response_conflict(self) -> bool:
        return self.code == ACTIVE_RESPONSE_CONFLICT

    @property
    def is_cancel_not_active(self) -> bool:
        return self.code == CANCEL_NOT_ACTIVE


ServerEvent = Union[
    SpeechStarted,
    SpeechStopped,
    InputCommitted,
    ResponseCreated,
    AudioDelta,
    ResponseDone,
    EndpointError,
]


def session_update(
    *,
    instructions: str,
    voice: str,
    audio_format: str,
    turn_detection: dict[str, Any] | None,
) -> dict[str, Any]:
    return {
        "type": "session.update",
        "session": {
            "modalities": ["audio", "text"],
            "instructions": instructions,
            "voice": voice,
            "input_audio_format": audio_format,
            "output_audio_format": audio_format,
            "turn_detection": turn_detection,
        },
    }


def append_audio(payload: str) -> dict[str, Any]:
    return {"type": "input_audio_buffer.append", "audio": payload}


def commit_input() -> dict[str, Any]:
    return {"type": "input_audio_buffer.commit"}


def clear_input() -> dict[str, Any]:
    return {"type": "input_audio_buffer.clear"}


def create_response() -> dict[str, Any]:
    return {"type": "response.create"}


def cancel_response(response_id: str | None = None) -> dict[str, Any]:
    message: dict[str, Any] = {"type": "response.cancel"}
    if response_id:
        message["response_id"] = response_id
    return message


def parse_server_event(event: dict[str, Any]) -> ServerEvent | None:
    """Classify a decoded server event; return None for events the relay ignores."""

    event_type = event.get("type")

    if event_type in AUDIO_DELTA_TYPES:
        payload = event.get("delta")
        if not isinstance(payload, str) or not payload:
            return None
        return AudioDelta(payload=payload, response_id=event.get("response_id"))

    if event_type == "input_audio_buffer.speech_started":
        return SpeechStarted()
    if event_type == "input_audio_buffer.speech_stopped":
        return SpeechStopped()
    if event_type == "input_audio_buffer.committed":
        return InputCommitted(item_id=event.get("item_id"))

    if event_type == "response.created":
        response = event.get("response") or {}
        return ResponseCreated(response_id=response.get("id"))
    if event_type == "response.done":
        response = event.get("response") or {}
        return ResponseDone(response_id=response.get("id"), status=response.get("status"))

    if event_type == "error":
        error = event.get("error") or {}
        if not isinstance(error, dict):
            error = {"message": str(error)}
        return EndpointError(code=error.get("code"), message=error.get("message"))

    if event_type in {"session.created", "session.updated"}:
        LOGGER.debug("Realtime %s acknowledged", event_type)
    return None
