"""Twilio Media Streams websocket adapter.

Inbound frames are JSON objects discriminated by ``event``. Only ``start``,
``media`` (inbound track) and ``stop`` matter to the relay; everything else is
ignored. Audio payloads stay base64 text end to end.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Union

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

LOGGER = logging.getLogger(__name__)

INBOUND_TRACKS = frozenset({"inbound", "inbound_track"})


@dataclass(frozen=True, slots=True)
class SessionStarted:
    stream_sid: str
    call_sid: str | None = None
    custom_parameters: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class CallerAudio:
    payload: str
    received_at: float
    timestamp_ms: int | None = None
    voiced: bool = True


@dataclass(frozen=True, slots=True)
class SessionStopped:
    stream_sid: str | None = None


TelephonyEvent = Union[SessionStarted, CallerAudio, SessionStopped]


def _as_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_twilio_message(text: str | bytes) -> TelephonyEvent | None:
    """Classify one Twilio frame; return None for frames the relay ignores."""

    try:
        message = json.loads(text)
    except (json.JSONDecodeError, UnicodeDecodeError):
        LOGGER.warning("Discarding unparseable Twilio frame: %.64r", text)
        return None
    if not isinstance(message, dict):
        LOGGER.warning("Discarding non-object Twilio frame")
        return None

    event = str(message.get("event") or "")
    if event == "media":
        media = message.get("media") or {}
        if not isinstance(media, dict):
            return None
        track = media.get("track")
        if track and track not in INBOUND_TRACKS:
            return None
        payload = media.get("payload")
        if not isinstance(payload, str) or not payload:
            return None
        return CallerAudio(
            payload=payload,
            received_at=time.monotonic(),
            timestamp_ms=_as_int(media.get("timestamp")),
        )

    if event == "start":
        start = message.get("start") or {}
        if not isinstance(start, dict):
            start = {}
        stream_sid = message.get("streamSid") or start.get("streamSid")
        if not stream_sid:
            LOGGER.warning("Discarding Twilio start frame without streamSid")
            return None
        params = start.get("customParameters") or {}
        return SessionStarted(
            stream_sid=str(stream_sid),
            call_sid=start.get("callSid"),
            custom_parameters={str(k): str(v) for k, v in params.items()} if isinstance(params, dict) else {},
        )

    if event == "stop":
        return SessionStopped(stream_sid=message.get("streamSid"))

    # connected, mark, dtmf
    return None


def media_message(stream_sid: str, payload: str) -> dict[str, Any]:
    return {"event": "media", "streamSid": stream_sid, "media": {"payload": payload}}


def clear_message(stream_sid: str) -> dict[str, Any]:
    return {"event": "clear", "streamSid": stream_sid}


class TwilioMediaStream:
    """Inbound socket adapter around the accepted Twilio websocket."""

    def __init__(self, websocket: WebSocket) -> None:
        self._ws = websocket
        self._stream_sid: str | None = None
        self._closed = False

    @property
    def stream_sid(self) -> str | None:
        return self._stream_sid

    @property
    def closed(self) -> bool:
        return self._closed

    async def events(self) -> AsyncIterator[TelephonyEvent]:
        """Yield classified events until the caller hangs up or the socket closes."""

        while not self._closed:
            try:
                message = await self._ws.receive()
            except (WebSocketDisconnect, RuntimeError):
                return
            if message.get("type") == "websocket.disconnect":
                return

            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes")
            if raw is None:
                continue

            event = parse_twilio_message(raw)
            if event is None:
                continue
            if isinstance(event, SessionStarted):
                self._stream_sid = event.stream_sid
            yield event
            if isinstance(event, SessionStopped):
                return

    async def send_audio(self, payload: str) -> None:
        if self._stream_sid is None:
            LOGGER.debug("Dropping outbound audio before stream start")
            return
        await self._send(media_message(self._stream_sid, payload))

    async def send_clear(self) -> None:
        if self._stream_sid is None:
            LOGGER.debug("Dropping clear before stream start")
            return
        await self._send(clear_message(self._stream_sid))

    async def _send(self, message: dict[str, Any]) -> None:
        if self._closed:
            return
        try:
            await self._ws.send_text(json.dumps(message))
        except (WebSocketDisconnect, RuntimeError) as exc:
            LOGGER.info("Twilio send failed on stream %s: %s", self._stream_sid, exc)

    async def close(self, code: int = 1000) -> None:
        if self._closed:
            return
        self._closed = True
        if (
            self._ws.application_state == WebSocketState.DISCONNECTED
            or self._ws.client_state == WebSocketState.DISCONNECTED
        ):
            return
        try:
            await self._ws.close(code=code)
        except RuntimeError as exc:
            LOGGER.debug("Twilio websocket already closed: %s", exc)
