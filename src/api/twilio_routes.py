"""Twilio Voice integration.

This module provides:
- Voice webhook (TwiML) that greets the caller and opens a bidirectional media stream.
- Media stream websocket that runs one call session per connection.
"""

from __future__ import annotations

import logging
from xml.sax.saxutils import escape, quoteattr

from fastapi import APIRouter, Depends, HTTPException, Request, Response, WebSocket
from twilio.request_validator import RequestValidator

from api.dependencies import get_realtime_connector, get_request_validator
from calls.errors import RelayError
from calls.session import CallSession
from config.settings import get_settings
from realtime.client import Connector

LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/twilio", tags=["twilio"])

STREAM_PATH = "/api/twilio/stream"


def _twiml_response(xml: str) -> Response:
    # Twilio expects application/xml
    return Response(content=xml, media_type="application/xml")


def _to_ws_url(http_url: str) -> str:
    if http_url.startswith("https://"):
        return "wss://" + http_url.removeprefix("https://")
    if http_url.startswith("http://"):
        return "ws://" + http_url.removeprefix("http://")
    return http_url


def _stream_url(request: Request) -> str:
    settings = get_settings()
    if settings.stream_url:
        return settings.stream_url
    if settings.public_base_url:
        return _to_ws_url(settings.public_base_url.rstrip("/") + STREAM_PATH)
    # Fallback to request host. This may not work behind proxies; prefer PUBLIC_BASE_URL.
    return _to_ws_url(str(request.base_url).rstrip("/") + STREAM_PATH)


def _webhook_url(request: Request) -> str:
    settings = get_settings()
    if settings.public_base_url:
        return f"{settings.public_base_url.rstrip('/')}{request.url.path}"
    return str(request.url)


def _twiml_connect_stream(
    *,
    stream_url: str,
    call_sid: str,
    greeting: str | None,
    voice: str,
    language: str,
) -> str:
    say = ""
    if greeting:
        say = f"<Say voice={quoteattr(voice)} language={quoteattr(language)}>{escape(greeting)}</Say>"
    return (
        "<?xml version=\"1.0\" encoding=\"UTF-8\"?>"
        "<Response>"
        f"{say}"
        "<Connect>"
        f"<Stream url={quoteattr(stream_url)}>"
        f"<Parameter name=\"callSid\" value={quoteattr(call_sid)} />"
        "</Stream>"
        "</Connect>"
        "</Response>"
    )


@router.post("/voice")
async def twilio_voice_webhook(
    request: Request,
    validator: RequestValidator | None = Depends(get_request_validator),
) -> Response:
    settings = get_settings()
    form = await request.form()

    if validator is not None:
        signature = request.headers.get("X-Twilio-Signature", "")
        params = {key: str(value) for key, value in form.items()}
        if not validator.validate(_webhook_url(request), params, signature):
            LOGGER.warning("Rejected voice webhook with invalid Twilio signature")
            raise HTTPException(status_code=403, detail="Invalid Twilio signature")

    call_sid = str(form.get("CallSid") or "").strip() or "unknown"
    stream_url = _stream_url(request)
    LOGGER.info("Voice webhook for call %s; streaming to %s", call_sid, stream_url)

    return _twiml_response(
        _twiml_connect_stream(
            stream_url=stream_url,
            call_sid=call_sid,
            greeting=settings.greeting_text,
            voice=settings.greeting_voice,
            language=settings.greeting_language,
        )
    )


@router.websocket("/stream")
async def twilio_media_stream(
    websocket: WebSocket,
    connector: Connector = Depends(get_realtime_connector),
) -> None:
    await websocket.accept()
    LOGGER.info("Twilio media stream connected")
    try:
        session = CallSession.open(websocket, get_settings(), connector=connector)
    except RelayError as exc:
        LOGGER.error("Rejecting media stream: %s", exc.detail)
        await websocket.close(code=exc.close_code, reason=exc.detail[:120])
        return

    await session.run()
