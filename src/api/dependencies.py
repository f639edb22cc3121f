"""Shared FastAPI dependencies.

Separated to avoid circular imports between route modules.
"""

from __future__ import annotations

from twilio.request_validator import RequestValidator
from websockets.asyncio.client import connect

from config.settings import get_settings
from realtime.client import Connector


def get_realtime_connector() -> Connector:
    return connect


def get_request_validator() -> RequestValidator | None:
    settings = get_settings()
    if not settings.twilio_validate_signature:
        return None
    if not settings.twilio_auth_token:
        raise ValueError("TWILIO_AUTH_TOKEN is required when signature validation is enabled")
    return RequestValidator(settings.twilio_auth_token)
