"""FastAPI routes exposing the relay."""

from __future__ import annotations

import logging

from fastapi import APIRouter
from fastapi.responses import PlainTextResponse

from api.twilio_routes import router as twilio_router

LOGGER = logging.getLogger(__name__)

router = APIRouter()
router.include_router(twilio_router)


@router.get("/ping", response_class=PlainTextResponse)
async def ping() -> str:
    LOGGER.debug("/ping hit")
    return "pong"
