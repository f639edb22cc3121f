"""Outbound socket adapter for the realtime voice endpoint."""

from __future__ import annotations

import json
import logging
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from calls.errors import EndpointConnectError, MissingCredentialError
from config.settings import Settings
from prompts.loader import resolve_instructions
from realtime.events import session_update

LOGGER = logging.getLogger(__name__)

MAX_MESSAGE_BYTES = 16 * 1024 * 1024

Connector = Callable[..., Awaitable[Any]]


@dataclass(frozen=True)
class RealtimeConfig:
    api_key: str
    url: str
    model: str
    voice: str
    instructions: str
    audio_format: str
    connect_attempts: int = 2

    @classmethod
    def from_settings(cls, settings: Settings) -> RealtimeConfig:
        if not settings.openai_api_key or not settings.openai_api_key.strip():
            raise MissingCredentialError("OPENAI_API_KEY is not configured")

        return cls(
            api_key=settings.openai_api_key.strip(),
            url=settings.realtime_url,
            model=settings.realtime_model,
            voice=settings.realtime_voice,
            instructions=resolve_instructions(settings.realtime_instructions),
            audio_format=settings.audio_format,
            connect_attempts=settings.realtime_connect_attempts,
        )

    @property
    def endpoint(self) -> str:
        return f"{self.url}?{urlencode({'model': self.model})}"

    def headers(self) -> list[tuple[str, str]]:
        return [
            ("Authorization", f"Bearer {self.api_key}"),
            ("OpenAI-Beta", "realtime=v1"),
        ]


class RealtimeConnection:
    """Websocket client with a send queue that holds messages until the endpoint is ready.

    All sends and the drain in :meth:`mark_ready` are expected to come from one
    task (the call session consumer) so FIFO order holds without locking.
    """

    def __init__(
        self,
        config: RealtimeConfig,
        *,
        turn_detection: dict[str, Any] | None,
        connector: Connector = connect,
    ) -> None:
        self._config = config
        self._turn_detection = turn_detection
        self._connector = connector
        self._ws: Any = None
        self._pending: deque[dict[str, Any]] = deque()
        self._ready = False
        self._closed = False

    @property
    def ready(self) -> bool:
        return self._ready

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def connect(self) -> None:
        """Open the websocket, retrying once. Raises EndpointConnectError on failure."""

        last_exc: Exception | None = None
        attempts = max(1, self._config.connect_attempts)
        for attempt in range(1, attempts + 1):
            if self._closed:
                raise EndpointConnectError("Connection closed before it was established")
            LOGGER.info(
                "Connecting to realtime endpoint %s (attempt %s/%s)",
                self._config.endpoint,
                attempt,
                attempts,
            )
            try:
                ws = await self._connector(
                    self._config.endpoint,
                    additional_headers=self._config.headers(),
                    max_size=MAX_MESSAGE_BYTES,
                )
            except (OSError, WebSocketException) as exc:
                last_exc = exc
                LOGGER.warning("Realtime connection attempt %s failed: %s", attempt, exc)
                continue

            if self._closed:
                await ws.close()
                raise EndpointConnectError("Connection closed while it was being established")
            self._ws = ws
            return

        raise EndpointConnectError(f"Could not connect to realtime endpoint: {last_exc}") from last_exc

    async def mark_ready(self) -> None:
        """Send the one-time session configuration, then drain queued messages in order."""

        if self._ready or self._closed or self._ws is None:
            return

        await self._transmit(
            session_update(
                instructions=self._config.instructions,
                voice=self._config.voice,
                audio_format=self._config.audio_format,
                turn_detection=self._turn_detection,
            )
        )
        drained = len(self._pending)
        while self._pending:
            await self._transmit(self._pending.popleft())
        self._ready = True
        LOGGER.info("Realtime session configured; drained %s queued message(s)", drained)

    async def send(self, message: dict[str, Any]) -> None:
        """Fire-and-forget send. Queues before ready, drops after close, never raises."""

        if self._closed:
            LOGGER.debug("Dropping %s after close", message.get("type"))
            return
        if not self._ready:
            self._pending.append(message)
            return
        await self._transmit(message)

    async def _transmit(self, message: dict[str, Any]) -> None:
        try:
            await self._ws.send(json.dumps(message))
        except ConnectionClosed as exc:
            LOGGER.info("Realtime send of %s failed: %s", message.get("type"), exc)

    async def events(self) -> AsyncIterator[dict[str, Any]]:
        """Yield decoded server events until the endpoint closes the connection."""

        if self._ws is None:
            return
        try:
            async for raw in self._ws:
                if isinstance(raw, bytes):
                    continue
                try:
                    event = json.loads(raw)
                except json.JSONDecodeError:
                    LOGGER.warning("Failed to decode realtime payload: %.64r", raw)
                    continue
                if isinstance(event, dict):
                    yield event
        except ConnectionClosed as exc:
            LOGGER.info("Realtime connection closed: %s", exc)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._pending:
            LOGGER.debug("Discarding %s unsent realtime message(s)", len(self._pending))
            self._pending.clear()
        if self._ws is None:
            return
        try:
            await self._ws.close()
        except (OSError, WebSocketException) as exc:
            LOGGER.debug("Realtime websocket close failed: %s", exc)
