"""One phone call: both sockets, one event queue, one consumer, one teardown."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Any

from fastapi import WebSocket
from websockets.asyncio.client import connect

from calls.arbiter import (
    Action,
    ArbiterStats,
    CancelTimer,
    ClearCaller,
    PlayToCaller,
    SendToEndpoint,
    StartTimer,
    TimerFired,
    TurnArbiter,
    TurnState,
)
from calls.errors import EndpointConnectError, SessionClosedError
from calls.turn_detection import build_turn_detector
from config.settings import Settings
from realtime.client import Connector, RealtimeConfig, RealtimeConnection
from realtime.events import parse_server_event
from telephony.g711 import payload_rms
from telephony.twilio_media import CallerAudio, SessionStopped, TwilioMediaStream
from telephony.vad import SpeechGate, SpeechGateConfig

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class EndpointReady:
    pass


@dataclass(frozen=True, slots=True)
class TransportClosed:
    side: str
    reason: str = ""


@dataclass(frozen=True, slots=True)
class _TimerElapsed:
    name: str
    token: object


class CallSession:
    """Relays one call between Twilio and the realtime endpoint.

    Events from the telephony reader, the endpoint reader and the timers all go
    through one queue. Only :meth:`_consume` touches the arbiter or sends on
    either socket, so transitions never race and the endpoint send queue keeps
    its order.
    """

    def __init__(
        self,
        telephony: TwilioMediaStream,
        endpoint: RealtimeConnection,
        arbiter: TurnArbiter,
        *,
        gate: SpeechGate | None = None,
    ) -> None:
        self._telephony = telephony
        self._endpoint = endpoint
        self._arbiter = arbiter
        self._gate = gate
        self._events: asyncio.Queue[Any] = asyncio.Queue()
        self._tasks: list[asyncio.Task] = []
        self._timers: dict[str, asyncio.Task] = {}
        self._timer_tokens: dict[str, object] = {}
        self._started = False
        self._closed = False
        self._close_reason = ""

    @classmethod
    def open(
        cls,
        websocket: WebSocket,
        settings: Settings,
        *,
        connector: Connector = connect,
    ) -> CallSession:
        """Build a session for an accepted Twilio websocket.

        Raises:
            MissingCredentialError: if no endpoint credential is configured.
        """

        config = RealtimeConfig.from_settings(settings)
        detector = build_turn_detector(settings)
        endpoint = RealtimeConnection(
            config,
            turn_detection=detector.session_turn_detection(),
            connector=connector,
        )
        arbiter = TurnArbiter(
            detector,
            settle_delay=settings.cancel_settle_ms / 1000,
            recent_speech_window=settings.recent_speech_window_ms / 1000,
            clear_input_after_response=settings.clear_input_after_response,
        )
        gate = SpeechGate(
            SpeechGateConfig(
                min_rms=settings.speech_rms_threshold,
                start_frames=settings.speech_start_frames,
                hangover_frames=settings.speech_hangover_frames,
            )
        )
        LOGGER.info("Opening call session (turn detection: %s)", detector.name)
        return cls(TwilioMediaStream(websocket), endpoint, arbiter, gate=gate)

    @property
    def state(self) -> TurnState:
        return self._arbiter.state

    @property
    def stats(self) -> ArbiterStats:
        return self._arbiter.stats

    @property
    def stream_sid(self) -> str | None:
        return self._arbiter.stream_sid

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def close_reason(self) -> str:
        return self._close_reason

    async def run(self) -> None:
        """Relay until either side disconnects; both sockets are closed on return."""

        if self._started or self._closed:
            raise SessionClosedError()
        self._started = True

        self._tasks = [
            asyncio.create_task(self._pump_telephony(), name="telephony-reader"),
            asyncio.create_task(self._pump_endpoint(), name="endpoint-reader"),
        ]
        try:
            await self._consume()
        finally:
            await self._teardown()

    def close(self, reason: str = "closed locally") -> None:
        """Ask the consumer to end the session."""

        self._post(TransportClosed("local", reason))

    def _post(self, event: Any) -> None:
        if not self._closed:
            self._events.put_nowait(event)

    async def _consume(self) -> None:
        while True:
            event = await self._events.get()

            if isinstance(event, TransportClosed):
                self._close_reason = f"{event.side} closed" + (f": {event.reason}" if event.reason else "")
                return
            if isinstance(event, SessionStopped):
                self._close_reason = "caller hung up"
                return
            if isinstance(event, EndpointReady):
                await self._endpoint.mark_ready()
                continue
            if isinstance(event, _TimerElapsed):
                if self._timer_tokens.get(event.name) is not event.token:
                    continue
                self._timers.pop(event.name, None)
                self._timer_tokens.pop(event.name, None)
                event = TimerFired(event.name)
            elif isinstance(event, CallerAudio) and self._gate is not None and not self._gate.disabled:
                event = replace(event, voiced=self._gate.push(payload_rms(event.payload)))

            for action in self._arbiter.handle(event):
                await self._apply(action)

    async def _apply(self, action: Action) -> None:
        if isinstance(action, SendToEndpoint):
            await self._endpoint.send(action.message)
        elif isinstance(action, PlayToCaller):
            await self._telephony.send_audio(action.payload)
        elif isinstance(action, ClearCaller):
            await self._telephony.send_clear()
        elif isinstance(action, StartTimer):
            self._start_timer(action.name, action.delay)
        elif isinstance(action, CancelTimer):
            self._cancel_timer(action.name)

    def _start_timer(self, name: str, delay: float) -> None:
        self._cancel_timer(name)
        token = object()
        self._timer_tokens[name] = token
        self._timers[name] = asyncio.create_task(self._fire_after(name, token, delay), name=f"timer-{name}")

    def _cancel_timer(self, name: str) -> None:
        self._timer_tokens.pop(name, None)
        task = self._timers.pop(name, None)
        if task is not None:
            task.cancel()

    async def _fire_after(self, name: str, token: object, delay: float) -> None:
        await asyncio.sleep(delay)
        self._post(_TimerElapsed(name, token))

    async def _pump_telephony(self) -> None:
        try:
            async for event in self._telephony.events():
                self._post(event)
        finally:
            self._post(TransportClosed("telephony"))

    async def _pump_endpoint(self) -> None:
        try:
            await self._endpoint.connect()
        except EndpointConnectError as exc:
            LOGGER.error("Realtime endpoint unavailable: %s", exc.detail)
            self._post(TransportClosed("endpoint", exc.detail))
            return

        self._post(EndpointReady())
        try:
            async for raw in self._endpoint.events():
                event = parse_server_event(raw)
                if event is not None:
                    self._post(event)
        finally:
            self._post(TransportClosed("endpoint"))

    async def _teardown(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._arbiter.close()

        pending = list(self._timers.values()) + self._tasks
        self._timers.clear()
        self._timer_tokens.clear()
        for task in pending:
            task.cancel()

        try:
            await self._endpoint.close()
        finally:
            await self._telephony.close()

        results = await asyncio.gather(*pending, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                LOGGER.error("Call session task failed", exc_info=result)

        stats = self._arbiter.stats
        LOGGER.info(
            "[%s] Call %s ended (%s): caller_frames=%s assistant_frames=%s responses=%s barge_ins=%s",
            self.stream_sid,
            self._arbiter.call_sid or "unknown",
            self._close_reason or "cancelled",
            stats.caller_frames,
            stats.assistant_frames,
            stats.responses_requested,
            stats.barge_ins,
        )
