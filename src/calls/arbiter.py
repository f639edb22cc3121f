"""Turn arbitration for one call.

The arbiter is a plain state machine: :meth:`TurnArbiter.handle` takes one
event, updates state, and returns the actions the session must perform. It
does no I/O, so all transitions happen on the session's single consumer task.
"""

from __future__ import annotations

import enum
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Union

from calls.turn_detection import TurnDetector
from realtime.events import (
    AudioDelta,
    EndpointError,
    InputCommitted,
    ResponseCreated,
    ResponseDone,
    SpeechStarted,
    SpeechStopped,
    append_audio,
    cancel_response,
    clear_input,
    commit_input,
    create_response,
)
from telephony.twilio_media import CallerAudio, SessionStarted, SessionStopped

LOGGER = logging.getLogger(__name__)

SETTLE_TIMER = "settle"
TURN_TIMER = "turn"


class TurnState(enum.Enum):
    IDLE = "idle"
    LISTENING = "listening"
    RESPONSE_PENDING = "response_pending"
    RESPONDING = "responding"
    CLOSED = "closed"


@dataclass(frozen=True, slots=True)
class TimerFired:
    name: str


@dataclass(frozen=True, slots=True)
class SendToEndpoint:
    message: dict[str, Any]


@dataclass(frozen=True, slots=True)
class PlayToCaller:
    payload: str


@dataclass(frozen=True, slots=True)
class ClearCaller:
    pass


@dataclass(frozen=True, slots=True)
class StartTimer:
    name: str
    delay: float


@dataclass(frozen=True, slots=True)
class CancelTimer:
    name: str


Action = Union[SendToEndpoint, PlayToCaller, ClearCaller, StartTimer, CancelTimer]


@dataclass
class ArbiterStats:
    caller_frames: int = 0
    assistant_frames: int = 0
    responses_requested: int = 0
    responses_completed: int = 0
    barge_ins: int = 0
    ignored_turns: int = 0


class TurnArbiter:
    """Decides who may speak and guarantees at most one response in flight."""

    def __init__(
        self,
        detector: TurnDetector,
        *,
        settle_delay: float = 0.3,
        recent_speech_window: float = 1.0,
        clear_input_after_response: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._detector = detector
        self._settle_delay = settle_delay
        self._recent_speech_window = recent_speech_window
        self._clear_input_after_response = clear_input_after_response
        self._clock = clock

        self._state = TurnState.IDLE
        self._response_pending = False
        self._stream_sid: str | None = None
        self._call_sid: str | None = None
        self._active_response_id: str | None = None
        self._cancelled_ids: set[str] = set()
        self._awaiting_created = False
        self._uncorrelated_cancels = 0
        self._resynced = False
        self._settling = False
        self._deferred_turn = False
        self._last_speech_at: float | None = None
        self.stats = ArbiterStats()

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def response_pending(self) -> bool:
        return self._response_pending

    @property
    def stream_sid(self) -> str | None:
        return self._stream_sid

    @property
    def call_sid(self) -> str | None:
        return self._call_sid

    @property
    def assistant_may_speak(self) -> bool:
        return self._state in (TurnState.RESPONSE_PENDING, TurnState.RESPONDING)

    def handle(self, event: Any) -> list[Action]:
        if self._state is TurnState.CLOSED:
            return []

        if isinstance(event, CallerAudio):
            return self._on_caller_audio(event)
        if isinstance(event, AudioDelta):
            return self._on_audio_delta(event)
        if isinstance(event, TimerFired):
            return self._on_timer(event.name)
        if isinstance(event, SpeechStarted):
            return self._on_caller_speech(self._clock())
        if isinstance(event, InputCommitted):
            if self._detector.ends_turn(event):
                return self._on_end_of_turn()
            return []
        if isinstance(event, ResponseCreated):
            return self._on_response_created(event)
        if isinstance(event, ResponseDone):
            return self._on_response_done(event)
        if isinstance(event, EndpointError):
            return self._on_endpoint_error(event)
        if isinstance(event, SessionStarted):
            self._stream_sid = event.stream_sid
            # The voice webhook passes the call sid as a custom <Parameter>.
            self._call_sid = event.call_sid or event.custom_parameters.get("callSid")
            LOGGER.info("[%s] Stream started (call %s)", event.stream_sid, self._call_sid or "unknown")
            self._transition(TurnState.IDLE)
            return []
        if isinstance(event, SessionStopped):
            return self.close()
        if isinstance(event, SpeechStopped):
            return []

        LOGGER.debug("[%s] Ignoring event %r", self._stream_sid, event)
        return []

    def close(self) -> list[Action]:
        if self._state is TurnState.CLOSED:
            return []
        self._transition(TurnState.CLOSED)
        self._response_pending = False
        return [CancelTimer(SETTLE_TIMER), CancelTimer(TURN_TIMER)]

    def _transition(self, new_state: TurnState) -> None:
        if new_state is not self._state:
            LOGGER.debug("[%s] %s -> %s", self._stream_sid, self._state.value, new_state.value)
            self._state = new_state

    def _on_caller_audio(self, event: CallerAudio) -> list[Action]:
        actions: list[Action] = []
        if event.voiced:
            actions.extend(self._on_caller_speech(event.received_at))
        actions.append(SendToEndpoint(append_audio(event.payload)))
        self.stats.caller_frames += 1
        return actions

    def _on_caller_speech(self, at: float) -> list[Action]:
        self._last_speech_at = at
        actions: list[Action] = []
        if self._state in (TurnState.RESPONSE_PENDING, TurnState.RESPONDING):
            actions.extend(self._barge_in())
        elif self._state is TurnState.IDLE:
            self._transition(TurnState.LISTENING)

        timeout = self._detector.silence_timeout
        if timeout is not None and self._state is TurnState.LISTENING:
            actions.append(StartTimer(TURN_TIMER, timeout))
        return actions

    def _barge_in(self) -> list[Action]:
        response_id = self._active_response_id
        if response_id:
            self._cancelled_ids.add(response_id)
        elif self._awaiting_created:
            # The id is not known yet; cancel it again when response.created arrives.
            self._uncorrelated_cancels += 1
        self._awaiting_created = False
        LOGGER.info("[%s] Caller barge-in; cancelling response %s", self._stream_sid, response_id or "(pending)")

        actions: list[Action] = [SendToEndpoint(cancel_response(response_id)), ClearCaller()]
        self._response_pending = False
        self._resynced = False
        self._active_response_id = None
        self._deferred_turn = False
        self._transition(TurnState.LISTENING)
        self.stats.barge_ins += 1

        if self._settle_delay > 0:
            self._settling = True
            actions.append(StartTimer(SETTLE_TIMER, self._settle_delay))
        return actions

    def _on_end_of_turn(self) -> list[Action]:
        if self._response_pending:
            LOGGER.info("[%s] End of turn ignored; a response is already pending", self._stream_sid)
            self.stats.ignored_turns += 1
            return []
        if self._state is not TurnState.LISTENING:
            LOGGER.debug("[%s] End of turn ignored in state %s", self._stream_sid, self._state.value)
            self.stats.ignored_turns += 1
            return []
        if self._settling:
            LOGGER.debug("[%s] End of turn deferred until the endpoint settles", self._stream_sid)
            self._deferred_turn = True
            return []
        return self._request_response()

    def _request_response(self) -> list[Action]:
        self._response_pending = True
        self._active_response_id = None
        self._awaiting_created = True
        self._transition(TurnState.RESPONSE_PENDING)
        self.stats.responses_requested += 1
        LOGGER.info("[%s] Requesting response #%s", self._stream_sid, self.stats.responses_requested)
        return [SendToEndpoint(create_response())]

    def _on_timer(self, name: str) -> list[Action]:
        if name == SETTLE_TIMER:
            self._settling = False
            if self._deferred_turn:
                self._deferred_turn = False
                return self._on_end_of_turn()
            return []

        if name == TURN_TIMER:
            if self._response_pending or self._state is not TurnState.LISTENING:
                return []
            actions: list[Action] = []
            if self._detector.commits_input:
                actions.append(SendToEndpoint(commit_input()))
            actions.extend(self._on_end_of_turn())
            return actions

        LOGGER.warning("[%s] Unknown timer %s", self._stream_sid, name)
        return []

    def _on_response_created(self, event: ResponseCreated) -> list[Action]:
        response_id = event.response_id
        if response_id and response_id in self._cancelled_ids:
            return []
        if self._uncorrelated_cancels > 0:
            # Responses are created in request order, so this is the interrupted one.
            self._uncorrelated_cancels -= 1
            LOGGER.info("[%s] Cancelling interrupted response %s", self._stream_sid, response_id)
            if response_id:
                self._cancelled_ids.add(response_id)
            return [SendToEndpoint(cancel_response(response_id))]
        if self._state in (TurnState.RESPONSE_PENDING, TurnState.RESPONDING):
            if self._active_response_id is None:
                self._active_response_id = response_id
            self._awaiting_created = False
            return []

        # A response we did not ask for, or one created just before a barge-in.
        LOGGER.warning("[%s] Cancelling unsolicited response %s", self._stream_sid, response_id)
        if response_id:
            self._cancelled_ids.add(response_id)
        return [SendToEndpoint(cancel_response(response_id))]

    def _on_audio_delta(self, event: AudioDelta) -> list[Action]:
        if self._stream_sid is None:
            LOGGER.debug("Dropping assistant audio before stream start")
            return []
        response_id = event.response_id
        if response_id and response_id in self._cancelled_ids:
            return []
        if not self.assistant_may_speak:
            return []
        if response_id and self._active_response_id and response_id != self._active_response_id:
            return []

        if self._state is TurnState.RESPONSE_PENDING:
            if self._active_response_id is None:
                self._active_response_id = response_id
            self._awaiting_created = False
            self._transition(TurnState.RESPONDING)
        self.stats.assistant_frames += 1
        return [PlayToCaller(event.payload)]

    def _on_response_done(self, event: ResponseDone) -> list[Action]:
        response_id = event.response_id
        if self._resynced and self._state is TurnState.RESPONSE_PENDING and self._active_response_id is None:
            if response_id:
                self._cancelled_ids.discard(response_id)
            return self._complete_response(event.status)

        if response_id and response_id in self._cancelled_ids:
            self._cancelled_ids.discard(response_id)
            LOGGER.debug("[%s] Cancelled response %s finished (%s)", self._stream_sid, response_id, event.status)
            return []
        if not self.assistant_may_speak:
            return []
        if response_id and self._active_response_id and response_id != self._active_response_id:
            return []
        return self._complete_response(event.status)

    def _complete_response(self, status: str | None) -> list[Action]:
        self._response_pending = False
        self._resynced = False
        self._active_response_id = None
        self.stats.responses_completed += 1

        recent = (
            self._last_speech_at is not None
            and self._clock() - self._last_speech_at <= self._recent_speech_window
        )
        self._transition(TurnState.LISTENING if recent else TurnState.IDLE)
        LOGGER.info("[%s] Response finished (%s)", self._stream_sid, status or "completed")

        if self._clear_input_after_response:
            return [SendToEndpoint(clear_input())]
        return []

    def _on_endpoint_error(self, event: EndpointError) -> list[Action]:
        if event.is_active_response_conflict:
            LOGGER.warning("[%s] Endpoint reports an active response; holding the response lock", self._stream_sid)
            self._response_pending = True
            # The rejected response.create will never produce a response.
            if self._awaiting_created:
                self._awaiting_created = False
            elif self._uncorrelated_cancels > 0:
                self._uncorrelated_cancels -= 1
            if self._active_response_id is None:
                # Whatever response finishes next releases the lock.
                self._resynced = True
            if self._state in (TurnState.IDLE, TurnState.LISTENING):
                self._transition(TurnState.RESPONSE_PENDING)
            return []
        if event.is_cancel_not_active:
            LOGGER.debug("[%s] Cancel arrived after the response finished", self._stream_sid)
            return []

        LOGGER.error("[%s] Realtime endpoint error %s: %s", self._stream_sid, event.code, event.message)
        return []
