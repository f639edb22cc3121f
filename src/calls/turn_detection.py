"""End-of-turn detection strategies.

Two policies exist. ``server_vad`` lets the realtime endpoint detect the silence
boundary and report it as a committed input buffer. ``client_silence`` keeps
server turn detection off and ends the turn itself a fixed delay after the last
voiced caller frame, committing the input buffer explicitly.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from config.settings import Settings
from realtime.events import InputCommitted, ServerEvent


class TurnDetector(ABC):
    """Abstract base class for end-of-turn policies."""

    name: str = "abstract"

    @abstractmethod
    def session_turn_detection(self) -> dict[str, Any] | None:
        """Return the ``turn_detection`` block for the session configuration."""

    def ends_turn(self, event: ServerEvent) -> bool:
        """Return True when a server event marks the end of the caller's turn."""

        return False

    @property
    def silence_timeout(self) -> float | None:
        """Seconds of caller silence that end a turn locally, or None."""

        return None

    @property
    def commits_input(self) -> bool:
        return False


class ServerVadDetector(TurnDetector):
    name = "server_vad"

    def __init__(
        self,
        *,
        threshold: float = 0.5,
        prefix_padding_ms: int = 300,
        silence_duration_ms: int = 500,
    ) -> None:
        self._threshold = threshold
        self._prefix_padding_ms = prefix_padding_ms
        self._silence_duration_ms = silence_duration_ms

    def session_turn_detection(self) -> dict[str, Any] | None:
        # Responses and interruptions are arbitrated locally.
        return {
            "type": "server_vad",
            "threshold": self._threshold,
            "prefix_padding_ms": self._prefix_padding_ms,
            "silence_duration_ms": self._silence_duration_ms,
            "create_response": False,
            "interrupt_response": False,
        }

    def ends_turn(self, event: ServerEvent) -> bool:
        return isinstance(event, InputCommitted)


class ClientSilenceDetector(TurnDetector):
    name = "client_silence"

    def __init__(self, *, silence_ms: int = 800) -> None:
        if silence_ms <= 0:
            raise ValueError("silence_ms must be positive")
        self._silence_ms = silence_ms

    def session_turn_detection(self) -> dict[str, Any] | None:
        return None

    @property
    def silence_timeout(self) -> float | None:
        return self._silence_ms / 1000

    @property
    def commits_input(self) -> bool:
        return True


def build_turn_detector(settings: Settings) -> TurnDetector:
    """Instantiate the configured end-of-turn policy."""

    if settings.turn_detection == "server_vad":
        return ServerVadDetector(
            threshold=settings.vad_threshold,
            prefix_padding_ms=settings.vad_prefix_padding_ms,
            silence_duration_ms=settings.vad_silence_duration_ms,
        )
    if settings.turn_detection == "client_silence":
        return ClientSilenceDetector(silence_ms=settings.client_silence_ms)
    raise ValueError(f"Unsupported turn_detection: {settings.turn_detection}")
