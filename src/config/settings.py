"""Application-wide configuration loading and validation."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Centralized environment configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    log_level: str = Field(default="INFO")

    # HTTP server
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000)

    # Realtime voice endpoint
    openai_api_key: str | None = Field(default=None)
    realtime_url: str = Field(default="wss://api.openai.com/v1/realtime")
    realtime_model: str = Field(default="gpt-4o-realtime-preview")
    realtime_voice: str = Field(default="alloy")
    realtime_instructions: str | None = Field(
        default=None,
        description="System instructions. Falls back to the shipped receptionist prompt.",
    )
    realtime_connect_attempts: int = Field(
        default=2,
        ge=1,
        le=2,
        description="Initial connection attempts (one reconnect at most).",
    )
    audio_format: Literal["g711_ulaw", "g711_alaw", "pcm16"] = Field(default="g711_ulaw")

    # End-of-turn detection
    turn_detection: Literal["server_vad", "client_silence"] = Field(default="server_vad")
    vad_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    vad_prefix_padding_ms: int = Field(default=300, ge=0)
    vad_silence_duration_ms: int = Field(default=500, ge=0)
    client_silence_ms: int = Field(
        default=800,
        gt=0,
        description="Silence after the last voiced caller frame that ends a turn (client_silence only).",
    )

    # Caller speech gate (barge-in / client-timed turns)
    speech_rms_threshold: float = Field(
        default=500.0,
        ge=0.0,
        description=(
            "Minimum RMS of a decoded caller frame to count as speech. Only speech frames interrupt the "
            "assistant or open a turn; Twilio streams silence continuously, so quiet frames are forwarded "
            "but never barge in. 0 treats every inbound frame as speech (any frame interrupts)."
        ),
    )
    speech_start_frames: int = Field(default=2, ge=1)
    speech_hangover_frames: int = Field(default=10, ge=0)
    recent_speech_window_ms: int = Field(default=1000, ge=0)

    # Arbitration
    cancel_settle_ms: int = Field(
        default=300,
        ge=0,
        description="Delay between a barge-in cancellation and the next response request.",
    )
    clear_input_after_response: bool = Field(default=False)

    # Twilio (Voice)
    twilio_auth_token: str | None = Field(default=None)
    twilio_validate_signature: bool = Field(
        default=False,
        description="If true, rejects voice webhooks without a valid X-Twilio-Signature.",
    )
    public_base_url: str | None = Field(
        default=None,
        description="Public base URL for Twilio webhooks (e.g. https://<ngrok>.ngrok-free.app).",
    )
    stream_url: str | None = Field(
        default=None,
        description="Explicit wss:// URL of the media stream websocket; overrides public_base_url.",
    )
    greeting_text: str | None = Field(
        default="Bienvenue chez ABC Déneigement. Dites-moi comment je peux vous aider.",
    )
    greeting_voice: str = Field(default="Polly.Chantal")
    greeting_language: str = Field(default="fr-CA")

    @field_validator("realtime_url")
    @classmethod
    def ensure_ws_scheme(cls, value: str) -> str:
        value = value.strip().rstrip("/")
        if not value.startswith(("ws://", "wss://")):
            raise ValueError("realtime_url must use the ws:// or wss:// scheme")
        return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance."""

    return Settings()
