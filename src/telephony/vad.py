from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class SpeechGateConfig:
    min_rms: float = 500.0
    start_frames: int = 2
    hangover_frames: int = 10
    threshold_mult: float = 3.0
    noise_alpha: float = 0.05


class SpeechGate:
    """A tiny energy gate suitable for telephone audio.

    It adapts to a per-call noise floor and labels each caller frame as speech or
    not. Speech begins after ``start_frames`` consecutive loud frames and lasts
    until ``hangover_frames`` quiet frames have passed, so clicks do not
    interrupt the assistant and short pauses do not end a turn early.

    Only frames labelled as speech trigger barge-in. With ``min_rms <= 0`` the
    gate is disabled and every inbound frame counts as speech, so any caller
    audio during a response interrupts it.
    """

    def __init__(self, cfg: SpeechGateConfig | None = None) -> None:
        self.cfg = cfg or SpeechGateConfig()
        self._noise_rms = 0.0
        self._in_speech = False
        self._speech_run = 0
        self._silence_run = 0

    @property
    def in_speech(self) -> bool:
        return self._in_speech

    @property
    def disabled(self) -> bool:
        return self.cfg.min_rms <= 0

    def threshold(self) -> float:
        return max(self.cfg.min_rms, self._noise_rms * self.cfg.threshold_mult)

    def push(self, rms: float) -> bool:
        """Push the RMS level of one frame; return True while the caller is speaking."""

        if self.disabled:
            return True

        is_voice = rms >= self.threshold()

        if not self._in_speech:
            # Update noise floor slowly using non-voice frames.
            if not is_voice:
                self._noise_rms = (1 - self.cfg.noise_alpha) * self._noise_rms + self.cfg.noise_alpha * rms
                self._speech_run = 0
                return False

            self._speech_run += 1
            if self._speech_run >= self.cfg.start_frames:
                self._in_speech = True
                self._silence_run = 0
            return self._in_speech

        if is_voice:
            self._silence_run = 0
            return True

        self._silence_run += 1
        if self._silence_run > self.cfg.hangover_frames:
            self._in_speech = False
            self._speech_run = 0
            self._silence_run = 0
            return False
        return True
