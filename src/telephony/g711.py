from __future__ import annotations

import base64
import binascii

import numpy as np


def ulaw_decode(ulaw_bytes: bytes) -> np.ndarray:
    """Decode G.711 mu-law bytes to 16-bit PCM int16 numpy array."""

    data = np.frombuffer(ulaw_bytes, dtype=np.uint8)

    # Vectorized mu-law decode.
    mu = np.bitwise_not(data)
    sign = np.bitwise_and(mu, 0x80)
    exponent = np.right_shift(np.bitwise_and(mu, 0x70), 4)
    mantissa = np.bitwise_and(mu, 0x0F)

    # G.711 bias is 0x84 (132).
    magnitude = ((mantissa.astype(np.int32) << 3) + 0x84) << exponent.astype(np.int32)
    pcm = magnitude - 0x84
    pcm = np.where(sign != 0, -pcm, pcm)

    return pcm.astype(np.int16)


def frame_rms(pcm: np.ndarray) -> float:
    if pcm.size == 0:
        return 0.0
    x = pcm.astype(np.float32)
    return float(np.sqrt(np.mean(x * x)))


def payload_rms(payload_b64: str) -> float:
    """RMS level of a base64 mu-law payload, used for speech gating only.

    Undecodable payloads measure as silence; the payload itself is forwarded untouched.
    """

    try:
        raw = base64.b64decode(payload_b64, validate=True)
    except (binascii.Error, ValueError):
        return 0.0
    return frame_rms(ulaw_decode(raw))
