"""Telephony side of the relay: Twilio Media Streams framing and caller speech gating."""
