"""Realtime voice endpoint side of the relay: event framing and the websocket client."""
