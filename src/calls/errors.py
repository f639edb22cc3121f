"""Domain-specific exceptions for call relay operations.

These exceptions are safe to import from API layers without opening any socket.
"""

from __future__ import annotations


class RelayError(Exception):
    close_code: int = 1011
    default_detail: str = "Call relay error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail


class MissingCredentialError(RelayError):
    default_detail = "Realtime endpoint credential is not configured."


class EndpointConnectError(RelayError):
    default_detail = "Could not connect to the realtime endpoint."


class SessionClosedError(RelayError):
    close_code = 1000
    default_detail = "Call session is already closed."
