from __future__ import annotations

from typing import Any


class BridgeError(RuntimeError):
    """
    Base class for every failure raised inside the bridge.
    """


class TransportError(BridgeError):
    """
    Stream transport failure (connect error, socket error, unexpected close).
    """


class ConnectionClosed(TransportError):
    """
    The stream connection closed (or was never open) while a request needed it.
    """

    def __init__(self, message: str = "connection closed") -> None:
        super().__init__(message)


class VenueError(BridgeError):
    """
    A correlated response carried a top-level `error: {code, message}` object.
    """

    def __init__(self, code: Any, message: Any) -> None:
        self.code = str(code or "UnknownError")
        self.venue_message = str(message or "")
        super().__init__(f"{self.code}: {self.venue_message}")

    @classmethod
    def from_payload(cls, error: Any) -> "VenueError":
        if isinstance(error, dict):
            return cls(error.get("code"), error.get("message"))
        return cls("UnknownError", error)


class AuthorizationError(VenueError):
    """
    The venue rejected the authorization token. Recorded; never stops reconnects.
    """


class RequestTimeout(BridgeError):
    """
    No response arrived for a correlated request within its deadline.
    """

    def __init__(self, kind: str) -> None:
        self.kind = kind
        super().__init__(f"Timeout waiting for {kind}")


class ProtocolViolation(BridgeError):
    """
    A required field was absent from an otherwise successful venue response.
    """


class OrderValidationError(BridgeError, ValueError):
    """
    Malformed external request (surfaced as HTTP 400, no state change).
    """


class EngineFailure(BridgeError):
    """
    Unexpected exception while starting a trade; converted into a Failed result.
    """
