"""
Exception types raised by the client.

Background work (polling, health checks, persistence) never raises these to the
caller; they are logged. Consumer-facing calls (send, logout, ...) raise them.
"""
from typing import Any


class VexError(Exception):
    """Base class for every error raised by vex_client."""


class VexApiError(VexError):
    """The backend answered with a non-2xx status."""

    def __init__(self, message: str, status_code: int, response: Any = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.response = response

    def __str__(self) -> str:
        return f"{self.status_code}: {self.message}"


class TransportError(VexError):
    """Push socket failure: not connected, handshake timeout, rejected subscribe."""


class ClientDestroyedError(VexError):
    def __init__(self, message: str = "VexClient has been destroyed. Create a new instance."):
        super().__init__(message)


class NotInitializedError(VexError):
    def __init__(self, message: str = "VexClient not yet initialized. Wait for connection or use wait_for_init()."):
        super().__init__(message)
