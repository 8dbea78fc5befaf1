"""Exception types raised by the bridge core."""

from __future__ import annotations


class BridgeError(Exception):
    """Base exception for bridge errors."""


class NoCredentialsError(BridgeError):
    """The credential source yielded no usable session."""


class SessionExhausted(BridgeError):
    """Every session in the pool has been invalidated."""

    status_code = 503


class NoSessionAvailable(BridgeError):
    """A request was translated without an active session."""


class UpstreamError(BridgeError):
    """Base exception for failures talking to the Notion backend."""


class UpstreamAuthError(UpstreamError):
    """The backend rejected the session credentials (HTTP 401)."""

    def __init__(self, user_id: str) -> None:
        super().__init__(f"Notion rejected credentials for user {user_id}")
        self.user_id = user_id


class UpstreamProtocolError(UpstreamError):
    """A single backend record could not be decoded."""

    def __init__(self, message: str, line: str = "") -> None:
        super().__init__(message)
        self.line = line


class UpstreamTimeout(UpstreamError):
    """No byte arrived from the backend within the first-byte window."""

    def __init__(self, timeout_s: float) -> None:
        super().__init__(f"no response from Notion within {timeout_s:g}s")
        self.timeout_s = timeout_s


class UpstreamTransportError(UpstreamError):
    """Network failure or unexpected HTTP status from the backend."""

    def __init__(self, message: str, status_code: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body
