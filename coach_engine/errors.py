"""Exception taxonomy for the coaching engine."""

from __future__ import annotations


class CoachEngineError(Exception):
    """Base class for every error the engine raises on purpose."""


class DeviceError(CoachEngineError):
    """Microphone missing, permission denied, or the audio backend failed to open."""


class AuthError(CoachEngineError):
    """The token provider could not issue a credential within its retry limit."""


class LinkError(CoachEngineError):
    """The duplex channel could not be opened or was lost for good."""


class ReconnectExhaustedError(LinkError):
    """Unexpected disconnect and every reconnect attempt failed."""

    def __init__(self, attempts: int, last_error: BaseException | None = None):
        self.attempts = attempts
        self.last_error = last_error
        detail = f": {last_error}" if last_error else ""
        super().__init__(f"Reconnect failed after {attempts} attempts{detail}")


class NonRetryableCloseError(LinkError):
    """The service closed the channel with a code that reconnecting cannot fix."""

    def __init__(self, code: int, reason: str = ""):
        self.code = code
        self.reason = reason
        super().__init__(f"Service closed the connection ({code}): {reason or 'no reason given'}")


class SessionStateError(CoachEngineError):
    """Operation not allowed in the current session state."""


class MalformedMessageError(CoachEngineError):
    """Inbound service message could not be parsed into a transcript event."""
