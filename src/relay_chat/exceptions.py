"""Domain exception hierarchy for the relay chat pipeline."""

from __future__ import annotations


class RelayChatError(RuntimeError):
    """Base class for all domain-level chat errors."""


class AuthError(RelayChatError):
    """Raised when no valid session credential is available for the relay."""


class NetworkError(RelayChatError):
    """Raised when the relay returns a non-success status or the transport fails."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.detail = message


class ParseError(RelayChatError):
    """Raised internally for a malformed stream data line; always recovered."""


class ValidationError(RelayChatError):
    """Raised when an attachment violates the size or batch policy."""


class PersistenceError(RelayChatError):
    """Raised when the conversation store cannot complete a write or read."""


class ConcurrencyError(RelayChatError):
    """Raised when a second turn is started while one is still streaming."""


class StreamCancelledError(RelayChatError):
    """Raised when an in-flight stream is cancelled by the caller."""


class ConfigValidationError(RelayChatError):
    """Raised when configuration cannot be validated safely."""
