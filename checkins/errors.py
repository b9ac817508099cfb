"""
errors.py — exception taxonomy shared by the relay and the client.

Anything the relay tells us asynchronously (error frames, auth rejections,
dropped transports) is delivered as an event carrying one of these instances
rather than raised; only the local submission boundary raises them directly.
"""

from typing import Optional


class CheckInError(Exception):
    """Base class for everything this package raises on purpose."""


class ConfigurationError(CheckInError):
    """Bad or missing settings; reported once at startup."""


class TransportError(CheckInError):
    """Connect/send failure. Recoverable: the connection backs off and retries."""


class AuthenticationError(CheckInError):
    """Relay rejected our token or signature. Needs new credentials, no silent retry."""


class ValidationError(CheckInError):
    """Malformed local input, caught before anything goes on the wire."""


class RateLimitError(CheckInError):
    """Cooldown or relay-side throttling; `retry_after` is in seconds."""

    def __init__(self, message: str, retry_after: float = 0.0) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ParseError(CheckInError, ValueError):
    """Inbound frame we could not make sense of. Logged and dropped."""


# Relay error codes (the `code` field of an `error` frame).
MALFORMED = "malformed"
UNAUTHENTICATED = "unauthenticated"
INVALID_SIGNATURE = "invalid_signature"
STALE_SIGNATURE = "stale_signature"
RATE_LIMITED = "rate_limited"


def from_notice(code: Optional[str], message: str, retry_after: Optional[float] = None) -> CheckInError:
    """Map a relay `error` frame onto the local taxonomy."""
    if code == RATE_LIMITED:
        return RateLimitError(message, retry_after=float(retry_after or 0.0))
    if code in (UNAUTHENTICATED, INVALID_SIGNATURE, STALE_SIGNATURE):
        return AuthenticationError(message)
    if code == MALFORMED:
        return ValidationError(message)
    return CheckInError(message)
