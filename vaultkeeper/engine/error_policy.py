"""Error classification and retry policy for the transport connection.

``classify_error`` is a total function: every message maps to exactly
one ErrorType by case-insensitive substring match, checked in
precedence order (first match wins):

    transient -> auth -> network -> permanent (default)

Only transient and network failures are retried.
"""
from __future__ import annotations

from dataclasses import dataclass

from .models import ErrorType

TRANSIENT_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "429",
    "timeout",
    "etimedout",
    "socket hang up",
    "econnreset",
    "process exited with code 1",
)

AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "401",
    "invalid api key",
    "forbidden",
    "403",
    "authentication",
)

NETWORK_PATTERNS: tuple[str, ...] = (
    "network",
    "enotfound",
    "dns",
    "getaddrinfo",
    "econnrefused",
)

_PRECEDENCE: tuple[tuple[ErrorType, tuple[str, ...]], ...] = (
    (ErrorType.TRANSIENT, TRANSIENT_PATTERNS),
    (ErrorType.AUTH, AUTH_PATTERNS),
    (ErrorType.NETWORK, NETWORK_PATTERNS),
)

RETRYABLE_ERROR_TYPES = frozenset({ErrorType.TRANSIENT, ErrorType.NETWORK})


def error_message(error: BaseException | str | None) -> str:
    """Return the operator-facing text of an error.

    Exceptions with an empty message fall back to the class name so
    that e.g. a bare ``TimeoutError()`` still carries meaning.
    """
    if error is None:
        return ""
    if isinstance(error, str):
        return error
    text = str(error)
    return text if text else type(error).__name__


def classify_error(error: BaseException | str | None) -> ErrorType:
    """Classify an error into one of the four ErrorType categories."""
    text = error_message(error).lower()
    for error_type, patterns in _PRECEDENCE:
        if any(pattern in text for pattern in patterns):
            return error_type
    return ErrorType.PERMANENT


def is_retryable(error_type: ErrorType) -> bool:
    return error_type in RETRYABLE_ERROR_TYPES


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for transient/network failures.

    ``max_attempts`` counts the first try, so the default of 3 allows
    two retries.
    """
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 8.0

    def should_retry(self, error_type: ErrorType, attempt: int) -> bool:
        return is_retryable(error_type) and attempt < self.max_attempts

    def delay_for(self, attempt: int) -> float:
        """Backoff before the attempt following ``attempt`` (1-based)."""
        return min(
            self.max_delay_seconds,
            self.base_delay_seconds * (2 ** (max(attempt, 1) - 1)),
        )
