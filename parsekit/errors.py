# parsekit/errors.py
from __future__ import annotations

from typing import Any, Optional


class ParseError(Exception):
    """Base error for everything raised by the client library."""

    def __init__(
        self,
        message: str = "",
        code: Optional[int] = None,
        http_status: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.http_status = http_status

    def __str__(self) -> str:
        if self.code is not None:
            return f"[E-{self.code}] {self.message}"
        return self.message


class ConfigurationError(ParseError):
    pass


class ParseConnectionError(ParseError):
    """Low-level transport failure (DNS, refused connection, read timeout)."""


class AuthenticationError(ParseError):
    """401/403 or an invalid session token. Never retried."""


class RetriesExhaustedError(ParseError):
    """
    Raised after the retry policy gave up on a transient failure.
    `reason` is one of: rate_limited, unavailable, connection, deadline.
    """

    def __init__(
        self,
        reason: str,
        attempts: int,
        last_response: Any = None,
        last_error: Optional[BaseException] = None,
    ) -> None:
        code = getattr(last_response, "code", None)
        status = getattr(last_response, "http_status", None)
        super().__init__(
            f"request failed after {attempts} attempt(s): {reason}",
            code=code,
            http_status=status,
        )
        self.reason = reason
        self.attempts = attempts
        self.last_response = last_response
        self.last_error = last_error


class RecordNotSaved(ParseError):
    def __init__(self, record: Any, response: Any = None) -> None:
        err = getattr(response, "error", None) or "unknown error"
        super().__init__(
            f"{type(record).__name__} could not be saved: {err}",
            code=getattr(response, "code", None),
            http_status=getattr(response, "http_status", None),
        )
        self.record = record
        self.response = response


class WebhookResponseError(ParseError):
    """Signals an expected webhook failure; rendered as {"error": message}."""
