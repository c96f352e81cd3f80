"""Exceptions raised while talking to bunq and Firefly III."""
from __future__ import annotations

from typing import Optional


class SyncError(Exception):
    """Base class for every error raised by the sync."""


class ConfigurationError(SyncError):
    """Missing secrets, malformed storage or invalid settings."""


class CryptoError(SyncError):
    """Key generation, parsing, signing or verification failed."""


class ProtocolError(SyncError):
    """The bank answered with something we cannot trust or understand."""


class SessionStateError(SyncError):
    """A session value was requested while no valid session is held."""


class AuthError(SyncError):
    """The server rejected our credentials (HTTP 401/403)."""

    def __init__(self, message: str, *, status_code: int, body: bytes = b"") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class UpstreamError(SyncError):
    """Any other non-success HTTP status, with the raw response body attached."""

    def __init__(self, message: str, *, status_code: int, body: bytes = b"") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    @property
    def detail(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def __str__(self) -> str:
        base = super().__str__()
        detail = self.detail
        return f"{base}: {detail}" if detail else base


class RetryExhausted(SyncError):
    """A request kept failing authentication after every session restart."""

    def __init__(self, message: str, *, attempts: int, last_error: Optional[Exception] = None) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error
