"""
Error taxonomy for Tether integrations.

Every failure surfaced by an adapter or an engine is an IntegrationError
subclass, so callers can branch on type instead of parsing messages.

Breaker classification:
    - Tripping: UpstreamError (network errors, 5xx, timeouts)
    - Neutral: RequestError (4xx other than 401/429), AuthenticationError,
      RateLimitedError, CircuitOpenError, ValidationError
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import SyncResult


class IntegrationError(Exception):
    """Base exception for integration errors."""

    def __init__(
        self,
        message: str,
        provider: str,
        *,
        status_code: int | None = None,
        response_body: str | None = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.response_body = response_body
        self.retryable = retryable

    @property
    def message(self) -> str:
        return self.args[0]

    def __str__(self) -> str:
        parts = [f"[{self.provider}] {self.args[0]}"]
        if self.status_code:
            parts.append(f"(status={self.status_code})")
        return " ".join(parts)


class UpstreamError(IntegrationError):
    """
    Transient upstream failure: network error, 5xx, or timeout.

    The only error kind that counts toward circuit breaker thresholds.
    """

    NETWORK = "network"
    SERVER = "server"
    TIMEOUT = "timeout"

    def __init__(self, message: str, provider: str, *, kind: str = SERVER, **kwargs):
        super().__init__(message, provider, retryable=True, **kwargs)
        self.kind = kind


class RequestError(IntegrationError):
    """Raised for client errors (4xx other than 401/429)."""

    def __init__(self, message: str, provider: str, **kwargs):
        super().__init__(message, provider, retryable=False, **kwargs)


class AuthenticationError(IntegrationError):
    """Raised when credentials are rejected or cannot be refreshed."""

    def __init__(self, message: str, provider: str, **kwargs):
        super().__init__(message, provider, retryable=False, **kwargs)


class RateLimitedError(IntegrationError):
    """Raised when a provider is in a rate-limit cooldown (429)."""

    def __init__(
        self,
        message: str,
        provider: str,
        *,
        reset_time: datetime,
        retry_after: float | None = None,
        **kwargs,
    ):
        kwargs.setdefault("status_code", 429)
        super().__init__(message, provider, retryable=False, **kwargs)
        self.reset_time = reset_time
        self.retry_after = retry_after


class CircuitOpenError(IntegrationError):
    """Raised when a circuit is open and the call was not attempted."""

    def __init__(self, provider: str, operation: str, reset_after: float):
        super().__init__(
            f"Circuit '{provider}:{operation}' is open, "
            f"will attempt reset in {reset_after:.1f}s",
            provider,
            retryable=False,
        )
        self.operation = operation
        self.reset_after = reset_after


class SyncError(IntegrationError):
    """Raised on request when a sync finished with errors; carries the partial result."""

    def __init__(self, provider: str, result: SyncResult):
        super().__init__(
            f"Sync finished with {len(result.errors)} error(s)",
            provider,
            retryable=False,
        )
        self.result = result


class ValidationError(IntegrationError):
    """Raised when inbound data fails validation (bad signature, malformed body)."""

    def __init__(self, message: str, provider: str, **kwargs):
        super().__init__(message, provider, retryable=False, **kwargs)


class TokenVaultError(Exception):
    """Raised when a token cannot be encrypted or decrypted."""


def trips_breaker(error: BaseException) -> bool:
    """Whether an error counts toward the circuit breaker's failure threshold."""
    return isinstance(error, UpstreamError)


__all__ = [
    "AuthenticationError",
    "CircuitOpenError",
    "IntegrationError",
    "RateLimitedError",
    "RequestError",
    "SyncError",
    "TokenVaultError",
    "UpstreamError",
    "ValidationError",
    "trips_breaker",
]
