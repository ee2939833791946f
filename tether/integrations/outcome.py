"""
Tagged result of a single vendor call.

Vendor responses are decoded once, at the HTTP boundary, into one of:

    Ok(value)               2xx, parsed body
    NeedsRefresh()          401, access token rejected
    RateLimited(after)      429, with the raw Retry-After header
    Fatal(error)            anything else, as a typed IntegrationError

execute_with_protection() branches on the variant instead of inspecting
status codes or exception messages.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx

from .errors import (
    AuthenticationError,
    IntegrationError,
    RequestError,
    UpstreamError,
)


@dataclass(frozen=True, slots=True)
class Ok:
    value: Any = None


@dataclass(frozen=True, slots=True)
class NeedsRefresh:
    detail: str = ""


@dataclass(frozen=True, slots=True)
class RateLimited:
    retry_after: str | None = None


@dataclass(frozen=True, slots=True)
class Fatal:
    error: IntegrationError


CallOutcome = Ok | NeedsRefresh | RateLimited | Fatal


def _decode_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


def classify_response(provider: str, response: httpx.Response) -> CallOutcome:
    """
    Map an HTTP response to a CallOutcome.

    Args:
        provider: Provider name, used in error messages
        response: Vendor response

    Returns:
        The decoded outcome
    """
    status = response.status_code

    if response.is_success:
        return Ok(_decode_body(response))

    body = response.text

    if status == 401:
        return NeedsRefresh(body)

    if status == 429:
        return RateLimited(response.headers.get("Retry-After"))

    if status == 403:
        return Fatal(
            AuthenticationError(
                f"Access forbidden: {body}",
                provider,
                status_code=status,
                response_body=body,
            )
        )

    if status >= 500:
        return Fatal(
            UpstreamError(
                f"Server error: {body}",
                provider,
                kind=UpstreamError.SERVER,
                status_code=status,
                response_body=body,
            )
        )

    return Fatal(
        RequestError(
            f"Request failed: {body}",
            provider,
            status_code=status,
            response_body=body,
        )
    )


def classify_exception(provider: str, error: httpx.HTTPError) -> Fatal:
    """Map a transport-level httpx exception to a tripping Fatal outcome."""
    if isinstance(error, httpx.TimeoutException):
        return Fatal(UpstreamError(f"Request timeout: {error}", provider, kind=UpstreamError.TIMEOUT))
    return Fatal(UpstreamError(f"Network error: {error}", provider, kind=UpstreamError.NETWORK))


__all__ = [
    "CallOutcome",
    "Fatal",
    "NeedsRefresh",
    "Ok",
    "RateLimited",
    "classify_exception",
    "classify_response",
]
