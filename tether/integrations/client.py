"""
HTTP client for vendor APIs.

Thin wrapper around httpx.AsyncClient that injects the bearer token and
returns a CallOutcome instead of raising. Retries, rate limiting and
circuit breaking live in execute_with_protection(), not here.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from .outcome import CallOutcome, classify_exception, classify_response

logger = logging.getLogger(__name__)


class IntegrationClient:
    """
    Vendor HTTP client for one adapter instance.

    Example:
        client = IntegrationClient("github", "https://api.github.com")
        outcome = await client.request("GET", "/user", token=access_token)
    """

    def __init__(
        self,
        provider: str,
        base_url: str,
        *,
        timeout: float = 30.0,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        log_requests: bool = False,
    ):
        """
        Initialize the client.

        Args:
            provider: Provider name
            base_url: Vendor API base URL
            timeout: Per-request timeout in seconds
            headers: Extra default headers
            transport: Optional httpx transport (tests use httpx.MockTransport)
            log_requests: Log method, path and status at DEBUG
        """
        self.provider = provider
        self.base_url = base_url
        self.timeout = timeout
        self._headers = headers or {}
        self._transport = transport
        self._log_requests = log_requests
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
                headers={
                    "Content-Type": "application/json",
                    "Accept": "application/json",
                    **self._headers,
                },
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def request(
        self,
        method: str,
        path: str,
        *,
        token: str | None = None,
        params: dict[str, Any] | None = None,
        json: Any = None,
        data: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> CallOutcome:
        """
        Execute a single HTTP request and decode it.

        Transport failures become Fatal(UpstreamError); they are never raised.
        """
        request_headers = dict(headers or {})
        if token:
            request_headers["Authorization"] = f"Bearer {token}"

        try:
            response = await self._get_client().request(
                method=method,
                url=path,
                params=params,
                json=json,
                data=data,
                headers=request_headers,
            )
        except httpx.HTTPError as e:
            logger.warning(f"[{self.provider}] {method} {path} failed: {type(e).__name__}")
            return classify_exception(self.provider, e)

        if self._log_requests:
            logger.debug(f"[{self.provider}] {method} {path} -> {response.status_code}")

        return classify_response(self.provider, response)

    async def __aenter__(self) -> IntegrationClient:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


__all__ = ["IntegrationClient"]
