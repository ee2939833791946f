"""
Token Refresh Coordinator.

Guarantees at most one in-flight refresh per (user, provider). The first
caller to arrive becomes the owner and performs the refresh; later callers
await the owner's shared future and receive the same result.

The shared future is a concurrent.futures.Future so waiters on other
threads or event loops can await it through asyncio.wrap_future.

Failure handling:
    - Missing, undecryptable, or rejected refresh token: the integration is
      marked disconnected and AuthenticationError is raised
    - Transient failures (network, 5xx, timeout): raised as UpstreamError,
      the integration stays connected
    - Cancelling the owner does not cancel the refresh; waiters still get
      its result
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, NoReturn

import httpx

from tether.integrations.errors import AuthenticationError, TokenVaultError, UpstreamError
from tether.integrations.models import AuthResult

if TYPE_CHECKING:
    from tether.persistence.base import IntegrationStore
    from tether.vault import TokenVault

logger = logging.getLogger(__name__)

RefreshExchange = Callable[[str], Awaitable[AuthResult]]


class TokenRefreshCoordinator:
    """
    Single-flight token refresh.

    Example:
        result = await coordinator.refresh(
            user_id,
            "github",
            adapter.exchange_refresh_token,
            stale_token=token_that_got_401,
        )
        retry_with(result.access_token)
    """

    def __init__(self, store: IntegrationStore, vault: TokenVault):
        self._store = store
        self._vault = vault
        self._lock = threading.Lock()
        self._in_flight: dict[tuple[str, str], concurrent.futures.Future[AuthResult]] = {}

    def is_refreshing(self, user_id: str, provider: str) -> bool:
        with self._lock:
            return (user_id, provider) in self._in_flight

    async def refresh(
        self,
        user_id: str,
        provider: str,
        exchange: RefreshExchange,
        *,
        stale_token: str | None = None,
        timeout: float | None = None,
    ) -> AuthResult:
        """
        Refresh the access token, coalescing concurrent callers.

        Args:
            user_id: Owning user
            provider: Provider name
            exchange: Vendor call that trades a refresh token for new tokens
            stale_token: The access token the caller saw rejected; if the
                stored token already differs, it is returned without a
                network call
            timeout: Limit for the vendor exchange, in seconds

        Returns:
            AuthResult with the current access token

        Raises:
            AuthenticationError: If the refresh token is missing or rejected
            UpstreamError: If the exchange timed out or hit a network error
        """
        key = (user_id, provider)
        with self._lock:
            future = self._in_flight.get(key)
            owner = future is None
            if owner:
                future = concurrent.futures.Future()
                self._in_flight[key] = future

        if not owner:
            logger.debug(f"[{provider}] Joining in-flight token refresh for user {user_id}")
            return await asyncio.wrap_future(future)

        # The refresh runs as its own task so cancelling the owner does not
        # cancel it for the waiters.
        task = asyncio.ensure_future(
            self._perform_refresh(user_id, provider, exchange, stale_token, timeout)
        )
        task.add_done_callback(lambda t: self._publish(key, future, t))
        return await asyncio.shield(task)

    def _publish(
        self,
        key: tuple[str, str],
        future: concurrent.futures.Future[AuthResult],
        task: asyncio.Future[AuthResult],
    ) -> None:
        with self._lock:
            self._in_flight.pop(key, None)

        if task.cancelled():
            future.set_exception(UpstreamError("Token refresh was cancelled", key[1]))
        elif task.exception() is not None:
            future.set_exception(task.exception())
        else:
            future.set_result(task.result())

    async def _perform_refresh(
        self,
        user_id: str,
        provider: str,
        exchange: RefreshExchange,
        stale_token: str | None,
        timeout: float | None,
    ) -> AuthResult:
        config = await self._store.get_config(user_id, provider)
        if config is None:
            raise AuthenticationError("Integration is not configured", provider)

        # A refresh may have completed between the caller's 401 and now
        if stale_token is not None and config.encrypted_access_token:
            try:
                current = self._vault.decrypt(config.encrypted_access_token, user_id)
            except TokenVaultError:
                current = None
            if current is not None and current != stale_token:
                logger.debug(f"[{provider}] Token already refreshed for user {user_id}")
                return AuthResult(
                    success=True,
                    access_token=current,
                    expires_at=config.token_expiry,
                    scope=list(config.scopes),
                )

        if not config.encrypted_refresh_token:
            await self._disconnect(user_id, provider, "No refresh token available")

        try:
            refresh_token = self._vault.decrypt(config.encrypted_refresh_token, user_id)
        except TokenVaultError:
            await self._disconnect(user_id, provider, "Stored refresh token is unreadable")

        logger.info(f"[{provider}] Refreshing access token for user {user_id}")

        try:
            result = await asyncio.wait_for(exchange(refresh_token), timeout=timeout)
        except AuthenticationError as e:
            await self._disconnect(user_id, provider, f"Refresh token rejected: {e.message}")
        except asyncio.TimeoutError as e:
            raise UpstreamError(
                f"Token refresh timed out after {timeout}s", provider, kind=UpstreamError.TIMEOUT
            ) from e
        except httpx.HTTPError as e:
            raise UpstreamError(
                f"Token refresh failed: {e}", provider, kind=UpstreamError.NETWORK
            ) from e

        if not result.success or not result.access_token:
            await self._disconnect(
                user_id, provider, f"Refresh token rejected: {result.error or 'no access token'}"
            )

        config.encrypted_access_token = self._vault.encrypt(result.access_token, user_id)
        if result.refresh_token:
            config.encrypted_refresh_token = self._vault.encrypt(result.refresh_token, user_id)
        config.token_expiry = result.expires_at
        if result.scope:
            config.scopes = list(result.scope)
        config.connected = True
        config.last_error = None
        await self._store.save_config(config)

        logger.info(f"[{provider}] Access token refreshed for user {user_id}")
        return result

    async def _disconnect(self, user_id: str, provider: str, reason: str) -> NoReturn:
        """Mark the integration disconnected and raise AuthenticationError."""
        await self._store.mark_disconnected(user_id, provider, reason)
        raise AuthenticationError(reason, provider)


__all__ = ["RefreshExchange", "TokenRefreshCoordinator"]
