"""
Base class for Tether provider adapters.

Every adapter subclasses Integration and supplies the vendor-specific
hooks (authentication, token exchange, connection probe, capabilities,
resource syncers, webhook handlers). The base class turns those hooks
into the uniform contract and routes every vendor call through
execute_with_protection().

Call path:
    1. Circuit breaker gate for (provider, operation)
    2. Rate governor gate for provider
    3. Proactive token refresh when the token is about to expire
    4. Vendor call with timeout
    5. On 401: single-flight refresh, then exactly one retry
    6. On 429: governor cooldown, RateLimitedError
    7. On network/5xx/timeout: local retries with exponential backoff,
       each attempt passing through the breaker again

Design Principles:
1. Expected failures on the contract surface become result objects
   (AuthResult, ConnectionStatus, SyncResult); programmer errors propagate
2. Tokens only ever touch storage through the vault
3. All shared state lives in the injected IntegrationRuntime
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any, ClassVar

import httpx

from tether.resilience.backoff import ExponentialBackoff
from tether.webhooks.signatures import webhook_provider_for

from .client import IntegrationClient
from .errors import (
    AuthenticationError,
    IntegrationError,
    TokenVaultError,
    UpstreamError,
)
from .models import (
    AuthResult,
    ConnectionStatus,
    IntegrationCapability,
    IntegrationConfig,
    SyncResult,
    WebhookPayload,
)
from .outcome import CallOutcome, Fatal, NeedsRefresh, Ok, RateLimited, classify_exception

if TYPE_CHECKING:
    from tether.resilience.circuit import CircuitBreaker
    from tether.runtime import IntegrationRuntime
    from tether.sync.orchestrator import ResourceSyncer

logger = logging.getLogger(__name__)

VendorCall = Callable[[str], Awaitable[Any]]

MAX_RETRY_DELAY = 30.0


def on_event(*event_types: str):
    """
    Register an adapter method as the handler for webhook event types.

    Example:
        class GitHubIntegration(Integration):
            @on_event("issues", "issue_comment")
            async def _on_issue(self, payload: WebhookPayload) -> None:
                ...
    """

    def decorator(func):
        func._webhook_events = tuple(event_types)
        return func

    return decorator


class Integration(ABC):
    """
    Abstract base class for provider adapters.

    Subclasses must define:
    - provider: Provider name (also the policy and webhook table key)
    - api_base_url: Vendor API base URL
    - _perform_authentication(): Exchange credentials for tokens
    - exchange_refresh_token(): Trade a refresh token for new tokens
    - _check_connection(): Cheap authenticated probe call
    - get_capabilities(): Features and the scopes they need

    Subclasses may override:
    - _revoke_tokens(): Vendor-side revocation
    - resource_syncers(): One ResourceSyncer per resource type
    """

    provider: ClassVar[str] = ""
    api_base_url: ClassVar[str] = ""

    _webhook_handlers: ClassVar[dict[str, str]] = {}

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        handlers: dict[str, str] = {}
        for klass in reversed(cls.__mro__):
            for name, attr in vars(klass).items():
                for event_type in getattr(attr, "_webhook_events", ()):
                    handlers[event_type] = name
        cls._webhook_handlers = handlers

    def __init__(
        self,
        user_id: str,
        runtime: IntegrationRuntime,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize the adapter for one user.

        Args:
            user_id: Owning user
            runtime: Shared engines and collaborators
            transport: Optional httpx transport for the vendor client
        """
        self.user_id = user_id
        self.runtime = runtime
        self.policy = runtime.policy_for(self.provider)
        self.client = IntegrationClient(
            self.provider,
            self.api_base_url,
            timeout=self.policy.timeout,
            transport=transport,
            log_requests=runtime.settings.debug,
        )

    @property
    def integration_id(self) -> str:
        return f"{self.provider}:{self.user_id}"

    def __repr__(self) -> str:
        return f"{type(self).__name__}(user_id={self.user_id!r})"

    # ==================== Vendor Hooks ====================

    @abstractmethod
    async def _perform_authentication(self, credentials: dict[str, Any]) -> AuthResult:
        """Exchange credentials (e.g. an OAuth code) for tokens."""
        ...

    @abstractmethod
    async def exchange_refresh_token(self, refresh_token: str) -> AuthResult:
        """Trade a refresh token for a new access token."""
        ...

    @abstractmethod
    async def _check_connection(self, access_token: str) -> CallOutcome:
        """Cheap authenticated call used by test_connection()."""
        ...

    @abstractmethod
    def get_capabilities(self) -> list[IntegrationCapability]:
        """Features this adapter offers."""
        ...

    async def _revoke_tokens(self, access_token: str) -> None:
        """Revoke tokens at the vendor. Default: nothing to revoke."""
        return None

    def resource_syncers(self) -> list[ResourceSyncer]:
        """Resource syncers for sync_data(). Default: nothing to sync."""
        return []

    # ==================== Config ====================

    async def get_config(self) -> IntegrationConfig | None:
        return await self.runtime.store.get_config(self.user_id, self.provider)

    async def get_webhook_secret(self) -> str | None:
        """The integration's own webhook secret, else the provider-wide one."""
        config = await self.get_config()
        if config and config.webhook_secret:
            return config.webhook_secret.get_secret_value()
        return self.runtime.settings.webhook_secret_for(self.provider)

    # ==================== Authentication ====================

    async def authenticate(self, **credentials: Any) -> AuthResult:
        """
        Authenticate and persist the resulting tokens.

        Returns:
            AuthResult; success=False with an error for bad credentials or
            vendor failures
        """
        try:
            result = await asyncio.wait_for(
                self._perform_authentication(credentials), timeout=self.policy.timeout
            )
        except asyncio.TimeoutError:
            logger.warning(f"[{self.provider}] Authentication timed out for user {self.user_id}")
            return AuthResult.failed(f"Authentication timed out after {self.policy.timeout}s")
        except (IntegrationError, httpx.HTTPError) as e:
            logger.warning(f"[{self.provider}] Authentication failed for user {self.user_id}: {e}")
            return AuthResult.failed(str(e))

        if not result.success or not result.access_token:
            logger.info(f"[{self.provider}] Authentication rejected for user {self.user_id}")
            return result if not result.success else AuthResult.failed("No access token returned")

        vault = self.runtime.vault
        config = await self.get_config() or IntegrationConfig(
            user_id=self.user_id,
            provider=self.provider,
            api_base_url=self.api_base_url,
        )
        try:
            config.encrypted_access_token = vault.encrypt(result.access_token, self.user_id)
            config.encrypted_refresh_token = (
                vault.encrypt(result.refresh_token, self.user_id) if result.refresh_token else None
            )
        except TokenVaultError as e:
            logger.error(f"[{self.provider}] Could not store tokens for user {self.user_id}")
            return AuthResult.failed(str(e))

        config.token_expiry = result.expires_at
        config.scopes = list(result.scope)
        config.connected = True
        config.last_error = None
        await self.runtime.store.save_config(config)

        logger.info(f"[{self.provider}] Authenticated user {self.user_id}")
        return result

    async def refresh_token(self) -> AuthResult:
        """Refresh the access token through the single-flight coordinator."""
        try:
            return await self.runtime.refresher.refresh(
                self.user_id,
                self.provider,
                self.exchange_refresh_token,
                timeout=self.policy.timeout,
            )
        except IntegrationError as e:
            return AuthResult.failed(str(e))

    async def revoke_access(self) -> bool:
        """
        Revoke tokens at the vendor, clear them locally and mark disconnected.

        Returns:
            False if there was no integration to revoke
        """
        config = await self.get_config()
        if config is None:
            return False

        if config.encrypted_access_token:
            try:
                access_token = self.runtime.vault.decrypt(config.encrypted_access_token, self.user_id)
                await self._revoke_tokens(access_token)
            except (IntegrationError, TokenVaultError) as e:
                logger.warning(f"[{self.provider}] Vendor revocation failed, clearing locally: {e}")

        config.encrypted_access_token = None
        config.encrypted_refresh_token = None
        config.token_expiry = None
        config.connected = False
        config.last_error = None
        await self.runtime.store.save_config(config)

        logger.info(f"[{self.provider}] Revoked access for user {self.user_id}")
        return True

    async def disconnect(self) -> bool:
        """Revoke access and delete the integration with its sync state."""
        await self.revoke_access()
        deleted = await self.runtime.store.delete_config(self.user_id, self.provider)
        await self.client.close()
        return deleted

    # ==================== Health ====================

    async def test_connection(self) -> ConnectionStatus:
        """
        Probe the vendor with the stored credentials.

        Never raises for expected failures; a disconnected integration
        reports is_connected=False with the reason.
        """
        governor = self.runtime.governor
        config = await self.get_config()

        if config is None or not config.connected:
            return ConnectionStatus(
                is_connected=False,
                error=(config.last_error if config else None) or "Integration is not connected",
                rate_limit_info=governor.rate_limit_info(self.provider),
            )

        try:
            await self.execute_with_protection("test_connection", self._check_connection)
        except IntegrationError as e:
            return ConnectionStatus(
                is_connected=False,
                error=str(e),
                rate_limit_info=governor.rate_limit_info(self.provider),
            )

        return ConnectionStatus(
            is_connected=True,
            rate_limit_info=governor.rate_limit_info(self.provider),
        )

    def validate_required_scopes(self, scopes: list[str]) -> bool:
        """True if every scope is required by at least one declared capability."""
        available: set[str] = set()
        for capability in self.get_capabilities():
            available.update(capability.required_scopes)
        return all(scope in available for scope in scopes)

    # ==================== Sync ====================

    async def sync_data(self, last_sync_time: datetime | None = None) -> SyncResult:
        """
        Incrementally sync every resource type.

        A paused integration syncs nothing and reports metadata["paused"].

        Args:
            last_sync_time: Overrides the stored cursors when given
        """
        config = await self.get_config()
        if config is not None and config.sync_paused:
            logger.info(f"[{self.provider}] Sync paused for user {self.user_id}, skipping")
            return SyncResult(
                success=True,
                metadata={"provider": self.provider, "user_id": self.user_id, "paused": True},
            )

        return await self.runtime.orchestrator.run(
            user_id=self.user_id,
            provider=self.provider,
            syncers=self.resource_syncers(),
            last_sync_time=last_sync_time,
            deadline=self.runtime.settings.sync_deadline,
        )

    async def pause_sync(self) -> bool:
        """Stop scheduled and manual syncs until resume_sync(). False if not configured."""
        return await self._set_sync_paused(True)

    async def resume_sync(self) -> bool:
        """Allow syncs again. False if not configured."""
        return await self._set_sync_paused(False)

    async def _set_sync_paused(self, paused: bool) -> bool:
        config = await self.get_config()
        if config is None:
            return False
        config.sync_paused = paused
        await self.runtime.store.save_config(config)
        logger.info(
            f"[{self.provider}] Sync {'paused' if paused else 'resumed'} for user {self.user_id}"
        )
        return True

    async def is_sync_due(
        self,
        *,
        error_count: int = 0,
        last_error_at: datetime | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Whether a scheduled sync should run now for this connected integration."""
        config = await self.get_config()
        if config is None or not config.connected:
            return False
        return self.runtime.orchestrator.is_sync_due(
            self.provider,
            await self.get_last_sync_time(),
            error_count=error_count,
            last_error_at=last_error_at,
            now=now,
            paused=config.sync_paused,
        )

    async def get_last_sync_time(self) -> datetime | None:
        """Oldest completed cursor, or None if any resource type never synced."""
        return await self.runtime.orchestrator.get_last_sync_time(
            self.user_id,
            self.provider,
            [syncer.resource_type for syncer in self.resource_syncers()],
        )

    # ==================== Webhooks ====================

    async def handle_webhook(self, payload: WebhookPayload) -> bool:
        """
        Route a verified webhook to its @on_event handler.

        Returns:
            True if a handler ran, False if the event type is not handled
        """
        handler_name = self._webhook_handlers.get(payload.event_type)
        if handler_name is None:
            logger.info(f"[{self.provider}] No handler for webhook event '{payload.event_type}'")
            return False
        await getattr(self, handler_name)(payload)
        return True

    async def validate_webhook_signature(
        self,
        payload: bytes,
        signature: str,
        *,
        headers: dict[str, str] | None = None,
    ) -> bool:
        """
        Check a signature against this integration's webhook secret.

        Timestamped schemes also need their timestamp header in headers.
        """
        secret = await self.get_webhook_secret()
        if not secret:
            return False
        scheme = webhook_provider_for(self.provider).scheme
        request_headers = dict(headers or {})
        request_headers[scheme.signature_header] = signature
        return scheme.verify(secret, request_headers, payload)

    # ==================== Protected Calls ====================

    async def execute_with_protection(
        self,
        operation: str,
        call: VendorCall,
        *,
        timeout: float | None = None,
    ) -> Any:
        """
        Run a vendor call behind breaker, governor and token refresh.

        Args:
            operation: Operation name (breaker key and metrics label)
            call: Receives the access token and returns a CallOutcome
                (a plain value is treated as Ok)
            timeout: Per-attempt timeout (defaults to the provider policy)

        Returns:
            The Ok value

        Raises:
            CircuitOpenError: Breaker is open; the call was not attempted
            RateLimitedError: Provider is cooling down after a 429
            AuthenticationError: Token rejected after one refresh, or no token
            UpstreamError: Transient failure persisted through local retries
            IntegrationError: Any other vendor error
        """
        breaker = self.runtime.breakers.get(self.provider, operation)
        timeout = timeout or self.policy.timeout
        backoff = ExponentialBackoff(
            base=self.policy.retry_delay,
            max_delay=min(self.policy.max_backoff, MAX_RETRY_DELAY),
        )

        start = time.perf_counter()
        success = False
        attempt = 0
        try:
            while True:
                attempt += 1
                try:
                    value = await self._attempt(operation, breaker, call, timeout)
                except UpstreamError as e:
                    if attempt > self.policy.max_retries:
                        logger.warning(
                            f"[{self.provider}] {operation} failed after {attempt} attempt(s): {e}"
                        )
                        raise
                    delay = backoff.get_delay(attempt)
                    logger.info(
                        f"[{self.provider}] Retry {attempt}/{self.policy.max_retries} "
                        f"for {operation} after {delay:.2f}s"
                    )
                    await self.runtime.sleep(delay)
                    continue
                success = True
                return value
        finally:
            await self.runtime.metrics.track_api_call(
                self.user_id,
                self.integration_id,
                self.provider,
                operation,
                (time.perf_counter() - start) * 1000,
                success,
            )

    async def _attempt(
        self,
        operation: str,
        breaker: CircuitBreaker,
        call: VendorCall,
        timeout: float,
    ) -> Any:
        """One attempt through the breaker."""
        is_probe = breaker.before_call()
        try:
            value = await self._call_vendor(operation, call, timeout)
        except BaseException as e:
            breaker.record_error(e, is_probe)
            raise
        breaker.record_success(is_probe)
        self.runtime.governor.record_success(self.provider)
        return value

    async def _call_vendor(self, operation: str, call: VendorCall, timeout: float) -> Any:
        governor = self.runtime.governor

        await governor.acquire(self.provider, operation)
        token = await self._access_token()
        outcome = await self._invoke(operation, call, token, timeout)

        if isinstance(outcome, NeedsRefresh):
            logger.info(f"[{self.provider}] {operation} got 401, refreshing token")
            refreshed = await self.runtime.refresher.refresh(
                self.user_id,
                self.provider,
                self.exchange_refresh_token,
                stale_token=token,
                timeout=self.policy.timeout,
            )
            await governor.acquire(self.provider, operation)
            outcome = await self._invoke(operation, call, refreshed.access_token, timeout)
            if isinstance(outcome, NeedsRefresh):
                raise AuthenticationError(
                    "Access token rejected after refresh", self.provider, status_code=401
                )

        if isinstance(outcome, RateLimited):
            raise await governor.record_rate_limited(self.provider, outcome.retry_after, operation)

        if isinstance(outcome, Fatal):
            raise outcome.error

        return outcome.value

    async def _invoke(
        self, operation: str, call: VendorCall, token: str, timeout: float
    ) -> CallOutcome:
        try:
            result = await asyncio.wait_for(call(token), timeout=timeout)
        except asyncio.TimeoutError:
            return Fatal(
                UpstreamError(
                    f"{operation} timed out after {timeout}s",
                    self.provider,
                    kind=UpstreamError.TIMEOUT,
                )
            )
        except httpx.HTTPError as e:
            return classify_exception(self.provider, e)

        if isinstance(result, (Ok, NeedsRefresh, RateLimited, Fatal)):
            return result
        return Ok(result)

    async def _access_token(self) -> str:
        """
        Decrypt the stored access token, refreshing it first if it expires
        within the configured skew.
        """
        config = await self.get_config()
        if config is None or not config.encrypted_access_token:
            raise AuthenticationError("Integration is not connected", self.provider)
        if not config.connected:
            raise AuthenticationError(
                config.last_error or "Integration is disconnected", self.provider
            )

        try:
            token = self.runtime.vault.decrypt(config.encrypted_access_token, self.user_id)
        except TokenVaultError as e:
            raise AuthenticationError("Stored access token is unreadable", self.provider) from e

        skew = timedelta(seconds=self.runtime.settings.token_refresh_skew)
        if (
            config.token_expiry is not None
            and config.encrypted_refresh_token
            and config.token_expiry - datetime.now(UTC) <= skew
        ):
            logger.info(f"[{self.provider}] Access token expiring, refreshing proactively")
            refreshed = await self.runtime.refresher.refresh(
                self.user_id,
                self.provider,
                self.exchange_refresh_token,
                stale_token=token,
                timeout=self.policy.timeout,
            )
            token = refreshed.access_token

        return token

    async def close(self) -> None:
        await self.client.close()

    async def __aenter__(self) -> Integration:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


__all__ = ["Integration", "VendorCall", "on_event"]
