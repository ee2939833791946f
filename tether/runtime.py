"""
Integration runtime.

Bundles the shared engines and collaborators that every adapter instance
in a process uses. Build one per process and pass it to adapters.

Usage:
    runtime = IntegrationRuntime.create(get_settings())
    github = registry.create("github", user_id, runtime)
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from tether.config.schemas import FrameworkSettings, ProviderPolicy
from tether.metrics import MetricsSink, SafeMetrics
from tether.persistence.base import InMemoryIntegrationStore, IntegrationStore
from tether.persistence.mongo import MongoIntegrationStore
from tether.resilience.circuit import CircuitBreakerRegistry
from tether.resilience.governor import RateGovernor
from tether.resilience.refresh import TokenRefreshCoordinator
from tether.sync.orchestrator import SyncOrchestrator
from tether.vault import FernetTokenVault, TokenVault
from tether.webhooks.dispatcher import WebhookDispatcher

logger = logging.getLogger(__name__)


@dataclass
class IntegrationRuntime:
    """Shared engines and collaborators for adapters."""

    settings: FrameworkSettings
    store: IntegrationStore
    vault: TokenVault
    metrics: SafeMetrics
    breakers: CircuitBreakerRegistry
    governor: RateGovernor
    refresher: TokenRefreshCoordinator
    orchestrator: SyncOrchestrator
    webhooks: WebhookDispatcher
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep)

    def policy_for(self, provider: str) -> ProviderPolicy:
        return self.settings.policy_for(provider)

    @classmethod
    def create(
        cls,
        settings: FrameworkSettings,
        *,
        store: IntegrationStore | None = None,
        vault: TokenVault | None = None,
        metrics_sink: MetricsSink | None = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> IntegrationRuntime:
        """
        Wire a runtime from settings.

        Args:
            settings: Framework settings
            store: Persistence (defaults to MongoDB when configured, else in-memory)
            vault: Token vault (defaults to Fernet with the configured key)
            metrics_sink: Metrics backend (None disables metrics)
            clock: Monotonic clock for breakers and rate limits
            wall_clock: Wall clock for webhook timestamps and dedupe
            sleep: Sleep used for backoff and rate-limit waits
        """
        if store is None:
            if settings.mongodb_url:
                store = MongoIntegrationStore(settings.mongodb_url, settings.mongodb_database)
            else:
                logger.info("No MongoDB URL configured, using in-memory integration store")
                store = InMemoryIntegrationStore()

        if vault is None:
            vault = FernetTokenVault(settings.encryption_key.get_secret_value())

        metrics = SafeMetrics(metrics_sink)

        return cls(
            settings=settings,
            store=store,
            vault=vault,
            metrics=metrics,
            breakers=CircuitBreakerRegistry(settings.policy_for, clock=clock),
            governor=RateGovernor(settings.policy_for, metrics=metrics, clock=clock, sleep=sleep),
            refresher=TokenRefreshCoordinator(store, vault),
            orchestrator=SyncOrchestrator(store, settings.policy_for),
            webhooks=WebhookDispatcher(
                metrics=metrics,
                dedupe_ttl=settings.webhook_dedupe_ttl,
                dedupe_size=settings.webhook_dedupe_size,
                clock=wall_clock,
            ),
            sleep=sleep,
        )


__all__ = ["IntegrationRuntime"]
