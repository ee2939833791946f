"""
Tether - resilient third-party integrations for asyncio applications.

Tether gives every provider adapter the same failure model:

- **Circuit Breaker**: per (provider, operation), stops hammering failing vendors
- **Rate Governor**: per-provider token bucket plus 429 cooldowns
- **Token Refresh**: single-flight OAuth refresh per (user, provider)
- **Sync Orchestrator**: incremental, idempotent, partial-failure tolerant sync
- **Webhook Dispatcher**: signature verification and event routing

Quick Start:
    >>> from tether import IntegrationRuntime, get_settings
    >>> runtime = IntegrationRuntime.create(get_settings())
    >>> github = GitHubIntegration("user-1", runtime)
    >>> status = await github.test_connection()
"""

__version__ = "0.1.0"

from tether.config import FrameworkSettings, ProviderPolicy, get_settings
from tether.integrations import Integration, IntegrationRegistry, on_event
from tether.runtime import IntegrationRuntime

__all__ = [
    "__version__",
    "FrameworkSettings",
    "Integration",
    "IntegrationRegistry",
    "IntegrationRuntime",
    "ProviderPolicy",
    "get_settings",
    "on_event",
]
