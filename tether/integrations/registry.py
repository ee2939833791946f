"""
Integration Registry.

Maps provider names to adapter classes and builds adapter instances bound
to a user and a runtime.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .base import Integration

if TYPE_CHECKING:
    from tether.runtime import IntegrationRuntime

logger = logging.getLogger(__name__)


class IntegrationRegistry:
    """
    Registry of adapter classes.

    Usage:
        registry = IntegrationRegistry()
        registry.register(GitHubIntegration)

        github = registry.create("github", user_id, runtime)
    """

    def __init__(self) -> None:
        self._adapters: dict[str, type[Integration]] = {}

    def register(self, adapter: type[Integration], name: str | None = None) -> type[Integration]:
        """
        Register an adapter class.

        Returns the class so this can be used as a decorator.

        Raises:
            ValueError: If the class is not an Integration or has no provider name
        """
        if not isinstance(adapter, type) or not issubclass(adapter, Integration):
            raise ValueError(f"{adapter!r} is not an Integration subclass")
        provider = (name or adapter.provider).lower()
        if not provider:
            raise ValueError(f"{adapter.__name__} must define a provider name")

        if provider in self._adapters and self._adapters[provider] is not adapter:
            logger.warning(f"Replacing adapter for provider '{provider}'")
        self._adapters[provider] = adapter
        logger.debug(f"Registered integration: {provider} ({adapter.__name__})")
        return adapter

    def unregister(self, provider: str) -> None:
        if self._adapters.pop(provider.lower(), None) is not None:
            logger.debug(f"Unregistered integration: {provider}")

    def get(self, provider: str) -> type[Integration]:
        """
        Get the adapter class for a provider.

        Raises:
            ValueError: If provider not registered
        """
        adapter = self._adapters.get(provider.lower())
        if adapter is None:
            raise ValueError(f"Integration '{provider}' not registered")
        return adapter

    def create(
        self,
        provider: str,
        user_id: str,
        runtime: IntegrationRuntime,
        **kwargs: Any,
    ) -> Integration:
        """Build an adapter instance for a user."""
        return self.get(provider)(user_id, runtime, **kwargs)

    @property
    def providers(self) -> list[str]:
        return sorted(self._adapters)

    def __contains__(self, provider: str) -> bool:
        return provider.lower() in self._adapters


__all__ = ["IntegrationRegistry"]
