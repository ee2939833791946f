"""
Settings loading for Tether.

Settings come from TETHER_* environment variables and are cached for the
process lifetime.
"""

from __future__ import annotations

import json
import logging
import os
from functools import lru_cache

from pydantic import SecretStr

from .schemas import DEFAULT_PROVIDER_POLICIES, FrameworkSettings, ProviderPolicy

logger = logging.getLogger(__name__)

ENV_PREFIX = "TETHER_"
WEBHOOK_SECRET_SUFFIX = "_WEBHOOK_SECRET"


def _webhook_secrets_from_env(environ: dict[str, str]) -> dict[str, SecretStr]:
    """Collect TETHER_<PROVIDER>_WEBHOOK_SECRET variables."""
    secrets: dict[str, SecretStr] = {}
    for key, value in environ.items():
        if key.startswith(ENV_PREFIX) and key.endswith(WEBHOOK_SECRET_SUFFIX) and value:
            provider = key[len(ENV_PREFIX) : -len(WEBHOOK_SECRET_SUFFIX)].lower()
            if provider:
                secrets[provider] = SecretStr(value)
    return secrets


def _provider_policies_from_env(environ: dict[str, str]) -> dict[str, ProviderPolicy]:
    """
    Merge TETHER_PROVIDER_POLICIES (a JSON object of partial policies) over
    the built-in defaults.
    """
    policies = dict(DEFAULT_PROVIDER_POLICIES)
    raw = environ.get(f"{ENV_PREFIX}PROVIDER_POLICIES")
    if not raw:
        return policies

    overrides = json.loads(raw)
    for provider, values in overrides.items():
        base = policies.get(provider.lower(), ProviderPolicy())
        policies[provider.lower()] = ProviderPolicy(**{**base.model_dump(), **values})
    return policies


def load_settings(environ: dict[str, str] | None = None) -> FrameworkSettings:
    """
    Build settings from an environment mapping.

    Args:
        environ: Mapping to read (defaults to os.environ)
    """
    env = dict(os.environ if environ is None else environ)

    deadline = env.get(f"{ENV_PREFIX}SYNC_DEADLINE")

    settings = FrameworkSettings(
        # Service
        service_name=env.get(f"{ENV_PREFIX}SERVICE_NAME", "tether"),
        environment=env.get(f"{ENV_PREFIX}ENVIRONMENT", "development"),
        debug=env.get(f"{ENV_PREFIX}DEBUG", "false").lower() == "true",
        # Vault
        encryption_key=SecretStr(env.get(f"{ENV_PREFIX}ENCRYPTION_KEY", "")),
        # MongoDB
        mongodb_url=env.get(f"{ENV_PREFIX}MONGODB_URL", ""),
        mongodb_database=env.get(f"{ENV_PREFIX}MONGODB_DATABASE", "tether"),
        # Resilience
        provider_policies=_provider_policies_from_env(env),
        token_refresh_skew=float(env.get(f"{ENV_PREFIX}TOKEN_REFRESH_SKEW", "60")),
        sync_deadline=float(deadline) if deadline else None,
        # Webhooks
        webhook_secrets=_webhook_secrets_from_env(env),
        webhook_dedupe_ttl=float(env.get(f"{ENV_PREFIX}WEBHOOK_DEDUPE_TTL", "3600")),
    )

    if not settings.encryption_key.get_secret_value():
        logger.warning("TETHER_ENCRYPTION_KEY is not set; token encryption will fail")

    return settings


@lru_cache()
def get_settings() -> FrameworkSettings:
    """
    Get framework settings from environment.

    Uses lru_cache for singleton pattern.
    """
    return load_settings()


__all__ = ["get_settings", "load_settings"]
