"""
Configuration Schemas for Tether.

Pydantic models for framework settings and per-provider resilience
policies.

Security:
    Sensitive fields use SecretStr to prevent accidental logging
    of credentials. Access the value with `.get_secret_value()`.
"""

from __future__ import annotations

from pydantic import BaseModel, Field, SecretStr


class ProviderPolicy(BaseModel):
    """
    Resilience knobs for one provider.

    Times are in seconds.
    """

    # Circuit breaker
    failure_threshold: int = Field(5, ge=1, description="Tripping failures before OPEN")
    failure_window: float = Field(300.0, gt=0, description="Rolling window for failures")
    cooldown: float = Field(30.0, ge=0, description="OPEN duration before a probe")

    # Rate governor
    rate: float = Field(10.0, gt=0, description="Token bucket refill, calls per second")
    burst: int = Field(20, ge=1, description="Token bucket capacity")
    max_wait: float = Field(10.0, ge=0, description="Longest wait for a bucket token")
    backoff_base: float = Field(1.0, gt=0, description="First 429 backoff without Retry-After")
    max_backoff: float = Field(300.0, gt=0, description="Cap for 429 backoff")

    # Calls
    max_retries: int = Field(2, ge=0, description="Local retries on transient failures")
    retry_delay: float = Field(0.5, ge=0, description="Base delay between local retries")
    timeout: float = Field(30.0, gt=0, description="Per-call timeout")

    # Sync
    sync_concurrency: int = Field(3, ge=1, description="Resource types synced in parallel")
    min_sync_interval: float = Field(900.0, ge=0, description="Minimum time between syncs")

    class Config:
        extra = "forbid"


DEFAULT_POLICY = ProviderPolicy()

DEFAULT_PROVIDER_POLICIES: dict[str, ProviderPolicy] = {
    "slack": ProviderPolicy(
        failure_threshold=3, cooldown=30.0, failure_window=180.0, min_sync_interval=120.0
    ),
    "github": ProviderPolicy(
        failure_threshold=8, cooldown=120.0, failure_window=600.0, min_sync_interval=600.0
    ),
    "notion": ProviderPolicy(
        failure_threshold=3, cooldown=45.0, failure_window=240.0, min_sync_interval=900.0
    ),
    "calendly": ProviderPolicy(
        failure_threshold=4, cooldown=30.0, failure_window=300.0, min_sync_interval=300.0
    ),
    "google-workspace": ProviderPolicy(min_sync_interval=300.0),
    "microsoft-365": ProviderPolicy(min_sync_interval=300.0),
}


class FrameworkSettings(BaseModel):
    """
    Framework settings.

    Security:
        Keys and webhook secrets use SecretStr to prevent accidental logging.
        Access secret values with: settings.encryption_key.get_secret_value()
    """

    # Service identity
    service_name: str = "tether"
    environment: str = "development"
    debug: bool = False

    # Token vault
    encryption_key: SecretStr = Field(SecretStr(""), description="Master key for token encryption")

    # MongoDB (empty URL selects the in-memory store)
    mongodb_url: str = ""
    mongodb_database: str = "tether"

    # Resilience
    default_policy: ProviderPolicy = Field(default_factory=ProviderPolicy)
    provider_policies: dict[str, ProviderPolicy] = Field(
        default_factory=lambda: dict(DEFAULT_PROVIDER_POLICIES)
    )
    token_refresh_skew: float = Field(60.0, ge=0, description="Refresh this long before expiry")
    sync_deadline: float | None = Field(None, gt=0, description="Overall sync deadline")

    # Webhooks
    webhook_secrets: dict[str, SecretStr] = Field(default_factory=dict)
    webhook_dedupe_ttl: float = Field(3600.0, gt=0)
    webhook_dedupe_size: int = Field(10000, ge=1)

    def policy_for(self, provider: str) -> ProviderPolicy:
        """Get the resilience policy for a provider, falling back to the default."""
        return self.provider_policies.get(provider.lower(), self.default_policy)

    def webhook_secret_for(self, provider: str) -> str | None:
        secret = self.webhook_secrets.get(provider.lower())
        return secret.get_secret_value() if secret else None


__all__ = [
    "DEFAULT_POLICY",
    "DEFAULT_PROVIDER_POLICIES",
    "FrameworkSettings",
    "ProviderPolicy",
]
