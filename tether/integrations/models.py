"""
Data models shared by adapters and engines.

Persisted records (IntegrationConfig, SyncCursor) are pydantic models so
they round-trip through the store; everything else is an immutable
dataclass that never leaves the process.

Security:
    Secrets use SecretStr and token fields are excluded from repr so
    they cannot leak through logging.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field, SecretStr


def _utc_now() -> datetime:
    """Get current UTC time with timezone awareness."""
    return datetime.now(UTC)


# =============================================================================
# Persisted Records
# =============================================================================


class IntegrationConfig(BaseModel):
    """
    Connection record for one user and one provider.

    Tokens are stored only in their vault-encrypted form.
    """

    user_id: str = Field(..., description="Owning user")
    provider: str = Field(..., description="Provider name, e.g. 'github'")
    integration_id: str = Field("", description="Stable identifier used in metrics")

    client_id: str = Field("", description="OAuth client id")
    client_secret: SecretStr | None = Field(None, description="OAuth client secret")
    api_base_url: str = Field("", description="Vendor API base URL")
    scopes: list[str] = Field(default_factory=list)

    encrypted_access_token: str | None = None
    encrypted_refresh_token: str | None = None
    token_expiry: datetime | None = None

    webhook_secret: SecretStr | None = None

    connected: bool = False
    last_error: str | None = None
    sync_paused: bool = False

    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)

    class Config:
        extra = "allow"

    def model_post_init(self, __context: Any) -> None:
        if not self.integration_id:
            self.integration_id = f"{self.provider}:{self.user_id}"


class SyncCursor(BaseModel):
    """High-water mark for one resource type of one integration."""

    provider: str
    user_id: str
    resource_type: str
    last_sync_time: datetime


# =============================================================================
# Results
# =============================================================================


@dataclass(frozen=True, slots=True)
class AuthResult:
    """Outcome of authenticate() or refresh_token()."""

    success: bool
    access_token: str | None = field(default=None, repr=False)
    refresh_token: str | None = field(default=None, repr=False)
    expires_at: datetime | None = None
    scope: list[str] = field(default_factory=list)
    error: str | None = None

    @classmethod
    def failed(cls, error: str) -> AuthResult:
        return cls(success=False, error=error)


@dataclass(frozen=True, slots=True)
class RateLimitInfo:
    """Snapshot of a provider's rate governor."""

    limit: int
    remaining: int
    reset_time: datetime | None = None


@dataclass(frozen=True, slots=True)
class ConnectionStatus:
    """Result of test_connection()."""

    is_connected: bool
    last_checked: datetime = field(default_factory=_utc_now)
    error: str | None = None
    rate_limit_info: RateLimitInfo | None = None


@dataclass(frozen=True, slots=True)
class IntegrationCapability:
    """A feature an adapter offers and the scopes it needs."""

    name: str
    description: str = ""
    enabled: bool = True
    required_scopes: tuple[str, ...] = ()


@dataclass(slots=True)
class SyncResult:
    """
    Aggregated outcome of a sync run.

    items_skipped counts items that were valid but already reflected by a
    prior sync; it is distinct from errors.
    """

    success: bool
    items_processed: int = 0
    items_skipped: int = 0
    errors: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    def raise_for_errors(self) -> None:
        """Raise SyncError carrying this result if any resource type failed."""
        from .errors import SyncError

        if self.errors:
            raise SyncError(self.metadata.get("provider", "unknown"), self)


# =============================================================================
# Envelopes
# =============================================================================


@dataclass(frozen=True, slots=True)
class SyncItem:
    """One upstream record, decoded at the HTTP boundary."""

    id: str
    updated_at: datetime
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def version(self) -> str:
        return self.updated_at.isoformat()


@dataclass(frozen=True, slots=True)
class WebhookPayload:
    """Canonical envelope for an inbound webhook."""

    provider: str
    event_type: str
    headers: dict[str, str]
    body: dict[str, Any]
    received_at: datetime = field(default_factory=_utc_now)
    delivery_id: str | None = None


@dataclass(frozen=True, slots=True)
class WebhookAck:
    """Acknowledgement returned to the HTTP layer."""

    status: str  # processed | ignored | duplicate | error
    event_type: str | None = None
    delivery_id: str | None = None
    error: str | None = None


__all__ = [
    "AuthResult",
    "ConnectionStatus",
    "IntegrationCapability",
    "IntegrationConfig",
    "RateLimitInfo",
    "SyncCursor",
    "SyncItem",
    "SyncResult",
    "WebhookAck",
    "WebhookPayload",
]
