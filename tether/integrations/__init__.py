"""
Tether Integrations.

The adapter contract, the vendor HTTP boundary and the shared models and
errors.

Usage:
    from tether.integrations import Integration, on_event

    class GitHubIntegration(Integration):
        provider = "github"
        api_base_url = "https://api.github.com"
        ...
"""

from .base import Integration, VendorCall, on_event
from .client import IntegrationClient
from .errors import (
    AuthenticationError,
    CircuitOpenError,
    IntegrationError,
    RateLimitedError,
    RequestError,
    SyncError,
    TokenVaultError,
    UpstreamError,
    ValidationError,
)
from .models import (
    AuthResult,
    ConnectionStatus,
    IntegrationCapability,
    IntegrationConfig,
    RateLimitInfo,
    SyncCursor,
    SyncItem,
    SyncResult,
    WebhookAck,
    WebhookPayload,
)
from .outcome import CallOutcome, Fatal, NeedsRefresh, Ok, RateLimited
from .registry import IntegrationRegistry

__all__ = [
    # Contract
    "Integration",
    "IntegrationClient",
    "IntegrationRegistry",
    "VendorCall",
    "on_event",
    # Outcomes
    "CallOutcome",
    "Fatal",
    "NeedsRefresh",
    "Ok",
    "RateLimited",
    # Errors
    "AuthenticationError",
    "CircuitOpenError",
    "IntegrationError",
    "RateLimitedError",
    "RequestError",
    "SyncError",
    "TokenVaultError",
    "UpstreamError",
    "ValidationError",
    # Models
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
