"""
Inbound webhooks: signature verification and event routing.
"""

from .dispatcher import WebhookDispatcher
from .signatures import (
    DEFAULT_WEBHOOK_PROVIDER,
    WEBHOOK_PROVIDERS,
    HmacSignature,
    SignatureScheme,
    TimestampedHmacSignature,
    TokenSignature,
    VersionedTimestampSignature,
    WebhookProvider,
    webhook_provider_for,
)

__all__ = [
    "DEFAULT_WEBHOOK_PROVIDER",
    "HmacSignature",
    "SignatureScheme",
    "TimestampedHmacSignature",
    "TokenSignature",
    "VersionedTimestampSignature",
    "WEBHOOK_PROVIDERS",
    "WebhookDispatcher",
    "WebhookProvider",
    "webhook_provider_for",
]
