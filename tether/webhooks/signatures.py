"""
Webhook signature schemes.

Every scheme verifies the raw request body against a shared secret and
compares in constant time. Headers are looked up case-insensitively.

Schemes:
- HmacSignature: HMAC of the body, hex or base64, optional "sha256=" style
  prefix (GitHub, Shopify, Linear, Jira, Notion, Asana, Trello, HubSpot)
- TimestampedHmacSignature: "t=<ts>,v1=<sig>" header, HMAC of "<ts>.<body>",
  bounded clock skew (Stripe, Calendly)
- VersionedTimestampSignature: "v0=<sig>" header plus a timestamp header,
  HMAC of "v0:<ts>:<body>" (Slack, Zoom)
- TokenSignature: static shared token in a header (GitLab)
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE = 300.0


def normalize_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """Lower-case header names."""
    return {k.lower(): v for k, v in headers.items()}


def _digest(secret: str, message: bytes, algorithm: str) -> bytes:
    return hmac.new(secret.encode("utf-8"), message, getattr(hashlib, algorithm)).digest()


def _encode(digest: bytes, encoding: str) -> str:
    if encoding == "base64":
        return base64.b64encode(digest).decode("ascii")
    return digest.hex()


def constant_time_equals(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


class SignatureScheme(ABC):
    """Verifies an inbound webhook against a shared secret."""

    signature_header: str

    @abstractmethod
    def verify(
        self,
        secret: str,
        headers: Mapping[str, str],
        body: bytes,
        *,
        now: float | None = None,
    ) -> bool:
        """Return True only if the request was signed with the secret."""
        ...

    def _header(self, headers: Mapping[str, str], name: str) -> str | None:
        return normalize_headers(headers).get(name.lower())


class HmacSignature(SignatureScheme):
    """
    HMAC over the raw body.

    Example:
        HmacSignature("X-Hub-Signature-256", prefix="sha256=")
    """

    def __init__(
        self,
        signature_header: str,
        *,
        algorithm: str = "sha256",
        encoding: str = "hex",
        prefix: str = "",
        strip_any_prefix: bool = False,
    ):
        self.signature_header = signature_header
        self.algorithm = algorithm
        self.encoding = encoding
        self.prefix = prefix
        self.strip_any_prefix = strip_any_prefix

    def sign(self, secret: str, body: bytes) -> str:
        return self.prefix + _encode(_digest(secret, body, self.algorithm), self.encoding)

    def verify(self, secret, headers, body, *, now=None) -> bool:
        signature = self._header(headers, self.signature_header)
        if not signature:
            return False

        if self.prefix:
            if not signature.startswith(self.prefix):
                return False
            signature = signature[len(self.prefix) :]
        elif self.strip_any_prefix and "=" in signature.rstrip("="):
            signature = signature.split("=", 1)[1]

        expected = _encode(_digest(secret, body, self.algorithm), self.encoding)
        return constant_time_equals(signature, expected)


class TimestampedHmacSignature(SignatureScheme):
    """
    Stripe-style signature: "t=<unix ts>,v1=<hex sig>[,v1=...]".

    Rejects timestamps further than tolerance seconds from now.
    """

    def __init__(
        self,
        signature_header: str,
        *,
        scheme: str = "v1",
        tolerance: float = DEFAULT_TOLERANCE,
    ):
        self.signature_header = signature_header
        self.scheme = scheme
        self.tolerance = tolerance

    def sign(self, secret: str, body: bytes, timestamp: int) -> str:
        payload = f"{timestamp}.".encode() + body
        return f"t={timestamp},{self.scheme}={_digest(secret, payload, 'sha256').hex()}"

    def verify(self, secret, headers, body, *, now=None) -> bool:
        header = self._header(headers, self.signature_header)
        if not header:
            return False

        timestamp: str | None = None
        signatures: list[str] = []
        for part in header.split(","):
            key, _, value = part.strip().partition("=")
            if key == "t":
                timestamp = value
            elif key == self.scheme:
                signatures.append(value)

        if timestamp is None or not signatures:
            return False

        try:
            ts = int(timestamp)
        except ValueError:
            return False

        current = time.time() if now is None else now
        if abs(current - ts) > self.tolerance:
            logger.debug(f"Webhook timestamp outside tolerance: {ts}")
            return False

        expected = _digest(secret, f"{timestamp}.".encode() + body, "sha256").hex()
        matched = False
        for signature in signatures:
            matched |= constant_time_equals(signature, expected)
        return matched


class VersionedTimestampSignature(SignatureScheme):
    """
    Slack-style signature: HMAC-SHA256 of "v0:<ts>:<body>" sent as "v0=<hex>".
    """

    def __init__(
        self,
        signature_header: str,
        timestamp_header: str,
        *,
        version: str = "v0",
        tolerance: float = DEFAULT_TOLERANCE,
    ):
        self.signature_header = signature_header
        self.timestamp_header = timestamp_header
        self.version = version
        self.tolerance = tolerance

    def _base(self, timestamp: str, body: bytes) -> bytes:
        return f"{self.version}:{timestamp}:".encode() + body

    def sign(self, secret: str, body: bytes, timestamp: int) -> str:
        return f"{self.version}=" + _digest(secret, self._base(str(timestamp), body), "sha256").hex()

    def verify(self, secret, headers, body, *, now=None) -> bool:
        signature = self._header(headers, self.signature_header)
        timestamp = self._header(headers, self.timestamp_header)
        if not signature or not timestamp:
            return False

        try:
            ts = int(timestamp)
        except ValueError:
            return False

        current = time.time() if now is None else now
        if abs(current - ts) > self.tolerance:
            return False

        expected = f"{self.version}=" + _digest(secret, self._base(timestamp, body), "sha256").hex()
        return constant_time_equals(signature, expected)


class TokenSignature(SignatureScheme):
    """Static shared token sent in a header."""

    def __init__(self, signature_header: str, *, bearer: bool = False):
        self.signature_header = signature_header
        self.bearer = bearer

    def verify(self, secret, headers, body, *, now=None) -> bool:
        token = self._header(headers, self.signature_header)
        if not token:
            return False
        if self.bearer:
            scheme, _, token = token.partition(" ")
            if scheme.lower() != "bearer":
                return False
        return constant_time_equals(token.strip(), secret)


# =============================================================================
# Provider Table
# =============================================================================


@dataclass(frozen=True)
class WebhookProvider:
    """How a provider signs webhooks and where it puts event metadata."""

    scheme: SignatureScheme
    event_header: str | None = None
    event_fields: tuple[str, ...] = ("type", "event_type", "event")
    delivery_header: str | None = None
    # Body fields that identify the delivery itself, never the resource
    delivery_fields: tuple[str, ...] = ("event_id", "delivery_id")


DEFAULT_WEBHOOK_PROVIDER = WebhookProvider(
    scheme=HmacSignature("X-Webhook-Signature", strip_any_prefix=True),
    event_header="X-Webhook-Event",
    delivery_header="X-Webhook-Id",
)

WEBHOOK_PROVIDERS: dict[str, WebhookProvider] = {
    "github": WebhookProvider(
        scheme=HmacSignature("X-Hub-Signature-256", prefix="sha256="),
        event_header="X-GitHub-Event",
        delivery_header="X-GitHub-Delivery",
    ),
    "gitlab": WebhookProvider(
        scheme=TokenSignature("X-Gitlab-Token"),
        event_header="X-Gitlab-Event",
        event_fields=("object_kind",),
        delivery_header="X-Gitlab-Event-UUID",
    ),
    "slack": WebhookProvider(
        scheme=VersionedTimestampSignature("X-Slack-Signature", "X-Slack-Request-Timestamp"),
        event_fields=("event.type", "type"),
        delivery_fields=("event_id",),
    ),
    "zoom": WebhookProvider(
        scheme=VersionedTimestampSignature("x-zm-signature", "x-zm-request-timestamp"),
        event_fields=("event",),
        delivery_fields=(),
    ),
    "stripe": WebhookProvider(
        scheme=TimestampedHmacSignature("Stripe-Signature"),
        event_fields=("type",),
        delivery_fields=("id",),
    ),
    "calendly": WebhookProvider(
        scheme=TimestampedHmacSignature("Calendly-Webhook-Signature"),
        event_fields=("event",),
        delivery_fields=(),
    ),
    "shopify": WebhookProvider(
        scheme=HmacSignature("X-Shopify-Hmac-Sha256", encoding="base64"),
        event_header="X-Shopify-Topic",
        delivery_header="X-Shopify-Webhook-Id",
    ),
    "linear": WebhookProvider(
        scheme=HmacSignature("Linear-Signature"),
        event_fields=("type",),
        delivery_header="Linear-Delivery",
    ),
    "notion": WebhookProvider(
        scheme=HmacSignature("X-Notion-Signature", prefix="sha256="),
        event_fields=("type",),
        delivery_fields=("id",),
    ),
    "asana": WebhookProvider(
        scheme=HmacSignature("X-Hook-Signature"),
        event_fields=("events.0.action",),
    ),
    "jira": WebhookProvider(
        scheme=HmacSignature("X-Hub-Signature", prefix="sha256="),
        event_fields=("webhookEvent",),
        delivery_header="X-Atlassian-Webhook-Identifier",
    ),
    "trello": WebhookProvider(
        scheme=HmacSignature("X-Trello-Webhook", algorithm="sha1"),
        event_fields=("action.type",),
        delivery_fields=("action.id",),
    ),
    "hubspot": WebhookProvider(
        scheme=HmacSignature("X-HubSpot-Signature"),
        event_fields=("subscriptionType",),
        delivery_fields=("eventId",),
    ),
}


def webhook_provider_for(provider: str) -> WebhookProvider:
    return WEBHOOK_PROVIDERS.get(provider.lower(), DEFAULT_WEBHOOK_PROVIDER)


__all__ = [
    "DEFAULT_WEBHOOK_PROVIDER",
    "HmacSignature",
    "SignatureScheme",
    "TimestampedHmacSignature",
    "TokenSignature",
    "VersionedTimestampSignature",
    "WEBHOOK_PROVIDERS",
    "WebhookProvider",
    "constant_time_equals",
    "normalize_headers",
    "webhook_provider_for",
]
