"""
Webhook Dispatcher.

Inbound flow:

    verify signature -> parse body -> resolve event type and delivery id
    -> drop redeliveries -> adapter.handle_webhook(payload) -> metrics

Verification happens before anything else. A missing secret or a bad
signature raises ValidationError: no handler runs and no metric is
recorded. Once verified, the dispatcher always acknowledges; handler
failures are logged and reported in the ack rather than raised, so the
vendor does not retry an event the adapter cannot handle.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any
from urllib.parse import parse_qs

from cachetools import TTLCache

from tether.integrations.errors import ValidationError
from tether.integrations.models import WebhookAck, WebhookPayload
from tether.metrics import SafeMetrics

from .signatures import normalize_headers, webhook_provider_for

if TYPE_CHECKING:
    from tether.integrations.base import Integration

logger = logging.getLogger(__name__)

UNKNOWN_EVENT = "unknown"


def _lookup(body: Any, path: str) -> Any:
    """Resolve a dotted path such as 'event.type' or 'events.0.action'."""
    current = body
    for part in path.split("."):
        if isinstance(current, Mapping):
            current = current.get(part)
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return None
        if current is None:
            return None
    return current


class WebhookDispatcher:
    """
    Verifies and routes inbound webhooks to adapters.

    Example:
        ack = await dispatcher.dispatch(integration, request.headers, await request.body())
    """

    def __init__(
        self,
        *,
        metrics: SafeMetrics | None = None,
        dedupe_ttl: float = 3600.0,
        dedupe_size: int = 10000,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the dispatcher.

        Args:
            metrics: Metrics wrapper
            dedupe_ttl: Seconds a delivery id is remembered
            dedupe_size: Maximum remembered delivery ids
            clock: Wall clock, also used for signature timestamp checks
        """
        self._metrics = metrics or SafeMetrics()
        self._clock = clock
        self._seen: TTLCache = TTLCache(maxsize=dedupe_size, ttl=dedupe_ttl, timer=clock)
        self._seen_lock = threading.Lock()

    async def verify(self, integration: Integration, headers: Mapping[str, str], body: bytes) -> None:
        """
        Verify a webhook signature.

        Raises:
            ValidationError: If no secret is configured or the signature is invalid
        """
        provider = integration.provider
        secret = await integration.get_webhook_secret()
        if not secret:
            logger.warning(f"[{provider}] Webhook rejected: no secret configured")
            raise ValidationError("Webhook secret not configured", provider, status_code=401)

        scheme = webhook_provider_for(provider).scheme
        if not scheme.verify(secret, headers, body, now=self._clock()):
            logger.warning(f"[{provider}] Webhook rejected: invalid signature")
            raise ValidationError("Invalid webhook signature", provider, status_code=401)

    def _decode(self, provider: str, headers: Mapping[str, str], body: bytes) -> Any:
        """Decode a JSON or form-encoded body."""
        content_type = normalize_headers(headers).get("content-type", "")
        try:
            if not body:
                return {}
            if content_type.startswith("application/x-www-form-urlencoded"):
                fields = {
                    k: v[0] if len(v) == 1 else v
                    for k, v in parse_qs(body.decode("utf-8"), keep_blank_values=True).items()
                }
                # Interactive deliveries wrap their JSON in a "payload" field
                if isinstance(fields.get("payload"), str):
                    return json.loads(fields["payload"])
                return fields
            return json.loads(body)
        except (UnicodeDecodeError, ValueError) as e:
            raise ValidationError(f"Malformed webhook body: {e}", provider, status_code=400) from e

    def parse(self, provider: str, headers: Mapping[str, str], body: bytes) -> WebhookPayload:
        """
        Parse a verified body into the canonical envelope.

        JSON bodies and application/x-www-form-urlencoded bodies are accepted.

        Raises:
            ValidationError: If the body is not a JSON object or a form
        """
        data = self._decode(provider, headers, body)
        if not isinstance(data, dict):
            raise ValidationError("Webhook body must be a JSON object", provider, status_code=400)

        vendor = webhook_provider_for(provider)
        lowered = normalize_headers(headers)

        event_type = None
        if vendor.event_header:
            event_type = lowered.get(vendor.event_header.lower())
        if not event_type:
            for path in vendor.event_fields:
                value = _lookup(data, path)
                if isinstance(value, str) and value:
                    event_type = value
                    break

        delivery_id = None
        if vendor.delivery_header:
            delivery_id = lowered.get(vendor.delivery_header.lower())
        if not delivery_id:
            for path in vendor.delivery_fields:
                value = _lookup(data, path)
                if value is not None and not isinstance(value, (dict, list)):
                    delivery_id = str(value)
                    break

        return WebhookPayload(
            provider=provider,
            event_type=event_type or UNKNOWN_EVENT,
            headers=dict(headers),
            body=data,
            delivery_id=delivery_id,
        )

    def _is_duplicate(self, payload: WebhookPayload) -> bool:
        """Remember a delivery; True if it was already seen within the TTL."""
        if not payload.delivery_id:
            return False
        key = (payload.provider, payload.event_type, payload.delivery_id)
        with self._seen_lock:
            if key in self._seen:
                return True
            self._seen[key] = True
            return False

    async def dispatch(
        self,
        integration: Integration,
        headers: Mapping[str, str],
        body: bytes,
    ) -> WebhookAck:
        """
        Verify, parse and route one webhook.

        Raises:
            ValidationError: On missing secret, bad signature or malformed body
        """
        provider = integration.provider

        await self.verify(integration, headers, body)
        payload = self.parse(provider, headers, body)

        if self._is_duplicate(payload):
            logger.info(f"[{provider}] Duplicate webhook delivery {payload.delivery_id} ignored")
            return WebhookAck(
                status="duplicate",
                event_type=payload.event_type,
                delivery_id=payload.delivery_id,
            )

        start = time.perf_counter()
        try:
            handled = await integration.handle_webhook(payload)
            status = "processed" if handled else "ignored"
            error = None
        except Exception as e:
            logger.exception(f"[{provider}] Webhook handler for {payload.event_type} failed: {e}")
            status = "error"
            error = str(e)
        duration_ms = (time.perf_counter() - start) * 1000

        await self._metrics.track_webhook_event(
            integration.user_id,
            integration.integration_id,
            provider,
            payload.event_type,
            duration_ms,
        )

        return WebhookAck(
            status=status,
            event_type=payload.event_type,
            delivery_id=payload.delivery_id,
            error=error,
        )


__all__ = ["WebhookDispatcher"]
