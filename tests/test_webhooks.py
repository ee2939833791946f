"""
Tests for webhook signature schemes and the dispatcher.
"""

import json
import time
from urllib.parse import urlencode

import pytest

from conftest import WEBHOOK_SECRET, FakeIntegration, connect
from tether.integrations.errors import ValidationError
from tether.webhooks import (
    DEFAULT_WEBHOOK_PROVIDER,
    HmacSignature,
    TimestampedHmacSignature,
    TokenSignature,
    VersionedTimestampSignature,
    webhook_provider_for,
)

SECRET = "s3cret"
BODY = b'{"action":"opened","number":7}'


def _signed(event_type="issue.created", delivery_id="d-1", body=None, secret=WEBHOOK_SECRET):
    body = body if body is not None else json.dumps({"id": 42}).encode()
    headers = {
        "X-Webhook-Signature": DEFAULT_WEBHOOK_PROVIDER.scheme.sign(secret, body),
        "X-Webhook-Event": event_type,
    }
    if delivery_id:
        headers["X-Webhook-Id"] = delivery_id
    return headers, body


# =============================================================================
# Signature Schemes
# =============================================================================


class TestHmacSignature:
    """Tests for plain HMAC signatures."""

    def test_github_prefixed_hex(self):
        scheme = webhook_provider_for("github").scheme
        signature = scheme.sign(SECRET, BODY)

        assert signature.startswith("sha256=")
        assert scheme.verify(SECRET, {"x-hub-signature-256": signature}, BODY)
        assert not scheme.verify("wrong", {"X-Hub-Signature-256": signature}, BODY)
        assert not scheme.verify(SECRET, {"X-Hub-Signature-256": signature}, BODY + b" ")
        assert not scheme.verify(SECRET, {"X-Hub-Signature-256": signature[7:]}, BODY)
        assert not scheme.verify(SECRET, {}, BODY)

    def test_shopify_base64(self):
        scheme = webhook_provider_for("shopify").scheme
        signature = scheme.sign(SECRET, BODY)

        assert scheme.verify(SECRET, {"X-Shopify-Hmac-Sha256": signature}, BODY)
        assert not scheme.verify(SECRET, {"X-Shopify-Hmac-Sha256": signature.upper()}, BODY)

    def test_sha1(self):
        scheme = HmacSignature("X-Signature", algorithm="sha1", prefix="sha1=")
        signature = scheme.sign(SECRET, BODY)

        assert len(signature) == len("sha1=") + 40
        assert scheme.verify(SECRET, {"X-Signature": signature}, BODY)

    def test_trello_sha1(self):
        scheme = webhook_provider_for("trello").scheme
        signature = scheme.sign(SECRET, BODY)

        assert len(signature) == 40
        assert scheme.verify(SECRET, {"X-Trello-Webhook": signature}, BODY)

    def test_default_strips_any_prefix(self):
        scheme = DEFAULT_WEBHOOK_PROVIDER.scheme
        bare = scheme.sign(SECRET, BODY)

        assert scheme.verify(SECRET, {"X-Webhook-Signature": bare}, BODY)
        assert scheme.verify(SECRET, {"X-Webhook-Signature": f"sha256={bare}"}, BODY)


class TestTimestampedSignatures:
    """Tests for schemes that sign a timestamp with the body."""

    def test_stripe(self):
        scheme = webhook_provider_for("stripe").scheme
        now = 1_700_000_000
        header = scheme.sign(SECRET, BODY, now)

        assert scheme.verify(SECRET, {"Stripe-Signature": header}, BODY, now=now + 10)
        assert not scheme.verify(SECRET, {"Stripe-Signature": header}, BODY, now=now + 301)
        assert not scheme.verify(SECRET, {"Stripe-Signature": header}, b"{}", now=now)

    def test_stripe_multiple_signatures(self):
        scheme = TimestampedHmacSignature("Stripe-Signature")
        now = 1_700_000_000
        valid = scheme.sign(SECRET, BODY, now)
        header = f"{valid},v1={'0' * 64}"

        assert scheme.verify(SECRET, {"Stripe-Signature": header}, BODY, now=now)

    @pytest.mark.parametrize("header", ["", "v1=abc", "t=abc,v1=abc", "t=1700000000"])
    def test_stripe_malformed(self, header):
        scheme = TimestampedHmacSignature("Stripe-Signature")
        assert not scheme.verify(SECRET, {"Stripe-Signature": header}, BODY, now=1_700_000_000)

    def test_slack(self):
        scheme = webhook_provider_for("slack").scheme
        assert isinstance(scheme, VersionedTimestampSignature)
        now = 1_700_000_000
        headers = {
            "X-Slack-Signature": scheme.sign(SECRET, BODY, now),
            "X-Slack-Request-Timestamp": str(now),
        }

        assert scheme.verify(SECRET, headers, BODY, now=now)
        assert not scheme.verify(SECRET, headers, BODY, now=now + 600)
        assert not scheme.verify(
            SECRET, {**headers, "X-Slack-Request-Timestamp": str(now + 1)}, BODY, now=now
        )


class TestTokenSignature:
    """Tests for shared-token schemes."""

    def test_gitlab(self):
        scheme = webhook_provider_for("gitlab").scheme

        assert scheme.verify(SECRET, {"X-Gitlab-Token": SECRET}, BODY)
        assert not scheme.verify(SECRET, {"X-Gitlab-Token": "nope"}, BODY)

    def test_bearer(self):
        scheme = TokenSignature("Authorization", bearer=True)

        assert scheme.verify(SECRET, {"Authorization": f"Bearer {SECRET}"}, BODY)
        assert not scheme.verify(SECRET, {"Authorization": f"Basic {SECRET}"}, BODY)

    def test_unknown_provider_uses_default(self):
        assert webhook_provider_for("acme") is DEFAULT_WEBHOOK_PROVIDER
        assert webhook_provider_for("GitHub") is not DEFAULT_WEBHOOK_PROVIDER


# =============================================================================
# Dispatcher
# =============================================================================


class TestWebhookDispatcher:
    """Tests for verify, parse, dedupe and routing."""

    @pytest.mark.asyncio
    async def test_processed(self, runtime, metrics_sink):
        integration = FakeIntegration("u1", runtime)
        headers, body = _signed("issue.created")

        ack = await runtime.webhooks.dispatch(integration, headers, body)

        assert ack.status == "processed"
        assert ack.event_type == "issue.created"
        assert ack.delivery_id == "d-1"
        assert len(integration.handled) == 1
        assert integration.handled[0].body == {"id": 42}
        assert integration.handled[0].provider == "fake"
        assert [e["event_type"] for e in metrics_sink.webhook_events] == ["issue.created"]

    @pytest.mark.asyncio
    async def test_invalid_signature_rejected(self, runtime, metrics_sink):
        integration = FakeIntegration("u1", runtime)
        headers, body = _signed(secret="not-the-secret")

        with pytest.raises(ValidationError) as exc_info:
            await runtime.webhooks.dispatch(integration, headers, body)

        assert exc_info.value.status_code == 401
        assert integration.handled == []
        assert metrics_sink.webhook_events == []

    @pytest.mark.asyncio
    async def test_tampered_body_rejected(self, runtime):
        integration = FakeIntegration("u1", runtime)
        headers, _ = _signed()

        with pytest.raises(ValidationError):
            await runtime.webhooks.dispatch(integration, headers, b'{"id": 43}')

        assert integration.handled == []

    @pytest.mark.asyncio
    async def test_missing_secret_rejected(self, runtime):
        runtime.settings.webhook_secrets.clear()
        integration = FakeIntegration("u1", runtime)
        headers, body = _signed()

        with pytest.raises(ValidationError):
            await runtime.webhooks.dispatch(integration, headers, body)

    @pytest.mark.asyncio
    async def test_integration_secret_preferred(self, runtime):
        integration = FakeIntegration("u1", runtime)
        await connect(integration, webhook_secret="per-user-secret")

        headers, body = _signed(secret="per-user-secret")
        ack = await runtime.webhooks.dispatch(integration, headers, body)
        assert ack.status == "processed"

        headers, body = _signed(secret=WEBHOOK_SECRET, delivery_id="d-2")
        with pytest.raises(ValidationError):
            await runtime.webhooks.dispatch(integration, headers, body)

    @pytest.mark.asyncio
    async def test_unknown_event_ignored(self, runtime, metrics_sink):
        integration = FakeIntegration("u1", runtime)
        headers, body = _signed("repo.starred")

        ack = await runtime.webhooks.dispatch(integration, headers, body)

        assert ack.status == "ignored"
        assert integration.handled == []
        assert len(metrics_sink.webhook_events) == 1

    @pytest.mark.asyncio
    async def test_handler_error_acknowledged(self, runtime, metrics_sink):
        integration = FakeIntegration("u1", runtime)
        headers, body = _signed("explode")

        ack = await runtime.webhooks.dispatch(integration, headers, body)

        assert ack.status == "error"
        assert ack.error == "handler bug"
        assert len(metrics_sink.webhook_events) == 1

    @pytest.mark.asyncio
    async def test_redelivery_is_duplicate(self, runtime, metrics_sink):
        integration = FakeIntegration("u1", runtime)
        headers, body = _signed("issue.updated", delivery_id="d-9")

        first = await runtime.webhooks.dispatch(integration, headers, body)
        second = await runtime.webhooks.dispatch(integration, headers, body)

        assert first.status == "processed"
        assert second.status == "duplicate"
        assert len(integration.handled) == 1
        assert len(metrics_sink.webhook_events) == 1

    @pytest.mark.asyncio
    async def test_no_delivery_id_never_duplicate(self, runtime):
        integration = FakeIntegration("u1", runtime)
        headers, body = _signed("issue.updated", delivery_id=None)

        await runtime.webhooks.dispatch(integration, headers, body)
        await runtime.webhooks.dispatch(integration, headers, body)

        assert len(integration.handled) == 2

    @pytest.mark.asyncio
    async def test_resource_id_is_not_a_delivery_id(self, runtime):
        integration = FakeIntegration("u1", runtime)

        for event_type in ("issue.created", "issue.updated"):
            headers, body = _signed(event_type, delivery_id=None, body=b'{"id": 42}')
            ack = await runtime.webhooks.dispatch(integration, headers, body)
            assert ack.status == "processed"

        assert [p.event_type for p in integration.handled] == ["issue.created", "issue.updated"]

    @pytest.mark.asyncio
    async def test_delivery_id_scoped_to_event_type(self, runtime):
        integration = FakeIntegration("u1", runtime)

        first = await runtime.webhooks.dispatch(integration, *_signed("issue.created", delivery_id="d-5"))
        second = await runtime.webhooks.dispatch(integration, *_signed("issue.updated", delivery_id="d-5"))

        assert (first.status, second.status) == ("processed", "processed")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [b"not json", b"[1, 2]"])
    async def test_malformed_body(self, runtime, body):
        integration = FakeIntegration("u1", runtime)
        headers, body = _signed(body=body)

        with pytest.raises(ValidationError) as exc_info:
            await runtime.webhooks.dispatch(integration, headers, body)

        assert exc_info.value.status_code == 400

    def test_parse_event_from_body(self, runtime):
        payload = runtime.webhooks.parse(
            "slack",
            {},
            json.dumps({"type": "event_callback", "event": {"type": "message"}, "event_id": "Ev1"}).encode(),
        )

        assert payload.event_type == "message"
        assert payload.delivery_id == "Ev1"

    def test_parse_without_event(self, runtime):
        payload = runtime.webhooks.parse("fake", {}, b"{}")
        assert payload.event_type == "unknown"
        assert payload.delivery_id is None

    @pytest.mark.asyncio
    async def test_form_payload_dispatched(self, runtime):
        integration = FakeIntegration("u1", runtime)
        payload = json.dumps({"type": "issue.created", "issue": {"id": 7}})
        headers, body = _signed(None, body=urlencode({"payload": payload}).encode())
        del headers["X-Webhook-Event"]
        headers["Content-Type"] = "application/x-www-form-urlencoded"

        ack = await runtime.webhooks.dispatch(integration, headers, body)

        assert ack.status == "processed"
        assert integration.handled[0].body == {"type": "issue.created", "issue": {"id": 7}}

    def test_parse_plain_form(self, runtime):
        payload = runtime.webhooks.parse(
            "fake",
            {"content-type": "application/x-www-form-urlencoded; charset=utf-8"},
            b"type=ping&event_id=e-1&tag=a&tag=b",
        )

        assert payload.event_type == "ping"
        assert payload.delivery_id == "e-1"
        assert payload.body["tag"] == ["a", "b"]

    def test_parse_malformed_form_payload(self, runtime):
        with pytest.raises(ValidationError) as exc_info:
            runtime.webhooks.parse(
                "slack",
                {"Content-Type": "application/x-www-form-urlencoded"},
                b"payload=%7Bnot-json",
            )

        assert exc_info.value.status_code == 400


# =============================================================================
# Adapter Signature Check
# =============================================================================


class TestValidateWebhookSignature:
    """Tests for Integration.validate_webhook_signature."""

    @pytest.mark.asyncio
    async def test_valid_and_invalid(self, runtime):
        integration = FakeIntegration("u1", runtime)
        signature = DEFAULT_WEBHOOK_PROVIDER.scheme.sign(WEBHOOK_SECRET, BODY)

        assert await integration.validate_webhook_signature(BODY, signature) is True
        assert await integration.validate_webhook_signature(BODY, "deadbeef") is False
        assert await integration.validate_webhook_signature(b"{}", signature) is False

    @pytest.mark.asyncio
    async def test_no_secret(self, runtime):
        runtime.settings.webhook_secrets.clear()
        integration = FakeIntegration("u1", runtime)
        signature = DEFAULT_WEBHOOK_PROVIDER.scheme.sign(WEBHOOK_SECRET, BODY)

        assert await integration.validate_webhook_signature(BODY, signature) is False

    @pytest.mark.asyncio
    async def test_timestamped_scheme_with_headers(self, runtime):
        class SlackIntegration(FakeIntegration):
            provider = "slack"

        runtime.settings.webhook_secrets["slack"] = runtime.settings.webhook_secrets["fake"]
        integration = SlackIntegration("u1", runtime)
        scheme = webhook_provider_for("slack").scheme
        now = int(time.time())

        signature = scheme.sign(WEBHOOK_SECRET, BODY, now)
        assert await integration.validate_webhook_signature(
            BODY, signature, headers={"X-Slack-Request-Timestamp": str(now)}
        )
        assert not await integration.validate_webhook_signature(BODY, signature)
