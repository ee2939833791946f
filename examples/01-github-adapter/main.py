"""
GitHub Adapter Example

This example demonstrates a complete provider adapter:
1. Implement the vendor hooks of Integration
2. Sync two resource types incrementally
3. Route a signed webhook to an @on_event handler
4. Watch the circuit breaker and rate governor react to failures

The vendor is simulated with httpx.MockTransport so the example runs offline.

Run: python -m examples.01-github-adapter.main
"""

import asyncio
import json
import logging
from datetime import UTC, datetime, timedelta

import httpx
from pydantic import SecretStr

from tether import FrameworkSettings, Integration, IntegrationRuntime, on_event
from tether.integrations import (
    AuthResult,
    CircuitOpenError,
    IntegrationCapability,
    RateLimitedError,
    SyncItem,
    UpstreamError,
    WebhookPayload,
)
from tether.metrics import InMemoryMetricsSink
from tether.sync import ResourceSyncer
from tether.webhooks import webhook_provider_for

logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

# =============================================================================
# Simulated Vendor
# =============================================================================


class FakeGitHub:
    """Just enough of the GitHub API for this example."""

    def __init__(self):
        self.mode = "ok"
        now = datetime.now(UTC)
        self.issues = [
            {"id": 1, "title": "Crash on start", "updated_at": (now - timedelta(days=2)).isoformat()},
            {"id": 2, "title": "Typo in docs", "updated_at": (now - timedelta(hours=3)).isoformat()},
        ]
        self.pulls = [
            {"id": 10, "title": "Fix crash", "updated_at": (now - timedelta(hours=1)).isoformat()},
        ]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if self.mode == "down":
            return httpx.Response(503, text="service unavailable")
        if self.mode == "throttled":
            return httpx.Response(429, headers={"Retry-After": "60"})
        if request.headers.get("Authorization") == "Bearer expired-token":
            return httpx.Response(401, json={"message": "Bad credentials"})

        path = request.url.path
        if path == "/user":
            return httpx.Response(200, json={"login": "octocat"})
        if path.endswith("/issues"):
            return httpx.Response(200, json=self.issues)
        if path.endswith("/pulls"):
            return httpx.Response(200, json=self.pulls)
        return httpx.Response(404, json={"message": "Not Found"})


# =============================================================================
# Adapter
# =============================================================================


class RepoSyncer(ResourceSyncer):
    """Syncs one list endpoint of a repository."""

    def __init__(self, integration: "GitHubIntegration", resource_type: str, path: str):
        self.integration = integration
        self.resource_type = resource_type
        self.path = path
        self.local: dict[str, dict] = {}

    async def fetch(self, since: datetime | None) -> list[SyncItem]:
        params = {"since": since.isoformat()} if since else None

        async def call(token: str):
            return await self.integration.client.request("GET", self.path, token=token, params=params)

        records = await self.integration.execute_with_protection(f"list_{self.resource_type}", call)
        return [
            SyncItem(id=str(r["id"]), updated_at=datetime.fromisoformat(r["updated_at"]), data=r)
            for r in records
        ]

    async def process(self, item: SyncItem) -> None:
        self.local[item.id] = item.data


class GitHubIntegration(Integration):
    """Minimal GitHub adapter."""

    provider = "github"
    api_base_url = "https://api.github.com"

    def __init__(self, user_id, runtime, *, transport=None):
        super().__init__(user_id, runtime, transport=transport)
        self.syncers = [
            RepoSyncer(self, "issues", "/repos/acme/app/issues"),
            RepoSyncer(self, "pull_requests", "/repos/acme/app/pulls"),
        ]
        self.events: list[str] = []

    async def _perform_authentication(self, credentials):
        return AuthResult(
            success=True,
            access_token="expired-token",
            refresh_token="refresh-token",
            expires_at=datetime.now(UTC) + timedelta(hours=8),
            scope=["repo"],
        )

    async def exchange_refresh_token(self, refresh_token):
        return AuthResult(
            success=True,
            access_token="fresh-token",
            refresh_token="refresh-token-2",
            expires_at=datetime.now(UTC) + timedelta(hours=8),
        )

    async def _check_connection(self, access_token):
        return await self.client.request("GET", "/user", token=access_token)

    def get_capabilities(self):
        return [
            IntegrationCapability("issues", "Read issues", required_scopes=("repo",)),
            IntegrationCapability("webhooks", "Receive events", required_scopes=("admin:repo_hook",)),
        ]

    def resource_syncers(self):
        return self.syncers

    @on_event("issues", "pull_request")
    async def _on_change(self, payload: WebhookPayload) -> None:
        self.events.append(f"{payload.event_type}:{payload.body.get('action')}")


# =============================================================================
# Main
# =============================================================================


async def main():
    vendor = FakeGitHub()
    settings = FrameworkSettings(
        encryption_key=SecretStr("example-master-key"),
        webhook_secrets={"github": SecretStr("gh-webhook-secret")},
    )
    sink = InMemoryMetricsSink()
    runtime = IntegrationRuntime.create(settings, metrics_sink=sink)

    async with GitHubIntegration("user-1", runtime, transport=httpx.MockTransport(vendor)) as github:
        # Authentication stores an already expired token; the first call
        # gets a 401, refreshes once and retries.
        await github.authenticate(code="oauth-code")
        status = await github.test_connection()
        print(f"Connected: {status.is_connected}")
        print(f"Scopes ok: {github.validate_required_scopes(['repo'])}")

        result = await github.sync_data()
        print(f"Sync: processed={result.items_processed} skipped={result.items_skipped}")
        result = await github.sync_data()
        print(f"Re-sync: processed={result.items_processed} skipped={result.items_skipped}")

        body = json.dumps({"action": "opened", "issue": {"id": 3}}).encode()
        headers = {
            "X-Hub-Signature-256": webhook_provider_for("github").scheme.sign("gh-webhook-secret", body),
            "X-GitHub-Event": "issues",
            "X-GitHub-Delivery": "delivery-1",
        }
        ack = await runtime.webhooks.dispatch(github, headers, body)
        print(f"Webhook: {ack.status}, handled={github.events}")

        vendor.mode = "down"
        while True:
            try:
                await github.execute_with_protection("get_user", github._check_connection)
            except UpstreamError:
                continue
            except CircuitOpenError as e:
                print(f"Breaker open, retry in {e.reset_after:.0f}s")
                break

        vendor.mode = "throttled"
        try:
            await github.syncers[0].fetch(None)
        except RateLimitedError as e:
            print(f"Rate limited until {e.reset_time:%H:%M:%S}")

    print(json.dumps(runtime.breakers.get_report()["summary"], indent=2))
    print(json.dumps(sink.get_all_metrics()["github"], indent=2, default=str))


if __name__ == "__main__":
    asyncio.run(main())
