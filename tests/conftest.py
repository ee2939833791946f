"""
Pytest configuration and fixtures for Tether tests.
"""

import asyncio
import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path

import httpx
import pytest
from pydantic import SecretStr

# Add the repository root to path for imports
# This allows `from tether.integrations import ...` to work
repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from tether.config import FrameworkSettings, ProviderPolicy  # noqa: E402
from tether.integrations import (  # noqa: E402
    AuthResult,
    Integration,
    IntegrationCapability,
    IntegrationConfig,
    on_event,
)
from tether.metrics import InMemoryMetricsSink  # noqa: E402
from tether.persistence import InMemoryIntegrationStore  # noqa: E402
from tether.runtime import IntegrationRuntime  # noqa: E402
from tether.vault import FernetTokenVault  # noqa: E402

TEST_MASTER_KEY = "test-master-key"
WEBHOOK_SECRET = "whsec_test"


# =============================================================================
# Time
# =============================================================================


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Sleep that records delays and advances a FakeClock instead of waiting."""

    def __init__(self, clock: FakeClock | None = None):
        self.clock = clock
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.clock is not None:
            self.clock.advance(delay)
        await asyncio.sleep(0)


# =============================================================================
# Fake Adapter
# =============================================================================


class FakeIntegration(Integration):
    """In-process adapter used across the test suite."""

    provider = "fake"
    api_base_url = "https://api.fake.test"

    def __init__(self, user_id, runtime, *, transport=None, syncers=None):
        super().__init__(user_id, runtime, transport=transport)
        self._syncers = syncers or []
        self.refresh_calls = 0
        self.refresh_delay = 0.0
        self.refresh_result = AuthResult(
            success=True,
            access_token="access-2",
            refresh_token="refresh-2",
            expires_at=datetime.now(UTC) + timedelta(hours=1),
        )
        self.revoked: list[str] = []
        self.handled: list = []
        self.auth_error: BaseException | None = None
        self.auth_delay = 0.0

    async def _perform_authentication(self, credentials):
        if self.auth_delay:
            await asyncio.sleep(self.auth_delay)
        if self.auth_error is not None:
            raise self.auth_error
        if credentials.get("code") != "good-code":
            return AuthResult.failed("invalid_grant")
        return AuthResult(
            success=True,
            access_token="access-1",
            refresh_token="refresh-1",
            expires_at=datetime.now(UTC) + timedelta(hours=1),
            scope=["repo"],
        )

    async def exchange_refresh_token(self, refresh_token):
        self.refresh_calls += 1
        if self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)
        return self.refresh_result

    async def _check_connection(self, access_token):
        return await self.client.request("GET", "/me", token=access_token)

    async def _revoke_tokens(self, access_token):
        self.revoked.append(access_token)

    def get_capabilities(self):
        return [
            IntegrationCapability("issues", "Read and write issues", required_scopes=("repo", "read:org")),
            IntegrationCapability("hooks", "Manage webhooks", required_scopes=("admin:repo_hook",)),
        ]

    def resource_syncers(self):
        return self._syncers

    @on_event("issue.created", "issue.updated")
    async def _on_issue(self, payload):
        self.handled.append(payload)

    @on_event("explode")
    async def _on_explode(self, payload):
        raise RuntimeError("handler bug")


class VendorStub:
    """
    httpx.MockTransport handler that replays scripted responses.

    The last response repeats once the script runs out.
    """

    def __init__(self, *responses: httpx.Response):
        self.responses = list(responses) or [httpx.Response(200, json={"ok": True})]
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        scripted = self.responses[min(len(self.requests), len(self.responses)) - 1]
        return httpx.Response(
            scripted.status_code, headers=scripted.headers, content=scripted.content
        )

    @property
    def calls(self) -> int:
        return len(self.requests)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


async def connect(
    integration: Integration,
    *,
    access_token: str = "access-1",
    refresh_token: str | None = "refresh-1",
    expires_in: float | None = 3600,
    webhook_secret: str | None = None,
) -> IntegrationConfig:
    """Store a connected config for an adapter."""
    vault = integration.runtime.vault
    config = IntegrationConfig(
        user_id=integration.user_id,
        provider=integration.provider,
        encrypted_access_token=vault.encrypt(access_token, integration.user_id),
        encrypted_refresh_token=(
            vault.encrypt(refresh_token, integration.user_id) if refresh_token else None
        ),
        token_expiry=(
            datetime.now(UTC) + timedelta(seconds=expires_in) if expires_in is not None else None
        ),
        webhook_secret=SecretStr(webhook_secret) if webhook_secret else None,
        connected=True,
    )
    await integration.runtime.store.save_config(config)
    return config


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep(clock):
    return RecordingSleep(clock)


@pytest.fixture
def metrics_sink():
    return InMemoryMetricsSink()


@pytest.fixture
def fake_policy():
    return ProviderPolicy(
        failure_threshold=5,
        failure_window=300.0,
        cooldown=30.0,
        rate=100.0,
        burst=100,
        max_wait=5.0,
        max_retries=0,
        retry_delay=0.5,
        timeout=1.0,
        sync_concurrency=3,
        min_sync_interval=600.0,
    )


@pytest.fixture
def settings(fake_policy):
    return FrameworkSettings(
        encryption_key=SecretStr(TEST_MASTER_KEY),
        provider_policies={"fake": fake_policy},
        webhook_secrets={"fake": SecretStr(WEBHOOK_SECRET)},
    )


@pytest.fixture
def vault():
    return FernetTokenVault(TEST_MASTER_KEY, iterations=1000)


@pytest.fixture
def store():
    return InMemoryIntegrationStore()


@pytest.fixture
def runtime(settings, store, vault, metrics_sink, clock, sleep):
    return IntegrationRuntime.create(
        settings,
        store=store,
        vault=vault,
        metrics_sink=metrics_sink,
        clock=clock,
        sleep=sleep,
    )
