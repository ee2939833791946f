"""
Tests for the circuit breaker and its registry.
"""

import asyncio

import pytest

from conftest import FakeClock
from tether.config import ProviderPolicy
from tether.integrations.errors import (
    AuthenticationError,
    CircuitOpenError,
    RateLimitedError,
    RequestError,
    UpstreamError,
)
from tether.resilience.circuit import CircuitBreaker, CircuitBreakerRegistry, CircuitState


def _upstream():
    return UpstreamError("Server error", "fake", status_code=503)


async def _fail():
    raise _upstream()


async def _ok():
    return "ok"


def _breaker(clock, **kwargs) -> CircuitBreaker:
    kwargs.setdefault("failure_threshold", 5)
    kwargs.setdefault("failure_window", 300.0)
    kwargs.setdefault("cooldown", 30.0)
    return CircuitBreaker("fake", "list_items", clock=clock, **kwargs)


async def _trip(breaker: CircuitBreaker, times: int) -> None:
    for _ in range(times):
        with pytest.raises(UpstreamError):
            await breaker.call(_fail)


# =============================================================================
# Closed State
# =============================================================================


class TestClosedState:
    """Tests for counting failures while CLOSED."""

    @pytest.mark.asyncio
    async def test_opens_after_threshold(self):
        clock = FakeClock()
        breaker = _breaker(clock)

        await _trip(breaker, 4)
        assert breaker.state == CircuitState.CLOSED

        await _trip(breaker, 1)
        assert breaker.state == CircuitState.OPEN
        assert breaker.opened_at == clock.now

    @pytest.mark.asyncio
    async def test_open_rejects_without_calling(self):
        clock = FakeClock()
        breaker = _breaker(clock)
        await _trip(breaker, 5)

        calls = 0

        async def operation():
            nonlocal calls
            calls += 1
            return "ok"

        clock.advance(10)
        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.call(operation)

        assert calls == 0
        assert exc_info.value.reset_after == pytest.approx(20.0)
        assert exc_info.value.operation == "list_items"

    @pytest.mark.asyncio
    async def test_success_resets_count(self):
        breaker = _breaker(FakeClock())

        await _trip(breaker, 4)
        await breaker.call(_ok)
        await _trip(breaker, 4)

        assert breaker.state == CircuitState.CLOSED
        assert breaker.consecutive_failures == 4

    @pytest.mark.asyncio
    async def test_failures_outside_window_expire(self):
        clock = FakeClock()
        breaker = _breaker(clock, failure_window=60.0)

        await _trip(breaker, 4)
        clock.advance(61)
        await _trip(breaker, 1)

        assert breaker.state == CircuitState.CLOSED
        assert breaker.consecutive_failures == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            RequestError("Not found", "fake", status_code=404),
            AuthenticationError("Forbidden", "fake", status_code=403),
            ValueError("bug"),
        ],
    )
    async def test_neutral_errors_do_not_count(self, error):
        breaker = _breaker(FakeClock())

        async def operation():
            raise error

        for _ in range(10):
            with pytest.raises(type(error)):
                await breaker.call(operation)

        assert breaker.state == CircuitState.CLOSED
        assert breaker.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_neutral_error_does_not_reset_count(self):
        breaker = _breaker(FakeClock())
        await _trip(breaker, 3)

        async def rate_limited():
            raise RateLimitedError("slow down", "fake", reset_time=None)

        with pytest.raises(RateLimitedError):
            await breaker.call(rate_limited)

        assert breaker.consecutive_failures == 3


# =============================================================================
# Half-Open State
# =============================================================================


class TestHalfOpenState:
    """Tests for recovery probing."""

    @pytest.mark.asyncio
    async def test_probe_success_closes(self):
        clock = FakeClock()
        breaker = _breaker(clock)
        await _trip(breaker, 5)

        clock.advance(30)
        assert await breaker.call(_ok) == "ok"

        assert breaker.state == CircuitState.CLOSED
        assert breaker.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_probe_failure_reopens(self):
        clock = FakeClock()
        breaker = _breaker(clock)
        await _trip(breaker, 5)

        clock.advance(31)
        await _trip(breaker, 1)

        assert breaker.state == CircuitState.OPEN
        assert breaker.opened_at == clock.now

        clock.advance(29)
        with pytest.raises(CircuitOpenError):
            await breaker.call(_ok)

    @pytest.mark.asyncio
    async def test_single_probe_under_concurrency(self):
        clock = FakeClock()
        breaker = _breaker(clock)
        await _trip(breaker, 5)
        clock.advance(30)

        release = asyncio.Event()
        executed = 0

        async def probe():
            nonlocal executed
            executed += 1
            await release.wait()
            return "ok"

        tasks = [asyncio.create_task(breaker.call(probe)) for _ in range(10)]
        await asyncio.sleep(0.05)
        release.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)

        assert executed == 1
        assert results.count("ok") == 1
        assert sum(isinstance(r, CircuitOpenError) for r in results) == 9
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_neutral_probe_frees_slot(self):
        clock = FakeClock()
        breaker = _breaker(clock)
        await _trip(breaker, 5)
        clock.advance(30)

        async def not_found():
            raise RequestError("Not found", "fake", status_code=404)

        with pytest.raises(RequestError):
            await breaker.call(not_found)
        assert breaker.state == CircuitState.HALF_OPEN

        assert await breaker.call(_ok) == "ok"
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_cancelled_probe_frees_slot(self):
        clock = FakeClock()
        breaker = _breaker(clock)
        await _trip(breaker, 5)
        clock.advance(30)

        async def hang():
            await asyncio.sleep(10)

        task = asyncio.create_task(breaker.call(hang))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert await breaker.call(_ok) == "ok"

    def test_rejection_while_slot_taken_has_no_wait(self):
        clock = FakeClock()
        breaker = _breaker(clock, failure_threshold=1)
        breaker.record_failure(breaker.before_call())
        clock.advance(30)

        assert breaker.before_call() is True
        with pytest.raises(CircuitOpenError) as exc_info:
            breaker.before_call()

        assert exc_info.value.reset_after == 0.0

    def test_late_neutral_result_keeps_half_open_slot(self):
        clock = FakeClock()
        breaker = _breaker(clock, failure_threshold=1)
        late = breaker.before_call()
        breaker.record_failure(breaker.before_call())
        clock.advance(31)
        trial = breaker.before_call()

        breaker.record_error(RequestError("Not found", "fake", status_code=404), late)

        assert late is False and trial is True
        with pytest.raises(CircuitOpenError):
            breaker.before_call()
        assert breaker.state == CircuitState.HALF_OPEN

    def test_late_success_does_not_close(self):
        clock = FakeClock()
        breaker = _breaker(clock, failure_threshold=1)
        late = breaker.before_call()
        breaker.record_failure(breaker.before_call())
        clock.advance(31)
        trial = breaker.before_call()

        breaker.record_success(late)
        assert breaker.state == CircuitState.HALF_OPEN

        breaker.record_failure(trial)
        assert breaker.state == CircuitState.OPEN
        assert breaker.get_stats()["total_successes"] == 1

    def test_late_failure_does_not_reopen(self):
        clock = FakeClock()
        breaker = _breaker(clock, failure_threshold=1)
        late = breaker.before_call()
        breaker.record_failure(breaker.before_call())
        clock.advance(31)
        trial = breaker.before_call()

        breaker.record_failure(late)
        assert breaker.state == CircuitState.HALF_OPEN

        breaker.record_success(trial)
        assert breaker.state == CircuitState.CLOSED


# =============================================================================
# Registry
# =============================================================================


class TestCircuitBreakerRegistry:
    """Tests for keyed breaker storage and reporting."""

    def test_same_key_same_breaker(self):
        registry = CircuitBreakerRegistry()
        assert registry.get("github", "issues") is registry.get("github", "issues")
        assert registry.get("github", "issues") is not registry.get("github", "pulls")

    def test_uses_provider_policy(self):
        policies = {"slack": ProviderPolicy(failure_threshold=3, cooldown=10.0)}
        registry = CircuitBreakerRegistry(lambda p: policies.get(p, ProviderPolicy()))

        assert registry.get("slack", "post").failure_threshold == 3
        assert registry.get("slack", "post").cooldown == 10.0
        assert registry.get("github", "issues").failure_threshold == 5

    @pytest.mark.asyncio
    async def test_stats(self):
        registry = CircuitBreakerRegistry(clock=FakeClock())
        breaker = registry.get("github", "issues")
        await breaker.call(_ok)
        await _trip(breaker, 2)

        stats = registry.get_stats("github", "issues")
        assert stats["state"] == "closed"
        assert stats["total_requests"] == 3
        assert stats["total_successes"] == 1
        assert stats["total_failures"] == 2
        assert stats["consecutive_failures"] == 2
        assert registry.get_stats("github", "missing") is None

    @pytest.mark.asyncio
    async def test_system_health_and_report(self):
        clock = FakeClock()
        registry = CircuitBreakerRegistry(clock=clock)
        registry.get("github", "issues")
        registry.get("github", "pulls")
        await _trip(registry.get("slack", "post"), 5)

        health = registry.get_system_health()
        assert health["total_circuits"] == 3
        assert health["open_circuits"] == 1
        assert health["healthy_circuits"] == 2
        assert health["overall_health"] == pytest.approx(200 / 3)

        report = registry.get_report()
        assert report["providers"]["github"]["overall_health"] == 100.0
        assert report["providers"]["slack"]["failed_operations"] == 1
        assert report["summary"]["total_providers"] == 2
        assert report["summary"]["healthy_providers"] == 1
        assert report["summary"]["degraded_providers"] == 0

        assert [s["operation"] for s in registry.get_provider_stats("github")] == ["issues", "pulls"]

    @pytest.mark.asyncio
    async def test_reset(self):
        registry = CircuitBreakerRegistry(clock=FakeClock())
        await _trip(registry.get("slack", "post"), 5)
        await _trip(registry.get("slack", "read"), 5)

        assert registry.reset("slack", "post") is True
        assert registry.get("slack", "post").state == CircuitState.CLOSED
        assert registry.get("slack", "read").state == CircuitState.OPEN
        assert registry.reset("slack", "unknown") is False

        registry.reset_all()
        assert registry.get("slack", "read").state == CircuitState.CLOSED

    def test_empty_registry_is_healthy(self):
        assert CircuitBreakerRegistry().get_system_health()["overall_health"] == 100.0
