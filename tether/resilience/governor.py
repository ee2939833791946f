"""
Rate Governor for outbound vendor calls.

Two gates per provider:

1. Token bucket (rate, burst from the provider policy). An empty bucket
   suspends the caller until a token is available, up to max_wait.
2. Cooldown after a 429. While it lasts every call fails fast with
   RateLimitedError(reset_time) and is never attempted.

Cooldown length:
    - Retry-After header (delta seconds or HTTP-date) when present
    - Otherwise exponential backoff with jitter, growing with consecutive
      429s and capped at the policy's max_backoff

429s are the governor's business only; they never reach the circuit
breaker.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from email.utils import parsedate_to_datetime
from typing import Protocol

from tether.config.schemas import DEFAULT_POLICY, ProviderPolicy
from tether.integrations.errors import RateLimitedError
from tether.integrations.models import RateLimitInfo
from tether.metrics import SafeMetrics

from .backoff import ExponentialBackoff

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


# =============================================================================
# Token Bucket State
# =============================================================================


@dataclass
class TokenBucket:
    """
    Token bucket state for rate limiting.

    The bucket fills at a constant rate and has a maximum capacity.
    Each request consumes tokens from the bucket.
    """

    tokens: float
    last_update: float
    capacity: float
    rate: float  # tokens per second

    def replenish(self, now: float) -> None:
        """Replenish tokens based on elapsed time."""
        elapsed = max(0.0, now - self.last_update)
        self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
        self.last_update = now

    def consume(self, now: float, cost: float = 1.0) -> bool:
        """
        Attempt to consume tokens.

        Returns True if tokens were consumed, False if insufficient.
        """
        self.replenish(now)
        if self.tokens >= cost:
            self.tokens -= cost
            return True
        return False

    def time_until_available(self, now: float, cost: float = 1.0) -> float:
        """Calculate time until enough tokens are available."""
        self.replenish(now)
        if self.tokens >= cost:
            return 0.0
        return (cost - self.tokens) / self.rate


@dataclass
class ProviderRateState:
    """Governor state for one provider."""

    bucket: TokenBucket
    cooldown_until: float | None = None
    reset_time: datetime | None = None
    consecutive_rate_limits: int = 0
    last_retry_after: float | None = field(default=None)


# =============================================================================
# Storage
# =============================================================================


class GovernorStore(Protocol):
    """
    Keyed storage for provider rate state.

    Accessed only while the governor's lock is held, so implementations
    must not block.
    """

    def get(self, provider: str) -> ProviderRateState | None: ...

    def set(self, provider: str, state: ProviderRateState) -> None: ...

    def clear(self, provider: str | None = None) -> None: ...


class InMemoryGovernorStore:
    """In-memory provider rate state for single-process deployments."""

    def __init__(self) -> None:
        self._states: dict[str, ProviderRateState] = {}

    def get(self, provider: str) -> ProviderRateState | None:
        return self._states.get(provider)

    def set(self, provider: str, state: ProviderRateState) -> None:
        self._states[provider] = state

    def clear(self, provider: str | None = None) -> None:
        if provider is None:
            self._states.clear()
        else:
            self._states.pop(provider, None)


# =============================================================================
# Retry-After
# =============================================================================


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """
    Parse a Retry-After header.

    Args:
        value: Header value, either delta seconds or an HTTP-date
        now: Reference time for HTTP-dates (defaults to current UTC time)

    Returns:
        Seconds to wait (never negative), or None if absent or unparseable
    """
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None

    try:
        return max(0.0, float(value))
    except ValueError:
        pass

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logger.debug(f"Unparseable Retry-After header: {value!r}")
        return None

    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    reference = now or datetime.now(UTC)
    return max(0.0, (when - reference).total_seconds())


# =============================================================================
# Governor
# =============================================================================


class RateGovernor:
    """
    Per-provider outbound rate control.

    Example:
        governor = RateGovernor(settings.policy_for, metrics=metrics)

        await governor.acquire("github", "list_issues")
        outcome = await client.request("GET", "/issues")
        if isinstance(outcome, RateLimited):
            raise await governor.record_rate_limited("github", outcome.retry_after)
        governor.record_success("github")
    """

    def __init__(
        self,
        policy_for: Callable[[str], ProviderPolicy] | None = None,
        *,
        metrics: SafeMetrics | None = None,
        store: GovernorStore | None = None,
        clock: Clock = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._policy_for = policy_for or (lambda provider: DEFAULT_POLICY)
        self._metrics = metrics or SafeMetrics()
        self._store = store or InMemoryGovernorStore()
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()

    def _state_for(self, provider: str, now: float) -> ProviderRateState:
        """Get or create provider state. Caller must hold self._lock."""
        state = self._store.get(provider)
        if state is None:
            policy = self._policy_for(provider)
            state = ProviderRateState(
                bucket=TokenBucket(
                    tokens=float(policy.burst),
                    last_update=now,
                    capacity=float(policy.burst),
                    rate=policy.rate,
                )
            )
            self._store.set(provider, state)
        return state

    def _cooldown_error(self, provider: str, state: ProviderRateState, now: float) -> RateLimitedError:
        remaining = max(0.0, (state.cooldown_until or now) - now)
        return RateLimitedError(
            f"Rate limited, retry in {remaining:.1f}s",
            provider,
            reset_time=state.reset_time or datetime.now(UTC) + timedelta(seconds=remaining),
            retry_after=remaining,
        )

    async def acquire(self, provider: str, operation: str = "call") -> None:
        """
        Wait for permission to make one call.

        Raises:
            RateLimitedError: During a cooldown, or if a bucket token is not
                available within the policy's max_wait
        """
        max_wait = self._policy_for(provider).max_wait
        waited = 0.0

        while True:
            error: RateLimitedError | None = None
            with self._lock:
                now = self._clock()
                state = self._state_for(provider, now)

                if state.cooldown_until is not None and now < state.cooldown_until:
                    error = self._cooldown_error(provider, state, now)
                elif state.bucket.consume(now):
                    self._store.set(provider, state)
                    return
                else:
                    wait = state.bucket.time_until_available(now)
                    if waited + wait > max_wait:
                        error = RateLimitedError(
                            f"Request budget exhausted, next slot in {wait:.2f}s",
                            provider,
                            reset_time=datetime.now(UTC) + timedelta(seconds=wait),
                            retry_after=wait,
                        )

            if error is not None:
                logger.info(f"[{provider}] Rejected {operation}: {error.message}")
                await self._metrics.track_rate_limit(provider, operation)
                raise error

            logger.debug(f"[{provider}] Waiting {wait:.2f}s for rate limit token")
            waited += wait
            await self._sleep(wait)

    async def record_rate_limited(
        self,
        provider: str,
        retry_after: str | None = None,
        operation: str = "call",
    ) -> RateLimitedError:
        """
        Enter a cooldown after a 429 response.

        Args:
            provider: Provider that returned 429
            retry_after: Raw Retry-After header value, if any
            operation: Operation that was rate limited

        Returns:
            The RateLimitedError for the caller to raise
        """
        policy = self._policy_for(provider)
        wall_now = datetime.now(UTC)

        with self._lock:
            now = self._clock()
            state = self._state_for(provider, now)

            delay = parse_retry_after(retry_after, wall_now)
            if delay is None:
                backoff = ExponentialBackoff(
                    base=policy.backoff_base,
                    max_delay=policy.max_backoff,
                )
                delay = backoff.get_delay(state.consecutive_rate_limits + 1)

            state.consecutive_rate_limits += 1
            state.cooldown_until = now + delay
            state.reset_time = wall_now + timedelta(seconds=delay)
            state.last_retry_after = delay
            self._store.set(provider, state)

            error = self._cooldown_error(provider, state, now)
            consecutive = state.consecutive_rate_limits

        logger.warning(
            f"[{provider}] Rate limited on {operation}, cooling down for {delay:.1f}s "
            f"(consecutive={consecutive})"
        )
        await self._metrics.track_rate_limit(provider, operation)
        return error

    def record_success(self, provider: str) -> None:
        """Reset the 429 backoff after a successful call."""
        with self._lock:
            state = self._store.get(provider)
            if state is not None and state.consecutive_rate_limits:
                state.consecutive_rate_limits = 0
                self._store.set(provider, state)

    def is_cooling_down(self, provider: str) -> bool:
        with self._lock:
            state = self._store.get(provider)
            return (
                state is not None
                and state.cooldown_until is not None
                and self._clock() < state.cooldown_until
            )

    def rate_limit_info(self, provider: str) -> RateLimitInfo:
        """Snapshot for ConnectionStatus."""
        with self._lock:
            now = self._clock()
            state = self._state_for(provider, now)
            state.bucket.replenish(now)
            cooling = state.cooldown_until is not None and now < state.cooldown_until
            return RateLimitInfo(
                limit=int(state.bucket.capacity),
                remaining=0 if cooling else int(state.bucket.tokens),
                reset_time=state.reset_time if cooling else None,
            )

    def reset(self, provider: str | None = None) -> None:
        """Forget rate state for one provider, or all providers."""
        with self._lock:
            self._store.clear(provider)


__all__ = [
    "GovernorStore",
    "InMemoryGovernorStore",
    "ProviderRateState",
    "RateGovernor",
    "TokenBucket",
    "parse_retry_after",
]
