"""
Circuit Breaker for vendor operations.

One breaker per (provider, operation) key, held in an explicit registry
that is injected into every adapter. All concurrent calls for a key share
the same breaker.

States:
- CLOSED: Normal operation. Tripping failures inside the rolling window
  are counted; reaching the threshold opens the circuit.
- OPEN: Calls are rejected with CircuitOpenError without being attempted.
  After the cooldown the next call moves the circuit to HALF_OPEN.
- HALF_OPEN: Exactly one probe call is admitted. Success closes the
  circuit; a tripping failure reopens it. Calls admitted before the trip
  that finish while OPEN or HALF_OPEN only update statistics.

Only UpstreamError (network, 5xx, timeout) trips. Other errors are
neutral: they neither count nor reset, and a neutral probe result only
frees the probe slot.

Thread safety:
    Each breaker guards its state with a threading.Lock held only for the
    check-and-transition, never across an await.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from enum import Enum
from typing import Any, TypeVar

from tether.config.schemas import DEFAULT_POLICY, ProviderPolicy
from tether.integrations.errors import CircuitOpenError, trips_breaker

logger = logging.getLogger(__name__)

T = TypeVar("T")

Clock = Callable[[], float]


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing recovery


class CircuitBreaker:
    """
    Breaker for a single (provider, operation) key.

    Example:
        breaker = registry.get("github", "list_issues")
        result = await breaker.call(lambda: client.request("GET", "/issues"))
    """

    def __init__(
        self,
        provider: str,
        operation: str,
        *,
        failure_threshold: int = 5,
        failure_window: float = 300.0,
        cooldown: float = 30.0,
        clock: Clock = time.monotonic,
    ):
        self.provider = provider
        self.operation = operation
        self.failure_threshold = failure_threshold
        self.failure_window = failure_window
        self.cooldown = cooldown
        self._clock = clock

        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures: deque[float] = deque()
        self._opened_at: float | None = None
        self._probe_in_flight = False

        # Statistics
        self._total_requests = 0
        self._total_successes = 0
        self._total_failures = 0
        self._rejected = 0
        self._last_failure_time: datetime | None = None
        self._last_success_time: datetime | None = None

    @property
    def name(self) -> str:
        return f"{self.provider}:{self.operation}"

    @property
    def state(self) -> CircuitState:
        """Current state, without performing the OPEN -> HALF_OPEN transition."""
        with self._lock:
            return self._state

    @property
    def consecutive_failures(self) -> int:
        with self._lock:
            self._prune_failures(self._clock())
            return len(self._failures)

    @property
    def opened_at(self) -> float | None:
        return self._opened_at

    # ==================== Transitions ====================
    # Callers must hold self._lock.

    def _prune_failures(self, now: float) -> None:
        horizon = now - self.failure_window
        while self._failures and self._failures[0] < horizon:
            self._failures.popleft()

    def _transition_to_open(self, now: float) -> None:
        logger.warning(
            f"Circuit '{self.name}': {self._state.value.upper()} -> OPEN "
            f"(failures={len(self._failures)})"
        )
        self._state = CircuitState.OPEN
        self._opened_at = now
        self._probe_in_flight = False

    def _transition_to_half_open(self) -> None:
        logger.info(f"Circuit '{self.name}': OPEN -> HALF_OPEN")
        self._state = CircuitState.HALF_OPEN
        self._probe_in_flight = False

    def _transition_to_closed(self) -> None:
        logger.info(f"Circuit '{self.name}': {self._state.value.upper()} -> CLOSED")
        self._state = CircuitState.CLOSED
        self._failures.clear()
        self._opened_at = None
        self._probe_in_flight = False

    def _reset_after(self, now: float) -> float:
        if self._opened_at is None:
            return self.cooldown
        return max(0.0, self.cooldown - (now - self._opened_at))

    # ==================== Gate ====================

    def before_call(self) -> bool:
        """
        Admit or reject a call.

        Atomically performs the OPEN -> HALF_OPEN transition once the cooldown
        has elapsed and claims the single probe slot.

        Returns:
            True if the admitted call is the HALF_OPEN probe. Pass it back to
            the record_* method so only the probe settles the circuit.

        Raises:
            CircuitOpenError: If the call must not be attempted
        """
        with self._lock:
            now = self._clock()

            if self._state == CircuitState.OPEN:
                if now - (self._opened_at or now) >= self.cooldown:
                    self._transition_to_half_open()
                else:
                    self._rejected += 1
                    raise CircuitOpenError(self.provider, self.operation, self._reset_after(now))

            is_probe = False
            if self._state == CircuitState.HALF_OPEN:
                if self._probe_in_flight:
                    # Next chance comes when the probe finishes
                    self._rejected += 1
                    raise CircuitOpenError(self.provider, self.operation, 0.0)
                self._probe_in_flight = True
                is_probe = True

            self._total_requests += 1
            return is_probe

    def record_success(self, is_probe: bool = False) -> None:
        """Record a successful call."""
        with self._lock:
            self._total_successes += 1
            self._last_success_time = datetime.now(UTC)

            if self._state == CircuitState.HALF_OPEN:
                if is_probe:
                    self._transition_to_closed()
            elif self._state == CircuitState.CLOSED:
                self._failures.clear()

    def record_failure(self, is_probe: bool = False) -> None:
        """Record a tripping failure (network, 5xx, timeout)."""
        with self._lock:
            now = self._clock()
            self._total_failures += 1
            self._last_failure_time = datetime.now(UTC)

            if self._state == CircuitState.HALF_OPEN:
                if is_probe:
                    self._failures.append(now)
                    self._transition_to_open(now)
            elif self._state == CircuitState.CLOSED:
                self._failures.append(now)
                self._prune_failures(now)
                if len(self._failures) >= self.failure_threshold:
                    self._transition_to_open(now)

    def record_neutral(self, is_probe: bool = False) -> None:
        """Record a non-tripping result; a neutral probe frees its slot."""
        with self._lock:
            if self._state == CircuitState.HALF_OPEN and is_probe:
                self._probe_in_flight = False

    def record_error(self, error: BaseException, is_probe: bool = False) -> None:
        """Classify an error and record it."""
        if trips_breaker(error):
            self.record_failure(is_probe)
        else:
            self.record_neutral(is_probe)

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Execute operation through the breaker.

        Raises:
            CircuitOpenError: If circuit is open
            Exception: Any exception from the operation
        """
        is_probe = self.before_call()
        try:
            result = await operation()
        except BaseException as e:
            self.record_error(e, is_probe)
            raise
        self.record_success(is_probe)
        return result

    def reset(self) -> None:
        """Reset the breaker to CLOSED and clear counters."""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failures.clear()
            self._opened_at = None
            self._probe_in_flight = False
            logger.info(f"Circuit '{self.name}': reset")

    def get_stats(self) -> dict[str, Any]:
        """Get circuit breaker statistics."""
        with self._lock:
            now = self._clock()
            self._prune_failures(now)
            return {
                "provider": self.provider,
                "operation": self.operation,
                "state": self._state.value,
                "consecutive_failures": len(self._failures),
                "failure_threshold": self.failure_threshold,
                "cooldown": self.cooldown,
                "reset_after": (
                    self._reset_after(now) if self._state == CircuitState.OPEN else None
                ),
                "total_requests": self._total_requests,
                "total_successes": self._total_successes,
                "total_failures": self._total_failures,
                "rejected_requests": self._rejected,
                "last_failure_time": self._last_failure_time,
                "last_success_time": self._last_success_time,
            }


class CircuitBreakerRegistry:
    """
    Keyed store of circuit breakers.

    One instance is shared by all adapters in a process so that every call
    for a (provider, operation) key sees the same state.
    """

    def __init__(
        self,
        policy_for: Callable[[str], ProviderPolicy] | None = None,
        *,
        clock: Clock = time.monotonic,
    ):
        self._policy_for = policy_for or (lambda provider: DEFAULT_POLICY)
        self._clock = clock
        self._breakers: dict[tuple[str, str], CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, provider: str, operation: str) -> CircuitBreaker:
        """Get or create the breaker for a key."""
        key = (provider, operation)
        with self._lock:
            breaker = self._breakers.get(key)
            if breaker is None:
                policy = self._policy_for(provider)
                breaker = CircuitBreaker(
                    provider,
                    operation,
                    failure_threshold=policy.failure_threshold,
                    failure_window=policy.failure_window,
                    cooldown=policy.cooldown,
                    clock=self._clock,
                )
                self._breakers[key] = breaker
            return breaker

    def _snapshot(self) -> list[CircuitBreaker]:
        with self._lock:
            return list(self._breakers.values())

    # ==================== Stats ====================

    def get_stats(self, provider: str, operation: str) -> dict[str, Any] | None:
        with self._lock:
            breaker = self._breakers.get((provider, operation))
        return breaker.get_stats() if breaker else None

    def get_provider_stats(self, provider: str) -> list[dict[str, Any]]:
        return [b.get_stats() for b in self._snapshot() if b.provider == provider]

    def get_system_health(self) -> dict[str, Any]:
        """Summarize circuit states across all providers."""
        counts = {state: 0 for state in CircuitState}
        breakers = self._snapshot()
        for breaker in breakers:
            counts[breaker.state] += 1

        total = len(breakers)
        return {
            "total_circuits": total,
            "open_circuits": counts[CircuitState.OPEN],
            "half_open_circuits": counts[CircuitState.HALF_OPEN],
            "healthy_circuits": counts[CircuitState.CLOSED],
            "overall_health": (counts[CircuitState.CLOSED] / total) * 100 if total else 100.0,
        }

    def get_report(self) -> dict[str, Any]:
        """
        Per-provider health report.

        Closed circuits count as healthy, half-open as degraded, open as
        failed. A provider is healthy at 90% or above and degraded from 50%.
        """
        providers: dict[str, dict[str, Any]] = {}
        for breaker in self._snapshot():
            entry = providers.setdefault(
                breaker.provider,
                {
                    "total_operations": 0,
                    "healthy_operations": 0,
                    "degraded_operations": 0,
                    "failed_operations": 0,
                    "overall_health": 0.0,
                },
            )
            entry["total_operations"] += 1
            state = breaker.state
            if state == CircuitState.CLOSED:
                entry["healthy_operations"] += 1
            elif state == CircuitState.HALF_OPEN:
                entry["degraded_operations"] += 1
            else:
                entry["failed_operations"] += 1

        for entry in providers.values():
            entry["overall_health"] = entry["healthy_operations"] / entry["total_operations"] * 100

        healths = [entry["overall_health"] for entry in providers.values()]
        return {
            "providers": providers,
            "summary": {
                "total_providers": len(providers),
                "healthy_providers": sum(1 for h in healths if h >= 90),
                "degraded_providers": sum(1 for h in healths if 50 <= h < 90),
                "overall_system_health": sum(healths) / len(healths) if healths else 100.0,
            },
        }

    # ==================== Reset ====================

    def reset(self, provider: str, operation: str) -> bool:
        with self._lock:
            breaker = self._breakers.get((provider, operation))
        if breaker is None:
            return False
        breaker.reset()
        return True

    def reset_all(self) -> None:
        for breaker in self._snapshot():
            breaker.reset()
        logger.info("All circuits reset")


__all__ = [
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitState",
]
