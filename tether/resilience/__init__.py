"""
Resilience engines: circuit breaking, rate governance and token refresh.
"""

from .backoff import ExponentialBackoff
from .circuit import CircuitBreaker, CircuitBreakerRegistry, CircuitState
from .governor import (
    GovernorStore,
    InMemoryGovernorStore,
    RateGovernor,
    TokenBucket,
    parse_retry_after,
)
from .refresh import TokenRefreshCoordinator

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitState",
    "ExponentialBackoff",
    "GovernorStore",
    "InMemoryGovernorStore",
    "RateGovernor",
    "TokenBucket",
    "TokenRefreshCoordinator",
    "parse_retry_after",
]
