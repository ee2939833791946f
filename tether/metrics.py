"""
Metrics sink interface and implementations.

Engines report through SafeMetrics, which guarantees that a failing sink
never affects the call being measured.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class MetricsSink(Protocol):
    """Protocol for metrics backends."""

    async def track_api_call(
        self,
        user_id: str,
        integration_id: str,
        provider: str,
        operation: str,
        duration_ms: float,
        success: bool,
    ) -> None: ...

    async def track_webhook_event(
        self,
        user_id: str,
        integration_id: str,
        provider: str,
        event_type: str,
        duration_ms: float,
    ) -> None: ...

    async def track_rate_limit(self, provider: str, operation: str) -> None: ...


class SafeMetrics:
    """
    Wraps a MetricsSink so that sink failures are logged and dropped.

    A None sink makes every call a no-op.
    """

    def __init__(self, sink: MetricsSink | None = None):
        self.sink = sink

    async def track_api_call(
        self,
        user_id: str,
        integration_id: str,
        provider: str,
        operation: str,
        duration_ms: float,
        success: bool,
    ) -> None:
        if self.sink is None:
            return
        try:
            await self.sink.track_api_call(
                user_id, integration_id, provider, operation, duration_ms, success
            )
        except Exception as e:
            logger.warning(f"[{provider}] Metrics sink failed on track_api_call: {e}")

    async def track_webhook_event(
        self,
        user_id: str,
        integration_id: str,
        provider: str,
        event_type: str,
        duration_ms: float,
    ) -> None:
        if self.sink is None:
            return
        try:
            await self.sink.track_webhook_event(
                user_id, integration_id, provider, event_type, duration_ms
            )
        except Exception as e:
            logger.warning(f"[{provider}] Metrics sink failed on track_webhook_event: {e}")

    async def track_rate_limit(self, provider: str, operation: str) -> None:
        if self.sink is None:
            return
        try:
            await self.sink.track_rate_limit(provider, operation)
        except Exception as e:
            logger.warning(f"[{provider}] Metrics sink failed on track_rate_limit: {e}")


# =============================================================================
# In-Memory Sink
# =============================================================================


class HealthStatus(str, Enum):
    """Health status derived from a provider's success rate."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass
class ProviderMetrics:
    """Aggregated metrics for a provider."""

    provider: str
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    total_latency_ms: float = 0.0
    rate_limit_hits: int = 0
    webhook_events: int = 0
    last_request_time: datetime | None = None
    operations: dict[str, int] = field(default_factory=dict)

    @property
    def avg_latency_ms(self) -> float:
        """Average latency per request."""
        if self.total_requests == 0:
            return 0.0
        return self.total_latency_ms / self.total_requests

    @property
    def success_rate(self) -> float:
        """Success rate (0.0 to 1.0)."""
        if self.total_requests == 0:
            return 1.0
        return self.successful_requests / self.total_requests

    @property
    def status(self) -> HealthStatus:
        if self.total_requests == 0:
            return HealthStatus.UNKNOWN
        if self.success_rate >= 0.9:
            return HealthStatus.HEALTHY
        if self.success_rate >= 0.5:
            return HealthStatus.DEGRADED
        return HealthStatus.UNHEALTHY

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "status": self.status.value,
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "avg_latency_ms": self.avg_latency_ms,
            "success_rate": self.success_rate,
            "rate_limit_hits": self.rate_limit_hits,
            "webhook_events": self.webhook_events,
            "last_request_time": self.last_request_time.isoformat() if self.last_request_time else None,
            "operations": dict(self.operations),
        }


class InMemoryMetricsSink:
    """
    Metrics sink that keeps per-provider aggregates and the raw events.

    Suitable for tests and single-process deployments.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._providers: dict[str, ProviderMetrics] = {}
        self.api_calls: list[dict[str, Any]] = []
        self.webhook_events: list[dict[str, Any]] = []
        self.rate_limits: list[dict[str, Any]] = []

    def _metrics_for(self, provider: str) -> ProviderMetrics:
        if provider not in self._providers:
            self._providers[provider] = ProviderMetrics(provider=provider)
        return self._providers[provider]

    async def track_api_call(
        self,
        user_id: str,
        integration_id: str,
        provider: str,
        operation: str,
        duration_ms: float,
        success: bool,
    ) -> None:
        with self._lock:
            self.api_calls.append(
                {
                    "user_id": user_id,
                    "integration_id": integration_id,
                    "provider": provider,
                    "operation": operation,
                    "duration_ms": duration_ms,
                    "success": success,
                }
            )
            metrics = self._metrics_for(provider)
            metrics.total_requests += 1
            if success:
                metrics.successful_requests += 1
            else:
                metrics.failed_requests += 1
            metrics.total_latency_ms += duration_ms
            metrics.last_request_time = datetime.now(UTC)
            metrics.operations[operation] = metrics.operations.get(operation, 0) + 1

    async def track_webhook_event(
        self,
        user_id: str,
        integration_id: str,
        provider: str,
        event_type: str,
        duration_ms: float,
    ) -> None:
        with self._lock:
            self.webhook_events.append(
                {
                    "user_id": user_id,
                    "integration_id": integration_id,
                    "provider": provider,
                    "event_type": event_type,
                    "duration_ms": duration_ms,
                }
            )
            self._metrics_for(provider).webhook_events += 1

    async def track_rate_limit(self, provider: str, operation: str) -> None:
        with self._lock:
            self.rate_limits.append({"provider": provider, "operation": operation})
            self._metrics_for(provider).rate_limit_hits += 1

    def get_provider_metrics(self, provider: str) -> ProviderMetrics | None:
        with self._lock:
            return self._providers.get(provider)

    def get_all_metrics(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            return {name: m.to_dict() for name, m in self._providers.items()}


class LoggingMetricsSink:
    """Metrics sink that writes every event to the log."""

    def __init__(self, level: int = logging.DEBUG):
        self.level = level

    async def track_api_call(
        self,
        user_id: str,
        integration_id: str,
        provider: str,
        operation: str,
        duration_ms: float,
        success: bool,
    ) -> None:
        logger.log(
            self.level,
            f"[{provider}] api_call operation={operation} success={success} "
            f"duration={duration_ms:.1f}ms integration={integration_id}",
        )

    async def track_webhook_event(
        self,
        user_id: str,
        integration_id: str,
        provider: str,
        event_type: str,
        duration_ms: float,
    ) -> None:
        logger.log(
            self.level,
            f"[{provider}] webhook event={event_type} duration={duration_ms:.1f}ms "
            f"integration={integration_id}",
        )

    async def track_rate_limit(self, provider: str, operation: str) -> None:
        logger.log(self.level, f"[{provider}] rate_limited operation={operation}")


__all__ = [
    "HealthStatus",
    "InMemoryMetricsSink",
    "LoggingMetricsSink",
    "MetricsSink",
    "ProviderMetrics",
    "SafeMetrics",
]
