"""MetricsCollector: per-service and cluster-wide telemetry snapshots.

Observability failures fail open: a signal that cannot be read is reported
as 0.0, listed in the snapshot's ``missing`` field, and the tick continues.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Protocol

from scalewarden.collector.prometheus import MetricsQueryError, UndefinedSampleError
from scalewarden.models.alerts import Alert, Severity
from scalewarden.models.scaling import ClusterSnapshot, MetricSnapshot, Signal
from scalewarden.observability.logging import get_logger
from scalewarden.observability.metrics import metric_query_failures_total

if TYPE_CHECKING:
    from scalewarden.notifications.manager import NotificationDispatcher

_logger = get_logger("collector")

SERVICE_QUERIES: dict[Signal, str] = {
    Signal.CPU: 'avg(rate(container_cpu_usage_seconds_total{{name=~"{service}.*"}}[{window}])) * 100',
    Signal.MEMORY: (
        'avg(container_memory_usage_bytes{{name=~"{service}.*"}}'
        ' / container_spec_memory_limit_bytes{{name=~"{service}.*"}}) * 100'
    ),
    Signal.REQUEST_RATE: 'sum(rate(http_requests_total{{service="{service}"}}[{window}])) * 60',
    Signal.P95_LATENCY: (
        "histogram_quantile(0.95, sum(rate("
        'http_request_duration_seconds_bucket{{service="{service}"}}[{window}])) by (le)) * 1000'
    ),
    Signal.ERROR_RATE: (
        'sum(rate(http_requests_total{{service="{service}",status=~"5.."}}[{window}]))'
        ' / sum(rate(http_requests_total{{service="{service}"}}[{window}])) * 100'
    ),
}

# Ratios over zero traffic evaluate to NaN; for these an idle service reads as 0.
RATIO_SIGNALS = frozenset({Signal.P95_LATENCY, Signal.ERROR_RATE})

CLUSTER_CPU_QUERY = '(1 - avg(rate(node_cpu_seconds_total{{mode="idle"}}[{window}]))) * 100'
CLUSTER_MEM_QUERY = "(1 - sum(node_memory_MemAvailable_bytes) / sum(node_memory_MemTotal_bytes)) * 100"


class QueryBackend(Protocol):
    async def query(self, expr: str) -> float: ...


class MetricsCollector:
    """Samples the five per-service signals and the host-level gate signals.

    Args:
        backend:       Anything with ``async query(expr) -> float``.
        window:        PromQL range used by every rate() expression.
        dispatcher:    Optional alert sink for persistent sampling failures.
        alert_after:   Consecutive degraded samples before alerting.
    """

    def __init__(
        self,
        backend: QueryBackend,
        window: str = "5m",
        dispatcher: NotificationDispatcher | None = None,
        alert_after: int = 3,
    ) -> None:
        self._backend = backend
        self._window = window
        self._dispatcher = dispatcher
        self._alert_after = alert_after
        self._failure_streak: dict[str, int] = {}

    async def sample(self, service: str) -> MetricSnapshot:
        """Query all five signals concurrently. Never raises."""
        signals = list(SERVICE_QUERIES)
        values = await asyncio.gather(
            *(self._query_signal(SERVICE_QUERIES[s].format(service=service, window=self._window), s) for s in signals)
        )
        readings = dict(zip(signals, values, strict=True))
        missing = tuple(s for s in signals if readings[s] is None)

        snapshot = MetricSnapshot(
            service=service,
            cpu_pct=readings[Signal.CPU] or 0.0,
            mem_pct=readings[Signal.MEMORY] or 0.0,
            request_rate=readings[Signal.REQUEST_RATE] or 0.0,
            p95_latency_ms=readings[Signal.P95_LATENCY] or 0.0,
            error_rate_pct=readings[Signal.ERROR_RATE] or 0.0,
            sampled_at=datetime.now(tz=UTC),
            missing=missing,
        )
        self._track_failures(service, missing)
        _logger.debug(
            "metrics_sampled",
            service=service,
            cpu=snapshot.cpu_pct,
            mem=snapshot.mem_pct,
            req=snapshot.request_rate,
            p95_ms=snapshot.p95_latency_ms,
            err=snapshot.error_rate_pct,
            missing=[s.value for s in missing],
        )
        return snapshot

    async def sample_cluster(self) -> ClusterSnapshot:
        """Host-level CPU and memory utilisation for the emergency gate. Never raises."""
        cpu, mem = await asyncio.gather(
            self._query_signal(CLUSTER_CPU_QUERY.format(window=self._window), "cluster_cpu"),
            self._query_signal(CLUSTER_MEM_QUERY, "cluster_memory"),
        )
        missing = tuple(name for name, v in (("cpu", cpu), ("memory", mem)) if v is None)
        return ClusterSnapshot(
            cpu_pct=cpu or 0.0,
            mem_pct=mem or 0.0,
            sampled_at=datetime.now(tz=UTC),
            missing=missing,
        )

    def failure_streak(self, service: str) -> int:
        return self._failure_streak.get(service, 0)

    async def _query_signal(self, expr: str, signal: str) -> float | None:
        try:
            return await self._backend.query(expr)
        except UndefinedSampleError as exc:
            if signal in RATIO_SIGNALS:
                _logger.debug("metric_no_traffic", signal=str(signal))
                return 0.0
            error: MetricsQueryError = exc
        except MetricsQueryError as exc:
            error = exc
        metric_query_failures_total.labels(signal=str(signal)).inc()
        _logger.debug("metric_query_degraded", signal=str(signal), error=str(error))
        return None

    def _track_failures(self, service: str, missing: tuple[Signal, ...]) -> None:
        if not missing:
            self._failure_streak.pop(service, None)
            return
        streak = self._failure_streak.get(service, 0) + 1
        self._failure_streak[service] = streak
        if streak == self._alert_after:
            _logger.warning(
                "metrics_persistently_unavailable",
                service=service,
                streak=streak,
                missing=[s.value for s in missing],
            )
            if self._dispatcher is not None:
                self._dispatcher.dispatch(
                    Alert(
                        title="Metrics unavailable",
                        message=(
                            f"Service: {service}, signals {', '.join(s.value for s in missing)} "
                            f"unavailable for {streak} consecutive samples; treated as 0"
                        ),
                        severity=Severity.WARNING,
                        service=service,
                    )
                )
