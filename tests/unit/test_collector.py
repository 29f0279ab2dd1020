"""Unit tests for the Prometheus client and MetricsCollector degradation rules."""

from __future__ import annotations

import math

import httpx
import pytest
from fakes import FakeMetrics, RecordingDispatcher

from scalewarden.collector import MetricsCollector, MetricsQueryError, PrometheusClient, UndefinedSampleError
from scalewarden.models.alerts import Severity
from scalewarden.models.scaling import Signal


def _vector(value: str) -> dict[str, object]:
    return {
        "status": "success",
        "data": {"resultType": "vector", "result": [{"metric": {}, "value": [1705312800.0, value]}]},
    }


def _client(handler: object) -> PrometheusClient:
    return PrometheusClient("http://prometheus:9090", transport=httpx.MockTransport(handler))  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# PrometheusClient
# ---------------------------------------------------------------------------


class TestPrometheusClient:
    async def test_vector_result(self) -> None:
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.url.params["query"])
            assert request.url.path == "/api/v1/query"
            return httpx.Response(200, json=_vector("42.5"))

        client = _client(handler)
        try:
            assert await client.query("up") == 42.5
        finally:
            await client.close()
        assert seen == ["up"]

    async def test_scalar_result(self) -> None:
        body = {"status": "success", "data": {"resultType": "scalar", "result": [1705312800.0, "7"]}}
        client = _client(lambda request: httpx.Response(200, json=body))
        try:
            assert await client.query("scalar(1)") == 7.0
        finally:
            await client.close()

    @pytest.mark.parametrize(
        ("status", "kwargs"),
        [
            (200, {"json": {"status": "success", "data": {"resultType": "vector", "result": []}}}),
            (200, {"json": _vector("NaN")}),
            (200, {"json": {"status": "error", "error": "bad query"}}),
            (500, {"text": "boom"}),
            (200, {"text": "<html>"}),
        ],
    )
    async def test_failures_raise(self, status: int, kwargs: dict[str, object]) -> None:
        client = _client(lambda request: httpx.Response(status, **kwargs))
        try:
            with pytest.raises(MetricsQueryError):
                await client.query("up")
        finally:
            await client.close()

    async def test_nan_is_undefined_sample(self) -> None:
        client = _client(lambda request: httpx.Response(200, json=_vector("NaN")))
        try:
            with pytest.raises(UndefinedSampleError):
                await client.query("up")
        finally:
            await client.close()

    async def test_transport_error_raises(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = _client(handler)
        try:
            with pytest.raises(MetricsQueryError):
                await client.query("up")
        finally:
            await client.close()


# ---------------------------------------------------------------------------
# MetricsCollector
# ---------------------------------------------------------------------------


class TestMetricsCollector:
    async def test_sample_reads_all_signals(self, metrics: FakeMetrics) -> None:
        metrics.set_service("backend", cpu=85, mem=60, req=120, p95=250, err=1.5)
        snapshot = await MetricsCollector(metrics).sample("backend")
        assert snapshot.cpu_pct == 85
        assert snapshot.mem_pct == 60
        assert snapshot.request_rate == 120
        assert snapshot.p95_latency_ms == 250
        assert snapshot.error_rate_pct == 1.5
        assert snapshot.missing == ()

    async def test_queries_are_templated_with_service_and_window(self, metrics: FakeMetrics) -> None:
        metrics.set_service("frontend")
        await MetricsCollector(metrics).sample("frontend")
        cpu_query = metrics.expr("frontend", Signal.CPU)
        assert cpu_query in metrics.queries
        assert 'name=~"frontend.*"' in cpu_query
        assert "[5m]" in cpu_query

    async def test_failed_signal_degrades_to_zero(self, metrics: FakeMetrics) -> None:
        metrics.set_service("backend", cpu=85)
        metrics.fail("backend", Signal.MEMORY)
        snapshot = await MetricsCollector(metrics).sample("backend")
        assert snapshot.mem_pct == 0.0
        assert snapshot.cpu_pct == 85
        assert snapshot.missing == (Signal.MEMORY,)

    async def test_alert_after_consecutive_failures(
        self,
        metrics: FakeMetrics,
        dispatcher: RecordingDispatcher,
    ) -> None:
        collector = MetricsCollector(metrics, dispatcher=dispatcher, alert_after=3)  # type: ignore[arg-type]
        for _ in range(2):
            await collector.sample("backend")
        assert dispatcher.alerts == []
        await collector.sample("backend")
        assert collector.failure_streak("backend") == 3
        assert dispatcher.alerts[0].title == "Metrics unavailable"
        assert dispatcher.alerts[0].severity == Severity.WARNING

    async def test_streak_resets_on_success(self, metrics: FakeMetrics) -> None:
        collector = MetricsCollector(metrics)
        await collector.sample("backend")
        assert collector.failure_streak("backend") == 1
        metrics.set_service("backend")
        await collector.sample("backend")
        assert collector.failure_streak("backend") == 0

    async def test_idle_service_ratios_read_as_zero(
        self,
        metrics: FakeMetrics,
        dispatcher: RecordingDispatcher,
    ) -> None:
        metrics.set_service("backend", req=0.0, p95=math.nan, err=math.nan)
        collector = MetricsCollector(metrics, dispatcher=dispatcher, alert_after=3)  # type: ignore[arg-type]
        for _ in range(3):
            snapshot = await collector.sample("backend")
        assert snapshot.missing == ()
        assert (snapshot.p95_latency_ms, snapshot.error_rate_pct) == (0.0, 0.0)
        assert collector.failure_streak("backend") == 0
        assert dispatcher.alerts == []

    async def test_undefined_load_signal_is_missing(self, metrics: FakeMetrics) -> None:
        metrics.set_service("backend", cpu=math.nan)
        snapshot = await MetricsCollector(metrics).sample("backend")
        assert snapshot.missing == (Signal.CPU,)
        assert snapshot.cpu_pct == 0.0

    async def test_cluster_snapshot(self, metrics: FakeMetrics) -> None:
        metrics.set_cluster(cpu=93.0, mem=40.0)
        cluster = await MetricsCollector(metrics).sample_cluster()
        assert (cluster.cpu_pct, cluster.mem_pct) == (93.0, 40.0)
        assert cluster.missing == ()
