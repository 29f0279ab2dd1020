"""Unit tests for health probing, nginx upstream files and the reconciler."""

from __future__ import annotations

from pathlib import Path

import httpx
import pytest
from fakes import FakeHealthChecker, FakeRuntime, RecordingDispatcher

from scalewarden.loadbalancer import (
    HealthChecker,
    LoadBalancerReconciler,
    NginxUpstreamWriter,
    ReconcileError,
    render_upstream,
)
from scalewarden.models.config import ServiceSpec
from scalewarden.models.scaling import Instance

_A = Instance(instance_id="backend-1", host="10.0.0.1", port=80)
_B = Instance(instance_id="backend-2", host="10.0.0.2", port=80)


# ---------------------------------------------------------------------------
# HealthChecker
# ---------------------------------------------------------------------------


class TestHealthChecker:
    async def test_2xx_healthy_other_unhealthy(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/health"
            return httpx.Response(200 if request.url.host == "10.0.0.1" else 503)

        checker = HealthChecker(transport=httpx.MockTransport(handler))
        outcome = await checker.check_all("backend", [_A, _B], "/health", 1.0)
        assert outcome == {_A: True, _B: False}

    async def test_connection_error_is_unhealthy(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        checker = HealthChecker(transport=httpx.MockTransport(handler))
        assert await checker.check_all("backend", [_A], "/health", 1.0) == {_A: False}

    async def test_empty(self) -> None:
        assert await HealthChecker().check_all("backend", [], "/health", 1.0) == {}


# ---------------------------------------------------------------------------
# Upstream rendering and writing
# ---------------------------------------------------------------------------


class TestRenderUpstream:
    def test_exact_server_set(self) -> None:
        text = render_upstream("backend_upstream", [_B, _A])
        assert text == (
            "upstream backend_upstream {\n"
            "    server 10.0.0.1:80;\n"
            "    server 10.0.0.2:80;\n"
            "}\n"
        )

    def test_empty_set_uses_down_placeholder(self) -> None:
        text = render_upstream("backend_upstream", [])
        assert "down;" in text
        assert "10.0.0" not in text


class TestNginxUpstreamWriter:
    async def test_write_and_reload(self, tmp_path: Path) -> None:
        writer = NginxUpstreamWriter(tmp_path, reload_command=["true"])
        assert await writer.apply("backend_upstream", [_A]) is True
        assert "server 10.0.0.1:80;" in (tmp_path / "backend_upstream.conf").read_text()

    async def test_unchanged_content_skips_reload(self, tmp_path: Path) -> None:
        writer = NginxUpstreamWriter(tmp_path, reload_command=["true"])
        await writer.apply("backend_upstream", [_A])
        assert await writer.apply("backend_upstream", [_A]) is False

    async def test_failed_config_test_restores_previous(self, tmp_path: Path) -> None:
        good = NginxUpstreamWriter(tmp_path, reload_command=["true"])
        await good.apply("backend_upstream", [_A])
        before = (tmp_path / "backend_upstream.conf").read_text()

        failing = NginxUpstreamWriter(tmp_path, reload_command=["true"], test_command=["false"])
        with pytest.raises(ReconcileError, match="config test failed"):
            await failing.apply("backend_upstream", [_A, _B])
        assert (tmp_path / "backend_upstream.conf").read_text() == before

    async def test_failed_reload_is_retried_next_time(self, tmp_path: Path) -> None:
        writer = NginxUpstreamWriter(tmp_path, reload_command=["false"])
        with pytest.raises(ReconcileError, match="reload failed"):
            await writer.apply("backend_upstream", [_A])
        writer._reload_command = ["true"]
        assert await writer.apply("backend_upstream", [_A]) is True


# ---------------------------------------------------------------------------
# Reconciler
# ---------------------------------------------------------------------------


@pytest.fixture
def reconciler(
    tmp_path: Path,
    services: list[ServiceSpec],
    runtime: FakeRuntime,
    health: FakeHealthChecker,
    dispatcher: RecordingDispatcher,
) -> LoadBalancerReconciler:
    runtime.replicas["backend"] = 3
    return LoadBalancerReconciler(
        services,
        runtime,
        NginxUpstreamWriter(tmp_path, reload_command=["true"]),
        health,
        drain_seconds=0,
        dispatcher=dispatcher,  # type: ignore[arg-type]
    )


class TestReconciler:
    async def test_only_healthy_instances_admitted(
        self,
        reconciler: LoadBalancerReconciler,
        health: FakeHealthChecker,
        tmp_path: Path,
    ) -> None:
        health.unhealthy = {"backend-2"}
        result = await reconciler.reconcile("backend")
        assert [i.instance_id for i in result.healthy] == ["backend-1", "backend-3"]
        assert [i.instance_id for i in result.unhealthy] == ["backend-2"]
        conf = (tmp_path / "backend_upstream.conf").read_text()
        assert "10.0.0.2:80" not in conf
        assert "10.0.0.3:80" in conf

    async def test_excluded_not_probed_or_admitted(
        self,
        reconciler: LoadBalancerReconciler,
        health: FakeHealthChecker,
        tmp_path: Path,
    ) -> None:
        victim = Instance(instance_id="backend-3", host="10.0.0.3", port=80)
        result = await reconciler.drain("backend", [victim])
        assert [i.instance_id for i in result.excluded] == ["backend-3"]
        assert "backend-3" not in health.checked
        assert "10.0.0.3:80" not in (tmp_path / "backend_upstream.conf").read_text()

    async def test_no_healthy_instances_alerts(
        self,
        reconciler: LoadBalancerReconciler,
        health: FakeHealthChecker,
        dispatcher: RecordingDispatcher,
        tmp_path: Path,
    ) -> None:
        health.unhealthy = {"backend-1", "backend-2", "backend-3"}
        result = await reconciler.reconcile("backend")
        assert result.healthy == ()
        assert "down;" in (tmp_path / "backend_upstream.conf").read_text()
        assert dispatcher.titles() == ["No healthy instances"]

    async def test_unknown_service(self, reconciler: LoadBalancerReconciler) -> None:
        with pytest.raises(ReconcileError):
            await reconciler.reconcile("billing")

    async def test_runtime_failure_becomes_reconcile_error(
        self,
        reconciler: LoadBalancerReconciler,
        runtime: FakeRuntime,
    ) -> None:
        async def _boom(service: str) -> list[Instance]:
            from scalewarden.runtime.base import RuntimeCommandError

            raise RuntimeCommandError("docker unreachable")

        runtime.list_instances = _boom  # type: ignore[method-assign]
        with pytest.raises(ReconcileError, match="cannot list instances"):
            await reconciler.reconcile("backend")
