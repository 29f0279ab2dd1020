"""Application bootstrap for ScaleWarden.

Wires all components in dependency order and manages the asyncio lifecycle.
Startup order: config → logging → store → runtime → notifications
              → collector → policy → governor → reconciler → engine
              → control loop → REST

Shutdown is graceful: components are stopped in reverse startup order.
Each component's stop error is caught and logged independently so that a
single failure does not prevent the rest from shutting down cleanly.

``build_components`` is shared with the CLI, which runs single ticks and
one-off reconciles against the same wiring.
"""

from __future__ import annotations

import asyncio
import signal
from dataclasses import dataclass
from typing import TYPE_CHECKING

from scalewarden.collector import MetricsCollector, PrometheusClient
from scalewarden.config import ConfigError, load_config
from scalewarden.controller import ControlLoop
from scalewarden.loadbalancer import HealthChecker, LoadBalancerReconciler, NginxUpstreamWriter
from scalewarden.models.config import ScaleWardenConfig
from scalewarden.notifications import NotificationDispatcher, build_notification_dispatcher
from scalewarden.observability.logging import get_logger, setup_logging
from scalewarden.policy import PolicyEngine
from scalewarden.runtime import WorkloadRuntime, build_runtime
from scalewarden.safety import SafetyGovernor
from scalewarden.scaling import ScalingEngine
from scalewarden.store import StateStore, build_store

if TYPE_CHECKING:
    import structlog

_SHUTDOWN_GRACE_SECONDS = 15


class _ComponentError(Exception):
    """Raised when a mandatory component fails to start."""

    def __init__(self, component: str, cause: Exception) -> None:
        super().__init__(f"Component '{component}' failed to start: {cause}")
        self.component = component
        self.cause = cause


@dataclass
class Components:
    """Every long-lived object of one ScaleWarden process."""

    config: ScaleWardenConfig
    store: StateStore
    runtime: WorkloadRuntime
    dispatcher: NotificationDispatcher
    prometheus: PrometheusClient
    collector: MetricsCollector
    policy: PolicyEngine
    governor: SafetyGovernor
    reconciler: LoadBalancerReconciler
    engine: ScalingEngine
    loop: ControlLoop

    async def close(self) -> None:
        await self.dispatcher.flush()
        await self.prometheus.close()
        await self.runtime.close()


def build_governor(
    config: ScaleWardenConfig,
    store: StateStore,
    dispatcher: NotificationDispatcher | None = None,
) -> SafetyGovernor:
    return SafetyGovernor(config.services, config.safety, store, dispatcher=dispatcher)


async def build_components(config: ScaleWardenConfig) -> Components:
    """Construct the full component graph from validated *config*."""
    store = build_store(config.store)
    runtime = await build_runtime(config.runtime, config.services)
    dispatcher = build_notification_dispatcher(config.notifications)
    prometheus = PrometheusClient(config.metrics.prometheus_url, timeout=config.metrics.query_timeout)
    collector = MetricsCollector(
        prometheus,
        window=config.metrics.window,
        dispatcher=dispatcher,
        alert_after=config.metrics.failure_alert_after,
    )
    policy = PolicyEngine(config.policy)
    governor = build_governor(config, store, dispatcher)
    lb = config.loadbalancer
    reconciler = LoadBalancerReconciler(
        config.services,
        runtime,
        NginxUpstreamWriter(
            lb.upstreams_dir,
            reload_command=lb.reload_command,
            test_command=lb.test_command,
            timeout=lb.command_timeout,
        ),
        HealthChecker(concurrency=lb.health_check_concurrency),
        drain_seconds=lb.drain_seconds,
        dispatcher=dispatcher,
    )
    engine = ScalingEngine(config.services, runtime, store, reconciler, config.scaling)
    loop = ControlLoop(
        config.services,
        collector=collector,
        policy=policy,
        governor=governor,
        engine=engine,
        reconciler=reconciler,
        runtime=runtime,
        store=store,
        config=config.loop,
        dispatcher=dispatcher,
    )
    return Components(
        config=config,
        store=store,
        runtime=runtime,
        dispatcher=dispatcher,
        prometheus=prometheus,
        collector=collector,
        policy=policy,
        governor=governor,
        reconciler=reconciler,
        engine=engine,
        loop=loop,
    )


class ScaleWardenApp:
    """Application root.  Owns every component and coordinates their lifecycle.

    Calling ``stop()`` on an app that was never started (or already
    stopped) is safe.
    """

    def __init__(self, config: ScaleWardenConfig | None = None) -> None:
        self.config = config
        self.components: Components | None = None
        self._rest_server: object | None = None
        self._background_tasks: list[asyncio.Task[None]] = []
        self._running = False
        self._log: structlog.stdlib.BoundLogger | None = None

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def start(self, serve_api: bool = True) -> None:
        """Start all components in dependency order.

        Raises _ComponentError if a mandatory component cannot start.
        """
        # --- 1. Configuration -------------------------------------------
        if self.config is None:
            try:
                self.config = load_config()
            except ConfigError as exc:
                raise _ComponentError("config", exc) from exc

        # --- 2. Logging -------------------------------------------------
        setup_logging(self.config.log.level)
        self._log = get_logger("app")
        self._log.info(
            "scalewarden_starting",
            version=_scalewarden_version(),
            services=[s.name for s in self.config.services],
            runtime=self.config.runtime.kind,
        )

        # --- 3-11. Store through control loop ---------------------------
        try:
            self.components = await build_components(self.config)
        except Exception as exc:
            raise _ComponentError("components", exc) from exc

        # --- 12. Control loop task --------------------------------------
        task = asyncio.create_task(self.components.loop.run_forever(), name="control-loop")
        self._background_tasks.append(task)

        # --- 13. REST API -----------------------------------------------
        if serve_api:
            await self._start_rest()

        self._running = True
        self._log.info("scalewarden_started", port=self.config.api.port)

    async def _start_rest(self) -> None:
        """Start the uvicorn REST server."""
        assert self._log is not None
        assert self.config is not None
        assert self.components is not None
        try:
            import uvicorn

            from scalewarden.api import build_app

            fastapi_app = build_app(
                loop=self.components.loop,
                governor=self.components.governor,
                store=self.components.store,
                runtime=self.components.runtime,
                config=self.config,
            )
            uv_config = uvicorn.Config(
                app=fastapi_app,
                host="0.0.0.0",
                port=self.config.api.port,
                log_config=None,  # structlog handles all logging
                access_log=False,
            )
            server = uvicorn.Server(uv_config)
            task = asyncio.create_task(server.serve(), name="rest-server")
            self._background_tasks.append(task)
            self._rest_server = server
            self._log.info("rest_api_started", port=self.config.api.port)
        except Exception as exc:
            raise _ComponentError("rest", exc) from exc

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def stop(self) -> None:
        """Gracefully stop all components in reverse startup order."""
        if not self._running and self._log is None:
            return

        log = self._log or get_logger("app")
        log.info("scalewarden_shutting_down")
        self._running = False

        if self.components is not None:
            await self.components.loop.stop()
        if self._rest_server is not None:
            self._rest_server.should_exit = True  # type: ignore[attr-defined]

        done, pending = (
            await asyncio.wait(self._background_tasks, timeout=_SHUTDOWN_GRACE_SECONDS)
            if self._background_tasks
            else (set(), set())
        )
        for task in pending:
            log.warning("background_task_cancelled", task=task.get_name())
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._background_tasks.clear()

        if self.components is not None:
            await self._stop_component("notifications", self.components.dispatcher.flush)
            await self._stop_component("prometheus", self.components.prometheus.close)
            await self._stop_component("runtime", self.components.runtime.close)

        log.info("scalewarden_stopped")

    async def _stop_component(self, name: str, stop_fn: object) -> None:
        """Await a component's stop/close coroutine, catching all errors."""
        log = self._log or get_logger("app")
        try:
            result = stop_fn()  # type: ignore[operator]
            if asyncio.iscoroutine(result):
                await asyncio.wait_for(result, timeout=_SHUTDOWN_GRACE_SECONDS)
        except TimeoutError:
            log.warning("component_stop_timed_out", component=name, timeout=_SHUTDOWN_GRACE_SECONDS)
        except Exception as exc:
            log.error("component_stop_failed", component=name, error=str(exc))


def _scalewarden_version() -> str:
    from scalewarden import __version__

    return __version__


# ---------------------------------------------------------------------------
# Async entrypoint
# ---------------------------------------------------------------------------


async def main(serve_api: bool = True) -> None:
    """Create the app, register OS signals, run until shutdown is requested."""
    app = ScaleWardenApp()
    loop = asyncio.get_running_loop()
    shutdown = asyncio.Event()

    def _request_shutdown() -> None:
        shutdown.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _request_shutdown)

    try:
        await app.start(serve_api=serve_api)
        await shutdown.wait()
    except _ComponentError as exc:
        log = get_logger("app")
        log.critical(
            "fatal_startup_error",
            component=exc.component,
            error=str(exc.cause),
        )
        await app.stop()
        raise SystemExit(1) from exc
    finally:
        if app.running:
            await app.stop()
