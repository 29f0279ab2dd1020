"""ControlLoop: one tick = emergency gate + concurrent per-service pipelines.

Per service, a tick runs::

    MetricsCollector -> PolicyEngine -> SafetyGovernor -> ScalingEngine
                                                        -> LoadBalancerReconciler

When the governor is in emergency mode the policy and per-service checks are
skipped and every service is driven straight to its emergency target.

Pipelines run concurrently under one deadline. A pipeline still running at
the deadline is cancelled and reported as abandoned, and the tick does not
count as successful. A per-service lock, plus a lease taken from the state
store, keeps pipelines for the same service from overlapping when ticks are
triggered from more than one place or more than one process.
"""

from __future__ import annotations

import asyncio
import functools
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from scalewarden.collector.collector import MetricsCollector
from scalewarden.loadbalancer.nginx import ReconcileError
from scalewarden.loadbalancer.reconciler import LoadBalancerReconciler
from scalewarden.models.alerts import Alert, Severity
from scalewarden.models.config import LoopConfig, ServiceSpec
from scalewarden.models.scaling import (
    ClusterSnapshot,
    GovernorMode,
    OutcomeStatus,
    ScalingAction,
    ScalingState,
    ServiceOutcome,
    TickReport,
)
from scalewarden.observability.logging import bind_tick_context, clear_tick_context, get_logger
from scalewarden.observability.metrics import (
    last_successful_tick_timestamp,
    tick_duration_seconds,
    ticks_total,
)
from scalewarden.policy.engine import PolicyEngine
from scalewarden.runtime.base import RuntimeCommandError, WorkloadRuntime
from scalewarden.safety.governor import SafetyGovernor
from scalewarden.scaling.engine import ScalingEngine, ScalingError
from scalewarden.store.base import StateStore

if TYPE_CHECKING:
    from scalewarden.notifications.manager import NotificationDispatcher

_logger = get_logger("controller")

# Liveness is lost after this many intervals without a successful tick.
STALE_AFTER_INTERVALS = 3

Pipeline = Callable[[str], Awaitable[ServiceOutcome]]


class ControlLoop:
    """Drives ticks across all configured services."""

    def __init__(
        self,
        services: list[ServiceSpec],
        collector: MetricsCollector,
        policy: PolicyEngine,
        governor: SafetyGovernor,
        engine: ScalingEngine,
        reconciler: LoadBalancerReconciler,
        runtime: WorkloadRuntime,
        store: StateStore,
        config: LoopConfig,
        dispatcher: NotificationDispatcher | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._services = [spec.name for spec in services]
        self._collector = collector
        self._policy = policy
        self._governor = governor
        self._engine = engine
        self._reconciler = reconciler
        self._runtime = runtime
        self._store = store
        self._config = config
        self._dispatcher = dispatcher
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self._locks: dict[str, asyncio.Lock] = {name: asyncio.Lock() for name in self._services}
        self._last_successful_tick: datetime | None = None
        self._last_report: TickReport | None = None
        self._started_at = self._clock()
        self._stopping = asyncio.Event()

    # ------------------------------------------------------------------
    # Liveness
    # ------------------------------------------------------------------

    @property
    def services(self) -> list[str]:
        return list(self._services)

    @property
    def last_successful_tick(self) -> datetime | None:
        return self._last_successful_tick

    @property
    def last_report(self) -> TickReport | None:
        return self._last_report

    def is_stale(self, now: datetime | None = None) -> bool:
        """True when no tick has succeeded within the liveness window.

        Before the first success the window is measured from construction.
        """
        now = now or self._clock()
        anchor = self._last_successful_tick or self._started_at
        window = timedelta(seconds=self._config.tick_interval * STALE_AFTER_INTERVALS)
        return now - anchor > window

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def tick(self) -> TickReport:
        """Run one full control cycle across all services."""
        tick_id = bind_tick_context()
        started_at = self._clock()
        t0 = time.monotonic()
        try:
            cluster = await self._collector.sample_cluster()
            mode = self._governor.evaluate(cluster)
            pipeline: Pipeline
            if mode == GovernorMode.EMERGENCY:
                pipeline = functools.partial(self._emergency_pipeline, cluster=cluster)
            else:
                pipeline = self._service_pipeline

            outcomes = await self._run_pipelines(pipeline)
        finally:
            clear_tick_context()

        report = TickReport(
            tick_id=tick_id,
            started_at=started_at,
            finished_at=self._clock(),
            mode=mode,
            outcomes=tuple(outcomes),
        )
        self._last_report = report
        tick_duration_seconds.observe(time.monotonic() - t0)
        if report.succeeded:
            self._last_successful_tick = report.finished_at
            last_successful_tick_timestamp.set(report.finished_at.timestamp())
            ticks_total.labels(result="succeeded").inc()
        else:
            ticks_total.labels(result="deadline_exceeded").inc()
        _logger.info(
            "tick_completed",
            tick_id=tick_id,
            mode=mode.value,
            succeeded=report.succeeded,
            abandoned=list(report.abandoned),
            outcomes={o.service: o.status.value for o in outcomes},
            duration_s=round(time.monotonic() - t0, 3),
        )
        return report

    async def _run_pipelines(self, pipeline: Pipeline) -> list[ServiceOutcome]:
        if not self._services:
            return []
        tasks = {
            asyncio.create_task(self._guarded(service, pipeline), name=f"pipeline-{service}"): service
            for service in self._services
        }
        done, pending = await asyncio.wait(tasks, timeout=self._config.tick_deadline)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        outcomes: list[ServiceOutcome] = []
        for task, service in tasks.items():
            if task in done:
                outcomes.append(task.result())
                continue
            _logger.error("pipeline_abandoned", service=service, deadline_s=self._config.tick_deadline)
            outcomes.append(
                ServiceOutcome(
                    service=service,
                    status=OutcomeStatus.ABANDONED,
                    reason=f"Tick deadline of {self._config.tick_deadline:g}s exceeded",
                )
            )
        return outcomes

    async def _guarded(self, service: str, pipeline: Pipeline) -> ServiceOutcome:
        lock = self._locks[service]
        if lock.locked():
            _logger.warning("pipeline_skipped_overlap", service=service)
            return ServiceOutcome(
                service=service,
                status=OutcomeStatus.SKIPPED,
                reason="Previous pipeline for this service is still running",
            )
        async with lock, self._store.pipeline_lease(service) as leased:
            if not leased:
                _logger.warning("pipeline_skipped_lease_held", service=service)
                return ServiceOutcome(
                    service=service,
                    status=OutcomeStatus.SKIPPED,
                    reason="Pipeline lease for this service is held elsewhere",
                )
            try:
                return await pipeline(service)
            except Exception as exc:  # isolate services from each other
                _logger.exception("pipeline_failed", service=service, error=str(exc))
                return ServiceOutcome(service=service, status=OutcomeStatus.FAILED, reason=str(exc))

    # ------------------------------------------------------------------
    # Pipelines
    # ------------------------------------------------------------------

    async def _service_pipeline(self, service: str) -> ServiceOutcome:
        snapshot = await self._collector.sample(service)
        decision = self._policy.decide(snapshot)
        if decision.warnings:
            self._alert(
                "Performance degraded",
                f"Service: {service}, " + "; ".join(decision.warnings),
                Severity.WARNING,
                service,
            )

        try:
            current = await self._runtime.get_replica_count(service)
        except RuntimeCommandError as exc:
            _logger.error("replica_count_unavailable", service=service, error=str(exc))
            return ServiceOutcome(service=service, status=OutcomeStatus.FAILED, reason=str(exc))
        state = ScalingState(
            service=service,
            current_replicas=current,
            last_scaled_at=await self._store.get_last_scaled(service),
        )

        verdict = await self._governor.validate(decision, state)
        if verdict.vetoed or verdict.desired_replicas == current:
            status = OutcomeStatus.VETOED if verdict.vetoed else OutcomeStatus.UNCHANGED
            return await self._finish(service, status, verdict.reason, current, current)

        return await self._execute(service, current, verdict.desired_replicas, verdict.reason, None)

    async def _emergency_pipeline(self, service: str, cluster: ClusterSnapshot) -> ServiceOutcome:
        target = self._governor.emergency_target(service)
        try:
            current = await self._runtime.get_replica_count(service)
        except RuntimeCommandError as exc:
            _logger.error("replica_count_unavailable", service=service, error=str(exc))
            return ServiceOutcome(service=service, status=OutcomeStatus.FAILED, reason=str(exc))

        reason = (
            f"Emergency scale-down: cluster CPU {cluster.cpu_pct:.1f}%, memory {cluster.mem_pct:.1f}%"
        )
        if current == target:
            return await self._finish(
                service, OutcomeStatus.UNCHANGED, f"{reason}; already at {target}", current, current
            )
        action = ScalingAction.EMERGENCY_DOWN if target < current else None
        return await self._execute(service, current, target, reason, action)

    async def _execute(
        self,
        service: str,
        current: int,
        desired: int,
        reason: str,
        action: ScalingAction | None,
    ) -> ServiceOutcome:
        try:
            result = await self._engine.apply(service, desired, reason, action)
        except ScalingError as exc:
            _logger.error("scaling_failed", service=service, desired=desired, error=str(exc))
            self._alert(
                "Scaling failed",
                f"Service: {service}, Target: {desired}, Error: {exc}",
                Severity.WARNING,
                service,
            )
            # Routing may be half-updated after a failed drain or partial scale.
            return await self._finish(service, OutcomeStatus.FAILED, str(exc), current, None)

        if not result.changed:
            return await self._finish(service, OutcomeStatus.UNCHANGED, reason, result.from_replicas, result.replicas)

        self._alert(
            "Scaling Event",
            f"Service: {service}, From: {result.from_replicas}, To: {result.replicas}, Reason: {reason}",
            Severity.INFO,
            service,
        )
        return await self._finish(service, OutcomeStatus.SCALED, reason, result.from_replicas, result.replicas)

    async def _finish(
        self,
        service: str,
        status: OutcomeStatus,
        reason: str,
        from_replicas: int | None,
        replicas: int | None,
    ) -> ServiceOutcome:
        """Reconcile routing, then build the outcome. Reconcile failure does not change *status*."""
        reconcile_error = ""
        try:
            await self._reconciler.reconcile(service)
        except ReconcileError as exc:
            reconcile_error = str(exc)
            _logger.error("reconcile_failed", service=service, error=reconcile_error)
            self._alert(
                "Load balancer update failed",
                f"Service: {service}, Error: {reconcile_error}",
                Severity.WARNING,
                service,
            )
        return ServiceOutcome(
            service=service,
            status=status,
            reason=reason,
            from_replicas=from_replicas,
            replicas=replicas,
            reconcile_error=reconcile_error,
        )

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def run_forever(self, interval: float | None = None) -> None:
        """Tick at a fixed cadence until stop() is called.

        The next tick starts ``interval`` seconds after the previous one
        started, or immediately if the previous one overran.
        """
        interval = interval if interval is not None else self._config.tick_interval
        self._stopping.clear()
        _logger.info("control_loop_started", interval_s=interval, services=self._services)
        while not self._stopping.is_set():
            started = time.monotonic()
            await self.tick()
            remaining = interval - (time.monotonic() - started)
            if remaining <= 0:
                continue
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=remaining)
            except TimeoutError:
                pass
        _logger.info("control_loop_stopped")

    async def stop(self) -> None:
        self._stopping.set()

    def _alert(self, title: str, message: str, severity: Severity, service: str) -> None:
        if self._dispatcher is None:
            return
        self._dispatcher.dispatch(Alert(title=title, message=message, severity=severity, service=service))
