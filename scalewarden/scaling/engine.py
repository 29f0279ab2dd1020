"""ScalingEngine: execute an approved replica count against the runtime.

The engine trusts nothing about the count it is given. It re-checks the
bounds before touching the runtime, re-reads the current count from the
runtime, and only records a scaling event once the runtime reports the
desired count.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from datetime import UTC, datetime

from scalewarden.loadbalancer.nginx import ReconcileError
from scalewarden.loadbalancer.reconciler import LoadBalancerReconciler
from scalewarden.models.config import ScalingConfig, ServiceSpec
from scalewarden.models.scaling import ScaleResult, ScalingAction, ScalingLogEntry
from scalewarden.observability.logging import get_logger
from scalewarden.observability.metrics import replicas as replicas_gauge
from scalewarden.observability.metrics import scaling_actions_total
from scalewarden.runtime.base import RuntimeCommandError, WorkloadRuntime
from scalewarden.store.base import StateStore

_logger = get_logger("scaling")


class ScalingError(Exception):
    """The replica change was rejected, failed, or did not converge in time."""


class ScalingEngine:
    """Applies replica counts and writes the audit trail.

    Args:
        services:   Configured service specs (bounds source).
        runtime:    Workload runtime backend.
        store:      Scaling log and last-scaled storage.
        reconciler: Drains instances before a scale-down terminates them.
        config:     Convergence timeout and poll backoff.
        clock:      Returns timezone-aware "now"; injectable for tests.
    """

    def __init__(
        self,
        services: list[ServiceSpec],
        runtime: WorkloadRuntime,
        store: StateStore,
        reconciler: LoadBalancerReconciler | None,
        config: ScalingConfig,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._specs = {spec.name: spec for spec in services}
        self._runtime = runtime
        self._store = store
        self._reconciler = reconciler
        self._config = config
        self._clock = clock or (lambda: datetime.now(tz=UTC))

    async def apply(
        self,
        service: str,
        desired: int,
        reason: str,
        action: ScalingAction | None = None,
    ) -> ScaleResult:
        """Bring *service* to *desired* replicas.

        A request equal to the current count is a no-op: nothing is
        executed, logged or timestamped.

        Raises:
            ScalingError: out-of-bounds request, runtime failure, drain
                failure, or no convergence within the timeout.
        """
        spec = self._specs.get(service)
        if spec is None:
            raise ScalingError(f"Unknown service {service!r}")
        if not spec.min_replicas <= desired <= spec.max_replicas:
            scaling_actions_total.labels(service=service, action="rejected", result="rejected").inc()
            raise ScalingError(
                f"Refusing to scale {service} to {desired}: outside [{spec.min_replicas}, {spec.max_replicas}]"
            )

        try:
            current = await self._runtime.get_replica_count(service)
        except RuntimeCommandError as exc:
            raise ScalingError(f"cannot read replica count of {service}: {exc}") from exc
        replicas_gauge.labels(service=service).set(current)

        if current == desired:
            _logger.debug("scale_noop", service=service, replicas=current)
            return ScaleResult(service=service, from_replicas=current, replicas=current, changed=False)

        if action is None:
            action = ScalingAction.SCALE_UP if desired > current else ScalingAction.SCALE_DOWN
        label = action.value

        _logger.info(
            "scale_started",
            service=service,
            action=label,
            from_replicas=current,
            to_replicas=desired,
            reason=reason,
        )
        try:
            if desired < current:
                await self._scale_down(service, current, desired)
            else:
                await self._runtime.set_replica_count(service, desired)
            await self._await_convergence(service, desired)
        except ScalingError:
            scaling_actions_total.labels(service=service, action=label, result="failed").inc()
            raise
        except RuntimeCommandError as exc:
            scaling_actions_total.labels(service=service, action=label, result="failed").inc()
            raise ScalingError(f"runtime failed scaling {service} to {desired}: {exc}") from exc

        now = self._clock()
        await self._store.append_log(
            ScalingLogEntry(
                timestamp=now,
                service=service,
                action=action,
                from_replicas=current,
                replicas=desired,
                reason=reason,
            )
        )
        await self._store.set_last_scaled(service, now)
        scaling_actions_total.labels(service=service, action=label, result="succeeded").inc()
        replicas_gauge.labels(service=service).set(desired)
        _logger.info("scale_completed", service=service, action=label, from_replicas=current, to_replicas=desired)
        return ScaleResult(service=service, from_replicas=current, replicas=desired, changed=True)

    async def _scale_down(self, service: str, current: int, desired: int) -> None:
        victims = await self._runtime.removal_candidates(service, current - desired)
        await self._runtime.prepare_removal(service, victims)
        if self._reconciler is not None and victims:
            try:
                await self._reconciler.drain(service, victims)
            except ReconcileError as exc:
                raise ScalingError(f"drain failed for {service}, scale-down aborted: {exc}") from exc
        await self._runtime.set_replica_count(service, desired)

    async def _await_convergence(self, service: str, desired: int) -> None:
        deadline = time.monotonic() + self._config.converge_timeout
        delay = self._config.poll_initial
        observed = -1
        while True:
            observed = await self._runtime.get_replica_count(service)
            if observed == desired:
                return
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            await asyncio.sleep(min(delay, remaining))
            delay = min(delay * 2, self._config.poll_max)
        raise ScalingError(
            f"{service} did not converge to {desired} replicas within "
            f"{self._config.converge_timeout}s (observed {observed})"
        )
