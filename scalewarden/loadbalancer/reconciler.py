"""LoadBalancerReconciler: keep each service's upstream set equal to its healthy instances."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from typing import TYPE_CHECKING

from scalewarden.loadbalancer.health import HealthChecker
from scalewarden.loadbalancer.nginx import NginxUpstreamWriter, ReconcileError
from scalewarden.models.alerts import Alert, Severity
from scalewarden.models.config import ServiceSpec
from scalewarden.models.scaling import Instance, ReconcileResult
from scalewarden.observability.logging import get_logger
from scalewarden.observability.metrics import upstream_reloads_total
from scalewarden.runtime.base import RuntimeCommandError, WorkloadRuntime

if TYPE_CHECKING:
    from scalewarden.notifications.manager import NotificationDispatcher

_logger = get_logger("loadbalancer.reconciler")


class LoadBalancerReconciler:
    """Health-gates instances into nginx and drains instances out of it.

    Safe to call standalone at any time for drift repair.
    """

    def __init__(
        self,
        services: list[ServiceSpec],
        runtime: WorkloadRuntime,
        writer: NginxUpstreamWriter,
        health: HealthChecker,
        drain_seconds: float = 10.0,
        dispatcher: NotificationDispatcher | None = None,
    ) -> None:
        self._specs = {spec.name: spec for spec in services}
        self._runtime = runtime
        self._writer = writer
        self._health = health
        self._drain_seconds = drain_seconds
        self._dispatcher = dispatcher

    async def reconcile(self, service: str, exclude: Iterable[Instance] = ()) -> ReconcileResult:
        """Rewrite the upstream set of *service* to its healthy, non-excluded instances.

        Raises:
            ReconcileError: instance listing, file write or nginx reload failed.
        """
        spec = self._specs.get(service)
        if spec is None:
            raise ReconcileError(f"Unknown service {service!r}")

        try:
            instances = await self._runtime.list_instances(service)
        except RuntimeCommandError as exc:
            upstream_reloads_total.labels(service=service, result="error").inc()
            raise ReconcileError(f"cannot list instances of {service}: {exc}") from exc

        excluded_ids = {i.instance_id for i in exclude}
        excluded = tuple(i for i in instances if i.instance_id in excluded_ids)
        candidates = [i for i in instances if i.instance_id not in excluded_ids]

        outcome = await self._health.check_all(
            service,
            candidates,
            spec.health_check_path,
            spec.health_check_timeout,
        )
        healthy = tuple(i for i in candidates if outcome.get(i))
        unhealthy = tuple(i for i in candidates if not outcome.get(i))

        try:
            reloaded = await self._writer.apply(spec.upstream, list(healthy))
        except ReconcileError:
            upstream_reloads_total.labels(service=service, result="error").inc()
            raise
        upstream_reloads_total.labels(service=service, result="reloaded" if reloaded else "unchanged").inc()

        if not healthy:
            _logger.warning("no_healthy_instances", service=service, unhealthy=len(unhealthy))
            if self._dispatcher is not None:
                self._dispatcher.dispatch(
                    Alert(
                        title="No healthy instances",
                        message=f"Service: {service}, {len(unhealthy)} instance(s) failed health checks",
                        severity=Severity.WARNING,
                        service=service,
                    )
                )

        _logger.info(
            "reconciled",
            service=service,
            healthy=[i.address for i in healthy],
            unhealthy=[i.address for i in unhealthy],
            excluded=[i.address for i in excluded],
            reloaded=reloaded,
        )
        return ReconcileResult(
            service=service,
            healthy=healthy,
            unhealthy=unhealthy,
            excluded=excluded,
            reloaded=reloaded,
        )

    async def drain(self, service: str, instances: list[Instance]) -> ReconcileResult:
        """Take *instances* out of routing, then wait for their connections to finish."""
        result = await self.reconcile(service, exclude=instances)
        if instances and self._drain_seconds > 0:
            _logger.info(
                "draining_instances",
                service=service,
                instances=[i.instance_id for i in instances],
                seconds=self._drain_seconds,
            )
            await asyncio.sleep(self._drain_seconds)
        return result
