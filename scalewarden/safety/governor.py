"""SafetyGovernor: the single authority between policy and execution.

Per-service validation runs the checks in a fixed order:

1. manual override   -- replaces the policy's desired count outright
2. min/max bounds    -- out-of-range counts are vetoed, never clamped
3. cooldown          -- a change within the cooldown window is vetoed

Independently, once per tick, ``evaluate()`` moves the governor between
``normal`` and ``emergency`` based on host-level CPU/memory. While in
emergency, per-service validation refuses every decision and the control
loop forces each service to its emergency target instead, regardless of
cooldown.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from scalewarden.models.alerts import Alert, Severity
from scalewarden.models.config import SafetyConfig, ServiceSpec
from scalewarden.models.scaling import (
    ClusterSnapshot,
    GovernorMode,
    ManualOverride,
    ScalingAction,
    ScalingDecision,
    ScalingState,
    Verdict,
)
from scalewarden.observability.logging import get_logger
from scalewarden.observability.metrics import governor_mode, vetoes_total

if TYPE_CHECKING:
    from scalewarden.notifications.manager import NotificationDispatcher
    from scalewarden.store.base import StateStore

_logger = get_logger("safety")


class OverrideRejectedError(ValueError):
    """A manual override request failed validation; the store is unchanged."""


class SafetyGovernor:
    """Validates decisions and owns the normal/emergency mode.

    Args:
        services:   Configured service specs (bounds source).
        config:     Cooldown and emergency thresholds.
        store:      Override and last-scaled storage.
        dispatcher: Optional alert sink.
        clock:      Returns timezone-aware "now"; injectable for tests.
    """

    def __init__(
        self,
        services: list[ServiceSpec],
        config: SafetyConfig,
        store: StateStore,
        dispatcher: NotificationDispatcher | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._specs = {spec.name: spec for spec in services}
        self._config = config
        self._store = store
        self._dispatcher = dispatcher
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self._mode = GovernorMode.NORMAL
        self._mode_since = self._clock()

    # ------------------------------------------------------------------
    # Mode state machine
    # ------------------------------------------------------------------

    @property
    def mode(self) -> GovernorMode:
        return self._mode

    @property
    def mode_since(self) -> datetime:
        return self._mode_since

    def is_emergency_condition(self, cluster: ClusterSnapshot) -> bool:
        return (
            cluster.cpu_pct > self._config.emergency_cpu_threshold
            or cluster.mem_pct > self._config.emergency_mem_threshold
        )

    def evaluate(self, cluster: ClusterSnapshot) -> GovernorMode:
        """Transition the mode from a fresh cluster snapshot and return it.

        The critical alert is raised once, on the transition into emergency.
        Later emergency evaluations are only logged.
        """
        emergency = self.is_emergency_condition(cluster)
        previous = self._mode

        if emergency:
            self._set_mode(GovernorMode.EMERGENCY)
            _logger.critical(
                "emergency_condition_detected",
                cpu=cluster.cpu_pct,
                mem=cluster.mem_pct,
                cpu_threshold=self._config.emergency_cpu_threshold,
                mem_threshold=self._config.emergency_mem_threshold,
            )
            if previous != GovernorMode.EMERGENCY:
                self._alert(
                    "Emergency condition detected",
                    f"Cluster CPU {cluster.cpu_pct:.1f}%, memory {cluster.mem_pct:.1f}%; "
                    f"forcing all services to emergency floor",
                    Severity.CRITICAL,
                )
        elif previous == GovernorMode.EMERGENCY:
            self._set_mode(GovernorMode.NORMAL)
            _logger.warning("emergency_cleared", cpu=cluster.cpu_pct, mem=cluster.mem_pct)
            self._alert(
                "Emergency cleared",
                f"Cluster CPU {cluster.cpu_pct:.1f}%, memory {cluster.mem_pct:.1f}%; resuming normal policy",
                Severity.INFO,
            )
        return self._mode

    def emergency_target(self, service: str) -> int:
        """Replica count a service is forced to while in emergency mode."""
        spec = self._require_spec(service)
        return max(self._config.emergency_floor_replicas, spec.min_replicas)

    def _set_mode(self, mode: GovernorMode) -> None:
        if mode != self._mode:
            self._mode = mode
            self._mode_since = self._clock()
        governor_mode.set(1 if mode == GovernorMode.EMERGENCY else 0)

    # ------------------------------------------------------------------
    # Per-service validation
    # ------------------------------------------------------------------

    async def validate(
        self,
        decision: ScalingDecision,
        state: ScalingState,
        now: datetime | None = None,
    ) -> Verdict:
        """Turn a provisional decision into an approved desired count or a veto."""
        service = decision.service
        current = state.current_replicas

        if self._mode == GovernorMode.EMERGENCY:
            return self._veto(service, current, "emergency", "Emergency mode active; per-service policy suspended")

        spec = self._specs.get(service)
        if spec is None:
            return self._veto(service, current, "unknown_service", f"Unknown service {service!r}")

        if decision.action == ScalingAction.SCALE_UP:
            desired = current + 1
        elif decision.action == ScalingAction.SCALE_DOWN:
            desired = current - 1
        else:
            desired = current
        reason = decision.reason

        # 1. manual override
        override = await self._store.get_override(service)
        override_applied = override is not None
        if override is not None:
            _logger.info(
                "manual_override_applied",
                service=service,
                policy_desired=desired,
                override=override.replicas,
            )
            desired = override.replicas
            reason = f"Manual override to {override.replicas} replicas (policy: {decision.action.value})"

        # 2. bounds
        violation = self._bounds_violation(spec, desired)
        if violation is not None:
            return self._veto(service, current, "bounds", violation, override_applied)

        if desired == current:
            return Verdict(
                service=service,
                desired_replicas=desired,
                vetoed=False,
                reason=reason if override_applied else f"No change: {reason}",
                override_applied=override_applied,
            )

        # 3. cooldown
        now = now or self._clock()
        last = state.last_scaled_at
        cooldown = timedelta(seconds=self._config.cooldown_seconds)
        if last is not None and now - last < cooldown:
            elapsed = int((now - last).total_seconds())
            return self._veto(
                service,
                current,
                "cooldown",
                f"Cooldown period not elapsed for {service}: last scaled {elapsed}s ago "
                f"(cooldown {self._config.cooldown_seconds}s)",
                override_applied,
            )

        return Verdict(
            service=service,
            desired_replicas=desired,
            vetoed=False,
            reason=reason,
            override_applied=override_applied,
        )

    def check_limits(self, service: str, replicas: int) -> str | None:
        """Return a bounds-violation reason, or None when *replicas* is allowed."""
        spec = self._specs.get(service)
        if spec is None:
            return f"Unknown service {service!r}"
        return self._bounds_violation(spec, replicas)

    def _bounds_violation(self, spec: ServiceSpec, replicas: int) -> str | None:
        if replicas < spec.min_replicas:
            return f"Desired replicas {replicas} below minimum {spec.min_replicas} for {spec.name}"
        if replicas > spec.max_replicas:
            return f"Desired replicas {replicas} above maximum {spec.max_replicas} for {spec.name}"
        return None

    def _veto(
        self,
        service: str,
        current: int,
        check: str,
        reason: str,
        override_applied: bool = False,
    ) -> Verdict:
        vetoes_total.labels(service=service, check=check).inc()
        _logger.info("decision_vetoed", service=service, check=check, reason=reason)
        return Verdict(
            service=service,
            desired_replicas=current,
            vetoed=True,
            reason=reason,
            override_applied=override_applied,
        )

    # ------------------------------------------------------------------
    # Manual override surface
    # ------------------------------------------------------------------

    async def set_override(self, service: str, replicas: int) -> ManualOverride:
        """Pin *service* to *replicas* until cleared.

        Raises:
            OverrideRejectedError: unknown service or count outside [min, max].
        """
        violation = self.check_limits(service, replicas)
        if violation is not None:
            _logger.warning("manual_override_rejected", service=service, replicas=replicas, reason=violation)
            self._alert(
                "Manual override rejected",
                f"Service: {service}, Replicas: {replicas}, Reason: {violation}",
                Severity.WARNING,
                service,
            )
            raise OverrideRejectedError(f"Cannot set manual override: {violation}")

        override = ManualOverride(service=service, replicas=replicas, set_at=self._clock())
        await self._store.set_override(override)
        _logger.info("manual_override_set", service=service, replicas=replicas)
        self._alert(
            "Manual override activated",
            f"Service: {service}, Replicas: {replicas}",
            Severity.WARNING,
            service,
        )
        return override

    async def clear_override(self, service: str) -> bool:
        removed = await self._store.clear_override(service)
        if removed:
            _logger.info("manual_override_cleared", service=service)
            self._alert("Manual override cleared", f"Service: {service}", Severity.INFO, service)
        return removed

    async def get_override(self, service: str) -> ManualOverride | None:
        return await self._store.get_override(service)

    async def list_overrides(self) -> list[ManualOverride]:
        return await self._store.list_overrides()

    # ------------------------------------------------------------------

    def _require_spec(self, service: str) -> ServiceSpec:
        spec = self._specs.get(service)
        if spec is None:
            raise KeyError(f"Unknown service {service!r}")
        return spec

    def _alert(self, title: str, message: str, severity: Severity, service: str = "") -> None:
        if self._dispatcher is None:
            return
        self._dispatcher.dispatch(Alert(title=title, message=message, severity=severity, service=service))
