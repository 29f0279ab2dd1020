"""Core scaling data structures and enumerations."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum


class ScalingAction(StrEnum):
    """Provisional or executed scaling direction."""

    SCALE_UP = "scale_up"
    SCALE_DOWN = "scale_down"
    NO_SCALE = "no_scale"
    EMERGENCY_DOWN = "emergency_down"


class Signal(StrEnum):
    """Metric signals sampled per service."""

    CPU = "cpu"
    MEMORY = "memory"
    REQUEST_RATE = "request_rate"
    P95_LATENCY = "p95_latency"
    ERROR_RATE = "error_rate"


class GovernorMode(StrEnum):
    """Safety governor state machine states."""

    NORMAL = "normal"
    EMERGENCY = "emergency"


@dataclass(frozen=True)
class MetricSnapshot:
    """Point-in-time telemetry for one service.

    Created fresh each tick by the MetricsCollector and never mutated.
    Signals that could not be queried hold 0.0 and are listed in ``missing``.
    """

    service: str
    cpu_pct: float
    mem_pct: float
    request_rate: float
    p95_latency_ms: float
    error_rate_pct: float
    sampled_at: datetime
    missing: tuple[Signal, ...] = ()


@dataclass(frozen=True)
class ClusterSnapshot:
    """Host-level resource utilisation used by the emergency gate."""

    cpu_pct: float
    mem_pct: float
    sampled_at: datetime
    missing: tuple[str, ...] = ()


@dataclass(frozen=True)
class ScalingDecision:
    """Provisional decision produced by the PolicyEngine."""

    service: str
    action: ScalingAction
    reason: str
    triggering_signals: tuple[Signal, ...] = ()
    warnings: tuple[str, ...] = ()
    peak_hours: bool = False


@dataclass(frozen=True)
class ManualOverride:
    """Operator-pinned replica count for one service."""

    service: str
    replicas: int
    set_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))


@dataclass(frozen=True)
class ScalingState:
    """Observed replica count plus the cooldown anchor for one service."""

    service: str
    current_replicas: int
    last_scaled_at: datetime | None = None


@dataclass(frozen=True)
class Verdict:
    """SafetyGovernor output for one decision."""

    service: str
    desired_replicas: int
    vetoed: bool
    reason: str
    override_applied: bool = False


@dataclass(frozen=True)
class ScalingLogEntry:
    """One row of the append-only scaling audit trail."""

    timestamp: datetime
    service: str
    action: ScalingAction
    from_replicas: int
    replicas: int
    reason: str

    def to_dict(self) -> dict[str, object]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "service": self.service,
            "action": self.action.value,
            "from_replicas": self.from_replicas,
            "replicas": self.replicas,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> ScalingLogEntry:
        return cls(
            timestamp=datetime.fromisoformat(str(data["timestamp"])),
            service=str(data["service"]),
            action=ScalingAction(str(data["action"])),
            from_replicas=int(data["from_replicas"]),  # type: ignore[call-overload]
            replicas=int(data["replicas"]),  # type: ignore[call-overload]
            reason=str(data["reason"]),
        )


@dataclass(frozen=True)
class ScaleResult:
    """Outcome of a ScalingEngine apply call."""

    service: str
    from_replicas: int
    replicas: int
    changed: bool


@dataclass(frozen=True)
class Instance:
    """A running instance endpoint of a scaled service."""

    instance_id: str
    host: str
    port: int

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of one load balancer reconcile pass."""

    service: str
    healthy: tuple[Instance, ...] = ()
    unhealthy: tuple[Instance, ...] = ()
    excluded: tuple[Instance, ...] = ()
    reloaded: bool = False


class OutcomeStatus(StrEnum):
    """What happened to one service during a tick."""

    SCALED = "scaled"
    UNCHANGED = "unchanged"
    VETOED = "vetoed"
    FAILED = "failed"
    SKIPPED = "skipped"
    ABANDONED = "abandoned"


@dataclass(frozen=True)
class ServiceOutcome:
    """Per-service result within a TickReport."""

    service: str
    status: OutcomeStatus
    reason: str = ""
    from_replicas: int | None = None
    replicas: int | None = None
    reconcile_error: str = ""

    def to_dict(self) -> dict[str, object]:
        return {
            "service": self.service,
            "status": self.status.value,
            "reason": self.reason,
            "from_replicas": self.from_replicas,
            "replicas": self.replicas,
            "reconcile_error": self.reconcile_error,
        }


@dataclass(frozen=True)
class TickReport:
    """Summary of one control loop tick."""

    tick_id: str
    started_at: datetime
    finished_at: datetime
    mode: GovernorMode
    outcomes: tuple[ServiceOutcome, ...] = ()

    @property
    def abandoned(self) -> tuple[str, ...]:
        return tuple(o.service for o in self.outcomes if o.status == OutcomeStatus.ABANDONED)

    @property
    def succeeded(self) -> bool:
        """A tick succeeds when every service pipeline finished before the deadline."""
        return not self.abandoned

    def outcome(self, service: str) -> ServiceOutcome | None:
        for item in self.outcomes:
            if item.service == service:
                return item
        return None

    def to_dict(self) -> dict[str, object]:
        return {
            "tick_id": self.tick_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "mode": self.mode.value,
            "succeeded": self.succeeded,
            "abandoned": list(self.abandoned),
            "outcomes": [o.to_dict() for o in self.outcomes],
        }
