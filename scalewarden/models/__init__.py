"""Core data structures for ScaleWarden."""

from scalewarden.models.alerts import Alert, Severity
from scalewarden.models.config import ScaleWardenConfig, ServiceSpec, ThresholdPair
from scalewarden.models.scaling import (
    ClusterSnapshot,
    GovernorMode,
    Instance,
    ManualOverride,
    MetricSnapshot,
    OutcomeStatus,
    ReconcileResult,
    ScaleResult,
    ScalingAction,
    ScalingDecision,
    ScalingLogEntry,
    ScalingState,
    ServiceOutcome,
    Signal,
    TickReport,
    Verdict,
)

__all__ = [
    "Alert",
    "ClusterSnapshot",
    "GovernorMode",
    "Instance",
    "ManualOverride",
    "MetricSnapshot",
    "OutcomeStatus",
    "ReconcileResult",
    "ScaleResult",
    "ScaleWardenConfig",
    "ScalingAction",
    "ScalingDecision",
    "ScalingLogEntry",
    "ScalingState",
    "ServiceOutcome",
    "ServiceSpec",
    "Severity",
    "Signal",
    "ThresholdPair",
    "TickReport",
    "Verdict",
]
