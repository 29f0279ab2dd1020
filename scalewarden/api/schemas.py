"""Pydantic request/response models for the ScaleWarden REST API."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from scalewarden.models.scaling import ManualOverride, ScalingLogEntry, TickReport


class ErrorResponse(BaseModel):
    """Uniform error envelope for every non-2xx response."""

    error: str
    detail: str


class HealthResponse(BaseModel):
    status: str
    mode: str
    last_successful_tick: datetime | None = None
    stale: bool = False
    version: str = ""


class OverrideRequest(BaseModel):
    replicas: int = Field(..., ge=0, description="Pinned replica count; must lie within the service bounds")


class OverrideResponse(BaseModel):
    service: str
    replicas: int
    set_at: datetime

    @classmethod
    def from_override(cls, override: ManualOverride) -> OverrideResponse:
        return cls(service=override.service, replicas=override.replicas, set_at=override.set_at)


class ClearOverrideResponse(BaseModel):
    service: str
    cleared: bool


class ServiceStatus(BaseModel):
    service: str
    replicas: int | None = Field(None, description="Observed count; null when the runtime could not be read")
    min_replicas: int
    max_replicas: int
    override: int | None = None
    last_scaled_at: datetime | None = None
    cooldown_remaining_s: int = 0
    last_outcome: str | None = None
    error: str | None = None


class StatusResponse(BaseModel):
    mode: str
    mode_since: datetime
    last_successful_tick: datetime | None = None
    services: list[ServiceStatus]


class ScalingLogEntryModel(BaseModel):
    timestamp: datetime
    service: str
    action: str
    from_replicas: int
    replicas: int
    reason: str

    @classmethod
    def from_entry(cls, entry: ScalingLogEntry) -> ScalingLogEntryModel:
        return cls(
            timestamp=entry.timestamp,
            service=entry.service,
            action=entry.action.value,
            from_replicas=entry.from_replicas,
            replicas=entry.replicas,
            reason=entry.reason,
        )


class ServiceOutcomeModel(BaseModel):
    service: str
    status: str
    reason: str = ""
    from_replicas: int | None = None
    replicas: int | None = None
    reconcile_error: str = ""


class TickResponse(BaseModel):
    tick_id: str
    started_at: datetime
    finished_at: datetime
    mode: str
    succeeded: bool
    abandoned: list[str]
    outcomes: list[ServiceOutcomeModel]

    @classmethod
    def from_report(cls, report: TickReport) -> TickResponse:
        return cls(
            tick_id=report.tick_id,
            started_at=report.started_at,
            finished_at=report.finished_at,
            mode=report.mode.value,
            succeeded=report.succeeded,
            abandoned=list(report.abandoned),
            outcomes=[ServiceOutcomeModel(**o.to_dict()) for o in report.outcomes],  # type: ignore[arg-type]
        )
