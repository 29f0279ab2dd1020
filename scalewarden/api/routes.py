"""Route handlers for the ScaleWarden REST API.

Dependencies are read from ``request.app.state`` (populated by
``create_app``): ``loop``, ``governor``, ``store``, ``runtime`` and
``config``.
"""

from __future__ import annotations

from datetime import UTC, datetime

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from scalewarden.api.schemas import (
    ClearOverrideResponse,
    ErrorResponse,
    HealthResponse,
    OverrideRequest,
    OverrideResponse,
    ScalingLogEntryModel,
    ServiceStatus,
    StatusResponse,
    TickResponse,
)
from scalewarden.observability.logging import get_logger
from scalewarden.runtime.base import RuntimeCommandError
from scalewarden.safety.governor import OverrideRejectedError

_log = get_logger("api.routes")

router = APIRouter()


def _error(status_code: int, error: str, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ErrorResponse(error=error, detail=detail).model_dump())


def _utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _known(request: Request, service: str) -> bool:
    return any(spec.name == service for spec in request.app.state.config.services)


@router.get("/health", response_model=HealthResponse, responses={503: {"model": HealthResponse}})
async def health(request: Request) -> JSONResponse:
    """Liveness: 503 once no tick has succeeded within three tick intervals."""
    from scalewarden import __version__

    loop = request.app.state.loop
    stale = loop.is_stale()
    body = HealthResponse(
        status="stale" if stale else "ok",
        mode=request.app.state.governor.mode.value,
        last_successful_tick=loop.last_successful_tick,
        stale=stale,
        version=__version__,
    )
    return JSONResponse(status_code=503 if stale else 200, content=body.model_dump(mode="json"))


@router.get("/status", response_model=StatusResponse)
async def status(request: Request) -> StatusResponse:
    state = request.app.state
    governor = state.governor
    store = state.store
    now = datetime.now(tz=UTC)
    cooldown = state.config.safety.cooldown_seconds
    last_report = state.loop.last_report

    services: list[ServiceStatus] = []
    for spec in state.config.services:
        replicas: int | None = None
        error: str | None = None
        try:
            replicas = await state.runtime.get_replica_count(spec.name)
        except RuntimeCommandError as exc:
            error = str(exc)
        override = await governor.get_override(spec.name)
        last_scaled = await store.get_last_scaled(spec.name)
        remaining = 0
        if last_scaled is not None:
            remaining = max(0, int(cooldown - (now - last_scaled).total_seconds()))
        outcome = last_report.outcome(spec.name) if last_report is not None else None
        services.append(
            ServiceStatus(
                service=spec.name,
                replicas=replicas,
                min_replicas=spec.min_replicas,
                max_replicas=spec.max_replicas,
                override=override.replicas if override is not None else None,
                last_scaled_at=last_scaled,
                cooldown_remaining_s=remaining,
                last_outcome=outcome.status.value if outcome is not None else None,
                error=error,
            )
        )

    return StatusResponse(
        mode=governor.mode.value,
        mode_since=governor.mode_since,
        last_successful_tick=state.loop.last_successful_tick,
        services=services,
    )


@router.get("/overrides", response_model=list[OverrideResponse])
async def list_overrides(request: Request) -> list[OverrideResponse]:
    overrides = await request.app.state.governor.list_overrides()
    return [OverrideResponse.from_override(o) for o in overrides]


@router.get("/overrides/{service}", response_model=OverrideResponse, responses={404: {"model": ErrorResponse}})
async def get_override(service: str, request: Request) -> OverrideResponse | JSONResponse:
    override = await request.app.state.governor.get_override(service)
    if override is None:
        return _error(404, "OVERRIDE_NOT_FOUND", f"No manual override set for {service}")
    return OverrideResponse.from_override(override)


@router.put(
    "/overrides/{service}",
    response_model=OverrideResponse,
    responses={400: {"model": ErrorResponse}},
)
async def set_override(service: str, body: OverrideRequest, request: Request) -> OverrideResponse | JSONResponse:
    try:
        override = await request.app.state.governor.set_override(service, body.replicas)
    except OverrideRejectedError as exc:
        return _error(400, "OVERRIDE_REJECTED", str(exc))
    _log.info("override_set_via_api", service=service, replicas=body.replicas)
    return OverrideResponse.from_override(override)


@router.delete(
    "/overrides/{service}",
    response_model=ClearOverrideResponse,
    responses={404: {"model": ErrorResponse}},
)
async def clear_override(service: str, request: Request) -> ClearOverrideResponse | JSONResponse:
    if not _known(request, service):
        return _error(404, "UNKNOWN_SERVICE", f"Unknown service {service!r}")
    removed = await request.app.state.governor.clear_override(service)
    if not removed:
        return _error(404, "OVERRIDE_NOT_FOUND", f"No manual override set for {service}")
    return ClearOverrideResponse(service=service, cleared=True)


@router.get("/scaling-log", response_model=list[ScalingLogEntryModel])
async def scaling_log(
    request: Request,
    service: str | None = Query(None),
    since: datetime | None = Query(None),
    until: datetime | None = Query(None),
) -> list[ScalingLogEntryModel]:
    entries = await request.app.state.store.query_log(service=service, since=_utc(since), until=_utc(until))
    return [ScalingLogEntryModel.from_entry(e) for e in entries]


@router.post("/tick", response_model=TickResponse)
async def tick(request: Request) -> TickResponse:
    """Run one control cycle now (for external schedulers)."""
    report = await request.app.state.loop.tick()
    return TickResponse.from_report(report)
