"""FastAPI application factory for ScaleWarden.

Usage::

    from scalewarden.api.app import create_app

    app = create_app(
        loop=control_loop,
        governor=governor,
        store=store,
        runtime=runtime,
        config=config,
    )

The factory is used by both the production bootstrap (``scalewarden.app``)
and unit tests.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from scalewarden.api.routes import router
from scalewarden.api.schemas import ErrorResponse

_log = structlog.get_logger(component="api.app")

_API_PREFIX = "/api/v1"


def create_app(
    loop: Any,
    governor: Any,
    store: Any,
    runtime: Any,
    config: Any,
) -> FastAPI:
    """Create and configure the ScaleWarden FastAPI application.

    Args:
        loop:     ControlLoop instance (tick trigger and liveness).
        governor: SafetyGovernor instance (mode and override surface).
        store:    StateStore instance (scaling log and cooldown anchors).
        runtime:  WorkloadRuntime instance (observed replica counts).
        config:   ScaleWardenConfig.

    Returns:
        Configured FastAPI application, ready to be served by uvicorn.
    """
    from scalewarden import __version__

    app = FastAPI(
        title="ScaleWarden",
        summary="Autoscaling control loop API",
        version=__version__,
        description=(
            "ScaleWarden scales services between configured bounds from live "
            "metrics, with cooldowns, manual overrides and an emergency brake."
        ),
        docs_url="/api/v1/docs",
        redoc_url="/api/v1/redoc",
        openapi_url="/api/v1/openapi.json",
    )

    app.state.loop = loop
    app.state.governor = governor
    app.state.store = store
    app.state.runtime = runtime
    app.state.config = config

    app.include_router(router, prefix=_API_PREFIX)

    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # -----------------------------------------------------------------------
    # Exception handlers
    # -----------------------------------------------------------------------

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        _request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        errors = exc.errors()
        detail = ""
        if errors:
            locs = errors[0].get("loc", ())
            field = str(locs[-1]) if locs else ""
            detail = f"{field}: {errors[0].get('msg', '')}" if field else str(errors[0].get("msg", ""))
        return JSONResponse(
            status_code=400,
            content=ErrorResponse(error="INVALID_REQUEST", detail=detail).model_dump(),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(
        request: Request,
        exc: Exception,
    ) -> JSONResponse:
        """Catch-all for unhandled exceptions; never expose stack traces."""
        _log.error(
            "unhandled_exception",
            path=str(request.url.path),
            method=request.method,
            error=str(exc),
        )
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error="INTERNAL_ERROR",
                detail="An unexpected error occurred.",
            ).model_dump(),
        )

    return app
