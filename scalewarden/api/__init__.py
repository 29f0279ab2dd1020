"""REST API layer for ScaleWarden.

Exposes:
    create_app -- FastAPI application factory.
    build_app  -- Alias for create_app (used by scalewarden.app bootstrap).
"""

from scalewarden.api.app import create_app

build_app = create_app

__all__ = ["build_app", "create_app"]
