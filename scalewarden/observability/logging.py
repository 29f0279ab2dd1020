"""Structured logging configuration using structlog.

Every control loop tick binds a ``tick_id`` into the structlog context
variables, so all log lines emitted while the tick runs (including those of
concurrently running per-service pipelines, which inherit the context) can
be correlated.
"""

from __future__ import annotations

import logging
import sys
from uuid import uuid4

import structlog


def setup_logging(level: str = "info") -> None:
    """Configure structlog for JSON output to stderr."""
    log_level = getattr(logging, level.upper(), logging.INFO)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.format_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def get_logger(component: str) -> structlog.stdlib.BoundLogger:
    """Get a logger bound with a component name."""
    return structlog.get_logger(component=component)  # type: ignore[return-value]


def bind_tick_context() -> str:
    """Start a new tick correlation scope and return its id."""
    tick_id = uuid4().hex[:12]
    structlog.contextvars.bind_contextvars(tick_id=tick_id)
    return tick_id


def clear_tick_context() -> None:
    structlog.contextvars.unbind_contextvars("tick_id")
