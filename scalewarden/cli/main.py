"""ScaleWarden command-line interface.

Every command reads the same ``SCALEWARDEN_*`` environment configuration as
the daemon. Commands that touch overrides or the scaling log go through the
configured state store, so with the file store they see (and change) the
same state as a running daemon.

Exit codes: 0 success, 1 operation failed or was rejected, 2 usage or
configuration error, 3 emergency condition present (``emergency-check``).
"""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import TypeVar

import click

from scalewarden import __version__
from scalewarden.config import ConfigError, load_config
from scalewarden.models.config import ScaleWardenConfig
from scalewarden.observability.logging import setup_logging

_T = TypeVar("_T")

EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_EMERGENCY = 3


def _load() -> ScaleWardenConfig:
    try:
        config = load_config()
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(EXIT_CONFIG)
    setup_logging(config.log.level)
    return config


def _run(coro_fn: Callable[[], Awaitable[_T]]) -> _T:
    async def _main() -> _T:
        return await coro_fn()

    return asyncio.run(_main())


def _utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _emit(data: object) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


@click.group()
@click.version_option(version=__version__, prog_name="scalewarden")
def cli() -> None:
    """ScaleWarden autoscaling control loop."""


@cli.command()
@click.option("--no-api", is_flag=True, help="Run the control loop without the REST API.")
def run(no_api: bool) -> None:
    """Run the control loop (and REST API) until SIGTERM/SIGINT."""
    from scalewarden.app import main

    asyncio.run(main(serve_api=not no_api))


@cli.command()
def tick() -> None:
    """Run one control cycle across all services and print the report."""
    from scalewarden.app import build_components

    config = _load()

    async def _tick() -> bool:
        components = await build_components(config)
        try:
            report = await components.loop.tick()
        finally:
            await components.close()
        _emit(report.to_dict())
        return report.succeeded

    if not _run(_tick):
        sys.exit(EXIT_FAILED)


@cli.command()
@click.argument("service")
def reconcile(service: str) -> None:
    """Health-check SERVICE's instances and rewrite its nginx upstream."""
    from scalewarden.app import build_components
    from scalewarden.loadbalancer import ReconcileError

    config = _load()
    if config.service(service) is None:
        click.echo(f"Unknown service {service!r}", err=True)
        sys.exit(EXIT_CONFIG)

    async def _reconcile() -> None:
        components = await build_components(config)
        try:
            result = await components.reconciler.reconcile(service)
        finally:
            await components.close()
        _emit(
            {
                "service": result.service,
                "healthy": [i.address for i in result.healthy],
                "unhealthy": [i.address for i in result.unhealthy],
                "reloaded": result.reloaded,
            }
        )

    try:
        _run(_reconcile)
    except ReconcileError as exc:
        click.echo(f"Reconcile failed: {exc}", err=True)
        sys.exit(EXIT_FAILED)


@cli.command("check-limits")
@click.argument("service")
@click.argument("replicas", type=int)
def check_limits(service: str, replicas: int) -> None:
    """Check whether SERVICE may run REPLICAS instances."""
    from scalewarden.app import build_governor
    from scalewarden.store import InMemoryStateStore

    config = _load()
    violation = build_governor(config, InMemoryStateStore()).check_limits(service, replicas)
    if violation is not None:
        click.echo(violation, err=True)
        sys.exit(EXIT_FAILED)
    click.echo(f"Scaling {service} to {replicas} replicas is within limits")


@cli.command("emergency-check")
def emergency_check() -> None:
    """Sample host CPU/memory and report whether the emergency brake would engage."""
    from scalewarden.collector import MetricsCollector, PrometheusClient

    config = _load()

    async def _check() -> dict[str, object]:
        prometheus = PrometheusClient(config.metrics.prometheus_url, timeout=config.metrics.query_timeout)
        try:
            cluster = await MetricsCollector(prometheus, window=config.metrics.window).sample_cluster()
        finally:
            await prometheus.close()
        safety = config.safety
        return {
            "cpu_pct": round(cluster.cpu_pct, 2),
            "mem_pct": round(cluster.mem_pct, 2),
            "missing": list(cluster.missing),
            "cpu_threshold": safety.emergency_cpu_threshold,
            "mem_threshold": safety.emergency_mem_threshold,
            "emergency": cluster.cpu_pct > safety.emergency_cpu_threshold
            or cluster.mem_pct > safety.emergency_mem_threshold,
        }

    result = _run(_check)
    _emit(result)
    if result["emergency"]:
        sys.exit(EXIT_EMERGENCY)


@cli.command("log")
@click.option("--service", default=None, help="Only entries for this service.")
@click.option("--since", type=click.DateTime(), default=None, help="Only entries at or after this time (UTC).")
@click.option("--until", type=click.DateTime(), default=None, help="Only entries at or before this time (UTC).")
@click.option("--json", "as_json", is_flag=True, help="Emit JSON instead of text lines.")
def scaling_log(service: str | None, since: datetime | None, until: datetime | None, as_json: bool) -> None:
    """Show the scaling audit log."""
    from scalewarden.store import build_store

    config = _load()
    store = build_store(config.store)

    entries = _run(lambda: store.query_log(service=service, since=_utc(since), until=_utc(until)))
    if as_json:
        _emit([e.to_dict() for e in entries])
        return
    for e in entries:
        click.echo(
            f"{e.timestamp.isoformat()} {e.service} {e.action.value} "
            f"{e.from_replicas}->{e.replicas} {e.reason}"
        )


# ---------------------------------------------------------------------------
# override
# ---------------------------------------------------------------------------


@cli.group()
def override() -> None:
    """Manage manual replica overrides."""


@override.command("set")
@click.argument("service")
@click.argument("replicas", type=int)
def override_set(service: str, replicas: int) -> None:
    """Pin SERVICE to REPLICAS until cleared."""
    from scalewarden.app import build_governor
    from scalewarden.notifications import build_notification_dispatcher
    from scalewarden.safety import OverrideRejectedError
    from scalewarden.store import build_store

    config = _load()

    async def _set() -> None:
        dispatcher = build_notification_dispatcher(config.notifications)
        governor = build_governor(config, build_store(config.store), dispatcher)
        try:
            await governor.set_override(service, replicas)
        finally:
            await dispatcher.flush()

    try:
        _run(_set)
    except OverrideRejectedError as exc:
        click.echo(str(exc), err=True)
        sys.exit(EXIT_FAILED)
    click.echo(f"Manual override set: {service} = {replicas} replicas")


@override.command("clear")
@click.argument("service")
def override_clear(service: str) -> None:
    """Remove the manual override for SERVICE."""
    from scalewarden.app import build_governor
    from scalewarden.notifications import build_notification_dispatcher
    from scalewarden.store import build_store

    config = _load()

    async def _clear() -> bool:
        dispatcher = build_notification_dispatcher(config.notifications)
        governor = build_governor(config, build_store(config.store), dispatcher)
        try:
            return await governor.clear_override(service)
        finally:
            await dispatcher.flush()

    if _run(_clear):
        click.echo(f"Manual override cleared for {service}")
    else:
        click.echo(f"No manual override set for {service}")


@override.command("show")
@click.argument("service", required=False)
def override_show(service: str | None) -> None:
    """Show the override for SERVICE, or all overrides."""
    from scalewarden.store import build_store

    config = _load()
    store = build_store(config.store)

    overrides = _run(store.list_overrides)
    if service is not None:
        overrides = [o for o in overrides if o.service == service]
    if not overrides:
        click.echo("No manual overrides set")
        return
    for o in overrides:
        click.echo(f"{o.service}: {o.replicas} replicas (set {o.set_at.isoformat()})")
