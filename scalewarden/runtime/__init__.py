"""Workload runtime backends.

Submodules:
    base       -- WorkloadRuntime ABC and RuntimeCommandError.
    compose    -- Docker Compose services via the ``docker compose`` CLI.
    kubernetes -- Deployments via kubernetes-asyncio (imported lazily).
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from scalewarden.runtime.base import RuntimeCommandError, WorkloadRuntime
from scalewarden.runtime.compose import ComposeRuntime

if TYPE_CHECKING:
    from scalewarden.models.config import RuntimeConfig, ServiceSpec

__all__ = ["ComposeRuntime", "RuntimeCommandError", "WorkloadRuntime", "build_runtime"]


async def build_runtime(config: RuntimeConfig, services: list[ServiceSpec]) -> WorkloadRuntime:
    ports = {spec.name: spec.instance_port for spec in services}
    if config.kind == "kubernetes":
        from scalewarden.runtime.kubernetes import KubernetesRuntime, load_client_config

        await load_client_config()
        return KubernetesRuntime(namespace=config.namespace, ports=ports, timeout=config.command_timeout)
    return ComposeRuntime(
        compose_file=config.compose_file,
        ports=ports,
        project=config.compose_project,
        timeout=config.command_timeout,
    )
