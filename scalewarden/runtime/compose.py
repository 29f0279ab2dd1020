"""Docker Compose runtime.

Drives ``docker compose`` as a subprocess, every call bounded by a timeout.
When scaling down, compose removes the containers with the highest
replica numbers, so ``list_instances`` orders containers by that number.
"""

from __future__ import annotations

import json
import re

from scalewarden.models.scaling import Instance
from scalewarden.observability.logging import get_logger
from scalewarden.runtime.base import RuntimeCommandError, WorkloadRuntime
from scalewarden.runtime.process import run_command

_logger = get_logger("runtime.compose")

_REPLICA_SUFFIX = re.compile(r"[-_](\d+)$")


def _replica_number(name: str) -> int:
    match = _REPLICA_SUFFIX.search(name)
    return int(match.group(1)) if match else 0


class ComposeRuntime(WorkloadRuntime):
    """Scales services of a single compose project.

    Args:
        compose_file: Path to the compose file.
        ports:        Service name -> port its instances listen on.
        project:      Optional compose project name.
        timeout:      Per-command timeout in seconds.
    """

    def __init__(
        self,
        compose_file: str,
        ports: dict[str, int],
        project: str = "",
        timeout: float = 30.0,
    ) -> None:
        self._compose_file = compose_file
        self._ports = ports
        self._project = project
        self._timeout = timeout

    def _base(self) -> list[str]:
        args = ["docker", "compose", "-f", self._compose_file]
        if self._project:
            args += ["-p", self._project]
        return args

    async def get_replica_count(self, service: str) -> int:
        out = await run_command([*self._base(), "ps", "--status", "running", "-q", service], self._timeout)
        return len([line for line in out.splitlines() if line.strip()])

    async def set_replica_count(self, service: str, replicas: int) -> None:
        _logger.info("compose_scale", service=service, replicas=replicas)
        await run_command(
            [*self._base(), "up", "-d", "--no-recreate", "--scale", f"{service}={replicas}", service],
            self._timeout,
        )

    async def list_instances(self, service: str) -> list[Instance]:
        out = await run_command(
            [*self._base(), "ps", "--status", "running", "--format", "json", service],
            self._timeout,
        )
        names = sorted(self._parse_ps(out), key=_replica_number)
        instances: list[Instance] = []
        port = self._ports.get(service, 80)
        for name in names:
            ip = (
                await run_command(
                    ["docker", "inspect", "-f", "{{range .NetworkSettings.Networks}}{{.IPAddress}} {{end}}", name],
                    self._timeout,
                )
            ).split()
            if not ip:
                _logger.warning("compose_instance_without_ip", service=service, container=name)
                continue
            instances.append(Instance(instance_id=name, host=ip[0], port=port))
        return instances

    @staticmethod
    def _parse_ps(out: str) -> list[str]:
        out = out.strip()
        if not out:
            return []
        # Older compose releases print a JSON array, newer ones one object per line.
        try:
            if out.startswith("["):
                rows = json.loads(out)
            else:
                rows = [json.loads(line) for line in out.splitlines() if line.strip()]
        except ValueError as exc:
            raise RuntimeCommandError(f"unparseable compose ps output: {out[:200]!r}") from exc
        return [str(row["Name"]) for row in rows if row.get("Name")]
