"""nginx upstream file management.

Each scaled service owns one file, ``<upstreams_dir>/<upstream>.conf``,
holding a single ``upstream`` block that the main nginx config includes.
Files are replaced atomically. ``nginx -s reload`` starts new workers with
the new upstream set while old workers finish their in-flight connections.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

from scalewarden.models.scaling import Instance
from scalewarden.observability.logging import get_logger
from scalewarden.runtime.base import RuntimeCommandError
from scalewarden.runtime.process import run_command

_logger = get_logger("loadbalancer.nginx")

# nginx refuses an upstream block without servers; an empty healthy set
# becomes a single server marked down so requests fail fast with 502.
_PLACEHOLDER_SERVER = "server 127.0.0.1:1 down;"


class ReconcileError(Exception):
    """Writing, validating or reloading the routing layer failed."""


def render_upstream(upstream: str, instances: list[Instance]) -> str:
    """Render the upstream block for exactly *instances*, sorted for stable output."""
    lines = [f"upstream {upstream} {{"]
    addresses = sorted({i.address for i in instances})
    if addresses:
        lines.extend(f"    server {address};" for address in addresses)
    else:
        lines.append(f"    {_PLACEHOLDER_SERVER}")
    lines.append("}")
    return "\n".join(lines) + "\n"


class NginxUpstreamWriter:
    """Writes upstream files and reloads nginx.

    Args:
        upstreams_dir:  Directory of per-service upstream files.
        reload_command: argv for a graceful reload, e.g. ``nginx -s reload``.
        test_command:   Optional argv validating the config, e.g. ``nginx -t``.
                        On failure the previous file is restored.
        timeout:        Per-command timeout in seconds.
    """

    def __init__(
        self,
        upstreams_dir: str | Path,
        reload_command: list[str],
        test_command: list[str] | None = None,
        timeout: float = 15.0,
    ) -> None:
        self._dir = Path(upstreams_dir)
        self._reload_command = reload_command
        self._test_command = test_command or []
        self._timeout = timeout
        self._reload_pending: set[str] = set()

    def path_for(self, upstream: str) -> Path:
        return self._dir / f"{upstream}.conf"

    def read(self, upstream: str) -> str | None:
        try:
            return self.path_for(upstream).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    async def apply(self, upstream: str, instances: list[Instance]) -> bool:
        """Make the live upstream equal to *instances*.

        Returns True when nginx was reloaded, False when the file already
        matched and no earlier reload is outstanding.

        Raises:
            ReconcileError: on write, validation or reload failure.
        """
        content = render_upstream(upstream, instances)
        previous = self.read(upstream)
        if previous == content and upstream not in self._reload_pending:
            return False

        if previous != content:
            self._write(upstream, content)
            if self._test_command:
                try:
                    await run_command(self._test_command, self._timeout)
                except RuntimeCommandError as exc:
                    self._restore(upstream, previous)
                    raise ReconcileError(f"nginx config test failed for {upstream}: {exc}") from exc

        try:
            await run_command(self._reload_command, self._timeout)
        except RuntimeCommandError as exc:
            self._reload_pending.add(upstream)
            raise ReconcileError(f"nginx reload failed for {upstream}: {exc}") from exc

        self._reload_pending.discard(upstream)
        _logger.info("nginx_upstream_reloaded", upstream=upstream, servers=len(instances))
        return True

    def _write(self, upstream: str, content: str) -> None:
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self._dir, prefix=f".{upstream}-", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(content)
            os.replace(tmp, self.path_for(upstream))
        except OSError as exc:
            raise ReconcileError(f"cannot write upstream file for {upstream}: {exc}") from exc

    def _restore(self, upstream: str, previous: str | None) -> None:
        if previous is None:
            self.path_for(upstream).unlink(missing_ok=True)
        else:
            self._write(upstream, previous)
        _logger.warning("nginx_upstream_restored", upstream=upstream)
