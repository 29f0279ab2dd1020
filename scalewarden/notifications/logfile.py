"""Log-file notification channel.

Appends ``[ALERT] <title>: <message>`` lines to a local file. File I/O runs
in the default thread-pool executor so the event loop is never blocked.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import structlog

from scalewarden.models.alerts import Alert
from scalewarden.notifications.manager import NotificationChannel

_log = structlog.get_logger(component="notifications.logfile")


class LogFileNotificationChannel(NotificationChannel):
    """Writes each alert as one line to *path*."""

    def __init__(self, path: str | Path) -> None:
        if not str(path):
            raise ValueError("Alert log path must not be empty")
        self._path = Path(path)

    @property
    def channel_name(self) -> str:
        return "logfile"

    async def send(self, alert: Alert) -> bool:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._append, alert)
            return True
        except OSError as exc:
            _log.warning("alert_log_write_failed", path=str(self._path), error=str(exc))
            return False

    def _append(self, alert: Alert) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        line = (
            f"{alert.timestamp.isoformat()} [ALERT] [{alert.severity.value.upper()}] "
            f"{alert.title}: {alert.message}\n"
        )
        with self._path.open("a", encoding="utf-8") as fh:
            fh.write(line)


class StructlogNotificationChannel(NotificationChannel):
    """Emits alerts as structured log events. Always enabled."""

    @property
    def channel_name(self) -> str:
        return "log"

    async def send(self, alert: Alert) -> bool:
        _log.warning(
            "alert",
            title=alert.title,
            message=alert.message,
            severity=alert.severity.value,
            service=alert.service,
            alert_id=alert.alert_id,
        )
        return True
