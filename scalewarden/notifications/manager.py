"""Notification dispatcher and deduplication for ScaleWarden.

NotificationChannel    -- ABC every channel must implement.
NotificationDispatcher -- Fans out alerts to all registered channels;
                          failures in one channel never block others or
                          the control loop.
AlertDeduplicator      -- Enforces a 15-minute cooldown per (service, title).
                          Critical alerts bypass it.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from datetime import UTC, datetime, timedelta

import structlog

from scalewarden.models.alerts import Alert, Severity
from scalewarden.observability.metrics import notifications_total

_log = structlog.get_logger(component="notifications.manager")

_DEDUP_COOLDOWN = timedelta(minutes=15)


class NotificationChannel(ABC):
    """Abstract base class for all notification channels.

    Every concrete channel must implement ``send``, which should not
    raise; return ``False`` instead.
    """

    @property
    @abstractmethod
    def channel_name(self) -> str:
        """Human-readable channel identifier used in metrics and logs."""

    @abstractmethod
    async def send(self, alert: Alert) -> bool:
        """Deliver *alert* via this channel.

        Returns:
            True  -- message accepted by the sink.
            False -- delivery failed (already logged inside implementation).
        """


class AlertDeduplicator:
    """Suppresses repeated alerts within a cooldown window.

    The deduplication key is ``(service, title)``. A persistent condition
    (a service failing to converge every tick, say) therefore produces one
    alert per window instead of one per tick. State is held in-process.
    """

    def __init__(self, cooldown: timedelta = _DEDUP_COOLDOWN) -> None:
        self._cooldown = cooldown
        self._last_sent: dict[tuple[str, str], datetime] = {}

    def should_send(self, alert: Alert) -> bool:
        """Return True if this alert should be dispatched."""
        if alert.severity == Severity.CRITICAL:
            return True
        key = (alert.service, alert.title)
        now = datetime.now(tz=UTC)
        last = self._last_sent.get(key)
        if last is not None and (now - last) < self._cooldown:
            _log.debug(
                "alert_suppressed_by_deduplicator",
                service=alert.service,
                title=alert.title,
                seconds_remaining=int((self._cooldown - (now - last)).total_seconds()),
            )
            return False
        self._last_sent[key] = now
        return True

    def reset(self, service: str, title: str) -> None:
        """Remove a cooldown entry so the next matching alert is dispatched."""
        self._last_sent.pop((service, title), None)


class NotificationDispatcher:
    """Fan-out dispatcher that sends an alert to every registered channel.

    * Never raises: exceptions from individual channels are caught and logged.
    * Never blocks the caller: ``dispatch`` schedules the fan-out as a
      background asyncio task.
    * Applies AlertDeduplicator before any I/O.
    """

    def __init__(
        self,
        channels: list[NotificationChannel],
        deduplicator: AlertDeduplicator | None = None,
    ) -> None:
        self._channels = channels
        self._deduplicator = deduplicator or AlertDeduplicator()
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def channels(self) -> list[NotificationChannel]:
        return list(self._channels)

    def dispatch(self, alert: Alert) -> None:
        """Schedule fan-out delivery of *alert* as a background task."""
        if not self._deduplicator.should_send(alert):
            return
        if not self._channels:
            return
        try:
            task = asyncio.get_running_loop().create_task(self._fan_out(alert))
        except RuntimeError:
            _log.warning("notification_dropped_no_event_loop", title=alert.title, service=alert.service)
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def flush(self, timeout: float = 10.0) -> None:
        """Wait for in-flight deliveries, used on shutdown and by one-shot commands."""
        if not self._pending:
            return
        _, still_pending = await asyncio.wait(set(self._pending), timeout=timeout)
        for task in still_pending:
            task.cancel()

    async def stop(self) -> None:
        await self.flush()

    async def _fan_out(self, alert: Alert) -> None:
        """Deliver *alert* to every channel concurrently."""
        tasks = [self._send_one(channel, alert) for channel in self._channels]
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _send_one(self, channel: NotificationChannel, alert: Alert) -> None:
        """Deliver to a single channel, recording metrics regardless of outcome."""
        try:
            success = await channel.send(alert)
        except Exception as exc:  # noqa: BLE001
            _log.error(
                "notification_channel_unexpected_error",
                channel=channel.channel_name,
                alert_id=alert.alert_id,
                error=str(exc),
            )
            success = False

        label = "true" if success else "false"
        notifications_total.labels(channel=channel.channel_name, success=label).inc()

        if success:
            _log.info(
                "notification_sent",
                channel=channel.channel_name,
                alert_id=alert.alert_id,
                severity=alert.severity.value,
                service=alert.service,
                title=alert.title,
            )
        else:
            _log.warning(
                "notification_failed",
                channel=channel.channel_name,
                alert_id=alert.alert_id,
            )
