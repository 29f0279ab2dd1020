"""Notification system for ScaleWarden.

Dispatches Alert instances to one or more notification channels with
built-in deduplication. Delivery is fire-and-forget: an unreachable sink
never blocks the control loop.

Exports:
    NotificationChannel          -- Abstract base for all channel implementations.
    NotificationDispatcher       -- Sends an alert to all registered channels.
    AlertDeduplicator            -- 15-minute cooldown per (service, title).
    WebhookNotificationChannel   -- JSON POST webhook channel.
    LogFileNotificationChannel   -- Appends alert lines to a local file.
    StructlogNotificationChannel -- Emits alerts as structured log events.
    build_notification_dispatcher -- Factory used by the application bootstrap.
"""

from __future__ import annotations

import os
from typing import TYPE_CHECKING

import structlog

from scalewarden.notifications.logfile import LogFileNotificationChannel, StructlogNotificationChannel
from scalewarden.notifications.manager import (
    AlertDeduplicator,
    NotificationChannel,
    NotificationDispatcher,
)
from scalewarden.notifications.webhook import WebhookNotificationChannel

if TYPE_CHECKING:
    from scalewarden.models.config import NotificationConfig

_log = structlog.get_logger(component="notifications")

__all__ = [
    "AlertDeduplicator",
    "LogFileNotificationChannel",
    "NotificationChannel",
    "NotificationDispatcher",
    "StructlogNotificationChannel",
    "WebhookNotificationChannel",
    "build_notification_dispatcher",
]


def build_notification_dispatcher(config: NotificationConfig) -> NotificationDispatcher:
    """Build a NotificationDispatcher from configuration.

    The structlog channel is always registered.

    Webhook:
        SCALEWARDEN_NOTIFICATIONS_WEBHOOK_SECRET_REF (env var name) ->
        env var value is the webhook URL.

    Log file:
        SCALEWARDEN_NOTIFICATIONS_LOG_FILE is the path alert lines are
        appended to.
    """
    channels: list[NotificationChannel] = [StructlogNotificationChannel()]

    webhook_ref = config.webhook_secret_ref
    if webhook_ref:
        webhook_url = os.environ.get(webhook_ref, "")
        if webhook_url:
            try:
                channels.append(WebhookNotificationChannel(url=webhook_url))
                _log.info("webhook_channel_enabled")
            except ValueError as exc:
                _log.warning("webhook_channel_disabled", reason=str(exc))
        else:
            _log.debug("webhook_channel_skipped", reason="secret ref env var is empty")

    if config.log_file:
        channels.append(LogFileNotificationChannel(config.log_file))
        _log.info("logfile_channel_enabled", path=config.log_file)

    return NotificationDispatcher(channels=channels)
