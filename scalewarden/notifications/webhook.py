"""Generic JSON webhook notification channel for ScaleWarden.

Posts ``{"title", "message", "severity", "service", "timestamp", "alert_id"}``
to any configured HTTP endpoint. Slack-style receivers that only read
``title`` and ``message`` work unchanged.
"""

from __future__ import annotations

import httpx
import structlog

from scalewarden.models.alerts import Alert
from scalewarden.notifications.manager import NotificationChannel

_log = structlog.get_logger(component="notifications.webhook")


class WebhookNotificationChannel(NotificationChannel):
    """Delivers alerts by POSTing a JSON payload to a configurable URL.

    Args:
        url:       Full endpoint URL.
        headers:   Optional extra headers (e.g. Authorization).
        timeout:   HTTP request timeout in seconds. Defaults to 10.
        transport: Optional httpx transport, used by tests.
    """

    def __init__(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not url:
            raise ValueError("Webhook url must not be empty")
        if not url.startswith(("http://", "https://")):
            raise ValueError(f"Webhook url must be http(s), got: {url!r}")
        self._url = url
        self._headers = headers or {}
        self._timeout = timeout
        self._transport = transport

    @property
    def channel_name(self) -> str:
        return "webhook"

    async def send(self, alert: Alert) -> bool:
        """POST *alert* as JSON. Returns True on a 2xx response."""
        payload = self._build_payload(alert)
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(self._url, json=payload, headers=self._headers)
                if response.is_success:
                    return True
                _log.warning(
                    "webhook_non_2xx_response",
                    status_code=response.status_code,
                    body=response.text[:200],
                    alert_id=alert.alert_id,
                )
                return False
        except httpx.TimeoutException:
            _log.warning("webhook_request_timeout", alert_id=alert.alert_id, url=self._url)
            return False
        except httpx.HTTPError as exc:
            _log.warning("webhook_http_error", error=str(exc), alert_id=alert.alert_id)
            return False

    def _build_payload(self, alert: Alert) -> dict[str, object]:
        return {
            "title": alert.title,
            "message": alert.message,
            "severity": alert.severity.value,
            "service": alert.service,
            "timestamp": alert.timestamp.isoformat(),
            "alert_id": alert.alert_id,
        }
