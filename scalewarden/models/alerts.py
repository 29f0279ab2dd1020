"""Alert data structures."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from uuid import uuid4


class Severity(StrEnum):
    """Alert severity level."""

    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class Alert:
    """Emitted by the control loop and governor, consumed by the notification system."""

    title: str
    message: str
    severity: Severity = Severity.INFO
    service: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(tz=UTC))
    alert_id: str = field(default_factory=lambda: str(uuid4()))
