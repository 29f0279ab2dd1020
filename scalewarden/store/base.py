"""State store interface.

Holds the three pieces of shared mutable state: manual overrides, the
per-service last-scaled timestamp (the cooldown anchor) and the append-only
scaling log. Components receive a StateStore by injection; none of them
know whether it is backed by memory, a file or anything else.

Implementations must serialise writes: per-service pipelines run
concurrently within a tick and all write through the same store. They also
hand out per-service pipeline leases so that two ticks for one service never
overlap, even when the ticks come from different processes.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from datetime import datetime

from scalewarden.models.scaling import ManualOverride, ScalingLogEntry


class StateStore(ABC):
    """Abstract persistence for overrides, cooldown anchors and the audit log."""

    @abstractmethod
    async def get_override(self, service: str) -> ManualOverride | None: ...

    @abstractmethod
    async def set_override(self, override: ManualOverride) -> None:
        """Store *override*, replacing any existing one for the same service."""

    @abstractmethod
    async def clear_override(self, service: str) -> bool:
        """Remove the override for *service*. Returns False if none was set."""

    @abstractmethod
    async def list_overrides(self) -> list[ManualOverride]: ...

    @abstractmethod
    async def get_last_scaled(self, service: str) -> datetime | None: ...

    @abstractmethod
    async def set_last_scaled(self, service: str, when: datetime) -> None: ...

    @abstractmethod
    async def append_log(self, entry: ScalingLogEntry) -> None: ...

    @abstractmethod
    async def query_log(
        self,
        service: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[ScalingLogEntry]:
        """Return log entries oldest first, filtered by service and [since, until]."""

    @abstractmethod
    def pipeline_lease(self, service: str) -> AbstractAsyncContextManager[bool]:
        """Try to take the exclusive right to run *service*'s pipeline.

        Never waits: the context yields False when another holder has the
        lease, True otherwise. The lease is released on exit.
        """


def matches(
    entry: ScalingLogEntry,
    service: str | None,
    since: datetime | None,
    until: datetime | None,
) -> bool:
    if service is not None and entry.service != service:
        return False
    if since is not None and entry.timestamp < since:
        return False
    if until is not None and entry.timestamp > until:
        return False
    return True
