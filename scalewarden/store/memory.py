"""In-memory StateStore, used in tests and with SCALEWARDEN_STORE=memory."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime

from scalewarden.models.scaling import ManualOverride, ScalingLogEntry
from scalewarden.store.base import StateStore, matches


class InMemoryStateStore(StateStore):
    def __init__(self) -> None:
        self._overrides: dict[str, ManualOverride] = {}
        self._last_scaled: dict[str, datetime] = {}
        self._log: list[ScalingLogEntry] = []
        self._lock = asyncio.Lock()
        self._leases: set[str] = set()

    async def get_override(self, service: str) -> ManualOverride | None:
        return self._overrides.get(service)

    async def set_override(self, override: ManualOverride) -> None:
        async with self._lock:
            self._overrides[override.service] = override

    async def clear_override(self, service: str) -> bool:
        async with self._lock:
            return self._overrides.pop(service, None) is not None

    async def list_overrides(self) -> list[ManualOverride]:
        return sorted(self._overrides.values(), key=lambda o: o.service)

    async def get_last_scaled(self, service: str) -> datetime | None:
        return self._last_scaled.get(service)

    async def set_last_scaled(self, service: str, when: datetime) -> None:
        async with self._lock:
            self._last_scaled[service] = when

    async def append_log(self, entry: ScalingLogEntry) -> None:
        async with self._lock:
            self._log.append(entry)

    async def query_log(
        self,
        service: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[ScalingLogEntry]:
        return [e for e in self._log if matches(e, service, since, until)]

    @asynccontextmanager
    async def pipeline_lease(self, service: str) -> AsyncIterator[bool]:
        acquired = service not in self._leases
        if acquired:
            self._leases.add(service)
        try:
            yield acquired
        finally:
            if acquired:
                self._leases.discard(service)
