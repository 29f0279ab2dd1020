"""JSON-file StateStore.

Layout under ``state_dir``:

    state.json        -- {"overrides": {...}, "last_scaled": {...}}
    scaling.log.jsonl -- one ScalingLogEntry per line, append only
    .lock             -- flock(2) target serialising writers across processes
    .pipeline-<svc>.lock -- non-blocking flock(2) lease, one pipeline per service

The daemon and the CLI share these files, so every read goes to disk and
every write holds both the in-process asyncio lock and an exclusive flock.
Blocking file I/O runs in the default executor.
"""

from __future__ import annotations

import asyncio
import fcntl
import json
import os
import tempfile
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import asynccontextmanager, contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar

import structlog

from scalewarden.models.scaling import ManualOverride, ScalingLogEntry
from scalewarden.store.base import StateStore, matches

_log = structlog.get_logger(component="store.file")

_T = TypeVar("_T")


class FileStateStore(StateStore):
    def __init__(self, state_dir: str | Path) -> None:
        self._dir = Path(state_dir)
        self._state_path = self._dir / "state.json"
        self._log_path = self._dir / "scaling.log.jsonl"
        self._lock_path = self._dir / ".lock"
        self._corrupt_path = self._dir / "state.json.corrupt"
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Overrides
    # ------------------------------------------------------------------

    async def get_override(self, service: str) -> ManualOverride | None:
        state = await self._run(self._read_state)
        raw = state["overrides"].get(service)
        return _override_from_dict(service, raw) if raw else None

    async def set_override(self, override: ManualOverride) -> None:
        def _mutate(state: dict[str, Any]) -> None:
            state["overrides"][override.service] = {
                "replicas": override.replicas,
                "set_at": override.set_at.isoformat(),
            }

        await self._update(_mutate)

    async def clear_override(self, service: str) -> bool:
        removed = False

        def _mutate(state: dict[str, Any]) -> None:
            nonlocal removed
            removed = state["overrides"].pop(service, None) is not None

        await self._update(_mutate)
        return removed

    async def list_overrides(self) -> list[ManualOverride]:
        state = await self._run(self._read_state)
        return [_override_from_dict(name, raw) for name, raw in sorted(state["overrides"].items())]

    # ------------------------------------------------------------------
    # Cooldown anchors
    # ------------------------------------------------------------------

    async def get_last_scaled(self, service: str) -> datetime | None:
        state = await self._run(self._read_state)
        raw = state["last_scaled"].get(service)
        return datetime.fromisoformat(raw) if raw else None

    async def set_last_scaled(self, service: str, when: datetime) -> None:
        def _mutate(state: dict[str, Any]) -> None:
            state["last_scaled"][service] = when.isoformat()

        await self._update(_mutate)

    # ------------------------------------------------------------------
    # Scaling log
    # ------------------------------------------------------------------

    async def append_log(self, entry: ScalingLogEntry) -> None:
        line = json.dumps(entry.to_dict(), sort_keys=True) + "\n"

        def _append() -> None:
            with self._flock():
                with self._log_path.open("a", encoding="utf-8") as fh:
                    fh.write(line)
                    fh.flush()
                    os.fsync(fh.fileno())

        async with self._lock:
            await self._run(_append)

    async def query_log(
        self,
        service: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[ScalingLogEntry]:
        entries = await self._run(self._read_log)
        return [e for e in entries if matches(e, service, since, until)]

    # ------------------------------------------------------------------
    # Pipeline leases
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def pipeline_lease(self, service: str) -> AsyncIterator[bool]:
        self._dir.mkdir(parents=True, exist_ok=True)
        with (self._dir / f".pipeline-{service}.lock").open("a") as fh:
            try:
                fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                acquired = False
            else:
                acquired = True
            try:
                yield acquired
            finally:
                if acquired:
                    fcntl.flock(fh.fileno(), fcntl.LOCK_UN)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run(self, fn: Callable[[], _T]) -> _T:
        return await asyncio.get_running_loop().run_in_executor(None, fn)

    async def _update(self, mutate: Callable[[dict[str, Any]], None]) -> None:
        def _apply() -> None:
            with self._flock():
                state = self._read_state(quarantine=True)
                mutate(state)
                self._write_state(state)

        async with self._lock:
            await self._run(_apply)

    @contextmanager
    def _flock(self) -> Iterator[None]:
        self._dir.mkdir(parents=True, exist_ok=True)
        with self._lock_path.open("a") as fh:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(fh.fileno(), fcntl.LOCK_UN)

    def _read_state(self, quarantine: bool = False) -> dict[str, Any]:
        """Load state.json; a missing or unreadable file reads as empty state.

        With *quarantine* (writers only, under the flock) an unreadable file
        is moved aside to ``state.json.corrupt`` before it is replaced.
        """
        error: str | None = None
        try:
            data = json.loads(self._state_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            data = {}
        except ValueError as exc:
            data, error = {}, str(exc)
        if not isinstance(data, dict):
            data, error = {}, "not a JSON object"
        if error is not None:
            _log.error("state_file_corrupt", path=str(self._state_path), error=error, quarantined=quarantine)
            if quarantine:
                os.replace(self._state_path, self._corrupt_path)
        data.setdefault("overrides", {})
        data.setdefault("last_scaled", {})
        return data

    def _write_state(self, state: dict[str, Any]) -> None:
        fd, tmp = tempfile.mkstemp(dir=self._dir, prefix=".state-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(state, fh, indent=2, sort_keys=True)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, self._state_path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def _read_log(self) -> list[ScalingLogEntry]:
        entries: list[ScalingLogEntry] = []
        try:
            with self._log_path.open(encoding="utf-8") as fh:
                for lineno, line in enumerate(fh, start=1):
                    if not line.strip():
                        continue
                    try:
                        entries.append(ScalingLogEntry.from_dict(json.loads(line)))
                    except (ValueError, KeyError) as exc:
                        _log.warning("scaling_log_line_skipped", line=lineno, error=str(exc))
        except FileNotFoundError:
            pass
        return entries


def _override_from_dict(service: str, raw: dict[str, Any]) -> ManualOverride:
    return ManualOverride(
        service=service,
        replicas=int(raw["replicas"]),
        set_at=datetime.fromisoformat(raw["set_at"]),
    )
