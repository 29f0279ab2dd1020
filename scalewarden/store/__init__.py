"""State store for overrides, cooldown anchors and the scaling audit log.

Submodules:
    base   -- StateStore ABC injected into governor, engine, API and CLI.
    memory -- In-process dict-backed implementation.
    file   -- JSON files with flock(2), shared by the daemon and the CLI.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from scalewarden.store.base import StateStore
from scalewarden.store.file import FileStateStore
from scalewarden.store.memory import InMemoryStateStore

if TYPE_CHECKING:
    from scalewarden.models.config import StoreConfig

__all__ = ["FileStateStore", "InMemoryStateStore", "StateStore", "build_store"]


def build_store(config: StoreConfig) -> StateStore:
    if config.kind == "memory":
        return InMemoryStateStore()
    return FileStateStore(config.state_dir)
