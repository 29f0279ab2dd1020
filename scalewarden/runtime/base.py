"""Runtime control interface.

The runtime is the source of truth for replica counts: nothing above this
layer caches them.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from scalewarden.models.scaling import Instance


class RuntimeCommandError(Exception):
    """A runtime command failed or exceeded its timeout."""


class WorkloadRuntime(ABC):
    """Reads and changes the replica count of a scaled service."""

    @abstractmethod
    async def get_replica_count(self, service: str) -> int:
        """Number of running (ready) instances right now."""

    @abstractmethod
    async def set_replica_count(self, service: str, replicas: int) -> None:
        """Issue the scale command. Does not wait for convergence."""

    @abstractmethod
    async def list_instances(self, service: str) -> list[Instance]:
        """Running instance endpoints, in the runtime's removal order (last removed first)."""

    async def removal_candidates(self, service: str, count: int) -> list[Instance]:
        """Instances the runtime will terminate when scaling down by *count*."""
        if count <= 0:
            return []
        instances = await self.list_instances(service)
        return instances[-count:]

    async def prepare_removal(self, service: str, instances: list[Instance]) -> None:  # noqa: B027
        """Mark *instances* so the next scale-down terminates exactly them."""

    async def close(self) -> None:  # noqa: B027
        """Release client resources."""
