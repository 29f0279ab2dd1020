"""Integration tests for full control loop ticks.

Every component is real except the external systems (metrics backend,
runtime, health probes, nginx, alert sinks), which are in-process fakes.
Scenarios cover the cooldown sequence, manual overrides, the emergency
brake, health gating, idempotence, the tick deadline and per-service
failure isolation.
"""

from __future__ import annotations

import asyncio

import pytest
from fakes import World, build_world
from hypothesis import given, settings
from hypothesis import strategies as st

from scalewarden.models.alerts import Severity
from scalewarden.models.scaling import GovernorMode, OutcomeStatus, ScalingAction
from scalewarden.safety import OverrideRejectedError

pytestmark = pytest.mark.integration


def _neutral(world: World, *services: str) -> None:
    for service in services or ("backend", "frontend"):
        world.metrics.set_service(service)


# ---------------------------------------------------------------------------
# Cooldown sequence
# ---------------------------------------------------------------------------


class TestScaleSequence:
    async def test_up_vetoed_then_down(self, world: World) -> None:
        _neutral(world, "frontend")

        # T+0: high CPU scales backend up one step.
        world.metrics.set_service("backend", cpu=85)
        report = await world.loop.tick()
        outcome = report.outcome("backend")
        assert outcome is not None
        assert outcome.status == OutcomeStatus.SCALED
        assert (outcome.from_replicas, outcome.replicas) == (1, 2)
        assert world.runtime.replicas["backend"] == 2
        assert "Scaling Event" in world.dispatcher.titles()
        assert world.writer.upstreams["backend_upstream"] == ["10.0.0.1:80", "10.0.0.2:80"]

        # T+60: still hot, but the cooldown holds the count.
        world.clock.advance(60)
        report = await world.loop.tick()
        outcome = report.outcome("backend")
        assert outcome is not None
        assert outcome.status == OutcomeStatus.VETOED
        assert "Cooldown period not elapsed" in outcome.reason
        assert world.runtime.replicas["backend"] == 2

        # T+310: every load signal low, cooldown elapsed.
        world.clock.advance(250)
        world.metrics.set_service("backend", cpu=10, mem=10, req=5)
        report = await world.loop.tick()
        outcome = report.outcome("backend")
        assert outcome is not None
        assert outcome.status == OutcomeStatus.SCALED
        assert (outcome.from_replicas, outcome.replicas) == (2, 1)
        assert world.runtime.prepared == [("backend", ["backend-2"])]
        assert world.writer.upstreams["backend_upstream"] == ["10.0.0.1:80"]

        log = await world.store.query_log(service="backend")
        assert [(e.action, e.from_replicas, e.replicas) for e in log] == [
            (ScalingAction.SCALE_UP, 1, 2),
            (ScalingAction.SCALE_DOWN, 2, 1),
        ]

    async def test_scaling_event_message(self, world: World) -> None:
        _neutral(world, "frontend")
        world.metrics.set_service("backend", cpu=85)
        await world.loop.tick()
        event = next(a for a in world.dispatcher.alerts if a.title == "Scaling Event")
        assert event.severity == Severity.INFO
        assert event.message.startswith("Service: backend, From: 1, To: 2, Reason: High load")


# ---------------------------------------------------------------------------
# Manual overrides
# ---------------------------------------------------------------------------


class TestOverrides:
    async def test_override_above_max_rejected(self, world: World) -> None:
        _neutral(world)
        with pytest.raises(OverrideRejectedError):
            await world.governor.set_override("frontend", 4)
        report = await world.loop.tick()
        outcome = report.outcome("frontend")
        assert outcome is not None
        assert outcome.status == OutcomeStatus.UNCHANGED
        assert world.runtime.replicas["frontend"] == 1

    async def test_override_replaces_policy(self, world: World) -> None:
        _neutral(world)
        await world.governor.set_override("backend", 3)
        report = await world.loop.tick()
        outcome = report.outcome("backend")
        assert outcome is not None
        assert outcome.status == OutcomeStatus.SCALED
        assert world.runtime.replicas["backend"] == 3
        assert outcome.reason.startswith("Manual override to 3 replicas")

        await world.governor.clear_override("backend")
        world.clock.advance(301)
        await world.loop.tick()
        assert world.runtime.replicas["backend"] == 3


# ---------------------------------------------------------------------------
# Emergency brake
# ---------------------------------------------------------------------------


class TestEmergency:
    async def test_emergency_overrides_cooldown(self, world: World) -> None:
        _neutral(world)
        world.runtime.replicas["backend"] = 4
        await world.store.set_last_scaled("backend", world.clock.now)
        world.metrics.set_cluster(cpu=95.0, mem=50.0)

        report = await world.loop.tick()
        assert report.mode == GovernorMode.EMERGENCY
        backend = report.outcome("backend")
        frontend = report.outcome("frontend")
        assert backend is not None and frontend is not None
        assert backend.status == OutcomeStatus.SCALED
        assert world.runtime.replicas["backend"] == 1
        assert frontend.status == OutcomeStatus.UNCHANGED

        log = await world.store.query_log(service="backend")
        assert log[-1].action == ScalingAction.EMERGENCY_DOWN
        critical = [a for a in world.dispatcher.alerts if a.severity == Severity.CRITICAL]
        assert len(critical) == 1

    async def test_recovery_resumes_normal_policy(self, world: World) -> None:
        _neutral(world)
        world.metrics.set_cluster(cpu=95.0, mem=50.0)
        await world.loop.tick()
        world.metrics.set_cluster(cpu=20.0, mem=30.0)
        report = await world.loop.tick()
        assert report.mode == GovernorMode.NORMAL
        assert "Emergency cleared" in world.dispatcher.titles()


# ---------------------------------------------------------------------------
# Health gating and routing
# ---------------------------------------------------------------------------


class TestHealthGating:
    async def test_unhealthy_new_instance_kept_out_until_healthy(self, world: World) -> None:
        _neutral(world, "frontend")
        world.metrics.set_service("backend", cpu=85)
        world.health.unhealthy = {"backend-2"}
        await world.loop.tick()
        assert world.runtime.replicas["backend"] == 2
        assert world.writer.upstreams["backend_upstream"] == ["10.0.0.1:80"]

        world.health.unhealthy = set()
        world.clock.advance(60)
        await world.loop.tick()
        assert world.writer.upstreams["backend_upstream"] == ["10.0.0.1:80", "10.0.0.2:80"]

    async def test_reconcile_failure_recorded_not_fatal(self, world: World) -> None:
        _neutral(world, "frontend")
        world.metrics.set_service("backend", cpu=85)
        world.writer.fail = True
        report = await world.loop.tick()
        outcome = report.outcome("backend")
        assert outcome is not None
        assert outcome.status == OutcomeStatus.SCALED
        assert "reload failed" in outcome.reconcile_error
        assert "Load balancer update failed" in world.dispatcher.titles()
        assert report.succeeded


# ---------------------------------------------------------------------------
# Idempotence
# ---------------------------------------------------------------------------


class TestIdempotence:
    async def test_steady_state_changes_nothing(self, world: World) -> None:
        _neutral(world)
        first = await world.loop.tick()
        second = await world.loop.tick()
        for report in (first, second):
            assert {o.status for o in report.outcomes} == {OutcomeStatus.UNCHANGED}
        assert world.runtime.set_calls == []
        assert await world.store.query_log() == []
        # Only the initial upstream write reloads nginx.
        assert world.writer.reloads == 2


# ---------------------------------------------------------------------------
# Deadline, overlap and failure isolation
# ---------------------------------------------------------------------------


class TestDeadlineAndIsolation:
    async def test_slow_service_abandoned(self) -> None:
        world = build_world(tick_deadline=0.2)
        _neutral(world)
        original = world.runtime.get_replica_count

        async def _slow(service: str) -> int:
            if service == "backend":
                await asyncio.sleep(5)
            return await original(service)

        world.runtime.get_replica_count = _slow  # type: ignore[method-assign]
        report = await world.loop.tick()
        assert report.abandoned == ("backend",)
        assert not report.succeeded
        frontend = report.outcome("frontend")
        assert frontend is not None and frontend.status == OutcomeStatus.UNCHANGED
        assert world.loop.last_successful_tick is None

        world.runtime.get_replica_count = original  # type: ignore[method-assign]
        assert (await world.loop.tick()).succeeded
        assert world.loop.last_successful_tick is not None

    async def test_overlapping_ticks_skip_busy_service(self, world: World) -> None:
        _neutral(world)
        original = world.runtime.get_replica_count

        async def _slow(service: str) -> int:
            if service == "backend":
                await asyncio.sleep(0.1)
            return await original(service)

        world.runtime.get_replica_count = _slow  # type: ignore[method-assign]
        first, second = await asyncio.gather(world.loop.tick(), world.loop.tick())
        statuses = sorted(r.outcome("backend").status for r in (first, second))  # type: ignore[union-attr]
        assert statuses == sorted([OutcomeStatus.SKIPPED, OutcomeStatus.UNCHANGED])

    async def test_service_leased_elsewhere_is_skipped(self, world: World) -> None:
        _neutral(world, "frontend")
        world.metrics.set_service("backend", cpu=85)
        async with world.store.pipeline_lease("backend"):
            report = await world.loop.tick()
        backend = report.outcome("backend")
        frontend = report.outcome("frontend")
        assert backend is not None and frontend is not None
        assert backend.status == OutcomeStatus.SKIPPED
        assert frontend.status == OutcomeStatus.UNCHANGED
        assert world.runtime.set_calls == []

        report = await world.loop.tick()
        backend = report.outcome("backend")
        assert backend is not None and backend.status == OutcomeStatus.SCALED

    async def test_unexpected_error_isolated(self, world: World) -> None:
        _neutral(world, "backend")
        world.metrics.set_service("frontend", cpu=85)
        original = world.runtime.get_replica_count

        async def _broken(service: str) -> int:
            if service == "backend":
                raise RuntimeError("socket closed")
            return await original(service)

        world.runtime.get_replica_count = _broken  # type: ignore[method-assign]
        report = await world.loop.tick()
        backend = report.outcome("backend")
        frontend = report.outcome("frontend")
        assert backend is not None and frontend is not None
        assert backend.status == OutcomeStatus.FAILED
        assert frontend.status == OutcomeStatus.SCALED
        assert world.runtime.replicas["frontend"] == 2

    async def test_failed_scale_does_not_start_cooldown(self, world: World) -> None:
        _neutral(world, "frontend")
        world.metrics.set_service("backend", cpu=85)
        world.runtime.converge = False
        report = await world.loop.tick()
        outcome = report.outcome("backend")
        assert outcome is not None
        assert outcome.status == OutcomeStatus.FAILED
        assert "Scaling failed" in world.dispatcher.titles()
        assert await world.store.get_last_scaled("backend") is None
        assert await world.store.query_log() == []

        world.runtime.converge = True
        report = await world.loop.tick()
        outcome = report.outcome("backend")
        assert outcome is not None
        assert outcome.status == OutcomeStatus.SCALED


# ---------------------------------------------------------------------------
# Properties
# ---------------------------------------------------------------------------


class TestProperties:
    @given(
        cpu=st.floats(min_value=0, max_value=100),
        mem=st.floats(min_value=0, max_value=100),
        req=st.floats(min_value=0, max_value=500),
        start=st.integers(min_value=1, max_value=5),
    )
    @settings(max_examples=40, deadline=None)
    def test_one_step_within_bounds(self, cpu: float, mem: float, req: float, start: int) -> None:
        world = build_world()
        _neutral(world, "frontend")
        world.runtime.replicas["backend"] = start
        world.metrics.set_service("backend", cpu=cpu, mem=mem, req=req)

        asyncio.run(world.loop.tick())

        after = world.runtime.replicas["backend"]
        assert 1 <= after <= 5
        assert abs(after - start) <= 1
        if 30 <= cpu <= 70 and 40 <= mem <= 80 and 20 <= req <= 100:
            assert after == start

    @given(
        steps=st.lists(
            st.tuples(
                st.sampled_from([10.0, 29.0, 31.0, 50.0, 69.0, 71.0, 95.0]),
                st.integers(min_value=1, max_value=299),
            ),
            min_size=2,
            max_size=10,
        ),
    )
    @settings(max_examples=30, deadline=None)
    def test_at_most_one_change_per_cooldown_window(self, steps: list[tuple[float, int]]) -> None:
        world = build_world()
        _neutral(world, "frontend")
        world.runtime.replicas["backend"] = 3

        async def _drive() -> list[float]:
            changed_at: list[float] = []
            previous = world.runtime.replicas["backend"]
            elapsed = 0.0
            for cpu, advance in steps:
                # Memory and request rate sit low so CPU alone decides the direction.
                world.metrics.set_service("backend", cpu=cpu, mem=10, req=5)
                await world.loop.tick()
                current = world.runtime.replicas["backend"]
                if current != previous:
                    changed_at.append(elapsed)
                    previous = current
                world.clock.advance(advance)
                elapsed += advance
            return changed_at

        changed_at = asyncio.run(_drive())
        for earlier, later in zip(changed_at, changed_at[1:], strict=False):
            assert later - earlier >= 300
