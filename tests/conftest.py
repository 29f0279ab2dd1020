"""Shared fixtures for ScaleWarden tests."""

from __future__ import annotations

import pytest
from fakes import FakeClock, FakeHealthChecker, FakeMetrics, FakeRuntime, RecordingDispatcher, World, build_world

from scalewarden.models.config import ServiceSpec


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def services() -> list[ServiceSpec]:
    return [
        ServiceSpec(name="backend", min_replicas=1, max_replicas=5),
        ServiceSpec(name="frontend", min_replicas=1, max_replicas=3),
    ]


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def metrics() -> FakeMetrics:
    return FakeMetrics()


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime({"backend": 1, "frontend": 1})


@pytest.fixture
def health() -> FakeHealthChecker:
    return FakeHealthChecker()


@pytest.fixture
def world() -> World:
    return build_world()
