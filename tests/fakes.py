"""In-process fakes for ScaleWarden tests.

Provides in-process stand-ins for the external systems (metrics backend,
workload runtime, health probes, alert sink) and a controllable clock, so
unit and integration tests exercise real component logic without Docker,
Kubernetes, Prometheus or nginx.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from scalewarden.collector.collector import CLUSTER_CPU_QUERY, CLUSTER_MEM_QUERY, SERVICE_QUERIES, MetricsCollector
from scalewarden.collector.prometheus import MetricsQueryError, UndefinedSampleError
from scalewarden.controller.loop import ControlLoop
from scalewarden.loadbalancer.health import HealthChecker
from scalewarden.loadbalancer.nginx import ReconcileError
from scalewarden.loadbalancer.reconciler import LoadBalancerReconciler
from scalewarden.models.alerts import Alert
from scalewarden.models.config import LoopConfig, ScaleWardenConfig, ScalingConfig, ServiceSpec, StoreConfig
from scalewarden.models.scaling import Instance, Signal
from scalewarden.policy.engine import PolicyEngine
from scalewarden.runtime.base import RuntimeCommandError, WorkloadRuntime
from scalewarden.safety.governor import SafetyGovernor
from scalewarden.scaling.engine import ScalingEngine
from scalewarden.store.memory import InMemoryStateStore

# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable returning a fixed, manually advanced UTC time."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 15, 3, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


# ---------------------------------------------------------------------------
# Metrics backend
# ---------------------------------------------------------------------------


class FakeMetrics:
    """Answers the collector's PromQL expressions from a lookup table."""

    def __init__(self, window: str = "5m") -> None:
        self._window = window
        self._values: dict[str, float] = {}
        self.failing: set[str] = set()
        self.queries: list[str] = []
        self.set_cluster(cpu=20.0, mem=30.0)

    def set_service(
        self,
        service: str,
        cpu: float = 50.0,
        mem: float = 50.0,
        req: float = 50.0,
        p95: float = 100.0,
        err: float = 0.0,
    ) -> None:
        values = {
            Signal.CPU: cpu,
            Signal.MEMORY: mem,
            Signal.REQUEST_RATE: req,
            Signal.P95_LATENCY: p95,
            Signal.ERROR_RATE: err,
        }
        for signal, value in values.items():
            self._values[self.expr(service, signal)] = value

    def set_cluster(self, cpu: float, mem: float) -> None:
        self._values[CLUSTER_CPU_QUERY.format(window=self._window)] = cpu
        self._values[CLUSTER_MEM_QUERY] = mem

    def fail(self, service: str, signal: Signal) -> None:
        self.failing.add(self.expr(service, signal))

    def expr(self, service: str, signal: Signal) -> str:
        return SERVICE_QUERIES[signal].format(service=service, window=self._window)

    async def query(self, expr: str) -> float:
        self.queries.append(expr)
        if expr in self.failing or expr not in self._values:
            raise MetricsQueryError(f"no data for {expr}")
        value = self._values[expr]
        if math.isnan(value):
            raise UndefinedSampleError(f"undefined sample for {expr}")
        return value


# ---------------------------------------------------------------------------
# Runtime
# ---------------------------------------------------------------------------


class FakeRuntime(WorkloadRuntime):
    """Replica counts held in a dict; instances are synthesised from the count."""

    def __init__(self, replicas: dict[str, int]) -> None:
        self.replicas = dict(replicas)
        self.set_calls: list[tuple[str, int]] = []
        self.prepared: list[tuple[str, list[str]]] = []
        self.converge = True
        self.fail_get = False
        self.fail_set = False

    async def get_replica_count(self, service: str) -> int:
        if self.fail_get:
            raise RuntimeCommandError("runtime unreachable")
        return self.replicas[service]

    async def set_replica_count(self, service: str, replicas: int) -> None:
        self.set_calls.append((service, replicas))
        if self.fail_set:
            raise RuntimeCommandError("scale command failed")
        if self.converge:
            self.replicas[service] = replicas

    async def list_instances(self, service: str) -> list[Instance]:
        return [
            Instance(instance_id=f"{service}-{n}", host=f"10.0.0.{n}", port=80)
            for n in range(1, self.replicas[service] + 1)
        ]

    async def prepare_removal(self, service: str, instances: list[Instance]) -> None:
        self.prepared.append((service, [i.instance_id for i in instances]))


# ---------------------------------------------------------------------------
# Health checks and alerts
# ---------------------------------------------------------------------------


class FakeHealthChecker(HealthChecker):
    """Every instance is healthy unless its id is listed in ``unhealthy``."""

    def __init__(self) -> None:
        super().__init__(concurrency=8)
        self.unhealthy: set[str] = set()
        self.checked: list[str] = []

    async def check_all(
        self,
        service: str,
        instances: list[Instance],
        path: str,
        timeout: float,
    ) -> dict[Instance, bool]:
        self.checked.extend(i.instance_id for i in instances)
        return {i: i.instance_id not in self.unhealthy for i in instances}


class RecordingDispatcher:
    """Collects dispatched alerts instead of delivering them."""

    def __init__(self) -> None:
        self.alerts: list[Alert] = []

    def dispatch(self, alert: Alert) -> None:
        self.alerts.append(alert)

    def titles(self) -> list[str]:
        return [a.title for a in self.alerts]

    async def flush(self, timeout: float = 10.0) -> None:
        return None


# ---------------------------------------------------------------------------
# Routing layer
# ---------------------------------------------------------------------------


class MemoryUpstreamWriter:
    """Keeps upstream server sets in a dict instead of nginx files."""

    def __init__(self) -> None:
        self.upstreams: dict[str, list[str]] = {}
        self.reloads = 0
        self.fail = False

    async def apply(self, upstream: str, instances: list[Instance]) -> bool:
        if self.fail:
            raise ReconcileError(f"nginx reload failed for {upstream}")
        addresses = sorted({i.address for i in instances})
        if self.upstreams.get(upstream) == addresses:
            return False
        self.upstreams[upstream] = addresses
        self.reloads += 1
        return True


# ---------------------------------------------------------------------------
# Wired component graph
# ---------------------------------------------------------------------------


@dataclass
class World:
    """Real components wired around the fakes above."""

    config: ScaleWardenConfig
    clock: FakeClock
    metrics: FakeMetrics
    runtime: FakeRuntime
    health: FakeHealthChecker
    writer: MemoryUpstreamWriter
    dispatcher: RecordingDispatcher
    store: InMemoryStateStore
    governor: SafetyGovernor
    engine: ScalingEngine
    loop: ControlLoop


def build_world(tick_deadline: float = 5.0) -> World:
    services = [
        ServiceSpec(name="backend", min_replicas=1, max_replicas=5),
        ServiceSpec(name="frontend", min_replicas=1, max_replicas=3),
    ]
    config = ScaleWardenConfig(
        services=services,
        scaling=ScalingConfig(converge_timeout=0.2, poll_initial=0.01, poll_max=0.05),
        loop=LoopConfig(tick_interval=120.0, tick_deadline=tick_deadline),
        store=StoreConfig(kind="memory"),
    )
    clock = FakeClock()
    metrics = FakeMetrics()
    runtime = FakeRuntime({"backend": 1, "frontend": 1})
    health = FakeHealthChecker()
    writer = MemoryUpstreamWriter()
    dispatcher = RecordingDispatcher()
    store = InMemoryStateStore()

    collector = MetricsCollector(metrics, dispatcher=dispatcher)  # type: ignore[arg-type]
    policy = PolicyEngine(config.policy, clock=clock)
    governor = SafetyGovernor(services, config.safety, store, dispatcher=dispatcher, clock=clock)  # type: ignore[arg-type]
    reconciler = LoadBalancerReconciler(
        services,
        runtime,
        writer,  # type: ignore[arg-type]
        health,
        drain_seconds=0,
        dispatcher=dispatcher,  # type: ignore[arg-type]
    )
    engine = ScalingEngine(services, runtime, store, reconciler, config.scaling, clock=clock)
    loop = ControlLoop(
        services,
        collector=collector,
        policy=policy,
        governor=governor,
        engine=engine,
        reconciler=reconciler,
        runtime=runtime,
        store=store,
        config=config.loop,
        dispatcher=dispatcher,  # type: ignore[arg-type]
        clock=clock,
    )
    return World(
        config=config,
        clock=clock,
        metrics=metrics,
        runtime=runtime,
        health=health,
        writer=writer,
        dispatcher=dispatcher,
        store=store,
        governor=governor,
        engine=engine,
        loop=loop,
    )
