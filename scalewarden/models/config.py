"""Configuration data structures."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class ServiceSpec:
    """Static per-service scaling configuration."""

    name: str
    min_replicas: int = 1
    max_replicas: int = 1
    health_check_path: str = "/health"
    health_check_timeout: float = 5.0
    instance_port: int = 80
    upstream_name: str = ""

    @property
    def upstream(self) -> str:
        return self.upstream_name or f"{self.name}_upstream"


@dataclass(frozen=True)
class ThresholdPair:
    """Scale-up / scale-down thresholds for a single signal."""

    scale_up: float
    scale_down: float


@dataclass
class PeakHoursConfig:
    """Time-of-day window during which thresholds are multiplied."""

    start: str = "08:00"
    end: str = "20:00"
    multiplier: float = 1.5


@dataclass
class PolicyConfig:
    """Policy engine thresholds."""

    cpu: ThresholdPair = field(default_factory=lambda: ThresholdPair(70.0, 30.0))
    memory: ThresholdPair = field(default_factory=lambda: ThresholdPair(80.0, 40.0))
    request_rate: ThresholdPair = field(default_factory=lambda: ThresholdPair(100.0, 20.0))
    response_time_threshold_ms: float = 2000.0
    error_rate_threshold_pct: float = 5.0
    peak_hours: PeakHoursConfig = field(default_factory=PeakHoursConfig)


@dataclass
class SafetyConfig:
    """Safety governor configuration."""

    cooldown_seconds: int = 300
    emergency_cpu_threshold: float = 90.0
    emergency_mem_threshold: float = 95.0
    emergency_floor_replicas: int = 1


@dataclass
class ScalingConfig:
    """Scaling engine convergence polling."""

    converge_timeout: float = 60.0
    poll_initial: float = 1.0
    poll_max: float = 5.0


@dataclass
class MetricsConfig:
    """Prometheus metrics backend configuration."""

    prometheus_url: str = "http://localhost:9090"
    query_timeout: float = 5.0
    window: str = "5m"
    failure_alert_after: int = 3


@dataclass
class RuntimeConfig:
    """Workload runtime backend configuration."""

    kind: str = "compose"
    compose_file: str = "docker-compose.prod.yml"
    compose_project: str = ""
    namespace: str = "default"
    command_timeout: float = 30.0


@dataclass
class LoadBalancerConfig:
    """nginx upstream reconciliation configuration."""

    upstreams_dir: str = "nginx/upstreams"
    reload_command: list[str] = field(default_factory=lambda: ["nginx", "-s", "reload"])
    test_command: list[str] = field(default_factory=list)
    command_timeout: float = 15.0
    drain_seconds: float = 10.0
    health_check_concurrency: int = 8


@dataclass
class LoopConfig:
    """Control loop cadence."""

    tick_interval: float = 120.0
    tick_deadline: float = 90.0


@dataclass
class StoreConfig:
    """State store backend."""

    kind: str = "file"
    state_dir: str = "/var/lib/scalewarden"


@dataclass
class NotificationConfig:
    """Notification system configuration."""

    webhook_secret_ref: str = ""
    log_file: str = ""


@dataclass
class APIConfig:
    """REST API configuration."""

    port: int = 8080


@dataclass
class LogConfig:
    """Logging configuration."""

    level: str = "info"


@dataclass
class ScaleWardenConfig:
    """Top-level ScaleWarden configuration."""

    services: list[ServiceSpec] = field(default_factory=list)
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    safety: SafetyConfig = field(default_factory=SafetyConfig)
    scaling: ScalingConfig = field(default_factory=ScalingConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    loadbalancer: LoadBalancerConfig = field(default_factory=LoadBalancerConfig)
    loop: LoopConfig = field(default_factory=LoopConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    api: APIConfig = field(default_factory=APIConfig)
    log: LogConfig = field(default_factory=LogConfig)

    def service(self, name: str) -> ServiceSpec | None:
        for spec in self.services:
            if spec.name == name:
                return spec
        return None
