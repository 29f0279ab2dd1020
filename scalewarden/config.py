"""Configuration loading from environment variables.

Everything is read and validated once at startup. Any invalid value raises
ConfigError, which the bootstrap treats as fatal.
"""

from __future__ import annotations

import os
import re
import shlex

from scalewarden.models.config import (
    APIConfig,
    LoadBalancerConfig,
    LogConfig,
    LoopConfig,
    MetricsConfig,
    NotificationConfig,
    PeakHoursConfig,
    PolicyConfig,
    RuntimeConfig,
    SafetyConfig,
    ScaleWardenConfig,
    ScalingConfig,
    ServiceSpec,
    StoreConfig,
    ThresholdPair,
)

# Default replica limits for the stock backend and frontend services.
_DEFAULT_LIMITS: dict[str, tuple[int, int]] = {
    "backend": (1, 5),
    "frontend": (1, 3),
}


class ConfigError(ValueError):
    """Raised when configuration is invalid. Fatal at startup."""


def _env(key: str, default: str = "") -> str:
    return os.environ.get(f"SCALEWARDEN_{key}", default)


def _env_int(key: str, default: int, min_val: int | None = None) -> int:
    raw = _env(key, str(default))
    try:
        val = int(raw)
    except ValueError as exc:
        raise ConfigError(f"SCALEWARDEN_{key} must be an integer, got {raw!r}") from exc
    if min_val is not None and val < min_val:
        raise ConfigError(f"SCALEWARDEN_{key} must be >= {min_val}, got {val}")
    return val


def _env_float(key: str, default: float, min_val: float | None = None) -> float:
    raw = _env(key, str(default))
    try:
        val = float(raw)
    except ValueError as exc:
        raise ConfigError(f"SCALEWARDEN_{key} must be a number, got {raw!r}") from exc
    if min_val is not None and val < min_val:
        raise ConfigError(f"SCALEWARDEN_{key} must be >= {min_val}, got {val}")
    return val


def _env_command(key: str, default: str) -> list[str]:
    return shlex.split(_env(key, default))


def _validate_time_window(value: str) -> str:
    if not re.match(r"^[0-9]+(s|m|h)$", value):
        raise ConfigError(f"Invalid time window format: {value}")
    return value


def _validate_clock(value: str) -> str:
    match = re.match(r"^([01][0-9]|2[0-3]):([0-5][0-9])$", value)
    if not match:
        raise ConfigError(f"Invalid HH:MM clock value: {value}")
    return value


def _validate_log_level(value: str) -> str:
    valid = {"debug", "info", "warning", "error"}
    if value.lower() not in valid:
        raise ConfigError(f"Invalid log level: {value}. Must be one of {valid}")
    return value.lower()


def _validate_choice(key: str, value: str, choices: set[str]) -> str:
    if value not in choices:
        raise ConfigError(f"SCALEWARDEN_{key} must be one of {sorted(choices)}, got {value!r}")
    return value


def _thresholds(signal: str, up_default: float, down_default: float) -> ThresholdPair:
    pair = ThresholdPair(
        scale_up=_env_float(f"{signal}_SCALE_UP", up_default),
        scale_down=_env_float(f"{signal}_SCALE_DOWN", down_default),
    )
    validate_thresholds(signal, pair)
    return pair


def validate_thresholds(signal: str, pair: ThresholdPair) -> None:
    """Reject a threshold pair whose scale-up bound is not above scale-down."""
    if pair.scale_up <= pair.scale_down:
        raise ConfigError(
            f"{signal}_SCALE_UP ({pair.scale_up}) must be greater than "
            f"{signal}_SCALE_DOWN ({pair.scale_down})"
        )


def _load_service(name: str) -> ServiceSpec:
    key = re.sub(r"[^A-Z0-9]", "_", name.upper())
    min_default, max_default = _DEFAULT_LIMITS.get(name, (1, 1))
    spec = ServiceSpec(
        name=name,
        min_replicas=_env_int(f"SERVICE_{key}_MIN_REPLICAS", min_default, min_val=0),
        max_replicas=_env_int(f"SERVICE_{key}_MAX_REPLICAS", max_default, min_val=1),
        health_check_path=_env(f"SERVICE_{key}_HEALTH_CHECK_PATH", "/health"),
        health_check_timeout=_env_float(f"SERVICE_{key}_HEALTH_CHECK_TIMEOUT", 5.0, min_val=0.1),
        instance_port=_env_int(f"SERVICE_{key}_PORT", 80, min_val=1),
        upstream_name=_env(f"SERVICE_{key}_UPSTREAM", ""),
    )
    if spec.min_replicas > spec.max_replicas:
        raise ConfigError(
            f"Service {name}: min_replicas ({spec.min_replicas}) exceeds max_replicas ({spec.max_replicas})"
        )
    if not spec.health_check_path.startswith("/"):
        raise ConfigError(f"Service {name}: health check path must start with '/'")
    return spec


def validate_config(config: ScaleWardenConfig) -> ScaleWardenConfig:
    """Cross-field checks shared by load_config() and programmatic construction."""
    if not config.services:
        raise ConfigError("At least one service must be configured")
    names = [spec.name for spec in config.services]
    if len(set(names)) != len(names):
        raise ConfigError(f"Duplicate service names in {names}")

    policy = config.policy
    validate_thresholds("CPU", policy.cpu)
    validate_thresholds("MEM", policy.memory)
    validate_thresholds("REQ", policy.request_rate)
    if policy.peak_hours.multiplier <= 0:
        raise ConfigError("PEAK_MULTIPLIER must be positive")

    floor = config.safety.emergency_floor_replicas
    for spec in config.services:
        if floor > spec.max_replicas:
            raise ConfigError(
                f"EMERGENCY_FLOOR_REPLICAS ({floor}) exceeds max_replicas of {spec.name} ({spec.max_replicas})"
            )

    if config.scaling.poll_initial > config.scaling.poll_max:
        raise ConfigError("CONVERGE_POLL_INITIAL must not exceed CONVERGE_POLL_MAX")
    if config.loop.tick_deadline <= 0:
        raise ConfigError("TICK_DEADLINE must be positive")
    if not config.loadbalancer.reload_command:
        raise ConfigError("NGINX_RELOAD_COMMAND must not be empty")
    return config


def load_config() -> ScaleWardenConfig:
    """Load configuration from SCALEWARDEN_* environment variables."""
    service_names = [s.strip() for s in _env("SERVICES", "backend,frontend").split(",") if s.strip()]
    state_dir = _env("STATE_DIR", "/var/lib/scalewarden")

    config = ScaleWardenConfig(
        services=[_load_service(name) for name in service_names],
        policy=PolicyConfig(
            cpu=_thresholds("CPU", 70.0, 30.0),
            memory=_thresholds("MEM", 80.0, 40.0),
            request_rate=_thresholds("REQ", 100.0, 20.0),
            response_time_threshold_ms=_env_float("RESPONSE_TIME_THRESHOLD_MS", 2000.0, min_val=0),
            error_rate_threshold_pct=_env_float("ERROR_RATE_THRESHOLD_PCT", 5.0, min_val=0),
            peak_hours=PeakHoursConfig(
                start=_validate_clock(_env("PEAK_HOURS_START", "08:00")),
                end=_validate_clock(_env("PEAK_HOURS_END", "20:00")),
                multiplier=_env_float("PEAK_MULTIPLIER", 1.5),
            ),
        ),
        safety=SafetyConfig(
            cooldown_seconds=_env_int("COOLDOWN_SECONDS", 300, min_val=0),
            emergency_cpu_threshold=_env_float("EMERGENCY_CPU_THRESHOLD", 90.0, min_val=0),
            emergency_mem_threshold=_env_float("EMERGENCY_MEM_THRESHOLD", 95.0, min_val=0),
            emergency_floor_replicas=_env_int("EMERGENCY_FLOOR_REPLICAS", 1, min_val=0),
        ),
        scaling=ScalingConfig(
            converge_timeout=_env_float("CONVERGE_TIMEOUT", 60.0, min_val=1),
            poll_initial=_env_float("CONVERGE_POLL_INITIAL", 1.0, min_val=0.01),
            poll_max=_env_float("CONVERGE_POLL_MAX", 5.0, min_val=0.01),
        ),
        metrics=MetricsConfig(
            prometheus_url=_env("PROMETHEUS_URL", "http://localhost:9090"),
            query_timeout=_env_float("METRICS_QUERY_TIMEOUT", 5.0, min_val=0.1),
            window=_validate_time_window(_env("METRICS_WINDOW", "5m")),
            failure_alert_after=_env_int("METRICS_FAILURE_ALERT_AFTER", 3, min_val=1),
        ),
        runtime=RuntimeConfig(
            kind=_validate_choice("RUNTIME", _env("RUNTIME", "compose"), {"compose", "kubernetes"}),
            compose_file=_env("COMPOSE_FILE", "docker-compose.prod.yml"),
            compose_project=_env("COMPOSE_PROJECT", ""),
            namespace=_env("K8S_NAMESPACE", "default"),
            command_timeout=_env_float("RUNTIME_COMMAND_TIMEOUT", 30.0, min_val=1),
        ),
        loadbalancer=LoadBalancerConfig(
            upstreams_dir=_env("NGINX_UPSTREAMS_DIR", "nginx/upstreams"),
            reload_command=_env_command("NGINX_RELOAD_COMMAND", "nginx -s reload"),
            test_command=_env_command("NGINX_TEST_COMMAND", ""),
            command_timeout=_env_float("NGINX_COMMAND_TIMEOUT", 15.0, min_val=1),
            drain_seconds=_env_float("DRAIN_SECONDS", 10.0, min_val=0),
            health_check_concurrency=_env_int("HEALTH_CHECK_CONCURRENCY", 8, min_val=1),
        ),
        loop=LoopConfig(
            tick_interval=_env_float("TICK_INTERVAL", 120.0, min_val=1),
            tick_deadline=_env_float("TICK_DEADLINE", 90.0, min_val=1),
        ),
        store=StoreConfig(
            kind=_validate_choice("STORE", _env("STORE", "file"), {"file", "memory"}),
            state_dir=state_dir,
        ),
        notifications=NotificationConfig(
            webhook_secret_ref=_env("NOTIFICATIONS_WEBHOOK_SECRET_REF", ""),
            log_file=_env("NOTIFICATIONS_LOG_FILE", ""),
        ),
        api=APIConfig(
            port=_env_int("API_PORT", 8080, min_val=1),
        ),
        log=LogConfig(
            level=_validate_log_level(_env("LOG_LEVEL", "info")),
        ),
    )
    return validate_config(config)
