"""Prometheus instrumentation for the control loop itself."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

ticks_total = Counter(
    "scalewarden_ticks_total",
    "Control loop ticks by result",
    ["result"],
)

tick_duration_seconds = Histogram(
    "scalewarden_tick_duration_seconds",
    "Wall-clock duration of a control loop tick",
    buckets=(0.5, 1, 2.5, 5, 10, 30, 60, 90, 120),
)

last_successful_tick_timestamp = Gauge(
    "scalewarden_last_successful_tick_timestamp_seconds",
    "Unix time of the last tick that completed within its deadline",
)

scaling_actions_total = Counter(
    "scalewarden_scaling_actions_total",
    "Scaling actions executed by the engine",
    ["service", "action", "result"],
)

vetoes_total = Counter(
    "scalewarden_vetoes_total",
    "Decisions vetoed by the safety governor",
    ["service", "check"],
)

governor_mode = Gauge(
    "scalewarden_governor_emergency",
    "1 while the safety governor is in emergency mode",
)

replicas = Gauge(
    "scalewarden_replicas",
    "Last observed replica count per service",
    ["service"],
)

metric_query_failures_total = Counter(
    "scalewarden_metric_query_failures_total",
    "Metrics backend queries that degraded to a neutral value",
    ["signal"],
)

health_probe_failures_total = Counter(
    "scalewarden_health_probe_failures_total",
    "Instance health probes that failed",
    ["service"],
)

upstream_reloads_total = Counter(
    "scalewarden_upstream_reloads_total",
    "nginx upstream rewrites by result",
    ["service", "result"],
)

notifications_total = Counter(
    "scalewarden_notifications_total",
    "Alert deliveries per channel",
    ["channel", "success"],
)
