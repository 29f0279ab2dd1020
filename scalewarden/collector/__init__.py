"""Collector package for ScaleWarden.

Submodules
----------
prometheus -- PrometheusClient: instant-query client over httpx.
collector  -- MetricsCollector: per-service five-signal snapshots and the
              cluster-wide CPU/memory snapshot used by the emergency gate.
"""

from scalewarden.collector.collector import MetricsCollector
from scalewarden.collector.prometheus import MetricsQueryError, PrometheusClient, UndefinedSampleError

__all__ = ["MetricsCollector", "MetricsQueryError", "PrometheusClient", "UndefinedSampleError"]
