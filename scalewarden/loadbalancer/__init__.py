"""Load balancer layer for ScaleWarden.

Submodules:
    health     -- HealthChecker: bounded-concurrency HTTP probes.
    nginx      -- NginxUpstreamWriter: atomic upstream files and graceful reloads.
    reconciler -- LoadBalancerReconciler: health-gated upstream sets and drains.
"""

from scalewarden.loadbalancer.health import HealthChecker
from scalewarden.loadbalancer.nginx import NginxUpstreamWriter, ReconcileError, render_upstream
from scalewarden.loadbalancer.reconciler import LoadBalancerReconciler

__all__ = [
    "HealthChecker",
    "LoadBalancerReconciler",
    "NginxUpstreamWriter",
    "ReconcileError",
    "render_upstream",
]
