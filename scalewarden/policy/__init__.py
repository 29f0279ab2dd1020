"""Policy package: threshold voting with peak-hours adjustment."""

from scalewarden.policy.engine import PeakHours, PolicyEngine, vote

__all__ = ["PeakHours", "PolicyEngine", "vote"]
