"""Scaling execution for ScaleWarden."""

from scalewarden.scaling.engine import ScalingEngine, ScalingError

__all__ = ["ScalingEngine", "ScalingError"]
