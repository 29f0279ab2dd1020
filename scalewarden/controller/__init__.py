"""Control loop orchestration for ScaleWarden."""

from scalewarden.controller.loop import STALE_AFTER_INTERVALS, ControlLoop

__all__ = ["STALE_AFTER_INTERVALS", "ControlLoop"]
