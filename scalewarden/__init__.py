"""ScaleWarden: metric-driven autoscaling control loop with safety rails."""

__version__ = "0.1.0"
