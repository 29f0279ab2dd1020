"""Logging and Prometheus instrumentation for ScaleWarden."""
