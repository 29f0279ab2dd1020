"""Safety package: bounds, overrides, cooldown and the emergency brake."""

from scalewarden.safety.governor import OverrideRejectedError, SafetyGovernor

__all__ = ["OverrideRejectedError", "SafetyGovernor"]
