"""PolicyEngine: metric snapshot -> provisional scaling decision.

Each load signal votes independently against its threshold pair. The votes
combine asymmetrically:

* any load signal voting ``scale_up``  -> ``scale_up``
* all three load signals ``scale_down`` -> ``scale_down``
* otherwise                            -> ``no_scale``

p95 latency and error rate never vote. Crossing their thresholds only adds
a warning to the decision.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, time

from scalewarden.models.config import PeakHoursConfig, PolicyConfig, ThresholdPair
from scalewarden.models.scaling import MetricSnapshot, ScalingAction, ScalingDecision, Signal
from scalewarden.observability.logging import get_logger

_logger = get_logger("policy")

LOAD_SIGNALS: tuple[Signal, ...] = (Signal.CPU, Signal.MEMORY, Signal.REQUEST_RATE)

_UNITS: dict[Signal, str] = {
    Signal.CPU: "%",
    Signal.MEMORY: "%",
    Signal.REQUEST_RATE: " req/min",
}


def _parse_clock(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


class PeakHours:
    """Daily time window; ``start > end`` means the window spans midnight.

    Both bounds are exclusive.
    """

    def __init__(self, config: PeakHoursConfig) -> None:
        self.start = _parse_clock(config.start)
        self.end = _parse_clock(config.end)
        self.multiplier = config.multiplier

    def contains(self, moment: datetime) -> bool:
        now = moment.time().replace(second=0, microsecond=0)
        if self.start == self.end:
            return False
        if self.start < self.end:
            return self.start < now < self.end
        return now > self.start or now < self.end


def vote(value: float, thresholds: ThresholdPair, multiplier: float = 1.0) -> ScalingAction:
    """Compare one signal against its (possibly peak-adjusted) thresholds."""
    if value > thresholds.scale_up * multiplier:
        return ScalingAction.SCALE_UP
    if value < thresholds.scale_down * multiplier:
        return ScalingAction.SCALE_DOWN
    return ScalingAction.NO_SCALE


class PolicyEngine:
    """Maps a MetricSnapshot to a ScalingDecision.

    Args:
        config: Validated policy thresholds.
        clock:  Returns the local wall-clock time used for the peak-hours
                check. Defaults to ``datetime.now``.
    """

    def __init__(self, config: PolicyConfig, clock: Callable[[], datetime] | None = None) -> None:
        self._config = config
        self._peak = PeakHours(config.peak_hours)
        self._clock = clock or datetime.now
        self._thresholds: dict[Signal, ThresholdPair] = {
            Signal.CPU: config.cpu,
            Signal.MEMORY: config.memory,
            Signal.REQUEST_RATE: config.request_rate,
        }

    def is_peak(self, now: datetime | None = None) -> bool:
        return self._peak.contains(now or self._clock())

    def decide(self, snapshot: MetricSnapshot, now: datetime | None = None) -> ScalingDecision:
        peak = self.is_peak(now)
        multiplier = self._peak.multiplier if peak else 1.0

        values = {
            Signal.CPU: snapshot.cpu_pct,
            Signal.MEMORY: snapshot.mem_pct,
            Signal.REQUEST_RATE: snapshot.request_rate,
        }
        votes = {s: vote(values[s], self._thresholds[s], multiplier) for s in LOAD_SIGNALS}

        up = tuple(s for s in LOAD_SIGNALS if votes[s] == ScalingAction.SCALE_UP)
        if up:
            action = ScalingAction.SCALE_UP
            triggering = up
            reason = "High load: " + ", ".join(self._describe(s, values[s], "above", multiplier) for s in up)
        elif all(votes[s] == ScalingAction.SCALE_DOWN for s in LOAD_SIGNALS):
            action = ScalingAction.SCALE_DOWN
            triggering = LOAD_SIGNALS
            reason = "Low load: " + ", ".join(
                self._describe(s, values[s], "below", multiplier) for s in LOAD_SIGNALS
            )
        else:
            action = ScalingAction.NO_SCALE
            triggering = ()
            reason = "Load within thresholds"

        warnings = self._symptoms(snapshot)
        if peak:
            reason += f" (peak hours, thresholds x{multiplier:g})"
        if warnings:
            reason += "; " + "; ".join(warnings)

        decision = ScalingDecision(
            service=snapshot.service,
            action=action,
            reason=reason,
            triggering_signals=triggering,
            warnings=warnings,
            peak_hours=peak,
        )
        _logger.info(
            "policy_decision",
            service=snapshot.service,
            action=action.value,
            votes={s.value: v.value for s, v in votes.items()},
            peak_hours=peak,
            warnings=list(warnings),
        )
        return decision

    def _describe(self, signal: Signal, value: float, direction: str, multiplier: float) -> str:
        pair = self._thresholds[signal]
        bound = pair.scale_up if direction == "above" else pair.scale_down
        unit = _UNITS[signal]
        return f"{signal.value} {value:.1f}{unit} {direction} {bound * multiplier:g}{unit}"

    def _symptoms(self, snapshot: MetricSnapshot) -> tuple[str, ...]:
        warnings: list[str] = []
        if snapshot.p95_latency_ms > self._config.response_time_threshold_ms:
            warnings.append(
                f"high response time: p95 {snapshot.p95_latency_ms:.0f}ms > "
                f"{self._config.response_time_threshold_ms:g}ms"
            )
        if snapshot.error_rate_pct > self._config.error_rate_threshold_pct:
            warnings.append(
                f"high error rate: {snapshot.error_rate_pct:.1f}% > {self._config.error_rate_threshold_pct:g}%"
            )
        return tuple(warnings)
