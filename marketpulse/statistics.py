"""Statistical primitives shared by every anomaly detector."""

import math
from collections import deque
from dataclasses import dataclass, field


def _finite(values: list[float]) -> list[float]:
    return [v for v in values if isinstance(v, (int, float)) and math.isfinite(v)]


def mean(values: list[float]) -> float:
    """Arithmetic mean of the finite values, 0.0 for an empty sequence."""
    vals = _finite(values)
    if not vals:
        return 0.0
    return math.fsum(vals) / len(vals)


def stddev(values: list[float], mean_value: float | None = None) -> float:
    """
    Population standard deviation of the finite values.

    Population (divide by N) is used everywhere so that all detectors
    agree on what a z-score means.
    """
    vals = _finite(values)
    if not vals:
        return 0.0
    mu = mean(vals) if mean_value is None else mean_value
    variance = math.fsum((v - mu) ** 2 for v in vals) / len(vals)
    return math.sqrt(variance)


def zscore(sample: float, mean_value: float, std: float) -> float:
    """
    Z = (sample - mean) / std

    Returns 0.0 when std is zero or any input is non-finite, so that a flat
    baseline never propagates NaN/Infinity into severity decisions.
    """
    if not all(math.isfinite(x) for x in (sample, mean_value, std)):
        return 0.0
    if std == 0:
        return 0.0
    return (sample - mean_value) / std


def percentile(values: list[float], pct: float) -> float:
    """Percentile (0-100) with linear interpolation between closest ranks."""
    vals = sorted(_finite(values))
    if not vals:
        return 0.0
    if len(vals) == 1:
        return vals[0]

    pct = min(100.0, max(0.0, pct))
    index = (pct / 100) * (len(vals) - 1)
    lower = math.floor(index)
    upper = math.ceil(index)
    if lower == upper:
        return vals[lower]
    weight = index - lower
    return vals[lower] * (1 - weight) + vals[upper] * weight


def percentile_rank(values: list[float], sample: float) -> float:
    """Share of values (0-100) that are less than or equal to sample."""
    vals = _finite(values)
    if not vals or not math.isfinite(sample):
        return 0.0
    return 100.0 * sum(1 for v in vals if v <= sample) / len(vals)


@dataclass
class DistributionStats:
    """Summary of a baseline distribution."""

    mean: float = 0.0
    std: float = 0.0
    min: float = 0.0
    max: float = 0.0
    percentile90: float = 0.0
    percentile99: float = 0.0
    count: int = 0


def distribution_stats(values: list[float]) -> DistributionStats:
    vals = _finite(values)
    if not vals:
        return DistributionStats()

    mu = mean(vals)
    return DistributionStats(
        mean=mu,
        std=stddev(vals, mu),
        min=min(vals),
        max=max(vals),
        percentile90=percentile(vals, 90),
        percentile99=percentile(vals, 99),
        count=len(vals),
    )


@dataclass
class Observation:
    """A single timestamped item held by a RollingWindow."""

    timestamp: int  # epoch ms
    value: object


@dataclass
class RollingWindow:
    """A time-based sliding window of observations, trimmed against an explicit clock."""

    duration_ms: int
    max_items: int | None = None
    observations: deque = field(default_factory=deque)

    def add(self, value: object, timestamp: int) -> None:
        """Add an observation, keeping the deque ordered by timestamp."""
        obs = Observation(timestamp=timestamp, value=value)
        if not self.observations or self.observations[-1].timestamp <= timestamp:
            self.observations.append(obs)
        else:
            # Out-of-order arrival: insert at the right position
            items = list(self.observations)
            idx = len(items)
            while idx > 0 and items[idx - 1].timestamp > timestamp:
                idx -= 1
            items.insert(idx, obs)
            self.observations = deque(items)

        if self.max_items is not None:
            while len(self.observations) > self.max_items:
                self.observations.popleft()

    def trim(self, now: int) -> int:
        """Remove observations older than now - duration_ms, return how many were dropped."""
        cutoff = now - self.duration_ms
        dropped = 0
        while self.observations and self.observations[0].timestamp < cutoff:
            self.observations.popleft()
            dropped += 1
        return dropped

    def values(self, now: int | None = None) -> list:
        """Return observation values, trimming first when a clock value is given."""
        if now is not None:
            self.trim(now)
        return [obs.value for obs in self.observations]

    def __len__(self) -> int:
        return len(self.observations)
