from __future__ import annotations

from ingest.core.values import clamp

# A run's weight halves after this many newer runs.
ROLLING_RATE_HALF_LIFE_RUNS = 3.0
ROLLING_RATE_ALPHA = 1.0 - 0.5 ** (1.0 / ROLLING_RATE_HALF_LIFE_RUNS)


def clamp_rate(value: float) -> float:
    return clamp(value, 0.0, 1.0)


def smooth_rate(prior: float | None, current: float, *, alpha: float = ROLLING_RATE_ALPHA) -> float:
    """Exponentially-decayed update of a [0, 1] rate; the first observation seeds it."""
    if prior is None:
        return clamp_rate(current)
    return clamp_rate(clamp_rate(prior) * (1.0 - alpha) + current * alpha)
