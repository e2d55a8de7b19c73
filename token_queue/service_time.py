from __future__ import annotations

# Service time helpers for the simulated counters.
#
# Service durations are drawn in *minutes* (the unit every figure in the core
# uses) from an exponential distribution around the department's mean, then
# compressed into wall-clock seconds with a time scale:
#   sleep_seconds = minutes * 60 / time_scale
#
# The manager runs on a matching scaled clock, so recorded wait and service
# minutes read like real ones even when a demo "day" lasts a few minutes.

import random
from datetime import datetime
from typing import Callable


def sample_service_minutes(
    *, mean_minutes: float, min_minutes: float = 0.5, rng: random.Random | None = None
) -> float:
    """Draw one service duration in minutes (never below `min_minutes`)."""
    if mean_minutes <= 0:
        raise ValueError("mean_minutes must be > 0")
    if min_minutes < 0:
        raise ValueError("min_minutes must be >= 0")

    r = rng or random
    return max(min_minutes, float(r.expovariate(1.0 / mean_minutes)))


def to_wall_seconds(minutes: float, *, time_scale: float = 1.0) -> float:
    if minutes < 0:
        raise ValueError("minutes must be >= 0")
    if time_scale <= 0:
        raise ValueError("time_scale must be > 0")
    return minutes * 60.0 / time_scale


def scaled_clock(time_scale: float = 1.0, *, now: Callable[[], datetime] = datetime.now) -> Callable[[], datetime]:
    """A clock that advances `time_scale` times faster than `now`, starting from it."""
    if time_scale <= 0:
        raise ValueError("time_scale must be > 0")
    start = now()
    if time_scale == 1.0:
        return now

    def clock() -> datetime:
        return start + (now() - start) * time_scale

    return clock
