from __future__ import annotations

"""Arrival models for the customer generator.

For a Poisson arrival process with rate λ (customers/second):
- The number of arrivals in a time window follows a Poisson distribution.
- The *inter-arrival times* are i.i.d. Exponential(λ).

Each arriving customer also needs a department, a priority and a service
type. Priorities are skewed towards the default: most customers are
ordinary, a few are urgent (VIP, elderly, appointments).
"""

import random
from typing import Sequence

from .models import DEFAULT_PRIORITY, MAX_PRIORITY


def sample_exponential_interarrival(*, rate_per_sec: float, rng: random.Random | None = None) -> float:
    """Sample the next inter-arrival time (seconds) for a Poisson process.

    Args:
        rate_per_sec: λ, the arrival rate in customers/second. Must be > 0.
        rng: optional RNG (useful for deterministic tests).

    Returns:
        A positive float representing seconds until the next arrival.
    """
    if rate_per_sec <= 0:
        raise ValueError("rate_per_sec must be > 0")

    r = rng or random
    return float(r.expovariate(rate_per_sec))


def sample_priority(*, urgent_share: float = 0.1, rng: random.Random | None = None) -> int:
    """Default priority for most customers, a random higher one for `urgent_share` of them."""
    if not 0.0 <= urgent_share <= 1.0:
        raise ValueError("urgent_share must be within [0, 1]")

    r = rng or random
    if r.random() >= urgent_share:
        return DEFAULT_PRIORITY
    return r.randint(DEFAULT_PRIORITY + 1, MAX_PRIORITY)


def sample_choice(options: Sequence[str], *, rng: random.Random | None = None) -> str:
    if not options:
        raise ValueError("options must not be empty")
    r = rng or random
    return options[r.randrange(len(options))]
