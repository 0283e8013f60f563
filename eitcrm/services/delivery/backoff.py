"""Retry scheduling policy for failed deliveries."""

import random
from datetime import timedelta
from typing import Callable


def backoff_delay(
    attempt: int,
    base_seconds: float = 30.0,
    cap_seconds: float = 6 * 60 * 60,
    jitter_seconds: float = 5.0,
    rng: Callable[[], float] = random.random,
) -> timedelta:
    """Delay before the retry that follows failed attempt number `attempt`.

    Doubles from `base_seconds` per attempt, adds up to `jitter_seconds` of
    random spread so a batch that failed together does not retry together, and
    never exceeds `cap_seconds`. Attempts below 1 count as the first attempt.
    """

    exponent = max(0, attempt - 1)
    # Avoid float overflow for absurd attempt numbers; the cap wins long before.
    exponential = cap_seconds if exponent >= 64 else base_seconds * (2**exponent)
    jitter = rng() * jitter_seconds
    return timedelta(seconds=min(cap_seconds, exponential + jitter))
