"""Backoff policy: doubling from the base, jittered, capped."""

from datetime import timedelta

from eitcrm.services.delivery.backoff import backoff_delay


def test_first_attempt_within_base_plus_jitter():
    low = backoff_delay(1, rng=lambda: 0.0)
    high = backoff_delay(1, rng=lambda: 0.999)
    assert low == timedelta(seconds=30)
    assert timedelta(seconds=30) <= high <= timedelta(seconds=35)


def test_delay_doubles_per_attempt():
    delays = [backoff_delay(attempt, rng=lambda: 0.0) for attempt in range(1, 6)]
    assert [d.total_seconds() for d in delays] == [30, 60, 120, 240, 480]


def test_delay_never_exceeds_cap():
    cap = 6 * 60 * 60
    # 30s * 2**10 is the first doubling past six hours.
    for attempt in (11, 12, 50, 500):
        assert backoff_delay(attempt, rng=lambda: 1.0).total_seconds() == cap
    assert backoff_delay(10, rng=lambda: 1.0).total_seconds() == 30 * 2**9 + 5


def test_delay_never_decreases_with_attempts():
    delays = [backoff_delay(attempt, rng=lambda: 0.5) for attempt in range(1, 40)]
    assert delays == sorted(delays)
    assert delays[-1] == timedelta(hours=6)


def test_non_positive_attempt_counts_as_first():
    assert backoff_delay(0, rng=lambda: 0.0) == backoff_delay(1, rng=lambda: 0.0)
    assert backoff_delay(-3, rng=lambda: 0.0) == timedelta(seconds=30)


def test_custom_policy():
    delay = backoff_delay(3, base_seconds=10, cap_seconds=25, jitter_seconds=0)
    assert delay == timedelta(seconds=25)
