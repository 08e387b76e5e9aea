"""Tests for signal freshness classification."""
from datetime import datetime, timedelta, timezone

import pytest

from freshness import Freshness, classify, is_automated_signal, signal_age

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
CYCLE = timedelta(hours=2)


def test_no_signal_when_never_seen():
    assert classify(None, CYCLE, now=NOW) == Freshness.NO_SIGNAL


def test_fresh_within_one_cycle():
    assert classify(NOW - timedelta(hours=1), CYCLE, now=NOW) == Freshness.FRESH
    assert classify(NOW - CYCLE, CYCLE, now=NOW) == Freshness.FRESH


def test_stale_between_cycle_and_expiry():
    assert classify(NOW - timedelta(hours=3), CYCLE, now=NOW) == Freshness.STALE
    assert classify(NOW - timedelta(hours=8), CYCLE, now=NOW) == Freshness.STALE


def test_expired_beyond_four_cycles():
    assert classify(NOW - timedelta(hours=8, seconds=1), CYCLE, now=NOW) == Freshness.EXPIRED
    assert classify(NOW - timedelta(days=3), CYCLE, now=NOW) == Freshness.EXPIRED


def test_custom_stale_threshold():
    seen = NOW - timedelta(minutes=45)
    assert classify(seen, CYCLE, stale_after=timedelta(minutes=30), now=NOW) == Freshness.STALE
    assert classify(seen, CYCLE, stale_after=timedelta(hours=1), now=NOW) == Freshness.FRESH


def test_stale_threshold_never_exceeds_expiry():
    seen = NOW - timedelta(hours=9)
    assert classify(seen, CYCLE, stale_after=timedelta(days=1), now=NOW) == Freshness.EXPIRED


def test_future_timestamp_is_fresh():
    assert classify(NOW + timedelta(minutes=5), CYCLE, now=NOW) == Freshness.FRESH


def test_naive_timestamps_are_utc():
    naive = (NOW - timedelta(hours=3)).replace(tzinfo=None)
    assert classify(naive, CYCLE, now=NOW) == Freshness.STALE
    assert signal_age(naive, NOW) == timedelta(hours=3)


def test_automated_signal_detection():
    assert is_automated_signal(NOW - timedelta(minutes=30), CYCLE, now=NOW) is True
    assert is_automated_signal(NOW - timedelta(hours=5), CYCLE, now=NOW) is False
    assert is_automated_signal(None, CYCLE, now=NOW) is False


BANDS = [Freshness.FRESH, Freshness.STALE, Freshness.EXPIRED]


@pytest.mark.parametrize("stale_after", [None, timedelta(minutes=30), timedelta(days=1)])
def test_classification_only_moves_forward_as_time_passes(stale_after):
    seen = NOW
    results = [
        classify(seen, CYCLE, stale_after=stale_after, now=seen + timedelta(minutes=step * 5))
        for step in range(0, 12 * 12)
    ]
    ranks = [BANDS.index(r) for r in results]
    assert ranks == sorted(ranks)
    assert results[0] == Freshness.FRESH
    assert results[-1] == Freshness.EXPIRED
