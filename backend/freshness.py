# freshness.py — Signal freshness classification
"""
Maps a last-seen timestamp onto FRESH / STALE / EXPIRED / NO_SIGNAL.

Every freshness display in the service (agent heartbeats, node metrics)
goes through classify(), so the thresholds live in one place:

    age <= stale_after                      FRESH
    stale_after < age <= 4 x cycle          STALE
    age > 4 x cycle                         EXPIRED

stale_after defaults to one cycle interval. Timestamps in the future
(clock skew between reporter and server) are treated as FRESH.
"""
from datetime import datetime, timedelta, timezone
from enum import Enum as PyEnum
from typing import Optional

EXPIRY_MULTIPLIER = 4


class Freshness(str, PyEnum):
    FRESH = "FRESH"
    STALE = "STALE"
    EXPIRED = "EXPIRED"
    NO_SIGNAL = "NO_SIGNAL"


def _aware(ts: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything we store is UTC
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


def signal_age(last_seen: Optional[datetime], now: Optional[datetime] = None) -> Optional[timedelta]:
    if last_seen is None:
        return None
    now = _aware(now) if now else datetime.now(timezone.utc)
    return now - _aware(last_seen)


def classify(
    last_seen: Optional[datetime],
    cycle_interval: timedelta,
    stale_after: Optional[timedelta] = None,
    now: Optional[datetime] = None,
) -> Freshness:
    """Classify a signal by its age."""
    age = signal_age(last_seen, now)
    if age is None:
        return Freshness.NO_SIGNAL

    expiry = cycle_interval * EXPIRY_MULTIPLIER
    if age > expiry:
        return Freshness.EXPIRED

    threshold = min(stale_after if stale_after is not None else cycle_interval, expiry)
    if age > threshold:
        return Freshness.STALE
    return Freshness.FRESH


def is_automated_signal(
    last_seen: Optional[datetime],
    stale_after: timedelta,
    now: Optional[datetime] = None,
) -> bool:
    """True when a signal exists and arrived within one staleness threshold.

    A scheduler-driven reporter keeps its signal inside this window; a signal
    older than that was most likely triggered by hand.
    """
    age = signal_age(last_seen, now)
    if age is None:
        return False
    return age <= stale_after
