"""Tier scheduling: next-run times, failure backoff, demotion and auto-tier recommendation."""

import math
import random
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

HOURLY = "hourly"
DAILY = "daily"
WEEKLY = "weekly"
VALID_TIERS = (HOURLY, DAILY, WEEKLY)

TIER_INTERVALS = {
    HOURLY: timedelta(hours=1),
    DAILY: timedelta(hours=24),
    WEEKLY: timedelta(hours=168),
}

TIER_DEMOTION = {
    HOURLY: DAILY,
    DAILY: WEEKLY,
    WEEKLY: WEEKLY,
}

MAX_BACKOFF_MINUTES = 24 * 60
BACKOFF_BASE_MINUTES = 5
PRICE_TOLERANCE = 1e-5

HOURLY_MIN_CHANGES_48H = 2
HOURLY_MIN_PCT_CHANGE_7D = 0.05


@dataclass
class PricePoint:
    """A price observation used for tier recommendation."""

    price: float
    scraped_at: datetime
    currency: Optional[str] = None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_tier(value: Optional[str], fallback: Optional[str] = None) -> Optional[str]:
    tier = str(value or "").strip().lower()
    return tier if tier in VALID_TIERS else fallback


def compute_next_scrape_at(
    tier: Optional[str],
    now: Optional[datetime] = None,
    min_jitter_minutes: int = 2,
    max_jitter_minutes: int = 10,
    rng: Optional[random.Random] = None,
) -> datetime:
    """
    Next run = now + tier interval + uniform jitter in whole minutes.

    The jitter spreads products of the same tier so they do not all come due together.
    """
    now = now or utcnow()
    interval = TIER_INTERVALS[normalize_tier(tier, DAILY)]
    low = max(0, min_jitter_minutes)
    high = max(low, max_jitter_minutes)
    jitter = (rng or random).randint(low, high)
    return now + interval + timedelta(minutes=jitter)


def compute_failure_backoff_minutes(consecutive_failures: int) -> int:
    """min(1440, 2^failures * 5) minutes; failures below 1 count as 1."""
    failures = max(1, int(consecutive_failures or 0))
    if failures >= 20:  # 2^20 * 5 is far past the cap
        return MAX_BACKOFF_MINUTES
    return min(MAX_BACKOFF_MINUTES, (2 ** failures) * BACKOFF_BASE_MINUTES)


def compute_failure_next_scrape_at(consecutive_failures: int, now: Optional[datetime] = None) -> datetime:
    now = now or utcnow()
    return now + timedelta(minutes=compute_failure_backoff_minutes(consecutive_failures))


def demote_tier(tier: Optional[str]) -> str:
    """hourly -> daily -> weekly; weekly is the floor."""
    return TIER_DEMOTION[normalize_tier(tier, DAILY)]


def prices_differ(a: Optional[float], b: Optional[float]) -> bool:
    """True when both prices are known and differ beyond tolerance, or either is unknown."""
    if a is None or b is None:
        return True
    return abs(float(a) - float(b)) > PRICE_TOLERANCE


def _as_aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _valid_points(history: Iterable[PricePoint]) -> list[PricePoint]:
    points = []
    for point in history or []:
        if point is None or point.scraped_at is None or point.price is None:
            continue
        try:
            price = float(point.price)
        except (TypeError, ValueError):
            continue
        if not math.isfinite(price):
            continue
        points.append(PricePoint(price=price, scraped_at=_as_aware(point.scraped_at), currency=point.currency))
    points.sort(key=lambda p: p.scraped_at, reverse=True)
    return points


def recommend_auto_tier(history: Iterable[PricePoint], now: Optional[datetime] = None) -> str:
    """
    Recommend a tier from recent price history.

    hourly: at least two price changes in the last 48h, or a >= 5% move over 7 days
    weekly: no price change in the last 30 days
    daily:  everything else, and whenever fewer than two points are known
    """
    rows = _valid_points(history)
    if len(rows) < 2:
        return DAILY

    now = _as_aware(now or utcnow())
    cutoff_48h = now - timedelta(hours=48)
    cutoff_7d = now - timedelta(days=7)
    cutoff_30d = now - timedelta(days=30)

    changes_48h = 0
    changes_30d = 0
    for current, previous in zip(rows, rows[1:]):
        if abs(current.price - previous.price) > PRICE_TOLERANCE:
            if current.scraped_at >= cutoff_48h:
                changes_48h += 1
            if current.scraped_at >= cutoff_30d:
                changes_30d += 1

    prices_7d = [row.price for row in rows if row.scraped_at >= cutoff_7d]
    pct_change_7d = 0.0
    if len(prices_7d) >= 2:
        newest, oldest = prices_7d[0], prices_7d[-1]
        if oldest > 0:
            pct_change_7d = abs((newest - oldest) / oldest)

    if changes_48h >= HOURLY_MIN_CHANGES_48H or pct_change_7d >= HOURLY_MIN_PCT_CHANGE_7D:
        return HOURLY
    if changes_30d == 0:
        return WEEKLY
    return DAILY
