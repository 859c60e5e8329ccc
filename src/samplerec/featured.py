"""
Daily featured sample selection.

Once a day the scheduler picks the best sample uploaded on a past UTC day
(two days back by default, so its counters have had time to settle) and
stores it as that day's featured sample.
"""
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from .config import (
    FEATURED_LAG_DAYS,
    NOTIFICATION_TIMEOUT,
    NOTIFICATION_WEBHOOK_URL,
)
from .database import load_daily_featured, samples_created_between, save_daily_featured
from .periods import as_utc, day_key, utc_day_window, utc_now
from .popularity import score
from .weights import DEFAULT_WEIGHTS, ScoringWeights

logger = logging.getLogger(__name__)


@dataclass
class DailyFeatured:
    date: str
    sample_id: str
    score: float
    snapshot: dict


def send_notification(message: str) -> None:
    """Send a notification to a configured webhook (Discord/Slack-style)."""
    if not NOTIFICATION_WEBHOOK_URL:
        return

    try:
        import httpx

        httpx.post(
            NOTIFICATION_WEBHOOK_URL,
            json={"content": message},
            timeout=NOTIFICATION_TIMEOUT,
        )
    except Exception as exc:  # pragma: no cover - best-effort notifications
        logger.warning(f"Failed to send notification: {exc}")


def target_day(now: datetime | None = None, lag_days: int = FEATURED_LAG_DAYS) -> date:
    current = as_utc(now) if now is not None else utc_now()
    return current.date() - timedelta(days=lag_days)


def pick_featured(samples: list[dict], weights: ScoringWeights = DEFAULT_WEIGHTS) -> tuple[dict, float] | None:
    """
    Highest all-time score wins; ties go to the earliest upload, then the
    smallest id.
    """
    best = None
    best_key = None
    for sample in samples:
        sample_score = score(sample['stats'], weights)
        key = (-sample_score, sample['created_at'], sample['id'])
        if best_key is None or key < best_key:
            best, best_key = (sample, sample_score), key
    return best


def select_daily_featured(
    day: date | None = None,
    now: datetime | None = None,
    weights: ScoringWeights = DEFAULT_WEIGHTS,
    notify: bool = True,
) -> DailyFeatured | None:
    """
    Select and store the featured sample for ``day`` (default: lag days ago).

    Returns None when nothing was uploaded that day. A day that already has
    a featured sample keeps it; the stored record is returned unchanged.
    """
    day = day or target_day(now)
    key = day_key(day)

    existing = load_daily_featured(key)
    if existing:
        logger.info(f"Daily featured sample for {key} already selected ({existing['sample_id']})")
        return DailyFeatured(key, existing['sample_id'], existing['score'], existing['snapshot'])

    start, end = utc_day_window(day)
    samples = samples_created_between(start, end)
    if not samples:
        logger.info(f"No samples found for {key}")
        return None

    sample, sample_score = pick_featured(samples, weights)
    if not save_daily_featured(key, sample['id'], sample_score, sample):
        # Another run stored the day between our read and write
        stored = load_daily_featured(key)
        return DailyFeatured(key, stored['sample_id'], stored['score'], stored['snapshot'])

    logger.info(f"Daily featured sample for {key}: {sample['id']} (score {sample_score:g})")
    if notify:
        send_notification(f"Sample of the day for {key}: {sample.get('title') or sample['id']}")
    return DailyFeatured(key, sample['id'], sample_score, sample)


def get_daily_featured(day: date) -> DailyFeatured | None:
    record = load_daily_featured(day_key(day))
    if not record:
        return None
    return DailyFeatured(record['date'], record['sample_id'], record['score'], record['snapshot'])
