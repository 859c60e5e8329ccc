"""
Popularity scoring for samples and their owners.

A sample's score for a window is ``likes*5 + downloads*3 + views*1`` over the
counter bucket for that window (today, this ISO week, this month) or over the
running totals for all time. Owner scores are plain sums over the owner's
samples.
"""
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime

from tqdm import tqdm

from .config import DEFAULT_TOP_OWNERS
from .database import (
    SCORE_COLUMNS,
    SampleNotFoundError,
    fetch_buckets,
    fetch_sample,
    format_timestamp,
    get_db,
    load_owner_scores,
    owner_ids,
    run_in_transaction,
    samples_by_owner,
    top_owner_rows,
)
from .periods import bucket_keys, utc_now
from .weights import DEFAULT_WEIGHTS, ScoringWeights

logger = logging.getLogger(__name__)


@dataclass
class Popularity:
    daily: float = 0
    weekly: float = 0
    monthly: float = 0
    all_time: float = 0
    last_calculated: str | None = None

    def as_dict(self) -> dict[str, float]:
        return {
            'daily': self.daily,
            'weekly': self.weekly,
            'monthly': self.monthly,
            'allTime': self.all_time,
        }

    @classmethod
    def from_scores(cls, scores: dict, stamp_key: str = 'lastCalculated') -> "Popularity":
        return cls(
            daily=scores.get('daily', 0) or 0,
            weekly=scores.get('weekly', 0) or 0,
            monthly=scores.get('monthly', 0) or 0,
            all_time=scores.get('allTime', 0) or 0,
            last_calculated=scores.get(stamp_key),
        )


def score(bucket: dict | None, weights: ScoringWeights = DEFAULT_WEIGHTS) -> float:
    """
    Popularity of one counter bucket.

    Missing fields count as zero, so ``score({}) == 0``.
    """
    bucket = bucket or {}
    return (
        (bucket.get('likes') or 0) * weights.popularity_like
        + (bucket.get('downloads') or 0) * weights.popularity_download
        + (bucket.get('views') or 0) * weights.popularity_view
    )


def _write_sample_scores(
    conn: sqlite3.Connection,
    sample_id: str,
    now: datetime,
    weights: ScoringWeights,
) -> Popularity:
    sample = fetch_sample(conn, sample_id)
    if sample is None:
        raise SampleNotFoundError(sample_id)

    keys = bucket_keys(now)
    buckets = fetch_buckets(conn, sample_id, keys.as_dict())
    popularity = Popularity(
        daily=score(buckets['day'], weights),
        weekly=score(buckets['week'], weights),
        monthly=score(buckets['month'], weights),
        all_time=score(sample['stats'], weights),
        last_calculated=format_timestamp(now),
    )
    conn.execute("""
        UPDATE samples
        SET score_daily = ?, score_weekly = ?, score_monthly = ?, score_all_time = ?,
            score_calculated_at = ?
        WHERE id = ?
    """, (
        popularity.daily, popularity.weekly, popularity.monthly, popularity.all_time,
        popularity.last_calculated, sample_id,
    ))
    return popularity


def recompute_sample_popularity(
    sample_id: str,
    now: datetime | None = None,
    weights: ScoringWeights = DEFAULT_WEIGHTS,
) -> Popularity:
    """
    Recompute and store the four popularity scores of one sample.

    Reads the counters and writes the scores in a single transaction.
    Raises SampleNotFoundError if the sample does not exist.
    """
    now = now or utc_now()
    popularity = run_in_transaction(_write_sample_scores, sample_id, now, weights)
    logger.debug(f"Recomputed popularity for {sample_id}: {popularity.as_dict()}")
    return popularity


def get_sample_popularity(sample_id: str) -> Popularity:
    """Stored popularity of a sample (no recomputation)."""
    with get_db(read_only=True) as conn:
        sample = fetch_sample(conn, sample_id)
    if sample is None:
        raise SampleNotFoundError(sample_id)
    return Popularity.from_scores(sample['popularity'])


def _sum_scores(samples: list[dict]) -> Popularity:
    total = Popularity()
    for sample in samples:
        scores = sample['popularity']
        total.daily += scores['daily']
        total.weekly += scores['weekly']
        total.monthly += scores['monthly']
        total.all_time += scores['allTime']
    return total


def _store_owner_scores(conn: sqlite3.Connection, owner_id: str, totals: Popularity) -> None:
    conn.execute("""
        INSERT INTO users (id, score_daily, score_weekly, score_monthly, score_all_time, last_popularity_update)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            score_daily = excluded.score_daily,
            score_weekly = excluded.score_weekly,
            score_monthly = excluded.score_monthly,
            score_all_time = excluded.score_all_time,
            last_popularity_update = excluded.last_popularity_update
    """, (
        owner_id, totals.daily, totals.weekly, totals.monthly, totals.all_time,
        totals.last_calculated,
    ))


def rollup_owner(owner_id: str, now: datetime | None = None) -> Popularity:
    """
    Sum the stored scores of every sample owned by ``owner_id`` into the
    owner's profile.

    Not transactional: a concurrent write to a sibling sample may be missed
    until the next sweep.
    """
    now = now or utc_now()
    with get_db(read_only=True) as conn:
        samples = samples_by_owner(conn, owner_id)

    totals = _sum_scores(samples)
    totals.last_calculated = format_timestamp(now)
    with get_db() as conn:
        _store_owner_scores(conn, owner_id, totals)
    logger.debug(f"Rolled up {len(samples)} samples for owner {owner_id}: {totals.as_dict()}")
    return totals


def _sweep_owner(conn: sqlite3.Connection, owner_id: str, now: datetime, weights: ScoringWeights) -> Popularity:
    samples = samples_by_owner(conn, owner_id)
    for sample in samples:
        fresh = _write_sample_scores(conn, sample['id'], now, weights)
        sample['popularity'] = {**fresh.as_dict(), 'lastCalculated': fresh.last_calculated}

    totals = _sum_scores(samples)
    totals.last_calculated = format_timestamp(now)
    _store_owner_scores(conn, owner_id, totals)
    return totals


def sweep_owner_popularity(
    now: datetime | None = None,
    weights: ScoringWeights = DEFAULT_WEIGHTS,
    show_progress: bool = False,
) -> dict[str, Popularity]:
    """
    Daily full sweep: recompute every sample's windowed scores for ``now``
    and rebuild every owner's totals from scratch.

    Stale daily/weekly/monthly scores decay here once their window has
    passed, and any drift left by the opportunistic rollup is repaired.
    One owner failing is logged and does not stop the sweep.
    """
    now = now or utc_now()
    owners = owner_ids()
    results: dict[str, Popularity] = {}
    failures = 0

    for owner_id in tqdm(owners, desc="Owners", disable=not show_progress):
        try:
            results[owner_id] = run_in_transaction(_sweep_owner, owner_id, now, weights)
        except Exception as e:
            failures += 1
            logger.error(f"Popularity sweep failed for owner {owner_id}: {e}")

    logger.info(f"Updated popularity for {len(results)} owners ({failures} failed)")
    return results


def get_owner_popularity(owner_id: str) -> Popularity:
    """Stored owner totals; an owner never rolled up scores zero everywhere."""
    scores = load_owner_scores(owner_id)
    if scores is None:
        return Popularity()
    return Popularity.from_scores(scores, stamp_key='lastUpdated')


def top_owners(period: str = 'weekly', limit: int = DEFAULT_TOP_OWNERS) -> list[tuple[str, float]]:
    """Leaderboard of owners with a positive score for ``period``."""
    if period not in SCORE_COLUMNS:
        raise ValueError(f"Unknown popularity period: {period}")
    return [(row['id'], row['score']) for row in top_owner_rows(period, limit)]
