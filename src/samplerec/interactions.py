"""
Interaction recording: views, likes and downloads against a sample.

Every recorded event bumps the sample's running total and the day / ISO week
/ month buckets for "now" in one transaction, optionally upserting the
per-user interaction record. Popularity recomputation and the owner rollup
run after commit and never undo a recorded interaction.
"""
import logging
import sqlite3
from datetime import datetime

from .config import INTERACTION_TYPES
from .database import (
    BUCKET_PERIODS,
    SampleNotFoundError,
    UserNotFoundError,
    format_timestamp,
    has_interaction,
    interaction_id,
    run_in_transaction,
    user_exists,
)
from .periods import bucket_keys, utc_now
from .popularity import recompute_sample_popularity, rollup_owner
from .weights import DEFAULT_WEIGHTS, ScoringWeights

logger = logging.getLogger(__name__)


def _counter_column(interaction_type: str) -> str:
    if interaction_type not in INTERACTION_TYPES:
        raise ValueError(
            f"Unknown interaction type '{interaction_type}' (expected one of {', '.join(INTERACTION_TYPES)})"
        )
    return f"{interaction_type}s"


def _apply_interaction(
    conn: sqlite3.Connection,
    sample_id: str,
    interaction_type: str,
    user_id: str | None,
    is_removal: bool,
    now: datetime,
) -> str:
    """Transaction body; returns the owner id of the touched sample."""
    column = _counter_column(interaction_type)

    row = conn.execute(
        "SELECT owner_id, has_stats FROM samples WHERE id = ?", (sample_id,)
    ).fetchone()
    if row is None:
        raise SampleNotFoundError(sample_id)

    if not row['has_stats']:
        conn.execute("""
            UPDATE samples SET has_stats = 1, views = 0, likes = 0, downloads = 0
            WHERE id = ?
        """, (sample_id,))

    delta = -1 if is_removal else 1
    # Counters are clamped at zero so a stray removal can't drive them negative
    conn.execute(
        f"UPDATE samples SET {column} = MAX(COALESCE({column}, 0) + ?, 0) WHERE id = ?",
        (delta, sample_id),
    )

    keys = bucket_keys(now).as_dict()
    for period in BUCKET_PERIODS:
        initial = max(delta, 0)
        conn.execute(f"""
            INSERT INTO sample_buckets (sample_id, period, bucket_key, {column})
            VALUES (?, ?, ?, ?)
            ON CONFLICT(sample_id, period, bucket_key) DO UPDATE SET
                {column} = MAX(COALESCE({column}, 0) + ?, 0)
        """, (sample_id, period, keys[period], initial, delta))

    if user_id:
        conn.execute("""
            INSERT INTO interactions (id, sample_id, user_id, type, is_removal, timestamp)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                is_removal = excluded.is_removal,
                timestamp = excluded.timestamp
        """, (
            interaction_id(sample_id, interaction_type, user_id),
            sample_id, user_id, interaction_type, int(is_removal), format_timestamp(now),
        ))

    return row['owner_id']


def _refresh_scores(sample_id: str, owner_id: str, now: datetime, weights: ScoringWeights) -> None:
    try:
        recompute_sample_popularity(sample_id, now=now, weights=weights)
    except Exception as e:
        logger.warning(f"Popularity recompute failed for {sample_id}; the daily sweep will repair it: {e}")
        return

    try:
        rollup_owner(owner_id, now=now)
    except Exception as e:
        logger.warning(f"Owner rollup failed for {owner_id}; the daily sweep will repair it: {e}")


def record_interaction(
    sample_id: str,
    interaction_type: str,
    user_id: str | None = None,
    is_removal: bool = False,
    now: datetime | None = None,
    weights: ScoringWeights = DEFAULT_WEIGHTS,
) -> bool:
    """
    Record one view/like/download (or its removal) against a sample.

    Raises:
        SampleNotFoundError: the sample does not exist; nothing is written.
        TransactionConflictError: the store stayed locked through every retry.
        ValueError: unknown interaction type.

    The recorder merges repeated events from the same user into one
    interaction record but does not decide whether an event should count;
    callers own that (see record_download / toggle_like).
    """
    if not sample_id:
        raise ValueError("sample_id is required")
    _counter_column(interaction_type)
    now = now or utc_now()

    owner_id = run_in_transaction(
        _apply_interaction, sample_id, interaction_type, user_id, is_removal, now
    )
    logger.debug(
        f"Recorded {'removal of ' if is_removal else ''}{interaction_type} on {sample_id}"
        + (f" by {user_id}" if user_id else "")
    )

    _refresh_scores(sample_id, owner_id, now, weights)
    return True


def record_view(
    sample_id: str,
    user_id: str | None = None,
    now: datetime | None = None,
    weights: ScoringWeights = DEFAULT_WEIGHTS,
) -> bool:
    """Count a view. Views are cheap and not de-duplicated here."""
    return record_interaction(sample_id, 'view', user_id=user_id, now=now, weights=weights)


def record_download(
    sample_id: str,
    user_id: str | None = None,
    now: datetime | None = None,
    weights: ScoringWeights = DEFAULT_WEIGHTS,
) -> bool:
    """
    Count a download toward popularity at most once per user.

    Returns False when this user's download was already counted. Anonymous
    downloads are always counted.
    """
    if user_id and has_interaction(sample_id, 'download', user_id):
        logger.debug(f"Download of {sample_id} by {user_id} already counted")
        return False
    return record_interaction(sample_id, 'download', user_id=user_id, now=now, weights=weights)


def _toggle_like_membership(
    conn: sqlite3.Connection, user_id: str, sample_id: str, now: datetime
) -> tuple[bool, str]:
    if not user_exists(conn, user_id):
        raise UserNotFoundError(user_id)
    if conn.execute("SELECT 1 FROM samples WHERE id = ?", (sample_id,)).fetchone() is None:
        raise SampleNotFoundError(sample_id)

    liked = conn.execute(
        "SELECT 1 FROM user_likes WHERE user_id = ? AND sample_id = ?", (user_id, sample_id)
    ).fetchone() is not None

    if liked:
        conn.execute("DELETE FROM user_likes WHERE user_id = ? AND sample_id = ?", (user_id, sample_id))
    else:
        conn.execute(
            "INSERT INTO user_likes (user_id, sample_id, liked_at) VALUES (?, ?, ?)",
            (user_id, sample_id, format_timestamp(now)),
        )
    owner_id = _apply_interaction(conn, sample_id, 'like', user_id, liked, now)
    return not liked, owner_id


def toggle_like(
    user_id: str,
    sample_id: str,
    now: datetime | None = None,
    weights: ScoringWeights = DEFAULT_WEIGHTS,
) -> bool:
    """
    Like or unlike a sample for a user; returns the new liked state.

    Membership in the user's like set decides the direction, so repeated
    calls alternate and the like counter never double counts. The like-set
    change and the counter update commit together.

    Raises UserNotFoundError / SampleNotFoundError when either side is missing.
    """
    now = now or utc_now()
    liked, owner_id = run_in_transaction(_toggle_like_membership, user_id, sample_id, now)
    _refresh_scores(sample_id, owner_id, now, weights)
    return liked
