import argparse
import atexit
import logging
import re
from datetime import date

from .config import DEFAULT_RECOMMENDATION_COUNT, DEFAULT_TOP_OWNERS, INTERACTION_TYPES, POPULARITY_PERIODS
from .database import (
    NotFoundError,
    add_sample,
    add_user,
    backfill_sample_stats,
    close_pool,
    get_db,
    init_db,
)
from .featured import get_daily_featured, select_daily_featured
from .interactions import record_download, record_interaction, toggle_like
from .popularity import (
    get_owner_popularity,
    get_sample_popularity,
    recompute_sample_popularity,
    rollup_owner,
    sweep_owner_popularity,
    top_owners,
)
from .profile import build_tag_preferences
from .recommender import SampleRecommender
from .service import run_daily_jobs
from .utils import make_rng
from .weights import load_scoring_weights

logger = logging.getLogger(__name__)

# Register cleanup on exit
atexit.register(close_pool)


def _validate_id(value: str) -> str:
    """
    Validate a sample or user id.
    Raises ValueError on characters that would break the "<sample>_<type>_<user>" record key.
    """
    cleaned = value.strip()
    if not cleaned or not re.match(r'^[A-Za-z0-9-]+$', cleaned):
        raise ValueError(f"Invalid id: {value}")
    return cleaned


def _parse_tags(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [t.strip() for t in raw.split(",") if t.strip()]


def _log_popularity(label: str, scores: dict) -> None:
    logger.info(f"\nPopularity for {label}")
    for period in POPULARITY_PERIODS:
        logger.info(f"  {period:>8}: {scores.get(period, 0):g}")


def cmd_init_db(args: argparse.Namespace) -> None:
    """Create tables and indexes."""
    init_db()
    logger.info("Database initialized")


def cmd_add_sample(args: argparse.Namespace) -> None:
    """Register a sample (stand-in for the upload flow)."""
    sample_id = _validate_id(args.sample_id)
    owner_id = _validate_id(args.owner)
    add_user(owner_id)
    add_sample(sample_id, owner_id, tags=_parse_tags(args.tags), title=args.title)
    logger.info(f"Added sample {sample_id} for {owner_id}")


def cmd_add_user(args: argparse.Namespace) -> None:
    user_id = _validate_id(args.user_id)
    add_user(user_id)
    logger.info(f"Added user {user_id}")


def cmd_record(args: argparse.Namespace) -> None:
    """Record a view/like/download."""
    sample_id = _validate_id(args.sample_id)
    user_id = _validate_id(args.user) if args.user else None
    weights = load_scoring_weights()

    try:
        if args.type == "download" and not args.remove:
            counted = record_download(sample_id, user_id=user_id, weights=weights)
            if not counted:
                logger.info(f"Download of {sample_id} by {user_id} was already counted")
                return
        else:
            record_interaction(sample_id, args.type, user_id=user_id, is_removal=args.remove, weights=weights)
    except NotFoundError as e:
        logger.error(str(e))
        return

    _log_popularity(sample_id, get_sample_popularity(sample_id).as_dict())


def cmd_like(args: argparse.Namespace) -> None:
    """Toggle a user's like on a sample."""
    user_id = _validate_id(args.user_id)
    sample_id = _validate_id(args.sample_id)
    try:
        liked = toggle_like(user_id, sample_id, weights=load_scoring_weights())
    except NotFoundError as e:
        logger.error(str(e))
        return
    logger.info(f"{user_id} {'liked' if liked else 'unliked'} {sample_id}")


def cmd_popularity(args: argparse.Namespace) -> None:
    """Show (optionally recompute) a sample's popularity."""
    sample_id = _validate_id(args.sample_id)
    try:
        if args.recompute:
            popularity = recompute_sample_popularity(sample_id, weights=load_scoring_weights())
        else:
            popularity = get_sample_popularity(sample_id)
    except NotFoundError as e:
        logger.error(str(e))
        return
    _log_popularity(sample_id, popularity.as_dict())


def cmd_owner_popularity(args: argparse.Namespace) -> None:
    owner_id = _validate_id(args.owner_id)
    _log_popularity(owner_id, get_owner_popularity(owner_id).as_dict())


def cmd_rollup(args: argparse.Namespace) -> None:
    """Recompute one owner's totals from their samples' stored scores."""
    owner_id = _validate_id(args.owner_id)
    _log_popularity(owner_id, rollup_owner(owner_id).as_dict())


def cmd_sweep(args: argparse.Namespace) -> None:
    """Full popularity sweep over every owner."""
    results = sweep_owner_popularity(weights=load_scoring_weights(), show_progress=True)
    logger.info(f"Updated heat scores for {len(results)} owners")


def cmd_profile(args: argparse.Namespace) -> None:
    """Show a user's tag preferences."""
    user_id = _validate_id(args.user_id)
    preferences = build_tag_preferences(user_id, weights=load_scoring_weights(), rng=make_rng(args.seed))

    logger.info(f"\nTag preferences for {user_id}")
    logger.info(f"  Likes: {len(preferences.liked_ids)}, signal tags: {preferences.signal_tags}")
    if not preferences.has_signal:
        logger.info("  Not enough signal; recommendations will use trending samples")
        return
    for tag in preferences.top_tags(10):
        logger.info(f"  {tag}: {preferences.weights[tag]:.3f}")


def cmd_recommend(args: argparse.Namespace) -> None:
    """Generate recommendations."""
    user_id = _validate_id(args.user_id) if args.user_id else None
    recommender = SampleRecommender(weights=load_scoring_weights(), seed=args.seed)
    recs = recommender.recommend(user_id, n=args.limit)

    if not recs:
        logger.info("No recommendations available")
        return

    logger.info(f"\nRecommendations for {user_id or 'anonymous'}")
    for i, rec in enumerate(recs, 1):
        title = rec.sample.get('title') or rec.sample_id
        tags = ", ".join(rec.sample['tags'])
        logger.info(f"{i:2}. {title} [{tags}] ({rec.relevance_score:.3f}) - {rec.reason}")


def cmd_featured(args: argparse.Namespace) -> None:
    """Select (or show) the daily featured sample."""
    weights = load_scoring_weights()
    if args.date:
        day = date.fromisoformat(args.date)
        featured = get_daily_featured(day) if args.show else select_daily_featured(day=day, weights=weights)
    else:
        featured = select_daily_featured(weights=weights)

    if featured is None:
        logger.info("No featured sample")
        return
    logger.info(f"Featured for {featured.date}: {featured.sample_id} (score {featured.score:g})")


def cmd_top_owners(args: argparse.Namespace) -> None:
    leaders = top_owners(period=args.period, limit=args.limit)
    if not leaders:
        logger.info("No owners with a positive score")
        return
    logger.info(f"\nTop owners ({args.period})")
    for i, (owner_id, owner_score) in enumerate(leaders, 1):
        logger.info(f"{i:2}. {owner_id}: {owner_score:g}")


def cmd_backfill_stats(args: argparse.Namespace) -> None:
    """Initialize stats on samples stored without them."""
    updated = backfill_sample_stats(load_scoring_weights().popularity_like)
    logger.info(f"Initialization complete! Updated {updated} samples.")


def cmd_daily(args: argparse.Namespace) -> None:
    """Run the scheduled daily jobs (sweep + featured selection)."""
    report = run_daily_jobs(show_progress=True)
    logger.info(f"Owners updated: {report.owners_updated}")
    if report.featured:
        logger.info(f"Featured for {report.featured.date}: {report.featured.sample_id}")


def cmd_stats(args: argparse.Namespace) -> None:
    """Show database statistics."""
    with get_db(read_only=True) as conn:
        sample_count = conn.execute("SELECT COUNT(*) FROM samples").fetchone()[0]
        user_count = conn.execute("SELECT COUNT(*) FROM users").fetchone()[0]
        interaction_count = conn.execute("SELECT COUNT(*) FROM interactions").fetchone()[0]
        like_count = conn.execute("SELECT COUNT(*) FROM user_likes").fetchone()[0]

    logger.info("\nDatabase Statistics:")
    logger.info(f"  Samples: {sample_count}")
    logger.info(f"  Users: {user_count}")
    logger.info(f"  Interaction records: {interaction_count}")
    logger.info(f"  Likes: {like_count}")


def main():
    parser = argparse.ArgumentParser(description="Sample popularity and recommendations")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init-db", help="Create database tables")
    init_parser.set_defaults(func=cmd_init_db)

    add_sample_parser = subparsers.add_parser("add-sample", help="Register a sample")
    add_sample_parser.add_argument("sample_id")
    add_sample_parser.add_argument("--owner", required=True, help="Owner user id")
    add_sample_parser.add_argument("--tags", help="Comma-separated tags")
    add_sample_parser.add_argument("--title")
    add_sample_parser.set_defaults(func=cmd_add_sample)

    add_user_parser = subparsers.add_parser("add-user", help="Register a user profile")
    add_user_parser.add_argument("user_id")
    add_user_parser.set_defaults(func=cmd_add_user)

    record_parser = subparsers.add_parser("record", help="Record a view/like/download")
    record_parser.add_argument("sample_id")
    record_parser.add_argument("type", choices=INTERACTION_TYPES)
    record_parser.add_argument("--user", help="User id the interaction is attributed to")
    record_parser.add_argument("--remove", action="store_true", help="Record a removal (e.g. unlike)")
    record_parser.set_defaults(func=cmd_record)

    like_parser = subparsers.add_parser("like", help="Toggle a like")
    like_parser.add_argument("user_id")
    like_parser.add_argument("sample_id")
    like_parser.set_defaults(func=cmd_like)

    pop_parser = subparsers.add_parser("popularity", help="Show a sample's popularity")
    pop_parser.add_argument("sample_id")
    pop_parser.add_argument("--recompute", action="store_true", help="Recompute from counters first")
    pop_parser.set_defaults(func=cmd_popularity)

    owner_pop_parser = subparsers.add_parser("owner-popularity", help="Show an owner's popularity")
    owner_pop_parser.add_argument("owner_id")
    owner_pop_parser.set_defaults(func=cmd_owner_popularity)

    rollup_parser = subparsers.add_parser("rollup", help="Recompute one owner's totals")
    rollup_parser.add_argument("owner_id")
    rollup_parser.set_defaults(func=cmd_rollup)

    sweep_parser = subparsers.add_parser("sweep", help="Recompute every owner's totals")
    sweep_parser.set_defaults(func=cmd_sweep)

    profile_parser = subparsers.add_parser("profile", help="Show a user's tag preferences")
    profile_parser.add_argument("user_id")
    profile_parser.add_argument("--seed", type=int, help="Seed for reproducible sampling")
    profile_parser.set_defaults(func=cmd_profile)

    rec_parser = subparsers.add_parser("recommend", help="Generate recommendations")
    rec_parser.add_argument("user_id", nargs="?", help="User id (omit for trending)")
    rec_parser.add_argument("--limit", type=int, default=DEFAULT_RECOMMENDATION_COUNT)
    rec_parser.add_argument("--seed", type=int, help="Seed for reproducible output")
    rec_parser.set_defaults(func=cmd_recommend)

    featured_parser = subparsers.add_parser("featured", help="Select the daily featured sample")
    featured_parser.add_argument("--date", help="UTC day (YYYY-MM-DD); defaults to the configured lag")
    featured_parser.add_argument("--show", action="store_true", help="Show the stored pick instead of selecting")
    featured_parser.set_defaults(func=cmd_featured)

    top_parser = subparsers.add_parser("top-owners", help="Owner leaderboard")
    top_parser.add_argument("--period", choices=POPULARITY_PERIODS, default="weekly")
    top_parser.add_argument("--limit", type=int, default=DEFAULT_TOP_OWNERS)
    top_parser.set_defaults(func=cmd_top_owners)

    backfill_parser = subparsers.add_parser("backfill-stats", help="Initialize stats on legacy samples")
    backfill_parser.set_defaults(func=cmd_backfill_stats)

    daily_parser = subparsers.add_parser("daily", help="Run the scheduled daily jobs")
    daily_parser.set_defaults(func=cmd_daily)

    stats_parser = subparsers.add_parser("stats", help="Show database statistics")
    stats_parser.set_defaults(func=cmd_stats)

    args = parser.parse_args()

    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if args.command != "init-db":
        init_db()

    try:
        args.func(args)
    except ValueError as e:
        logger.error(str(e))


if __name__ == "__main__":
    main()
