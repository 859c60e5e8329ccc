"""
Configuration constants for the sample popularity and recommendation system.

This module centralizes all magic numbers and configurable parameters.
Values can be overridden via environment variables or a scoring weights file.
"""
import os
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def _get_float_env(key: str, default: float, min_val: float = 0) -> float:
    """Float from the environment, clamped to `min_val`; invalid values fall back to `default`."""
    try:
        val = float(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


def _get_int_env(key: str, default: int, min_val: int = 1) -> int:
    """Integer counterpart of _get_float_env."""
    try:
        val = int(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


# Database Configuration
DB_PATH = Path(os.environ.get("SAMPLEREC_DB", "data/samplerec.db"))
SCORING_WEIGHTS_PATH = Path(os.environ.get("SAMPLEREC_WEIGHTS", "data/scoring_weights.json"))

# Transactions
TRANSACTION_MAX_RETRIES = _get_int_env("SAMPLEREC_TX_RETRIES", 5, min_val=1)
TRANSACTION_RETRY_DELAY = 0.05  # Seconds before the first retry, doubled each attempt
SQLITE_MAX_PARAMS = 900  # Leave room under SQLite's 999 parameter limit

# Interaction types understood by the recorder
INTERACTION_TYPES = ("view", "like", "download")

# Popularity periods, in the order they are reported
POPULARITY_PERIODS = ("daily", "weekly", "monthly", "allTime")

# Preference Profiler
PROFILE_MAX_LIKED_SAMPLES = 10      # Liked samples inspected per profile build
PROFILE_MAX_INTERACTIONS = 10       # Recent interaction records inspected
PROFILE_FETCH_CHUNK_SIZE = 10       # Fan-out limit for batched sample lookups
PROFILE_MIN_SIGNAL_TAGS = 2         # Below this the generator falls back to trending

# Recommendation Generator
RECOMMEND_TOP_TAGS = 5              # Candidate tags considered
RECOMMEND_TAGS_PER_CALL = 3         # Tags rotated in per call
RECOMMEND_FETCH_MULTIPLIER = 2      # Candidates fetched per tag = multiplier * n
DEFAULT_RECOMMENDATION_COUNT = 10
REFRESH_DEBOUNCE_SECONDS = _get_float_env("SAMPLEREC_REFRESH_DEBOUNCE", 2.0, min_val=0.0)
RECOMMENDATION_CACHE_USERS = _get_int_env("SAMPLEREC_RECOMMENDATION_CACHE_USERS", 10000, min_val=1)  # Users whose last list is remembered

# Reasons attached to recommendations
REASON_TRENDING = "trending"
REASON_TAG_TEMPLATE = "Based on your interest in {}"

# Daily Featured Selector
FEATURED_LAG_DAYS = _get_int_env("SAMPLEREC_FEATURED_LAG_DAYS", 2, min_val=0)

# Leaderboards
DEFAULT_TOP_OWNERS = 5

# Notifications (Discord/Slack-style webhook, optional)
NOTIFICATION_WEBHOOK_URL = os.environ.get("SAMPLEREC_WEBHOOK_URL", "")
NOTIFICATION_TIMEOUT = 10
