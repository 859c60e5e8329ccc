import logging
from collections import defaultdict
from dataclasses import dataclass, field

import numpy as np

from .config import (
    PROFILE_FETCH_CHUNK_SIZE,
    PROFILE_MAX_INTERACTIONS,
    PROFILE_MAX_LIKED_SAMPLES,
    PROFILE_MIN_SIGNAL_TAGS,
)
from .database import load_recent_interactions, load_samples_batch, load_user_likes
from .utils import make_rng
from .weights import DEFAULT_WEIGHTS, ScoringWeights

logger = logging.getLogger(__name__)


@dataclass
class TagPreferences:
    """Per-user tag interest vector, rebuilt on every request."""
    weights: dict[str, float] = field(default_factory=dict)
    liked_ids: list[str] = field(default_factory=list)
    signal_tags: int = 0

    @property
    def has_signal(self) -> bool:
        return self.signal_tags >= PROFILE_MIN_SIGNAL_TAGS and bool(self.weights)

    def top_tags(self, n: int) -> list[str]:
        """Tags by descending weight; ties resolved alphabetically."""
        return [t for t, _ in sorted(self.weights.items(), key=lambda x: (-x[1], x[0]))[:n]]


def _sample_liked_ids(liked_ids: list[str], limit: int, rng: np.random.Generator) -> list[str]:
    """Uniform sample without replacement, bounding how many samples we read."""
    if len(liked_ids) <= limit:
        return list(liked_ids)
    picks = rng.choice(len(liked_ids), size=limit, replace=False)
    return [liked_ids[i] for i in sorted(picks)]


def _accumulate_likes(
    tag_counts: dict[str, float],
    liked_sample_ids: list[str],
    weights: ScoringWeights,
) -> float:
    samples = load_samples_batch(liked_sample_ids, chunk_size=PROFILE_FETCH_CHUNK_SIZE)
    total = 0.0
    for sample in samples.values():
        for tag in sample['tags']:
            tag_counts[tag] += weights.preference_like
            total += weights.preference_like
    return total


def _accumulate_history(
    tag_counts: dict[str, float],
    user_id: str,
    weights: ScoringWeights,
) -> float:
    records = load_recent_interactions(
        user_id, limit=PROFILE_MAX_INTERACTIONS, types=('view', 'download')
    )
    if not records:
        return 0.0

    # One weight per sample: a download outranks any number of views
    per_sample: dict[str, float] = {}
    for record in records:
        weight = weights.preference_download if record['type'] == 'download' else weights.preference_view
        per_sample[record['sample_id']] = max(per_sample.get(record['sample_id'], 0.0), weight)

    samples = load_samples_batch(list(per_sample), chunk_size=PROFILE_FETCH_CHUNK_SIZE)
    total = 0.0
    for sample_id, sample in samples.items():
        weight = per_sample[sample_id]
        for tag in sample['tags']:
            tag_counts[tag] += weight
            total += weight
    return total


def build_tag_preferences(
    user_id: str,
    weights: ScoringWeights = DEFAULT_WEIGHTS,
    rng: np.random.Generator | None = None,
) -> TagPreferences:
    """
    Build a weighted tag-interest map for a user.

    Signals:
    - Up to 10 liked samples (sampled at random): +3 per tag
    - Up to 10 recent interaction records: +2 per tag for a download, +1 for a view

    Counts are normalized by the total weight and jittered by a random
    factor in [0.8, 1.2] so repeated calls rotate near-equal tags. A tag
    whose count is zero gets the small baseline weight instead.

    The weights map is empty when fewer than 2 distinct tags carry signal;
    callers treat that as "no usable profile".
    """
    rng = rng if rng is not None else make_rng()
    liked_ids = load_user_likes(user_id)

    tag_counts: dict[str, float] = defaultdict(float)
    total = 0.0
    if liked_ids:
        selected = _sample_liked_ids(liked_ids, PROFILE_MAX_LIKED_SAMPLES, rng)
        total += _accumulate_likes(tag_counts, selected, weights)
    total += _accumulate_history(tag_counts, user_id, weights)

    signal_tags = sum(1 for count in tag_counts.values() if count > 0)
    if signal_tags < PROFILE_MIN_SIGNAL_TAGS:
        logger.debug(f"Profile for {user_id} has {signal_tags} signal tags; not enough for personalization")
        return TagPreferences(weights={}, liked_ids=liked_ids, signal_tags=signal_tags)

    tags = sorted(tag_counts)
    counts = np.array([tag_counts[t] for t in tags], dtype=float)
    jitter = rng.uniform(weights.jitter_min, weights.jitter_max, size=len(tags))
    normalized = np.where(
        counts > 0,
        counts / total * jitter if total > 0 else 0.0,
        weights.baseline_weight,
    )

    preferences = {tag: float(value) for tag, value in zip(tags, normalized)}
    return TagPreferences(weights=preferences, liked_ids=liked_ids, signal_tags=signal_tags)
