from dataclasses import dataclass
import logging
from typing import Iterable

import numpy as np

from .config import (
    RECOMMEND_FETCH_MULTIPLIER,
    RECOMMEND_TAGS_PER_CALL,
    RECOMMEND_TOP_TAGS,
    REASON_TAG_TEMPLATE,
    REASON_TRENDING,
)
from .database import samples_by_tag, top_samples
from .profile import TagPreferences, build_tag_preferences
from .utils import make_rng
from .weights import DEFAULT_WEIGHTS, ScoringWeights

logger = logging.getLogger(__name__)


@dataclass
class Recommendation:
    sample: dict
    relevance_score: float
    reason: str

    @property
    def sample_id(self) -> str:
        return self.sample['id']

    @property
    def is_trending(self) -> bool:
        return self.reason == REASON_TRENDING


class SampleRecommender:
    """
    Tag-based sample recommendations with a trending fallback.

    Stateless apart from its random generator: each call rebuilds the
    user's tag preferences, rotates which of the top tags it queries and
    occasionally shuffles the result, so consecutive calls differ. Pass
    ``seed`` (or a ``numpy.random.Generator``) for reproducible output.
    """

    def __init__(
        self,
        weights: ScoringWeights | None = None,
        rng: np.random.Generator | None = None,
        seed: int | None = None,
    ):
        self.weights = weights or DEFAULT_WEIGHTS
        self.rng = rng if rng is not None else make_rng(seed)

    def trending(self, n: int, exclude: Iterable[str] = ()) -> list[Recommendation]:
        """Top ``n`` samples by weekly popularity, skipping ``exclude``."""
        if n <= 0:
            return []
        excluded = set(exclude)
        results: list[Recommendation] = []
        offset = 0
        page_size = n + len(excluded)

        while len(results) < n:
            page = top_samples('weekly', limit=page_size, offset=offset)
            for sample in page:
                if sample['id'] in excluded:
                    continue
                results.append(Recommendation(
                    sample=sample,
                    relevance_score=self.weights.trending_relevance,
                    reason=REASON_TRENDING,
                ))
                if len(results) >= n:
                    break
            if len(page) < page_size:
                break
            offset += page_size

        return results

    def _select_tags(self, preferences: TagPreferences) -> list[str]:
        top = preferences.top_tags(RECOMMEND_TOP_TAGS)
        rotated = self.rng.permutation(len(top))
        return [top[i] for i in rotated[:RECOMMEND_TAGS_PER_CALL]]

    def _relevance(self, sample: dict, preferences: TagPreferences) -> float:
        return sum(preferences.weights.get(tag, 0.0) for tag in set(sample['tags']))

    def _tag_candidates(
        self,
        tags: list[str],
        n: int,
        excluded: set[str],
        preferences: TagPreferences,
    ) -> list[Recommendation]:
        candidates: dict[str, Recommendation] = {}
        for tag in tags:
            for sample in samples_by_tag(tag, limit=n * RECOMMEND_FETCH_MULTIPLIER):
                sample_id = sample['id']
                if sample_id in excluded or sample_id in candidates:
                    continue
                candidates[sample_id] = Recommendation(
                    sample=sample,
                    relevance_score=self._relevance(sample, preferences),
                    reason=REASON_TAG_TEMPLATE.format(tag),
                )
        return list(candidates.values())

    def _order(self, recs: list[Recommendation], n: int) -> list[Recommendation]:
        if recs and self.rng.random() < self.weights.shuffle_probability:
            order = self.rng.permutation(len(recs))
            recs = [recs[i] for i in order]
        else:
            # Trending top-ups always rank below personalized picks
            recs = sorted(recs, key=lambda r: (r.is_trending, -r.relevance_score, r.sample_id))
        return recs[:n]

    def recommend(
        self,
        user_id: str | None,
        n: int = 10,
        previously_shown: Iterable[str] = (),
        preferences: TagPreferences | None = None,
    ) -> list[Recommendation]:
        """
        Generate up to ``n`` recommendations for a user.

        Falls back to weekly trending when there is no user, the profile has
        fewer than 2 signal tags, or building the profile fails. Liked samples
        are never recommended; ``previously_shown`` is excluded unless this
        call's coin flip allows a few repeats for continuity.

        Errors from the trending queries themselves propagate.
        """
        if n <= 0:
            return []

        if preferences is None and user_id:
            try:
                preferences = build_tag_preferences(user_id, weights=self.weights, rng=self.rng)
            except Exception as e:
                logger.warning(f"Preference profile failed for {user_id}, using trending: {e}")
                preferences = None

        excluded = set(preferences.liked_ids) if preferences else set()
        allow_repeats = self.rng.random() < self.weights.repeat_probability
        if not allow_repeats:
            excluded.update(previously_shown)

        if preferences is None or not preferences.has_signal:
            return self.trending(n, exclude=excluded)

        try:
            tags = self._select_tags(preferences)
            recs = self._tag_candidates(tags, n, excluded, preferences)
        except Exception as e:
            logger.warning(f"Tag-based candidates failed for {user_id}, using trending: {e}")
            return self.trending(n, exclude=excluded)

        if len(recs) < n:
            seen = excluded | {r.sample_id for r in recs}
            recs.extend(self.trending(n - len(recs), exclude=seen))

        return self._order(recs, n)
