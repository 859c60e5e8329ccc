"""
Operations exposed to the UI, upload and like flows.

SampleService wraps the recorder, the popularity queries and the
recommender, and remembers the last list shown to each user so a refresh
can steer away from it. run_daily_jobs is the entry point for the external
scheduler.
"""
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from .config import DEFAULT_RECOMMENDATION_COUNT, RECOMMENDATION_CACHE_USERS, REFRESH_DEBOUNCE_SECONDS
from .database import NotFoundError
from .featured import DailyFeatured, select_daily_featured
from .interactions import record_interaction
from .periods import utc_now
from .popularity import (
    Popularity,
    get_owner_popularity,
    get_sample_popularity,
    sweep_owner_popularity,
)
from .recommender import Recommendation, SampleRecommender
from .weights import ScoringWeights, load_scoring_weights

logger = logging.getLogger(__name__)


@dataclass
class RecommendationResult:
    items: list[Recommendation] = field(default_factory=list)
    error: str | None = None

    @property
    def sample_ids(self) -> list[str]:
        return [r.sample_id for r in self.items]


@dataclass
class _UserState:
    """What the service remembers about a user between calls."""
    result: RecommendationResult | None = None
    count: int = DEFAULT_RECOMMENDATION_COUNT
    refreshed_at: float | None = None


class SampleService:
    """
    Per-user state is kept for the ``max_users`` most recently active users;
    older entries are evicted, which only costs an evicted user the
    previous-list exclusion and the debounce on their next call.
    """

    def __init__(
        self,
        weights: ScoringWeights | None = None,
        recommender: SampleRecommender | None = None,
        debounce_seconds: float = REFRESH_DEBOUNCE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        max_users: int = RECOMMENDATION_CACHE_USERS,
    ):
        self.weights = weights or load_scoring_weights()
        self.recommender = recommender or SampleRecommender(weights=self.weights)
        self.debounce_seconds = debounce_seconds
        self.max_users = max_users
        self._clock = clock
        self._lock = threading.Lock()
        self._users: OrderedDict[str, _UserState] = OrderedDict()

    def _state(self, user_id: str) -> _UserState:
        """Fetch (or create) a user's state and mark it most recently used. Caller holds the lock."""
        state = self._users.get(user_id)
        if state is None:
            state = self._users[user_id] = _UserState()
            while len(self._users) > self.max_users:
                self._users.popitem(last=False)
        else:
            self._users.move_to_end(user_id)
        return state

    def record(
        self,
        sample_id: str,
        interaction_type: str,
        user_id: str | None = None,
        is_removal: bool = False,
    ) -> bool:
        """
        Record an interaction; False when the sample does not exist.

        Transaction conflicts that outlast the retries still raise.
        """
        try:
            return record_interaction(
                sample_id, interaction_type, user_id=user_id, is_removal=is_removal, weights=self.weights
            )
        except NotFoundError as e:
            logger.warning(str(e))
            return False

    def get_entity_popularity(self, sample_id: str) -> dict[str, float]:
        return get_sample_popularity(sample_id).as_dict()

    def get_owner_popularity(self, owner_id: str) -> dict[str, float]:
        return get_owner_popularity(owner_id).as_dict()

    def get_recommendations(
        self,
        user_id: str | None,
        count: int = DEFAULT_RECOMMENDATION_COUNT,
    ) -> RecommendationResult:
        """
        Recommendations for a user, avoiding the list they were last shown.

        Failures surface as an empty result carrying the error message.
        """
        shown: list[str] = []
        if user_id:
            with self._lock:
                previous = self._state(user_id).result
            shown = previous.sample_ids if previous else []

        try:
            items = self.recommender.recommend(user_id, count, previously_shown=shown)
            result = RecommendationResult(items=items)
        except Exception as e:
            logger.error(f"Error fetching recommendations for {user_id}: {e}")
            result = RecommendationResult(items=[], error=str(e))

        if user_id and result.error is None:
            with self._lock:
                state = self._state(user_id)
                state.result = result
                state.count = count
        return result

    def refresh_recommendations(
        self,
        user_id: str,
        count: int | None = None,
    ) -> RecommendationResult:
        """
        Regenerate a user's recommendations, at most once per debounce window.

        Calls inside the window return the cached list untouched.
        """
        now = self._clock()
        with self._lock:
            state = self._state(user_id)
            last = state.refreshed_at
            if last is not None and now - last < self.debounce_seconds and state.result is not None:
                logger.debug(f"Refresh for {user_id} debounced")
                return state.result
            state.refreshed_at = now
            count = count or state.count

        return self.get_recommendations(user_id, count)

    def remembered_users(self) -> list[str]:
        """Users with remembered state, least recently active first."""
        with self._lock:
            return list(self._users)


@dataclass
class DailyJobReport:
    owners_updated: int
    featured: DailyFeatured | None


def run_daily_jobs(
    now: datetime | None = None,
    weights: ScoringWeights | None = None,
    show_progress: bool = False,
) -> DailyJobReport:
    """Run the owner popularity sweep and the daily featured selection."""
    now = now or utc_now()
    weights = weights or load_scoring_weights()

    owners: dict[str, Popularity] = sweep_owner_popularity(now=now, weights=weights, show_progress=show_progress)
    featured = select_daily_featured(now=now, weights=weights)
    return DailyJobReport(owners_updated=len(owners), featured=featured)
