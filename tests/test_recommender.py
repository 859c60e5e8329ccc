import pytest

from conftest import NOW, set_scores
from samplerec import interactions, recommender
from samplerec.profile import TagPreferences
from samplerec.recommender import SampleRecommender
from samplerec.weights import ScoringWeights

ORDERED = ScoringWeights(shuffle_probability=0, repeat_probability=0)


@pytest.fixture
def catalog(seed_samples, fresh_db):
    seed_samples(
        {
            "a": ("alice", ["jazz"]),
            "b": ("alice", ["piano"]),
            "c": ("bob", ["rock"]),
            "d": ("bob", ["jazz", "piano"]),
            "e": ("carol", ["techno"]),
        },
        users=["u1"],
    )
    set_scores(fresh_db, "a", weekly=3, allTime=30)
    set_scores(fresh_db, "b", weekly=1, allTime=10)
    set_scores(fresh_db, "c", weekly=9, allTime=5)
    set_scores(fresh_db, "d", weekly=0, allTime=1)
    set_scores(fresh_db, "e", weekly=7, allTime=2)
    return fresh_db


def test_trending_fallback_without_user(catalog):
    recs = SampleRecommender(weights=ORDERED, seed=0).recommend(None, n=3)

    assert [r.sample_id for r in recs] == ["c", "e", "a"]
    assert all(r.reason == "trending" for r in recs)
    assert all(r.relevance_score == pytest.approx(0.3) for r in recs)


def test_no_signal_profile_gets_trending(catalog):
    interactions.toggle_like("u1", "e", now=NOW)  # one tag only

    recs = SampleRecommender(weights=ORDERED, seed=0).recommend("u1", n=3)

    # Liked samples are excluded even on the trending path
    assert [r.sample_id for r in recs] == ["c", "a", "b"]
    assert all(r.is_trending for r in recs)


def test_stronger_tag_ranks_first(catalog):
    prefs = TagPreferences(weights={"jazz": 0.6, "piano": 0.3}, signal_tags=2)

    recs = SampleRecommender(weights=ORDERED, seed=0).recommend("u1", n=3, preferences=prefs)

    ids = [r.sample_id for r in recs]
    # d carries both tags (0.9), a jazz (0.6), b piano (0.3)
    assert ids == ["d", "a", "b"]
    assert recs[1].reason == "Based on your interest in jazz"
    for rec in recs:
        assert set(rec.sample["tags"]) & {"jazz", "piano"}


def test_short_pool_is_topped_up_with_trending(catalog):
    prefs = TagPreferences(weights={"jazz": 0.6, "piano": 0.3}, signal_tags=2)

    recs = SampleRecommender(weights=ORDERED, seed=0).recommend("u1", n=5, preferences=prefs)

    assert [r.sample_id for r in recs] == ["d", "a", "b", "c", "e"]
    assert [r.is_trending for r in recs] == [False, False, False, True, True]
    assert recs[-1].relevance_score == pytest.approx(0.3)


def test_liked_samples_are_never_recommended(catalog):
    prefs = TagPreferences(weights={"jazz": 0.6, "piano": 0.3}, liked_ids=["d", "c"], signal_tags=2)

    recs = SampleRecommender(weights=ORDERED, seed=0).recommend("u1", n=5, preferences=prefs)

    ids = [r.sample_id for r in recs]
    assert "d" not in ids and "c" not in ids
    assert ids == ["a", "b", "e"]


def test_previously_shown_excluded_unless_repeats_allowed(catalog):
    prefs = TagPreferences(weights={"jazz": 0.6, "piano": 0.3}, signal_tags=2)

    fresh = SampleRecommender(weights=ORDERED, seed=0).recommend(
        "u1", n=2, previously_shown=["d"], preferences=prefs
    )
    assert [r.sample_id for r in fresh] == ["a", "b"]

    repeats = ScoringWeights(shuffle_probability=0, repeat_probability=1)
    again = SampleRecommender(weights=repeats, seed=0).recommend(
        "u1", n=2, previously_shown=["d"], preferences=prefs
    )
    assert [r.sample_id for r in again] == ["d", "a"]


def test_only_top_tags_are_queried(catalog, monkeypatch):
    prefs = TagPreferences(
        weights={"t1": 0.9, "t2": 0.8, "t3": 0.7, "t4": 0.6, "t5": 0.5, "jazz": 0.1},
        signal_tags=6,
    )
    queried = []

    def fake_samples_by_tag(tag, limit):
        queried.append((tag, limit))
        return []

    monkeypatch.setattr(recommender, "samples_by_tag", fake_samples_by_tag)

    SampleRecommender(weights=ORDERED, seed=5).recommend("u1", n=4, preferences=prefs)

    assert len(queried) == 3
    assert {tag for tag, _ in queried} <= {"t1", "t2", "t3", "t4", "t5"}
    assert all(limit == 8 for _, limit in queried)


def test_seed_makes_output_reproducible(catalog):
    interactions.toggle_like("u1", "a", now=NOW)
    interactions.record_download("d", user_id="u1", now=NOW)
    interactions.record_view("c", user_id="u1", now=NOW)

    first = SampleRecommender(seed=11).recommend("u1", n=4)
    second = SampleRecommender(seed=11).recommend("u1", n=4)

    assert [r.sample_id for r in first] == [r.sample_id for r in second]
    assert [r.reason for r in first] == [r.reason for r in second]


def test_profile_failure_falls_back_to_trending(catalog, monkeypatch):
    def broken(*args, **kwargs):
        raise RuntimeError("profile store down")

    monkeypatch.setattr(recommender, "build_tag_preferences", broken)

    recs = SampleRecommender(weights=ORDERED, seed=0).recommend("u1", n=2)

    assert [r.sample_id for r in recs] == ["c", "e"]


def test_tag_query_failure_falls_back_to_trending(catalog, monkeypatch):
    prefs = TagPreferences(weights={"jazz": 0.6, "piano": 0.3}, signal_tags=2)

    def broken(tag, limit):
        raise RuntimeError("index missing")

    monkeypatch.setattr(recommender, "samples_by_tag", broken)

    recs = SampleRecommender(weights=ORDERED, seed=0).recommend("u1", n=2, preferences=prefs)

    assert [r.sample_id for r in recs] == ["c", "e"]
    assert all(r.is_trending for r in recs)


def test_trending_errors_propagate(catalog, monkeypatch):
    def broken(*args, **kwargs):
        raise RuntimeError("trending unavailable")

    monkeypatch.setattr(recommender, "top_samples", broken)

    with pytest.raises(RuntimeError):
        SampleRecommender(weights=ORDERED, seed=0).recommend(None, n=2)


def test_trending_pages_past_excluded_samples(catalog):
    recs = SampleRecommender(weights=ORDERED, seed=0).trending(2, exclude=["c", "e", "a"])
    assert [r.sample_id for r in recs] == ["b", "d"]


def test_sample_matching_both_top_tags_wins_single_slot(seed_samples, fresh_db):
    seed_samples({"A": ("alice", ["jazz", "piano"]), "B": ("bob", ["jazz", "drums"])}, users=["U"])
    set_scores(fresh_db, "A", allTime=90)
    set_scores(fresh_db, "B", allTime=60)
    prefs = TagPreferences(weights={"jazz": 0.6, "piano": 0.3}, signal_tags=2)

    recs = SampleRecommender(weights=ORDERED, seed=0).recommend("U", 1, preferences=prefs)

    assert [r.sample_id for r in recs] == ["A"]
    assert recs[0].relevance_score == pytest.approx(0.9)

    both = SampleRecommender(weights=ORDERED, seed=0).recommend("U", 2, preferences=prefs)
    assert [r.sample_id for r in both] == ["A", "B"]
    assert both[1].relevance_score == pytest.approx(0.6)
