import pytest

from conftest import NOW
from samplerec import interactions
from samplerec.profile import TagPreferences, build_tag_preferences
from samplerec.utils import make_rng
from samplerec.weights import ScoringWeights

NO_JITTER = ScoringWeights(jitter_min=1.0, jitter_max=1.0)


@pytest.fixture
def listener(seed_samples):
    seed_samples(
        {
            "s1": ("alice", ["jazz", "piano"]),
            "s2": ("bob", ["jazz", "drums"]),
            "s3": ("bob", ["ambient"]),
        },
        users=["u1"],
    )
    interactions.toggle_like("u1", "s1", now=NOW)
    interactions.record_view("s2", user_id="u1", now=NOW)
    interactions.record_download("s2", user_id="u1", now=NOW)
    interactions.record_view("s3", user_id="u1", now=NOW)
    return "u1"


def test_likes_and_history_are_weighted_and_normalized(listener):
    prefs = build_tag_preferences(listener, weights=NO_JITTER, rng=make_rng(1))

    # likes: jazz+3 piano+3; s2 download (max over its records) jazz+2 drums+2; s3 view ambient+1
    assert prefs.weights == pytest.approx({
        "jazz": 5 / 11,
        "piano": 3 / 11,
        "drums": 2 / 11,
        "ambient": 1 / 11,
    })
    assert prefs.liked_ids == ["s1"]
    assert prefs.signal_tags == 4
    assert prefs.has_signal
    assert prefs.top_tags(2) == ["jazz", "piano"]


def test_zero_signal_tags_get_baseline_weight(listener):
    weights = ScoringWeights(jitter_min=1.0, jitter_max=1.0, preference_view=0)
    prefs = build_tag_preferences(listener, weights=weights, rng=make_rng(1))

    assert prefs.weights["ambient"] == pytest.approx(0.1)
    assert prefs.signal_tags == 3


def test_jitter_stays_within_range(listener):
    prefs = build_tag_preferences(listener, rng=make_rng(7))
    base = {"jazz": 5 / 11, "piano": 3 / 11, "drums": 2 / 11, "ambient": 1 / 11}

    for tag, value in prefs.weights.items():
        assert 0.8 * base[tag] - 1e-9 <= value <= 1.2 * base[tag] + 1e-9


def test_same_seed_gives_same_profile(listener):
    first = build_tag_preferences(listener, rng=make_rng(42))
    second = build_tag_preferences(listener, rng=make_rng(42))
    assert first.weights == second.weights


def test_single_tag_profile_has_no_signal(seed_samples):
    seed_samples({"s1": ("alice", ["jazz"])}, users=["u1"])
    interactions.toggle_like("u1", "s1", now=NOW)

    prefs = build_tag_preferences("u1", rng=make_rng(0))

    assert prefs.weights == {}
    assert prefs.signal_tags == 1
    assert prefs.liked_ids == ["s1"]
    assert not prefs.has_signal


def test_unknown_user_has_empty_profile(fresh_db):
    prefs = build_tag_preferences("nobody", rng=make_rng(0))
    assert prefs == TagPreferences()


def test_liked_samples_are_capped(seed_samples):
    samples = {f"s{i:02d}": ("alice", [f"tag{i:02d}"]) for i in range(15)}
    seed_samples(samples, users=["u1"])
    for sample_id in samples:
        interactions.toggle_like("u1", sample_id, now=NOW)

    prefs = build_tag_preferences("u1", weights=NO_JITTER, rng=make_rng(3))

    assert len(prefs.liked_ids) == 15
    assert len(prefs.weights) == 10
    assert all(value == pytest.approx(0.1) for value in prefs.weights.values())


def test_top_tags_break_ties_alphabetically():
    prefs = TagPreferences(weights={"b": 0.5, "a": 0.5, "c": 0.9}, signal_tags=3)
    assert prefs.top_tags(5) == ["c", "a", "b"]
