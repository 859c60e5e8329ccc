import json

import pytest

from samplerec.weights import (
    DEFAULT_WEIGHTS,
    ScoringWeights,
    load_scoring_weights,
    save_scoring_weights,
)


def test_defaults_match_documented_formula():
    assert DEFAULT_WEIGHTS.popularity_like == 5
    assert DEFAULT_WEIGHTS.popularity_download == 3
    assert DEFAULT_WEIGHTS.popularity_view == 1
    assert (DEFAULT_WEIGHTS.preference_like, DEFAULT_WEIGHTS.preference_download) == (3, 2)
    assert (DEFAULT_WEIGHTS.jitter_min, DEFAULT_WEIGHTS.jitter_max) == (0.8, 1.2)


def test_values_are_coerced_and_validated():
    weights = ScoringWeights(popularity_like="7", shuffle_probability=0)
    assert weights.popularity_like == pytest.approx(7.0)
    assert weights.shuffle_probability == 0.0

    with pytest.raises(ValueError):
        ScoringWeights(popularity_view=-1)
    with pytest.raises(ValueError):
        ScoringWeights(jitter_min=1.5, jitter_max=1.0)
    with pytest.raises(ValueError):
        ScoringWeights(repeat_probability=1.5)
    with pytest.raises(ValueError):
        ScoringWeights(popularity_like="lots")


def test_from_dict_ignores_unknown_keys():
    weights = ScoringWeights.from_dict({"popularity_like": 4, "colour": "blue"})
    assert weights.popularity_like == pytest.approx(4.0)
    assert not hasattr(weights, "colour")


def test_load_scoring_weights_handles_missing_and_invalid(tmp_path):
    assert load_scoring_weights(tmp_path / "missing.json") == ScoringWeights()

    bad = tmp_path / "bad.json"
    bad.write_text("[1, 2, 3]")
    assert load_scoring_weights(bad) == ScoringWeights()

    out_of_range = tmp_path / "range.json"
    out_of_range.write_text(json.dumps({"shuffle_probability": 3}))
    assert load_scoring_weights(out_of_range) == ScoringWeights()


def test_save_scoring_weights_round_trips(tmp_path):
    weights = ScoringWeights(popularity_download=2.5, trending_relevance=0.1)
    path = tmp_path / "nested" / "weights.json"

    saved_path = save_scoring_weights(weights, path)
    assert saved_path.exists()

    loaded = json.loads(saved_path.read_text())
    assert loaded["popularity_download"] == pytest.approx(2.5)
    assert load_scoring_weights(path) == weights
