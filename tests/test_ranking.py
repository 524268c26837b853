"""
test_ranking.py - Tests for post-hoc feature ranking

Tests cover:
- Ordering for each direction
- Deterministic tie-breaking by feature id
- top_n bounded by the available features
- Invalid factor index, direction, view
- Ranking does not modify the model
"""

import pytest
import numpy as np

from temporal_factor_lab import (
    Direction,
    InvalidFactorIndexError,
    RankedFeatureList,
    rank_features,
    top_features,
)


class TestRankFeatures:

    def test_any_orders_by_magnitude(self, known_model):
        ranked = rank_features(known_model, 0, "any", top_n=5)
        assert isinstance(ranked, RankedFeatureList)
        # |f2| == |f3| == 1, tie broken by id
        assert list(ranked) == ["f0", "f1", "f2", "f3", "f4"]
        assert ranked.loadings == (3.0, -2.0, 1.0, -1.0, 0.5)

    def test_positive(self, known_model):
        ranked = rank_features(known_model, 0, Direction.POSITIVE, top_n=10)
        assert list(ranked) == ["f0", "f2", "f4"]
        assert all(v > 0 for v in ranked.loadings)

    def test_negative(self, known_model):
        ranked = rank_features(known_model, 0, "negative", top_n=10)
        assert list(ranked) == ["f1", "f3"]
        assert ranked.loadings == (-2.0, -1.0)

    def test_no_negative_loadings(self, known_model):
        ranked = rank_features(known_model, 1, "negative", top_n=3)
        assert len(ranked) == 0

    def test_top_n_truncates(self, known_model):
        ranked = rank_features(known_model, 1, "any", top_n=2)
        assert list(ranked) == ["f4", "f3"]

    def test_tie_break_by_feature_id(self, model_factory):
        model = model_factory(
            np.array([[0.5], [-0.5], [0.5], [0.2]]),
            feature_ids=["zeta", "alpha", "mid", "low"],
        )
        assert list(rank_features(model, 0, "any", top_n=4)) == ["alpha", "mid", "zeta", "low"]
        assert list(rank_features(model, 0, "positive", top_n=4)) == ["mid", "zeta", "low"]

    def test_top_n_larger_than_feature_count(self, model_factory, rng):
        model = model_factory(rng.standard_normal((10, 2)))
        ranked = rank_features(model, 0, "any", top_n=30)
        assert len(ranked) == 10
        assert sorted(ranked) == sorted(model.feature_ids)

    def test_top_n_on_trained_scenario(self, scenario_model):
        ranked = rank_features(scenario_model, 0, "any", top_n=30)
        assert len(ranked) == 10

    def test_positive_negative_disjoint_and_complete(self, model_factory, rng):
        W = rng.standard_normal((25, 1))
        model = model_factory(W)
        up = set(rank_features(model, 0, "positive", top_n=25))
        down = set(rank_features(model, 0, "negative", top_n=25))

        assert up.isdisjoint(down)
        assert up | down == set(model.feature_ids)

    def test_ranking_is_idempotent(self, known_model):
        W_before = known_model.W.copy()
        first = rank_features(known_model, 0, "any", top_n=3)
        second = rank_features(known_model, 0, "any", top_n=3)
        assert first == second
        np.testing.assert_array_equal(known_model.W, W_before)

    def test_to_frame(self, known_model):
        frame = rank_features(known_model, 0, "negative", top_n=5).to_frame()
        assert list(frame.columns) == ["rank", "feature", "loading"]
        assert frame["rank"].tolist() == [1, 2]
        assert frame["feature"].tolist() == ["f1", "f3"]


class TestRankFeaturesErrors:

    @pytest.mark.parametrize("bad", [-1, 2, 99])
    def test_invalid_factor_index(self, known_model, bad):
        with pytest.raises(InvalidFactorIndexError):
            rank_features(known_model, bad)

    def test_unknown_direction(self, known_model):
        with pytest.raises(ValueError, match="Unknown direction"):
            rank_features(known_model, 0, "sideways")

    def test_invalid_top_n(self, known_model):
        with pytest.raises(ValueError, match="top_n"):
            rank_features(known_model, 0, top_n=0)

    def test_view(self, known_model):
        assert len(rank_features(known_model, 0, view="view_0")) == 5
        with pytest.raises(KeyError, match="view"):
            rank_features(known_model, 0, view="proteomics")


class TestTopFeatures:

    def test_keyed_by_label(self, known_model):
        result = top_features(known_model, top_n=2)
        assert list(result) == ["Factor1", "Factor2"]
        assert list(result["Factor1"]) == ["f0", "f1"]
        assert result["Factor2"].factor == 1
