"""
test_model.py - Tests for the variational factor model

Tests cover:
- Initialization shapes for both seed strategies
- Single coordinate updates keep the state finite
- Each update does not decrease the evidence lower bound
- Missing entries are excluded from the likelihood
- Factor selection (keep)
- Signal rank and switching off factors
"""

import pytest
import numpy as np

from temporal_factor_lab import (
    FactorModel,
    signal_rank,
    SeedStrategy,
    TrainingOptions,
    prepare_data,
)
from temporal_factor_lab.model import _gamma_elbo_terms


def _fresh(data, seed_strategy="pca", **kwargs):
    opts = TrainingOptions(n_factors=3, seed_strategy=seed_strategy, **kwargs)
    fm = FactorModel(data, opts)
    fm.initialize(3, opts.seed_strategy, np.random.default_rng(0))
    return fm


class TestInitialize:

    @pytest.mark.parametrize("strategy", ["pca", "random"])
    def test_shapes(self, scenario_data, strategy):
        fm = _fresh(scenario_data, strategy)
        p, n = 10, 12

        assert fm.W_mu.shape == (p, 3)
        assert fm.W_var.shape == (p, 3)
        assert fm.Z_mu.shape == (n, 3)
        assert fm.Z_cov.shape == (3, n, n)
        assert fm.E_tau.shape == (p,)
        assert fm.prior.n_factors == 3

    def test_pca_scores_are_unit_scale(self, scenario_data):
        fm = _fresh(scenario_data, signal_rank=False)
        # Right singular vectors times sqrt(n) have unit mean square
        np.testing.assert_allclose(np.mean(fm.Z_mu ** 2, axis=0), 1.0)

    def test_pca_reconstructs_top_components(self, scenario_data):
        fm = _fresh(scenario_data, signal_rank=False)
        U, s, Vt = np.linalg.svd(scenario_data.Y, full_matrices=False)
        np.testing.assert_allclose(fm.P, (U[:, :3] * s[:3]) @ Vt[:3], atol=1e-8)

    def test_more_factors_than_rank(self, rng):
        Y = rng.normal(size=(2, 6))
        ids = [f"s{i}" for i in range(6)]
        data = prepare_data(Y, ids, {s: float(i) for i, s in enumerate(ids)}, n_factors=4)
        fm = FactorModel(data, TrainingOptions(n_factors=4))
        fm.initialize(4, SeedStrategy.PCA, rng)

        assert fm.W_mu.shape == (2, 4)
        assert np.all(np.isfinite(fm.Z_mu))
        assert fm.active.size <= 2
        np.testing.assert_array_equal(fm.W_mu[:, 2:], 0.0)

    def test_noise_components_start_switched_off(self, scenario_data):
        fm = _fresh(scenario_data)
        U, s, Vt = np.linalg.svd(scenario_data.Y, full_matrices=False)

        assert fm.active.tolist() == [0, 1]
        np.testing.assert_array_equal(fm.W_mu[:, 2], 0.0)
        np.testing.assert_array_equal(fm.Z_mu[:, 2], 0.0)
        np.testing.assert_array_equal(fm.W_var[:, 2], 0.0)
        np.testing.assert_allclose(fm.P, (U[:, :2] * s[:2]) @ Vt[:2], atol=1e-8)

    @pytest.mark.parametrize("K", [2, 3, 6])
    def test_active_start_does_not_depend_on_K(self, scenario_data, K):
        reference = _fresh(scenario_data)
        opts = TrainingOptions(n_factors=K)
        fm = FactorModel(scenario_data, opts)
        fm.initialize(K, opts.seed_strategy, np.random.default_rng(0))

        np.testing.assert_array_equal(fm.active, reference.active)
        np.testing.assert_array_equal(fm.P, reference.P)

    def test_random_loadings_at_data_scale_for_any_K(self, scenario_data):
        fm = FactorModel(scenario_data, TrainingOptions(n_factors=8, signal_rank=False))
        fm.initialize(8, SeedStrategy.RANDOM, np.random.default_rng(0))

        data_scale = np.sqrt(np.mean(scenario_data.Y ** 2))
        rms = np.sqrt(np.mean(fm.W_mu ** 2))
        assert fm.active.size == 8
        assert 0.7 * data_scale < rms < 1.3 * data_scale

    def test_elbo_finite_after_first_sweep(self, scenario_data):
        fm = _fresh(scenario_data)
        fm.update_loadings()
        fm.update_scores()
        fm.update_noise()
        fm.update_relevance()
        fm.update_smoothness()
        assert np.isfinite(fm.log_evidence_lower_bound())


class TestUpdates:
    """Coordinate updates are ascent steps on the ELBO."""

    @pytest.fixture
    def warm(self, scenario_data):
        fm = _fresh(scenario_data, ard_factors=True, signal_rank=False)
        for _ in range(3):
            fm.update_loadings()
            fm.update_scores()
            fm.update_noise()
            fm.update_relevance()
        return fm

    @pytest.mark.parametrize("update", [
        "update_loadings",
        "update_scores",
        "update_noise",
        "update_relevance",
        "update_smoothness",
        "switch_off_redundant",
    ])
    def test_update_does_not_decrease_elbo(self, warm, update):
        before = warm.log_evidence_lower_bound()
        getattr(warm, update)()
        after = warm.log_evidence_lower_bound()
        assert after >= before - 1e-6 * abs(before)

    def test_prediction_cache_consistent(self, warm):
        warm.update_loadings()
        warm.update_scores()
        np.testing.assert_allclose(warm.P, warm.W_mu @ warm.Z_mu.T, atol=1e-10)

    def test_posterior_covariances_symmetric(self, warm):
        for k in warm.active:
            np.testing.assert_allclose(warm.Z_cov[k], warm.Z_cov[k].T)
            assert np.all(np.linalg.eigvalsh(warm.Z_cov[k]) > 0)

    def test_ard_switched_off(self, scenario_data):
        fm = _fresh(scenario_data, ard_weights=False, ard_factors=False)
        fm.update_loadings()
        fm.update_relevance()
        np.testing.assert_array_equal(fm.E_alpha, 1.0)
        np.testing.assert_array_equal(fm.E_beta, 1.0)
        np.testing.assert_array_equal(fm.E_log_beta, 0.0)


class TestMissingData:

    def test_missing_entry_is_masked(self, scenario_raw):
        Y, sample_ids, feature_ids, covariates = scenario_raw
        Y = Y.copy()
        Y[3, 5] = np.nan

        data = prepare_data(Y, sample_ids, covariates, n_factors=3)
        fm = _fresh(data)
        assert fm.M[3, 5] == 0.0
        assert fm.Y[3, 5] == 0.0
        assert fm.n_obs[3] == 11
        assert fm.n_obs[4] == 12

    def test_expected_residuals_masked(self, scenario_raw):
        Y, sample_ids, feature_ids, covariates = scenario_raw
        Y = Y.copy()
        Y[0, :6] = np.nan
        data = prepare_data(Y, sample_ids, covariates, n_factors=3)
        fm = _fresh(data)
        fm.update_loadings()
        fm.update_scores()

        resid = fm._expected_squared_residuals()
        np.testing.assert_array_equal(resid[0, :6], 0.0)
        assert np.all(resid[0, 6:] > 0)

    def test_training_with_missing_is_finite(self, scenario_raw):
        Y, sample_ids, feature_ids, covariates = scenario_raw
        Y = Y.copy()
        Y[np.random.default_rng(1).random(Y.shape) < 0.1] = np.nan
        data = prepare_data(Y, sample_ids, covariates, n_factors=3)
        fm = _fresh(data)
        for _ in range(5):
            fm.update_loadings()
            fm.update_scores()
            fm.update_noise()
            fm.update_relevance()
            fm.update_smoothness()
        assert np.isfinite(fm.log_evidence_lower_bound())
        assert np.all(np.isfinite(fm.W_mu))


class TestDiagnostics:

    def test_explained_variance_bounds(self, scenario_data):
        fm = _fresh(scenario_data)
        per_factor, total = fm.explained_variance()
        assert per_factor.shape == (3,)
        assert np.all((per_factor >= 0) & (per_factor <= 1))
        assert 0.0 <= total <= 1.0

    def test_keep_reorders_state(self, scenario_data):
        fm = _fresh(scenario_data)
        W = fm.W_mu.copy()
        Z = fm.Z_mu.copy()

        fm.keep([2, 0])

        assert fm.K == 2
        np.testing.assert_array_equal(fm.W_mu, W[:, [2, 0]])
        np.testing.assert_array_equal(fm.Z_mu, Z[:, [2, 0]])
        assert fm.Z_cov.shape[0] == 2
        assert fm.prior.n_factors == 2
        assert fm.active.tolist() == [1]
        np.testing.assert_allclose(fm.P, fm.W_mu @ fm.Z_mu.T)

    def test_gamma_terms_zero_at_prior(self):
        """KL(q || p) vanishes when q equals the prior."""
        a = np.array([2.0, 3.0])
        b = np.array([1.5, 0.5])
        # E[log p] + H[q] = -KL(q || p) when q == p
        value = sum(_gamma_elbo_terms(a[i:i + 1], b[i:i + 1], a[i], b[i]) for i in range(2))
        assert value == pytest.approx(0.0, abs=1e-10)


class TestSignalRank:

    def test_low_rank_plus_noise(self):
        rng = np.random.default_rng(0)
        Y = rng.standard_normal((50, 3)) @ rng.standard_normal((3, 30))
        Y += 0.1 * rng.standard_normal((50, 30))
        assert signal_rank(Y) == 3
        assert signal_rank(Y, max_rank=2) == 2

    def test_pure_noise_keeps_one(self):
        Y = np.random.default_rng(1).standard_normal((40, 20))
        assert signal_rank(Y) == 1

    def test_rejects_non_matrix(self):
        with pytest.raises(ValueError, match="2D"):
            signal_rank(np.ones(5))


class TestSwitchOff:

    @pytest.fixture
    def swept(self, scenario_data):
        fm = _fresh(scenario_data, signal_rank=False)
        for _ in range(3):
            fm.update_loadings()
            fm.update_scores()
            fm.update_noise()
            fm.update_relevance()
        return fm

    def test_dead_factor_is_switched_off(self, swept):
        swept.W_mu[:, 2] = 0.0
        swept.Z_mu[:, 2] = 0.0
        swept._refresh_prediction()
        before = swept.log_evidence_lower_bound()

        assert swept.switch_off_redundant() == [2]
        assert swept.active.tolist() == [0, 1]
        assert swept.log_evidence_lower_bound() > before
        np.testing.assert_array_equal(swept.W_var[:, 2], 0.0)
        np.testing.assert_array_equal(swept.Z_cov[2], 0.0)

    def test_switched_off_factor_adds_no_residual(self, swept):
        swept._switch_off(2)
        # Stale variances on a switched-off factor stay out of the residual
        swept.W_var[:, 2] = 1.0
        swept.Z_cov[2] = np.eye(swept.n)

        expected = swept.M * (swept.Y - swept.W_mu[:, :2] @ swept.Z_mu[:, :2].T) ** 2
        corr = (swept.E_W2[:, :2] @ swept.E_Z2[:, :2].T
                - (swept.W_mu[:, :2] ** 2) @ (swept.Z_mu[:, :2] ** 2).T)
        np.testing.assert_allclose(
            swept._expected_squared_residuals(), expected + swept.M * corr, atol=1e-12
        )

    def test_structured_factors_stay_on(self, swept):
        swept.switch_off_redundant()
        assert {0, 1} <= set(swept.active.tolist())

    def test_relevance_and_smoothness_zero_when_off(self, swept):
        swept._switch_off(2)
        assert swept.relevance[2] == 0.0
        assert swept.smoothness[2] == 0.0
        assert np.all(swept.relevance[:2] > 0)
