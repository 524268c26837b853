"""
conftest.py - Pytest Configuration and Shared Fixtures

This file contains fixtures used across all test modules. Fixtures are
organized by category:
- Random number generators (for reproducibility)
- Time-course matrices (small scenario, simulated with ground truth)
- Trained models (session scoped, training is the slow part)
- Hand-built models with known loadings (for ranking tests)
- Log capture for loguru warnings
"""

import warnings

import pytest
import numpy as np
from loguru import logger

from temporal_factor_lab import (
    prepare_data,
    simulate_time_course,
    train,
    ConvergenceInfo,
    TrainedModel,
    TrainingState,
)


# =============================================================================
# RANDOM NUMBER GENERATORS
# =============================================================================

@pytest.fixture
def rng():
    """
    Provide a seeded random number generator for reproducible tests.
    """
    return np.random.default_rng(seed=42)


# =============================================================================
# TIME-COURSE DATA
# =============================================================================

def _scenario_matrix():
    """10 features x 12 samples, 3 time groups of 4 samples (t = 0, 1, 2)."""
    rng = np.random.default_rng(7)
    t = np.repeat([0.0, 1.0, 2.0], 4)
    trend = t - t.mean()
    static = rng.standard_normal(12)
    W = rng.standard_normal((10, 2))
    Y = W[:, [0]] * trend + W[:, [1]] * static + 0.2 * rng.standard_normal((10, 12))
    sample_ids = [f"day{int(ti)}_rep{r}" for ti, r in zip(t, np.tile(range(4), 3))]
    feature_ids = [f"gene_{i:02d}" for i in range(10)]
    covariates = dict(zip(sample_ids, t))
    return Y, sample_ids, feature_ids, covariates


@pytest.fixture
def scenario_raw():
    """Raw pieces of the 10 x 12 scenario: (Y, sample_ids, feature_ids, covariates)."""
    return _scenario_matrix()


@pytest.fixture
def scenario_data():
    """The 10 x 12 scenario prepared for K=3."""
    Y, sample_ids, feature_ids, covariates = _scenario_matrix()
    return prepare_data(Y, sample_ids, covariates, n_factors=3, feature_ids=feature_ids)


@pytest.fixture(scope="session")
def simulated():
    """
    Simulated time course with one smooth and one static factor.

    Shape: (80, 18) - 80 features, 6 time points x 3 replicates.
    """
    return simulate_time_course(
        n_features=80,
        time_points=[0, 1, 2, 3, 4, 5],
        replicates=3,
        n_smooth=1,
        n_static=1,
        lengthscale=2.5,
        noise_std=0.1,
        seed=3,
    )


@pytest.fixture(scope="session")
def simulated_data(simulated):
    return prepare_data(
        simulated.Y, simulated.sample_ids, simulated.covariates,
        n_factors=2, feature_ids=simulated.feature_ids,
    )


# =============================================================================
# TRAINED MODELS
# =============================================================================

@pytest.fixture(scope="session")
def scenario_model():
    """The 10 x 12 scenario trained with K=3, ard_factors off, medium mode."""
    Y, sample_ids, feature_ids, covariates = _scenario_matrix()
    data = prepare_data(Y, sample_ids, covariates, n_factors=3, feature_ids=feature_ids)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        return train(data, n_factors=3, ard_factors=False, convergence_mode="medium", seed=0)


@pytest.fixture(scope="session")
def simulated_model(simulated_data):
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        return train(simulated_data, n_factors=2, convergence_mode="fast", seed=0)


# =============================================================================
# HAND-BUILT MODELS
# =============================================================================

def make_model(W, feature_ids=None, n_samples=4):
    """A TrainedModel with the given loadings and placeholder everything else."""
    W = np.asarray(W, dtype=float)
    p, K = W.shape
    if feature_ids is None:
        feature_ids = [f"f{i}" for i in range(p)]
    return TrainedModel(
        W=W,
        Z=np.ones((n_samples, K)),
        tau=np.ones(p),
        smoothness=np.linspace(0.0, 1.0, K),
        lengthscales=np.ones(K),
        relevance=np.ones(K),
        explained_variance=np.full(K, 0.1),
        total_explained_variance=0.1 * K,
        feature_ids=feature_ids,
        sample_ids=[f"s{i}" for i in range(n_samples)],
        covariate=np.arange(n_samples, dtype=float),
        convergence=ConvergenceInfo(
            state=TrainingState.CONVERGED,
            n_iter=1,
            elbo=0.0,
            elbo_trace=(0.0,),
            tolerance=1e-3,
            max_iter=10,
        ),
    )


@pytest.fixture
def known_model():
    """
    Two factors over five features with known loadings.

    Factor 0: f0=+3, f1=-2, f2=+1, f3=-1, f4=+0.5  (tie |f2| = |f3|)
    Factor 1: all positive
    """
    W = np.array([
        [3.0, 0.1],
        [-2.0, 0.2],
        [1.0, 0.3],
        [-1.0, 0.4],
        [0.5, 0.5],
    ])
    return make_model(W)


@pytest.fixture
def model_factory():
    """Build a TrainedModel from a loadings matrix (and optional feature ids)."""
    return make_model


# =============================================================================
# LOG CAPTURE
# =============================================================================

@pytest.fixture
def log_messages():
    """
    Collect loguru messages at WARNING and above as "LEVEL: message" strings.
    """
    messages = []
    handler_id = logger.add(messages.append, level="WARNING", format="{level}: {message}")
    yield messages
    logger.remove(handler_id)
