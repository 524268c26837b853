"""
simulation.py - Synthetic Time-Course Data

Draws a features x samples matrix from the generative model used for
training, with a known mix of smooth and time-independent factors:

    1. Time points t_1..t_T, each with `replicates` samples
    2. Smooth factors: one GP draw (squared-exponential, given length-scale)
       per factor, shared by the replicates of a time point
    3. Independent factors: iid N(0, 1) scores per sample
    4. Y = W @ Z.T + noise, with sparse-ish Gaussian loadings

Useful for tests, demos and checking that the smoothness scale separates
temporal from non-temporal factors.

Example Usage:
-------------
    >>> sim = simulate_time_course(n_features=50, time_points=[0, 1, 2, 3],
    ...                            replicates=3, n_smooth=1, n_static=1, seed=0)
    >>> data = prepare_data(sim.Y, sim.sample_ids, sim.covariates, n_factors=2)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
from loguru import logger

from .gp import squared_exponential


@dataclass(frozen=True)
class SimulatedTimeCourse:
    """
    A synthetic dataset with its ground truth.

    Parameters
    ----------
    Y : np.ndarray
        Observations with shape (p, n).
    W : np.ndarray
        True loadings, shape (p, K).
    Z : np.ndarray
        True scores, shape (n, K); smooth factors come first.
    feature_ids, sample_ids : tuple of str
        Identifiers.
    covariates : dict
        Sample id -> time value.
    n_smooth : int
        Number of leading factors that vary smoothly with time.
    """
    Y: np.ndarray
    W: np.ndarray
    Z: np.ndarray
    feature_ids: Tuple[str, ...]
    sample_ids: Tuple[str, ...]
    covariates: Dict[str, float]
    n_smooth: int


def simulate_time_course(
    n_features: int = 50,
    time_points: Sequence[float] = (0.0, 1.0, 2.0, 3.0, 4.0),
    replicates: int = 3,
    n_smooth: int = 1,
    n_static: int = 1,
    lengthscale: float = 2.0,
    noise_std: float = 0.3,
    missing_fraction: float = 0.0,
    seed: Optional[int] = None,
) -> SimulatedTimeCourse:
    """
    Draw a synthetic time-course matrix.

    Parameters
    ----------
    n_features : int, default=50
        Number of features p.
    time_points : sequence of float
        Distinct covariate values.
    replicates : int, default=3
        Samples per time point.
    n_smooth, n_static : int, default=1
        Number of smooth and time-independent factors.
    lengthscale : float, default=2.0
        Length-scale of the smooth factors' GP draws.
    noise_std : float, default=0.3
        Standard deviation of the observation noise.
    missing_fraction : float, default=0.0
        Fraction of entries set to NaN at random.
    seed : int, optional
        Random seed.

    Returns
    -------
    SimulatedTimeCourse
    """
    if n_features < 1 or replicates < 1:
        raise ValueError("n_features and replicates must be positive")
    if n_smooth < 0 or n_static < 0 or n_smooth + n_static == 0:
        raise ValueError("Need at least one factor (n_smooth + n_static >= 1)")
    if not 0.0 <= missing_fraction < 1.0:
        raise ValueError(f"missing_fraction must be in [0, 1), got {missing_fraction}")

    rng = np.random.default_rng(seed)
    times = np.asarray(time_points, dtype=float)
    t = np.repeat(times, replicates)
    n = t.size
    K = n_smooth + n_static

    Z = np.empty((n, K))
    if n_smooth:
        C = squared_exponential(times, lengthscale) + 1e-8 * np.eye(times.size)
        L = np.linalg.cholesky(C)
        per_time = L @ rng.standard_normal((times.size, n_smooth))
        Z[:, :n_smooth] = np.repeat(per_time, replicates, axis=0)
    Z[:, n_smooth:] = rng.standard_normal((n, n_static))

    W = rng.standard_normal((n_features, K))
    W[rng.random((n_features, K)) < 0.3] = 0.0

    Y = W @ Z.T + noise_std * rng.standard_normal((n_features, n))
    if missing_fraction > 0:
        Y[rng.random(Y.shape) < missing_fraction] = np.nan

    sample_ids = tuple(f"t{ti:g}_r{r}" for ti in times for r in range(replicates))
    feature_ids = tuple(f"feature_{i}" for i in range(n_features))

    logger.debug(
        f"Simulated {n_features} x {n} time course: "
        f"{n_smooth} smooth + {n_static} static factors"
    )

    return SimulatedTimeCourse(
        Y=Y,
        W=W,
        Z=Z,
        feature_ids=feature_ids,
        sample_ids=sample_ids,
        covariates=dict(zip(sample_ids, t.tolist())),
        n_smooth=n_smooth,
    )
