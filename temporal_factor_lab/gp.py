"""
gp.py - Gaussian-Process Temporal Smoothness Prior

Each factor k places a Gaussian-process prior on its scores as a function
of the sample covariate t:

    z_k ~ N(0, Σ_k / β_k)
    Σ_k = s_k * K_SE(t; l_k) + (1 - s_k) * I

where K_SE is the squared-exponential kernel with length-scale l_k and
s_k ∈ [0, 1] is the smoothness scale:

    s_k = 0  -> iid N(0, 1) prior, the factor ignores time
    s_k = 1  -> pure GP prior, scores vary smoothly with time

Both s_k and l_k are learned by maximizing the expected log prior under
the current variational posterior of the scores, which is the only part
of the evidence lower bound that depends on them.
"""

from __future__ import annotations

from typing import Dict, Optional, Sequence, Tuple

import numpy as np
import scipy.linalg
import scipy.optimize
from loguru import logger

LOG_2PI = np.log(2.0 * np.pi)
_MAX_JITTER_STEPS = 6


def squared_exponential(t: np.ndarray, lengthscale: float) -> np.ndarray:
    """
    Squared-exponential kernel matrix over a 1D covariate.

    Parameters
    ----------
    t : ndarray (n,)
        Covariate value per sample.
    lengthscale : float
        Kernel length-scale, in covariate units.

    Returns
    -------
    K : ndarray (n, n)
        K[i, j] = exp(-(t_i - t_j)^2 / (2 * lengthscale^2))
    """
    t = np.asarray(t, dtype=float)
    d2 = (t[:, None] - t[None, :]) ** 2
    return np.exp(-0.5 * d2 / lengthscale ** 2)


def _cholesky(A: np.ndarray, jitter: float) -> Tuple[np.ndarray, float]:
    """
    Lower Cholesky factor of A, escalating diagonal jitter on failure.

    Returns the factor and the jitter that was finally added.
    """
    eye = np.eye(A.shape[0])
    extra = 0.0
    for step in range(_MAX_JITTER_STEPS):
        try:
            return scipy.linalg.cholesky(A + extra * eye, lower=True), extra
        except np.linalg.LinAlgError:
            extra = max(jitter, 1e-10) * 10.0 ** (step + 1)
            logger.debug(f"Cholesky failed, retrying with jitter {extra:.1e}")
    logger.error(f"Matrix is not positive definite after jitter {extra:.1e}")
    raise np.linalg.LinAlgError("Matrix is not positive definite")


class SmoothPrior:
    """
    Per-factor temporal prior over the scores.

    Parameters
    ----------
    covariate : ndarray (n,)
        Time value per sample.
    n_factors : int
        Number of factors K.
    lengthscale : float, optional
        Initial length-scale for every factor. Half the covariate range
        if None (1.0 if the covariate is constant).
    scale : float, default=0.5
        Initial smoothness scale for every factor.
    learn : bool, default=True
        Optimize the hyperparameters. When False the prior is fixed.
    jitter : float, default=1e-6
        Diagonal jitter added to every covariance.

    Notes
    -----
    With a single distinct covariate value there is no temporal signal;
    the scales are then fixed at 0 and never optimized.
    """

    def __init__(
        self,
        covariate: np.ndarray,
        n_factors: int,
        lengthscale: Optional[float] = None,
        scale: float = 0.5,
        learn: bool = True,
        jitter: float = 1e-6,
    ):
        self.t = np.asarray(covariate, dtype=float)
        self.n = self.t.shape[0]
        self.n_factors = n_factors
        self.jitter = jitter

        unique = np.unique(self.t)
        span = float(unique[-1] - unique[0])
        self.has_signal = unique.size > 1

        if self.has_signal:
            min_gap = float(np.min(np.diff(unique)))
            self.lengthscale_bounds = (min_gap / 10.0, 10.0 * span)
        else:
            self.lengthscale_bounds = (1.0, 1.0)

        if lengthscale is None:
            lengthscale = span / 2.0 if self.has_signal else 1.0
        lengthscale = float(np.clip(lengthscale, *self.lengthscale_bounds))

        self.learn = learn and self.has_signal
        if not (learn and self.has_signal):
            scale = 0.0

        self.lengthscales = np.full(n_factors, lengthscale)
        self.scales = np.full(n_factors, float(np.clip(scale, 0.0, 1.0)))

        self._d2 = (self.t[:, None] - self.t[None, :]) ** 2
        self._cache: Dict[int, Tuple[np.ndarray, np.ndarray, float]] = {}

    # -------------------------------------------------------------------------
    # Covariance algebra
    # -------------------------------------------------------------------------

    def _build(self, lengthscale: float, scale: float) -> np.ndarray:
        K = np.exp(-0.5 * self._d2 / lengthscale ** 2)
        return scale * K + (1.0 - scale + self.jitter) * np.eye(self.n)

    def _decompose(self, lengthscale: float, scale: float) -> Tuple[np.ndarray, np.ndarray, float]:
        """Return (precision, cholesky factor, logdet) of the covariance."""
        L, _ = _cholesky(self._build(lengthscale, scale), self.jitter)
        Linv = scipy.linalg.solve_triangular(L, np.eye(self.n), lower=True)
        precision = Linv.T @ Linv
        precision = 0.5 * (precision + precision.T)
        logdet = 2.0 * float(np.sum(np.log(np.diag(L))))
        return precision, L, logdet

    def _entry(self, k: int) -> Tuple[np.ndarray, np.ndarray, float]:
        if k not in self._cache:
            self._cache[k] = self._decompose(self.lengthscales[k], self.scales[k])
        return self._cache[k]

    def covariance(self, k: int) -> np.ndarray:
        """Prior covariance Σ_k, shape (n, n)."""
        return self._build(self.lengthscales[k], self.scales[k])

    def precision(self, k: int) -> np.ndarray:
        """Inverse prior covariance Σ_k^{-1}."""
        return self._entry(k)[0]

    def logdet(self, k: int) -> float:
        """log |Σ_k|."""
        return self._entry(k)[2]

    def smoothness(self, k: int) -> float:
        """Learned smoothness scale of factor k, within [0, 1]."""
        return float(np.clip(self.scales[k], 0.0, 1.0))

    def set_params(self, k: int, lengthscale: float, scale: float) -> None:
        self.lengthscales[k] = float(np.clip(lengthscale, *self.lengthscale_bounds))
        self.scales[k] = float(np.clip(scale, 0.0, 1.0))
        self._cache.pop(k, None)

    def keep(self, factors: Sequence[int]) -> None:
        """Restrict the prior to the given factors, in that order."""
        idx = list(factors)
        self.lengthscales = self.lengthscales[idx]
        self.scales = self.scales[idx]
        self.n_factors = len(idx)
        self._cache.clear()

    # -------------------------------------------------------------------------
    # Objective
    # -------------------------------------------------------------------------

    def expected_log_prior(
        self,
        k: int,
        second_moment: np.ndarray,
        ard_precision: float = 1.0,
        ard_log_precision: float = 0.0,
    ) -> float:
        """
        E_q[log N(z_k | 0, Σ_k / β_k)].

        Parameters
        ----------
        k : int
            Factor index.
        second_moment : ndarray (n, n)
            E[z_k z_k^T] under the variational posterior.
        ard_precision : float, default=1.0
            E[β_k].
        ard_log_precision : float, default=0.0
            E[log β_k].
        """
        precision, _, logdet = self._entry(k)
        quad = float(np.sum(precision * second_moment))
        return (
            -0.5 * self.n * LOG_2PI
            - 0.5 * logdet
            + 0.5 * self.n * ard_log_precision
            - 0.5 * ard_precision * quad
        )

    def _negative_objective(self, x: np.ndarray, second_moment: np.ndarray, ard_precision: float) -> float:
        lengthscale, scale = np.exp(x[0]), x[1]
        try:
            precision, _, logdet = self._decompose(lengthscale, scale)
        except np.linalg.LinAlgError:
            return np.inf
        return 0.5 * logdet + 0.5 * ard_precision * float(np.sum(precision * second_moment))

    def optimize(
        self,
        second_moments: Sequence[np.ndarray],
        ard_precisions: Optional[Sequence[float]] = None,
        factors: Optional[Sequence[int]] = None,
    ) -> None:
        """
        Update length-scale and smoothness of the given factors.

        Each factor is optimized independently with bounded L-BFGS-B over
        (log length-scale, scale). A solution that does not improve on the
        current hyperparameters is discarded, so the evidence lower bound
        never decreases through this step.

        Parameters
        ----------
        second_moments : sequence of ndarray (n, n)
            E[z_k z_k^T], one per entry of `factors`.
        ard_precisions : sequence of float, optional
            E[β_k], one per entry of `factors`; 1 if None.
        factors : sequence of int, optional
            Factors to optimize. All of them if None.
        """
        if not self.learn:
            return

        if factors is None:
            factors = range(self.n_factors)
        factors = [int(k) for k in factors]
        if ard_precisions is None:
            ard_precisions = np.ones(len(factors))

        lo, hi = self.lengthscale_bounds
        bounds = [(np.log(lo), np.log(hi)), (0.0, 1.0)]

        for i, k in enumerate(factors):
            S = second_moments[i]
            beta = float(ard_precisions[i])
            x0 = np.array([np.log(self.lengthscales[k]), self.scales[k]])
            f0 = self._negative_objective(x0, S, beta)

            res = scipy.optimize.minimize(
                self._negative_objective,
                x0,
                args=(S, beta),
                method="L-BFGS-B",
                bounds=bounds,
            )

            if np.isfinite(res.fun) and res.fun <= f0:
                self.set_params(k, np.exp(res.x[0]), res.x[1])
            logger.debug(
                f"GP factor {k}: lengthscale={self.lengthscales[k]:.4g}, "
                f"smoothness={self.scales[k]:.3f} ({res.nit} L-BFGS-B iterations)"
            )
