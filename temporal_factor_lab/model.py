"""
model.py - Variational Factor Model
===================================

Generative model for a (p, n) matrix Y of p features by n samples:

    Y[f, s] = sum_k W[f, k] * Z[s, k] + eps[f, s],   eps ~ N(0, 1 / tau_f)

    W[f, k] ~ N(0, 1 / alpha_k)          alpha_k ~ Gamma  (ARD on loadings)
    Z[:, k] ~ N(0, Sigma_k / beta_k)     beta_k  ~ Gamma  (ARD on scores)
    tau_f   ~ Gamma

Sigma_k is supplied by the temporal prior (see gp.py). The variational
posterior factorizes as

    q(W[f, k]) = N(mu, var)              one Gaussian per entry
    q(Z[:, k]) = N(m_k, S_k)             full covariance over samples
    q(tau_f), q(alpha_k), q(beta_k)      Gamma(shape, rate)

Missing entries are removed from every likelihood sum through the mask;
they are never imputed.

Active factors
--------------
Only the active factors take part in the updates and in the ELBO. A
switched-off factor has W = 0 and Z = 0 exactly, so it adds nothing to
the prediction or to the expected squared residuals. Factors are switched
off at initialization when the singular spectrum does not support them,
and during training when removing them does not lower the ELBO.
"""

from __future__ import annotations

from typing import List, Optional, Sequence, Tuple

import numpy as np
import scipy.linalg
from scipy.special import digamma, gammaln
from loguru import logger

from .gp import LOG_2PI, SmoothPrior, _cholesky
from .types import SeedStrategy, TemporalData, TrainingOptions

# =============================================================================
# HELPERS
# =============================================================================


def _gamma_elbo_terms(
    a: np.ndarray, b: np.ndarray, a0: float, b0: float
) -> float:
    """
    E[log p(x)] - E[log q(x)] for q = Gamma(a, b), p = Gamma(a0, b0).

    Shapes are rates.
    """
    E = a / b
    Elog = digamma(a) - np.log(b)
    log_p = a0 * np.log(b0) - gammaln(a0) + (a0 - 1.0) * Elog - b0 * E
    entropy = a - np.log(b) + gammaln(a) + (1.0 - a) * digamma(a)
    return float(np.sum(log_p + entropy))


def _initial_svd(Y: np.ndarray, k: int) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Top-k SVD of a dense matrix, in descending singular value order."""
    logger.debug(f"Using Dense SVD (LAPACK) | Shape: {Y.shape}, k: {k}")
    u, s, vt = scipy.linalg.svd(Y, full_matrices=False)
    return u[:, :k], s[:k], vt[:k, :]


def signal_rank(Y: np.ndarray, max_rank: Optional[int] = None) -> int:
    """
    Number of singular components of Y that stand above its noise level.

    A component is kept when its singular value exceeds
    omega(beta) * median(s), the hard threshold for a matrix observed in
    white noise of unknown level (Gavish & Donoho, 2014), where beta is
    the aspect ratio min(p, n) / max(p, n).

    Parameters
    ----------
    Y : ndarray (p, n)
        Dense matrix, missing entries already filled.
    max_rank : int, optional
        Upper bound on the returned rank.

    Returns
    -------
    rank : int
        At least 1.
    """
    if Y.ndim != 2:
        raise ValueError(f"Y must be 2D array, got shape {Y.shape}")

    s = scipy.linalg.svdvals(Y)
    beta = min(Y.shape) / max(Y.shape)
    omega = 0.56 * beta ** 3 - 0.95 * beta ** 2 + 1.82 * beta + 1.43
    cutoff = omega * float(np.median(s))

    rank = int(np.sum(s > cutoff))
    if max_rank is not None:
        rank = min(rank, max_rank)
    rank = max(rank, 1)

    logger.info(f"Singular spectrum supports {rank} factor(s) (cutoff {cutoff:.4g})")
    return rank


# =============================================================================
# FACTOR MODEL
# =============================================================================


class FactorModel:
    """
    Variational state of the temporal factor model.

    Parameters
    ----------
    data : TemporalData
        The prepared observation matrix and covariate.
    options : TrainingOptions
        Run configuration (ARD switches, priors, numerical floors).

    Attributes
    ----------
    W_mu, W_var : ndarray (p, K)
        Posterior mean and variance of the loadings.
    Z_mu : ndarray (n, K)
        Posterior mean of the scores.
    Z_cov : ndarray (K, n, n)
        Posterior covariance of each factor's scores.
    active : ndarray of int
        Indices of the factors that are switched on, ascending.
    prior : SmoothPrior
        Temporal prior providing Sigma_k.

    Examples
    --------
    >>> fm = FactorModel(data, TrainingOptions(n_factors=3))
    >>> fm.initialize(3, SeedStrategy.PCA, np.random.default_rng(0))
    >>> fm.update_loadings(); fm.update_scores(); fm.update_noise()
    >>> fm.update_relevance(); fm.update_smoothness()
    >>> elbo = fm.log_evidence_lower_bound()
    """

    def __init__(self, data: TemporalData, options: TrainingOptions):
        self.data = data
        self.options = options

        self.M = data.mask.astype(float)
        self.Y = np.where(data.mask, data.Y, 0.0)
        self.p, self.n = self.Y.shape
        self.n_obs = self.M.sum(axis=1)  # observed entries per feature
        self.ss_total = float(np.sum(self.Y ** 2))

        self.a0 = options.prior_shape
        self.b0 = options.prior_rate
        self.floor = options.variance_floor

        self.K = 0
        self.active = np.arange(0)
        self.prior: Optional[SmoothPrior] = None

    # -------------------------------------------------------------------------
    # Initialization
    # -------------------------------------------------------------------------

    def initialize(
        self,
        n_factors: int,
        seed_strategy: SeedStrategy = SeedStrategy.PCA,
        rng: Optional[np.random.Generator] = None,
    ) -> None:
        """
        Create the starting point of the variational state.

        Parameters
        ----------
        n_factors : int
            Number of factors K.
        seed_strategy : SeedStrategy, default=PCA
            PCA: top-K SVD components of the matrix (missing entries at the
            feature mean), scores scaled to unit variance.
            RANDOM: standard normal scores, loadings at the data scale.
        rng : np.random.Generator, optional
            Source of randomness.

        Notes
        -----
        With `options.signal_rank` only the leading `signal_rank(Y)`
        factors start active; without it, at most min(K, p, n). The
        remaining factors start switched off.
        """
        rng = rng if rng is not None else np.random.default_rng()
        seed_strategy = SeedStrategy(seed_strategy)
        K = n_factors
        self.K = K

        logger.info(f"Initializing {K} factors with '{seed_strategy.value}' seed")

        Y_fill = self.Y
        if not self.data.centered:
            row_means = np.nanmean(self.data.Y, axis=1)
            Y_fill = np.where(self.data.mask, self.data.Y, row_means[:, None])

        k_svd = min(K, self.p, self.n)
        n_active = k_svd
        if self.options.signal_rank:
            n_active = signal_rank(Y_fill, max_rank=k_svd)

        Z = np.zeros((self.n, K))
        W = np.zeros((self.p, K))
        if seed_strategy == SeedStrategy.PCA:
            U, s, Vt = _initial_svd(Y_fill, n_active)
            Z[:, :n_active] = Vt.T * np.sqrt(self.n)
            W[:, :n_active] = U * s / np.sqrt(self.n)
        else:
            data_scale = np.sqrt(max(self.ss_total / max(self.M.sum(), 1.0), self.floor))
            Z[:, :n_active] = rng.standard_normal((self.n, n_active))
            W[:, :n_active] = rng.standard_normal((self.p, n_active)) * data_scale

        self.active = np.arange(n_active)
        if n_active < K:
            logger.info(f"Factors {n_active + 1}..{K} start switched off")

        self.W_mu = W
        self.W_var = np.zeros((self.p, K))
        self.W_var[:, :n_active] = self.floor
        self.Z_mu = Z
        self.Z_cov = np.zeros((K, self.n, self.n))
        self.Z_cov[:n_active] = np.eye(self.n) * self.floor
        self.Z_logdet = np.full(K, self.n * np.log(self.floor))

        row_var = np.array([
            np.var(self.Y[f, self.M[f] > 0]) if self.n_obs[f] > 1 else 1.0
            for f in range(self.p)
        ])
        self.tau_a = np.ones(self.p)
        self.tau_b = np.maximum(row_var, self.b0)

        self.alpha_a = np.ones(K)
        self.alpha_b = np.ones(K)
        self.beta_a = np.ones(K)
        self.beta_b = np.ones(K)

        self.prior = SmoothPrior(
            self.data.covariate,
            K,
            lengthscale=self.options.initial_lengthscale,
            learn=self.options.smooth,
            jitter=self.options.jitter,
        )

        self._refresh_prediction()

    # -------------------------------------------------------------------------
    # Expectations
    # -------------------------------------------------------------------------

    def _refresh_prediction(self) -> None:
        a = self.active
        self.P = self.W_mu[:, a] @ self.Z_mu[:, a].T

    @property
    def is_active(self) -> np.ndarray:
        """Boolean (K,) mask of the switched-on factors."""
        mask = np.zeros(self.K, dtype=bool)
        mask[self.active] = True
        return mask

    @property
    def Z_var(self) -> np.ndarray:
        """Marginal posterior variances of the scores, shape (n, K)."""
        return np.diagonal(self.Z_cov, axis1=1, axis2=2).T

    @property
    def E_W2(self) -> np.ndarray:
        return self.W_mu ** 2 + self.W_var

    @property
    def E_Z2(self) -> np.ndarray:
        return self.Z_mu ** 2 + self.Z_var

    @property
    def E_tau(self) -> np.ndarray:
        return self.tau_a / self.tau_b

    @property
    def E_alpha(self) -> np.ndarray:
        if not self.options.ard_weights:
            return np.ones(self.K)
        return self.alpha_a / self.alpha_b

    @property
    def E_log_alpha(self) -> np.ndarray:
        if not self.options.ard_weights:
            return np.zeros(self.K)
        return digamma(self.alpha_a) - np.log(self.alpha_b)

    @property
    def E_beta(self) -> np.ndarray:
        if not self.options.ard_factors:
            return np.ones(self.K)
        return self.beta_a / self.beta_b

    @property
    def E_log_beta(self) -> np.ndarray:
        if not self.options.ard_factors:
            return np.zeros(self.K)
        return digamma(self.beta_a) - np.log(self.beta_b)

    def score_second_moment(self, k: int) -> np.ndarray:
        """E[z_k z_k^T], shape (n, n)."""
        return np.outer(self.Z_mu[:, k], self.Z_mu[:, k]) + self.Z_cov[k]

    def _expected_squared_residuals(
        self,
        factors: Optional[np.ndarray] = None,
        P: Optional[np.ndarray] = None,
    ) -> np.ndarray:
        """
        E[(Y - W Z^T)^2] on observed entries, shape (p, n).

        Sums over `factors` (the active ones by default), whose mean
        prediction must be `P`.
        """
        a = self.active if factors is None else factors
        P = self.P if P is None else P
        W_mu, Z_mu = self.W_mu[:, a], self.Z_mu[:, a]
        W2 = W_mu ** 2
        Z2 = Z_mu ** 2
        correction = (W2 + self.W_var[:, a]) @ (Z2 + self.Z_var[:, a]).T - W2 @ Z2.T
        return self.M * ((self.Y - P) ** 2 + correction)

    # -------------------------------------------------------------------------
    # Coordinate updates
    # -------------------------------------------------------------------------

    def update_loadings(self) -> None:
        """Update q(W) given the scores, noise and ARD precision."""
        tau = self.E_tau
        E_alpha = self.E_alpha
        Z2 = self.E_Z2

        for k in self.active:
            z = self.Z_mu[:, k]
            w_old = self.W_mu[:, k].copy()
            partial = self.M * (self.Y - self.P + np.outer(w_old, z))

            precision = E_alpha[k] + tau * (self.M @ Z2[:, k])
            precision = np.maximum(precision, self.floor)
            w_new = tau * (partial @ z) / precision

            self.W_mu[:, k] = w_new
            self.W_var[:, k] = 1.0 / precision
            self.P += np.outer(w_new - w_old, z)

    def update_scores(self) -> None:
        """Update q(Z) given the loadings, noise and temporal prior."""
        tau = self.E_tau
        E_beta = self.E_beta
        W2 = self.E_W2
        tauM = tau[:, None] * self.M

        for k in self.active:
            w = self.W_mu[:, k]
            z_old = self.Z_mu[:, k].copy()
            partial = self.M * (self.Y - self.P + np.outer(w, z_old))

            data_precision = tauM.T @ W2[:, k]
            Lam = E_beta[k] * self.prior.precision(k) + np.diag(data_precision)

            L, _ = _cholesky(Lam, self.floor)
            cov = scipy.linalg.cho_solve((L, True), np.eye(self.n))
            cov = 0.5 * (cov + cov.T)
            rhs = (tau[:, None] * partial).T @ w
            z_new = cov @ rhs

            self.Z_mu[:, k] = z_new
            self.Z_cov[k] = cov
            self.Z_logdet[k] = -2.0 * float(np.sum(np.log(np.diag(L))))
            self.P += np.outer(w, z_new - z_old)

    def update_noise(self) -> None:
        """Update q(tau) from the expected squared residuals."""
        ss = self._expected_squared_residuals().sum(axis=1)
        self.tau_a = self.a0 + 0.5 * self.n_obs
        self.tau_b = np.maximum(self.b0 + 0.5 * ss, self.floor)

    def update_relevance(self) -> None:
        """Update the ARD precisions of loadings and (optionally) scores."""
        a = self.active
        if self.options.ard_weights:
            self.alpha_a[a] = self.a0 + 0.5 * self.p
            self.alpha_b[a] = np.maximum(
                self.b0 + 0.5 * self.E_W2[:, a].sum(axis=0), self.floor
            )

        if self.options.ard_factors:
            quad = np.array([
                np.sum(self.prior.precision(k) * self.score_second_moment(k))
                for k in a
            ])
            self.beta_a[a] = self.a0 + 0.5 * self.n
            self.beta_b[a] = np.maximum(self.b0 + 0.5 * quad, self.floor)

    def update_smoothness(self) -> None:
        """Optimize the GP length-scales and smoothness scales."""
        a = self.active
        moments = [self.score_second_moment(k) for k in a]
        self.prior.optimize(moments, self.E_beta[a], factors=a)

    def switch_off_redundant(self) -> List[int]:
        """
        Switch off every factor whose removal does not lower the ELBO.

        Candidates are tested one at a time, with all other variational
        factors held fixed. At least one factor stays active.

        Returns
        -------
        list of int
            The factors switched off by this call.
        """
        dropped = []
        current = self.log_evidence_lower_bound()
        for k in list(self.active):
            if self.active.size <= 1:
                break
            rest = self.active[self.active != k]
            P_rest = self.P - np.outer(self.W_mu[:, k], self.Z_mu[:, k])
            without = self._elbo(rest, P_rest)
            if without >= current:
                self._switch_off(k)
                current = self.log_evidence_lower_bound()
                dropped.append(int(k))
        return dropped

    def _switch_off(self, k: int) -> None:
        self.active = self.active[self.active != k]
        self.W_mu[:, k] = 0.0
        self.W_var[:, k] = 0.0
        self.Z_mu[:, k] = 0.0
        self.Z_cov[k] = 0.0
        self._refresh_prediction()

    # -------------------------------------------------------------------------
    # Objective
    # -------------------------------------------------------------------------

    def log_evidence_lower_bound(self) -> float:
        """
        Evidence lower bound of the current variational state.

        Sum of the expected log likelihood over observed entries, the
        expected log priors and the entropies of every variational factor.
        Switched-off factors do not enter.
        """
        return self._elbo(self.active, self.P)

    def _elbo(self, a: np.ndarray, P: np.ndarray) -> float:
        tau_E = self.E_tau
        tau_Elog = digamma(self.tau_a) - np.log(self.tau_b)
        ss = self._expected_squared_residuals(a, P).sum(axis=1)
        lik = float(np.sum(0.5 * self.n_obs * (tau_Elog - LOG_2PI) - 0.5 * tau_E * ss))

        # Loadings: E[log p(W | alpha)] + H[q(W)]
        W_var = self.W_var[:, a]
        E_W2 = self.W_mu[:, a] ** 2 + W_var
        W_prior = np.sum(
            -0.5 * LOG_2PI + 0.5 * self.E_log_alpha[a] - 0.5 * self.E_alpha[a] * E_W2
        )
        W_entropy = np.sum(0.5 * (LOG_2PI + 1.0 + np.log(W_var)))
        elbo_W = float(W_prior + W_entropy)

        # Scores: E[log p(Z | beta, Sigma)] + H[q(Z)]
        E_beta, E_log_beta = self.E_beta, self.E_log_beta
        elbo_Z = 0.0
        for k in a:
            elbo_Z += self.prior.expected_log_prior(
                k, self.score_second_moment(k), E_beta[k], E_log_beta[k]
            )
            elbo_Z += 0.5 * (self.n * (LOG_2PI + 1.0) + self.Z_logdet[k])

        elbo_gamma = _gamma_elbo_terms(self.tau_a, self.tau_b, self.a0, self.b0)
        if self.options.ard_weights:
            elbo_gamma += _gamma_elbo_terms(self.alpha_a[a], self.alpha_b[a], self.a0, self.b0)
        if self.options.ard_factors:
            elbo_gamma += _gamma_elbo_terms(self.beta_a[a], self.beta_b[a], self.a0, self.b0)

        return lik + elbo_W + elbo_Z + elbo_gamma

    # -------------------------------------------------------------------------
    # Diagnostics
    # -------------------------------------------------------------------------

    def explained_variance(self) -> Tuple[np.ndarray, float]:
        """
        R² per factor and for the full model, over observed entries.

        R²_k = 1 - SS(Y - w_k z_k^T) / SS(Y), clipped into [0, 1].

        Returns
        -------
        per_factor : ndarray (K,)
        total : float
        """
        if self.ss_total <= 0:
            return np.zeros(self.K), 0.0

        per_factor = np.empty(self.K)
        for k in range(self.K):
            resid = self.M * (self.Y - np.outer(self.W_mu[:, k], self.Z_mu[:, k]))
            per_factor[k] = 1.0 - np.sum(resid ** 2) / self.ss_total

        total = 1.0 - np.sum((self.M * (self.Y - self.P)) ** 2) / self.ss_total
        return np.clip(per_factor, 0.0, 1.0), float(np.clip(total, 0.0, 1.0))

    @property
    def relevance(self) -> np.ndarray:
        """ARD variance 1 / E[alpha_k] of the loadings; 0 when switched off."""
        relevance = np.zeros(self.K)
        a = self.active
        relevance[a] = 1.0 / np.maximum(self.E_alpha[a], self.floor)
        return relevance

    @property
    def smoothness(self) -> np.ndarray:
        """Smoothness scale per factor; 0 when switched off."""
        smoothness = np.zeros(self.K)
        for k in self.active:
            smoothness[k] = self.prior.smoothness(k)
        return smoothness

    def keep(self, factors: Sequence[int]) -> None:
        """Restrict the state to the given factors, in that order."""
        idx = list(factors)
        was_active = self.is_active
        self.W_mu = self.W_mu[:, idx]
        self.W_var = self.W_var[:, idx]
        self.Z_mu = self.Z_mu[:, idx]
        self.Z_cov = self.Z_cov[idx]
        self.Z_logdet = self.Z_logdet[idx]
        self.alpha_a, self.alpha_b = self.alpha_a[idx], self.alpha_b[idx]
        self.beta_a, self.beta_b = self.beta_a[idx], self.beta_b[idx]
        self.prior.keep(idx)
        self.K = len(idx)
        self.active = np.flatnonzero(was_active[idx])
        self._refresh_prediction()
