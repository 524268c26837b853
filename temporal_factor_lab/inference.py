"""
inference.py - Variational Inference Engine

Trains a `FactorModel` jointly with its temporal prior by coordinate
ascent on the evidence lower bound (ELBO).

Lifecycle:
---------
    INITIALIZED -> ITERATING -> {CONVERGED, MAX_ITERS_REACHED}

Every iteration updates, in this order:
    1. loadings      q(W)  given scores and noise
    2. scores        q(Z)  given loadings, noise and the temporal prior
    3. noise         q(tau) given residuals
    4. relevance     ARD precisions given loadings / scores
    5. smoothness    GP length-scale and scale given scores and covariate
    6. switch-off    drop factors whose removal does not lower the ELBO

then evaluates the ELBO. Steps 4 and 6 wait for the first `ard_warmup`
sweeps to pass. Training converges when the relative ELBO change drops
below the tolerance of the chosen convergence mode, checked once ARD has
run at least once. Running out of iterations is reported
(NonConvergenceWarning + convergence metadata), and the partially
converged model is still returned.

Example Usage:
-------------
    >>> from temporal_factor_lab import prepare_data, train
    >>>
    >>> data = prepare_data(Y, sample_ids, covariates, n_factors=3)
    >>> model = train(data, n_factors=3, convergence_mode="fast")
    >>> model.convergence.state
    <TrainingState.CONVERGED: 'converged'>
"""

from __future__ import annotations

import warnings
from dataclasses import replace
from typing import List, Optional

import numpy as np
from loguru import logger

from .exceptions import InsufficientSamplesError, NonConvergenceWarning
from .model import FactorModel
from .types import (
    ConvergenceInfo,
    TemporalData,
    TrainedModel,
    TrainingOptions,
    TrainingState,
)


class InferenceEngine:
    """
    Owns a factor model for the duration of one training run.

    Parameters
    ----------
    data : TemporalData
        Prepared observations and covariate.
    options : TrainingOptions
        Run configuration.

    Raises
    ------
    InsufficientSamplesError
        If the data has fewer than n_factors + 1 samples.

    Notes
    -----
    An engine runs once. Calling `run()` again raises RuntimeError; build
    a new engine (e.g. with another seed or convergence mode) instead.
    """

    def __init__(self, data: TemporalData, options: TrainingOptions):
        if data.n_samples < options.n_factors + 1:
            raise InsufficientSamplesError(
                f"Need at least n_factors + 1 = {options.n_factors + 1} samples, "
                f"got {data.n_samples}"
            )

        self.data = data
        self.options = options
        self.tolerance = options.resolved_tolerance()
        self.max_iter = options.resolved_max_iter()
        # ARD must have been updated at least once before convergence
        self.first_check = options.min_iter
        if options.ard_weights or options.ard_factors:
            self.first_check = max(options.min_iter, options.ard_warmup + 1)
        self.elbo_trace: List[float] = []

        self.model = FactorModel(data, options)
        self.model.initialize(
            options.n_factors,
            options.seed_strategy,
            np.random.default_rng(options.seed),
        )
        self._state = TrainingState.INITIALIZED

    @property
    def state(self) -> TrainingState:
        return self._state

    def _optimize_smoothness_now(self, it: int) -> bool:
        opts = self.options
        return opts.smooth and it >= opts.start_opt and (it - opts.start_opt) % opts.opt_freq == 0

    def step(self, it: int) -> float:
        """Run one full sweep of updates and return the new ELBO."""
        fm = self.model
        past_warmup = it > self.options.ard_warmup
        fm.update_loadings()
        fm.update_scores()
        fm.update_noise()
        if past_warmup:
            fm.update_relevance()
        if self._optimize_smoothness_now(it):
            fm.update_smoothness()
        if past_warmup:
            for k in fm.switch_off_redundant():
                logger.info(
                    f"Iteration {it}: switched off factor {k} "
                    "(removing it does not lower the ELBO)"
                )
        return fm.log_evidence_lower_bound()

    def run(self, stacklevel: int = 2) -> TrainedModel:
        """
        Iterate until convergence or until the budget is spent.

        Parameters
        ----------
        stacklevel : int, default=2
            Passed to `warnings.warn` for the NonConvergenceWarning. The
            default points at the caller of `run()`.

        Returns
        -------
        TrainedModel
            Factors sorted by explained variance (descending), pruned
            according to `drop_factor_threshold`.
        """
        if self._state != TrainingState.INITIALIZED:
            raise RuntimeError(
                f"InferenceEngine already ran (state={self._state.value}); "
                "create a new engine to train again"
            )

        opts = self.options
        logger.info(
            f"Starting training: {self.data.n_features} features, "
            f"{self.data.n_samples} samples, K={opts.n_factors}, "
            f"mode={opts.convergence_mode.value} (tol={self.tolerance:.1e}, "
            f"max_iter={self.max_iter})"
        )

        self._state = TrainingState.ITERATING
        delta = float("nan")
        prev: Optional[float] = None

        for it in range(1, self.max_iter + 1):
            elbo = self.step(it)
            self.elbo_trace.append(elbo)

            if prev is not None:
                delta = (elbo - prev) / max(abs(prev), np.finfo(float).tiny)
                logger.debug(f"Iteration {it}: ELBO={elbo:.6f}, deltaELBO={delta:.3e}")
                if delta < -self.tolerance:
                    logger.warning(
                        f"ELBO decreased at iteration {it} ({prev:.6f} -> {elbo:.6f})"
                    )
                if it >= self.first_check and abs(delta) < self.tolerance:
                    self._state = TrainingState.CONVERGED
                    break
            else:
                logger.debug(f"Iteration {it}: ELBO={elbo:.6f}")
            prev = elbo

        n_iter = len(self.elbo_trace)
        if self._state == TrainingState.CONVERGED:
            logger.success(f"Converged after {n_iter} iterations. ELBO: {self.elbo_trace[-1]:.4f}")
        else:
            self._state = TrainingState.MAX_ITERS_REACHED
            message = (
                f"Training stopped after max_iter={self.max_iter} iterations without "
                f"reaching tolerance {self.tolerance:.1e} (last deltaELBO={delta:.3e})"
            )
            logger.warning(message)
            warnings.warn(message, NonConvergenceWarning, stacklevel=stacklevel)

        convergence = ConvergenceInfo(
            state=self._state,
            n_iter=n_iter,
            elbo=float(self.elbo_trace[-1]),
            elbo_trace=tuple(self.elbo_trace),
            tolerance=self.tolerance,
            max_iter=self.max_iter,
            delta=float(delta),
        )
        return self._finalize(convergence)

    def _finalize(self, convergence: ConvergenceInfo) -> TrainedModel:
        fm = self.model
        r2, _ = fm.explained_variance()
        order = np.argsort(-r2, kind="stable")

        threshold = self.options.drop_factor_threshold
        if self.options.pruning_enabled:
            kept = [int(k) for k in order if r2[k] >= threshold]
            if not kept:
                kept = [int(order[0])]
                logger.warning(
                    f"No factor reaches drop_factor_threshold={threshold}; "
                    f"keeping the strongest one (R²={r2[order[0]]:.4f})"
                )
            dropped = fm.K - len(kept)
            if dropped:
                logger.info(f"Pruned {dropped} factor(s) below R² threshold {threshold}")
        else:
            kept = [int(k) for k in order]

        fm.keep(kept)
        r2, total = fm.explained_variance()

        logger.success(
            f"Training complete: {fm.K} factor(s) ({fm.active.size} active), "
            f"total explained variance {total:.2%}"
        )

        return TrainedModel(
            W=fm.W_mu,
            Z=fm.Z_mu,
            tau=fm.E_tau,
            smoothness=fm.smoothness,
            lengthscales=fm.prior.lengthscales,
            relevance=fm.relevance,
            explained_variance=r2,
            total_explained_variance=total,
            feature_ids=self.data.feature_ids,
            sample_ids=self.data.sample_ids,
            covariate=self.data.covariate,
            convergence=convergence,
        )


def train(
    data: TemporalData,
    options: Optional[TrainingOptions] = None,
    **overrides,
) -> TrainedModel:
    """
    Train a temporal factor model.

    Parameters
    ----------
    data : TemporalData
        Output of `prepare_data` / `from_dataframe`.
    options : TrainingOptions, optional
        Full configuration. When omitted, `overrides` must at least give
        `n_factors`.
    **overrides
        Individual TrainingOptions fields, applied on top of `options`.

    Returns
    -------
    TrainedModel

    Examples
    --------
    >>> model = train(data, n_factors=3, ard_factors=False,
    ...               convergence_mode="medium", seed=0)
    >>> model = train(data, TrainingOptions(n_factors=5), drop_factor_threshold=0.01)
    """
    if options is None:
        options = TrainingOptions(**overrides)
    elif overrides:
        options = replace(options, **overrides)

    # stacklevel 3: the warning points at the caller of train()
    return InferenceEngine(data, options).run(stacklevel=3)
