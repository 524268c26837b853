"""
types.py - Core Data Structures and Type Definitions for Temporal Factor Lab

This module defines the value objects shared across temporal_factor_lab:
- TemporalData: The validated (matrix, covariate) pair fed to training
- TrainingOptions: Explicit configuration struct for the inference engine
- ConvergenceInfo: Convergence metadata attached to a trained model
- Factor / TrainedModel: The trained decomposition and its read accessors

Design Principles:
-----------------
1. Immutability where practical (frozen dataclasses, read-only arrays)
2. Validation at construction time (fail-fast)
3. No process-wide state: every component receives its configuration
4. Numpy-style docstrings throughout

Example Usage:
-------------
    >>> from temporal_factor_lab import prepare_data, train
    >>>
    >>> data = prepare_data(Y, sample_ids, {"s1": 0.0, ...}, n_factors=3)
    >>> model = train(data, n_factors=3, convergence_mode="medium")
    >>> print(model.smoothness)        # one value in [0, 1] per factor
    >>> print(model.convergence.state)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from .exceptions import InvalidFactorIndexError


# =============================================================================
# ENUMS
# =============================================================================

class ConvergenceMode(str, Enum):
    """
    Convergence strictness presets.

    Each preset maps to a (tolerance, max_iter) pair. The tolerance bounds the
    relative change of the evidence lower bound between two sweeps.
    """
    FAST = "fast"
    MEDIUM = "medium"
    SLOW = "slow"

    def preset(self) -> Tuple[float, int]:
        """Return the (tolerance, max_iter) pair for this mode."""
        return _CONVERGENCE_PRESETS[self]


_CONVERGENCE_PRESETS: Dict[ConvergenceMode, Tuple[float, int]] = {
    ConvergenceMode.FAST: (5e-4, 500),
    ConvergenceMode.MEDIUM: (5e-5, 1000),
    ConvergenceMode.SLOW: (5e-6, 2000),
}


class SeedStrategy(str, Enum):
    """How the variational state is initialized."""
    PCA = "pca"
    RANDOM = "random"


class Direction(str, Enum):
    """Which loadings a feature ranking looks at."""
    ANY = "any"
    POSITIVE = "positive"
    NEGATIVE = "negative"


class TrainingState(str, Enum):
    """
    Lifecycle of an inference run.

    INITIALIZED -> ITERATING -> {CONVERGED, MAX_ITERS_REACHED}
    """
    INITIALIZED = "initialized"
    ITERATING = "iterating"
    CONVERGED = "converged"
    MAX_ITERS_REACHED = "max_iters_reached"


def _readonly(a: np.ndarray, dtype=float) -> np.ndarray:
    arr = np.array(a, dtype=dtype, copy=True)
    arr.setflags(write=False)
    return arr


# =============================================================================
# INPUT DATA
# =============================================================================

@dataclass(frozen=True)
class TemporalData:
    """
    A validated observation matrix paired with its temporal covariate.

    Produced by `prepare_data` / `from_dataframe`; consumed by the
    inference engine. Sample ordering is shared by `Y` columns,
    `covariate` and `sample_ids`.

    Parameters
    ----------
    Y : np.ndarray
        Observations with shape (p, n): p features by n samples. Missing
        entries are NaN and are excluded from the likelihood.
    covariate : np.ndarray
        Time value of every sample, shape (n,).
    feature_ids : tuple of str
        Unique feature identifiers, length p.
    sample_ids : tuple of str
        Unique sample identifiers, length n.
    feature_means : np.ndarray, optional
        Per-feature means that were subtracted, or None if the data was
        not centered.
    """
    Y: np.ndarray
    covariate: np.ndarray
    feature_ids: Tuple[str, ...]
    sample_ids: Tuple[str, ...]
    feature_means: Optional[np.ndarray] = None

    def __post_init__(self):
        object.__setattr__(self, "Y", _readonly(self.Y))
        object.__setattr__(self, "covariate", _readonly(self.covariate))
        object.__setattr__(self, "feature_ids", tuple(self.feature_ids))
        object.__setattr__(self, "sample_ids", tuple(self.sample_ids))
        if self.feature_means is not None:
            object.__setattr__(self, "feature_means", _readonly(self.feature_means))
        self.validate()

    @property
    def n_features(self) -> int:
        """Number of features (rows)."""
        return self.Y.shape[0]

    @property
    def n_samples(self) -> int:
        """Number of samples (columns)."""
        return self.Y.shape[1]

    @property
    def mask(self) -> np.ndarray:
        """Boolean (p, n) array, True where a value was observed."""
        return ~np.isnan(self.Y)

    @property
    def n_missing(self) -> int:
        """Count of unobserved entries."""
        return int(np.isnan(self.Y).sum())

    @property
    def centered(self) -> bool:
        return self.feature_means is not None

    def validate(self) -> None:
        """
        Check internal consistency.

        Raises
        ------
        ValueError
            On any shape or identifier mismatch.
        """
        if self.Y.ndim != 2:
            raise ValueError(f"Y must be 2D, got shape {self.Y.shape}")

        p, n = self.Y.shape
        if p == 0 or n == 0:
            raise ValueError(f"Y must have positive dimensions, got ({p}, {n})")
        if self.covariate.shape != (n,):
            raise ValueError(
                f"covariate shape mismatch: expected ({n},), got {self.covariate.shape}"
            )
        if len(self.feature_ids) != p:
            raise ValueError(
                f"feature_ids has {len(self.feature_ids)} entries, Y has {p} rows"
            )
        if len(self.sample_ids) != n:
            raise ValueError(
                f"sample_ids has {len(self.sample_ids)} entries, Y has {n} columns"
            )
        if self.feature_means is not None and self.feature_means.shape != (p,):
            raise ValueError(
                f"feature_means shape mismatch: expected ({p},), "
                f"got {self.feature_means.shape}"
            )


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass(frozen=True)
class TrainingOptions:
    """
    Configuration of a training run.

    Parameters
    ----------
    n_factors : int
        Number of latent factors K requested.
    convergence_mode : ConvergenceMode or str, default="medium"
        Strictness preset; sets the tolerance and the iteration budget.
    tolerance : float, optional
        Overrides the preset's relative ELBO tolerance.
    max_iter : int, optional
        Overrides the preset's iteration budget.
    min_iter : int, default=2
        Sweeps performed before convergence may be declared.
    seed_strategy : SeedStrategy or str, default="pca"
        Initialization from a truncated SVD or from random draws.
    seed : int, optional
        Seed for the random number generator.
    ard_factors : bool, default=False
        Learn a per-factor precision on the scores.
    ard_weights : bool, default=True
        Learn a per-factor precision on the loadings.
    ard_warmup : int, default=5
        Sweeps run with the ARD precisions held at their starting value.
        No factor is switched off before the warm-up ends.
    signal_rank : bool, default=True
        Start only as many factors as the singular spectrum of the matrix
        supports above its noise level. The others are switched off from
        the start and reported with zero loadings and scores. When False
        all `n_factors` factors start active.
    drop_factor_threshold : float, default=-1.0
        Factors explaining less variance than this are pruned after
        training. Any negative value disables pruning.
    smooth : bool, default=True
        Use the Gaussian-process temporal prior on the scores. When False
        every smoothness scale stays at 0.
    start_opt : int, default=1
        First iteration at which smoothness hyperparameters are optimized.
    opt_freq : int, default=1
        Optimize smoothness hyperparameters every `opt_freq` iterations.
    initial_lengthscale : float, optional
        Starting kernel length-scale; half the covariate range if None.
    prior_shape, prior_rate : float, default=1e-3
        Gamma hyperparameters of the noise and ARD precisions.
    jitter : float, default=1e-6
        Added to the diagonal of every prior covariance.
    variance_floor : float, default=1e-8
        Lower clamp for variances and precisions.
    """
    n_factors: int
    convergence_mode: Union[ConvergenceMode, str] = ConvergenceMode.MEDIUM
    tolerance: Optional[float] = None
    max_iter: Optional[int] = None
    min_iter: int = 2
    seed_strategy: Union[SeedStrategy, str] = SeedStrategy.PCA
    seed: Optional[int] = None
    ard_factors: bool = False
    ard_weights: bool = True
    ard_warmup: int = 5
    signal_rank: bool = True
    drop_factor_threshold: float = -1.0
    smooth: bool = True
    start_opt: int = 1
    opt_freq: int = 1
    initial_lengthscale: Optional[float] = None
    prior_shape: float = 1e-3
    prior_rate: float = 1e-3
    jitter: float = 1e-6
    variance_floor: float = 1e-8

    def __post_init__(self):
        object.__setattr__(self, "convergence_mode", ConvergenceMode(self.convergence_mode))
        object.__setattr__(self, "seed_strategy", SeedStrategy(self.seed_strategy))

        if self.n_factors < 1:
            raise ValueError(f"n_factors must be >= 1, got {self.n_factors}")
        if self.tolerance is not None and self.tolerance <= 0:
            raise ValueError(f"tolerance must be positive, got {self.tolerance}")
        if self.max_iter is not None and self.max_iter < 1:
            raise ValueError(f"max_iter must be >= 1, got {self.max_iter}")
        if self.min_iter < 1:
            raise ValueError(f"min_iter must be >= 1, got {self.min_iter}")
        if self.ard_warmup < 0:
            raise ValueError(f"ard_warmup must be >= 0, got {self.ard_warmup}")
        if self.start_opt < 0 or self.opt_freq < 1:
            raise ValueError(
                f"start_opt must be >= 0 and opt_freq >= 1, "
                f"got {self.start_opt} and {self.opt_freq}"
            )
        if self.initial_lengthscale is not None and self.initial_lengthscale <= 0:
            raise ValueError(
                f"initial_lengthscale must be positive, got {self.initial_lengthscale}"
            )
        if self.prior_shape <= 0 or self.prior_rate <= 0:
            raise ValueError("Gamma prior hyperparameters must be positive")
        if self.jitter < 0 or self.variance_floor <= 0:
            raise ValueError("jitter must be >= 0 and variance_floor > 0")

    def resolved_tolerance(self) -> float:
        """Tolerance after applying the override on top of the preset."""
        if self.tolerance is not None:
            return float(self.tolerance)
        return self.convergence_mode.preset()[0]

    def resolved_max_iter(self) -> int:
        """Iteration budget after applying the override on top of the preset."""
        if self.max_iter is not None:
            return int(self.max_iter)
        return self.convergence_mode.preset()[1]

    @property
    def pruning_enabled(self) -> bool:
        return self.drop_factor_threshold >= 0


# =============================================================================
# RESULTS
# =============================================================================

@dataclass(frozen=True)
class ConvergenceInfo:
    """
    How a training run ended.

    Parameters
    ----------
    state : TrainingState
        CONVERGED or MAX_ITERS_REACHED for a finished run.
    n_iter : int
        Number of full update sweeps performed.
    elbo : float
        Final evidence lower bound.
    elbo_trace : tuple of float
        Evidence lower bound after every sweep.
    tolerance : float
        Relative tolerance used.
    max_iter : int
        Iteration budget used.
    delta : float
        Relative ELBO change of the last sweep (NaN before the second one).
    """
    state: TrainingState
    n_iter: int
    elbo: float
    elbo_trace: Tuple[float, ...]
    tolerance: float
    max_iter: int
    delta: float = float("nan")

    @property
    def converged(self) -> bool:
        return self.state == TrainingState.CONVERGED


@dataclass(frozen=True)
class Factor:
    """
    Read-only view of one learned factor.

    Parameters
    ----------
    index : int
        0-based position in the trained model.
    label : str
        Display name, e.g. "Factor1".
    loadings : np.ndarray
        Per-feature weights, shape (p,).
    scores : np.ndarray
        Per-sample values, shape (n,).
    smoothness : float
        Learned GP scale in [0, 1]; 0 is time independent.
    lengthscale : float
        Learned kernel length-scale, in covariate units.
    relevance : float
        ARD variance of the loadings (1 / E[alpha]); exactly 0 for a factor
        switched off during training.
    explained_variance : float
        Fraction of observed variance attributed to this factor.
    """
    index: int
    label: str
    loadings: np.ndarray
    scores: np.ndarray
    smoothness: float
    lengthscale: float
    relevance: float
    explained_variance: float


@dataclass
class TrainedModel:
    """
    The result of a training run.

    The decomposition is Y ≈ W @ Z.T, i.e. for feature f and sample s

        Y[f, s] ≈ sum_k W[f, k] * Z[s, k]

    All arrays are read-only once constructed.

    Parameters
    ----------
    W : np.ndarray
        Loadings with shape (p, K).
    Z : np.ndarray
        Scores with shape (n, K).
    tau : np.ndarray
        Noise precision per feature, shape (p,).
    smoothness : np.ndarray
        GP smoothness scale per factor, shape (K,), within [0, 1].
    lengthscales : np.ndarray
        GP length-scale per factor, shape (K,).
    relevance : np.ndarray
        ARD variance of the loadings per factor, shape (K,); 0 for
        switched-off factors.
    explained_variance : np.ndarray
        R² per factor, shape (K,), within [0, 1].
    total_explained_variance : float
        R² of the full reconstruction, within [0, 1].
    feature_ids, sample_ids : tuple of str
        Identifiers matching the rows of W and Z.
    covariate : np.ndarray
        Time value per sample, shape (n,).
    convergence : ConvergenceInfo
        Convergence metadata.
    view : str, default="view_0"
        Name of the (single) data view.
    """
    W: np.ndarray
    Z: np.ndarray
    tau: np.ndarray
    smoothness: np.ndarray
    lengthscales: np.ndarray
    relevance: np.ndarray
    explained_variance: np.ndarray
    total_explained_variance: float
    feature_ids: Tuple[str, ...]
    sample_ids: Tuple[str, ...]
    covariate: np.ndarray
    convergence: ConvergenceInfo
    view: str = "view_0"

    def __post_init__(self):
        for name in ("W", "Z", "tau", "smoothness", "lengthscales",
                     "relevance", "explained_variance", "covariate"):
            setattr(self, name, _readonly(getattr(self, name)))
        self.feature_ids = tuple(self.feature_ids)
        self.sample_ids = tuple(self.sample_ids)
        self.validate()

    @property
    def n_factors(self) -> int:
        """Number of retained factors."""
        return self.W.shape[1]

    @property
    def n_features(self) -> int:
        return self.W.shape[0]

    @property
    def n_samples(self) -> int:
        return self.Z.shape[0]

    @property
    def factor_labels(self) -> List[str]:
        return [f"Factor{k + 1}" for k in range(self.n_factors)]

    def validate(self) -> None:
        """
        Validate internal consistency of the trained model.

        Raises
        ------
        ValueError
            If any dimension mismatches are detected.
        """
        if self.W.ndim != 2 or self.Z.ndim != 2:
            raise ValueError("W and Z must be 2D")

        p, K = self.W.shape
        n = self.Z.shape[0]

        if self.Z.shape[1] != K:
            raise ValueError(f"Z has {self.Z.shape[1]} factors, W has {K}")
        for name in ("smoothness", "lengthscales", "relevance", "explained_variance"):
            if getattr(self, name).shape != (K,):
                raise ValueError(
                    f"{name} shape mismatch: expected ({K},), "
                    f"got {getattr(self, name).shape}"
                )
        if self.tau.shape != (p,) or len(self.feature_ids) != p:
            raise ValueError(f"tau and feature_ids must have length {p}")
        if self.covariate.shape != (n,) or len(self.sample_ids) != n:
            raise ValueError(f"covariate and sample_ids must have length {n}")

    def check_factor(self, k: int) -> int:
        """
        Validate a 0-based factor index.

        Raises
        ------
        InvalidFactorIndexError
            If `k` is not an index of a retained factor.
        """
        if isinstance(k, (bool, np.bool_)) or not isinstance(k, (int, np.integer)):
            raise InvalidFactorIndexError(f"Factor index must be an integer, got {k!r}")
        if k < 0 or k >= self.n_factors:
            raise InvalidFactorIndexError(
                f"Factor index {k} out of range: model retains "
                f"{self.n_factors} factor(s) (valid: 0..{self.n_factors - 1})"
            )
        return int(k)

    def loadings(self, k: int) -> np.ndarray:
        """Per-feature loadings of factor `k`."""
        return self.W[:, self.check_factor(k)]

    def scores(self, k: int) -> np.ndarray:
        """Per-sample scores of factor `k`."""
        return self.Z[:, self.check_factor(k)]

    def smoothness_of(self, k: int) -> float:
        """Learned smoothness scale of factor `k`, in [0, 1]."""
        return float(self.smoothness[self.check_factor(k)])

    def factor(self, k: int) -> Factor:
        """Bundle every per-factor quantity of factor `k`."""
        k = self.check_factor(k)
        return Factor(
            index=k,
            label=self.factor_labels[k],
            loadings=self.W[:, k],
            scores=self.Z[:, k],
            smoothness=float(self.smoothness[k]),
            lengthscale=float(self.lengthscales[k]),
            relevance=float(self.relevance[k]),
            explained_variance=float(self.explained_variance[k]),
        )

    @property
    def factors(self) -> List[Factor]:
        return [self.factor(k) for k in range(self.n_factors)]

    def reconstruct(self, factors: Optional[Sequence[int]] = None) -> np.ndarray:
        """
        Rebuild the (p, n) matrix as the sum of loadings ⊗ scores.

        Parameters
        ----------
        factors : sequence of int, optional
            Restrict the sum to these factors. All factors if None.
        """
        if factors is None:
            idx = list(range(self.n_factors))
        else:
            idx = [self.check_factor(k) for k in factors]
        return self.W[:, idx] @ self.Z[:, idx].T

    def residual_variance(self, Y: Union[np.ndarray, TemporalData]) -> float:
        """
        Mean squared residual of the reconstruction over observed entries.

        Parameters
        ----------
        Y : np.ndarray or TemporalData
            The (centered) training matrix, NaN for missing.
        """
        if isinstance(Y, TemporalData):
            Y = Y.Y
        Y = np.asarray(Y, dtype=float)
        if Y.shape != (self.n_features, self.n_samples):
            raise ValueError(
                f"Y shape mismatch: expected {(self.n_features, self.n_samples)}, "
                f"got {Y.shape}"
            )
        resid = (Y - self.reconstruct())[~np.isnan(Y)]
        return float(np.mean(resid ** 2))
