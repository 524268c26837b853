"""
data.py - Data Matrix Adapter

Turns a raw numeric matrix (features as rows, samples as columns) and a
sample -> time mapping into a validated `TemporalData` pair.

Checks performed, in order:
1. The matrix is 2D, numeric and free of infinite values (NaN = missing)
2. Every sample column has a covariate value (MissingCovariateError)
3. There are at least n_factors + 1 samples (InsufficientSamplesError)

Both checks run before any optimization, so a bad input never reaches
the inference engine.

Example Usage:
-------------
    >>> from temporal_factor_lab.data import prepare_data
    >>>
    >>> data = prepare_data(
    ...     Y, sample_ids=["d0_a", "d0_b", "d1_a", "d1_b"],
    ...     covariates={"d0_a": 0, "d0_b": 0, "d1_a": 1, "d1_b": 1},
    ...     n_factors=2,
    ... )
"""

from __future__ import annotations

from typing import Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd
from loguru import logger

from .exceptions import InsufficientSamplesError, MissingCovariateError
from .types import TemporalData

CovariateMap = Union[Mapping[str, float], pd.Series]


def _check_unique(ids: Sequence[str], what: str) -> None:
    seen = set()
    dupes = []
    for i in ids:
        if i in seen:
            dupes.append(i)
        seen.add(i)
    if dupes:
        raise ValueError(f"Duplicate {what} identifiers: {sorted(set(dupes))[:5]}")


def _lookup_covariates(sample_ids: Sequence[str], covariates: CovariateMap) -> np.ndarray:
    if isinstance(covariates, pd.Series):
        covariates = covariates.to_dict()
    covariates = {str(k): v for k, v in covariates.items()}

    missing = [s for s in sample_ids if s not in covariates]
    if missing:
        logger.error(f"Covariate lookup failed for {len(missing)} sample(s)")
        raise MissingCovariateError(missing)

    try:
        t = np.array([covariates[s] for s in sample_ids], dtype=float)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Covariate values must be numeric: {e}") from e

    if not np.all(np.isfinite(t)):
        bad = [s for s, v in zip(sample_ids, t) if not np.isfinite(v)]
        raise ValueError(f"Covariate values must be finite, got non-finite for {bad[:5]}")
    return t


def prepare_data(
    matrix: np.ndarray,
    sample_ids: Sequence[str],
    covariates: CovariateMap,
    n_factors: int,
    feature_ids: Optional[Sequence[str]] = None,
    center: bool = True,
) -> TemporalData:
    """
    Validate and normalize an omics matrix for training.

    Parameters
    ----------
    matrix : array-like (p, n)
        Observations: p features by n samples. NaN marks a missing entry.
    sample_ids : sequence of str
        Column identifiers, length n, unique.
    covariates : mapping or pandas.Series
        Time value for each sample identifier. Extra entries are ignored.
    n_factors : int
        Number of factors that will be requested; at least n_factors + 1
        samples are required.
    feature_ids : sequence of str, optional
        Row identifiers, length p, unique. Defaults to "feature_0", ...
    center : bool, default=True
        Subtract each feature's mean over its observed samples. The
        factor model assumes zero-mean data.

    Returns
    -------
    TemporalData
        Immutable (matrix, covariate) pair in the column order of `matrix`.

    Raises
    ------
    MissingCovariateError
        If a sample has no covariate entry.
    InsufficientSamplesError
        If there are fewer than n_factors + 1 samples.
    ValueError
        On malformed input (shape, duplicates, infinite values, a feature
        with no observed value).
    """
    try:
        Y = np.array(matrix, dtype=float)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Matrix must be numeric: {e}") from e

    if Y.ndim != 2:
        raise ValueError(f"Matrix must be 2D (features x samples), got shape {Y.shape}")

    p, n = Y.shape
    sample_ids = [str(s) for s in sample_ids]
    if len(sample_ids) != n:
        raise ValueError(f"Got {len(sample_ids)} sample ids for {n} matrix columns")

    if feature_ids is None:
        feature_ids = [f"feature_{i}" for i in range(p)]
    feature_ids = [str(f) for f in feature_ids]
    if len(feature_ids) != p:
        raise ValueError(f"Got {len(feature_ids)} feature ids for {p} matrix rows")

    _check_unique(sample_ids, "sample")
    _check_unique(feature_ids, "feature")

    if np.isinf(Y).any():
        raise ValueError("Matrix contains infinite values; use NaN for missing entries")

    # Covariate check precedes the size check so a bad mapping is always reported
    t = _lookup_covariates(sample_ids, covariates)

    if n < n_factors + 1:
        raise InsufficientSamplesError(
            f"Need at least n_factors + 1 = {n_factors + 1} samples, got {n}"
        )

    mask = ~np.isnan(Y)
    empty = [feature_ids[i] for i in np.flatnonzero(mask.sum(axis=1) == 0)]
    if empty:
        raise ValueError(f"Features with no observed value: {empty[:5]}")

    means = None
    if center:
        means = np.nanmean(Y, axis=1)
        Y = Y - means[:, None]

    logger.info(
        f"Prepared data: {p} features x {n} samples, "
        f"{int((~mask).sum())} missing, {len(np.unique(t))} time points, "
        f"centered={center}"
    )

    return TemporalData(
        Y=Y,
        covariate=t,
        feature_ids=tuple(feature_ids),
        sample_ids=tuple(sample_ids),
        feature_means=means,
    )


def from_dataframe(
    frame: pd.DataFrame,
    covariates: CovariateMap,
    n_factors: int,
    center: bool = True,
) -> TemporalData:
    """
    Build `TemporalData` from a labelled pandas frame.

    Parameters
    ----------
    frame : pandas.DataFrame
        Rows are features (index = feature ids), columns are samples.
    covariates : mapping or pandas.Series
        Time value per sample id.
    n_factors : int
        Number of factors that will be requested.
    center : bool, default=True
        Subtract per-feature means.

    Returns
    -------
    TemporalData
    """
    numeric = frame.apply(pd.to_numeric, errors="coerce")
    coerced = int((numeric.isna() & ~frame.isna()).to_numpy().sum())
    if coerced:
        logger.warning(f"{coerced} non-numeric cell(s) were treated as missing values")

    values = numeric.to_numpy(dtype=float)
    return prepare_data(
        values,
        sample_ids=[str(c) for c in frame.columns],
        covariates=covariates,
        n_factors=n_factors,
        feature_ids=[str(i) for i in frame.index],
        center=center,
    )
