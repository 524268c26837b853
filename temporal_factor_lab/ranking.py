"""
ranking.py - Post-hoc Feature Ranking

Picks the features with the strongest loadings on a factor:

    any       |loading| descending
    positive  loading descending, positive loadings only
    negative  loading ascending, negative loadings only

Ties are broken by feature identifier ascending, so a ranking is fully
deterministic. Ranking never mutates the model.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterator, Optional, Tuple, Union

import numpy as np
import pandas as pd

from .types import Direction, TrainedModel


@dataclass(frozen=True)
class RankedFeatureList:
    """
    Ordered top features of one factor.

    Parameters
    ----------
    factor : int
        0-based factor index.
    direction : Direction
        Ranking direction used.
    feature_ids : tuple of str
        Feature identifiers, strongest first.
    loadings : tuple of float
        Loading of each listed feature on the factor.
    """
    factor: int
    direction: Direction
    feature_ids: Tuple[str, ...]
    loadings: Tuple[float, ...]

    def __len__(self) -> int:
        return len(self.feature_ids)

    def __iter__(self) -> Iterator[str]:
        return iter(self.feature_ids)

    def to_frame(self) -> pd.DataFrame:
        """One row per feature: rank (1-based), feature, loading."""
        return pd.DataFrame({
            "rank": np.arange(1, len(self) + 1),
            "feature": list(self.feature_ids),
            "loading": list(self.loadings),
        })


def rank_features(
    model: TrainedModel,
    factor: int,
    direction: Union[Direction, str] = Direction.ANY,
    top_n: int = 10,
    view: Optional[str] = None,
) -> RankedFeatureList:
    """
    Rank the features of one factor by loading.

    Parameters
    ----------
    model : TrainedModel
        A trained model.
    factor : int
        0-based index of a retained factor.
    direction : Direction or str, default="any"
        "any", "positive" or "negative".
    top_n : int, default=10
        Maximum number of features returned. Fewer are returned when fewer
        features qualify; the list is never padded.
    view : str, optional
        Data view name; must match `model.view` when given.

    Returns
    -------
    RankedFeatureList

    Raises
    ------
    InvalidFactorIndexError
        If `factor` is not a retained factor.
    ValueError
        If `direction` is unknown or `top_n` < 1.
    KeyError
        If `view` is not the model's view.

    Examples
    --------
    >>> up = rank_features(model, 0, "positive", top_n=20)
    >>> list(up)[:3]
    ['GATA1', 'KLF1', 'HBB']
    """
    try:
        direction = Direction(direction)
    except ValueError:
        valid = [d.value for d in Direction]
        raise ValueError(f"Unknown direction: '{direction}'. Valid directions are: {valid}") from None

    if top_n < 1:
        raise ValueError(f"top_n must be >= 1, got {top_n}")
    if view is not None and view != model.view:
        raise KeyError(f"Unknown view '{view}'; model has view '{model.view}'")

    w = np.asarray(model.loadings(factor))
    ids = np.asarray(model.feature_ids, dtype=object)

    if direction == Direction.ANY:
        idx = np.arange(w.size)
        key = -np.abs(w)
    elif direction == Direction.POSITIVE:
        idx = np.flatnonzero(w > 0)
        key = -w[idx]
    else:
        idx = np.flatnonzero(w < 0)
        key = w[idx]

    # lexsort: last key is primary
    order = np.lexsort((ids[idx].astype(str), key))
    chosen = idx[order][:top_n]

    return RankedFeatureList(
        factor=int(factor),
        direction=direction,
        feature_ids=tuple(str(i) for i in ids[chosen]),
        loadings=tuple(float(v) for v in w[chosen]),
    )


def top_features(
    model: TrainedModel,
    top_n: int = 10,
    direction: Union[Direction, str] = Direction.ANY,
) -> Dict[str, RankedFeatureList]:
    """Rank features for every retained factor, keyed by factor label."""
    return {
        label: rank_features(model, k, direction, top_n)
        for k, label in enumerate(model.factor_labels)
    }
