"""
reports.py - Summary Tables from a Trained Model

Each table is built only from the public read accessors of TrainedModel,
so any export (CSV, spreadsheet, plotting input) can be derived from them.
"""

from __future__ import annotations

from typing import Union

import pandas as pd

from .ranking import rank_features
from .types import Direction, TrainedModel


def variance_explained_table(model: TrainedModel) -> pd.DataFrame:
    """
    Explained variance per factor.

    Returns
    -------
    pandas.DataFrame
        Indexed by factor label with columns `r2` and `smoothness`, plus a
        final "Total" row holding the full-model R².
    """
    frame = pd.DataFrame(
        {"r2": model.explained_variance, "smoothness": model.smoothness},
        index=pd.Index(model.factor_labels, name="factor"),
    )
    total = pd.DataFrame(
        {"r2": [model.total_explained_variance], "smoothness": [float("nan")]},
        index=pd.Index(["Total"], name="factor"),
    )
    return pd.concat([frame, total])


def smoothness_table(model: TrainedModel, threshold: float = 0.5) -> pd.DataFrame:
    """
    Per-factor smoothness report.

    A factor is flagged `temporal` when its smoothness scale reaches
    `threshold`.
    """
    return pd.DataFrame(
        {
            "smoothness": model.smoothness,
            "lengthscale": model.lengthscales,
            "temporal": model.smoothness >= threshold,
        },
        index=pd.Index(model.factor_labels, name="factor"),
    )


def ranking_table(
    model: TrainedModel,
    top_n: int = 10,
    direction: Union[Direction, str] = Direction.ANY,
) -> pd.DataFrame:
    """Long-format top features of every factor: factor, rank, feature, loading."""
    frames = []
    for k, label in enumerate(model.factor_labels):
        ranked = rank_features(model, k, direction, top_n).to_frame()
        ranked.insert(0, "factor", label)
        frames.append(ranked)
    return pd.concat(frames, ignore_index=True)


def factor_scores_table(model: TrainedModel) -> pd.DataFrame:
    """Scores per sample and factor, with the covariate as first column."""
    frame = pd.DataFrame(
        model.Z,
        index=pd.Index(model.sample_ids, name="sample"),
        columns=model.factor_labels,
    )
    frame.insert(0, "covariate", model.covariate)
    return frame
