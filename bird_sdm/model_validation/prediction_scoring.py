"""Held-out error of count predictions, split by observed zero / nonzero."""
from __future__ import annotations

from typing import Mapping

import numpy as np
import pandas as pd
from sklearn.metrics import mean_absolute_error

SUBSETS = ("all", "zero", "nonzero")


def mean_absolute_deviation(observed, predicted) -> float:
    """mean(|observed - predicted|) over pairs where both are present; NaN if none are."""
    obs = np.asarray(observed, dtype=float)
    pred = np.asarray(predicted, dtype=float)
    if obs.shape != pred.shape:
        raise ValueError(f"observed {obs.shape} and predicted {pred.shape} differ in shape")
    keep = np.isfinite(obs) & np.isfinite(pred)
    if not keep.any():
        return float("nan")
    return float(mean_absolute_error(obs[keep], pred[keep]))


def subset_masks(observed) -> dict:
    obs = np.asarray(observed, dtype=float)
    return {
        "all": np.ones(obs.shape, dtype=bool),
        "zero": obs == 0,
        "nonzero": obs > 0,
    }


def score_predictions(observed, predictions: Mapping[str, object]) -> pd.DataFrame:
    """MAD table: one row per model variant, one column per subset (all / zero / nonzero)."""
    obs = np.asarray(observed, dtype=float)
    masks = subset_masks(obs)
    rows = {}
    for variant, pred in predictions.items():
        pred = np.asarray(pred, dtype=float)
        if pred.shape != obs.shape:
            raise ValueError(f"{variant}: {pred.shape[0]} predictions for {obs.shape[0]} observations")
        rows[variant] = {name: mean_absolute_deviation(obs[m], pred[m]) for name, m in masks.items()}
    table = pd.DataFrame.from_dict(rows, orient="index", columns=list(SUBSETS))
    table.index.name = "model"
    return table


def subset_sizes(observed) -> pd.Series:
    return pd.Series({name: int(m.sum()) for name, m in subset_masks(observed).items()}, name="n")
