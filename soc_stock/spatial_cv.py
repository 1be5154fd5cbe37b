"""
Spatial cross-validation helpers
================================
Folds come from k-means clustering of projected coordinates, run inside
each stratum so every fold keeps the stratification. A stratum with fewer
cores than folds gets max(1, n − 1) clusters and its metrics are flagged
unreliable.
"""
from __future__ import annotations

import logging

import numpy as np
import pandas as pd
from sklearn.base import clone
from sklearn.cluster import KMeans
from sklearn.metrics import mean_absolute_error, mean_squared_error, r2_score

logger = logging.getLogger(__name__)

MIN_TRAIN_ROWS = 10


def regression_metrics(observed, predicted) -> dict[str, float]:
    """RMSE, MAE, mean error (pred − obs) and R² over finite pairs."""
    obs = np.asarray(observed, dtype=float)
    pred = np.asarray(predicted, dtype=float)
    ok = np.isfinite(obs) & np.isfinite(pred)
    obs, pred = obs[ok], pred[ok]
    if len(obs) == 0:
        nan = float("nan")
        return {"rmse": nan, "mae": nan, "me": nan, "r2": nan, "n_validated": 0}
    return {
        "rmse": float(np.sqrt(mean_squared_error(obs, pred))),
        "mae": float(mean_absolute_error(obs, pred)),
        "me": float(np.mean(pred - obs)),
        "r2": float(r2_score(obs, pred)) if len(obs) > 1 and np.ptp(obs) > 0 else float("nan"),
        "n_validated": int(len(obs)),
    }


def stratified_kmeans_folds(
    x: np.ndarray,
    y: np.ndarray,
    strata: np.ndarray,
    n_folds: int,
    seed: int,
) -> tuple[np.ndarray, dict[str, int], bool]:
    """Assign each sample a fold id.

    Returns (folds, clusters used per stratum, reliable). ``reliable`` is
    False when any stratum had to use fewer clusters than ``n_folds``.
    """
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    strata = np.asarray(strata).astype(str)
    folds = np.zeros(len(x), dtype=int)
    used: dict[str, int] = {}

    for stratum in sorted(set(strata)):
        idx = np.flatnonzero(strata == stratum)
        n = len(idx)
        k = n_folds if n >= n_folds else max(1, n - 1)
        used[stratum] = k
        if k == 1:
            folds[idx] = 0
            continue
        coords = np.column_stack([x[idx], y[idx]])
        km = KMeans(n_clusters=k, n_init=10, random_state=seed)
        folds[idx] = km.fit_predict(coords)

    reliable = all(k >= n_folds for k in used.values())
    if not reliable:
        logger.warning("Spatial CV: strata with fewer samples than folds: %s",
                       {s: k for s, k in used.items() if k < n_folds})
    return folds, used, reliable


def cross_val_predict_folds(estimator, X: np.ndarray, y: np.ndarray, folds: np.ndarray,
                            min_train: int = MIN_TRAIN_ROWS) -> tuple[np.ndarray, list[int]]:
    """Out-of-fold predictions; folds with < min_train training rows are skipped."""
    pred = np.full(len(y), np.nan)
    skipped = []
    for fold in np.unique(folds):
        test = folds == fold
        train = ~test
        if train.sum() < min_train:
            skipped.append(int(fold))
            continue
        model = clone(estimator)
        model.fit(X[train], y[train])
        pred[test] = model.predict(X[test])
    return pred, skipped


def fold_table(folds: np.ndarray, strata: np.ndarray) -> pd.DataFrame:
    """Sample counts per (fold, stratum)."""
    return (
        pd.DataFrame({"fold": folds, "stratum": np.asarray(strata).astype(str)})
        .value_counts()
        .rename("n")
        .reset_index()
        .sort_values(["fold", "stratum"])
        .reset_index(drop=True)
    )
