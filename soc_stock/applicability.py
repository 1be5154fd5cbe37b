"""
Area of applicability (Meyer & Pebesma, 2021).

The dissimilarity index (DI) of a location is its distance to the nearest
training sample in standardised, importance-weighted covariate space,
divided by the mean pairwise distance among training samples. Cells whose
DI exceeds the upper whisker (Q75 + 1.5·IQR) of the cross-validated
training DI are outside the area of applicability.
"""
from __future__ import annotations

import logging

import numpy as np
from scipy.spatial import cKDTree
from scipy.spatial.distance import pdist

from .errors import ModelFitFailure

logger = logging.getLogger(__name__)


def importance_weights(importances) -> np.ndarray:
    w = np.clip(np.asarray(importances, dtype=float), 0.0, None)
    w[~np.isfinite(w)] = 0.0
    if w.sum() <= 0:
        return np.ones_like(w)
    return w


class ApplicabilityModel:
    def __init__(self, weights=None):
        self.weights = None if weights is None else np.asarray(weights, dtype=float)
        self.threshold: float | None = None

    def _transform(self, X: np.ndarray) -> np.ndarray:
        return (np.asarray(X, dtype=float) - self.center_) / self.scale_ * self.weights

    def fit(self, X: np.ndarray, folds: np.ndarray | None = None) -> "ApplicabilityModel":
        X = np.asarray(X, dtype=float)
        n, p = X.shape
        if n < 2:
            raise ModelFitFailure(f"area of applicability needs >= 2 training rows, got {n}")
        if self.weights is None:
            self.weights = np.ones(p)
        self.center_ = X.mean(axis=0)
        scale = X.std(axis=0)
        self.scale_ = np.where(scale > 0, scale, 1.0)

        train = self._transform(X)
        self.mean_distance_ = float(np.mean(pdist(train)))
        if self.mean_distance_ <= 0:
            raise ModelFitFailure("training samples are identical in covariate space")
        self.tree_ = cKDTree(train)

        if folds is None or len(np.unique(folds)) < 2:
            # leave-one-out: second neighbour is the nearest other sample
            d, _ = self.tree_.query(train, k=2)
            nearest = d[:, 1]
        else:
            folds = np.asarray(folds)
            nearest = np.empty(n)
            for fold in np.unique(folds):
                test = folds == fold
                d, _ = cKDTree(train[~test]).query(train[test])
                nearest[test] = d
        self.training_di_ = nearest / self.mean_distance_

        q25, q75 = np.percentile(self.training_di_, [25, 75])
        self.threshold = float(q75 + 1.5 * (q75 - q25))
        logger.debug("AOA threshold %.3f from %d training rows", self.threshold, n)
        return self

    def dissimilarity(self, X: np.ndarray) -> np.ndarray:
        if self.threshold is None:
            raise RuntimeError("ApplicabilityModel is not fitted")
        d, _ = self.tree_.query(self._transform(X))
        return d / self.mean_distance_

    def inside(self, X: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """(DI, inside-AOA mask) for rows of X."""
        di = self.dissimilarity(X)
        return di, di <= self.threshold
