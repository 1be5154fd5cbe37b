"""
Random Forest per depth
=======================
One RandomForestRegressor per standard depth, pooled across strata, trained
on environmental covariates only (the stratum label is never a feature so
the model can predict anywhere on the covariate grid).

Per depth:
  - covariates extracted at core locations (reprojected to the stack CRS)
  - in-bag / OOB error of the full model
  - held-out error from stratified k-means spatial folds
  - permutation importance
  - full-extent prediction + area-of-applicability mask

Outputs: rf_models/rf_{depth}cm.pkl, CV and importance tables.
"""
from __future__ import annotations

import logging
import math
import pickle
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np
import pandas as pd
from sklearn.ensemble import RandomForestRegressor
from sklearn.inspection import permutation_importance

from .applicability import ApplicabilityModel, importance_weights
from .config import PipelineConfig, unit_seed
from .errors import CovariateMismatchError, DataInsufficiencyError, Diagnostics, ModelFitFailure
from .raster_io import CovariateStack, project_points, require_projected
from .records import PredictionSurface
from .spatial_cv import cross_val_predict_folds, fold_table, regression_metrics, stratified_kmeans_folds

logger = logging.getLogger(__name__)

STAGE = "random_forest"
METHOD = "random_forest"
PREDICT_CHUNK = 200_000
PERMUTATION_REPEATS = 10


def rf_params(n_features: int, config: PipelineConfig, seed: int) -> dict:
    return dict(
        n_estimators=config.ensemble_tree_count,
        max_features=max(1, math.floor(math.sqrt(n_features))),
        min_samples_leaf=config.ensemble_min_node_size,
        oob_score=True,
        n_jobs=config.n_jobs,
        random_state=seed,
    )


@dataclass(eq=False)
class DepthForest:
    depth: float
    model: RandomForestRegressor
    features: list[str]
    n_train: int
    metrics: dict = field(default_factory=dict)
    importance: pd.DataFrame = field(default_factory=pd.DataFrame)
    aoa: ApplicabilityModel | None = None


@dataclass
class ForestResult:
    forests: dict[float, DepthForest] = field(default_factory=dict)
    surfaces: dict[float, PredictionSurface] = field(default_factory=dict)

    def cv_table(self) -> pd.DataFrame:
        return pd.DataFrame([f.metrics for _, f in sorted(self.forests.items())])

    def importance_table(self) -> pd.DataFrame:
        frames = [f.importance for _, f in sorted(self.forests.items())]
        return pd.concat(frames, ignore_index=True) if frames else pd.DataFrame()


def extract_covariates(
    frame: pd.DataFrame,
    stack: CovariateStack,
    input_crs: str,
    diagnostics: Diagnostics | None = None,
    logger: logging.Logger | None = None,
) -> pd.DataFrame:
    """Covariate values at each core, rows with a missing covariate dropped.

    ``frame`` needs core_id, longitude, latitude (in ``input_crs``).
    Raises CovariateMismatchError if the stack has no projected CRS or no
    core has a complete covariate vector.
    """
    log = logger or logging.getLogger(__name__)
    require_projected(stack.grid.crs, "covariate stack")

    cores = frame.drop_duplicates("core_id")[["core_id", "longitude", "latitude"]].reset_index(drop=True)
    x, y = project_points(cores["longitude"], cores["latitude"], input_crs, stack.grid.crs)
    values = stack.sample(x, y)
    table = pd.concat([cores.assign(x=x, y=y), values], axis=1)

    complete = values.notna().all(axis=1)
    n_dropped = int((~complete).sum())
    if n_dropped and diagnostics is not None:
        dropped = table.loc[~complete, "core_id"].tolist()
        diagnostics.record(
            STAGE, "dropped",
            f"{n_dropped} cores with incomplete covariates: {dropped[:10]}",
        )
    if not complete.any():
        raise CovariateMismatchError(
            f"no core has a complete covariate vector ({len(cores)} cores, "
            f"{len(stack.names)} layers); check the covariate CRS and extent"
        )
    log.info("Covariates extracted for %d/%d cores", int(complete.sum()), len(cores))
    return table[complete].reset_index(drop=True)


def train_depth(
    data: pd.DataFrame,
    features: list[str],
    depth: float,
    config: PipelineConfig,
    diagnostics: Diagnostics,
    logger: logging.Logger | None = None,
) -> DepthForest:
    """Fit, validate and explain the forest for one depth.

    ``data`` holds the feature columns plus x, y, stratum, concentration_mean.
    """
    log = logger or logging.getLogger(__name__)
    n = len(data)
    if n < config.ensemble_min_samples:
        raise DataInsufficiencyError(n, config.ensemble_min_samples, unit=f"rf@{depth:g}")

    X = data[features].to_numpy(float)
    y = data["concentration_mean"].to_numpy(float)
    seed = unit_seed(config.seed, "rf", depth)

    rf = RandomForestRegressor(**rf_params(len(features), config, seed))
    try:
        rf.fit(X, y)
    except ValueError as e:
        raise ModelFitFailure(f"random forest fit failed: {e}") from e

    train_metrics = regression_metrics(y, rf.predict(X))
    oob_metrics = regression_metrics(y, rf.oob_prediction_)

    folds, used, reliable = stratified_kmeans_folds(
        data["x"].to_numpy(float), data["y"].to_numpy(float),
        data["stratum"].to_numpy(), config.cv_folds, seed,
    )
    log.debug("Spatial folds @ %g cm:\n%s", depth, fold_table(folds, data["stratum"]).to_string(index=False))
    cv_pred, skipped = cross_val_predict_folds(rf, X, y, folds)
    cv_metrics = regression_metrics(y, cv_pred)
    if not reliable:
        thin = {s: k for s, k in used.items() if k < config.cv_folds}
        diagnostics.record(
            STAGE, "note", f"cv unreliable: strata with fewer samples than folds {thin}", depth=depth,
        )
    if skipped:
        diagnostics.record(STAGE, "note", f"cv folds skipped (< 10 training rows): {skipped}", depth=depth)

    perm = permutation_importance(rf, X, y, n_repeats=PERMUTATION_REPEATS, random_state=seed, n_jobs=config.n_jobs)
    importance = (
        pd.DataFrame({
            "depth": depth,
            "feature": features,
            "importance_mean": perm.importances_mean,
            "importance_std": perm.importances_std,
        })
        .sort_values("importance_mean", ascending=False)
        .reset_index(drop=True)
    )

    aoa = None
    if config.enable_extrapolation_mask:
        try:
            aoa = ApplicabilityModel(importance_weights(perm.importances_mean)).fit(X, folds)
        except ModelFitFailure as e:
            diagnostics.record(STAGE, "degraded", f"no AOA mask: {e}", depth=depth)

    metrics = {
        "depth": depth,
        "n": n,
        "n_features": len(features),
        "cv_rmse": cv_metrics["rmse"],
        "cv_mae": cv_metrics["mae"],
        "cv_me": cv_metrics["me"],
        "cv_r2": cv_metrics["r2"],
        "cv_n_validated": cv_metrics["n_validated"],
        "cv_reliable": reliable,
        "train_rmse": train_metrics["rmse"],
        "train_r2": train_metrics["r2"],
        "oob_rmse": oob_metrics["rmse"],
        "oob_r2": float(rf.oob_score_),
        "aoa_threshold": aoa.threshold if aoa is not None else float("nan"),
    }
    log.info(
        "RF @ %g cm: n=%d, CV RMSE=%.2f R²=%.3f, OOB R²=%.3f",
        depth, n, metrics["cv_rmse"], metrics["cv_r2"], metrics["oob_r2"],
    )
    return DepthForest(depth, rf, list(features), n, metrics, importance, aoa)


def predict_depth(forest: DepthForest, stack: CovariateStack, chunk_size: int = PREDICT_CHUNK) -> PredictionSurface:
    """Full-extent prediction on every cell with complete covariates."""
    if list(stack.names) != forest.features:
        raise CovariateMismatchError(
            f"stack layers {stack.names} do not match model features {forest.features}"
        )
    idx, X = stack.complete_cells()
    size = stack.grid.height * stack.grid.width

    mean = np.full(size, np.nan)
    for start in range(0, len(idx), chunk_size):
        stop = start + chunk_size
        mean[idx[start:stop]] = forest.model.predict(X[start:stop])

    aoa_mask = dissimilarity = None
    if forest.aoa is not None:
        di, inside = forest.aoa.inside(X)
        dissimilarity = np.full(size, np.nan)
        dissimilarity[idx] = di
        aoa_mask = np.zeros(size, dtype=bool)
        aoa_mask[idx] = inside
        aoa_mask = aoa_mask.reshape(stack.grid.shape)
        dissimilarity = dissimilarity.reshape(stack.grid.shape)

    return PredictionSurface(
        depth=forest.depth,
        mean_grid=mean.reshape(stack.grid.shape),
        grid=stack.grid,
        method=METHOD,
        variance_grid=None,
        aoa_mask=aoa_mask,
        dissimilarity=dissimilarity,
    )


def save_forest(forest: DepthForest, path: Path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as f:
        pickle.dump({"model": forest.model, "features": forest.features, "depth": forest.depth}, f)
    return path


def load_forest(path: Path) -> dict:
    with open(path, "rb") as f:
        return pickle.load(f)


def train_all(
    frame: pd.DataFrame,
    stack: CovariateStack,
    config: PipelineConfig,
    diagnostics: Diagnostics | None = None,
    logger: logging.Logger | None = None,
    model_dir: Path | None = None,
) -> ForestResult:
    """Train and predict every standard depth.

    ``frame`` is the harmonized profile table joined with cores.
    Raises CovariateMismatchError (fatal) on a structural covariate problem.
    """
    log = logger or logging.getLogger(__name__)
    diagnostics = diagnostics if diagnostics is not None else Diagnostics(log)
    result = ForestResult()

    covariates = extract_covariates(frame, stack, config.input_crs, diagnostics, log)
    data = frame.drop(columns=["longitude", "latitude"]).merge(covariates, on="core_id", how="inner")
    features = list(stack.names)

    for depth, unit in data.groupby("standard_depth", sort=True):
        depth = float(depth)
        try:
            forest = train_depth(unit.reset_index(drop=True), features, depth, config, diagnostics, log)
        except DataInsufficiencyError as e:
            diagnostics.record(STAGE, "skipped", str(e), depth=depth)
            continue
        except ModelFitFailure as e:
            diagnostics.record(STAGE, "failed", str(e), depth=depth)
            continue

        result.forests[depth] = forest
        result.surfaces[depth] = predict_depth(forest, stack)
        if model_dir is not None:
            save_forest(forest, Path(model_dir) / f"rf_{depth:g}cm.pkl")

    log.info("Random forest: %d/%d depths modelled", len(result.forests), data["standard_depth"].nunique())
    return result
