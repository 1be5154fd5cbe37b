"""
Ordinary Kriging per (stratum, depth)
=====================================
For every stratum × standard depth with enough cores:

  1. fit a variogram (see variogram.py)
  2. k-fold cross-validate ordinary kriging with that variogram
  3. krige mean + variance over the stratum extent plus a buffer

Unit surfaces are snapped to a template grid and mosaicked into one
surface per depth, each stratum filling its own cells.

Outputs: variogram table, CV table, per-unit and per-depth surfaces.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np
import pandas as pd
from pykrige.ok import OrdinaryKriging
from sklearn.model_selection import KFold

from .config import PipelineConfig, unit_seed
from .errors import DataInsufficiencyError, Diagnostics, ModelFitFailure
from .raster_io import StratumGrid, paste, unit_grid
from .records import GridSpec, PredictionSurface, VariogramModel, records_to_frame
from .spatial_cv import regression_metrics
from .variogram import fit_variogram, plot_variogram

logger = logging.getLogger(__name__)

STAGE = "kriging"
METHOD = "kriging"


@dataclass
class KrigingResult:
    models: list[VariogramModel] = field(default_factory=list)
    unit_surfaces: dict[tuple[str, float], PredictionSurface] = field(default_factory=dict)
    surfaces: dict[float, PredictionSurface] = field(default_factory=dict)
    cv_rows: list[dict] = field(default_factory=list)

    def variogram_table(self) -> pd.DataFrame:
        return records_to_frame(self.models)

    def cv_table(self) -> pd.DataFrame:
        return pd.DataFrame(self.cv_rows)


def _kriger(x, y, z, model: VariogramModel) -> OrdinaryKriging:
    return OrdinaryKriging(
        x, y, z,
        variogram_model=model.model_type,
        variogram_parameters=[model.partial_sill, model.range, model.nugget],
        verbose=False,
        enable_plotting=False,
        exact_values=True,
    )


def krige_points(x, y, z, model: VariogramModel, xp, yp) -> tuple[np.ndarray, np.ndarray]:
    """Ordinary kriging at arbitrary points. Returns (mean, variance >= 0)."""
    z = np.asarray(z, dtype=float)
    xp = np.asarray(xp, dtype=float)
    if np.ptp(z) == 0:
        # kriging is undefined for a constant field
        return np.full(len(xp), z[0]), np.zeros(len(xp))
    try:
        pred, var = _kriger(x, y, z, model).execute("points", xp, np.asarray(yp, dtype=float))
    except np.linalg.LinAlgError as e:
        raise ModelFitFailure(f"kriging system is singular: {e}") from e
    pred = np.ma.filled(pred, np.nan).astype(float)
    var = np.clip(np.ma.filled(var, np.nan).astype(float), 0.0, None)
    return pred, var


def krige_grid(x, y, z, model: VariogramModel, grid: GridSpec) -> tuple[np.ndarray, np.ndarray]:
    """Ordinary kriging over every cell of a grid, rows north → south."""
    z = np.asarray(z, dtype=float)
    if np.ptp(z) == 0:
        return np.full(grid.shape, z[0]), np.zeros(grid.shape)
    gx, gy = grid.axes()
    try:
        pred, var = _kriger(x, y, z, model).execute("grid", gx, gy[::-1])
    except np.linalg.LinAlgError as e:
        raise ModelFitFailure(f"kriging system is singular: {e}") from e
    # PyKrige rows follow the (ascending) y points
    pred = np.flipud(np.ma.filled(pred, np.nan).astype(float))
    var = np.flipud(np.clip(np.ma.filled(var, np.nan).astype(float), 0.0, None))
    return pred, var


def cross_validate(
    x: np.ndarray,
    y: np.ndarray,
    z: np.ndarray,
    model: VariogramModel,
    n_folds: int,
    seed: int,
) -> dict[str, float]:
    """k-fold CV with the variogram held fixed.

    Raises DataInsufficiencyError when n < 2 × n_folds.
    """
    n = len(z)
    if n < 2 * n_folds:
        raise DataInsufficiencyError(n, 2 * n_folds, unit="cv")

    pred = np.full(n, np.nan)
    for train, test in KFold(n_splits=n_folds, shuffle=True, random_state=seed).split(x):
        pred[test], _ = krige_points(x[train], y[train], z[train], model, x[test], y[test])

    metrics = regression_metrics(z, pred)
    metrics["n_folds"] = n_folds
    return metrics


def krige_unit(
    frame: pd.DataFrame,
    stratum: str,
    depth: float,
    config: PipelineConfig,
    template: GridSpec,
    diagnostics: Diagnostics,
    logger: logging.Logger | None = None,
    plot_dir: Path | None = None,
) -> tuple[VariogramModel, PredictionSurface, tuple[int, int], dict]:
    """Variogram + CV + kriged surface for one (stratum, depth).

    ``frame`` holds x, y and concentration_mean for the unit's cores.
    """
    log = logger or logging.getLogger(__name__)
    n = len(frame)
    if n < config.min_samples_per_stratum:
        raise DataInsufficiencyError(n, config.min_samples_per_stratum, unit=f"{stratum}@{depth:g}")
    if n == config.min_samples_per_stratum:
        diagnostics.record(
            STAGE, "note", f"low confidence: n={n} at minimum", stratum=stratum, depth=depth,
        )

    x = frame["x"].to_numpy(float)
    y = frame["y"].to_numpy(float)
    z = frame["concentration_mean"].to_numpy(float)
    coords = np.column_stack([x, y])

    model, emp = fit_variogram(
        coords, z, stratum, depth,
        config.max_variogram_distance, config.variogram_lag_width,
        diagnostics=diagnostics, logger=log,
    )
    if model.heuristic:
        diagnostics.record(STAGE, "fallback", "heuristic spherical variogram", stratum=stratum, depth=depth)
    if plot_dir is not None:
        Path(plot_dir).mkdir(parents=True, exist_ok=True)
        plot_variogram(emp, model, Path(plot_dir) / f"variogram_{stratum}_{depth:g}cm.png".replace(" ", "_"))

    cv = {"stratum": stratum, "depth": depth, "n": n, "model_type": model.model_type,
          "nugget": model.nugget, "sill": model.sill, "range": model.range, "strategy": model.strategy}
    try:
        cv.update(cross_validate(x, y, z, model, config.cv_folds,
                                 unit_seed(config.seed, "kriging-cv", stratum, depth)))
    except DataInsufficiencyError as e:
        diagnostics.record(STAGE, "cv_skipped", f"cv {e}", stratum=stratum, depth=depth)

    grid, row_off, col_off = unit_grid(x, y, template, config.kriging_buffer)
    mean, var = krige_grid(x, y, z, model, grid)
    surface = PredictionSurface(
        depth=float(depth), mean_grid=mean, grid=grid, method=METHOD,
        variance_grid=var, stratum=stratum,
    )
    log.info("Kriged %s @ %g cm: n=%d, grid %dx%d", stratum, depth, n, grid.height, grid.width)
    return model, surface, (row_off, col_off), cv


def krige_all(
    frame: pd.DataFrame,
    config: PipelineConfig,
    template: GridSpec,
    strata: StratumGrid,
    diagnostics: Diagnostics | None = None,
    logger: logging.Logger | None = None,
    plot_dir: Path | None = None,
) -> KrigingResult:
    """Krige every (stratum, depth) unit and mosaic one surface per depth.

    ``frame`` is the harmonized profile table joined with cores and
    projected coordinates (columns x, y, stratum, standard_depth,
    concentration_mean).
    """
    log = logger or logging.getLogger(__name__)
    diagnostics = diagnostics if diagnostics is not None else Diagnostics(log)
    result = KrigingResult()

    mosaics: dict[float, tuple[np.ndarray, np.ndarray]] = {}
    for (stratum, depth), unit in frame.groupby(["stratum", "standard_depth"], sort=True):
        depth = float(depth)
        try:
            model, surface, (row_off, col_off), cv = krige_unit(
                unit, stratum, depth, config, template, diagnostics, log, plot_dir,
            )
        except DataInsufficiencyError as e:
            diagnostics.record(STAGE, "skipped", str(e), stratum=stratum, depth=depth)
            continue
        except ModelFitFailure as e:
            diagnostics.record(STAGE, "failed", str(e), stratum=stratum, depth=depth)
            continue

        result.models.append(model)
        result.unit_surfaces[(stratum, depth)] = surface
        result.cv_rows.append(cv)

        mean, var = mosaics.setdefault(
            depth, (np.full(template.shape, np.nan), np.full(template.shape, np.nan))
        )
        where = strata.mask(stratum)
        paste(mean, surface.mean_grid, row_off, col_off, where)
        paste(var, surface.variance_grid, row_off, col_off, where)

    for depth, (mean, var) in sorted(mosaics.items()):
        result.surfaces[depth] = PredictionSurface(
            depth=depth, mean_grid=mean, grid=template, method=METHOD, variance_grid=var,
        )

    log.info(
        "Kriging: %d units fitted, %d depths mosaicked",
        len(result.models), len(result.surfaces),
    )
    return result
