"""
Semivariogram Estimation
========================
Empirical (Matheron) semivariogram per (stratum, depth) plus an ordered
list of fitting strategies:

  1. AutoFitStrategy     – scikit-gstat automatic fit (spherical, exponential, gaussian)
  2. GridSearchStrategy  – manual parameter grid minimising SSE
  3. HeuristicStrategy   – spherical, psill = 0.8·max γ, range = max lag / 3,
                           nugget = 0.1·max γ, flagged heuristic

The first strategy that succeeds wins. A flat empirical variogram (e.g.
identical values in a unit) bypasses the list with a pure-nugget model. Model parameters follow PyKrige's
convention (partial sill, range, nugget) so they can be handed straight to
the kriging step.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
from scipy.spatial.distance import pdist
from skgstat import Variogram

from .errors import Diagnostics, ModelFitFailure
from .records import VariogramModel

logger = logging.getLogger(__name__)

STAGE = "variogram"
MODEL_TYPES = ("spherical", "exponential", "gaussian")
MIN_BINS = 2

# skgstat "effective range" → PyKrige range
_SKGSTAT_RANGE_FACTOR = {"spherical": 1.0, "exponential": 1.0, "gaussian": 7.0 / 8.0}


# ─── Model functions (PyKrige parameterisation) ──────────────────

def spherical(h, psill, rng, nugget):
    h = np.asarray(h, dtype=float)
    hr = np.minimum(h / rng, 1.0)
    return nugget + psill * (1.5 * hr - 0.5 * hr ** 3)


def exponential(h, psill, rng, nugget):
    h = np.asarray(h, dtype=float)
    return nugget + psill * (1.0 - np.exp(-3.0 * h / rng))


def gaussian(h, psill, rng, nugget):
    h = np.asarray(h, dtype=float)
    return nugget + psill * (1.0 - np.exp(-(h ** 2) / (rng * 4.0 / 7.0) ** 2))


MODELS = {"spherical": spherical, "exponential": exponential, "gaussian": gaussian}


@dataclass(frozen=True)
class EmpiricalVariogram:
    lags: np.ndarray      # mean pair distance per bin
    gamma: np.ndarray     # semivariance per bin
    counts: np.ndarray    # pairs per bin
    cutoff: float
    lag_width: float

    @property
    def max_gamma(self) -> float:
        return float(self.gamma.max()) if len(self.gamma) else 0.0

    @property
    def max_lag(self) -> float:
        return float(self.lags.max()) if len(self.lags) else 0.0


@dataclass(frozen=True)
class FitResult:
    model_type: str
    psill: float
    range: float
    nugget: float
    sse: float


def extent_diagonal(coords: np.ndarray) -> float:
    span = coords.max(axis=0) - coords.min(axis=0)
    return float(np.hypot(span[0], span[1]))


def empirical_variogram(
    coords: np.ndarray,
    values: np.ndarray,
    max_distance: float,
    lag_width: float,
) -> EmpiricalVariogram:
    """Bin pairwise semivariances up to min(max_distance, extent diagonal / 3).

    The lag width shrinks so the cutoff spans at least three bins; empty bins
    are dropped.
    """
    coords = np.asarray(coords, dtype=float)
    values = np.asarray(values, dtype=float)
    cutoff = min(max_distance, extent_diagonal(coords) / 3.0)
    if cutoff <= 0:
        raise ModelFitFailure("all samples share one location")
    width = min(lag_width, cutoff / 3.0)

    dist = pdist(coords)
    semi = 0.5 * pdist(values[:, None], metric="sqeuclidean")
    keep = dist <= cutoff
    dist, semi = dist[keep], semi[keep]

    edges = np.arange(0.0, cutoff + width, width)
    edges[-1] = max(edges[-1], cutoff)
    bins = np.clip(np.digitize(dist, edges) - 1, 0, len(edges) - 2)
    counts = np.bincount(bins, minlength=len(edges) - 1)
    nonempty = counts > 0
    lags = np.bincount(bins, weights=dist, minlength=len(edges) - 1)[nonempty] / counts[nonempty]
    gamma = np.bincount(bins, weights=semi, minlength=len(edges) - 1)[nonempty] / counts[nonempty]

    return EmpiricalVariogram(
        lags=lags, gamma=gamma, counts=counts[nonempty], cutoff=cutoff, lag_width=width,
    )


def model_sse(emp: EmpiricalVariogram, model_type: str, psill: float, rng: float, nugget: float) -> float:
    pred = MODELS[model_type](emp.lags, psill, rng, nugget)
    return float(np.sum((emp.gamma - pred) ** 2))


def _check_params(model_type: str, psill: float, rng: float, nugget: float) -> None:
    if not all(np.isfinite([psill, rng, nugget])):
        raise ModelFitFailure(f"{model_type}: non-finite parameters")
    if rng <= 0 or psill < 0 or nugget < 0:
        raise ModelFitFailure(
            f"{model_type}: invalid parameters psill={psill:.4g}, range={rng:.4g}, nugget={nugget:.4g}"
        )


# ─── Strategies ──────────────────────────────────────────────────

class AutoFitStrategy:
    """Automatic least-squares fit through scikit-gstat, best model by SSE."""

    name = "auto"

    def __init__(self, model_types=MODEL_TYPES):
        self.model_types = tuple(model_types)

    def fit(self, coords: np.ndarray, values: np.ndarray, emp: EmpiricalVariogram) -> FitResult:
        if len(emp.lags) < MIN_BINS:
            raise ModelFitFailure(f"only {len(emp.lags)} non-empty lag bins")
        n_lags = max(MIN_BINS, int(round(emp.cutoff / emp.lag_width)))
        results, errors = [], []
        for model_type in self.model_types:
            try:
                V = Variogram(
                    coordinates=coords,
                    values=values,
                    model=model_type,
                    maxlag=emp.cutoff,
                    n_lags=n_lags,
                    use_nugget=True,
                    normalize=False,
                )
                r, c0, b = (float(p) for p in V.parameters[:3])
            except Exception as e:  # skgstat raises AttributeError on identical values
                errors.append(f"{model_type}: {e}")
                continue
            rng = r * _SKGSTAT_RANGE_FACTOR[model_type]
            try:
                _check_params(model_type, c0, rng, b)
            except ModelFitFailure as e:
                errors.append(str(e))
                continue
            results.append(FitResult(model_type, c0, rng, b, model_sse(emp, model_type, c0, rng, b)))

        if not results:
            raise ModelFitFailure("; ".join(errors) or "no candidate models")
        return min(results, key=lambda f: f.sse)


class GridSearchStrategy:
    """Exhaustive search over (range, partial sill, nugget) minimising SSE."""

    name = "grid_search"

    def __init__(self, model_types=MODEL_TYPES, n_range: int = 25, n_sill: int = 20,
                 nugget_fractions=(0.0, 0.05, 0.1, 0.2, 0.3, 0.5)):
        self.model_types = tuple(model_types)
        self.n_range = n_range
        self.n_sill = n_sill
        self.nugget_fractions = nugget_fractions

    def fit(self, coords: np.ndarray, values: np.ndarray, emp: EmpiricalVariogram) -> FitResult:
        if len(emp.lags) < MIN_BINS:
            raise ModelFitFailure(f"only {len(emp.lags)} non-empty lag bins")
        gmax = emp.max_gamma
        if gmax <= 0:
            raise ModelFitFailure("flat empirical variogram")

        ranges = np.linspace(emp.cutoff / 20.0, emp.cutoff * 1.5, self.n_range)
        psills = np.linspace(0.05, 1.5, self.n_sill) * gmax
        nuggets = np.asarray(self.nugget_fractions) * gmax

        best: FitResult | None = None
        for model_type in self.model_types:
            fn = MODELS[model_type]
            for rng in ranges:
                for nugget in nuggets:
                    # all partial sills at once: (n_sill, n_lags)
                    pred = fn(emp.lags[None, :], psills[:, None], rng, nugget)
                    sse = np.sum((emp.gamma[None, :] - pred) ** 2, axis=1)
                    k = int(np.argmin(sse))
                    if best is None or sse[k] < best.sse:
                        best = FitResult(model_type, float(psills[k]), float(rng), float(nugget), float(sse[k]))
        return best


class HeuristicStrategy:
    """Spherical model from rule-of-thumb parameters."""

    name = "heuristic"

    def fit(self, coords: np.ndarray, values: np.ndarray, emp: EmpiricalVariogram) -> FitResult:
        if len(emp.lags) == 0:
            raise ModelFitFailure("no lag bins")
        gmax = emp.max_gamma
        rng = emp.max_lag / 3.0
        if gmax <= 0 or rng <= 0:
            raise ModelFitFailure(f"degenerate empirical variogram (max γ={gmax}, max lag={emp.max_lag})")
        psill, nugget = 0.8 * gmax, 0.1 * gmax
        return FitResult("spherical", psill, rng, nugget, model_sse(emp, "spherical", psill, rng, nugget))


class PureNuggetStrategy:
    """Flat model for a unit without spatial structure.

    nugget = sample variance, partial sill = 0, range = cutoff. Zero nugget
    for identical values, where kriging returns the constant with zero variance.
    """

    name = "pure_nugget"

    def fit(self, coords: np.ndarray, values: np.ndarray, emp: EmpiricalVariogram) -> FitResult:
        nugget = float(np.var(values))
        return FitResult("spherical", 0.0, emp.cutoff, nugget, model_sse(emp, "spherical", 0.0, emp.cutoff, nugget))


DEFAULT_STRATEGIES = (AutoFitStrategy(), GridSearchStrategy(), HeuristicStrategy())


def fit_variogram(
    coords: np.ndarray,
    values: np.ndarray,
    stratum: str,
    depth: float,
    max_distance: float,
    lag_width: float,
    strategies=DEFAULT_STRATEGIES,
    diagnostics: Diagnostics | None = None,
    logger: logging.Logger | None = None,
) -> tuple[VariogramModel, EmpiricalVariogram]:
    """Fit a variogram with the first strategy that succeeds.

    A flat empirical variogram (no semivariance within the cutoff) skips the
    chain and gets a pure-nugget model, noted in diagnostics.
    Raises ModelFitFailure (listing every attempted strategy) if all fail.
    """
    log = logger or logging.getLogger(__name__)
    coords = np.asarray(coords, dtype=float)
    values = np.asarray(values, dtype=float)
    emp = empirical_variogram(coords, values, max_distance, lag_width)

    if emp.max_gamma <= 0:
        if diagnostics is not None:
            diagnostics.record(
                STAGE, "note",
                f"flat empirical variogram ({len(emp.lags)} lag bins); pure-nugget model",
                stratum=stratum, depth=float(depth),
            )
        strategies = (PureNuggetStrategy(),)

    failures = []
    for strategy in strategies:
        try:
            fit = strategy.fit(coords, values, emp)
        except ModelFitFailure as e:
            failures.append(f"{strategy.name}: {e}")
            continue

        heuristic = strategy.name == HeuristicStrategy.name
        model = VariogramModel(
            stratum=stratum,
            depth=float(depth),
            model_type=fit.model_type,
            nugget=fit.nugget,
            sill=fit.nugget + fit.psill,
            range=fit.range,
            fit_error=fit.sse,
            strategy=strategy.name,
            heuristic=heuristic,
            n_samples=len(values),
        )
        if failures and diagnostics is not None:
            diagnostics.record(
                STAGE, "fallback",
                f"used {strategy.name} after: " + "; ".join(failures),
                stratum=stratum, depth=float(depth),
            )
        log.info(
            "Variogram %s @ %g cm: %s (%s) range=%.1f sill=%.3f nugget=%.3f",
            stratum, depth, fit.model_type, strategy.name, fit.range, model.sill, fit.nugget,
        )
        return model, emp

    raise ModelFitFailure("all variogram strategies failed: " + "; ".join(failures))


def plot_variogram(emp: EmpiricalVariogram, model: VariogramModel, path: Path) -> Path:
    """Empirical points with the fitted curve, saved as PNG."""
    h = np.linspace(0.0, emp.cutoff, 200)
    fitted = MODELS[model.model_type](h, model.partial_sill, model.range, model.nugget)

    fig = plt.figure(figsize=(10, 6))
    plt.scatter(emp.lags, emp.gamma, s=np.clip(emp.counts, 10, 120), color="k", alpha=0.7, label="empirical")
    plt.plot(h, fitted, color="tab:red", label=f"{model.model_type} ({model.strategy})")
    plt.title(f"Semivariogram: {model.stratum}, {model.depth:g} cm")
    plt.xlabel("Distance (m)")
    plt.ylabel("Semivariance")
    plt.grid(True, alpha=0.3)
    plt.legend()
    plt.savefig(path, dpi=150, bbox_inches="tight")
    plt.close(fig)
    return path
