"""
Depth Harmonization
===================
Fit a mass-preserving equal-area quadratic spline (Bishop et al., 1999)
through each core's sampled horizons and evaluate it at the standard depths.
Uncertainty comes from bootstrap resampling of the horizons.

Output per core and standard depth: mean, bootstrap SE, quality flags.
"""
from __future__ import annotations

import logging

import numpy as np
import pandas as pd
from tqdm import tqdm

from .config import PipelineConfig, unit_rng
from .errors import DataInsufficiencyError, Diagnostics, ModelFitFailure
from .records import DepthSample, HarmonizedProfile, group_samples

logger = logging.getLogger(__name__)

STAGE = "harmonization"
MIN_HORIZONS = 2
MIN_HORIZONS_LOO = 4


class EqualAreaSpline:
    """Equal-area quadratic spline through horizon means.

    The mean of the curve over each horizon equals ``fitted_means`` exactly;
    with a small ``lam`` those means reproduce the observed values.
    """

    def __init__(self, tops, bottoms, values, lam: float = 0.1):
        self.tops = np.asarray(tops, dtype=float)
        self.bottoms = np.asarray(bottoms, dtype=float)
        y = np.asarray(values, dtype=float)
        n = len(y)
        if n < MIN_HORIZONS:
            raise ModelFitFailure(f"equal-area spline needs >= {MIN_HORIZONS} horizons, got {n}")
        if not np.all(np.isfinite(y)):
            raise ModelFitFailure("non-finite horizon values")

        h = self.bottoms - self.tops
        gaps = self.tops[1:] - self.bottoms[:-1]
        if np.any(h <= 0) or np.any(gaps < 0):
            raise ModelFitFailure("horizons must be ordered, non-overlapping and non-empty")

        # R: (n-1)x(n-1) tridiagonal, Q: (n-1)xn first difference
        r = np.diag(2.0 * (h[:-1] + h[1:]) + 6.0 * gaps)
        off = h[1:-1]
        r += np.diag(off, 1) + np.diag(off, -1)
        q = np.zeros((n - 1, n))
        idx = np.arange(n - 1)
        q[idx, idx] = -1.0
        q[idx, idx + 1] = 1.0

        try:
            rinv_q = np.linalg.solve(r, q)
            z = np.eye(n) + 6.0 * n * lam * (q.T @ rinv_q)
            sbar = np.linalg.solve(z, y)
        except np.linalg.LinAlgError as e:
            raise ModelFitFailure(f"singular spline system: {e}") from e

        b = 6.0 * rinv_q @ sbar
        if not (np.all(np.isfinite(sbar)) and np.all(np.isfinite(b))):
            raise ModelFitFailure("non-finite spline coefficients")

        b_upper = np.concatenate([[0.0], b])   # slope at each horizon top
        b_lower = np.concatenate([b, [0.0]])   # slope at each horizon bottom
        self.h = h
        self.fitted_means = sbar
        self.slope_top = b_upper
        self.gamma = (b_lower - b_upper) / (2.0 * h)
        self.alpha = sbar - b_upper * h / 2.0 - self.gamma * h ** 2 / 3.0

    def _horizon_value(self, i: int, x: np.ndarray) -> np.ndarray:
        t = x - self.tops[i]
        return self.alpha[i] + self.slope_top[i] * t + self.gamma[i] * t ** 2

    def __call__(self, depths) -> np.ndarray:
        x = np.atleast_1d(np.asarray(depths, dtype=float))
        out = np.empty_like(x)
        n = len(self.tops)

        top_value = self.alpha[0]
        bottom_value = self._horizon_value(n - 1, np.array([self.bottoms[-1]]))[0]
        out[x <= self.tops[0]] = top_value
        out[x >= self.bottoms[-1]] = bottom_value

        for i in range(n):
            inside = (x > self.tops[i]) & (x < self.bottoms[i])
            if i == 0:
                inside |= x == self.tops[0]
            out[inside] = self._horizon_value(i, x[inside])
            if i < n - 1:
                gap = (x >= self.bottoms[i]) & (x <= self.tops[i + 1])
                if np.any(gap):
                    v0 = self._horizon_value(i, np.array([self.bottoms[i]]))[0]
                    v1 = self.alpha[i + 1]
                    width = self.tops[i + 1] - self.bottoms[i]
                    if width > 0:
                        out[gap] = v0 + (v1 - v0) * (x[gap] - self.bottoms[i]) / width
                    else:
                        out[gap] = v0
        return out

    def mean_over(self, top: float, bottom: float, n: int = 400) -> float:
        """Average of the curve over [top, bottom] (midpoint rule)."""
        step = (bottom - top) / n
        x = top + (np.arange(n) + 0.5) * step
        return float(np.mean(self(x)))


class LinearProfile:
    """Piecewise-linear profile through horizon midpoints, constant beyond."""

    def __init__(self, tops, bottoms, values):
        tops = np.asarray(tops, dtype=float)
        bottoms = np.asarray(bottoms, dtype=float)
        self.mids = 0.5 * (tops + bottoms)
        self.values = np.asarray(values, dtype=float)

    def __call__(self, depths) -> np.ndarray:
        return np.interp(np.atleast_1d(np.asarray(depths, dtype=float)), self.mids, self.values)

    def mean_over(self, top: float, bottom: float, n: int = 400) -> float:
        step = (bottom - top) / n
        return float(np.mean(self(top + (np.arange(n) + 0.5) * step)))


def fit_profile(tops, bottoms, values, lam: float):
    """Equal-area spline, or a linear profile when the spline fails.

    Returns (profile, degraded, reason).
    """
    try:
        return EqualAreaSpline(tops, bottoms, values, lam), False, ""
    except ModelFitFailure as e:
        return LinearProfile(tops, bottoms, values), True, str(e)


def bootstrap_profiles(
    tops: np.ndarray,
    bottoms: np.ndarray,
    values: np.ndarray,
    depths: np.ndarray,
    lam: float,
    n_iter: int,
    rng: np.random.Generator,
) -> np.ndarray:
    """Refit on resampled horizons; rows = successful replicates."""
    n = len(values)
    reps = []
    for _ in range(n_iter):
        idx = np.unique(rng.integers(0, n, size=n))
        if len(idx) < MIN_HORIZONS:
            continue
        profile, _, _ = fit_profile(tops[idx], bottoms[idx], values[idx], lam)
        pred = np.clip(profile(depths), 0.0, None)
        if np.all(np.isfinite(pred)):
            reps.append(pred)
    if not reps:
        return np.empty((0, len(depths)))
    return np.vstack(reps)


def quality_flags(
    values: np.ndarray,
    soc_min: float,
    soc_max: float,
    max_increase_pct: float,
    unusual_change_pct: float,
) -> tuple[np.ndarray, bool, bool]:
    """Per-depth realistic flags, plus profile-level monotonic / unusual flags."""
    realistic = (values >= soc_min) & (values <= soc_max)
    prev, nxt = values[:-1], values[1:]
    with np.errstate(divide="ignore", invalid="ignore"):
        change_pct = np.where(prev > 0, (nxt - prev) / prev * 100.0, np.where(nxt > prev, np.inf, 0.0))
    monotonic = not np.any(change_pct > max_increase_pct)
    unusual = bool(np.any(np.abs(change_pct) > unusual_change_pct))
    return realistic, monotonic, unusual


def fit_diagnostics(tops, bottoms, values, lam: float) -> dict[str, float]:
    """How well the fitted curve reproduces the observed horizon values."""
    tops = np.asarray(tops, dtype=float)
    bottoms = np.asarray(bottoms, dtype=float)
    values = np.asarray(values, dtype=float)
    profile, _, _ = fit_profile(tops, bottoms, values, lam)
    pred = np.array([profile.mean_over(t, b) for t, b in zip(tops, bottoms)])
    resid = pred - values
    ss_tot = np.sum((values - values.mean()) ** 2)

    out = {
        "n_horizons": len(values),
        "rmse": float(np.sqrt(np.mean(resid ** 2))),
        "mae": float(np.mean(np.abs(resid))),
        "r2": float(1.0 - np.sum(resid ** 2) / ss_tot) if ss_tot > 0 else float("nan"),
        "mean_bias": float(np.mean(resid)),
        "loo_rmse": float("nan"),
    }

    if len(values) >= MIN_HORIZONS_LOO:
        errors = []
        for j in range(len(values)):
            keep = np.arange(len(values)) != j
            loo, _, _ = fit_profile(tops[keep], bottoms[keep], values[keep], lam)
            errors.append(loo.mean_over(tops[j], bottoms[j]) - values[j])
        out["loo_rmse"] = float(np.sqrt(np.mean(np.square(errors))))
    return out


def harmonize_core(
    core_id: str,
    samples: list[DepthSample],
    config: PipelineConfig,
    diagnostics: Diagnostics | None = None,
    logger: logging.Logger | None = None,
) -> tuple[list[HarmonizedProfile], dict[str, float]]:
    """Harmonize one core onto the configured standard depths.

    Raises DataInsufficiencyError for cores with fewer than two horizons.
    """
    log = logger or logging.getLogger(__name__)
    if len(samples) < MIN_HORIZONS:
        raise DataInsufficiencyError(len(samples), MIN_HORIZONS, unit=core_id)

    samples = sorted(samples, key=lambda s: s.depth_top)
    tops = np.array([s.depth_top for s in samples])
    bottoms = np.array([s.depth_bottom for s in samples])
    values = np.array([s.concentration for s in samples])
    depths = np.asarray(config.standard_depths, dtype=float)

    profile, degraded, reason = fit_profile(tops, bottoms, values, config.spline_lambda)
    if degraded and diagnostics is not None:
        diagnostics.record(STAGE, "fallback", f"linear interpolation: {reason}", core_id=core_id)
    mean = np.clip(profile(depths), 0.0, None)

    rng = unit_rng(config.seed, "harmonize", core_id)
    reps = bootstrap_profiles(
        tops, bottoms, values, depths, config.spline_lambda, config.bootstrap_iterations, rng
    )
    if len(reps) >= 2:
        se = reps.std(axis=0, ddof=1)
    else:
        se = np.zeros_like(mean)
        if diagnostics is not None:
            diagnostics.record(
                STAGE, "degraded",
                f"bootstrap produced {len(reps)} valid replicates; se set to 0",
                core_id=core_id,
            )

    realistic, monotonic, unusual = quality_flags(
        mean, config.soc_min, config.soc_max, config.max_increase_pct, config.unusual_change_pct
    )
    interpolated = (depths >= tops.min()) & (depths <= bottoms.max())

    rows = [
        HarmonizedProfile(
            core_id=core_id,
            standard_depth=float(d),
            concentration_mean=float(m),
            concentration_se=float(s),
            monotonic=monotonic,
            realistic=bool(r),
            degraded_fit=degraded,
            interpolated=bool(i),
            unusual_pattern=unusual,
        )
        for d, m, s, r, i in zip(depths, mean, se, realistic, interpolated)
    ]

    diag = fit_diagnostics(tops, bottoms, values, config.spline_lambda)
    diag.update(core_id=core_id, degraded_fit=degraded, n_bootstrap=len(reps),
                monotonic=monotonic, unusual_pattern=unusual)
    log.debug("core %s: rmse=%.3f, n_bootstrap=%d", core_id, diag["rmse"], len(reps))
    return rows, diag


def harmonize_cores(
    samples: list[DepthSample],
    config: PipelineConfig,
    diagnostics: Diagnostics | None = None,
    logger: logging.Logger | None = None,
    progress: bool = False,
) -> tuple[list[HarmonizedProfile], pd.DataFrame]:
    """Harmonize every core. Cores with < 2 horizons are skipped and recorded."""
    log = logger or logging.getLogger(__name__)
    diagnostics = diagnostics if diagnostics is not None else Diagnostics(log)
    grouped = group_samples(samples)

    profiles: list[HarmonizedProfile] = []
    fit_rows = []
    for core_id in tqdm(sorted(grouped), desc="Harmonizing cores", disable=not progress):
        try:
            rows, diag = harmonize_core(core_id, grouped[core_id], config, diagnostics, log)
        except DataInsufficiencyError as e:
            diagnostics.record(STAGE, "skipped", str(e), core_id=core_id)
            continue
        profiles.extend(rows)
        fit_rows.append(diag)

    n_degraded = sum(1 for r in fit_rows if r["degraded_fit"])
    log.info(
        "Harmonized %d/%d cores onto %d depths (%d degraded fits)",
        len(fit_rows), len(grouped), len(config.standard_depths), n_degraded,
    )
    return profiles, pd.DataFrame(fit_rows)
