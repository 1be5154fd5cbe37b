"""
Carbon Stock Integration
========================
Concentration surfaces (g/kg) → areal stock (Mg C/ha) per reporting interval.

  stock = conc / 1000 × bulk_density × thickness × 100

Each standard depth inside an interval [top, bottom) represents the layer
down to the next standard depth in the interval (the last one down to the
interval bottom). Layer variances are summed, which treats depth layers as
independent. The conservative bound max(0, mean − z·SE) is always computed
from summed mean and SE, never by summing conservative layers.
"""
from __future__ import annotations

import logging
import warnings

import numpy as np
import pandas as pd
from scipy.stats import norm

from .config import PipelineConfig
from .errors import Diagnostics, MissingUncertaintyWarning
from .raster_io import NO_STRATUM, StratumGrid
from .records import Core, DepthSample, GridSpec, PredictionSurface, StockLayer

logger = logging.getLogger(__name__)

STAGE = "carbon_stock"
TOTAL = "total"
MASS_DENOMINATOR = 1000.0   # g/kg → fraction
UNIT_SCALE = 100.0          # g/cm² → Mg/ha
HIGH_UNCERTAINTY_CV = 0.30


def z_score(confidence_level: float) -> float:
    """Two-sided normal quantile, 1.96 for 0.95."""
    return float(norm.ppf((1.0 + confidence_level) / 2.0))


def layer_stock(concentration, bulk_density, thickness):
    """Mg C / ha of one layer; negative concentrations count as zero."""
    conc = np.clip(np.asarray(concentration, dtype=float), 0.0, None)
    return conc / MASS_DENOMINATOR * np.asarray(bulk_density, dtype=float) * thickness * UNIT_SCALE


def conservative_bound(mean, se, confidence_level: float):
    return np.maximum(0.0, np.asarray(mean, dtype=float) - z_score(confidence_level) * np.asarray(se, dtype=float))


def depth_increments(depths, top: float, bottom: float) -> list[tuple[float, float]]:
    """(depth, thickness) for every depth in [top, bottom)."""
    inside = sorted(d for d in depths if top <= d < bottom)
    return [(d, (inside[i + 1] if i + 1 < len(inside) else bottom) - d) for i, d in enumerate(inside)]


def sample_stocks(samples: list[DepthSample], default_bulk_density: float = 1.0) -> pd.DataFrame:
    """Stock of each measured sample interval, using measured BD where present."""
    rows = []
    for s in samples:
        bd = s.bulk_density if s.bulk_density is not None else default_bulk_density
        rows.append({
            "core_id": s.core_id,
            "depth_top": s.depth_top,
            "depth_bottom": s.depth_bottom,
            "bulk_density": bd,
            "stock": float(layer_stock(s.concentration, bd, s.thickness)),
        })
    return pd.DataFrame(rows)


# ─── Bulk density ────────────────────────────────────────────────

class BulkDensityTable:
    """Bulk density per (stratum, standard depth).

    Lookup order: measured mean at that depth, measured stratum mean,
    configured stratum default, global default.
    """

    def __init__(self, cores: list[Core], samples: list[DepthSample], config: PipelineConfig):
        self.defaults = dict(config.bulk_density_defaults)
        self.global_default = config.default_bulk_density
        stratum_of = {c.core_id: c.stratum for c in cores}

        rows = []
        for s in samples:
            if s.bulk_density is None or s.core_id not in stratum_of:
                continue
            for d in config.standard_depths:
                if s.depth_top <= d < s.depth_bottom:
                    rows.append((stratum_of[s.core_id], float(d), s.bulk_density))
        measured = pd.DataFrame(rows, columns=["stratum", "depth", "bulk_density"])
        self.by_depth = measured.groupby(["stratum", "depth"])["bulk_density"].mean().to_dict()
        self.by_stratum = measured.groupby("stratum")["bulk_density"].mean().to_dict()

    def lookup(self, stratum: str, depth: float) -> tuple[float, str]:
        key = (stratum, float(depth))
        if key in self.by_depth:
            return float(self.by_depth[key]), "measured"
        if stratum in self.by_stratum:
            return float(self.by_stratum[stratum]), "stratum_mean"
        if stratum in self.defaults:
            return float(self.defaults[stratum]), "stratum_default"
        return float(self.global_default), "global_default"

    def grid(self, strata: StratumGrid, depth: float) -> np.ndarray:
        out = np.full(strata.grid.shape, float(self.global_default))
        for code, name in strata.names.items():
            out[strata.codes == code] = self.lookup(name, depth)[0]
        out[strata.codes == NO_STRATUM] = float(self.global_default)
        return out

    def table(self, strata: list[str], depths) -> pd.DataFrame:
        rows = []
        for s in strata:
            for d in depths:
                value, source = self.lookup(s, d)
                rows.append({"stratum": s, "depth": float(d), "bulk_density": value, "source": source})
        return pd.DataFrame(rows)


# ─── Integration ─────────────────────────────────────────────────

def integrate_interval(
    name: str,
    top: float,
    bottom: float,
    surfaces: dict[float, PredictionSurface],
    bulk_density: dict[float, np.ndarray],
    confidence_level: float,
    diagnostics: Diagnostics | None = None,
) -> StockLayer | None:
    """Sum layer stocks for one reporting interval; None if no depth falls in it."""
    increments = depth_increments(surfaces.keys(), top, bottom)
    if not increments:
        if diagnostics is not None:
            diagnostics.record(STAGE, "skipped", f"no predicted depth in [{top:g}, {bottom:g})", interval=name)
        return None

    grid: GridSpec = surfaces[increments[0][0]].grid
    mean = np.zeros(grid.shape)
    variance = np.zeros(grid.shape)
    has_variance = True
    for depth, thickness in increments:
        surface = surfaces[depth]
        bd = bulk_density[depth]
        mean += layer_stock(surface.mean_grid, bd, thickness)
        if surface.variance_grid is None:
            has_variance = False
            continue
        # SE scales linearly with concentration
        se = layer_stock(np.sqrt(surface.variance_grid), bd, thickness)
        variance += se ** 2

    depths_used = tuple(d for d, _ in increments)
    if not has_variance:
        warnings.warn(
            f"{name}: no variance for one or more depths; mean-only stock layer",
            MissingUncertaintyWarning, stacklevel=2,
        )
        if diagnostics is not None:
            diagnostics.record(STAGE, "degraded", "uncertainty unavailable: conservative layer omitted", interval=name)
        return StockLayer(name, top, bottom, mean, grid, None, None, True, depths_used)

    se = np.sqrt(variance)
    cons = conservative_bound(mean, se, confidence_level)
    return StockLayer(name, top, bottom, mean, grid, se, cons, False, depths_used)


def combine_layers(name: str, layers: list[StockLayer], confidence_level: float) -> StockLayer:
    """Full-profile layer: means and variances summed, conservative recomputed."""
    mean = np.sum([layer.mean_grid for layer in layers], axis=0)
    top = min(layer.depth_top for layer in layers)
    bottom = max(layer.depth_bottom for layer in layers)
    depths = tuple(sorted(d for layer in layers for d in layer.depths_used))
    if any(layer.se_grid is None for layer in layers):
        return StockLayer(name, top, bottom, mean, layers[0].grid, None, None, True, depths)
    se = np.sqrt(np.sum([layer.se_grid ** 2 for layer in layers], axis=0))
    cons = conservative_bound(mean, se, confidence_level)
    return StockLayer(name, top, bottom, mean, layers[0].grid, se, cons, False, depths)


def integrate(
    surfaces: dict[float, PredictionSurface],
    bulk_density: dict[float, np.ndarray],
    config: PipelineConfig,
    diagnostics: Diagnostics | None = None,
    logger: logging.Logger | None = None,
) -> dict[str, StockLayer]:
    """StockLayers per reporting interval plus the full-profile "total"."""
    log = logger or logging.getLogger(__name__)
    diagnostics = diagnostics if diagnostics is not None else Diagnostics(log)

    missing = [d for d in config.standard_depths if float(d) not in surfaces]
    if missing:
        diagnostics.record(STAGE, "note", f"standard depths without a surface: {missing}")

    layers: dict[str, StockLayer] = {}
    for name, (top, bottom) in config.reporting_depth_intervals.items():
        layer = integrate_interval(name, top, bottom, surfaces, bulk_density,
                                   config.confidence_level, diagnostics)
        if layer is None:
            continue
        layers[name] = layer
        _report_layer(layer, diagnostics, log)

    if layers:
        total = combine_layers(TOTAL, list(layers.values()), config.confidence_level)
        if total.uncertainty_unavailable:
            diagnostics.record(STAGE, "degraded", "uncertainty unavailable: conservative layer omitted",
                               interval=TOTAL)
        layers[TOTAL] = total
        _report_layer(total, diagnostics, log)
    return layers


def _report_layer(layer: StockLayer, diagnostics: Diagnostics, log: logging.Logger) -> None:
    valid = np.isfinite(layer.mean_grid)
    if not valid.any():
        diagnostics.record(STAGE, "degraded", "stock layer has no valid cells", interval=layer.reporting_interval)
        return
    log.info(
        "Stock %s [%g-%g cm]: mean %.1f Mg C/ha over %d cells",
        layer.reporting_interval, layer.depth_top, layer.depth_bottom,
        float(np.nanmean(layer.mean_grid)), int(valid.sum()),
    )
    if layer.se_grid is not None:
        with np.errstate(divide="ignore", invalid="ignore"):
            high = (layer.se_grid > HIGH_UNCERTAINTY_CV * layer.mean_grid) & valid
        share = high.sum() / valid.sum()
        if share > 0:
            diagnostics.record(
                STAGE, "note", f"{share:.1%} of cells have SE > {HIGH_UNCERTAINTY_CV:.0%} of mean",
                interval=layer.reporting_interval,
            )
