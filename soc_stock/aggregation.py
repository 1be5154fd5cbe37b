"""
Stratum Aggregation
===================
Reduce pixel stock layers to one summary row per (stratum, interval) plus
an "ALL" row per interval.

Per stratum: area, mean stock, mean pixel SE, conservative stock and the
stratum totals (mean × area, conservative × area). The ALL row sums areas
and totals, takes mean = total / area, area-weights the stratum SEs and
recomputes its conservative value.
"""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import replace

import numpy as np
import pandas as pd

from .carbon_stock import z_score
from .config import PipelineConfig
from .errors import Diagnostics
from .raster_io import StratumGrid
from .records import Core, StockLayer, StratumSummary, records_to_frame

logger = logging.getLogger(__name__)

STAGE = "aggregation"
ALL = "ALL"
M2_PER_HA = 10_000.0


def _conservative(mean: float, se: float | None, z: float) -> float | None:
    if se is None or not np.isfinite(se):
        return None
    return max(0.0, mean - z * se)


def stratum_summary(
    layer: StockLayer,
    stratum: str,
    mask: np.ndarray,
    n_samples: int,
    z: float,
) -> StratumSummary | None:
    cells = mask & np.isfinite(layer.mean_grid)
    n_pixels = int(cells.sum())
    if n_pixels == 0:
        return None

    values = layer.mean_grid[cells]
    area_ha = n_pixels * layer.grid.cell_area / M2_PER_HA
    mean = float(values.mean())

    se = None
    if layer.se_grid is not None:
        se_cells = layer.se_grid[cells]
        se_cells = se_cells[np.isfinite(se_cells)]
        se = float(se_cells.mean()) if len(se_cells) else None
    cons = _conservative(mean, se, z)

    return StratumSummary(
        stratum=stratum,
        reporting_interval=layer.reporting_interval,
        area_ha=area_ha,
        mean_stock=mean,
        se_stock=se,
        conservative_stock=cons,
        total_stock=mean * area_ha,
        conservative_total=None if cons is None else cons * area_ha,
        n_samples=n_samples,
        sd_stock=float(values.std(ddof=1)) if n_pixels > 1 else float("nan"),
        median_stock=float(np.median(values)),
        n_pixels=n_pixels,
        uncertainty_unavailable=se is None,
    )


def overall_summary(rows: list[StratumSummary], layer: StockLayer, cells: np.ndarray, z: float) -> StratumSummary:
    area = sum(r.area_ha for r in rows)
    total = sum(r.total_stock for r in rows)
    mean = total / area

    se = None
    if all(r.se_stock is not None for r in rows):
        se = sum(r.se_stock * r.area_ha for r in rows) / area
    cons = _conservative(mean, se, z)

    values = layer.mean_grid[cells]
    return StratumSummary(
        stratum=ALL,
        reporting_interval=layer.reporting_interval,
        area_ha=area,
        mean_stock=mean,
        se_stock=se,
        conservative_stock=cons,
        total_stock=total,
        conservative_total=None if cons is None else cons * area,
        n_samples=sum(r.n_samples for r in rows),
        sd_stock=float(values.std(ddof=1)) if len(values) > 1 else float("nan"),
        median_stock=float(np.median(values)),
        n_pixels=sum(r.n_pixels for r in rows),
        uncertainty_unavailable=se is None,
    )


def enforce_bounds(row: StratumSummary, log: logging.Logger) -> StratumSummary:
    """conservative ≤ mean and conservative_total ≤ total, clipping if needed."""
    changes = {}
    if row.conservative_stock is not None and row.conservative_stock > row.mean_stock:
        changes["conservative_stock"] = row.mean_stock
    if row.conservative_total is not None and row.conservative_total > row.total_stock:
        changes["conservative_total"] = row.total_stock
    if not changes:
        return row
    log.warning("%s / %s: conservative values clipped to the mean: %s",
                row.stratum, row.reporting_interval, changes)
    return replace(row, **changes)


def summarize(
    layers: dict[str, StockLayer],
    strata: StratumGrid,
    cores: list[Core],
    config: PipelineConfig,
    diagnostics: Diagnostics | None = None,
    logger: logging.Logger | None = None,
) -> list[StratumSummary]:
    """One row per (stratum, interval) plus ALL rows, ordered by interval."""
    log = logger or logging.getLogger(__name__)
    diagnostics = diagnostics if diagnostics is not None else Diagnostics(log)
    z = z_score(config.confidence_level)
    core_counts = Counter(c.stratum for c in cores)

    out: list[StratumSummary] = []
    for name, layer in layers.items():
        strata.check_grid(layer.grid, f"{name} stock")
        rows = []
        covered = np.zeros(layer.grid.shape, dtype=bool)
        for stratum in strata.strata:
            mask = strata.mask(stratum)
            row = stratum_summary(layer, stratum, mask, core_counts.get(stratum, 0), z)
            if row is None:
                diagnostics.record(STAGE, "skipped", "no valid stock cells", stratum=stratum, interval=name)
                continue
            rows.append(enforce_bounds(row, log))
            covered |= mask & np.isfinite(layer.mean_grid)

        if not rows:
            diagnostics.record(STAGE, "skipped", "no stratum has valid stock cells", interval=name)
            continue
        out.extend(rows)
        out.append(enforce_bounds(overall_summary(rows, layer, covered, z), log))

    log.info("Aggregated %d summary rows over %d intervals", len(out), len(layers))
    return out


def summary_frame(rows: list[StratumSummary]) -> pd.DataFrame:
    return records_to_frame(rows)
