"""
Typed records and the ingestion boundary
========================================
Cores and depth samples are validated once here; everything downstream
works with the dataclasses below instead of loosely keyed frames.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import asdict, dataclass, field, fields, is_dataclass

import numpy as np
import pandas as pd
from rasterio.transform import Affine, array_bounds, xy

from .errors import Diagnostics

logger = logging.getLogger(__name__)

CORE_COLUMNS = ["core_id", "longitude", "latitude", "stratum"]
SAMPLE_COLUMNS = ["core_id", "depth_top", "depth_bottom", "concentration"]

# Tolerance used when checking conservative <= mean on float grids
_EPS = 1e-9


@dataclass(frozen=True)
class Core:
    core_id: str
    longitude: float
    latitude: float
    stratum: str
    scenario: str = ""


@dataclass(frozen=True)
class DepthSample:
    core_id: str
    depth_top: float
    depth_bottom: float
    concentration: float
    bulk_density: float | None = None

    @property
    def thickness(self) -> float:
        return self.depth_bottom - self.depth_top

    @property
    def midpoint(self) -> float:
        return 0.5 * (self.depth_top + self.depth_bottom)


@dataclass(frozen=True)
class HarmonizedProfile:
    core_id: str
    standard_depth: float
    concentration_mean: float
    concentration_se: float
    monotonic: bool = True
    realistic: bool = True
    degraded_fit: bool = False
    interpolated: bool = True
    unusual_pattern: bool = False

    def __post_init__(self):
        if not self.concentration_se >= 0:
            raise ValueError(
                f"concentration_se must be >= 0 (core {self.core_id}, "
                f"depth {self.standard_depth}): {self.concentration_se}"
            )

    @property
    def quality_flags(self) -> dict[str, bool]:
        return {
            "monotonic": self.monotonic,
            "realistic": self.realistic,
            "degraded_fit": self.degraded_fit,
            "interpolated": self.interpolated,
            "unusual_pattern": self.unusual_pattern,
        }


@dataclass(frozen=True)
class VariogramModel:
    stratum: str
    depth: float
    model_type: str
    nugget: float
    sill: float        # total sill, nugget included
    range: float
    fit_error: float
    strategy: str = "auto"
    heuristic: bool = False
    n_samples: int = 0

    @property
    def partial_sill(self) -> float:
        return max(self.sill - self.nugget, 0.0)


@dataclass(frozen=True)
class GridSpec:
    """Regular north-up grid: affine transform, shape and CRS."""

    transform: Affine
    width: int
    height: int
    crs: str

    @property
    def cell_size(self) -> float:
        return float(abs(self.transform.a))

    @property
    def shape(self) -> tuple[int, int]:
        return (self.height, self.width)

    @property
    def bounds(self) -> tuple[float, float, float, float]:
        """(left, bottom, right, top)"""
        west, south, east, north = array_bounds(self.height, self.width, self.transform)
        return (west, south, east, north)

    @property
    def cell_area(self) -> float:
        return float(abs(self.transform.a * self.transform.e))

    def cell_centers(self) -> tuple[np.ndarray, np.ndarray]:
        """x and y of every cell centre, each shaped (height, width)."""
        rows, cols = np.meshgrid(np.arange(self.height), np.arange(self.width), indexing="ij")
        xs, ys = xy(self.transform, rows.ravel(), cols.ravel(), offset="center")
        return (
            np.asarray(xs, dtype=float).reshape(self.shape),
            np.asarray(ys, dtype=float).reshape(self.shape),
        )

    def axes(self) -> tuple[np.ndarray, np.ndarray]:
        """1-D cell-centre x (west→east) and y (north→south) coordinates."""
        t = self.transform
        x = t.c + t.a * (np.arange(self.width) + 0.5)
        y = t.f + t.e * (np.arange(self.height) + 0.5)
        return x, y


@dataclass(frozen=True, eq=False)
class PredictionSurface:
    depth: float
    mean_grid: np.ndarray
    grid: GridSpec
    method: str
    variance_grid: np.ndarray | None = None
    stratum: str | None = None
    aoa_mask: np.ndarray | None = None
    dissimilarity: np.ndarray | None = None

    def __post_init__(self):
        if self.mean_grid.shape != self.grid.shape:
            raise ValueError(f"mean_grid shape {self.mean_grid.shape} != grid {self.grid.shape}")
        if self.variance_grid is not None:
            if self.variance_grid.shape != self.grid.shape:
                raise ValueError("variance_grid shape does not match grid")
            if np.any(self.variance_grid[np.isfinite(self.variance_grid)] < 0):
                raise ValueError("variance_grid has negative cells")

    @property
    def crs(self) -> str:
        return self.grid.crs

    @property
    def cell_size(self) -> float:
        return self.grid.cell_size

    @property
    def se_grid(self) -> np.ndarray | None:
        if self.variance_grid is None:
            return None
        return np.sqrt(self.variance_grid)


@dataclass(frozen=True, eq=False)
class StockLayer:
    reporting_interval: str
    depth_top: float
    depth_bottom: float
    mean_grid: np.ndarray
    grid: GridSpec
    se_grid: np.ndarray | None = None
    conservative_grid: np.ndarray | None = None
    uncertainty_unavailable: bool = False
    depths_used: tuple[float, ...] = field(default_factory=tuple)

    def __post_init__(self):
        if self.conservative_grid is None:
            return
        if self.se_grid is None:
            raise ValueError("conservative_grid requires se_grid")
        both = np.isfinite(self.conservative_grid) & np.isfinite(self.mean_grid)
        if np.any(self.conservative_grid[both] > self.mean_grid[both] + _EPS):
            raise ValueError(f"{self.reporting_interval}: conservative exceeds mean")
        if np.any(self.conservative_grid[np.isfinite(self.conservative_grid)] < 0):
            raise ValueError(f"{self.reporting_interval}: conservative is negative")

    @property
    def variance_grid(self) -> np.ndarray | None:
        if self.se_grid is None:
            return None
        return self.se_grid ** 2


@dataclass(frozen=True)
class StratumSummary:
    stratum: str
    reporting_interval: str
    area_ha: float
    mean_stock: float
    se_stock: float | None
    conservative_stock: float | None
    total_stock: float
    conservative_total: float | None
    n_samples: int
    sd_stock: float = float("nan")
    median_stock: float = float("nan")
    n_pixels: int = 0
    uncertainty_unavailable: bool = False


# ─── Ingestion boundary ──────────────────────────────────────────

def _require_columns(df: pd.DataFrame, required: list[str], what: str) -> None:
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise ValueError(f"{what} table missing required columns: {missing}")


def cores_from_frame(df: pd.DataFrame) -> list[Core]:
    """Validate a core table and convert it to Core records."""
    _require_columns(df, CORE_COLUMNS, "core")

    if df[CORE_COLUMNS].isna().any().any():
        bad = df[df[CORE_COLUMNS].isna().any(axis=1)]["core_id"].tolist()
        raise ValueError(f"cores with missing id/coordinates/stratum: {bad}")

    ids = df["core_id"].astype(str)
    dupes = sorted(ids[ids.duplicated()].unique())
    if dupes:
        raise ValueError(f"duplicate core ids: {dupes}")

    lon = df["longitude"].astype(float)
    lat = df["latitude"].astype(float)
    bad = ids[(lon < -180) | (lon > 180) | (lat < -90) | (lat > 90)]
    if len(bad):
        raise ValueError(f"cores with out-of-range coordinates: {bad.tolist()}")

    scenario = df["scenario"].fillna("").astype(str) if "scenario" in df.columns else [""] * len(df)
    return [
        Core(core_id=i, longitude=x, latitude=y, stratum=str(s), scenario=sc)
        for i, x, y, s, sc in zip(ids, lon, lat, df["stratum"], scenario)
    ]


def samples_from_frame(
    df: pd.DataFrame,
    cores: list[Core] | None = None,
    soc_min: float = 0.0,
    soc_max: float = float("inf"),
    diagnostics: Diagnostics | None = None,
) -> list[DepthSample]:
    """Validate a depth-sample table and convert it to DepthSample records.

    Samples come back ordered by (core_id, depth_top). Intervals inside a
    core must not overlap. Samples with concentration outside
    [soc_min, soc_max] are dropped and recorded as "ingestion" diagnostics.
    """
    _require_columns(df, SAMPLE_COLUMNS, "sample")

    if df[SAMPLE_COLUMNS].isna().any().any():
        raise ValueError("samples with missing core_id/depths/concentration")

    df = df.copy()
    df["core_id"] = df["core_id"].astype(str)
    for col in ["depth_top", "depth_bottom", "concentration"]:
        df[col] = df[col].astype(float)
    if "bulk_density" not in df.columns:
        df["bulk_density"] = np.nan
    df["bulk_density"] = df["bulk_density"].astype(float)

    if (df["depth_top"] < 0).any():
        raise ValueError("negative depth_top")
    bad = df[df["depth_bottom"] <= df["depth_top"]]
    if len(bad):
        raise ValueError(f"samples with depth_bottom <= depth_top in cores {sorted(bad['core_id'].unique())}")

    if (df["bulk_density"] <= 0).any():
        raise ValueError("bulk_density must be positive where present")

    if cores is not None:
        known = {c.core_id for c in cores}
        unknown = sorted(set(df["core_id"]) - known)
        if unknown:
            raise ValueError(f"samples reference unknown cores: {unknown}")

    df = df.sort_values(["core_id", "depth_top"]).reset_index(drop=True)
    prev_bottom = df.groupby("core_id")["depth_bottom"].shift()
    overlapping = df[df["depth_top"] < prev_bottom]
    if len(overlapping):
        raise ValueError(f"overlapping depth intervals in cores {sorted(overlapping['core_id'].unique())}")

    # implausible concentrations are dropped, not fatal
    invalid = (df["concentration"] < soc_min) | (df["concentration"] > soc_max)
    for row in df[invalid].itertuples(index=False):
        reason = (f"dropped sample {row.depth_top:g}-{row.depth_bottom:g} cm: concentration "
                  f"{row.concentration:g} outside [{soc_min:g}, {soc_max:g}]")
        if diagnostics is not None:
            diagnostics.record("ingestion", "dropped", reason, core_id=row.core_id)
        else:
            logger.warning("%s (core_id=%s)", reason, row.core_id)
    df = df[~invalid].reset_index(drop=True)

    return [
        DepthSample(
            core_id=row.core_id,
            depth_top=row.depth_top,
            depth_bottom=row.depth_bottom,
            concentration=row.concentration,
            bulk_density=None if np.isnan(row.bulk_density) else float(row.bulk_density),
        )
        for row in df.itertuples(index=False)
    ]


def group_samples(samples: list[DepthSample]) -> dict[str, list[DepthSample]]:
    grouped: dict[str, list[DepthSample]] = defaultdict(list)
    for s in samples:
        grouped[s.core_id].append(s)
    return {k: sorted(v, key=lambda s: s.depth_top) for k, v in grouped.items()}


def records_to_frame(records: list) -> pd.DataFrame:
    """Flatten scalar records (Core, HarmonizedProfile, ...) into a DataFrame."""
    if not records:
        return pd.DataFrame()
    first = records[0]
    if not is_dataclass(first):
        raise TypeError(f"expected dataclass records, got {type(first).__name__}")
    return pd.DataFrame([asdict(r) for r in records], columns=[f.name for f in fields(first)])


def profiles_with_cores(profiles: list[HarmonizedProfile], cores: list[Core]) -> pd.DataFrame:
    """Harmonized profiles joined with core location and stratum."""
    prof = records_to_frame(profiles)
    core_df = records_to_frame(cores)
    if prof.empty:
        return pd.DataFrame(columns=[f.name for f in fields(HarmonizedProfile)] + CORE_COLUMNS[1:])
    return prof.merge(core_df, on="core_id", how="inner")
