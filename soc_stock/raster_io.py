"""
Raster I/O, covariate stacks and stratum grids.

All grids are north-up float32 GeoTIFFs with NaN nodata. Stratum grids are
integer codes (-1 = outside any stratum) plus a code → name lookup.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from pathlib import Path

import geopandas as gpd
import numpy as np
import pandas as pd
import rasterio
from pyproj import CRS, Transformer
from rasterio.features import rasterize
from rasterio.transform import from_origin, rowcol
from scipy.spatial import cKDTree

from .errors import CovariateMismatchError
from .records import GridSpec

logger = logging.getLogger(__name__)

NO_STRATUM = -1


# ─── Coordinates ─────────────────────────────────────────────────

def project_points(x, y, src_crs: str, dst_crs: str) -> tuple[np.ndarray, np.ndarray]:
    """Reproject coordinate arrays (always x/lon first)."""
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    if CRS.from_user_input(src_crs) == CRS.from_user_input(dst_crs):
        return x.copy(), y.copy()
    t = Transformer.from_crs(src_crs, dst_crs, always_xy=True)
    px, py = t.transform(x, y)
    return np.asarray(px, dtype=float), np.asarray(py, dtype=float)


def require_projected(crs: str | None, what: str) -> None:
    if crs is None:
        raise CovariateMismatchError(f"{what} has no CRS")
    if not CRS.from_user_input(crs).is_projected:
        raise CovariateMismatchError(f"{what} CRS {crs} is geographic; a projected CRS (metres) is required")


# ─── Grids ───────────────────────────────────────────────────────

def template_from_points(x, y, cell_size: float, buffer: float, crs: str) -> GridSpec:
    """Grid covering the points' bounding box plus a buffer."""
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    west = math.floor((x.min() - buffer) / cell_size) * cell_size
    north = math.ceil((y.max() + buffer) / cell_size) * cell_size
    width = max(1, math.ceil((x.max() + buffer - west) / cell_size))
    height = max(1, math.ceil((north - (y.min() - buffer)) / cell_size))
    return GridSpec(from_origin(west, north, cell_size, cell_size), width, height, crs)


def unit_grid(x, y, template: GridSpec, buffer: float) -> tuple[GridSpec, int, int]:
    """Sub-grid covering points + buffer, snapped to the template's cells.

    Returns (grid, row_offset, col_offset) relative to the template origin;
    the sub-grid may extend past the template.
    """
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    t, cell = template.transform, template.cell_size
    col0 = math.floor((x.min() - buffer - t.c) / cell)
    col1 = math.ceil((x.max() + buffer - t.c) / cell)
    row0 = math.floor((t.f - (y.max() + buffer)) / cell)
    row1 = math.ceil((t.f - (y.min() - buffer)) / cell)
    transform = from_origin(t.c + col0 * cell, t.f - row0 * cell, cell, cell)
    grid = GridSpec(transform, max(1, col1 - col0), max(1, row1 - row0), template.crs)
    return grid, row0, col0


def paste(dst: np.ndarray, src: np.ndarray, row_off: int, col_off: int, where: np.ndarray | None = None) -> None:
    """Copy src into dst at the given offset, clipped to dst; optional dst-shaped mask."""
    h, w = dst.shape
    r0, c0 = max(row_off, 0), max(col_off, 0)
    r1, c1 = min(row_off + src.shape[0], h), min(col_off + src.shape[1], w)
    if r0 >= r1 or c0 >= c1:
        return
    block = src[r0 - row_off:r1 - row_off, c0 - col_off:c1 - col_off]
    target = dst[r0:r1, c0:c1]
    sel = np.isfinite(block)
    if where is not None:
        sel &= where[r0:r1, c0:c1]
    target[sel] = block[sel]


# ─── GeoTIFF ─────────────────────────────────────────────────────

def write_geotiff(path: Path, array: np.ndarray, grid: GridSpec, nodata: float = np.nan) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = np.asarray(array, dtype="float32")
    with rasterio.open(
        path, "w", driver="GTiff",
        height=grid.height, width=grid.width, count=1, dtype="float32",
        crs=grid.crs, transform=grid.transform, nodata=nodata, compress="lzw",
    ) as dst:
        dst.write(data, 1)
    return path


def read_geotiff(path: Path, band: int = 1) -> tuple[np.ndarray, GridSpec]:
    with rasterio.open(path) as src:
        data = src.read(band).astype(float)
        if src.nodata is not None and not np.isnan(src.nodata):
            data[data == src.nodata] = np.nan
        grid = GridSpec(src.transform, src.width, src.height, src.crs.to_string() if src.crs else None)
    return data, grid


# ─── Covariates ──────────────────────────────────────────────────

@dataclass(frozen=True, eq=False)
class CovariateStack:
    """Co-registered environmental layers, shape (n_layers, height, width)."""

    names: list[str]
    data: np.ndarray
    grid: GridSpec

    def __post_init__(self):
        if self.data.ndim != 3 or self.data.shape[0] != len(self.names):
            raise CovariateMismatchError(
                f"covariate data shape {self.data.shape} does not match {len(self.names)} names"
            )
        if self.data.shape[1:] != self.grid.shape:
            raise CovariateMismatchError("covariate data shape does not match its grid")

    @classmethod
    def from_directory(cls, directory: Path, pattern: str = "*.tif") -> "CovariateStack":
        """One single-band GeoTIFF per covariate; the file stem is the name."""
        paths = sorted(Path(directory).glob(pattern))
        if not paths:
            raise CovariateMismatchError(f"no covariate rasters matching {pattern} in {directory}")

        layers, names, grid = [], [], None
        for p in paths:
            data, g = read_geotiff(p)
            if grid is None:
                grid = g
            elif (g.shape != grid.shape or g.crs != grid.crs
                  or not g.transform.almost_equals(grid.transform)):
                raise CovariateMismatchError(f"{p.name} is not co-registered with {paths[0].name}")
            layers.append(data)
            names.append(p.stem)
        logger.info("Loaded %d covariate layers %s from %s", len(names), grid.shape, directory)
        return cls(names, np.stack(layers), grid)

    @classmethod
    def from_multiband(cls, path: Path) -> "CovariateStack":
        with rasterio.open(path) as src:
            data = src.read().astype(float)
            if src.nodata is not None and not np.isnan(src.nodata):
                data[data == src.nodata] = np.nan
            names = [d or f"band_{i + 1}" for i, d in enumerate(src.descriptions)]
            grid = GridSpec(src.transform, src.width, src.height, src.crs.to_string() if src.crs else None)
        return cls(names, data, grid)

    def sample(self, x, y) -> pd.DataFrame:
        """Covariate values at points given in the stack's CRS; NaN outside."""
        x = np.asarray(x, dtype=float)
        y = np.asarray(y, dtype=float)
        rows, cols = rowcol(self.grid.transform, x, y)
        rows, cols = np.asarray(rows), np.asarray(cols)
        inside = (rows >= 0) & (rows < self.grid.height) & (cols >= 0) & (cols < self.grid.width)

        values = np.full((len(x), len(self.names)), np.nan)
        values[inside] = self.data[:, rows[inside], cols[inside]].T
        return pd.DataFrame(values, columns=self.names)

    def complete_cells(self) -> tuple[np.ndarray, np.ndarray]:
        """(flat indices, feature matrix) of cells with every covariate present."""
        flat = self.data.reshape(len(self.names), -1).T
        ok = np.all(np.isfinite(flat), axis=1)
        idx = np.flatnonzero(ok)
        return idx, flat[idx]


# ─── Strata ──────────────────────────────────────────────────────

@dataclass(frozen=True, eq=False)
class StratumGrid:
    codes: np.ndarray           # int, NO_STRATUM outside
    names: dict[int, str]
    grid: GridSpec
    source: str = "raster"

    def mask(self, stratum: str) -> np.ndarray:
        for code, name in self.names.items():
            if name == stratum:
                return self.codes == code
        return np.zeros(self.grid.shape, dtype=bool)

    @property
    def strata(self) -> list[str]:
        present = set(np.unique(self.codes[self.codes != NO_STRATUM]).tolist())
        return [self.names[c] for c in sorted(present) if c in self.names]

    def check_grid(self, other: GridSpec, what: str) -> None:
        if (other.shape != self.grid.shape or other.crs != self.grid.crs
                or not other.transform.almost_equals(self.grid.transform)):
            raise CovariateMismatchError(f"stratum grid is not aligned with the {what} grid")


def stratum_grid_from_raster(path: Path, lookup: dict[int, str]) -> StratumGrid:
    data, grid = read_geotiff(path)
    codes = np.where(np.isfinite(data), data, NO_STRATUM).astype(int)
    unknown = set(np.unique(codes).tolist()) - set(lookup) - {NO_STRATUM}
    for code in unknown:
        codes[codes == code] = NO_STRATUM
    if unknown:
        logger.warning("Stratum raster codes without a name set to no-stratum: %s", sorted(unknown))
    return StratumGrid(codes, dict(lookup), grid, source="raster")


def rasterize_strata(polygons, grid: GridSpec, column: str = "stratum") -> StratumGrid:
    """Burn stratum polygons (GeoDataFrame or readable file) onto a grid."""
    gdf = polygons if isinstance(polygons, gpd.GeoDataFrame) else gpd.read_file(polygons)
    if column not in gdf.columns:
        raise ValueError(f"stratum polygons have no {column!r} column")
    if gdf.crs is None:
        raise CovariateMismatchError("stratum polygons have no CRS")
    gdf = gdf.to_crs(grid.crs)

    names = {i: str(n) for i, n in enumerate(sorted(gdf[column].astype(str).unique()))}
    codes_by_name = {n: i for i, n in names.items()}
    shapes = ((geom, codes_by_name[str(s)]) for geom, s in zip(gdf.geometry, gdf[column]) if geom is not None)
    codes = rasterize(
        shapes, out_shape=grid.shape, transform=grid.transform,
        fill=NO_STRATUM, dtype="int32",
    )
    return StratumGrid(codes.astype(int), names, grid, source="polygons")


def nearest_core_strata(grid: GridSpec, x, y, strata) -> StratumGrid:
    """Label every cell with the stratum of its nearest core."""
    names = {i: n for i, n in enumerate(sorted(set(strata)))}
    codes_by_name = {n: i for i, n in names.items()}
    point_codes = np.array([codes_by_name[s] for s in strata])

    cx, cy = grid.cell_centers()
    _, nearest = cKDTree(np.column_stack([x, y])).query(np.column_stack([cx.ravel(), cy.ravel()]))
    codes = point_codes[nearest].reshape(grid.shape)
    return StratumGrid(codes, names, grid, source="nearest_core")


def load_stratum_grid(path: Path, grid: GridSpec, lookup: dict[int, str] | None = None) -> StratumGrid:
    """Raster (needs a code lookup) or any geopandas-readable polygon file."""
    path = Path(path)
    if path.suffix.lower() in {".tif", ".tiff"}:
        if lookup is None:
            raise ValueError("a stratum raster needs a code → name lookup")
        strata = stratum_grid_from_raster(path, lookup)
        strata.check_grid(grid, "analysis")
        return strata
    return rasterize_strata(path, grid)
