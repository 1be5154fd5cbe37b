"""Pytest configuration and shared fixtures."""
import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from soc_stock.config import PipelineConfig
from soc_stock.raster_io import CovariateStack, project_points, template_from_points, write_geotiff

PROJECTED_CRS = "EPSG:3347"
HORIZONS = [(0, 10), (10, 20), (20, 40), (40, 60), (60, 100)]

# Study area around a salt marsh near Halifax, NS
LON_RANGE = (-63.62, -63.58)
LAT_RANGE = (44.64, 44.66)


def make_dataset(n_per_stratum: dict, seed: int = 42, with_bd: bool = True):
    """Cores spread west → east by stratum, SOC rising eastwards and decaying with depth."""
    rng = np.random.default_rng(seed)
    strata = list(n_per_stratum)
    width = (LON_RANGE[1] - LON_RANGE[0]) / len(strata)

    cores, samples = [], []
    for k, stratum in enumerate(strata):
        for i in range(n_per_stratum[stratum]):
            core_id = f"{stratum[:2].upper()}{i:02d}"
            lon = LON_RANGE[0] + width * (k + rng.uniform(0.05, 0.95))
            lat = rng.uniform(*LAT_RANGE)
            cores.append({"core_id": core_id, "longitude": lon, "latitude": lat,
                          "stratum": stratum, "scenario": "baseline"})

            base = 30.0 + 40.0 * (lon - LON_RANGE[0]) / (LON_RANGE[1] - LON_RANGE[0]) + rng.normal(0, 2)
            for top, bottom in HORIZONS:
                mid = 0.5 * (top + bottom)
                samples.append({
                    "core_id": core_id,
                    "depth_top": top,
                    "depth_bottom": bottom,
                    "concentration": max(base * np.exp(-mid / 60.0) + rng.normal(0, 1), 0.5),
                    "bulk_density": 0.9 if (with_bd and k == 0) else np.nan,
                })
    return pd.DataFrame(cores), pd.DataFrame(samples)


@pytest.fixture
def dataset():
    return make_dataset({"Upper Marsh": 15, "Lower Marsh": 15})


@pytest.fixture
def small_config(tmp_path):
    """Fast settings: few depths, coarse grid, small forests."""
    return PipelineConfig(
        bootstrap_iterations=20,
        standard_depths=[0, 15, 30, 60],
        reporting_depth_intervals={"surface": (0, 30), "deep": (30, 100)},
        kriging_cell_size=50.0,
        kriging_buffer=100.0,
        ensemble_tree_count=50,
        output_dir=tmp_path / "out",
    )


@pytest.fixture
def covariate_stack(tmp_path):
    """Three co-registered covariate rasters covering the study area."""
    corners_x, corners_y = project_points(
        [LON_RANGE[0], LON_RANGE[0], LON_RANGE[1], LON_RANGE[1]],
        [LAT_RANGE[0], LAT_RANGE[1], LAT_RANGE[0], LAT_RANGE[1]],
        "EPSG:4326", PROJECTED_CRS,
    )
    grid = template_from_points(corners_x, corners_y, 50.0, 300.0, PROJECTED_CRS)
    cx, cy = grid.cell_centers()
    x0, y0 = cx.min(), cy.min()

    layers = {
        "east": (cx - x0) / 1000.0,
        "north": (cy - y0) / 1000.0,
        "wave": np.sin(cx / 300.0) * np.cos(cy / 300.0),
    }
    cov_dir = tmp_path / "covariates"
    for name, data in layers.items():
        write_geotiff(cov_dir / f"{name}.tif", data, grid)
    return CovariateStack.from_directory(cov_dir)
