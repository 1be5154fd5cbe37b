"""
Configuration for the SOC stock pipeline.

Note on units:
    Concentrations are g C / kg soil, bulk density g / cm³, depths cm.
    stock (Mg C / ha) = conc / 1000 × bd × thickness × 100
    so 50 g/kg over 15 cm at 1.0 g/cm³ is 75 Mg C / ha.

Note on CRS:
    Core coordinates arrive as WGS84 lon/lat. Distances for variograms and
    kriging are computed in PROCESSING_CRS, which must be projected (metres).
"""
from __future__ import annotations

import json
import zlib
from dataclasses import dataclass, field, fields
from pathlib import Path

import numpy as np

# ─── Paths ───────────────────────────────────────────────────────
ROOT = Path(__file__).parent.parent
DATA_DIR = ROOT / "data"
OUTPUT_DIR = ROOT / "outputs"

CORES_CSV = DATA_DIR / "cores.csv"
SAMPLES_CSV = DATA_DIR / "samples.csv"
COVARIATES_DIR = DATA_DIR / "covariates"

# ─── Spatial ─────────────────────────────────────────────────────
INPUT_CRS = "EPSG:4326"
PROCESSING_CRS = "EPSG:3347"  # Statistics Canada Lambert

# ─── Depths ──────────────────────────────────────────────────────
STANDARD_DEPTHS = [0, 5, 10, 15, 20, 25, 30, 40, 50, 75, 100]

# Reporting intervals [top, bottom) in cm
REPORTING_INTERVALS = {
    "surface": (0, 30),
    "deep": (30, 100),
}

# ─── Harmonization ───────────────────────────────────────────────
SPLINE_LAMBDA = 0.1
BOOTSTRAP_ITERATIONS = 100
SEED = 42

# Plausible SOC range, g/kg
SOC_MIN = 0.0
SOC_MAX = 500.0

# Allowed increase between adjacent standard depths before a profile
# stops being "monotonic" (percent)
MAX_INCREASE_PCT = 10.0
UNUSUAL_CHANGE_PCT = 50.0

# ─── Bulk density (g/cm³) ────────────────────────────────────────
BULK_DENSITY_DEFAULTS = {
    "Upper Marsh": 0.8,
    "Mid Marsh": 1.0,
    "Lower Marsh": 1.2,
    "Underwater Vegetation": 0.6,
    "Open Water": 1.0,
}
DEFAULT_BULK_DENSITY = 1.0

# ─── Geostatistics ───────────────────────────────────────────────
MIN_SAMPLES_PER_STRATUM = 5
MAX_VARIOGRAM_DISTANCE = 5000.0   # m
VARIOGRAM_LAG_WIDTH = 100.0       # m
KRIGING_CELL_SIZE = 10.0          # m
KRIGING_BUFFER = 500.0            # m
CV_FOLDS = 3

# ─── Random forest ───────────────────────────────────────────────
ENSEMBLE_TREE_COUNT = 500
ENSEMBLE_MIN_NODE_SIZE = 5
ENSEMBLE_MIN_SAMPLES = 20
ENABLE_EXTRAPOLATION_MASK = True

# ─── Reporting ───────────────────────────────────────────────────
CONFIDENCE_LEVEL = 0.95

INTERPOLATION_METHODS = ("kriging", "random_forest")


def unit_seed(seed: int, *key) -> int:
    """Seed for one modelling unit, stable across processing order."""
    digest = zlib.crc32("|".join(str(k) for k in key).encode("utf-8"))
    return int(np.random.SeedSequence([seed, digest]).generate_state(1)[0])


def unit_rng(seed: int, *key) -> np.random.Generator:
    return np.random.default_rng(unit_seed(seed, *key))


@dataclass
class PipelineConfig:
    """Run settings. Defaults mirror the module constants above."""

    confidence_level: float = CONFIDENCE_LEVEL
    bootstrap_iterations: int = BOOTSTRAP_ITERATIONS
    cv_folds: int = CV_FOLDS
    max_variogram_distance: float = MAX_VARIOGRAM_DISTANCE
    variogram_lag_width: float = VARIOGRAM_LAG_WIDTH
    min_samples_per_stratum: int = MIN_SAMPLES_PER_STRATUM
    ensemble_tree_count: int = ENSEMBLE_TREE_COUNT
    ensemble_min_node_size: int = ENSEMBLE_MIN_NODE_SIZE
    enable_extrapolation_mask: bool = ENABLE_EXTRAPOLATION_MASK
    standard_depths: list[float] = field(default_factory=lambda: list(STANDARD_DEPTHS))
    reporting_depth_intervals: dict[str, tuple[float, float]] = field(
        default_factory=lambda: dict(REPORTING_INTERVALS)
    )

    seed: int = SEED
    input_crs: str = INPUT_CRS
    processing_crs: str = PROCESSING_CRS
    kriging_cell_size: float = KRIGING_CELL_SIZE
    kriging_buffer: float = KRIGING_BUFFER
    spline_lambda: float = SPLINE_LAMBDA
    soc_min: float = SOC_MIN
    soc_max: float = SOC_MAX
    max_increase_pct: float = MAX_INCREASE_PCT
    unusual_change_pct: float = UNUSUAL_CHANGE_PCT
    bulk_density_defaults: dict[str, float] = field(
        default_factory=lambda: dict(BULK_DENSITY_DEFAULTS)
    )
    default_bulk_density: float = DEFAULT_BULK_DENSITY
    ensemble_min_samples: int = ENSEMBLE_MIN_SAMPLES
    n_jobs: int = 1
    interpolation_method: str = "kriging"
    output_dir: Path = OUTPUT_DIR

    @classmethod
    def from_dict(cls, values: dict) -> "PipelineConfig":
        """Build a config from a plain dict, rejecting unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ValueError(f"Unknown config keys: {unknown}")

        values = dict(values)
        if "reporting_depth_intervals" in values:
            values["reporting_depth_intervals"] = {
                name: (float(top), float(bottom))
                for name, (top, bottom) in values["reporting_depth_intervals"].items()
            }
        if "output_dir" in values:
            values["output_dir"] = Path(values["output_dir"])
        cfg = cls(**values)
        cfg.validate()
        return cfg

    @classmethod
    def from_json(cls, path: Path) -> "PipelineConfig":
        with open(path, encoding="utf-8") as f:
            return cls.from_dict(json.load(f))

    def to_dict(self) -> dict:
        out = {f.name: getattr(self, f.name) for f in fields(self)}
        out["output_dir"] = str(self.output_dir)
        out["reporting_depth_intervals"] = {
            k: list(v) for k, v in self.reporting_depth_intervals.items()
        }
        return out

    def validate(self) -> None:
        """Raise ValueError on settings that cannot produce a meaningful run."""
        if not 0.0 < self.confidence_level < 1.0:
            raise ValueError(f"confidence_level must be in (0, 1), got {self.confidence_level}")
        if self.bootstrap_iterations < 0:
            raise ValueError("bootstrap_iterations must be >= 0")
        if self.cv_folds < 2:
            raise ValueError("cv_folds must be >= 2")
        if self.min_samples_per_stratum < 3:
            raise ValueError("min_samples_per_stratum must be >= 3")
        if self.max_variogram_distance <= 0 or self.variogram_lag_width <= 0:
            raise ValueError("variogram distances must be positive")
        if self.kriging_cell_size <= 0:
            raise ValueError("kriging_cell_size must be positive")
        if self.ensemble_tree_count < 1 or self.ensemble_min_node_size < 1:
            raise ValueError("ensemble_tree_count and ensemble_min_node_size must be >= 1")
        depths = list(self.standard_depths)
        if len(depths) < 2 or any(b <= a for a, b in zip(depths, depths[1:])):
            raise ValueError("standard_depths must be strictly increasing with >= 2 entries")
        if not self.reporting_depth_intervals:
            raise ValueError("at least one reporting interval is required")
        for name, (top, bottom) in self.reporting_depth_intervals.items():
            if bottom <= top:
                raise ValueError(f"reporting interval {name!r} has bottom <= top")
            if name == "total":
                raise ValueError("'total' is reserved for the full-profile layer")
        if self.soc_max <= self.soc_min:
            raise ValueError("soc_max must exceed soc_min")
        if self.interpolation_method not in INTERPOLATION_METHODS:
            raise ValueError(
                f"interpolation_method must be one of {INTERPOLATION_METHODS}, "
                f"got {self.interpolation_method!r}"
            )
