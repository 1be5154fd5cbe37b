"""
Orchestrator: harmonize cores, interpolate, integrate stocks and summarise.

Usage:
    python -m soc_stock.run_all --cores data/cores.csv --samples data/samples.csv
    python -m soc_stock.run_all --method random_forest --covariates data/covariates
"""
from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np
import pandas as pd

from . import config as cfg
from .aggregation import summarize, summary_frame
from .carbon_stock import BulkDensityTable, integrate
from .config import PipelineConfig
from .depth_harmonization import harmonize_cores
from .errors import Diagnostics
from .interpolation import InterpolationMethod, Interpolator, build_interpolator
from .raster_io import (
    CovariateStack,
    StratumGrid,
    load_stratum_grid,
    nearest_core_strata,
    project_points,
    rasterize_strata,
    read_geotiff,
    require_projected,
    template_from_points,
    write_geotiff,
)
from .records import (
    Core,
    GridSpec,
    HarmonizedProfile,
    PredictionSurface,
    StockLayer,
    StratumSummary,
    cores_from_frame,
    profiles_with_cores,
    records_to_frame,
    samples_from_frame,
)

logger = logging.getLogger(__name__)

LOG_FORMAT = "[%(asctime)s] %(levelname)s: %(message)s"


@dataclass
class PipelineResult:
    config: PipelineConfig
    cores: list[Core]
    profiles: list[HarmonizedProfile]
    fit_diagnostics: pd.DataFrame
    interpolator: Interpolator
    strata: StratumGrid
    surfaces: dict[float, PredictionSurface]
    bulk_density: BulkDensityTable
    layers: dict[str, StockLayer]
    summaries: list[StratumSummary]
    diagnostics: Diagnostics
    outputs: list[Path] = field(default_factory=list)


def resolve_strata(
    source,
    grid: GridSpec,
    x: np.ndarray,
    y: np.ndarray,
    core_strata: list[str],
    lookup: dict[int, str] | None = None,
    diagnostics: Diagnostics | None = None,
) -> StratumGrid:
    """Stratum grid from a StratumGrid, raster/polygon path, GeoDataFrame, or nearest cores."""
    if isinstance(source, StratumGrid):
        source.check_grid(grid, "analysis")
        return source
    if source is None:
        if diagnostics is not None:
            diagnostics.record("strata", "note", "no stratum layer; cells labelled by nearest core")
        return nearest_core_strata(grid, x, y, core_strata)
    if isinstance(source, (str, Path)):
        return load_stratum_grid(Path(source), grid, lookup)
    return rasterize_strata(source, grid)


def kriging_template(config: PipelineConfig, cores: list[Core], strata_source) -> GridSpec:
    """The stratum raster's grid when one is given, else the cores' extent + buffer."""
    if isinstance(strata_source, StratumGrid):
        return strata_source.grid
    if isinstance(strata_source, (str, Path)) and Path(strata_source).suffix.lower() in {".tif", ".tiff"}:
        _, grid = read_geotiff(Path(strata_source))
        require_projected(grid.crs, "stratum raster")
        return grid
    require_projected(config.processing_crs, "processing")
    x, y = project_points([c.longitude for c in cores], [c.latitude for c in cores],
                          config.input_crs, config.processing_crs)
    return template_from_points(x, y, config.kriging_cell_size, config.kriging_buffer, config.processing_crs)


def run_pipeline(
    cores_df: pd.DataFrame,
    samples_df: pd.DataFrame,
    config: PipelineConfig,
    stack: CovariateStack | None = None,
    strata_source=None,
    strata_lookup: dict[int, str] | None = None,
    write: bool = True,
    plots: bool = False,
    progress: bool = False,
    logger: logging.Logger | None = None,
) -> PipelineResult:
    """Run every stage in dependency order.

    Per-unit problems end up in ``result.diagnostics``; structural problems
    (CovariateMismatchError, invalid inputs) propagate.
    """
    log = logger or logging.getLogger(__name__)
    config.validate()
    diagnostics = Diagnostics(log)
    method = InterpolationMethod(config.interpolation_method)
    out_dir = Path(config.output_dir)

    # ─── 1. Ingestion boundary ───────────────────────────────────
    cores = cores_from_frame(cores_df)
    samples = samples_from_frame(samples_df, cores, config.soc_min, config.soc_max, diagnostics)
    log.info("Loaded %d cores, %d depth samples", len(cores), len(samples))

    # ─── 2. Depth harmonization ──────────────────────────────────
    profiles, fit_diag = harmonize_cores(samples, config, diagnostics, log, progress=progress)
    frame = profiles_with_cores(profiles, cores)

    # ─── 3. Interpolation ────────────────────────────────────────
    if method is InterpolationMethod.KRIGING:
        grid = kriging_template(config, cores, strata_source)
        cx, cy = project_points([c.longitude for c in cores], [c.latitude for c in cores],
                                config.input_crs, grid.crs)
        xy = pd.DataFrame({"core_id": [c.core_id for c in cores], "x": cx, "y": cy})
        frame = frame.merge(xy, on="core_id", how="left")
        strata = resolve_strata(strata_source, grid, cx, cy, [c.stratum for c in cores],
                                strata_lookup, diagnostics)
        interpolator = build_interpolator(
            method, config, template=grid, strata=strata, diagnostics=diagnostics, logger=log,
            plot_dir=out_dir / "variograms" if plots else None,
        )
    else:
        if stack is None:
            raise ValueError("random_forest interpolation needs a covariate stack")
        require_projected(stack.grid.crs, "covariate stack")
        grid = stack.grid
        cx, cy = project_points([c.longitude for c in cores], [c.latitude for c in cores],
                                config.input_crs, grid.crs)
        strata = resolve_strata(strata_source, grid, cx, cy, [c.stratum for c in cores],
                                strata_lookup, diagnostics)
        interpolator = build_interpolator(
            method, config, stack=stack, diagnostics=diagnostics, logger=log,
            model_dir=out_dir / "rf_models" if write else None,
        )

    surfaces = interpolator.train(frame).predict()

    # ─── 4. Stock integration ────────────────────────────────────
    bd = BulkDensityTable(cores, samples, config)
    bd_grids = {depth: bd.grid(strata, depth) for depth in surfaces}
    layers = integrate(surfaces, bd_grids, config, diagnostics, log)

    # ─── 5. Stratum aggregation ──────────────────────────────────
    summaries = summarize(layers, strata, cores, config, diagnostics, log)

    result = PipelineResult(
        config=config, cores=cores, profiles=profiles, fit_diagnostics=fit_diag,
        interpolator=interpolator, strata=strata, surfaces=surfaces, bulk_density=bd,
        layers=layers, summaries=summaries, diagnostics=diagnostics,
    )
    if write:
        result.outputs = write_outputs(result, out_dir, log)
    return result


def write_outputs(result: PipelineResult, out_dir: Path, log: logging.Logger) -> list[Path]:
    out_dir.mkdir(parents=True, exist_ok=True)
    written: list[Path] = []

    def csv(df: pd.DataFrame, name: str) -> None:
        path = out_dir / name
        df.to_csv(path, index=False)
        written.append(path)

    def tif(array: np.ndarray, grid: GridSpec, name: str) -> None:
        written.append(write_geotiff(out_dir / "rasters" / name, array, grid))

    csv(records_to_frame(result.profiles), "harmonized_profiles.csv")
    csv(result.fit_diagnostics, "harmonization_diagnostics.csv")

    method = result.interpolator.method
    if method is InterpolationMethod.KRIGING:
        csv(result.interpolator.result.variogram_table(), "variogram_models.csv")
        csv(result.interpolator.diagnostics(), "kriging_cv_results.csv")
    else:
        csv(result.interpolator.diagnostics(), "rf_cv_results.csv")
        csv(result.interpolator.result.importance_table(), "rf_variable_importance.csv")

    for depth, surface in sorted(result.surfaces.items()):
        stem = f"{method.value}_{depth:g}cm"
        tif(surface.mean_grid, surface.grid, f"{stem}_mean.tif")
        if surface.variance_grid is not None:
            tif(surface.variance_grid, surface.grid, f"{stem}_variance.tif")
            tif(surface.se_grid, surface.grid, f"{stem}_se.tif")
        if surface.aoa_mask is not None:
            tif(surface.aoa_mask.astype("float32"), surface.grid, f"{stem}_aoa.tif")
            tif(surface.dissimilarity, surface.grid, f"{stem}_di.tif")

    for name, layer in result.layers.items():
        tif(layer.mean_grid, layer.grid, f"carbon_stock_{name}_mean.tif")
        if layer.se_grid is not None:
            tif(layer.se_grid, layer.grid, f"carbon_stock_{name}_se.tif")
        if layer.conservative_grid is not None:
            tif(layer.conservative_grid, layer.grid, f"carbon_stock_{name}_conservative.tif")

    csv(summary_frame(result.summaries), "carbon_stocks_by_stratum.csv")
    csv(result.bulk_density.table(result.strata.strata, sorted(result.surfaces)), "bulk_density.csv")
    csv(result.diagnostics.to_frame(), "diagnostics.csv")

    config_path = out_dir / "run_config.json"
    with open(config_path, "w", encoding="utf-8") as f:
        json.dump(result.config.to_dict(), f, indent=2)
    written.append(config_path)

    log.info("Wrote %d output files to %s", len(written), out_dir)
    return written


def read_lookup(path: Path) -> dict[int, str]:
    """Stratum code lookup from CSV (code,stratum) or JSON {code: name}."""
    path = Path(path)
    if path.suffix.lower() == ".json":
        with open(path, encoding="utf-8") as f:
            return {int(k): str(v) for k, v in json.load(f).items()}
    df = pd.read_csv(path)
    return dict(zip(df["code"].astype(int), df["stratum"].astype(str)))


def parse_args(argv=None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="SOC stock mapping pipeline")
    p.add_argument("--cores", type=Path, default=cfg.CORES_CSV)
    p.add_argument("--samples", type=Path, default=cfg.SAMPLES_CSV)
    p.add_argument("--config", type=Path, help="JSON file overriding PipelineConfig defaults")
    p.add_argument("--method", choices=[m.value for m in InterpolationMethod])
    p.add_argument("--covariates", type=Path, help="directory of single-band GeoTIFFs or one multi-band GeoTIFF")
    p.add_argument("--strata", type=Path, help="stratum raster (.tif) or polygon file")
    p.add_argument("--strata-lookup", type=Path, help="code → stratum CSV/JSON for a stratum raster")
    p.add_argument("--output-dir", type=Path)
    p.add_argument("--plots", action="store_true", help="save variogram plots")
    p.add_argument("--progress", action="store_true")
    p.add_argument("--log-file", type=Path)
    p.add_argument("-v", "--verbose", action="store_true")
    return p.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)

    handlers = [logging.StreamHandler()]
    if args.log_file:
        args.log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(args.log_file, encoding="utf-8"))
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format=LOG_FORMAT, handlers=handlers)

    config = PipelineConfig.from_json(args.config) if args.config else PipelineConfig()
    if args.method:
        config.interpolation_method = args.method
    if args.output_dir:
        config.output_dir = args.output_dir
    config.validate()

    stack = None
    if args.covariates:
        stack = (CovariateStack.from_directory(args.covariates) if args.covariates.is_dir()
                 else CovariateStack.from_multiband(args.covariates))
    lookup = read_lookup(args.strata_lookup) if args.strata_lookup else None

    logger.info("=" * 60)
    logger.info("SOC stock pipeline: %s", config.interpolation_method)
    logger.info("=" * 60)
    t0 = time.time()
    result = run_pipeline(
        pd.read_csv(args.cores), pd.read_csv(args.samples), config,
        stack=stack, strata_source=args.strata, strata_lookup=lookup,
        plots=args.plots, progress=args.progress,
    )

    n_issues = sum(1 for e in result.diagnostics.events if e.status not in {"ok", "note"})
    logger.info("Done in %.1fs: %d summary rows, %d diagnostics issues",
                time.time() - t0, len(result.summaries), n_issues)
    return 0


if __name__ == "__main__":
    sys.exit(main())
