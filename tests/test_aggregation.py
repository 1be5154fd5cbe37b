"""Tests for aggregation.py: per-stratum and ALL summaries."""
import logging

import numpy as np
import pytest
from rasterio.transform import from_origin

from soc_stock.aggregation import ALL, enforce_bounds, summarize, summary_frame
from soc_stock.carbon_stock import conservative_bound
from soc_stock.config import PipelineConfig
from soc_stock.errors import CovariateMismatchError, Diagnostics
from soc_stock.raster_io import StratumGrid
from soc_stock.records import Core, GridSpec, StockLayer, StratumSummary

# 4 x 4 cells of 10 m → 0.01 ha each
GRID = GridSpec(from_origin(0.0, 40.0, 10.0, 10.0), 4, 4, "EPSG:3347")
Z95 = 1.959963984540054


def halves(left, right):
    out = np.empty(GRID.shape)
    out[:, :2] = left
    out[:, 2:] = right
    return out


def make_layer(mean, se=None, name="surface"):
    cons = None if se is None else conservative_bound(mean, se, 0.95)
    return StockLayer(name, 0, 30, mean, GRID, se, cons, se is None, (0.0, 15.0))


@pytest.fixture
def strata():
    codes = np.zeros(GRID.shape, dtype=int)
    codes[:, 2:] = 1
    return StratumGrid(codes, {0: "Upper Marsh", 1: "Lower Marsh"}, GRID)


@pytest.fixture
def cores():
    return [Core(f"U{i}", -63.6, 44.65, "Upper Marsh") for i in range(6)] + \
           [Core(f"L{i}", -63.59, 44.65, "Lower Marsh") for i in range(5)]


def by_stratum(rows):
    return {r.stratum: r for r in rows}


class TestSummarize:
    def test_stratum_rows(self, strata, cores):
        layer = make_layer(halves(100.0, 50.0), halves(10.0, 5.0))
        rows = by_stratum(summarize({"surface": layer}, strata, cores, PipelineConfig()))

        upper = rows["Upper Marsh"]
        assert upper.n_pixels == 8
        assert upper.area_ha == pytest.approx(0.08)
        assert upper.mean_stock == pytest.approx(100.0)
        assert upper.se_stock == pytest.approx(10.0)
        assert upper.conservative_stock == pytest.approx(100.0 - Z95 * 10.0)
        assert upper.total_stock == pytest.approx(8.0)
        assert upper.n_samples == 6
        assert upper.sd_stock == pytest.approx(0.0)
        assert rows["Lower Marsh"].n_samples == 5

    def test_all_row(self, strata, cores):
        layer = make_layer(halves(100.0, 50.0), halves(10.0, 5.0))
        rows = summarize({"surface": layer}, strata, cores, PipelineConfig())
        overall = by_stratum(rows)[ALL]

        assert rows[-1] is overall
        assert overall.area_ha == pytest.approx(0.16)
        assert overall.total_stock == pytest.approx(12.0)
        assert overall.mean_stock == pytest.approx(75.0)
        assert overall.se_stock == pytest.approx(7.5)
        assert overall.conservative_stock == pytest.approx(75.0 - Z95 * 7.5)
        assert overall.n_samples == 11
        assert overall.n_pixels == 16
        assert overall.median_stock == pytest.approx(75.0)

    def test_conservative_bounds_hold(self, strata, cores):
        rng = np.random.default_rng(42)
        mean = rng.uniform(5, 120, GRID.shape)
        se = rng.uniform(0, 40, GRID.shape)
        rows = summarize({"surface": make_layer(mean, se)}, strata, cores, PipelineConfig())
        for r in rows:
            assert 0 <= r.conservative_stock <= r.mean_stock
            assert r.conservative_total <= r.total_stock

    def test_nan_cells_excluded(self, strata, cores):
        mean = halves(100.0, 50.0)
        mean[0, 0] = np.nan
        rows = by_stratum(summarize({"surface": make_layer(mean, halves(10.0, 5.0))}, strata, cores, PipelineConfig()))
        assert rows["Upper Marsh"].n_pixels == 7
        assert rows["Upper Marsh"].area_ha == pytest.approx(0.07)

    def test_empty_stratum_skipped(self, strata, cores):
        mean = halves(100.0, np.nan)
        diagnostics = Diagnostics()
        rows = summarize({"surface": make_layer(mean, halves(10.0, np.nan))}, strata, cores,
                         PipelineConfig(), diagnostics)
        assert [r.stratum for r in rows] == ["Upper Marsh", ALL]
        skipped = diagnostics.filter(stage="aggregation", status="skipped")
        assert skipped[0].stratum == "Lower Marsh"

    def test_mean_only_layer(self, strata, cores):
        rows = summarize({"surface": make_layer(halves(100.0, 50.0))}, strata, cores, PipelineConfig())
        for r in rows:
            assert r.se_stock is None
            assert r.conservative_stock is None
            assert r.conservative_total is None
            assert r.uncertainty_unavailable

    def test_misaligned_strata(self, cores):
        other = GridSpec(from_origin(5.0, 40.0, 10.0, 10.0), 4, 4, "EPSG:3347")
        strata = StratumGrid(np.zeros(GRID.shape, dtype=int), {0: "Upper Marsh"}, other)
        with pytest.raises(CovariateMismatchError):
            summarize({"surface": make_layer(halves(1.0, 1.0))}, strata, cores, PipelineConfig())


def test_enforce_bounds_clips(caplog):
    row = StratumSummary("X", "surface", 1.0, 10.0, 1.0, 12.0, 10.0, 12.0, 3)
    with caplog.at_level(logging.WARNING):
        fixed = enforce_bounds(row, logging.getLogger("test"))
    assert fixed.conservative_stock == 10.0
    assert fixed.conservative_total == 10.0
    assert "clipped" in caplog.text


def test_summary_frame_columns(strata, cores):
    rows = summarize({"surface": make_layer(halves(100.0, 50.0), halves(10.0, 5.0))}, strata, cores, PipelineConfig())
    df = summary_frame(rows)
    assert {"stratum", "reporting_interval", "area_ha", "mean_stock", "se_stock",
            "conservative_stock", "total_stock", "conservative_total", "n_samples"} <= set(df.columns)
    assert len(df) == 3
