"""Tests for carbon_stock.py"""
import numpy as np
import pytest
from rasterio.transform import from_origin

from soc_stock import carbon_stock as cs
from soc_stock.config import PipelineConfig
from soc_stock.errors import Diagnostics, MissingUncertaintyWarning
from soc_stock.raster_io import StratumGrid
from soc_stock.records import Core, DepthSample, GridSpec, PredictionSurface

GRID = GridSpec(from_origin(0.0, 20.0, 10.0, 10.0), 2, 2, "EPSG:3347")
Z95 = 1.959963984540054


def surface(depth, mean, variance=None):
    return PredictionSurface(
        depth=depth,
        mean_grid=np.full(GRID.shape, float(mean)),
        grid=GRID,
        method="kriging",
        variance_grid=None if variance is None else np.full(GRID.shape, float(variance)),
    )


def ones():
    return np.ones(GRID.shape)


@pytest.fixture
def config():
    return PipelineConfig(
        standard_depths=[0, 15, 30, 60],
        reporting_depth_intervals={"surface": (0, 30), "deep": (30, 100)},
    )


# ─── Arithmetic ──────────────────────────────────────────────────

def test_layer_stock_worked_example():
    stocks = cs.layer_stock([40.0, 50.0, 60.0], 1.0, 15)
    assert stocks == pytest.approx([60.0, 75.0, 90.0])
    assert stocks.mean() == pytest.approx(75.0)


def test_negative_concentration_counts_as_zero():
    assert cs.layer_stock(-5.0, 1.2, 10) == 0.0


def test_conservative_bound():
    assert cs.z_score(0.95) == pytest.approx(Z95)
    assert cs.conservative_bound(100.0, 10.0, 0.95) == pytest.approx(80.4, abs=0.01)
    assert cs.conservative_bound(5.0, 10.0, 0.95) == 0.0


def test_depth_increments():
    depths = [0, 15, 30, 60]
    assert cs.depth_increments(depths, 0, 30) == [(0, 15), (15, 15)]
    assert cs.depth_increments(depths, 30, 100) == [(30, 30), (60, 40)]
    assert cs.depth_increments(depths, 100, 200) == []


def test_sample_stocks_uses_default_bd():
    samples = [DepthSample("A", 0, 10, 50.0, 0.8), DepthSample("A", 10, 20, 50.0)]
    df = cs.sample_stocks(samples, default_bulk_density=1.0)
    assert list(df["bulk_density"]) == [0.8, 1.0]
    assert list(df["stock"]) == pytest.approx([40.0, 50.0])


# ─── Bulk density ────────────────────────────────────────────────

class TestBulkDensity:
    @pytest.fixture
    def table(self):
        config = PipelineConfig(standard_depths=[0, 15, 30])
        cores = [Core("A", -63.6, 44.65, "Upper Marsh"), Core("B", -63.59, 44.65, "Lower Marsh")]
        samples = [
            DepthSample("A", 0, 10, 40.0, 0.9),
            DepthSample("A", 10, 20, 30.0, 1.1),
            DepthSample("A", 20, 25, 20.0),
            DepthSample("B", 0, 10, 40.0),
        ]
        return cs.BulkDensityTable(cores, samples, config)

    def test_lookup_order(self, table):
        assert table.lookup("Upper Marsh", 0) == (pytest.approx(0.9), "measured")
        assert table.lookup("Upper Marsh", 15) == (pytest.approx(1.1), "measured")
        assert table.lookup("Upper Marsh", 30) == (pytest.approx(1.0), "stratum_mean")
        assert table.lookup("Lower Marsh", 0) == (1.2, "stratum_default")
        assert table.lookup("Backwater", 0) == (1.0, "global_default")

    def test_grid(self, table):
        strata = StratumGrid(np.array([[0, 1], [-1, 0]]), {0: "Upper Marsh", 1: "Lower Marsh"}, GRID)
        assert np.allclose(table.grid(strata, 0), [[0.9, 1.2], [1.0, 0.9]])

    def test_table(self, table):
        df = table.table(["Upper Marsh", "Lower Marsh"], [0, 30])
        assert len(df) == 4
        assert list(df["source"]) == ["measured", "stratum_mean", "stratum_default", "stratum_default"]


# ─── Integration ─────────────────────────────────────────────────

def test_integrate_interval_sums_layers():
    surfaces = {0.0: surface(0.0, 40, 4), 15.0: surface(15.0, 20, 1)}
    bd = {0.0: ones(), 15.0: ones()}
    layer = cs.integrate_interval("surface", 0, 30, surfaces, bd, 0.95)

    assert layer.depths_used == (0.0, 15.0)
    assert layer.mean_grid == pytest.approx(np.full(GRID.shape, 90.0))
    # SE per layer: 3.0 and 1.5 Mg/ha
    assert layer.se_grid == pytest.approx(np.full(GRID.shape, np.sqrt(11.25)))
    assert layer.conservative_grid == pytest.approx(np.full(GRID.shape, 90.0 - Z95 * np.sqrt(11.25)))
    assert not layer.uncertainty_unavailable


def test_integrate_interval_without_depths():
    diagnostics = Diagnostics()
    assert cs.integrate_interval("deep", 30, 100, {0.0: surface(0.0, 40, 4)}, {0.0: ones()}, 0.95, diagnostics) is None
    assert diagnostics.filter(status="skipped")[0].interval == "deep"


def test_missing_variance_warns():
    surfaces = {0.0: surface(0.0, 40), 15.0: surface(15.0, 20)}
    diagnostics = Diagnostics()
    with pytest.warns(MissingUncertaintyWarning):
        layer = cs.integrate_interval("surface", 0, 30, surfaces, {0.0: ones(), 15.0: ones()}, 0.95, diagnostics)
    assert layer.se_grid is None
    assert layer.conservative_grid is None
    assert layer.uncertainty_unavailable
    assert layer.mean_grid == pytest.approx(np.full(GRID.shape, 90.0))
    assert diagnostics.filter(stage="carbon_stock", status="degraded")


class TestIntegrate:
    @pytest.fixture
    def layers(self, config):
        surfaces = {
            0.0: surface(0.0, 40, 4),
            15.0: surface(15.0, 20, 1),
            30.0: surface(30.0, 10, 1),
            60.0: surface(60.0, 5, 1),
        }
        bd = {d: ones() for d in surfaces}
        return cs.integrate(surfaces, bd, config, Diagnostics())

    def test_intervals_and_total(self, layers):
        assert list(layers) == ["surface", "deep", "total"]
        assert layers["deep"].mean_grid == pytest.approx(np.full(GRID.shape, 30.0 + 20.0))
        assert layers["total"].mean_grid == pytest.approx(np.full(GRID.shape, 140.0))
        assert (layers["total"].depth_top, layers["total"].depth_bottom) == (0, 100)

    def test_total_conservative_is_recomputed(self, layers):
        total = layers["total"]
        se = np.sqrt(layers["surface"].se_grid ** 2 + layers["deep"].se_grid ** 2)
        assert total.se_grid == pytest.approx(se)
        assert total.conservative_grid == pytest.approx(140.0 - Z95 * se)
        summed = layers["surface"].conservative_grid + layers["deep"].conservative_grid
        assert np.all(total.conservative_grid > summed)

    def test_conservative_never_exceeds_mean(self, layers):
        for layer in layers.values():
            assert np.all(layer.conservative_grid <= layer.mean_grid)
            assert np.all(layer.conservative_grid >= 0)

    def test_total_without_uncertainty(self, config):
        surfaces = {d: surface(d, 10) for d in (0.0, 15.0, 30.0, 60.0)}
        diagnostics = Diagnostics()
        with pytest.warns(MissingUncertaintyWarning):
            layers = cs.integrate(surfaces, {d: ones() for d in surfaces}, config, diagnostics)
        assert layers["total"].uncertainty_unavailable
        degraded = {e.interval for e in diagnostics.filter(status="degraded")}
        assert degraded == {"surface", "deep", "total"}


def test_high_uncertainty_share_noted(config):
    surfaces = {d: surface(d, 10, 100) for d in (0.0, 15.0, 30.0, 60.0)}
    diagnostics = Diagnostics()
    cs.integrate(surfaces, {d: ones() for d in surfaces}, config, diagnostics)
    notes = [e for e in diagnostics.filter(status="note") if e.interval == "surface"]
    assert "100.0% of cells have SE > 30% of mean" in notes[0].reason
