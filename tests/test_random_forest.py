"""Tests for random_forest.py: covariate extraction, per-depth forests, AOA."""
from dataclasses import replace

import numpy as np
import pandas as pd
import pytest
from rasterio.transform import from_origin

from soc_stock import random_forest as rf
from soc_stock.errors import CovariateMismatchError, DataInsufficiencyError, Diagnostics
from soc_stock.raster_io import CovariateStack
from soc_stock.records import GridSpec


@pytest.fixture
def profile_frame(dataset, small_config):
    """Harmonized-profile-shaped table without running the spline."""
    cores, samples = dataset
    rows = []
    for core in cores.itertuples(index=False):
        surface = samples.loc[samples["core_id"] == core.core_id, "concentration"].iloc[0]
        for depth in small_config.standard_depths:
            rows.append({
                "core_id": core.core_id,
                "standard_depth": float(depth),
                "concentration_mean": surface * np.exp(-depth / 60.0),
                "concentration_se": 1.0,
                "longitude": core.longitude,
                "latitude": core.latitude,
                "stratum": core.stratum,
            })
    return pd.DataFrame(rows)


def test_rf_params(small_config):
    params = rf.rf_params(3, small_config, seed=1)
    assert params["max_features"] == 1
    assert params["n_estimators"] == 50
    assert params["min_samples_leaf"] == 5
    assert params["oob_score"] is True
    assert rf.rf_params(10, small_config, seed=1)["max_features"] == 3


# ─── Covariate extraction ────────────────────────────────────────

class TestExtractCovariates:
    def test_all_cores_inside(self, profile_frame, covariate_stack):
        table = rf.extract_covariates(profile_frame, covariate_stack, "EPSG:4326")
        assert len(table) == profile_frame["core_id"].nunique()
        assert {"x", "y", "east", "north", "wave"} <= set(table.columns)
        assert table[["east", "north", "wave"]].notna().all().all()

    def test_core_outside_stack_dropped(self, profile_frame, covariate_stack):
        extra = profile_frame.iloc[[0]].assign(core_id="FAR", longitude=-70.0, latitude=50.0)
        diagnostics = Diagnostics()
        table = rf.extract_covariates(pd.concat([profile_frame, extra]), covariate_stack, "EPSG:4326", diagnostics)
        assert "FAR" not in set(table["core_id"])
        dropped = diagnostics.filter(stage="random_forest", status="dropped")
        assert "FAR" in dropped[0].reason

    def test_no_overlap_is_fatal(self, profile_frame, covariate_stack):
        far = profile_frame.assign(longitude=-70.0, latitude=50.0)
        with pytest.raises(CovariateMismatchError, match="no core has a complete covariate vector"):
            rf.extract_covariates(far, covariate_stack, "EPSG:4326")

    def test_geographic_stack_is_fatal(self, profile_frame):
        grid = GridSpec(from_origin(-63.7, 44.7, 0.01, 0.01), 10, 10, "EPSG:4326")
        stack = CovariateStack(["a"], np.ones((1, 10, 10)), grid)
        with pytest.raises(CovariateMismatchError, match="geographic"):
            rf.extract_covariates(profile_frame, stack, "EPSG:4326")


# ─── Training ────────────────────────────────────────────────────

def test_train_depth_needs_minimum_samples(profile_frame, covariate_stack, small_config):
    table = rf.extract_covariates(profile_frame, covariate_stack, "EPSG:4326")
    unit = (profile_frame[profile_frame["standard_depth"] == 0.0]
            .drop(columns=["longitude", "latitude"])
            .merge(table, on="core_id")
            .head(12))
    with pytest.raises(DataInsufficiencyError, match="n=12 < 20"):
        rf.train_depth(unit, ["east", "north", "wave"], 0.0, small_config, Diagnostics())


class TestTrainAll:
    @pytest.fixture
    def result(self, profile_frame, covariate_stack, small_config, tmp_path):
        diagnostics = Diagnostics()
        res = rf.train_all(profile_frame, covariate_stack, small_config, diagnostics,
                           model_dir=tmp_path / "models")
        return res, diagnostics

    def test_one_forest_per_depth(self, result, small_config):
        res, _ = result
        assert sorted(res.forests) == [float(d) for d in small_config.standard_depths]
        assert sorted(res.surfaces) == sorted(res.forests)

    def test_surfaces_have_no_variance(self, result, covariate_stack):
        res, _ = result
        for surface in res.surfaces.values():
            assert surface.variance_grid is None
            assert surface.method == "random_forest"
            assert surface.mean_grid.shape == covariate_stack.grid.shape
            assert np.isfinite(surface.mean_grid).all()

    def test_aoa_mask(self, result, covariate_stack):
        res, _ = result
        surface = res.surfaces[0.0]
        assert surface.aoa_mask.dtype == bool
        assert surface.aoa_mask.shape == covariate_stack.grid.shape
        assert surface.aoa_mask.any()
        assert np.all(surface.dissimilarity >= 0)

    def test_metrics_and_importance(self, result):
        res, _ = result
        cv = res.cv_table()
        assert {"cv_rmse", "cv_r2", "oob_r2", "train_rmse", "cv_reliable", "aoa_threshold"} <= set(cv.columns)
        assert (cv["n"] == 30).all()
        assert cv["cv_reliable"].all()
        imp = res.importance_table()
        assert set(imp["feature"]) == {"east", "north", "wave"}
        assert len(imp) == 3 * len(res.forests)

    def test_models_saved(self, result, covariate_stack, tmp_path):
        res, _ = result
        saved = rf.load_forest(tmp_path / "models" / "rf_15cm.pkl")
        assert saved["features"] == ["east", "north", "wave"]
        assert saved["depth"] == 15.0
        _, X = covariate_stack.complete_cells()
        assert np.allclose(saved["model"].predict(X[:5]), res.forests[15.0].model.predict(X[:5]))


def test_depth_below_minimum_skipped(profile_frame, covariate_stack, small_config):
    config = replace(small_config, ensemble_min_samples=40)
    diagnostics = Diagnostics()
    res = rf.train_all(profile_frame, covariate_stack, config, diagnostics)
    assert res.forests == {}
    skipped = diagnostics.filter(stage="random_forest", status="skipped")
    assert len(skipped) == len(small_config.standard_depths)
    assert skipped[0].reason == "skipped: n=30 < 40"


def test_predict_rejects_mismatched_stack(profile_frame, covariate_stack, small_config):
    res = rf.train_all(profile_frame[profile_frame["standard_depth"] == 0.0], covariate_stack, small_config)
    renamed = CovariateStack(["a", "b", "c"], covariate_stack.data, covariate_stack.grid)
    with pytest.raises(CovariateMismatchError):
        rf.predict_depth(res.forests[0.0], renamed)
