"""
Interpolation method variant.

The method is chosen once from the configuration; both interpolators expose
train(frame) → self, predict() → {depth: PredictionSurface} and
diagnostics() → DataFrame.
"""
from __future__ import annotations

import enum
import logging
from pathlib import Path

import pandas as pd

from . import kriging, random_forest
from .config import PipelineConfig
from .errors import Diagnostics
from .raster_io import CovariateStack, StratumGrid
from .records import GridSpec, PredictionSurface


class InterpolationMethod(enum.Enum):
    KRIGING = "kriging"
    RANDOM_FOREST = "random_forest"

    @property
    def provides_variance(self) -> bool:
        return self is InterpolationMethod.KRIGING


class Interpolator:
    method: InterpolationMethod

    def __init__(self, config: PipelineConfig, diagnostics: Diagnostics | None = None,
                 logger: logging.Logger | None = None):
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self.diagnostics_log = diagnostics if diagnostics is not None else Diagnostics(self.logger)
        self._result = None

    def train(self, frame: pd.DataFrame) -> "Interpolator":
        raise NotImplementedError

    def _require_trained(self):
        if self._result is None:
            raise RuntimeError(f"{type(self).__name__} has not been trained")
        return self._result

    def predict(self) -> dict[float, PredictionSurface]:
        return dict(self._require_trained().surfaces)

    def diagnostics(self) -> pd.DataFrame:
        raise NotImplementedError


class KrigingInterpolator(Interpolator):
    method = InterpolationMethod.KRIGING

    def __init__(self, config: PipelineConfig, template: GridSpec, strata: StratumGrid,
                 diagnostics: Diagnostics | None = None, logger: logging.Logger | None = None,
                 plot_dir: Path | None = None):
        super().__init__(config, diagnostics, logger)
        self.template = template
        self.strata = strata
        self.plot_dir = plot_dir

    def train(self, frame: pd.DataFrame) -> "KrigingInterpolator":
        """``frame`` needs projected x, y in the template CRS."""
        self._result = kriging.krige_all(
            frame, self.config, self.template, self.strata,
            self.diagnostics_log, self.logger, self.plot_dir,
        )
        return self

    @property
    def result(self) -> kriging.KrigingResult:
        return self._require_trained()

    def diagnostics(self) -> pd.DataFrame:
        """One row per fitted unit: variogram parameters + CV metrics."""
        return self._require_trained().cv_table()


class ForestInterpolator(Interpolator):
    method = InterpolationMethod.RANDOM_FOREST

    def __init__(self, config: PipelineConfig, stack: CovariateStack,
                 diagnostics: Diagnostics | None = None, logger: logging.Logger | None = None,
                 model_dir: Path | None = None):
        super().__init__(config, diagnostics, logger)
        self.stack = stack
        self.model_dir = model_dir

    def train(self, frame: pd.DataFrame) -> "ForestInterpolator":
        self._result = random_forest.train_all(
            frame, self.stack, self.config, self.diagnostics_log, self.logger, self.model_dir,
        )
        return self

    @property
    def result(self) -> random_forest.ForestResult:
        return self._require_trained()

    def diagnostics(self) -> pd.DataFrame:
        """One row per modelled depth: CV, in-bag and OOB metrics."""
        return self._require_trained().cv_table()


def build_interpolator(method: InterpolationMethod | str, config: PipelineConfig, **context) -> Interpolator:
    """Select the interpolator for a run.

    kriging needs ``template`` and ``strata``; random_forest needs ``stack``.
    Optional: ``diagnostics``, ``logger``, ``plot_dir`` / ``model_dir``.
    """
    method = InterpolationMethod(method)
    if method is InterpolationMethod.KRIGING:
        return KrigingInterpolator(
            config, context["template"], context["strata"],
            context.get("diagnostics"), context.get("logger"), context.get("plot_dir"),
        )
    return ForestInterpolator(
        config, context["stack"],
        context.get("diagnostics"), context.get("logger"), context.get("model_dir"),
    )
