"""
Error taxonomy and the run diagnostics table.

Per-unit failures (one core, one stratum × depth) are recovered where they
happen and written to a Diagnostics collector; structural failures
(CovariateMismatchError) propagate and abort the run.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass

import pandas as pd

logger = logging.getLogger(__name__)


class SocStockError(Exception):
    """Base class for pipeline errors."""


class DataInsufficiencyError(SocStockError):
    """A modelling unit has fewer samples than its threshold."""

    def __init__(self, n: int, threshold: int, unit: str = ""):
        self.n = n
        self.threshold = threshold
        self.unit = unit
        super().__init__(f"skipped: n={n} < {threshold}")


class ModelFitFailure(SocStockError):
    """A model failed to fit; callers fall back to a documented default."""


class CovariateMismatchError(SocStockError):
    """Covariates and samples are structurally incompatible. Fatal."""


class MissingUncertaintyWarning(UserWarning):
    """A stage had no variance input and produced mean-only output."""


@dataclass(frozen=True)
class DiagnosticEvent:
    stage: str
    status: str
    reason: str
    stratum: str | None = None
    depth: float | None = None
    core_id: str | None = None
    interval: str | None = None


DIAGNOSTIC_COLUMNS = ["stage", "status", "reason", "stratum", "depth", "core_id", "interval"]


class Diagnostics:
    """Collects every skip, fallback and degradation of a run."""

    def __init__(self, logger: logging.Logger | None = None):
        self.logger = logger or logging.getLogger(__name__)
        self.events: list[DiagnosticEvent] = []

    def record(self, stage: str, status: str, reason: str, **unit) -> DiagnosticEvent:
        event = DiagnosticEvent(stage=stage, status=status, reason=reason, **unit)
        self.events.append(event)

        where = ", ".join(f"{k}={v}" for k, v in unit.items() if v is not None)
        level = logging.INFO if status in {"ok", "note"} else logging.WARNING
        self.logger.log(level, "[%s] %s %s (%s)", stage, status, reason, where)
        return event

    def filter(self, stage: str | None = None, status: str | None = None) -> list[DiagnosticEvent]:
        return [
            e for e in self.events
            if (stage is None or e.stage == stage) and (status is None or e.status == status)
        ]

    def to_frame(self) -> pd.DataFrame:
        if not self.events:
            return pd.DataFrame(columns=DIAGNOSTIC_COLUMNS)
        return pd.DataFrame([asdict(e) for e in self.events], columns=DIAGNOSTIC_COLUMNS)

    def __len__(self) -> int:
        return len(self.events)
