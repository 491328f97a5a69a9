"""
Pipeline stages package.

Each stage module follows a consistent pattern:
- Docstring with Inputs/Output artifacts documented
- run(task, inputs, backend, connection_details) as the entry point,
  returning the artifact to commit

``STAGE_RUNNERS`` maps every stage kind to its runner; a kind without a
runner is an import-time error.
"""
from __future__ import annotations

from cohort_method.tasks import StageKind

from . import (
    s00_extract,
    s01_study_population,
    s02_propensity,
    s03_adjust,
    s04_shared_balance,
    s05_balance,
    s06_outcome_model,
)


STAGE_RUNNERS = {
    StageKind.EXTRACT: s00_extract.run,
    StageKind.STUDY_POPULATION: s01_study_population.run,
    StageKind.PROPENSITY: s02_propensity.run,
    StageKind.SHARED_BALANCE: s04_shared_balance.run,
    StageKind.ADJUST: s03_adjust.run,
    StageKind.BALANCE: s05_balance.run,
    StageKind.OUTCOME_MODEL: s06_outcome_model.run,
}

_missing = [kind.value for kind in StageKind if kind not in STAGE_RUNNERS]
if _missing:
    raise ImportError(f"No stage runner registered for: {', '.join(_missing)}")


def run_stage(task, inputs: dict, backend, connection_details: dict):
    """Dispatch a task to the runner of its stage kind."""
    return STAGE_RUNNERS[task.kind](task, inputs, backend, connection_details)
