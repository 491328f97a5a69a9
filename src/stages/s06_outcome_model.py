"""
Stage 06: Outcome Model

Purpose: Fit the outcome model for one target-comparator-outcome-analysis.

When the outcome's adjusted population was persisted it is loaded as an
input; otherwise (negative controls) the adjustment is redone here from the
scored population and discarded after fitting.

Inputs
------
- cohort_method_data
- adjusted_population, or propensity_score (when configured)

Output
------
- Om_<fingerprint>.pkl (OutcomeModel)
"""
from __future__ import annotations

from cohort_method.base import OutcomeModel
from cohort_method.tasks import StageKind, Task

from stages.s03_adjust import adjust_population


def run(task: Task, inputs: dict, backend, connection_details: dict):
    payload = task.payload
    cohort_method_data = inputs[StageKind.EXTRACT.value]

    if StageKind.ADJUST.value in inputs:
        population = inputs[StageKind.ADJUST.value]
    else:
        population = adjust_population(
            backend,
            cohort_method_data,
            payload['adjust'],
            inputs.get(StageKind.PROPENSITY.value),
        )

    model = backend.fit_outcome_model(population, cohort_method_data, payload['fit_outcome_model_args'])
    if isinstance(model, OutcomeModel) and model.outcome_id is None:
        model.outcome_id = task.outcome_id
    return model
