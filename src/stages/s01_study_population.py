"""
Stage 01: Study Population

Purpose: Define the population the propensity model is fitted on.

The population is shared by all outcomes of a pair, unless the propensity
model is refitted for every outcome, in which case the outcome's prior
outcome restriction and risk window are applied here.

Inputs
------
- cohort_method_data

Output
------
- StudyPop_<fingerprint>.pkl (population DataFrame)
"""
from __future__ import annotations

from cohort_method.tasks import StageKind, Task


def run(task: Task, inputs: dict, backend, connection_details: dict):
    return backend.create_study_population(
        inputs[StageKind.EXTRACT.value],
        task.payload['create_study_population_args'],
        outcome_id=task.payload.get('outcome_id'),
    )
