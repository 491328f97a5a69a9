"""
Stage 02: Propensity Score

Purpose: Fit the propensity model and score the study population.

Inputs
------
- cohort_method_data
- study_population

Output
------
- Ps_<fingerprint>.pkl (population with propensity_score, preference_score
  and iptw columns)
"""
from __future__ import annotations

from cohort_method.tasks import StageKind, Task


def run(task: Task, inputs: dict, backend, connection_details: dict):
    payload = task.payload
    return backend.create_ps(
        inputs[StageKind.EXTRACT.value],
        inputs[StageKind.STUDY_POPULATION.value],
        payload['create_ps_args'],
        tuple(payload.get('excluded_covariate_concept_ids') or ()),
        tuple(payload.get('included_covariate_concept_ids') or ()),
    )
