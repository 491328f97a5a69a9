"""
Stage 04: Shared Covariate Balance

Purpose: Compute covariate balance once per target-comparator-analysis,
on the scored population after trimming and matching/stratification but
before any outcome-specific restriction.

Inputs
------
- cohort_method_data
- propensity_score

Output
------
- SharedBal_<fingerprint>.pkl (balance DataFrame)
"""
from __future__ import annotations

from cohort_method.tasks import StageKind, Task

from stages.s03_adjust import adjust_population


def run(task: Task, inputs: dict, backend, connection_details: dict):
    payload = task.payload
    cohort_method_data = inputs[StageKind.EXTRACT.value]
    adjust = {
        'outcome_id': None,
        'restrict_population': False,
        'trim_by_ps_args': payload.get('trim_by_ps_args'),
        'match_on_ps_args': payload.get('match_on_ps_args'),
        'stratify_by_ps_args': payload.get('stratify_by_ps_args'),
    }
    population = adjust_population(
        backend, cohort_method_data, adjust, inputs[StageKind.PROPENSITY.value])
    return backend.compute_covariate_balance(
        population, cohort_method_data, payload['compute_covariate_balance_args'])
