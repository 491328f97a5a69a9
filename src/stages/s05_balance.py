"""
Stage 05: Covariate Balance

Purpose: Compute covariate balance on one outcome's adjusted population.

Inputs
------
- cohort_method_data
- adjusted_population

Output
------
- Bal_<fingerprint>.pkl (balance DataFrame)
"""
from __future__ import annotations

from cohort_method.tasks import StageKind, Task


def run(task: Task, inputs: dict, backend, connection_details: dict):
    return backend.compute_covariate_balance(
        inputs[StageKind.ADJUST.value],
        inputs[StageKind.EXTRACT.value],
        task.payload['compute_covariate_balance_args'],
    )
