"""
Stage 00: Extraction

Purpose: Extract cohorts, outcomes and covariates for one target-comparator
pair.

One extraction serves every outcome registered for the pair and every
analysis with the same extraction arguments.

Inputs
------
- none

Output
------
- CmData_<fingerprint>.pkl (CohortMethodData)
"""
from __future__ import annotations

from cohort_method.tasks import Task


def run(task: Task, inputs: dict, backend, connection_details: dict):
    """Extract the cohort method data for the task's pair."""
    payload = task.payload
    return backend.get_db_cohort_method_data(
        connection_details,
        payload['target_id'],
        payload['comparator_id'],
        list(payload['outcome_ids']),
        payload['get_db_cohort_method_data_args'],
    )
