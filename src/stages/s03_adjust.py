"""
Stage 03: Adjusted Population

Purpose: Build the population an outcome model is fitted on.

This stage handles:
- Restricting the (scored) population to one outcome: prior outcomes,
  risk window and minimum time at risk
- Trimming by propensity score
- Matching or stratification on propensity score

``adjust_population`` is also used by the shared balance stage (without an
outcome) and by the outcome model stage when the adjusted population of a
negative control is not persisted.

Inputs
------
- cohort_method_data
- propensity_score (when a propensity model is configured)

Output
------
- AdjPop_<fingerprint>.pkl (population DataFrame)
"""
from __future__ import annotations

from typing import Optional

import pandas as pd

from cohort_method.tasks import StageKind, Task


def adjust_population(
    backend,
    cohort_method_data,
    adjust: dict,
    ps_population: Optional[pd.DataFrame] = None,
) -> pd.DataFrame:
    """
    Apply outcome restriction, trimming and matching/stratification.

    Parameters
    ----------
    backend : CohortMethodBackend
        Statistical collaborators
    cohort_method_data : CohortMethodData
        Extracted data for the pair
    adjust : dict
        Adjustment arguments: outcome_id, create_study_population_args,
        restrict_population, trim_by_ps_args, match_on_ps_args,
        stratify_by_ps_args (absent bundles are None)
    ps_population : pd.DataFrame, optional
        Scored population; None when no propensity model is configured

    Returns
    -------
    pd.DataFrame
        Adjusted population
    """
    outcome_id = adjust.get('outcome_id')
    pop_args = adjust.get('create_study_population_args')

    if ps_population is None:
        population = backend.create_study_population(
            cohort_method_data, pop_args, outcome_id=outcome_id)
    elif adjust.get('restrict_population') and outcome_id is not None:
        population = backend.create_study_population(
            cohort_method_data, pop_args, outcome_id=outcome_id, population=ps_population)
    else:
        population = ps_population

    if adjust.get('trim_by_ps_args'):
        population = backend.trim_by_ps(population, adjust['trim_by_ps_args'])
    if adjust.get('match_on_ps_args'):
        population = backend.match_on_ps(population, adjust['match_on_ps_args'], cohort_method_data)
    elif adjust.get('stratify_by_ps_args'):
        population = backend.stratify_by_ps(population, adjust['stratify_by_ps_args'], cohort_method_data)

    return population


def run(task: Task, inputs: dict, backend, connection_details: dict):
    return adjust_population(
        backend,
        inputs[StageKind.EXTRACT.value],
        task.payload,
        inputs.get(StageKind.PROPENSITY.value),
    )
