"""
Statistical power: minimum detectable relative risk and follow-up.

Usage
-----
    from cohort_method.power import compute_mdrr, get_follow_up_distribution

    mdrr = compute_mdrr(population, alpha=0.05, power=0.8, model_type='cox')
    follow_up = get_follow_up_distribution(population)
"""
from __future__ import annotations

import math

import numpy as np
import pandas as pd
from scipy import optimize, stats

from config import POWER, SIGNIFICANCE_LEVEL


MDRR_MODEL_TYPES = ('cox', 'logistic')


def _check_probability(name: str, value: float) -> None:
    if not 0 <= value <= 1:
        raise ValueError(f"'{name}' must be between 0 and 1, got {value}")


def compute_mdrr(
    population: pd.DataFrame,
    alpha: float = SIGNIFICANCE_LEVEL,
    power: float = POWER,
    two_sided: bool = True,
    model_type: str = 'cox',
) -> pd.DataFrame:
    """
    Compute the minimum detectable relative risk for a study population.

    Parameters
    ----------
    population : pd.DataFrame
        Population with person_id, treatment, outcome_count and time_at_risk
    alpha : float
        Type I error
    power : float
        1 - type II error
    two_sided : bool
        Two-sided test
    model_type : str
        'cox' or 'logistic'

    Returns
    -------
    pd.DataFrame
        One row: target/comparator persons, exposures and days, total
        outcomes, mdrr and the expected standard error of the log estimate

    Raises
    ------
    ValueError
        If a probability is out of range or the model type is unknown
    """
    _check_probability('alpha', alpha)
    _check_probability('power', power)
    if model_type not in MDRR_MODEL_TYPES:
        raise ValueError(f"Unknown model type: '{model_type}'. Use one of {list(MDRR_MODEL_TYPES)}")

    treatment = population['treatment'].values
    target = treatment == 1
    p_target = float(treatment.mean()) if len(population) else float('nan')
    total_events = int((population['outcome_count'].values != 0).sum())
    total_subjects = len(population)

    mdrr = compute_mdrr_from_aggregate_stats(
        p_target=p_target,
        total_events=total_events,
        total_subjects=total_subjects,
        alpha=alpha,
        power=power,
        two_sided=two_sided,
        model_type=model_type,
    )
    denominator = total_events * p_target * (1 - p_target)
    se = 1 / math.sqrt(denominator) if denominator > 0 else float('inf')

    return pd.DataFrame([{
        'target_persons': int(population.loc[target, 'person_id'].nunique()),
        'comparator_persons': int(population.loc[~target, 'person_id'].nunique()),
        'target_exposures': int(target.sum()),
        'comparator_exposures': int((~target).sum()),
        'target_days': float(population.loc[target, 'time_at_risk'].sum()),
        'comparator_days': float(population.loc[~target, 'time_at_risk'].sum()),
        'total_outcomes': total_events,
        'mdrr': mdrr,
        'se': se,
    }])


def compute_mdrr_from_aggregate_stats(
    p_target: float,
    total_events: int,
    total_subjects: int,
    alpha: float = SIGNIFICANCE_LEVEL,
    power: float = POWER,
    two_sided: bool = True,
    model_type: str = 'cox',
) -> float:
    """
    Minimum detectable relative risk from aggregate counts.

    Uses the Schoenfeld formula for Cox models and a Wald z-test on the
    log odds ratio for logistic models.

    Parameters
    ----------
    p_target : float
        Proportion of subjects in the target cohort
    total_events : int
        Subjects with the outcome (both cohorts)
    total_subjects : int
        Subjects (both cohorts)
    alpha, power, two_sided, model_type
        As in ``compute_mdrr``

    Returns
    -------
    float
        MDRR; infinite when there are no events, when one cohort is empty
        (Cox), or when every subject has the outcome (logistic)
    """
    if total_events == 0:
        return float('inf')

    if two_sided:
        z_alpha = stats.norm.ppf(1 - alpha / 2)
    else:
        z_alpha = stats.norm.ppf(1 - alpha)

    if model_type == 'cox':
        z_beta = -stats.norm.ppf(1 - power)
        p_comparator = 1 - p_target
        if p_target * p_comparator <= 0:
            return float('inf')
        return float(math.exp(math.sqrt((z_beta + z_alpha) ** 2 / (total_events * p_target * p_comparator))))
    elif model_type == 'logistic':
        p_baseline = total_events / total_subjects
        if p_baseline >= 1:
            return float('inf')
        se = math.sqrt(1 / (total_events * (1 - p_baseline)))
        z = optimize.brentq(lambda x: stats.norm.cdf(x - z_alpha) - power, 0, 1e7)
        return float(math.exp(z * se))
    else:
        raise ValueError(f"Unknown model type: '{model_type}'")


def get_follow_up_distribution(
    population: pd.DataFrame,
    quantiles: tuple = (0, 0.25, 0.5, 0.75, 1),
) -> pd.DataFrame:
    """
    Distribution of time at risk per cohort.

    Columns are labelled by the share of subjects with at least that much
    follow-up, so the minimum is labelled "100%".

    Returns
    -------
    pd.DataFrame
        One row per cohort (treatment 1 then 0)
    """
    quantiles = list(quantiles)
    for q in quantiles:
        _check_probability('quantiles', q)
    labels = [f"{(1 - q) * 100:g}%" for q in quantiles]
    rows = []
    for treatment in (1, 0):
        values = population.loc[population['treatment'] == treatment, 'time_at_risk'].values
        if len(values):
            row = dict(zip(labels, np.quantile(values, quantiles)))
        else:
            row = dict.fromkeys(labels, np.nan)
        row['treatment'] = treatment
        rows.append(row)
    return pd.DataFrame(rows, columns=labels + ['treatment'])
