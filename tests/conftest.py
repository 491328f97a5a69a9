#!/usr/bin/env python3
"""
Shared pytest fixtures for the test suite.

This module provides common fixtures used across test modules including:
- Temporary output folders
- A fast recording backend (and a variant that fails on request)
- Analyses and hypotheses for the common study shapes
"""
from __future__ import annotations

import sys
import threading
from pathlib import Path

# Add src directory to Python path for test imports
_project_root = Path(__file__).parent.parent
_src_path = _project_root / 'src'
if str(_src_path) not in sys.path:
    sys.path.insert(0, str(_src_path))

import pytest
import pandas as pd
import numpy as np

from cohort_method.base import (
    COHORT_COLUMNS,
    COVARIATE_COLUMNS,
    COVARIATE_REF_COLUMNS,
    OUTCOME_COLUMNS,
    BaseBackend,
    CohortMethodData,
    OutcomeModel,
)
from cohort_method.arguments import (
    ComputeCovariateBalanceArgs,
    CreatePsArgs,
    FitOutcomeModelArgs,
    MatchOnPsArgs,
    create_cm_analysis,
)
from cohort_method.hypotheses import create_outcome, create_target_comparator_outcomes


# ============================================================
# PATH FIXTURES
# ============================================================

@pytest.fixture
def project_root() -> Path:
    """Get the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def output_folder(tmp_path) -> Path:
    """Empty study output folder."""
    folder = tmp_path / 'cm_output'
    folder.mkdir()
    return folder


# ============================================================
# BACKEND FIXTURES
# ============================================================

class RecordingBackend(BaseBackend):
    """
    Small deterministic backend that records every call.

    ``fail_on`` holds (method name, outcome_id) pairs; a matching call raises
    RuntimeError. Use outcome_id None to match calls without an outcome.
    """

    def __init__(self, fail_on=()):
        super().__init__()
        self.fail_on = set(fail_on)
        self.calls = []
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return 'recording'

    @property
    def version(self) -> str:
        return '1.0'

    def validate_installation(self) -> tuple[bool, str]:
        return True, 'Recording backend ready'

    def _record(self, method, target_id=None, outcome_id=None):
        with self._lock:
            self.calls.append((method, target_id, outcome_id))
        if (method, outcome_id) in self.fail_on:
            raise RuntimeError(f"{method} failed for outcome {outcome_id}")

    def count(self, method: str) -> int:
        return sum(1 for call in self.calls if call[0] == method)

    def get_db_cohort_method_data(self, connection_details, target_id, comparator_id,
                                  outcome_ids, args):
        self._record('get_db_cohort_method_data', target_id)
        n = 20
        cohorts = pd.DataFrame({
            'row_id': np.arange(1, n + 1),
            'person_id': np.arange(1, n + 1),
            'treatment': np.tile([1, 0], n // 2),
            'cohort_start_date': pd.Timestamp('2020-01-01'),
            'days_from_obs_start': 400,
            'days_to_cohort_end': 100,
            'days_to_obs_end': 300,
        }, columns=COHORT_COLUMNS)
        outcomes = pd.DataFrame({
            'row_id': [1, 2, 3] * len(outcome_ids),
            'outcome_id': np.repeat(outcome_ids, 3),
            'days_to_event': [5, 10, 15] * len(outcome_ids),
        }, columns=OUTCOME_COLUMNS)
        covariates = pd.DataFrame({
            'row_id': np.arange(1, n + 1),
            'covariate_id': 1001,
            'covariate_value': 1.0,
        }, columns=COVARIATE_COLUMNS)
        covariate_ref = pd.DataFrame(
            [{'covariate_id': 1001, 'covariate_name': 'Covariate 1', 'concept_id': 1}],
            columns=COVARIATE_REF_COLUMNS,
        )
        return CohortMethodData(
            cohorts=cohorts,
            outcomes=outcomes,
            covariates=covariates,
            covariate_ref=covariate_ref,
            metadata={'target_id': target_id, 'comparator_id': comparator_id,
                      'outcome_ids': list(outcome_ids)},
        )

    def create_study_population(self, cohort_method_data, args, outcome_id=None, population=None):
        self._record('create_study_population', cohort_method_data.target_id, outcome_id)
        base = population if population is not None else cohort_method_data.cohorts
        population = base.copy()
        population['outcome_count'] = 0
        if outcome_id is not None:
            hits = cohort_method_data.outcomes.loc[
                cohort_method_data.outcomes['outcome_id'] == outcome_id, 'row_id']
            population.loc[population['row_id'].isin(hits), 'outcome_count'] = 1
        population['time_at_risk'] = 100
        population.attrs['outcome_id'] = outcome_id
        return population

    def create_ps(self, cohort_method_data, population, args,
                  excluded_covariate_concept_ids=(), included_covariate_concept_ids=()):
        self._record('create_ps', cohort_method_data.target_id)
        population = population.copy()
        population['propensity_score'] = np.linspace(0.1, 0.9, len(population))
        return population

    def trim_by_ps(self, population, args):
        self._record('trim_by_ps')
        return population

    def match_on_ps(self, population, args, cohort_method_data=None):
        self._record('match_on_ps')
        population = population.copy()
        population['stratum_id'] = (population['row_id'] - 1) // 2
        return population

    def stratify_by_ps(self, population, args, cohort_method_data=None):
        self._record('stratify_by_ps')
        population = population.copy()
        population['stratum_id'] = population['row_id'] % 2
        return population

    def compute_covariate_balance(self, population, cohort_method_data, args):
        self._record('compute_covariate_balance')
        return pd.DataFrame({'covariate_id': [1001], 'std_diff_after': [0.01]})

    def fit_outcome_model(self, population, cohort_method_data, args):
        outcome_id = population.attrs.get('outcome_id')
        self._record('fit_outcome_model', cohort_method_data.target_id, outcome_id)
        treated = population['treatment'] == 1
        return OutcomeModel(
            outcome_id=None,
            model_type=args['model_type'],
            log_rr=0.1,
            se_log_rr=0.2,
            converged=True,
            target_subjects=int(treated.sum()),
            comparator_subjects=int((~treated).sum()),
            target_days=float(population.loc[treated, 'time_at_risk'].sum()),
            comparator_days=float(population.loc[~treated, 'time_at_risk'].sum()),
            target_outcomes=int(population.loc[treated, 'outcome_count'].gt(0).sum()),
            comparator_outcomes=int(population.loc[~treated, 'outcome_count'].gt(0).sum()),
        )


@pytest.fixture
def backend() -> RecordingBackend:
    """Fresh recording backend."""
    return RecordingBackend()


@pytest.fixture
def make_backend():
    """Factory for recording backends that fail on given (method, outcome_id) pairs."""
    return RecordingBackend


# ============================================================
# STUDY FIXTURES
# ============================================================

@pytest.fixture
def crude_analysis():
    """Analysis without a propensity model."""
    return create_cm_analysis(
        analysis_id=1,
        description='Crude',
        fit_outcome_model_args=FitOutcomeModelArgs(model_type='cox'),
    )


@pytest.fixture
def matched_analyses():
    """Two matched analyses that differ only in the outcome model."""
    common = dict(
        create_ps_args=CreatePsArgs(),
        match_on_ps_args=MatchOnPsArgs(max_ratio=1),
    )
    return [
        create_cm_analysis(
            analysis_id=1,
            description='Matched, Cox',
            fit_outcome_model_args=FitOutcomeModelArgs(model_type='cox'),
            **common,
        ),
        create_cm_analysis(
            analysis_id=2,
            description='Matched, stratified Cox',
            fit_outcome_model_args=FitOutcomeModelArgs(model_type='cox', stratified=True),
            **common,
        ),
    ]


@pytest.fixture
def balance_analysis():
    """Matched analysis with shared and per-outcome balance."""
    return create_cm_analysis(
        analysis_id=3,
        description='Matched with balance',
        create_ps_args=CreatePsArgs(),
        match_on_ps_args=MatchOnPsArgs(max_ratio=1),
        compute_shared_covariate_balance_args=ComputeCovariateBalanceArgs(),
        compute_covariate_balance_args=ComputeCovariateBalanceArgs(),
        fit_outcome_model_args=FitOutcomeModelArgs(model_type='cox'),
    )


@pytest.fixture
def tco_three_outcomes():
    """One pair, one outcome of interest and two negative controls."""
    return create_target_comparator_outcomes(
        target_id=1,
        comparator_id=2,
        outcomes=[
            create_outcome(3),
            create_outcome(4, outcome_of_interest=False, true_effect_size=1),
            create_outcome(5, outcome_of_interest=False, true_effect_size=1),
        ],
    )
