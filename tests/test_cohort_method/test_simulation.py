"""Tests for the simulation backend."""
from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from cohort_method.arguments import (
    ComputeCovariateBalanceArgs,
    CreatePsArgs,
    CreateStudyPopulationArgs,
    FitOutcomeModelArgs,
    GetDbCohortMethodDataArgs,
    MatchOnPsArgs,
    StratifyByPsArgs,
    TrimByPsArgs,
    create_cm_analysis,
)
from cohort_method.engines.simulation import SimulationBackend
from cohort_method.hypotheses import create_outcome, create_target_comparator_outcomes
from cohort_method.runner import get_results_summary, run_cm_analyses
from cohort_method.scheduler import MultiThreadingSettings


CONNECTION = {'n_persons': 1500, 'seed': 11, 'true_effects': {3: 3.0}}


@pytest.fixture(scope='module')
def sim():
    return SimulationBackend()


@pytest.fixture(scope='module')
def cm_data(sim):
    return sim.get_db_cohort_method_data(
        CONNECTION, 1, 2, [3, 4], GetDbCohortMethodDataArgs().to_dict())


@pytest.fixture(scope='module')
def scored(sim, cm_data):
    population = sim.create_study_population(cm_data, CreateStudyPopulationArgs().to_dict())
    return sim.create_ps(cm_data, population, CreatePsArgs().to_dict())


class TestExtraction:
    """Tests for simulated extraction."""

    def test_deterministic(self, sim, cm_data):
        again = sim.get_db_cohort_method_data(
            CONNECTION, 1, 2, [3, 4], GetDbCohortMethodDataArgs().to_dict())
        pd.testing.assert_frame_equal(again.cohorts, cm_data.cohorts)
        pd.testing.assert_frame_equal(again.outcomes, cm_data.outcomes)

    def test_more_outcomes_same_cohorts(self, sim, cm_data):
        wider = sim.get_db_cohort_method_data(
            CONNECTION, 1, 2, [3, 4, 5], GetDbCohortMethodDataArgs().to_dict())
        pd.testing.assert_frame_equal(wider.cohorts, cm_data.cohorts)
        assert set(wider.outcomes['outcome_id']) == {3, 4, 5}

    def test_metadata(self, cm_data):
        assert cm_data.target_id == 1
        assert cm_data.outcome_ids == [3, 4]
        assert cm_data.metadata['attrition'][0]['description'] == 'Original cohorts'

    def test_washout_restricts(self, sim, cm_data):
        restricted = sim.get_db_cohort_method_data(
            CONNECTION, 1, 2, [3], GetDbCohortMethodDataArgs(washout_period=365).to_dict())
        assert len(restricted.cohorts) < len(cm_data.cohorts)
        assert (restricted.cohorts['days_from_obs_start'] >= 365).all()
        assert restricted.outcomes['row_id'].isin(restricted.cohorts['row_id']).all()


class TestStudyPopulation:
    """Tests for study population creation."""

    def test_time_at_risk(self, sim, cm_data):
        args = CreateStudyPopulationArgs(risk_window_end=30, end_anchor='cohort start').to_dict()
        population = sim.create_study_population(cm_data, args, outcome_id=3)
        assert population['time_at_risk'].between(1, 31).all()

    def test_outcome_counts_only_for_outcome(self, sim, cm_data):
        args = CreateStudyPopulationArgs().to_dict()
        assert sim.create_study_population(cm_data, args)['outcome_count'].sum() == 0
        assert sim.create_study_population(cm_data, args, outcome_id=3)['outcome_count'].sum() > 0

    def test_restricting_scored_population_keeps_scores(self, sim, cm_data, scored):
        restricted = sim.create_study_population(
            cm_data, CreateStudyPopulationArgs().to_dict(), outcome_id=3, population=scored)
        assert 'propensity_score' in restricted.columns
        assert len(restricted) <= len(scored)


class TestPropensityAdjustment:
    """Tests for PS fitting, trimming, matching and stratification."""

    def test_scores_in_range(self, scored):
        assert scored['propensity_score'].between(0, 1).all()
        assert scored['preference_score'].between(0, 1).all()

    def test_single_arm_raises(self, sim, cm_data, scored):
        with pytest.raises(ValueError, match="both target and comparator"):
            sim.create_ps(cm_data, scored[scored['treatment'] == 1], CreatePsArgs().to_dict())

    def test_trim_fraction(self, sim, scored):
        trimmed = sim.trim_by_ps(scored, TrimByPsArgs(trim_fraction=0.05).to_dict())
        assert len(trimmed) < len(scored)

    def test_one_to_one_matching(self, sim, cm_data, scored):
        matched = sim.match_on_ps(scored, MatchOnPsArgs(max_ratio=1).to_dict(), cm_data)
        sizes = matched.groupby('stratum_id')['treatment'].agg(['size', 'sum'])
        assert (sizes['size'] == 2).all()
        assert (sizes['sum'] == 1).all()

    def test_stratification(self, sim, cm_data, scored):
        stratified = sim.stratify_by_ps(scored, StratifyByPsArgs(number_of_strata=5).to_dict(), cm_data)
        assert 1 < stratified['stratum_id'].nunique() <= 5
        assert len(stratified) == len(scored)

    def test_matching_improves_balance(self, sim, cm_data, scored):
        matched = sim.match_on_ps(scored, MatchOnPsArgs().to_dict(), cm_data)
        balance = sim.compute_covariate_balance(matched, cm_data, ComputeCovariateBalanceArgs().to_dict())
        assert balance['after_std_diff'].abs().max() < balance['before_std_diff'].abs().max()


@pytest.mark.slow
class TestOutcomeModels:
    """Tests for outcome model fitting."""

    @pytest.mark.parametrize('model_type', ['cox', 'poisson', 'logistic'])
    def test_recovers_strong_effect(self, sim, cm_data, scored, model_type):
        population = sim.create_study_population(
            cm_data, CreateStudyPopulationArgs().to_dict(), outcome_id=3, population=scored)
        matched = sim.match_on_ps(population, MatchOnPsArgs().to_dict(), cm_data)
        model = sim.fit_outcome_model(
            matched, cm_data, FitOutcomeModelArgs(model_type=model_type, stratified=True).to_dict())
        assert model.converged
        assert model.rr > 1.5

    def test_no_outcomes_warns(self, sim, cm_data):
        population = sim.create_study_population(cm_data, CreateStudyPopulationArgs().to_dict())
        model = sim.fit_outcome_model(population, cm_data, FitOutcomeModelArgs().to_dict())
        assert np.isnan(model.log_rr)
        assert 'No outcomes in population' in model.warnings


@pytest.mark.slow
class TestProcessPoolRun:
    """End-to-end runs on the simulation backend."""

    @pytest.fixture
    def study(self):
        analyses = [
            create_cm_analysis(1, 'Crude', fit_outcome_model_args=FitOutcomeModelArgs()),
            create_cm_analysis(
                2, 'Matched',
                create_ps_args=CreatePsArgs(),
                match_on_ps_args=MatchOnPsArgs(),
                compute_shared_covariate_balance_args=ComputeCovariateBalanceArgs(),
                fit_outcome_model_args=FitOutcomeModelArgs(stratified=True),
            ),
        ]
        hypotheses = [create_target_comparator_outcomes(1, 2, [
            create_outcome(3),
            create_outcome(4, outcome_of_interest=False, true_effect_size=1),
        ])]
        return analyses, hypotheses

    def test_process_pool_matches_inline(self, tmp_path, study):
        analyses, hypotheses = study
        inline = run_cm_analyses(
            CONNECTION, tmp_path / 'inline', analyses, hypotheses,
            multi_threading_settings=MultiThreadingSettings(max_workers=1),
            verbose=False,
        )
        pooled = run_cm_analyses(
            CONNECTION, tmp_path / 'pooled', analyses, hypotheses,
            multi_threading_settings=MultiThreadingSettings(max_workers=2, executor='process'),
            verbose=False,
        )

        assert inline.report.succeeded
        assert pooled.report.succeeded
        pd.testing.assert_frame_equal(inline.reference_table, pooled.reference_table)
        pd.testing.assert_frame_equal(get_results_summary(tmp_path / 'inline'),
                                      get_results_summary(tmp_path / 'pooled'))
