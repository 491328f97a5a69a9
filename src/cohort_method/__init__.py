"""
Cohort Method Package.

Runs many new-user cohort analyses over many target-comparator-outcome
hypotheses, computing every shared intermediate result once and reusing
stored results across runs.

Usage
-----
    from cohort_method import (
        create_cm_analysis, create_outcome, create_target_comparator_outcomes,
        CreatePsArgs, FitOutcomeModelArgs, MatchOnPsArgs, run_cm_analyses,
    )

    analysis = create_cm_analysis(
        analysis_id=1,
        description='1-on-1 matching',
        create_ps_args=CreatePsArgs(),
        match_on_ps_args=MatchOnPsArgs(max_ratio=1),
        fit_outcome_model_args=FitOutcomeModelArgs(model_type='cox', stratified=True),
    )
    tco = create_target_comparator_outcomes(
        target_id=1, comparator_id=2,
        outcomes=[create_outcome(3), create_outcome(4, outcome_of_interest=False, true_effect_size=1)],
    )
    result = run_cm_analyses(
        connection_details={'n_persons': 2000},
        output_folder='data_work/cm_output',
        cm_analysis_list=[analysis],
        target_comparator_outcomes_list=[tco],
    )
"""
from __future__ import annotations

from .arguments import (
    CmAnalysis,
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
from .base import BaseBackend, CohortMethodBackend, CohortMethodData, OutcomeModel
from .errors import (
    CohortMethodError,
    ConfigurationError,
    DuplicateIdError,
    NotFoundError,
    StoreIOError,
    TaskComputationError,
)
from .factory import get_backend, list_backends, register_backend
from .hypotheses import (
    Outcome,
    TargetComparatorOutcomes,
    create_outcome,
    create_target_comparator_outcomes,
)
from .planner import NOT_APPLICABLE, TaskPlan, plan_tasks
from .power import compute_mdrr, compute_mdrr_from_aggregate_stats, get_follow_up_distribution
from .runner import (
    CmRunResult,
    get_file_reference,
    get_results_summary,
    load_artifact,
    plan_cm_analyses,
    rebuild_file_reference,
    run_cm_analyses,
)
from .scheduler import MultiThreadingSettings, create_default_multi_threading_settings
from .specifications import (
    load_cm_analysis_list,
    load_study_settings,
    load_target_comparator_outcomes_list,
    save_cm_analysis_list,
    save_target_comparator_outcomes_list,
)
from .store import ArtifactStore
from .tasks import StageKind, TaskState

__all__ = [
    # Analysis and hypothesis definitions
    'CmAnalysis',
    'ComputeCovariateBalanceArgs',
    'CreatePsArgs',
    'CreateStudyPopulationArgs',
    'FitOutcomeModelArgs',
    'GetDbCohortMethodDataArgs',
    'MatchOnPsArgs',
    'StratifyByPsArgs',
    'TrimByPsArgs',
    'create_cm_analysis',
    'Outcome',
    'TargetComparatorOutcomes',
    'create_outcome',
    'create_target_comparator_outcomes',
    # Backends
    'BaseBackend',
    'CohortMethodBackend',
    'CohortMethodData',
    'OutcomeModel',
    'get_backend',
    'list_backends',
    'register_backend',
    # Errors
    'CohortMethodError',
    'ConfigurationError',
    'DuplicateIdError',
    'NotFoundError',
    'StoreIOError',
    'TaskComputationError',
    # Planning and execution
    'NOT_APPLICABLE',
    'TaskPlan',
    'plan_tasks',
    'StageKind',
    'TaskState',
    'ArtifactStore',
    'MultiThreadingSettings',
    'create_default_multi_threading_settings',
    'CmRunResult',
    'run_cm_analyses',
    'plan_cm_analyses',
    # Results
    'get_file_reference',
    'rebuild_file_reference',
    'load_artifact',
    'get_results_summary',
    'compute_mdrr',
    'compute_mdrr_from_aggregate_stats',
    'get_follow_up_distribution',
    # Settings files
    'load_study_settings',
    'load_cm_analysis_list',
    'save_cm_analysis_list',
    'load_target_comparator_outcomes_list',
    'save_target_comparator_outcomes_list',
]
