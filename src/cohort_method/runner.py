"""
Entry points for running many cohort method analyses.

Usage
-----
    from cohort_method import run_cm_analyses, get_file_reference, load_artifact

    result = run_cm_analyses(
        connection_details={'n_persons': 2000, 'seed': 42},
        output_folder=Path('data_work/cm_output'),
        cm_analysis_list=analyses,
        target_comparator_outcomes_list=hypotheses,
    )
    ref = result.reference_table

    model = load_artifact(output_folder, analysis_id=1, target_id=1,
                          comparator_id=2, outcome_id=3, kind='outcome_model')
    print(model.rr, model.ci_95_lb, model.ci_95_ub)
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Union

import pandas as pd

from config import (
    ANALYSES_FILE,
    HYPOTHESES_FILE,
    PLAN_FILE,
    POWER,
    RUN_STATUS_FILE,
    SIGNIFICANCE_LEVEL,
)
from utils.helpers import read_json, write_json, write_text_atomic

from .base import CohortMethodBackend
from .errors import ConfigurationError, NotFoundError
from .factory import get_backend
from .planner import NOT_APPLICABLE, TaskPlan, plan_tasks
from .power import compute_mdrr_from_aggregate_stats
from .reference import (
    ID_COLUMNS,
    build_reference_table,
    load_reference_table,
    save_reference_table,
)
from .scheduler import MultiThreadingSettings, RunReport, TaskScheduler
from .specifications import save_cm_analysis_list, save_target_comparator_outcomes_list
from .store import ArtifactStore, load_artifact_file
from .tasks import StageKind


@dataclass
class CmRunResult:
    """Reference table and per-task report of one run."""

    reference_table: pd.DataFrame
    report: RunReport
    plan: TaskPlan
    output_folder: Path


def _resolve_backend(backend: Union[None, str, Any]):
    if backend is None or isinstance(backend, str):
        return get_backend(backend)
    if not isinstance(backend, CohortMethodBackend):
        raise ConfigurationError(
            f"Backend {type(backend).__name__} does not implement the cohort method backend interface"
        )
    return backend


# =============================================================================
# RUN
# =============================================================================

def run_cm_analyses(
    connection_details: dict,
    output_folder: Union[str, Path],
    cm_analysis_list: list,
    target_comparator_outcomes_list: list,
    analyses_to_exclude: Union[None, pd.DataFrame, list[dict]] = None,
    refit_ps_for_every_outcome: bool = False,
    multi_threading_settings: Optional[MultiThreadingSettings] = None,
    backend: Union[None, str, Any] = None,
    verbose: bool = True,
) -> CmRunResult:
    """
    Run every analysis for every hypothesis, reusing stored artifacts.

    All validation and planning happens before anything is executed, so a
    configuration error leaves the output folder untouched. Task failures do
    not raise: they are reported in ``result.report`` and leave None in the
    affected reference table cells.

    Parameters
    ----------
    connection_details : dict
        Passed to the backend's extraction
    output_folder : Path
        Artifact store and manifests for this study
    cm_analysis_list : list[CmAnalysis]
        Analyses (unique IDs)
    target_comparator_outcomes_list : list[TargetComparatorOutcomes]
        Hypotheses of interest
    analyses_to_exclude : list[dict] or DataFrame, optional
        Combinations to leave out
    refit_ps_for_every_outcome : bool
        Fit a separate propensity model per outcome
    multi_threading_settings : MultiThreadingSettings, optional
        Parallelism (default: every CPU core, see ``MultiThreadingSettings``)
    backend : str or CohortMethodBackend, optional
        Backend name or instance (default: DEFAULT_BACKEND from config)
    verbose : bool
        Print progress

    Returns
    -------
    CmRunResult
        Reference table, run report and plan

    Raises
    ------
    ConfigurationError, DuplicateIdError
        If the request is invalid (nothing is executed)
    """
    plan = plan_tasks(
        cm_analysis_list,
        target_comparator_outcomes_list,
        analyses_to_exclude=analyses_to_exclude,
        refit_ps_for_every_outcome=refit_ps_for_every_outcome,
    )
    backend = _resolve_backend(backend)
    output_folder = Path(output_folder)
    store = ArtifactStore(output_folder)

    if verbose:
        print("=" * 60)
        print("Cohort Method: run analyses")
        print("=" * 60)
        print(f"\n  Output folder: {output_folder}")
        print(f"  Backend: {backend.name}")
        print(f"  Analyses: {len(cm_analysis_list)}, "
              f"target-comparator-outcomes: {len(target_comparator_outcomes_list)}, "
              f"rows: {len(plan.rows)}")
        print("\n  Planned tasks:")
        for kind, n in plan.counts().items():
            print(f"    {kind:<22} {n:>6}")

    removed = store.clean_temporary_files()
    if verbose and removed:
        print(f"\n  Removed {removed} interrupted temporary file(s)")

    write_json(output_folder / PLAN_FILE, plan.to_dict())
    save_cm_analysis_list(cm_analysis_list, output_folder / ANALYSES_FILE)
    save_target_comparator_outcomes_list(
        list(target_comparator_outcomes_list), output_folder / HYPOTHESES_FILE)

    report = TaskScheduler(
        plan, store, backend, connection_details,
        settings=multi_threading_settings, verbose=verbose,
    ).run()

    reference_table = build_reference_table(plan, store, report.task_states())
    save_reference_table(reference_table, output_folder)
    write_text_atomic(output_folder / RUN_STATUS_FILE, report.to_frame().to_csv(index=False))

    if verbose:
        print("\n" + "-" * 60)
        print("RUN SUMMARY")
        print("-" * 60)
        for state, n in report.counts().items():
            print(f"  {state:<12} {n:>6}")
        for status in report.failed:
            print(f"  FAILED {status.kind.value} t{status.target_id}_c{status.comparator_id}"
                  f"{'' if status.outcome_id is None else f'_o{status.outcome_id}'}: {status.error}")
        print("\n" + "=" * 60)
        print("Run complete.")
        print("=" * 60)

    return CmRunResult(reference_table, report, plan, output_folder)


def plan_cm_analyses(
    cm_analysis_list: list,
    target_comparator_outcomes_list: list,
    output_folder: Optional[Union[str, Path]] = None,
    analyses_to_exclude: Union[None, pd.DataFrame, list[dict]] = None,
    refit_ps_for_every_outcome: bool = False,
) -> pd.DataFrame:
    """
    Plan without executing.

    Returns
    -------
    pd.DataFrame
        Per stage kind: planned, cached (already in ``output_folder``) and
        pending task counts
    """
    plan = plan_tasks(
        cm_analysis_list,
        target_comparator_outcomes_list,
        analyses_to_exclude=analyses_to_exclude,
        refit_ps_for_every_outcome=refit_ps_for_every_outcome,
    )
    committed = set()
    if output_folder is not None and Path(output_folder).exists():
        committed = set(ArtifactStore(output_folder).list_artifacts()['file_name'])

    rows = []
    for kind in StageKind:
        tasks = [t for t in plan if t.kind == kind]
        cached = sum(1 for t in tasks if t.file_name in committed)
        rows.append({'kind': kind.value, 'planned': len(tasks), 'cached': cached,
                     'pending': len(tasks) - cached})
    return pd.DataFrame(rows, columns=['kind', 'planned', 'cached', 'pending'])


# =============================================================================
# RESULTS ACCESS
# =============================================================================

def get_file_reference(output_folder: Union[str, Path]) -> pd.DataFrame:
    """
    Load the reference table written by the last run.

    Raises
    ------
    NotFoundError
        If the folder has no reference table
    """
    return load_reference_table(output_folder)


def rebuild_file_reference(output_folder: Union[str, Path]) -> pd.DataFrame:
    """
    Re-derive the reference table from the stored plan and artifacts.

    Nothing is computed; use this after artifacts were added or removed
    outside a run. Row status uses the task states of the last run
    (``run_status.csv``) when present.

    Raises
    ------
    NotFoundError
        If the folder has no stored plan
    """
    output_folder = Path(output_folder)
    plan_path = output_folder / PLAN_FILE
    if not plan_path.exists():
        raise NotFoundError(f"No plan in {output_folder}")
    plan = TaskPlan.from_dict(read_json(plan_path))
    task_states = None
    status_path = output_folder / RUN_STATUS_FILE
    if status_path.exists():
        run_status = pd.read_csv(status_path, usecols=['fingerprint', 'state'], dtype=str)
        task_states = dict(zip(run_status['fingerprint'], run_status['state']))
    reference_table = build_reference_table(plan, ArtifactStore(output_folder), task_states)
    save_reference_table(reference_table, output_folder)
    return reference_table


def load_artifact(
    output_folder: Union[str, Path],
    analysis_id: int,
    target_id: int,
    comparator_id: int,
    outcome_id: int,
    kind: Union[str, StageKind],
) -> Any:
    """
    Load the artifact of one stage for one combination.

    Raises
    ------
    NotFoundError
        If the combination was not planned, the stage is not configured for
        the analysis, or the stage has no committed artifact
    """
    kind = StageKind(kind)
    reference_table = get_file_reference(output_folder)
    match = reference_table[
        (reference_table['analysis_id'] == analysis_id)
        & (reference_table['target_id'] == target_id)
        & (reference_table['comparator_id'] == comparator_id)
        & (reference_table['outcome_id'] == outcome_id)
    ]
    label = f"analysis {analysis_id}, target {target_id}, comparator {comparator_id}, outcome {outcome_id}"
    if match.empty:
        raise NotFoundError(f"No planned row for {label}")

    file_name = match.iloc[0][kind.reference_column]
    if file_name == NOT_APPLICABLE:
        raise NotFoundError(f"Stage {kind.value} is not configured for {label}")
    if file_name is None or pd.isna(file_name):
        raise NotFoundError(f"No {kind.value} artifact for {label} (not required, failed or skipped)")
    return load_artifact_file(Path(output_folder) / file_name)


SUMMARY_COLUMNS = ID_COLUMNS + [
    'outcome_of_interest', 'true_effect_size', 'model_type',
    'rr', 'ci_95_lb', 'ci_95_ub', 'p', 'log_rr', 'se_log_rr', 'converged',
    'target_subjects', 'comparator_subjects', 'target_days', 'comparator_days',
    'target_outcomes', 'comparator_outcomes', 'mdrr',
]


def get_results_summary(
    output_folder: Union[str, Path],
    alpha: float = SIGNIFICANCE_LEVEL,
    power: float = POWER,
) -> pd.DataFrame:
    """
    Summarize every committed outcome model.

    Parameters
    ----------
    output_folder : Path
        Study output folder
    alpha, power : float
        Used for the minimum detectable relative risk

    Returns
    -------
    pd.DataFrame
        One row per outcome model (see ``SUMMARY_COLUMNS``)
    """
    reference_table = get_file_reference(output_folder)
    column = StageKind.OUTCOME_MODEL.reference_column
    rows = []
    for record in reference_table.to_dict(orient='records'):
        file_name = record[column]
        if not file_name or pd.isna(file_name):
            continue
        model = load_artifact_file(Path(output_folder) / file_name)
        subjects = model.target_subjects + model.comparator_subjects
        mdrr = compute_mdrr_from_aggregate_stats(
            p_target=model.target_subjects / subjects if subjects else float('nan'),
            total_events=model.target_outcomes + model.comparator_outcomes,
            total_subjects=subjects,
            alpha=alpha,
            power=power,
            model_type='logistic' if model.model_type == 'logistic' else 'cox',
        )
        row = {k: record[k] for k in ID_COLUMNS + ['outcome_of_interest', 'true_effect_size']}
        row.update({k: v for k, v in model.to_dict().items() if k in SUMMARY_COLUMNS})
        row['mdrr'] = mdrr
        rows.append(row)
    return pd.DataFrame(rows, columns=SUMMARY_COLUMNS)
