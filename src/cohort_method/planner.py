"""
Task Graph Planner.

Expands a list of analyses and a list of hypotheses into a deduplicated graph
of tasks plus one reference row per (analysis, target, comparator, outcome)
combination. Tasks are keyed by fingerprint, so two analyses that share the
arguments relevant to a stage share that stage's task.

Usage
-----
    from cohort_method.planner import plan_tasks

    plan = plan_tasks(
        cm_analysis_list=[analysis1, analysis2],
        target_comparator_outcomes_list=[tco],
        analyses_to_exclude=[{'analysis_id': 2, 'outcome_id': 5}],
    )
    print(plan.counts())
"""
from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Iterator, Optional, Union

import pandas as pd

from utils.cache import task_fingerprint

from .arguments import CmAnalysis
from .errors import ConfigurationError, DuplicateIdError
from .hypotheses import (
    HypothesisRegistry,
    Outcome,
    TargetComparatorOutcomes,
    is_excluded,
    normalize_exclusions,
)
from .tasks import StageKind, Task


# Marker for a stage that is not configured for an analysis. Distinct from
# None, which marks a stage that is configured but has no artifact for a row.
NOT_APPLICABLE = ''


@dataclass
class RowPlan:
    """
    Planned reference row for one (analysis, target, comparator, outcome).

    ``stages`` maps each stage kind value to a task fingerprint,
    ``NOT_APPLICABLE`` or None.
    """

    analysis_id: int
    target_id: int
    comparator_id: int
    outcome_id: int
    outcome_of_interest: bool
    true_effect_size: Optional[float]
    stages: dict = field(default_factory=dict)

    def fingerprint(self, kind: StageKind) -> Optional[str]:
        return self.stages.get(StageKind(kind).value)

    def to_dict(self) -> dict:
        return {
            'analysis_id': self.analysis_id,
            'target_id': self.target_id,
            'comparator_id': self.comparator_id,
            'outcome_id': self.outcome_id,
            'outcome_of_interest': self.outcome_of_interest,
            'true_effect_size': self.true_effect_size,
            'stages': dict(self.stages),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'RowPlan':
        return cls(**data)


class TaskPlan:
    """
    Ordered task graph and reference rows for one execution request.

    Tasks are stored in insertion order. A task is normally added after the
    tasks it depends on, but merging the dependencies of colliding tasks can
    break that, so executors order work by readiness rather than position.
    """

    def __init__(self, tasks: Optional[dict] = None, rows: Optional[list] = None,
                 refit_ps_for_every_outcome: bool = False):
        self.tasks: dict[str, Task] = dict(tasks or {})
        self.rows: list[RowPlan] = list(rows or [])
        self.refit_ps_for_every_outcome = refit_ps_for_every_outcome

    def __len__(self) -> int:
        return len(self.tasks)

    def __iter__(self) -> Iterator[Task]:
        return iter(self.tasks.values())

    def __contains__(self, fingerprint: str) -> bool:
        return fingerprint in self.tasks

    def add(self, task: Task, analysis_id: int) -> Task:
        """Add a task, merging with an existing task of the same fingerprint."""
        existing = self.tasks.get(task.fingerprint)
        if existing is None:
            task.analysis_ids = [analysis_id]
            self.tasks[task.fingerprint] = task
            return task
        if existing.kind != task.kind:
            raise ConfigurationError(
                f"Fingerprint collision between {existing.kind.value} and {task.kind.value}"
            )
        for role, fp in task.dependencies.items():
            existing.dependencies.setdefault(role, fp)
        if analysis_id not in existing.analysis_ids:
            existing.analysis_ids.append(analysis_id)
        return existing

    def counts(self) -> dict[str, int]:
        """Number of planned tasks per stage kind, in pipeline order."""
        counts = {kind.value: 0 for kind in StageKind}
        for task in self.tasks.values():
            counts[task.kind.value] += 1
        return counts

    def dependents(self) -> dict[str, list[str]]:
        """Map of fingerprint -> fingerprints of tasks that consume it."""
        result = defaultdict(list)
        for task in self.tasks.values():
            for dep in task.dependencies.values():
                result[dep].append(task.fingerprint)
        return dict(result)

    def descendants(self, fingerprint: str) -> list[str]:
        """All tasks that transitively depend on ``fingerprint``, in plan order."""
        dependents = self.dependents()
        found = set()
        stack = [fingerprint]
        while stack:
            for child in dependents.get(stack.pop(), []):
                if child not in found:
                    found.add(child)
                    stack.append(child)
        return [fp for fp in self.tasks if fp in found]

    def row_for(self, analysis_id: int, target_id: int, comparator_id: int,
                outcome_id: int) -> Optional[RowPlan]:
        for row in self.rows:
            if (row.analysis_id, row.target_id, row.comparator_id, row.outcome_id) == (
                    analysis_id, target_id, comparator_id, outcome_id):
                return row
        return None

    def summary(self) -> pd.DataFrame:
        """Task counts per kind as a DataFrame."""
        return pd.DataFrame(
            [{'kind': kind, 'tasks': n} for kind, n in self.counts().items()]
        )

    def to_dict(self) -> dict:
        return {
            'refit_ps_for_every_outcome': self.refit_ps_for_every_outcome,
            'tasks': [task.to_dict() for task in self.tasks.values()],
            'rows': [row.to_dict() for row in self.rows],
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'TaskPlan':
        tasks = {}
        for item in data.get('tasks', []):
            task = Task.from_dict(item)
            tasks[task.fingerprint] = task
        rows = [RowPlan.from_dict(r) for r in data.get('rows', [])]
        return cls(tasks, rows, data.get('refit_ps_for_every_outcome', False))


# =============================================================================
# PLANNING
# =============================================================================

def _args_dict(bundle) -> Optional[dict]:
    return bundle.to_dict() if bundle is not None else None


def _adjust_payload(analysis: CmAnalysis, outcome: Outcome, restrict_population: bool) -> dict:
    """Arguments that turn the propensity population into an outcome's adjusted population."""
    return {
        'outcome_id': outcome.outcome_id,
        'create_study_population_args': outcome.apply_overrides(
            analysis.create_study_population_args).to_dict(),
        'restrict_population': restrict_population,
        'trim_by_ps_args': _args_dict(analysis.trim_by_ps_args),
        'match_on_ps_args': _args_dict(analysis.match_on_ps_args),
        'stratify_by_ps_args': _args_dict(analysis.stratify_by_ps_args),
    }


def _check_analyses(cm_analysis_list: list) -> None:
    if not cm_analysis_list:
        raise ConfigurationError("At least one analysis is required")
    seen = set()
    for analysis in cm_analysis_list:
        if not isinstance(analysis, CmAnalysis):
            raise ConfigurationError(
                f"Analyses must be CmAnalysis objects, got {type(analysis).__name__}"
            )
        if analysis.analysis_id in seen:
            raise DuplicateIdError(f"Analysis ID {analysis.analysis_id} is used more than once")
        seen.add(analysis.analysis_id)


def plan_tasks(
    cm_analysis_list: list[CmAnalysis],
    target_comparator_outcomes_list: Union[list[TargetComparatorOutcomes], HypothesisRegistry],
    analyses_to_exclude: Union[None, pd.DataFrame, list[dict]] = None,
    refit_ps_for_every_outcome: bool = False,
) -> TaskPlan:
    """
    Build the deduplicated task graph for an execution request.

    Parameters
    ----------
    cm_analysis_list : list[CmAnalysis]
        Analyses with unique IDs
    target_comparator_outcomes_list : list or HypothesisRegistry
        Hypotheses of interest
    analyses_to_exclude : list[dict] or DataFrame, optional
        Combinations to leave out (any subset of analysis_id, target_id,
        comparator_id, outcome_id per row)
    refit_ps_for_every_outcome : bool
        Fit a separate propensity model per outcome

    Returns
    -------
    TaskPlan
        Ordered tasks and reference rows

    Raises
    ------
    DuplicateIdError
        If analysis IDs or hypothesis triples repeat
    ConfigurationError
        If stage combinations are inconsistent
    """
    _check_analyses(cm_analysis_list)
    if isinstance(target_comparator_outcomes_list, HypothesisRegistry):
        registry = target_comparator_outcomes_list
    else:
        registry = HypothesisRegistry(target_comparator_outcomes_list)
    if len(registry) == 0:
        raise ConfigurationError("At least one target-comparator-outcomes entry is required")

    if refit_ps_for_every_outcome:
        shared = [a.analysis_id for a in cm_analysis_list
                  if a.compute_shared_covariate_balance_args is not None]
        if shared:
            raise ConfigurationError(
                "Shared covariate balance cannot be combined with refitting the "
                f"propensity model for every outcome (analyses {shared})"
            )

    rules = normalize_exclusions(analyses_to_exclude)
    plan = TaskPlan(refit_ps_for_every_outcome=refit_ps_for_every_outcome)

    for analysis in cm_analysis_list:
        aid = analysis.analysis_id
        for tco, outcome in registry.components():
            if is_excluded(rules, aid, tco.target_id, tco.comparator_id, outcome.outcome_id):
                continue
            plan.rows.append(
                _plan_row(plan, analysis, tco, outcome, registry, refit_ps_for_every_outcome)
            )

    return plan


def _plan_row(
    plan: TaskPlan,
    analysis: CmAnalysis,
    tco: TargetComparatorOutcomes,
    outcome: Outcome,
    registry: HypothesisRegistry,
    refit: bool,
) -> RowPlan:
    aid = analysis.analysis_id
    t, c, oid = tco.target_id, tco.comparator_id, outcome.outcome_id
    has_ps = analysis.create_ps_args is not None

    row = RowPlan(
        analysis_id=aid,
        target_id=t,
        comparator_id=c,
        outcome_id=oid,
        outcome_of_interest=outcome.outcome_of_interest,
        true_effect_size=outcome.true_effect_size,
    )

    def add(kind, fp, payload, dependencies, outcome_id=None):
        plan.add(Task(
            fingerprint=fp,
            kind=kind,
            target_id=t,
            comparator_id=c,
            outcome_id=outcome_id,
            payload=payload,
            dependencies=dependencies,
        ), aid)
        row.stages[kind.value] = fp

    # Extraction: one per pair and extraction arguments, covering every
    # outcome registered for the pair
    outcome_ids = registry.outcome_ids_for_pair(t, c)
    ext_args = {
        'target_id': t,
        'comparator_id': c,
        'outcome_ids': outcome_ids,
        'get_db_cohort_method_data_args': analysis.get_db_cohort_method_data_args.to_dict(),
    }
    ext_fp = task_fingerprint(StageKind.EXTRACT.value, {}, ext_args)
    add(StageKind.EXTRACT, ext_fp, ext_args, {})

    # Study population and propensity model
    ps_fp = None
    if has_ps:
        if refit:
            pop_args = {
                'outcome_id': oid,
                'create_study_population_args': outcome.apply_overrides(
                    analysis.create_study_population_args).to_dict(),
            }
            ps_outcome = oid
        else:
            pop_args = {
                'outcome_id': None,
                'create_study_population_args': analysis.create_study_population_args.to_dict(),
            }
            ps_outcome = None
        sp_deps = {StageKind.EXTRACT.value: ext_fp}
        sp_fp = task_fingerprint(StageKind.STUDY_POPULATION.value, sp_deps, pop_args)
        add(StageKind.STUDY_POPULATION, sp_fp, pop_args, sp_deps, ps_outcome)

        ps_args = {
            'create_ps_args': analysis.create_ps_args.to_dict(),
            'excluded_covariate_concept_ids': sorted(tco.excluded_covariate_concept_ids),
            'included_covariate_concept_ids': sorted(tco.included_covariate_concept_ids),
        }
        ps_deps = {StageKind.EXTRACT.value: ext_fp, StageKind.STUDY_POPULATION.value: sp_fp}
        ps_fp = task_fingerprint(StageKind.PROPENSITY.value, ps_deps, ps_args)
        add(StageKind.PROPENSITY, ps_fp, ps_args, ps_deps, ps_outcome)
    else:
        # The population is still built, inside the adjustment, but never
        # persisted on its own
        row.stages[StageKind.STUDY_POPULATION.value] = None
        row.stages[StageKind.PROPENSITY.value] = NOT_APPLICABLE

    # Shared balance: one per target-comparator-analysis, whatever the outcome
    if analysis.compute_shared_covariate_balance_args is not None:
        sb_args = {
            'trim_by_ps_args': _args_dict(analysis.trim_by_ps_args),
            'match_on_ps_args': _args_dict(analysis.match_on_ps_args),
            'stratify_by_ps_args': _args_dict(analysis.stratify_by_ps_args),
            'compute_covariate_balance_args': analysis.compute_shared_covariate_balance_args.to_dict(),
        }
        sb_deps = {StageKind.EXTRACT.value: ext_fp, StageKind.PROPENSITY.value: ps_fp}
        sb_fp = task_fingerprint(StageKind.SHARED_BALANCE.value, sb_deps, sb_args)
        add(StageKind.SHARED_BALANCE, sb_fp, sb_args, sb_deps)
    else:
        row.stages[StageKind.SHARED_BALANCE.value] = NOT_APPLICABLE

    # Adjusted population for this outcome
    adjust = _adjust_payload(analysis, outcome, restrict_population=not refit)
    adj_upstream = {StageKind.EXTRACT.value: ext_fp, StageKind.PROPENSITY.value: ps_fp}
    adj_fp = task_fingerprint(StageKind.ADJUST.value, adj_upstream, adjust)
    adj_deps = {k: v for k, v in adj_upstream.items() if v is not None}

    wants_balance = analysis.compute_covariate_balance_args is not None and (
        outcome.outcome_of_interest or outcome.requests('balance'))
    materialize_adjust = (
        outcome.outcome_of_interest or outcome.requests('adjusted_population') or wants_balance
    )
    if materialize_adjust:
        add(StageKind.ADJUST, adj_fp, adjust, dict(adj_deps), oid)
    else:
        row.stages[StageKind.ADJUST.value] = None

    # Per-outcome balance
    if analysis.compute_covariate_balance_args is None:
        row.stages[StageKind.BALANCE.value] = NOT_APPLICABLE
    elif wants_balance:
        bal_args = {'compute_covariate_balance_args': analysis.compute_covariate_balance_args.to_dict()}
        bal_deps = {StageKind.EXTRACT.value: ext_fp, StageKind.ADJUST.value: adj_fp}
        bal_fp = task_fingerprint(StageKind.BALANCE.value, bal_deps, bal_args)
        add(StageKind.BALANCE, bal_fp, bal_args, bal_deps, oid)
    else:
        row.stages[StageKind.BALANCE.value] = None

    # Outcome model. The fingerprint depends on the adjusted population's
    # fingerprint only, so it is the same whether or not that population
    # is persisted.
    if analysis.fit_outcome_model_args is None:
        row.stages[StageKind.OUTCOME_MODEL.value] = NOT_APPLICABLE
    else:
        om_args = {'fit_outcome_model_args': analysis.fit_outcome_model_args.to_dict()}
        om_fp = task_fingerprint(StageKind.OUTCOME_MODEL.value, {StageKind.ADJUST.value: adj_fp}, om_args)
        if materialize_adjust:
            om_deps = {StageKind.EXTRACT.value: ext_fp, StageKind.ADJUST.value: adj_fp}
        else:
            om_deps = dict(adj_deps)
        add(StageKind.OUTCOME_MODEL, om_fp, dict(om_args, adjust=adjust), om_deps, oid)

    return row
