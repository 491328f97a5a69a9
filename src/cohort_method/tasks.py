"""
Task model: stage kinds, task states and the task record.

``StageKind`` is the closed set of stage kinds. Every kind maps to an
artifact file prefix and a reference-table column, and the stage runner
registry in ``stages`` covers every member.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from config import ARTIFACT_SUFFIX


class StageKind(str, Enum):
    """The seven kinds of task in a cohort method plan."""

    EXTRACT = 'cohort_method_data'
    STUDY_POPULATION = 'study_population'
    PROPENSITY = 'propensity_score'
    SHARED_BALANCE = 'shared_balance'
    ADJUST = 'adjusted_population'
    BALANCE = 'balance'
    OUTCOME_MODEL = 'outcome_model'

    @property
    def prefix(self) -> str:
        """Artifact file name prefix."""
        return _PREFIXES[self]

    @property
    def reference_column(self) -> str:
        """Column name in the reference table."""
        return f"{self.value}_file"

    @property
    def per_outcome(self) -> bool:
        """True for kinds computed once per outcome."""
        return self in (StageKind.ADJUST, StageKind.BALANCE, StageKind.OUTCOME_MODEL)

    @classmethod
    def from_prefix(cls, prefix: str) -> 'StageKind':
        for kind, p in _PREFIXES.items():
            if p == prefix:
                return kind
        raise ValueError(f"Unknown artifact prefix: '{prefix}'")


_PREFIXES = {
    StageKind.EXTRACT: 'CmData',
    StageKind.STUDY_POPULATION: 'StudyPop',
    StageKind.PROPENSITY: 'Ps',
    StageKind.SHARED_BALANCE: 'SharedBal',
    StageKind.ADJUST: 'AdjPop',
    StageKind.BALANCE: 'Bal',
    StageKind.OUTCOME_MODEL: 'Om',
}


class TaskState(str, Enum):
    """Lifecycle of a task within one run."""

    PLANNED = 'planned'
    RUNNING = 'running'
    COMMITTED = 'committed'
    FAILED = 'failed'
    SKIPPED = 'skipped'  # an upstream task failed


@dataclass
class Task:
    """
    One stage of one (target, comparator, [outcome], analysis) combination.

    Attributes
    ----------
    fingerprint : str
        Digest of the inputs that determine the output
    kind : StageKind
        Stage kind
    target_id, comparator_id : int
        Exposure cohorts
    outcome_id : int, optional
        Outcome cohort for per-outcome kinds (and for per-outcome propensity
        models), None otherwise
    payload : dict
        JSON-ready stage arguments the runner needs
    dependencies : dict[str, str]
        Input role -> upstream task fingerprint
    analysis_ids : list[int]
        Analyses that share this task
    """

    fingerprint: str
    kind: StageKind
    target_id: int
    comparator_id: int
    outcome_id: Optional[int] = None
    payload: dict = field(default_factory=dict)
    dependencies: dict = field(default_factory=dict)
    analysis_ids: list = field(default_factory=list)

    @property
    def file_name(self) -> str:
        return f"{self.kind.prefix}_{self.fingerprint}{ARTIFACT_SUFFIX}"

    def describe(self) -> str:
        """Short human-readable label for progress output."""
        label = f"{self.kind.value} t{self.target_id}_c{self.comparator_id}"
        if self.outcome_id is not None:
            label += f"_o{self.outcome_id}"
        return label

    def to_dict(self) -> dict:
        return {
            'fingerprint': self.fingerprint,
            'kind': self.kind.value,
            'target_id': self.target_id,
            'comparator_id': self.comparator_id,
            'outcome_id': self.outcome_id,
            'payload': self.payload,
            'dependencies': dict(self.dependencies),
            'analysis_ids': list(self.analysis_ids),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Task':
        return cls(
            fingerprint=data['fingerprint'],
            kind=StageKind(data['kind']),
            target_id=data['target_id'],
            comparator_id=data['comparator_id'],
            outcome_id=data.get('outcome_id'),
            payload=data.get('payload') or {},
            dependencies=data.get('dependencies') or {},
            analysis_ids=data.get('analysis_ids') or [],
        )
