"""
Hypotheses of Interest: target-comparator-outcome combinations.

Usage
-----
    from cohort_method.hypotheses import (
        HypothesisRegistry,
        create_outcome,
        create_target_comparator_outcomes,
    )

    tco = create_target_comparator_outcomes(
        target_id=1,
        comparator_id=2,
        outcomes=[
            create_outcome(3),                                   # of interest
            create_outcome(4, outcome_of_interest=False, true_effect_size=1),
        ],
    )
    registry = HypothesisRegistry([tco])
"""
from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Iterator, Optional, Union

import pandas as pd

from .arguments import ANCHORS, CreateStudyPopulationArgs
from .errors import ConfigurationError, DuplicateIdError


# Per-outcome stages that may be requested for outcomes not of interest
REQUESTABLE_STAGES = ('adjusted_population', 'balance')

# Outcome fields that override the analysis' study population arguments
POPULATION_OVERRIDES = (
    'prior_outcome_lookback',
    'risk_window_start',
    'start_anchor',
    'risk_window_end',
    'end_anchor',
)

EXCLUSION_KEYS = ('analysis_id', 'target_id', 'comparator_id', 'outcome_id')


@dataclass(frozen=True)
class Outcome:
    """
    One outcome of a hypothesis.

    Attributes
    ----------
    outcome_id : int
        Outcome cohort ID
    outcome_of_interest : bool
        False for negative controls; their large per-outcome intermediates
        (adjusted population, balance) are not persisted unless requested
    true_effect_size : float, optional
        Known relative risk (1 for negative controls), used downstream only
    prior_outcome_lookback, risk_window_start, start_anchor,
    risk_window_end, end_anchor
        Optional overrides of the study population arguments for this outcome
    requested_stages : tuple[str]
        Per-outcome stages to materialize even when not of interest
    """

    outcome_id: int
    outcome_of_interest: bool = True
    true_effect_size: Optional[float] = None
    prior_outcome_lookback: Optional[int] = None
    risk_window_start: Optional[int] = None
    start_anchor: Optional[str] = None
    risk_window_end: Optional[int] = None
    end_anchor: Optional[str] = None
    requested_stages: tuple = ()

    def __post_init__(self):
        if isinstance(self.requested_stages, (list, set, frozenset)):
            object.__setattr__(self, 'requested_stages', tuple(sorted(self.requested_stages)))
        unknown = [s for s in self.requested_stages if s not in REQUESTABLE_STAGES]
        if unknown:
            raise ConfigurationError(
                f"Outcome {self.outcome_id}: unknown requested stage(s) {unknown}. "
                f"Allowed: {list(REQUESTABLE_STAGES)}"
            )
        for name in ('start_anchor', 'end_anchor'):
            value = getattr(self, name)
            if value is not None and value not in ANCHORS:
                raise ConfigurationError(
                    f"Outcome {self.outcome_id}: '{name}' must be one of {list(ANCHORS)}"
                )
        if self.true_effect_size is not None and self.true_effect_size <= 0:
            raise ConfigurationError(
                f"Outcome {self.outcome_id}: 'true_effect_size' must be positive"
            )

    @property
    def population_overrides(self) -> dict:
        """Population argument overrides set on this outcome."""
        return {
            name: getattr(self, name)
            for name in POPULATION_OVERRIDES
            if getattr(self, name) is not None
        }

    def apply_overrides(self, args: CreateStudyPopulationArgs) -> CreateStudyPopulationArgs:
        """Return the study population arguments effective for this outcome."""
        overrides = self.population_overrides
        if not overrides:
            return args
        return dataclasses.replace(args, **overrides)

    def requests(self, stage: str) -> bool:
        return stage in self.requested_stages

    def to_dict(self) -> dict:
        data = dataclasses.asdict(self)
        data['requested_stages'] = list(self.requested_stages)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> 'Outcome':
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"Unknown outcome field(s): {', '.join(unknown)}")
        return cls(**data)


@dataclass(frozen=True)
class TargetComparatorOutcomes:
    """A target cohort, a comparator cohort and an ordered set of outcomes."""

    target_id: int
    comparator_id: int
    outcomes: tuple = ()
    excluded_covariate_concept_ids: tuple = ()
    included_covariate_concept_ids: tuple = ()

    def __post_init__(self):
        for name in ('outcomes', 'excluded_covariate_concept_ids', 'included_covariate_concept_ids'):
            value = getattr(self, name)
            if isinstance(value, list):
                object.__setattr__(self, name, tuple(value))
        if self.target_id == self.comparator_id:
            raise ConfigurationError(
                f"Target and comparator must differ, both are {self.target_id}"
            )
        if not self.outcomes:
            raise ConfigurationError(
                f"Target {self.target_id} / comparator {self.comparator_id} has no outcomes"
            )
        seen = set()
        for outcome in self.outcomes:
            if not isinstance(outcome, Outcome):
                raise ConfigurationError(
                    f"Outcomes must be Outcome objects, got {type(outcome).__name__}"
                )
            if outcome.outcome_id in seen:
                raise DuplicateIdError(
                    f"Outcome {outcome.outcome_id} appears more than once for "
                    f"target {self.target_id} / comparator {self.comparator_id}"
                )
            seen.add(outcome.outcome_id)

    @property
    def outcome_ids(self) -> list[int]:
        return [o.outcome_id for o in self.outcomes]

    def to_dict(self) -> dict:
        return {
            'target_id': self.target_id,
            'comparator_id': self.comparator_id,
            'outcomes': [o.to_dict() for o in self.outcomes],
            'excluded_covariate_concept_ids': list(self.excluded_covariate_concept_ids),
            'included_covariate_concept_ids': list(self.included_covariate_concept_ids),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'TargetComparatorOutcomes':
        data = dict(data)
        missing = [k for k in ('target_id', 'comparator_id', 'outcomes') if k not in data]
        if missing:
            raise ConfigurationError(f"Hypothesis is missing field(s): {', '.join(missing)}")
        outcomes = []
        for item in data.pop('outcomes') or []:
            if isinstance(item, dict):
                outcomes.append(Outcome.from_dict(item))
            else:
                # Bare outcome ID
                outcomes.append(Outcome(outcome_id=item))
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"Unknown hypothesis field(s): {', '.join(unknown)}")
        return cls(outcomes=tuple(outcomes), **data)


def create_outcome(
    outcome_id: int,
    outcome_of_interest: bool = True,
    true_effect_size: Optional[float] = None,
    **kwargs,
) -> Outcome:
    """Create an outcome descriptor."""
    return Outcome(
        outcome_id=outcome_id,
        outcome_of_interest=outcome_of_interest,
        true_effect_size=true_effect_size,
        **kwargs,
    )


def create_target_comparator_outcomes(
    target_id: int,
    comparator_id: int,
    outcomes: list,
    excluded_covariate_concept_ids: Optional[list[int]] = None,
    included_covariate_concept_ids: Optional[list[int]] = None,
) -> TargetComparatorOutcomes:
    """Create a hypothesis. Plain integers in ``outcomes`` become outcomes of interest."""
    return TargetComparatorOutcomes(
        target_id=target_id,
        comparator_id=comparator_id,
        outcomes=tuple(o if isinstance(o, Outcome) else Outcome(outcome_id=o) for o in outcomes),
        excluded_covariate_concept_ids=tuple(excluded_covariate_concept_ids or ()),
        included_covariate_concept_ids=tuple(included_covariate_concept_ids or ()),
    )


# =============================================================================
# REGISTRY
# =============================================================================

class HypothesisRegistry:
    """
    Validated, ordered collection of hypotheses.

    Parameters
    ----------
    hypotheses : list[TargetComparatorOutcomes]
        Hypotheses in the order their rows should appear

    Raises
    ------
    DuplicateIdError
        If a (target, comparator, outcome) triple is listed twice
    """

    def __init__(self, hypotheses: list[TargetComparatorOutcomes]):
        self.hypotheses = list(hypotheses)
        seen = set()
        for tco in self.hypotheses:
            if not isinstance(tco, TargetComparatorOutcomes):
                raise ConfigurationError(
                    f"Hypotheses must be TargetComparatorOutcomes, got {type(tco).__name__}"
                )
            for outcome in tco.outcomes:
                key = (tco.target_id, tco.comparator_id, outcome.outcome_id)
                if key in seen:
                    raise DuplicateIdError(
                        "Target {}, comparator {}, outcome {} is listed more than once".format(*key)
                    )
                seen.add(key)

    def __len__(self) -> int:
        return len(self.hypotheses)

    def __iter__(self) -> Iterator[TargetComparatorOutcomes]:
        return iter(self.hypotheses)

    def components(self) -> Iterator[tuple[TargetComparatorOutcomes, Outcome]]:
        """Yield every (hypothesis, outcome) pair in order."""
        for tco in self.hypotheses:
            for outcome in tco.outcomes:
                yield tco, outcome

    def outcome_ids_for_pair(self, target_id: int, comparator_id: int) -> list[int]:
        """Sorted union of outcome IDs registered for one target-comparator pair."""
        ids = set()
        for tco in self.hypotheses:
            if tco.target_id == target_id and tco.comparator_id == comparator_id:
                ids.update(tco.outcome_ids)
        return sorted(ids)

    def outcome_table(self) -> pd.DataFrame:
        """One row per (target, comparator, outcome) with interest flag and true effect size."""
        rows = [
            {
                'target_id': tco.target_id,
                'comparator_id': tco.comparator_id,
                'outcome_id': o.outcome_id,
                'outcome_of_interest': o.outcome_of_interest,
                'true_effect_size': o.true_effect_size,
            }
            for tco, o in self.components()
        ]
        return pd.DataFrame(rows, columns=[
            'target_id', 'comparator_id', 'outcome_id', 'outcome_of_interest', 'true_effect_size',
        ])

    def negative_controls(self) -> list[tuple[int, int, int]]:
        """(target, comparator, outcome) triples with a true effect size of 1."""
        return [
            (tco.target_id, tco.comparator_id, o.outcome_id)
            for tco, o in self.components()
            if o.true_effect_size == 1
        ]


# =============================================================================
# EXCLUSIONS
# =============================================================================

def normalize_exclusions(
    analyses_to_exclude: Union[None, pd.DataFrame, list[dict]],
) -> list[dict]:
    """
    Normalize an exclusion list to a list of dicts.

    Each row holds any subset of analysis_id, target_id, comparator_id and
    outcome_id. A combination is excluded when it matches every key of a row.
    """
    if analyses_to_exclude is None:
        return []
    if isinstance(analyses_to_exclude, pd.DataFrame):
        records = analyses_to_exclude.to_dict(orient='records')
    else:
        records = list(analyses_to_exclude)

    rules = []
    for record in records:
        unknown = sorted(set(record) - set(EXCLUSION_KEYS))
        if unknown:
            raise ConfigurationError(
                f"Unknown exclusion key(s) {unknown}. Allowed: {list(EXCLUSION_KEYS)}"
            )
        rule = {k: int(v) for k, v in record.items() if v is not None and not pd.isna(v)}
        if not rule:
            raise ConfigurationError("Exclusion rows must name at least one key")
        rules.append(rule)
    return rules


def is_excluded(
    rules: list[dict],
    analysis_id: int,
    target_id: int,
    comparator_id: int,
    outcome_id: int,
) -> bool:
    """Check whether a combination matches any exclusion rule."""
    values = {
        'analysis_id': analysis_id,
        'target_id': target_id,
        'comparator_id': comparator_id,
        'outcome_id': outcome_id,
    }
    return any(all(values[k] == v for k, v in rule.items()) for rule in rules)
