"""
Stage Argument Bundles and Analysis Specifications.

Each pipeline stage is configured by one immutable argument bundle. A
``CmAnalysis`` packages the bundles for one analysis; a bundle that is absent
means the stage is skipped for that analysis.

Usage
-----
    from cohort_method.arguments import (
        CreatePsArgs,
        FitOutcomeModelArgs,
        StratifyByPsArgs,
        create_cm_analysis,
    )

    analysis = create_cm_analysis(
        analysis_id=1,
        description='PS stratification, Cox',
        create_ps_args=CreatePsArgs(),
        stratify_by_ps_args=StratifyByPsArgs(number_of_strata=5),
        fit_outcome_model_args=FitOutcomeModelArgs(model_type='cox', stratified=True),
    )
"""
from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any, ClassVar, Optional

from .errors import ConfigurationError


ANCHORS = ('cohort start', 'cohort end')
MODEL_TYPES = ('cox', 'logistic', 'poisson')
BASE_SELECTIONS = ('all', 'target', 'comparator')
CALIPER_SCALES = ('propensity score', 'standardized', 'standardized logit')
ESTIMATORS = ('ate', 'att', 'ato')
DUPLICATE_SUBJECT_OPTIONS = ('keep all', 'keep first', 'remove all')


def _freeze(value: Any) -> Any:
    """Lists become tuples so bundles stay immutable."""
    if isinstance(value, list):
        return tuple(_freeze(v) for v in value)
    return value


def _thaw(value: Any) -> Any:
    """Tuples become lists for YAML/JSON output."""
    if isinstance(value, tuple):
        return [_thaw(v) for v in value]
    if isinstance(value, dict):
        return {k: _thaw(v) for k, v in value.items()}
    return value


class _Args:
    """Shared serialization for argument bundles."""

    _name: ClassVar[str] = 'args'

    def __post_init__(self):
        for f in dataclasses.fields(self):
            value = getattr(self, f.name)
            if isinstance(value, list):
                object.__setattr__(self, f.name, _freeze(value))
            elif isinstance(value, dict):
                object.__setattr__(self, f.name, dict(value))
        errors = self.validate()
        if errors:
            raise ConfigurationError(
                f"Invalid {self._name}:\n" + "\n".join(f"  - {e}" for e in errors)
            )

    def validate(self) -> list[str]:
        """Return a list of validation messages (empty if valid)."""
        return []

    def to_dict(self) -> dict:
        """Convert to a plain dictionary for serialization."""
        return {f.name: _thaw(getattr(self, f.name)) for f in dataclasses.fields(self)}

    @classmethod
    def from_dict(cls, data: Optional[dict]):
        """Create from a dictionary, rejecting unknown keys."""
        data = dict(data or {})
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(
                f"Unknown field(s) for {cls._name}: {', '.join(unknown)}"
            )
        return cls(**data)


def _check_choice(errors: list, name: str, value: Any, choices: tuple) -> None:
    if value not in choices:
        errors.append(f"'{name}' must be one of {list(choices)}, got {value!r}")


def _check_non_negative(errors: list, name: str, value: Any) -> None:
    if value is not None and value < 0:
        errors.append(f"'{name}' must be non-negative, got {value}")


# =============================================================================
# STAGE ARGUMENT BUNDLES
# =============================================================================

@dataclass(frozen=True)
class GetDbCohortMethodDataArgs(_Args):
    """Arguments for extracting cohorts, outcomes and covariates."""

    _name: ClassVar[str] = 'get_db_cohort_method_data_args'

    study_start_date: str = ''
    study_end_date: str = ''
    first_exposure_only: bool = False
    remove_duplicate_subjects: str = 'keep all'
    restrict_to_common_period: bool = False
    washout_period: int = 0
    max_cohort_size: int = 0
    covariate_settings: dict = field(default_factory=dict)

    def validate(self) -> list[str]:
        errors = []
        _check_choice(errors, 'remove_duplicate_subjects', self.remove_duplicate_subjects,
                      DUPLICATE_SUBJECT_OPTIONS)
        _check_non_negative(errors, 'washout_period', self.washout_period)
        _check_non_negative(errors, 'max_cohort_size', self.max_cohort_size)
        return errors


@dataclass(frozen=True)
class CreateStudyPopulationArgs(_Args):
    """Arguments for defining the study population and time at risk."""

    _name: ClassVar[str] = 'create_study_population_args'

    first_exposure_only: bool = False
    restrict_to_common_period: bool = False
    washout_period: int = 0
    remove_duplicate_subjects: str = 'keep all'
    remove_subjects_with_prior_outcome: bool = True
    prior_outcome_lookback: int = 99999
    min_days_at_risk: int = 1
    max_days_at_risk: int = 99999
    risk_window_start: int = 0
    start_anchor: str = 'cohort start'
    risk_window_end: int = 0
    end_anchor: str = 'cohort end'
    censor_at_new_risk_window: bool = False

    def validate(self) -> list[str]:
        errors = []
        _check_choice(errors, 'remove_duplicate_subjects', self.remove_duplicate_subjects,
                      DUPLICATE_SUBJECT_OPTIONS)
        _check_choice(errors, 'start_anchor', self.start_anchor, ANCHORS)
        _check_choice(errors, 'end_anchor', self.end_anchor, ANCHORS)
        _check_non_negative(errors, 'washout_period', self.washout_period)
        _check_non_negative(errors, 'prior_outcome_lookback', self.prior_outcome_lookback)
        _check_non_negative(errors, 'min_days_at_risk', self.min_days_at_risk)
        if self.max_days_at_risk < self.min_days_at_risk:
            errors.append("'max_days_at_risk' must be >= 'min_days_at_risk'")
        return errors


@dataclass(frozen=True)
class CreatePsArgs(_Args):
    """Arguments for fitting the propensity model."""

    _name: ClassVar[str] = 'create_ps_args'

    exclude_covariate_ids: tuple = ()
    include_covariate_ids: tuple = ()
    max_cohort_size_for_fitting: int = 250000
    error_on_high_correlation: bool = True
    stop_on_error: bool = True
    prior_variance: float = 1.0
    estimator: str = 'att'

    def validate(self) -> list[str]:
        errors = []
        _check_choice(errors, 'estimator', self.estimator, ESTIMATORS)
        _check_non_negative(errors, 'max_cohort_size_for_fitting', self.max_cohort_size_for_fitting)
        if self.prior_variance <= 0:
            errors.append(f"'prior_variance' must be positive, got {self.prior_variance}")
        overlap = set(self.exclude_covariate_ids) & set(self.include_covariate_ids)
        if overlap:
            errors.append(f"Covariates both included and excluded: {sorted(overlap)}")
        return errors


@dataclass(frozen=True)
class TrimByPsArgs(_Args):
    """Arguments for trimming the population by propensity score."""

    _name: ClassVar[str] = 'trim_by_ps_args'

    trim_fraction: Optional[float] = None
    equipoise_bounds: Optional[tuple] = None
    max_weight: Optional[float] = None

    def validate(self) -> list[str]:
        errors = []
        if self.trim_fraction is None and self.equipoise_bounds is None and self.max_weight is None:
            errors.append("At least one of 'trim_fraction', 'equipoise_bounds' or 'max_weight' is required")
        if self.trim_fraction is not None and not 0 <= self.trim_fraction < 0.5:
            errors.append(f"'trim_fraction' must be in [0, 0.5), got {self.trim_fraction}")
        if self.equipoise_bounds is not None:
            bounds = self.equipoise_bounds
            if len(bounds) != 2 or not 0 <= bounds[0] < bounds[1] <= 1:
                errors.append(f"'equipoise_bounds' must be (lower, upper) within [0, 1], got {bounds}")
        if self.max_weight is not None and self.max_weight <= 0:
            errors.append(f"'max_weight' must be positive, got {self.max_weight}")
        return errors


@dataclass(frozen=True)
class MatchOnPsArgs(_Args):
    """Arguments for matching on propensity score (optionally plus covariates)."""

    _name: ClassVar[str] = 'match_on_ps_args'

    caliper: float = 0.2
    caliper_scale: str = 'standardized logit'
    max_ratio: int = 1
    allow_reverse_match: bool = False
    match_covariate_ids: tuple = ()

    def validate(self) -> list[str]:
        errors = []
        _check_choice(errors, 'caliper_scale', self.caliper_scale, CALIPER_SCALES)
        _check_non_negative(errors, 'caliper', self.caliper)
        _check_non_negative(errors, 'max_ratio', self.max_ratio)
        return errors


@dataclass(frozen=True)
class StratifyByPsArgs(_Args):
    """Arguments for stratifying on propensity score (optionally plus covariates)."""

    _name: ClassVar[str] = 'stratify_by_ps_args'

    number_of_strata: int = 5
    base_selection: str = 'all'
    stratification_covariate_ids: tuple = ()

    def validate(self) -> list[str]:
        errors = []
        _check_choice(errors, 'base_selection', self.base_selection, BASE_SELECTIONS)
        if self.number_of_strata < 1:
            errors.append(f"'number_of_strata' must be positive, got {self.number_of_strata}")
        return errors


@dataclass(frozen=True)
class ComputeCovariateBalanceArgs(_Args):
    """Arguments for covariate balance (shared or per outcome)."""

    _name: ClassVar[str] = 'compute_covariate_balance_args'

    covariate_filter: Optional[tuple] = None
    max_cohort_size: int = 250000

    def validate(self) -> list[str]:
        errors = []
        _check_non_negative(errors, 'max_cohort_size', self.max_cohort_size)
        return errors


@dataclass(frozen=True)
class FitOutcomeModelArgs(_Args):
    """Arguments for fitting the outcome model."""

    _name: ClassVar[str] = 'fit_outcome_model_args'

    model_type: str = 'cox'
    stratified: bool = False
    use_covariates: bool = False
    inverse_pt_weighting: bool = False
    prior_variance: float = 1.0

    def validate(self) -> list[str]:
        errors = []
        _check_choice(errors, 'model_type', self.model_type, MODEL_TYPES)
        if self.prior_variance <= 0:
            errors.append(f"'prior_variance' must be positive, got {self.prior_variance}")
        if self.stratified and self.inverse_pt_weighting:
            errors.append("'stratified' and 'inverse_pt_weighting' cannot both be set")
        return errors


# Bundle field name -> bundle class, in pipeline order
STAGE_ARGS = {
    'get_db_cohort_method_data_args': GetDbCohortMethodDataArgs,
    'create_study_population_args': CreateStudyPopulationArgs,
    'create_ps_args': CreatePsArgs,
    'trim_by_ps_args': TrimByPsArgs,
    'match_on_ps_args': MatchOnPsArgs,
    'stratify_by_ps_args': StratifyByPsArgs,
    'compute_shared_covariate_balance_args': ComputeCovariateBalanceArgs,
    'compute_covariate_balance_args': ComputeCovariateBalanceArgs,
    'fit_outcome_model_args': FitOutcomeModelArgs,
}


# =============================================================================
# ANALYSIS SPECIFICATION
# =============================================================================

@dataclass(frozen=True)
class CmAnalysis:
    """
    One analysis specification: an ordered set of stage argument bundles.

    Attributes
    ----------
    analysis_id : int
        User-supplied identifier, unique within one execution request
    description : str
        Free text; never part of any task fingerprint
    get_db_cohort_method_data_args, create_study_population_args
        Required bundles
    create_ps_args, trim_by_ps_args, match_on_ps_args, stratify_by_ps_args,
    compute_shared_covariate_balance_args, compute_covariate_balance_args,
    fit_outcome_model_args
        Optional bundles; None skips the stage
    """

    analysis_id: int
    description: str = ''
    get_db_cohort_method_data_args: GetDbCohortMethodDataArgs = field(
        default_factory=GetDbCohortMethodDataArgs)
    create_study_population_args: CreateStudyPopulationArgs = field(
        default_factory=CreateStudyPopulationArgs)
    create_ps_args: Optional[CreatePsArgs] = None
    trim_by_ps_args: Optional[TrimByPsArgs] = None
    match_on_ps_args: Optional[MatchOnPsArgs] = None
    stratify_by_ps_args: Optional[StratifyByPsArgs] = None
    compute_shared_covariate_balance_args: Optional[ComputeCovariateBalanceArgs] = None
    compute_covariate_balance_args: Optional[ComputeCovariateBalanceArgs] = None
    fit_outcome_model_args: Optional[FitOutcomeModelArgs] = None

    def __post_init__(self):
        if isinstance(self.analysis_id, bool) or not isinstance(self.analysis_id, int):
            raise ConfigurationError(
                f"analysis_id must be an integer, got {self.analysis_id!r}"
            )
        for name, cls in STAGE_ARGS.items():
            value = getattr(self, name)
            if value is not None and not isinstance(value, cls):
                raise ConfigurationError(
                    f"Analysis {self.analysis_id}: '{name}' must be a {cls.__name__}, "
                    f"got {type(value).__name__}"
                )
        errors = self.validate()
        if errors:
            raise ConfigurationError(
                f"Analysis {self.analysis_id} is inconsistent:\n"
                + "\n".join(f"  - {e}" for e in errors)
            )

    def validate(self) -> list[str]:
        """Check that every configured stage has the upstream stages it needs."""
        errors = []
        has_ps = self.create_ps_args is not None

        if self.get_db_cohort_method_data_args is None:
            errors.append("'get_db_cohort_method_data_args' is required")
        if self.create_study_population_args is None:
            errors.append("'create_study_population_args' is required")

        if self.match_on_ps_args is not None and self.stratify_by_ps_args is not None:
            errors.append("Cannot both match and stratify on the propensity score")

        if not has_ps:
            if self.trim_by_ps_args is not None:
                errors.append("Trimming by PS requested without 'create_ps_args'")
            if self.match_on_ps_args is not None:
                if self.match_on_ps_args.match_covariate_ids:
                    errors.append("Matching on PS and covariates requested without 'create_ps_args'")
                else:
                    errors.append("Matching on PS requested without 'create_ps_args'")
            if self.stratify_by_ps_args is not None:
                if self.stratify_by_ps_args.stratification_covariate_ids:
                    errors.append("Stratifying by PS and covariates requested without 'create_ps_args'")
                else:
                    errors.append("Stratifying by PS requested without 'create_ps_args'")
            if self.compute_shared_covariate_balance_args is not None:
                errors.append("Shared covariate balance requested without 'create_ps_args'")
            if self.compute_covariate_balance_args is not None:
                errors.append("Covariate balance requested without 'create_ps_args'")

        om = self.fit_outcome_model_args
        if om is not None:
            if om.stratified and self.match_on_ps_args is None and self.stratify_by_ps_args is None:
                errors.append("Stratified outcome model requires matching or stratification")
            if om.inverse_pt_weighting and not has_ps:
                errors.append("Inverse probability of treatment weighting requires 'create_ps_args'")

        return errors

    @property
    def adjusts_population(self) -> bool:
        """True if trimming, matching or stratification is configured."""
        return any(a is not None for a in (
            self.trim_by_ps_args, self.match_on_ps_args, self.stratify_by_ps_args))

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization (absent bundles omitted)."""
        data = {'analysis_id': self.analysis_id, 'description': self.description}
        for name in STAGE_ARGS:
            value = getattr(self, name)
            if value is not None:
                data[name] = value.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> 'CmAnalysis':
        """Create from dictionary (e.g. one entry of a YAML analyses list)."""
        data = dict(data)
        if 'analysis_id' not in data:
            raise ConfigurationError("Analysis is missing required field 'analysis_id'")
        unknown = sorted(set(data) - set(STAGE_ARGS) - {'analysis_id', 'description'})
        if unknown:
            raise ConfigurationError(
                f"Analysis {data['analysis_id']}: unknown field(s) {', '.join(unknown)}"
            )
        kwargs = {
            'analysis_id': data['analysis_id'],
            'description': data.get('description') or '',
        }
        for name, arg_cls in STAGE_ARGS.items():
            if name in data and data[name] is not None:
                kwargs[name] = arg_cls.from_dict(data[name])
        return cls(**kwargs)


def create_cm_analysis(
    analysis_id: int,
    description: str = '',
    get_db_cohort_method_data_args: Optional[GetDbCohortMethodDataArgs] = None,
    create_study_population_args: Optional[CreateStudyPopulationArgs] = None,
    create_ps_args: Optional[CreatePsArgs] = None,
    trim_by_ps_args: Optional[TrimByPsArgs] = None,
    match_on_ps_args: Optional[MatchOnPsArgs] = None,
    stratify_by_ps_args: Optional[StratifyByPsArgs] = None,
    compute_shared_covariate_balance_args: Optional[ComputeCovariateBalanceArgs] = None,
    compute_covariate_balance_args: Optional[ComputeCovariateBalanceArgs] = None,
    fit_outcome_model_args: Optional[FitOutcomeModelArgs] = None,
) -> CmAnalysis:
    """
    Create an analysis specification, filling required bundles with defaults.

    Raises
    ------
    ConfigurationError
        If a stage references an upstream stage that is not configured
    """
    return CmAnalysis(
        analysis_id=analysis_id,
        description=description,
        get_db_cohort_method_data_args=get_db_cohort_method_data_args or GetDbCohortMethodDataArgs(),
        create_study_population_args=create_study_population_args or CreateStudyPopulationArgs(),
        create_ps_args=create_ps_args,
        trim_by_ps_args=trim_by_ps_args,
        match_on_ps_args=match_on_ps_args,
        stratify_by_ps_args=stratify_by_ps_args,
        compute_shared_covariate_balance_args=compute_shared_covariate_balance_args,
        compute_covariate_balance_args=compute_covariate_balance_args,
        fit_outcome_model_args=fit_outcome_model_args,
    )
