"""
Base Protocol and Types for Cohort Method Backends.

Defines the interface that the statistical collaborators must implement:
data extraction, study population definition, propensity modeling,
trimming/matching/stratification, covariate balance and outcome models.
Uses Python's Protocol for structural subtyping (duck typing with type hints).

Populations are pandas DataFrames with one row per exposure episode and
(at least) the columns ``row_id``, ``person_id``, ``treatment`` (1 = target,
0 = comparator), ``time_at_risk``, ``outcome_count`` and ``days_to_event``.
Later stages add ``propensity_score``, ``preference_score``, ``stratum_id``
and ``iptw``.

Usage
-----
    from cohort_method.base import BaseBackend, CohortMethodData, OutcomeModel

    class MyBackend(BaseBackend):
        @property
        def name(self) -> str:
            return 'my_backend'

        def get_db_cohort_method_data(self, connection_details, ...) -> CohortMethodData:
            ...
"""
from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from typing import Any, Optional, Protocol, runtime_checkable

import numpy as np
import pandas as pd
from scipy import stats


# =============================================================================
# DATA CONTAINERS
# =============================================================================

COHORT_COLUMNS = ['row_id', 'person_id', 'treatment', 'cohort_start_date',
                  'days_from_obs_start', 'days_to_cohort_end', 'days_to_obs_end']
OUTCOME_COLUMNS = ['row_id', 'outcome_id', 'days_to_event']
COVARIATE_COLUMNS = ['row_id', 'covariate_id', 'covariate_value']
COVARIATE_REF_COLUMNS = ['covariate_id', 'covariate_name', 'concept_id']


@dataclass
class CohortMethodData:
    """
    Extracted cohorts, outcomes and covariates for one target-comparator pair.

    Attributes
    ----------
    cohorts : pd.DataFrame
        One row per exposure episode (see ``COHORT_COLUMNS``)
    outcomes : pd.DataFrame
        Outcome events relative to cohort start (see ``OUTCOME_COLUMNS``)
    covariates : pd.DataFrame
        Sparse covariate values in long format (see ``COVARIATE_COLUMNS``)
    covariate_ref : pd.DataFrame
        Covariate names and concept IDs (see ``COVARIATE_REF_COLUMNS``)
    metadata : dict
        Target/comparator/outcome IDs and extraction attrition
    """

    cohorts: pd.DataFrame
    outcomes: pd.DataFrame
    covariates: pd.DataFrame
    covariate_ref: pd.DataFrame
    metadata: dict = field(default_factory=dict)

    @property
    def target_id(self) -> Optional[int]:
        return self.metadata.get('target_id')

    @property
    def comparator_id(self) -> Optional[int]:
        return self.metadata.get('comparator_id')

    @property
    def outcome_ids(self) -> list[int]:
        return list(self.metadata.get('outcome_ids', []))

    def covariate_ids(self, concept_ids_excluded: tuple = (), concept_ids_included: tuple = ()) -> list[int]:
        """Covariate IDs after applying concept-level inclusion/exclusion."""
        ref = self.covariate_ref
        if concept_ids_included:
            ref = ref[ref['concept_id'].isin(concept_ids_included)]
        if concept_ids_excluded:
            ref = ref[~ref['concept_id'].isin(concept_ids_excluded)]
        return sorted(int(c) for c in ref['covariate_id'])

    def covariate_matrix(self, row_ids, covariate_ids: Optional[list[int]] = None) -> np.ndarray:
        """
        Dense covariate matrix for a set of rows.

        Parameters
        ----------
        row_ids : array-like
            Row IDs in the order of the returned matrix rows
        covariate_ids : list[int], optional
            Covariates in the order of the returned columns (default: all)

        Returns
        -------
        np.ndarray
            Matrix of shape (len(row_ids), len(covariate_ids))
        """
        row_ids = np.asarray(row_ids)
        if covariate_ids is None:
            covariate_ids = sorted(int(c) for c in self.covariate_ref['covariate_id'])
        matrix = np.zeros((len(row_ids), len(covariate_ids)))
        if len(row_ids) == 0 or len(covariate_ids) == 0:
            return matrix
        row_pos = pd.Series(np.arange(len(row_ids)), index=row_ids)
        col_pos = pd.Series(np.arange(len(covariate_ids)), index=covariate_ids)
        cov = self.covariates[
            self.covariates['row_id'].isin(row_pos.index)
            & self.covariates['covariate_id'].isin(col_pos.index)
        ]
        matrix[row_pos[cov['row_id']].values, col_pos[cov['covariate_id']].values] = cov['covariate_value'].values
        return matrix


@dataclass
class OutcomeModel:
    """
    Fitted outcome model for one target-comparator-outcome-analysis.

    Attributes
    ----------
    outcome_id : int
        Outcome cohort ID
    model_type : str
        'cox', 'logistic' or 'poisson'
    log_rr : float
        Estimated log relative risk (hazard ratio, odds ratio or rate ratio)
    se_log_rr : float
        Standard error of ``log_rr``
    converged : bool
        Whether the fitter converged
    target_subjects, comparator_subjects : int
        Subjects per arm in the fitted population
    target_days, comparator_days : float
        Time at risk per arm
    target_outcomes, comparator_outcomes : int
        Subjects with the outcome per arm
    stratified, use_covariates, inverse_pt_weighting : bool
        Model settings used
    warnings : list[str]
        Non-fatal fitting messages
    """

    outcome_id: Optional[int]
    model_type: str
    log_rr: float = float('nan')
    se_log_rr: float = float('nan')
    converged: bool = False
    target_subjects: int = 0
    comparator_subjects: int = 0
    target_days: float = 0.0
    comparator_days: float = 0.0
    target_outcomes: int = 0
    comparator_outcomes: int = 0
    stratified: bool = False
    use_covariates: bool = False
    inverse_pt_weighting: bool = False
    warnings: list = field(default_factory=list)

    @property
    def rr(self) -> float:
        return math.exp(self.log_rr) if math.isfinite(self.log_rr) else float('nan')

    @property
    def ci_95_lb(self) -> float:
        return self._ci_bound(-1)

    @property
    def ci_95_ub(self) -> float:
        return self._ci_bound(1)

    def _ci_bound(self, sign: int) -> float:
        if not (math.isfinite(self.log_rr) and math.isfinite(self.se_log_rr)):
            return float('nan')
        return math.exp(self.log_rr + sign * stats.norm.ppf(0.975) * self.se_log_rr)

    @property
    def p(self) -> float:
        """Two-sided p-value of the Wald test for log_rr = 0."""
        if not (math.isfinite(self.log_rr) and math.isfinite(self.se_log_rr)) or self.se_log_rr <= 0:
            return float('nan')
        return float(2 * stats.norm.sf(abs(self.log_rr / self.se_log_rr)))

    def to_dict(self) -> dict:
        """Convert to dictionary, including derived estimates."""
        data = asdict(self)
        data.update({
            'rr': self.rr,
            'ci_95_lb': self.ci_95_lb,
            'ci_95_ub': self.ci_95_ub,
            'p': self.p,
        })
        return data


# =============================================================================
# BACKEND INTERFACE
# =============================================================================

@runtime_checkable
class CohortMethodBackend(Protocol):
    """
    Protocol defining the statistical collaborators used by the stages.

    Every method is a pure function of its inputs; the engine persists the
    return values as artifacts.
    """

    @property
    def name(self) -> str:
        """Return the backend identifier (e.g., 'simulation')."""
        ...

    @property
    def version(self) -> str:
        """Return the backend/package version."""
        ...

    def validate_installation(self) -> tuple[bool, str]:
        """
        Check if the backend is properly configured and available.

        Returns
        -------
        tuple[bool, str]
            (is_available, message) - True if usable, with status message
        """
        ...

    def get_db_cohort_method_data(
        self,
        connection_details: dict,
        target_id: int,
        comparator_id: int,
        outcome_ids: list[int],
        args: dict,
    ) -> CohortMethodData:
        """
        Extract cohorts, outcomes and covariates for a target-comparator pair.

        Parameters
        ----------
        connection_details : dict
            Backend-specific connection settings
        target_id, comparator_id : int
            Exposure cohort IDs
        outcome_ids : list[int]
            Every outcome registered for the pair
        args : dict
            ``GetDbCohortMethodDataArgs`` as a dictionary

        Returns
        -------
        CohortMethodData
        """
        ...

    def create_study_population(
        self,
        cohort_method_data: CohortMethodData,
        args: dict,
        outcome_id: Optional[int] = None,
        population: Optional[pd.DataFrame] = None,
    ) -> pd.DataFrame:
        """
        Define the study population, optionally for one outcome.

        When ``population`` is given the restrictions are applied to it
        instead of to all extracted cohorts, preserving its extra columns.
        """
        ...

    def create_ps(
        self,
        cohort_method_data: CohortMethodData,
        population: pd.DataFrame,
        args: dict,
        excluded_covariate_concept_ids: tuple = (),
        included_covariate_concept_ids: tuple = (),
    ) -> pd.DataFrame:
        """Fit the propensity model; returns the population with scores."""
        ...

    def trim_by_ps(self, population: pd.DataFrame, args: dict) -> pd.DataFrame:
        ...

    def match_on_ps(
        self,
        population: pd.DataFrame,
        args: dict,
        cohort_method_data: Optional[CohortMethodData] = None,
    ) -> pd.DataFrame:
        ...

    def stratify_by_ps(
        self,
        population: pd.DataFrame,
        args: dict,
        cohort_method_data: Optional[CohortMethodData] = None,
    ) -> pd.DataFrame:
        ...

    def compute_covariate_balance(
        self,
        population: pd.DataFrame,
        cohort_method_data: CohortMethodData,
        args: dict,
    ) -> pd.DataFrame:
        """Standardized differences before and after adjustment, one row per covariate."""
        ...

    def fit_outcome_model(
        self,
        population: pd.DataFrame,
        cohort_method_data: CohortMethodData,
        args: dict,
    ) -> OutcomeModel:
        ...


class BaseBackend:
    """
    Base implementation with common functionality for backends.

    Concrete backends should inherit from this class and override the
    stage methods.
    """

    def __init__(self):
        """Initialize base backend."""
        pass

    @property
    def name(self) -> str:
        """Return backend name (must be overridden)."""
        raise NotImplementedError

    @property
    def version(self) -> str:
        """Return backend version (must be overridden)."""
        raise NotImplementedError

    def validate_installation(self) -> tuple[bool, str]:
        """Validate installation (must be overridden)."""
        raise NotImplementedError

    def get_db_cohort_method_data(self, connection_details: dict, target_id: int,
                                  comparator_id: int, outcome_ids: list[int],
                                  args: dict) -> CohortMethodData:
        raise NotImplementedError

    def create_study_population(self, cohort_method_data: CohortMethodData, args: dict,
                                outcome_id: Optional[int] = None,
                                population: Optional[pd.DataFrame] = None) -> pd.DataFrame:
        raise NotImplementedError

    def create_ps(self, cohort_method_data: CohortMethodData, population: pd.DataFrame,
                  args: dict, excluded_covariate_concept_ids: tuple = (),
                  included_covariate_concept_ids: tuple = ()) -> pd.DataFrame:
        raise NotImplementedError

    def trim_by_ps(self, population: pd.DataFrame, args: dict) -> pd.DataFrame:
        raise NotImplementedError

    def match_on_ps(self, population: pd.DataFrame, args: dict,
                    cohort_method_data: Optional[CohortMethodData] = None) -> pd.DataFrame:
        raise NotImplementedError

    def stratify_by_ps(self, population: pd.DataFrame, args: dict,
                       cohort_method_data: Optional[CohortMethodData] = None) -> pd.DataFrame:
        raise NotImplementedError

    def compute_covariate_balance(self, population: pd.DataFrame,
                                  cohort_method_data: CohortMethodData,
                                  args: dict) -> pd.DataFrame:
        raise NotImplementedError

    def fit_outcome_model(self, population: pd.DataFrame,
                          cohort_method_data: CohortMethodData,
                          args: dict) -> OutcomeModel:
        raise NotImplementedError

    def describe(self) -> dict[str, Any]:
        """Name, version and availability of this backend."""
        available, message = self.validate_installation()
        return {
            'name': self.name,
            'available': available,
            'version': self.version if available else 'N/A',
            'message': message,
        }
