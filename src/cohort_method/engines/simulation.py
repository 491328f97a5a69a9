"""
Simulation Backend.

Native Python implementation of the cohort method collaborators on
synthetic data. Cohorts, binary covariates and outcomes are generated
deterministically with NumPy from the connection details, so the same
request always produces the same artifacts. This is the default backend and
serves as the reference implementation.

Connection details
------------------
n_persons : int
    Exposure episodes per target-comparator pair (default 2000)
n_covariates : int
    Binary baseline covariates (default 10)
seed : int
    Base random seed (default 42)
true_effects : dict
    Outcome ID -> true relative risk of target vs comparator (default 1)

Usage
-----
    from cohort_method import get_backend

    backend = get_backend('simulation')
    data = backend.get_db_cohort_method_data(
        {'n_persons': 1000, 'seed': 1}, target_id=1, comparator_id=2,
        outcome_ids=[3], args=GetDbCohortMethodDataArgs().to_dict(),
    )
"""
from __future__ import annotations

from typing import Callable, Optional

import numpy as np
import pandas as pd
import scipy
from scipy.special import expit, logit

from config import SIMULATION_DEFAULTS

from ..base import (
    COHORT_COLUMNS,
    COVARIATE_COLUMNS,
    COVARIATE_REF_COLUMNS,
    OUTCOME_COLUMNS,
    BaseBackend,
    CohortMethodData,
    OutcomeModel,
)
from ..factory import register_backend


STUDY_ORIGIN = pd.Timestamp('2010-01-01')
PS_EPSILON = 1e-12
# Matching without a ratio limit
UNLIMITED_RATIO = 100


@register_backend('simulation')
class SimulationBackend(BaseBackend):
    """
    Synthetic-data backend using NumPy and SciPy.

    Features
    --------
    - Deterministic cohort, covariate and outcome simulation
    - Ridge-penalized logistic propensity model (Newton-Raphson)
    - Trimming, greedy caliper matching and PS stratification
    - Standardized-difference covariate balance
    - Poisson, logistic and Cox outcome models with optional strata,
      covariates and IPTW weights
    """

    def __init__(self):
        super().__init__()
        self._version = f"numpy {np.__version__}"

    @property
    def name(self) -> str:
        return 'simulation'

    @property
    def version(self) -> str:
        return self._version

    def validate_installation(self) -> tuple[bool, str]:
        """Check that NumPy, Pandas and SciPy are available."""
        return True, (
            f"Simulation backend ready (numpy {np.__version__}, "
            f"pandas {pd.__version__}, scipy {scipy.__version__})"
        )

    # =========================================================================
    # EXTRACTION
    # =========================================================================

    def get_db_cohort_method_data(
        self,
        connection_details: dict,
        target_id: int,
        comparator_id: int,
        outcome_ids: list[int],
        args: dict,
    ) -> CohortMethodData:
        """
        Simulate cohorts, covariates and outcomes for one pair.

        The simulated population depends only on the seed and the pair, so
        adding outcomes never changes the cohorts or covariates.
        """
        settings = {**SIMULATION_DEFAULTS, **(connection_details or {})}
        n = int(settings['n_persons'])
        p = int(settings['n_covariates'])
        seed = int(settings['seed'])
        true_effects = {int(k): float(v) for k, v in (settings.get('true_effects') or {}).items()}

        rng = np.random.default_rng([seed, target_id, comparator_id])
        prevalence = rng.uniform(0.05, 0.5, p)
        X = (rng.random((n, p)) < prevalence).astype(float)
        beta_treatment = rng.normal(0, 0.5, p)
        treatment = (rng.random(n) < expit((X - prevalence) @ beta_treatment)).astype(int)

        days_to_obs_end = rng.integers(30, 2000, n)
        cohorts = pd.DataFrame({
            'row_id': np.arange(1, n + 1),
            'person_id': rng.integers(1, int(n * 0.95) + 1, n),
            'treatment': treatment,
            'cohort_start_date': STUDY_ORIGIN + pd.to_timedelta(rng.integers(0, 3650, n), unit='D'),
            'days_from_obs_start': rng.integers(0, 1500, n),
            'days_to_cohort_end': np.minimum(rng.integers(1, 720, n), days_to_obs_end),
            'days_to_obs_end': days_to_obs_end,
        }, columns=COHORT_COLUMNS)

        outcome_frames = []
        for outcome_id in sorted(outcome_ids):
            outcome_frames.append(_simulate_outcome(
                seed, target_id, comparator_id, outcome_id, X, prevalence, cohorts,
                true_effects.get(outcome_id, 1.0),
            ))
        outcomes = (pd.concat(outcome_frames, ignore_index=True) if outcome_frames
                    else pd.DataFrame(columns=OUTCOME_COLUMNS))

        attrition = [_attrition_row('Original cohorts', cohorts)]
        cohorts = self._restrict_extraction(cohorts, args, seed, attrition)

        rows, cols = np.nonzero(X[cohorts['row_id'].values - 1])
        kept_row_ids = cohorts['row_id'].values
        covariates = pd.DataFrame({
            'row_id': kept_row_ids[rows],
            'covariate_id': (cols + 1) * 1000 + 1,
            'covariate_value': 1.0,
        }, columns=COVARIATE_COLUMNS)
        covariate_ref = pd.DataFrame({
            'covariate_id': (np.arange(p) + 1) * 1000 + 1,
            'covariate_name': [f"Simulated covariate {i + 1}" for i in range(p)],
            'concept_id': np.arange(p) + 1,
        }, columns=COVARIATE_REF_COLUMNS)

        outcomes = outcomes[outcomes['row_id'].isin(kept_row_ids)].reset_index(drop=True)

        return CohortMethodData(
            cohorts=cohorts.reset_index(drop=True),
            outcomes=outcomes,
            covariates=covariates,
            covariate_ref=covariate_ref,
            metadata={
                'target_id': target_id,
                'comparator_id': comparator_id,
                'outcome_ids': sorted(outcome_ids),
                'attrition': attrition,
            },
        )

    def _restrict_extraction(self, cohorts: pd.DataFrame, args: dict, seed: int,
                             attrition: list) -> pd.DataFrame:
        if args.get('study_start_date'):
            start = pd.to_datetime(args['study_start_date'], format='%Y%m%d')
            cohorts = cohorts[cohorts['cohort_start_date'] >= start]
            attrition.append(_attrition_row('Study start date', cohorts))
        if args.get('study_end_date'):
            end = pd.to_datetime(args['study_end_date'], format='%Y%m%d')
            cohorts = cohorts[cohorts['cohort_start_date'] <= end]
            attrition.append(_attrition_row('Study end date', cohorts))
        cohorts = _restrict_cohorts(cohorts, args, attrition)
        max_size = args.get('max_cohort_size') or 0
        if max_size:
            parts = []
            for _, group in cohorts.groupby('treatment'):
                if len(group) > max_size:
                    group = group.sample(n=max_size, random_state=seed)
                parts.append(group)
            cohorts = pd.concat(parts).sort_values('row_id')
            attrition.append(_attrition_row('Max cohort size', cohorts))
        return cohorts

    # =========================================================================
    # STUDY POPULATION
    # =========================================================================

    def create_study_population(
        self,
        cohort_method_data: CohortMethodData,
        args: dict,
        outcome_id: Optional[int] = None,
        population: Optional[pd.DataFrame] = None,
    ) -> pd.DataFrame:
        """
        Define the study population and time at risk.

        Without ``population`` the cohort restrictions are applied to all
        extracted cohorts. With it, only the outcome-specific steps (prior
        outcome removal, risk window, minimum time at risk) are applied, so
        scores and strata attached to the population are kept.
        """
        if population is None:
            pop = _restrict_cohorts(cohort_method_data.cohorts.copy(), args, [])
        else:
            pop = population.copy()

        start = args['risk_window_start'] + np.where(
            args['start_anchor'] == 'cohort start', 0, pop['days_to_cohort_end'].values)
        end = args['risk_window_end'] + np.where(
            args['end_anchor'] == 'cohort start', 0, pop['days_to_cohort_end'].values)
        end = np.minimum(end, pop['days_to_obs_end'].values)
        if args.get('censor_at_new_risk_window'):
            end = np.minimum(end, _days_to_next_exposure(pop) + start - 1)
        end = np.minimum(end, start + args['max_days_at_risk'] - 1)
        pop['risk_start'] = start
        pop['risk_end'] = end
        pop['time_at_risk'] = np.maximum(end - start + 1, 0)

        pop['outcome_count'] = 0
        pop['days_to_event'] = np.nan
        if outcome_id is not None:
            events = cohort_method_data.outcomes
            events = events[events['outcome_id'] == outcome_id].merge(
                pop[['row_id', 'risk_start', 'risk_end']], on='row_id')
            if args.get('remove_subjects_with_prior_outcome'):
                prior = events[
                    (events['days_to_event'] < events['risk_start'])
                    & (events['days_to_event'] >= events['risk_start'] - args['prior_outcome_lookback'])
                ]
                pop = pop[~pop['row_id'].isin(prior['row_id'])].copy()
            in_window = events[
                (events['days_to_event'] >= events['risk_start'])
                & (events['days_to_event'] <= events['risk_end'])
            ]
            counts = in_window.groupby('row_id')['days_to_event'].agg(['size', 'min'])
            pop['outcome_count'] = pop['row_id'].map(counts['size']).fillna(0).astype(int)
            pop['days_to_event'] = pop['row_id'].map(counts['min'])

        pop = pop[pop['time_at_risk'] >= args['min_days_at_risk']].copy()
        pop['survival_time'] = np.where(
            pop['outcome_count'] > 0,
            pop['days_to_event'] - pop['risk_start'] + 1,
            pop['time_at_risk'],
        )
        return pop.reset_index(drop=True)

    # =========================================================================
    # PROPENSITY SCORE
    # =========================================================================

    def create_ps(
        self,
        cohort_method_data: CohortMethodData,
        population: pd.DataFrame,
        args: dict,
        excluded_covariate_concept_ids: tuple = (),
        included_covariate_concept_ids: tuple = (),
    ) -> pd.DataFrame:
        """
        Fit a ridge-penalized logistic propensity model.

        Raises
        ------
        ValueError
            If the population lacks one of the arms, or a covariate is
            (almost) perfectly predictive of treatment while
            ``error_on_high_correlation`` is set
        """
        pop = population.copy()
        treatment = pop['treatment'].values
        if len(pop) == 0 or treatment.min() == treatment.max():
            raise ValueError("Propensity model needs subjects in both target and comparator")

        covariate_ids = cohort_method_data.covariate_ids(
            tuple(excluded_covariate_concept_ids), tuple(included_covariate_concept_ids))
        if args.get('include_covariate_ids'):
            covariate_ids = [c for c in covariate_ids if c in set(args['include_covariate_ids'])]
        if args.get('exclude_covariate_ids'):
            covariate_ids = [c for c in covariate_ids if c not in set(args['exclude_covariate_ids'])]

        X = cohort_method_data.covariate_matrix(pop['row_id'].values, covariate_ids)
        varying = X.std(axis=0) > 0
        X, covariate_ids = X[:, varying], [c for c, v in zip(covariate_ids, varying) if v]

        if args.get('error_on_high_correlation') and X.shape[1]:
            for j, covariate_id in enumerate(covariate_ids):
                r = np.corrcoef(X[:, j], treatment)[0, 1]
                if abs(r) > 0.999:
                    raise ValueError(
                        f"Covariate {covariate_id} is highly correlated with treatment (r={r:.3f})"
                    )

        fit_rows = np.arange(len(pop))
        max_size = args.get('max_cohort_size_for_fitting') or 0
        if max_size and len(pop) > max_size:
            fit_rows = np.sort(np.random.default_rng(0).choice(len(pop), max_size, replace=False))

        design = np.column_stack([np.ones(len(pop)), X])
        penalty = np.r_[0.0, np.full(X.shape[1], 1.0 / args['prior_variance'])]
        beta, _, converged = _newton(
            _logistic_objective(design[fit_rows], treatment[fit_rows].astype(float),
                                np.ones(len(fit_rows)), penalty),
            design.shape[1],
        )
        if not converged and args.get('stop_on_error'):
            raise ValueError("Propensity model did not converge")

        ps = np.clip(expit(design @ beta), PS_EPSILON, 1 - PS_EPSILON)
        p_target = treatment.mean()
        pop['propensity_score'] = ps
        pop['preference_score'] = expit(logit(ps) - logit(p_target))
        pop['iptw'] = _iptw(ps, treatment, args.get('estimator', 'att'))
        return pop

    # =========================================================================
    # TRIMMING, MATCHING, STRATIFICATION
    # =========================================================================

    def trim_by_ps(self, population: pd.DataFrame, args: dict) -> pd.DataFrame:
        """Trim by PS tails, preference-score equipoise and/or maximum weight."""
        pop = population
        if args.get('trim_fraction'):
            fraction = args['trim_fraction']
            target = pop['treatment'] == 1
            target_cut = pop.loc[target, 'propensity_score'].quantile(fraction)
            comparator_cut = pop.loc[~target, 'propensity_score'].quantile(1 - fraction)
            pop = pop[~(target & (pop['propensity_score'] < target_cut))
                      & ~(~target & (pop['propensity_score'] > comparator_cut))]
        if args.get('equipoise_bounds'):
            lower, upper = args['equipoise_bounds']
            pop = pop[(pop['preference_score'] >= lower) & (pop['preference_score'] <= upper)]
        if args.get('max_weight'):
            pop = pop[pop['iptw'] <= args['max_weight']]
        return pop.reset_index(drop=True)

    def match_on_ps(
        self,
        population: pd.DataFrame,
        args: dict,
        cohort_method_data: Optional[CohortMethodData] = None,
    ) -> pd.DataFrame:
        """
        Greedy nearest-neighbour matching within a caliper.

        Every anchor subject first gets one partner, then a second, and so on
        up to ``max_ratio``. With ``match_covariate_ids`` subjects are only
        matched within groups of identical covariate values.
        """
        pop = population.reset_index(drop=True).copy()
        ps = np.clip(pop['propensity_score'].values, PS_EPSILON, 1 - PS_EPSILON)
        scale = args['caliper_scale']
        if scale == 'standardized logit':
            score = logit(ps)
        else:
            score = ps
        caliper = args['caliper']
        if scale != 'propensity score':
            caliper = caliper * score.std()
        if caliper <= 0:
            caliper = np.inf
        max_ratio = args['max_ratio'] or UNLIMITED_RATIO

        treatment = pop['treatment'].values
        anchor_value = 1
        if args.get('allow_reverse_match') and (treatment == 1).sum() > (treatment == 0).sum():
            anchor_value = 0

        stratum = np.full(len(pop), -1)
        next_stratum = 0
        for rows in _covariate_groups(pop, args.get('match_covariate_ids'), cohort_method_data):
            anchors = rows[treatment[rows] == anchor_value]
            anchors = anchors[np.argsort(score[anchors], kind='stable')]
            pool = rows[treatment[rows] != anchor_value]
            available = np.ones(len(pool), dtype=bool)
            for a in anchors:
                stratum[a] = next_stratum
                next_stratum += 1
            for round_ in range(max_ratio):
                if not available.any():
                    break
                matched = False
                for a in anchors:
                    if round_ > 0 and not _has_partner(stratum, a, pool):
                        continue
                    distance = np.abs(score[pool] - score[a])
                    distance[~available] = np.inf
                    j = int(np.argmin(distance))
                    if distance[j] <= caliper:
                        stratum[pool[j]] = stratum[a]
                        available[j] = False
                        matched = True
                if not matched:
                    break
            # Anchors without a partner drop out
            for a in anchors:
                if not _has_partner(stratum, a, pool):
                    stratum[a] = -1

        pop['stratum_id'] = stratum
        pop = pop[pop['stratum_id'] >= 0].copy()
        pop['stratum_id'] = pd.factorize(pop['stratum_id'], sort=True)[0]
        return pop.reset_index(drop=True)

    def stratify_by_ps(
        self,
        population: pd.DataFrame,
        args: dict,
        cohort_method_data: Optional[CohortMethodData] = None,
    ) -> pd.DataFrame:
        """Stratify on PS quantiles (optionally crossed with covariate values)."""
        pop = population.reset_index(drop=True).copy()
        ps = pop['propensity_score'].values
        base = args.get('base_selection', 'all')
        if base == 'target':
            reference = ps[pop['treatment'].values == 1]
        elif base == 'comparator':
            reference = ps[pop['treatment'].values == 0]
        else:
            reference = ps
        n_strata = args['number_of_strata']
        breaks = np.unique(np.quantile(reference, np.linspace(0, 1, n_strata + 1)[1:-1])) if len(reference) else []
        stratum = np.searchsorted(breaks, ps, side='right')

        if args.get('stratification_covariate_ids'):
            combined = np.full(len(pop), -1)
            for group_index, rows in enumerate(
                    _covariate_groups(pop, args['stratification_covariate_ids'], cohort_method_data)):
                combined[rows] = group_index * (len(breaks) + 1) + stratum[rows]
            stratum = combined

        pop['stratum_id'] = pd.factorize(stratum, sort=True)[0]
        return pop

    # =========================================================================
    # COVARIATE BALANCE
    # =========================================================================

    def compute_covariate_balance(
        self,
        population: pd.DataFrame,
        cohort_method_data: CohortMethodData,
        args: dict,
    ) -> pd.DataFrame:
        """
        Standardized differences before and after adjustment.

        "Before" uses all extracted cohorts; "after" uses the adjusted
        population, weighted within strata when strata are present. Both use
        the pooled standard deviation before adjustment.
        """
        max_size = args.get('max_cohort_size') or 0
        before = cohort_method_data.cohorts
        after = population
        if max_size:
            if len(before) > max_size:
                before = before.sample(n=max_size, random_state=0)
            if len(after) > max_size:
                after = after.sample(n=max_size, random_state=0)

        ref = cohort_method_data.covariate_ref
        if args.get('covariate_filter'):
            ref = ref[ref['covariate_id'].isin(args['covariate_filter'])]
        ref = ref.sort_values('covariate_id')
        covariate_ids = [int(c) for c in ref['covariate_id']]

        Xb = cohort_method_data.covariate_matrix(before['row_id'].values, covariate_ids)
        tb = before['treatment'].values
        Xa = cohort_method_data.covariate_matrix(after['row_id'].values, covariate_ids)
        ta = after['treatment'].values
        wa = _stratum_weights(after)

        mean_t_b, var_t_b = _weighted_moments(Xb[tb == 1], None)
        mean_c_b, var_c_b = _weighted_moments(Xb[tb == 0], None)
        mean_t_a, _ = _weighted_moments(Xa[ta == 1], wa[ta == 1])
        mean_c_a, _ = _weighted_moments(Xa[ta == 0], wa[ta == 0])
        sd = np.sqrt((var_t_b + var_c_b) / 2)
        with np.errstate(divide='ignore', invalid='ignore'):
            std_diff_before = np.where(sd > 0, (mean_t_b - mean_c_b) / sd, np.nan)
            std_diff_after = np.where(sd > 0, (mean_t_a - mean_c_a) / sd, np.nan)

        return pd.DataFrame({
            'covariate_id': covariate_ids,
            'covariate_name': ref['covariate_name'].values,
            'before_mean_target': mean_t_b,
            'before_mean_comparator': mean_c_b,
            'before_std_diff': std_diff_before,
            'after_mean_target': mean_t_a,
            'after_mean_comparator': mean_c_a,
            'after_std_diff': std_diff_after,
        })

    # =========================================================================
    # OUTCOME MODEL
    # =========================================================================

    def fit_outcome_model(
        self,
        population: pd.DataFrame,
        cohort_method_data: CohortMethodData,
        args: dict,
    ) -> OutcomeModel:
        """
        Fit a Poisson, logistic or Cox outcome model.

        Stratified Cox models use a stratified partial likelihood, stratified
        logistic models use the Breslow approximation of the conditional
        likelihood, and stratified Poisson models condition on the stratum
        totals. Covariates get a ridge penalty of ``1 / prior_variance``; the
        treatment coefficient is unpenalized.
        """
        model_type = args['model_type']
        treatment = population['treatment'].values
        outcome = population['outcome_count'].values
        target = treatment == 1
        result = OutcomeModel(
            outcome_id=None,
            model_type=model_type,
            target_subjects=int(target.sum()),
            comparator_subjects=int((~target).sum()),
            target_days=float(population.loc[target, 'time_at_risk'].sum()),
            comparator_days=float(population.loc[~target, 'time_at_risk'].sum()),
            target_outcomes=int((outcome[target] > 0).sum()),
            comparator_outcomes=int((outcome[~target] > 0).sum()),
            stratified=bool(args.get('stratified')),
            use_covariates=bool(args.get('use_covariates')),
            inverse_pt_weighting=bool(args.get('inverse_pt_weighting')),
        )
        if len(population) == 0:
            result.warnings.append('Population is empty')
            return result
        if result.target_subjects == 0 or result.comparator_subjects == 0:
            result.warnings.append('Population lacks target or comparator subjects')
            return result
        if (outcome > 0).sum() == 0:
            result.warnings.append('No outcomes in population')
            return result

        columns = [treatment.astype(float)]
        penalty = [0.0]
        if args.get('use_covariates'):
            X = cohort_method_data.covariate_matrix(population['row_id'].values)
            X = X[:, X.std(axis=0) > 0]
            columns.extend(X.T)
            penalty.extend([1.0 / args['prior_variance']] * X.shape[1])
        design = np.column_stack(columns)
        penalty = np.array(penalty)
        weights = (population['iptw'].values if args.get('inverse_pt_weighting')
                   else np.ones(len(population)))
        strata = (pd.factorize(population['stratum_id'])[0] if args.get('stratified')
                  else np.zeros(len(population), dtype=int))

        if model_type == 'cox':
            objective = _cox_objective(design, population['survival_time'].values.astype(float),
                                       (outcome > 0).astype(float), weights, strata, penalty)
        elif model_type == 'logistic' and args.get('stratified'):
            objective = _cox_objective(design, np.ones(len(population)),
                                       (outcome > 0).astype(float), weights, strata, penalty)
        elif model_type == 'logistic':
            design = np.column_stack([design, np.ones(len(population))])
            penalty = np.r_[penalty, 0.0]
            objective = _logistic_objective(design, (outcome > 0).astype(float), weights, penalty)
        elif args.get('stratified'):
            objective = _conditional_poisson_objective(
                design, outcome.astype(float), weights,
                np.log(population['time_at_risk'].values.astype(float)), strata, penalty)
        else:
            design = np.column_stack([design, np.ones(len(population))])
            penalty = np.r_[penalty, 0.0]
            objective = _poisson_objective(
                design, outcome.astype(float), weights,
                np.log(population['time_at_risk'].values.astype(float)), penalty)

        beta, cov, converged = _newton(objective, design.shape[1])
        result.log_rr = float(beta[0])
        result.se_log_rr = float(np.sqrt(cov[0, 0])) if np.isfinite(cov[0, 0]) and cov[0, 0] > 0 else float('nan')
        result.converged = bool(converged)
        if not converged:
            result.warnings.append('Outcome model did not converge')
        return result


# =============================================================================
# SIMULATION HELPERS
# =============================================================================

def _simulate_outcome(seed, target_id, comparator_id, outcome_id, X, prevalence,
                      cohorts, effect_size) -> pd.DataFrame:
    rng = np.random.default_rng([seed, target_id, comparator_id, outcome_id])
    n = len(cohorts)
    base_rate = rng.uniform(0.0005, 0.002)
    beta = rng.normal(0, 0.3, X.shape[1])
    rate = base_rate * np.exp((X - prevalence) @ beta + np.log(effect_size) * cohorts['treatment'].values)
    time_to_event = rng.exponential(1.0 / rate)
    has_event = time_to_event <= cohorts['days_to_obs_end'].values
    has_prior = rng.random(n) < 0.02
    prior_days = -rng.integers(1, np.maximum(cohorts['days_from_obs_start'].values, 1) + 1)

    frames = [
        pd.DataFrame({
            'row_id': cohorts['row_id'].values[has_event],
            'outcome_id': outcome_id,
            'days_to_event': np.floor(time_to_event[has_event]).astype(int),
        }),
        pd.DataFrame({
            'row_id': cohorts['row_id'].values[has_prior],
            'outcome_id': outcome_id,
            'days_to_event': prior_days[has_prior],
        }),
    ]
    return pd.concat(frames, ignore_index=True)[OUTCOME_COLUMNS]


def _attrition_row(description: str, cohorts: pd.DataFrame) -> dict:
    target = cohorts['treatment'] == 1
    return {
        'description': description,
        'target_persons': int(cohorts.loc[target, 'person_id'].nunique()),
        'comparator_persons': int(cohorts.loc[~target, 'person_id'].nunique()),
        'target_exposures': int(target.sum()),
        'comparator_exposures': int((~target).sum()),
    }


def _restrict_cohorts(cohorts: pd.DataFrame, args: dict, attrition: list) -> pd.DataFrame:
    """Restrictions shared by extraction and study population creation."""
    if args.get('first_exposure_only'):
        cohorts = (cohorts.sort_values(['person_id', 'cohort_start_date', 'row_id'])
                   .drop_duplicates(['person_id', 'treatment'])
                   .sort_values('row_id'))
        attrition.append(_attrition_row('First exposure only', cohorts))
    if args.get('restrict_to_common_period') and len(cohorts):
        target = cohorts['treatment'] == 1
        if target.any() and (~target).any():
            dates = cohorts['cohort_start_date']
            lower = max(dates[target].min(), dates[~target].min())
            upper = min(dates[target].max(), dates[~target].max())
            cohorts = cohorts[(dates >= lower) & (dates <= upper)]
        attrition.append(_attrition_row('Restrict to common period', cohorts))
    if args.get('washout_period'):
        cohorts = cohorts[cohorts['days_from_obs_start'] >= args['washout_period']]
        attrition.append(_attrition_row('Washout period', cohorts))
    option = args.get('remove_duplicate_subjects', 'keep all')
    if option != 'keep all':
        cohorts = _remove_duplicate_subjects(cohorts, option)
        attrition.append(_attrition_row(f"Remove duplicate subjects ({option})", cohorts))
    return cohorts


def _remove_duplicate_subjects(cohorts: pd.DataFrame, option: str) -> pd.DataFrame:
    target = cohorts['treatment'] == 1
    in_both = set(cohorts.loc[target, 'person_id']) & set(cohorts.loc[~target, 'person_id'])
    unique = cohorts[~cohorts['person_id'].isin(in_both)]
    if option == 'remove all' or not in_both:
        return unique
    # keep first: keep the earliest exposure, drop persons entering both on the same day
    dup = cohorts[cohorts['person_id'].isin(in_both)]
    first_date = dup.groupby('person_id')['cohort_start_date'].transform('min')
    first = dup[dup['cohort_start_date'] == first_date]
    ambiguous = first.groupby('person_id')['treatment'].nunique()
    first = first[~first['person_id'].isin(ambiguous[ambiguous > 1].index)]
    return pd.concat([unique, first]).sort_values('row_id')


def _days_to_next_exposure(pop: pd.DataFrame) -> np.ndarray:
    """Days from each exposure to the same person's next exposure (inf if none)."""
    ordered = pop.sort_values(['person_id', 'cohort_start_date'])
    next_start = ordered.groupby('person_id')['cohort_start_date'].shift(-1)
    gap = (next_start - ordered['cohort_start_date']).dt.days
    return gap.reindex(pop.index).fillna(np.inf).values


def _iptw(ps: np.ndarray, treatment: np.ndarray, estimator: str) -> np.ndarray:
    if estimator == 'ate':
        return np.where(treatment == 1, 1 / ps, 1 / (1 - ps))
    if estimator == 'ato':
        return np.where(treatment == 1, 1 - ps, ps)
    return np.where(treatment == 1, 1.0, ps / (1 - ps))


def _covariate_groups(pop: pd.DataFrame, covariate_ids, cohort_method_data) -> list[np.ndarray]:
    """Row positions grouped by identical values of the given covariates."""
    positions = np.arange(len(pop))
    if not covariate_ids:
        return [positions]
    if cohort_method_data is None:
        raise ValueError("Covariate data is required to match or stratify on covariates")
    X = cohort_method_data.covariate_matrix(pop['row_id'].values, list(covariate_ids))
    _, group = np.unique(X, axis=0, return_inverse=True)
    group = np.asarray(group).ravel()
    return [positions[group == g] for g in np.unique(group)]


def _has_partner(stratum: np.ndarray, anchor: int, pool: np.ndarray) -> bool:
    return bool((stratum[pool] == stratum[anchor]).any()) if stratum[anchor] >= 0 else False


def _stratum_weights(pop: pd.DataFrame) -> np.ndarray:
    """Comparator weights that reproduce the target's stratum distribution."""
    if 'stratum_id' not in pop.columns or len(pop) == 0:
        return np.ones(len(pop))
    counts = pd.crosstab(pop['stratum_id'], pop['treatment'])
    n_target = counts.get(1, pd.Series(0, index=counts.index))
    n_comparator = counts.get(0, pd.Series(0, index=counts.index))
    ratio = (n_target / n_comparator.replace(0, np.nan)).fillna(0)
    comparator_weight = pop['stratum_id'].map(ratio).values
    return np.where(pop['treatment'].values == 1, 1.0, comparator_weight)


def _weighted_moments(X: np.ndarray, weights: Optional[np.ndarray]) -> tuple[np.ndarray, np.ndarray]:
    if len(X) == 0:
        return np.full(X.shape[1], np.nan), np.full(X.shape[1], np.nan)
    if weights is None:
        weights = np.ones(len(X))
    if weights.sum() <= 0:
        return np.full(X.shape[1], np.nan), np.full(X.shape[1], np.nan)
    mean = np.average(X, axis=0, weights=weights)
    var = np.average((X - mean) ** 2, axis=0, weights=weights)
    return mean, var


# =============================================================================
# MODEL FITTING
# =============================================================================

Objective = Callable[[np.ndarray], tuple[float, np.ndarray, np.ndarray]]


def _newton(objective: Objective, n_params: int, max_iter: int = 100,
            tol: float = 1e-10) -> tuple[np.ndarray, np.ndarray, bool]:
    """
    Maximize a concave log-likelihood by Newton-Raphson with step halving.

    ``objective(beta)`` returns (log-likelihood, gradient, information).

    Returns
    -------
    tuple
        (estimates, covariance matrix, converged)
    """
    beta = np.zeros(n_params)
    ll, grad, info = objective(beta)
    converged = False
    for _ in range(max_iter):
        try:
            step = np.linalg.solve(info, grad)
        except np.linalg.LinAlgError:
            break
        scale = 1.0
        while True:
            candidate = beta + scale * step
            new_ll, new_grad, new_info = objective(candidate)
            if np.isfinite(new_ll) and new_ll >= ll - 1e-12:
                break
            scale /= 2
            if scale < 1e-10:
                break
        if scale < 1e-10:
            break
        change = abs(new_ll - ll)
        beta, ll, grad, info = candidate, new_ll, new_grad, new_info
        if change < tol * (abs(ll) + tol):
            converged = True
            break
    try:
        cov = np.linalg.inv(info)
    except np.linalg.LinAlgError:
        cov = np.full((n_params, n_params), np.nan)
    return beta, cov, converged


def _logistic_objective(X, y, w, penalty) -> Objective:
    def objective(beta):
        eta = X @ beta
        mu = expit(eta)
        ll = np.sum(w * (y * eta - np.logaddexp(0, eta))) - 0.5 * np.sum(penalty * beta ** 2)
        grad = X.T @ (w * (y - mu)) - penalty * beta
        info = (X * (w * mu * (1 - mu))[:, None]).T @ X + np.diag(penalty)
        return ll, grad, info
    return objective


def _poisson_objective(X, y, w, offset, penalty) -> Objective:
    def objective(beta):
        eta = X @ beta + offset
        mu = np.exp(eta)
        ll = np.sum(w * (y * eta - mu)) - 0.5 * np.sum(penalty * beta ** 2)
        grad = X.T @ (w * (y - mu)) - penalty * beta
        info = (X * (w * mu)[:, None]).T @ X + np.diag(penalty)
        return ll, grad, info
    return objective


def _conditional_poisson_objective(X, y, w, offset, strata, penalty) -> Objective:
    """Poisson likelihood with stratum intercepts profiled out."""
    n_strata = strata.max() + 1
    totals = np.bincount(strata, weights=w * y, minlength=n_strata)
    outer = X[:, :, None] * X[:, None, :]

    def objective(beta):
        eta = X @ beta + offset
        r = w * np.exp(eta - eta.max())
        s0 = np.bincount(strata, weights=r, minlength=n_strata)
        s1 = np.zeros((n_strata, X.shape[1]))
        np.add.at(s1, strata, r[:, None] * X)
        s2 = np.zeros((n_strata, X.shape[1], X.shape[1]))
        np.add.at(s2, strata, r[:, None, None] * outer)
        used = totals > 0
        mean = s1[used] / s0[used, None]
        ll = (np.sum(w * y * (eta - eta.max())) - np.sum(totals[used] * np.log(s0[used]))
              - 0.5 * np.sum(penalty * beta ** 2))
        grad = X.T @ (w * y) - totals[used] @ mean - penalty * beta
        info = (np.einsum('s,sij->ij', totals[used], s2[used] / s0[used, None, None])
                - np.einsum('s,si,sj->ij', totals[used], mean, mean) + np.diag(penalty))
        return ll, grad, info
    return objective


def _cox_objective(X, time, event, w, strata, penalty) -> Objective:
    """Stratified Cox partial likelihood with the Breslow approximation for ties."""
    order = np.lexsort((-time, strata))
    X, time, event, w, strata = X[order], time[order], event[order], w[order], strata[order]
    n = len(time)

    # Risk set of a subject ends at the last subject of its (stratum, time) group
    group_end = np.r_[(strata[1:] != strata[:-1]) | (time[1:] != time[:-1]), True]
    ends = np.flatnonzero(group_end)
    last = ends[np.cumsum(np.r_[0, group_end[:-1]])]
    stratum_start = np.r_[True, strata[1:] != strata[:-1]]
    first = np.flatnonzero(stratum_start)[np.cumsum(stratum_start) - 1]

    is_event = event > 0
    outer = X[:, :, None] * X[:, None, :]

    def within(values):
        total = np.cumsum(values, axis=0)
        shifted = np.concatenate([np.zeros((1,) + total.shape[1:]), total[:-1]], axis=0)
        return (total - shifted[first])[last]

    def objective(beta):
        eta = X @ beta
        shift = eta.max() if n else 0.0
        r = w * np.exp(eta - shift)
        s0 = within(r)[is_event]
        s1 = within(r[:, None] * X)[is_event]
        s2 = within(r[:, None, None] * outer)[is_event]
        we = w[is_event]
        mean = s1 / s0[:, None]
        ll = np.sum(we * ((eta[is_event] - shift) - np.log(s0))) - 0.5 * np.sum(penalty * beta ** 2)
        grad = (we[:, None] * (X[is_event] - mean)).sum(axis=0) - penalty * beta
        info = (np.einsum('e,eij->ij', we, s2 / s0[:, None, None])
                - np.einsum('e,ei,ej->ij', we, mean, mean) + np.diag(penalty))
        return ll, grad, info
    return objective
