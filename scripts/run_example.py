#!/usr/bin/env python3
"""
Example Study Script: Negative Control Calibration Check

Purpose: Run a small simulated study and compare effect estimates for
         negative controls (true effect 1) with an outcome of interest
         simulated with a known effect.
Input:   none (simulated data)
Output:  data_work/exploratory/example_study/ (artifact store)
         data_work/exploratory/example_results.csv

Usage:
    python scripts/run_example.py
    python scripts/run_example.py --workers 4 --output custom_results.csv

Notes:
    This is an extended analysis script, separate from the core pipeline.
    Running it twice reuses every stored artifact: the second run computes
    nothing.
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from config import DATA_WORK_DIR
from cohort_method import (
    CreatePsArgs,
    CreateStudyPopulationArgs,
    FitOutcomeModelArgs,
    MatchOnPsArgs,
    StratifyByPsArgs,
    create_cm_analysis,
    create_default_multi_threading_settings,
    create_outcome,
    create_target_comparator_outcomes,
    get_results_summary,
    run_cm_analyses,
)
from utils.helpers import ensure_dir, format_ci


def parse_args() -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description='Example study - negative control calibration check'
    )
    parser.add_argument(
        '--workers', '-w',
        type=int,
        default=1,
        help='Number of worker processes (default: 1, inline)'
    )
    parser.add_argument(
        '--output', '-o',
        default=None,
        help='Output CSV file (default: data_work/exploratory/example_results.csv)'
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Print task progress'
    )
    return parser.parse_args()


def build_study():
    """Three analyses and one hypothesis with one outcome of interest and three controls."""
    population_args = CreateStudyPopulationArgs(
        remove_subjects_with_prior_outcome=True,
        min_days_at_risk=1,
        risk_window_end=30,
    )
    analyses = [
        create_cm_analysis(
            analysis_id=1,
            description='Crude Cox model',
            create_study_population_args=population_args,
            fit_outcome_model_args=FitOutcomeModelArgs(model_type='cox'),
        ),
        create_cm_analysis(
            analysis_id=2,
            description='1-on-1 matching, stratified Cox model',
            create_study_population_args=population_args,
            create_ps_args=CreatePsArgs(),
            match_on_ps_args=MatchOnPsArgs(max_ratio=1),
            fit_outcome_model_args=FitOutcomeModelArgs(model_type='cox', stratified=True),
        ),
        create_cm_analysis(
            analysis_id=3,
            description='PS stratification, stratified Cox model',
            create_study_population_args=population_args,
            create_ps_args=CreatePsArgs(),
            stratify_by_ps_args=StratifyByPsArgs(number_of_strata=5),
            fit_outcome_model_args=FitOutcomeModelArgs(model_type='cox', stratified=True),
        ),
    ]
    hypotheses = [
        create_target_comparator_outcomes(
            target_id=1,
            comparator_id=2,
            outcomes=[
                create_outcome(10, true_effect_size=2.0),
                create_outcome(11, outcome_of_interest=False, true_effect_size=1),
                create_outcome(12, outcome_of_interest=False, true_effect_size=1),
                create_outcome(13, outcome_of_interest=False, true_effect_size=1),
            ],
        ),
    ]
    return analyses, hypotheses


def main():
    """Main entry point."""
    args = parse_args()

    print("=" * 60)
    print("Example Study: Negative Control Calibration Check")
    print("=" * 60)

    output_folder = ensure_dir(DATA_WORK_DIR / 'exploratory' / 'example_study')
    analyses, hypotheses = build_study()

    settings = create_default_multi_threading_settings(max_cores=args.workers)

    result = run_cm_analyses(
        connection_details={'n_persons': 3000, 'seed': 7, 'true_effects': {10: 2.0}},
        output_folder=output_folder,
        cm_analysis_list=analyses,
        target_comparator_outcomes_list=hypotheses,
        multi_threading_settings=settings,
        verbose=args.verbose,
    )
    counts = result.report.counts()
    print(f"\nTasks: {counts['computed']} computed, {counts['cached']} cached, "
          f"{counts['failed']} failed")

    summary = get_results_summary(output_folder)
    if summary.empty:
        print("\nERROR: No outcome models were fitted")
        sys.exit(1)

    if args.output:
        output_path = Path(args.output)
    else:
        output_path = DATA_WORK_DIR / 'exploratory' / 'example_results.csv'
    summary.to_csv(output_path, index=False)
    print(f"\nResults saved: {output_path}")

    print("\n" + "-" * 60)
    print("RESULTS")
    print("-" * 60)
    for _, row in summary.iterrows():
        kind = 'control' if not row['outcome_of_interest'] else 'interest'
        print(f"  analysis {row['analysis_id']}  outcome {row['outcome_id']} ({kind}, "
              f"true {row['true_effect_size']:g}): HR {row['rr']:.2f} "
              f"{format_ci(row['ci_95_lb'], row['ci_95_ub'])}")

    controls = summary[~summary['outcome_of_interest'].astype(bool)]
    covered = ((controls['ci_95_lb'] <= 1) & (controls['ci_95_ub'] >= 1)).mean()
    print(f"\n  Negative control CI coverage of 1: {covered:.0%}")

    print("\n" + "=" * 60)
    print("Analysis complete.")
    print("=" * 60)


if __name__ == '__main__':
    main()
