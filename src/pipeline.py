#!/usr/bin/env python3
"""
Module: pipeline.py
Purpose: Command-line interface for running cohort method studies.

Every command reads a study settings file (default: study_settings.yml at
the project root) describing the analyses, the target-comparator-outcome
hypotheses, the backend and the output folder.

Commands
--------
# Execution
run_analyses : Run all analyses, reusing stored results
    Options: --settings, --workers, --executor, --output
plan_analyses : Show the deduplicated task plan without running it
    Options: --settings, --output

# Results
file_reference : Show which artifact holds each stage of each combination
    Options: --settings, --output, --rebuild, --csv
results_summary : Show effect estimates of all outcome models
    Options: --settings, --output, --csv

# Maintenance
store_info : Summarize the artifact store
    Options: --settings, --output, --clean
list_backends : List registered backends and their availability

Usage
-----
    python src/pipeline.py run_analyses
    python src/pipeline.py run_analyses --settings studies/ssri.yml --workers 4
    python src/pipeline.py results_summary --csv data_work/results.csv

Notes
-----
Requires activation of project virtual environment before running.
"""
from __future__ import annotations

import os
import sys
import argparse
from pathlib import Path


def ensure_env():
    """Verify virtual environment is activated."""
    venv = os.getenv('VIRTUAL_ENV')
    if not venv or not venv.endswith('/.venv'):
        print(
            'ERROR: Please activate project .venv (source .venv/bin/activate) before running.',
            file=sys.stderr
        )
        sys.exit(1)


def parse_args(argv: list[str] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    p = argparse.ArgumentParser(
        description='Cohort Method Pipeline',
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    sub = p.add_subparsers(dest='cmd', required=True)

    def add_study_options(parser):
        parser.add_argument(
            '--settings', '-s',
            default=None,
            help='Study settings file (default: study_settings.yml)'
        )
        parser.add_argument(
            '--output', '-o',
            default=None,
            help='Output folder (default: from study settings)'
        )

    # Execution Commands
    p_run = sub.add_parser('run_analyses', help='Run all analyses')
    add_study_options(p_run)
    p_run.add_argument(
        '--workers', '-w',
        type=int,
        default=None,
        help='Number of workers (default: from study settings)'
    )
    p_run.add_argument(
        '--executor', '-e',
        choices=['process', 'thread'],
        default=None,
        help='Worker pool type (default: from study settings)'
    )
    p_run.add_argument(
        '--quiet', '-q',
        action='store_true',
        help='Only print the run summary'
    )

    p_plan = sub.add_parser('plan_analyses', help='Show the task plan')
    add_study_options(p_plan)

    # Results Commands
    p_ref = sub.add_parser('file_reference', help='Show the reference table')
    add_study_options(p_ref)
    p_ref.add_argument(
        '--rebuild',
        action='store_true',
        help='Re-derive the table from the stored plan and artifacts'
    )
    p_ref.add_argument(
        '--csv',
        default=None,
        help='Also save the table as CSV'
    )

    p_sum = sub.add_parser('results_summary', help='Show effect estimates')
    add_study_options(p_sum)
    p_sum.add_argument(
        '--csv',
        default=None,
        help='Also save the summary as CSV'
    )

    # Maintenance Commands
    p_store = sub.add_parser('store_info', help='Summarize the artifact store')
    add_study_options(p_store)
    p_store.add_argument(
        '--clean',
        action='store_true',
        help='Remove temporary files left by interrupted runs'
    )

    sub.add_parser('list_backends', help='List registered backends')

    return p.parse_args(argv)


# =============================================================================
# COMMANDS
# =============================================================================

def _load_settings(args: argparse.Namespace):
    from cohort_method.specifications import load_study_settings

    settings = load_study_settings(Path(args.settings) if args.settings else None)
    if args.output:
        settings.output_folder = Path(args.output)
    return settings


def run_analyses(args: argparse.Namespace) -> int:
    """Run the study; exit code 1 if any task failed."""
    from cohort_method import MultiThreadingSettings, run_cm_analyses

    settings = _load_settings(args)
    mt_settings = settings.multi_threading_settings
    if args.workers is not None or args.executor is not None:
        mt_settings = MultiThreadingSettings(
            max_workers=args.workers if args.workers is not None else mt_settings.max_workers,
            executor=args.executor or mt_settings.executor,
            stage_limits=mt_settings.stage_limits,
        )

    result = run_cm_analyses(
        connection_details=settings.connection_details,
        output_folder=settings.output_folder,
        cm_analysis_list=settings.cm_analysis_list,
        target_comparator_outcomes_list=settings.target_comparator_outcomes_list,
        analyses_to_exclude=settings.analyses_to_exclude,
        refit_ps_for_every_outcome=settings.refit_ps_for_every_outcome,
        multi_threading_settings=mt_settings,
        backend=settings.backend,
        verbose=not args.quiet,
    )
    if args.quiet:
        counts = result.report.counts()
        print(f"Computed {counts['computed']}, cached {counts['cached']}, "
              f"failed {counts['failed']}, skipped {counts['skipped']}")
    return 0 if result.report.succeeded else 1


def plan_analyses(args: argparse.Namespace) -> int:
    from cohort_method import plan_cm_analyses

    settings = _load_settings(args)
    summary = plan_cm_analyses(
        settings.cm_analysis_list,
        settings.target_comparator_outcomes_list,
        output_folder=settings.output_folder,
        analyses_to_exclude=settings.analyses_to_exclude,
        refit_ps_for_every_outcome=settings.refit_ps_for_every_outcome,
    )

    print("Task Plan")
    print("=" * 60)
    print(f"  Output folder: {settings.output_folder}")
    print()
    print(summary.to_string(index=False))
    print()
    print(f"Total: {summary['planned'].sum()} task(s), {summary['pending'].sum()} to compute")
    return 0


def file_reference(args: argparse.Namespace) -> int:
    from cohort_method import get_file_reference, rebuild_file_reference

    settings = _load_settings(args)
    if args.rebuild:
        reference_table = rebuild_file_reference(settings.output_folder)
    else:
        reference_table = get_file_reference(settings.output_folder)

    print(reference_table.to_string(index=False))
    if args.csv:
        reference_table.to_csv(args.csv, index=False)
        print(f"\nSaved: {args.csv}")
    return 0


ESTIMATE_LABELS = {'cox': 'HR', 'logistic': 'OR', 'poisson': 'IRR'}


def results_summary(args: argparse.Namespace) -> int:
    from cohort_method import get_results_summary
    from utils.helpers import add_significance_stars, format_ci, format_pvalue

    settings = _load_settings(args)
    summary = get_results_summary(settings.output_folder)

    print("Outcome Model Results")
    print("=" * 60)
    if summary.empty:
        print("No outcome models in store")
        return 0

    for _, row in summary.iterrows():
        label = (f"a{row['analysis_id']} t{row['target_id']} "
                 f"c{row['comparator_id']} o{row['outcome_id']}")
        if not row['outcome_of_interest']:
            label += ' (nc)'
        estimate = ESTIMATE_LABELS.get(row['model_type'], 'RR')
        print(f"  {label:<24} {estimate:<3} {row['rr']:.2f}{add_significance_stars(row['p']):<3} "
              f"{format_ci(row['ci_95_lb'], row['ci_95_ub'])}  "
              f"p={format_pvalue(row['p'])}  MDRR {row['mdrr']:.2f}")

    if args.csv:
        summary.to_csv(args.csv, index=False)
        print(f"\nSaved: {args.csv}")
    return 0


def store_info(args: argparse.Namespace) -> int:
    from cohort_method import ArtifactStore

    settings = _load_settings(args)
    store = ArtifactStore(settings.output_folder)
    if args.clean:
        removed = store.clean_temporary_files()
        print(f"Removed {removed} temporary file(s)")

    artifacts = store.list_artifacts()
    size = store.size()
    print("Artifact Store")
    print("=" * 60)
    print(f"  Folder: {store.folder}")
    print(f"  Files: {size['file_count']} ({size['total_mb']:.2f} MB)")
    if not artifacts.empty:
        print()
        print(artifacts.groupby('kind')['size_bytes'].agg(['count', 'sum']).to_string())
    return 0


def list_backends(args: argparse.Namespace) -> int:
    from cohort_method.factory import get_backend_info, list_backends as _list

    print("Registered Backends")
    print("=" * 60)
    for name, available in _list().items():
        info = get_backend_info(name)
        status = 'available' if available else 'unavailable'
        print(f"  {name:<16} {status:<12} {info.get('message', '')}")
    return 0


COMMANDS = {
    'run_analyses': run_analyses,
    'plan_analyses': plan_analyses,
    'file_reference': file_reference,
    'results_summary': results_summary,
    'store_info': store_info,
    'list_backends': list_backends,
}


def main(argv: list[str] = None, check_env: bool = True) -> int:
    """Main entry point."""
    from cohort_method.errors import CohortMethodError

    if check_env:
        ensure_env()
    args = parse_args(argv)
    try:
        return COMMANDS[args.cmd](args)
    except (CohortMethodError, FileNotFoundError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1


def cli() -> int:
    """Entry point of the installed ``cohortflow`` command (no virtualenv check)."""
    return main(check_env=False)


if __name__ == '__main__':
    sys.exit(main())
