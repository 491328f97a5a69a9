#!/usr/bin/env python3
"""
Configuration constants for the cohortflow engine.

This module centralizes paths, artifact store conventions, parallel
execution defaults and statistical parameters.
Project-specific values should be customized when adopting for a new study.

Usage
-----
    from config import DEFAULT_OUTPUT_FOLDER, PARALLEL_MAX_WORKERS

    # Or import specific sections
    from config import (
        # Paths
        PROJECT_ROOT,
        DATA_WORK_DIR,
        STUDY_SETTINGS_FILE,

        # Artifact store
        ARTIFACT_SUFFIX,
        REFERENCE_TABLE_FILE,

        # Parallel execution
        PARALLEL_MAX_WORKERS,
        PARALLEL_EXECUTOR,
    )
"""
from __future__ import annotations

from pathlib import Path


# =============================================================================
# PATHS
# =============================================================================

def _find_project_root() -> Path:
    """Find project root by looking for characteristic files."""
    current = Path(__file__).resolve()
    for parent in current.parents:
        if (parent / 'src').exists() and (parent / 'pyproject.toml').exists():
            return parent
    # Fallback: use parent of src/
    return Path(__file__).resolve().parent.parent


PROJECT_ROOT = _find_project_root()

# Data directories
DATA_WORK_DIR = PROJECT_ROOT / 'data_work'

# Default study output location (one artifact store per study)
DEFAULT_OUTPUT_FOLDER = DATA_WORK_DIR / 'cm_output'

# Default study settings file used by the CLI
STUDY_SETTINGS_FILE = PROJECT_ROOT / 'study_settings.yml'


# =============================================================================
# ARTIFACT STORE SETTINGS
# =============================================================================

# Suffix of committed artifact files (pickled stage outputs)
ARTIFACT_SUFFIX = '.pkl'

# Suffix of in-flight temporary files; never treated as committed
TEMP_SUFFIX = '.tmp'

# Manifest files written next to the artifacts
PLAN_FILE = 'plan.json'
REFERENCE_TABLE_FILE = 'reference_table.json'
RUN_STATUS_FILE = 'run_status.csv'
ANALYSES_FILE = 'cm_analyses.yml'
HYPOTHESES_FILE = 'target_comparator_outcomes.yml'


# =============================================================================
# PARALLEL EXECUTION SETTINGS
# =============================================================================

# Maximum number of parallel workers (None = use CPU count)
PARALLEL_MAX_WORKERS = None

# Worker pool flavour: 'process' or 'thread'
PARALLEL_EXECUTOR = 'process'

# Concurrent extraction tasks allowed against one database
EXTRACTION_MAX_WORKERS = 3


# =============================================================================
# COLLABORATOR SETTINGS
# =============================================================================

# Backend used when none is given explicitly
DEFAULT_BACKEND = 'simulation'

# Default connection details for the simulation backend
SIMULATION_DEFAULTS = {
    'n_persons': 2000,
    'n_covariates': 10,
    'seed': 42,
}


# =============================================================================
# METHODOLOGICAL PARAMETERS
# =============================================================================

# Statistical thresholds
SIGNIFICANCE_LEVEL = 0.05
CONFIDENCE_LEVEL = 0.95

# Power calculation defaults
POWER = 0.8


# =============================================================================
# VALIDATION
# =============================================================================

def validate_config() -> bool:
    """
    Validate configuration settings.

    Returns
    -------
    bool
        True if all validations pass

    Raises
    ------
    ValueError
        If any configuration is invalid
    """
    errors = []

    if SIGNIFICANCE_LEVEL <= 0 or SIGNIFICANCE_LEVEL >= 1:
        errors.append(f"SIGNIFICANCE_LEVEL must be between 0 and 1: {SIGNIFICANCE_LEVEL}")

    if POWER <= 0 or POWER >= 1:
        errors.append(f"POWER must be between 0 and 1: {POWER}")

    if PARALLEL_MAX_WORKERS is not None and PARALLEL_MAX_WORKERS < 1:
        errors.append(f"PARALLEL_MAX_WORKERS must be positive or None: {PARALLEL_MAX_WORKERS}")

    if PARALLEL_EXECUTOR not in ('process', 'thread'):
        errors.append(f"PARALLEL_EXECUTOR must be 'process' or 'thread': {PARALLEL_EXECUTOR}")

    if EXTRACTION_MAX_WORKERS < 1:
        errors.append(f"EXTRACTION_MAX_WORKERS must be positive: {EXTRACTION_MAX_WORKERS}")

    if errors:
        raise ValueError("Configuration errors:\n" + "\n".join(f"  - {e}" for e in errors))

    return True


# =============================================================================
# MODULE INITIALIZATION
# =============================================================================

if __name__ == '__main__':
    # Print configuration when run directly
    print("cohortflow Configuration")
    print("=" * 50)
    print(f"PROJECT_ROOT:          {PROJECT_ROOT}")
    print(f"DEFAULT_OUTPUT_FOLDER: {DEFAULT_OUTPUT_FOLDER}")
    print(f"STUDY_SETTINGS_FILE:   {STUDY_SETTINGS_FILE}")
    print()
    print(f"PARALLEL_MAX_WORKERS:  {PARALLEL_MAX_WORKERS}")
    print(f"PARALLEL_EXECUTOR:     {PARALLEL_EXECUTOR}")
    print(f"DEFAULT_BACKEND:       {DEFAULT_BACKEND}")
    print()
    print("Validating configuration...")
    try:
        validate_config()
        print("Configuration valid.")
    except ValueError as e:
        print(f"Configuration invalid:\n{e}")
