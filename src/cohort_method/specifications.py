"""
Study Settings Management.

Loads and saves analyses, hypotheses and study settings as YAML. A study
settings file bundles everything one execution request needs:

    output_folder: data_work/cm_output
    backend: simulation
    connection_details:
      n_persons: 2000
      seed: 42
    refit_ps_for_every_outcome: false
    multi_threading:
      max_workers: 4
      executor: process
      stage_limits:
        cohort_method_data: 2
    analyses:
      - analysis_id: 1
        description: No matching, simple outcome model
        fit_outcome_model_args:
          model_type: cox
    target_comparator_outcomes:
      - target_id: 1
        comparator_id: 2
        outcomes:
          - outcome_id: 3
          - outcome_id: 4
            outcome_of_interest: false
            true_effect_size: 1
    analyses_to_exclude:
      - analysis_id: 1
        outcome_id: 4

Usage
-----
    from cohort_method.specifications import load_study_settings, save_cm_analysis_list

    settings = load_study_settings()
    save_cm_analysis_list(settings.cm_analysis_list, output_folder / 'cm_analyses.yml')
"""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Union

import yaml

from config import DEFAULT_BACKEND, DEFAULT_OUTPUT_FOLDER, STUDY_SETTINGS_FILE
from utils.helpers import write_text_atomic

from .arguments import CmAnalysis
from .errors import ConfigurationError
from .hypotheses import TargetComparatorOutcomes, normalize_exclusions
from .scheduler import MultiThreadingSettings


STUDY_SETTINGS_KEYS = (
    'output_folder',
    'backend',
    'connection_details',
    'refit_ps_for_every_outcome',
    'multi_threading',
    'analyses',
    'target_comparator_outcomes',
    'analyses_to_exclude',
)


@dataclass
class StudySettings:
    """Everything needed for one execution request."""

    cm_analysis_list: list
    target_comparator_outcomes_list: list
    output_folder: Path = DEFAULT_OUTPUT_FOLDER
    backend: str = DEFAULT_BACKEND
    connection_details: dict = field(default_factory=dict)
    analyses_to_exclude: list = field(default_factory=list)
    refit_ps_for_every_outcome: bool = False
    multi_threading_settings: MultiThreadingSettings = field(default_factory=MultiThreadingSettings)


# =============================================================================
# YAML I/O
# =============================================================================

def _read_yaml(path: Path) -> Any:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Settings file not found: {path}")
    with open(path) as f:
        return yaml.safe_load(f)


def _write_yaml(path: Path, data: Any) -> Path:
    return write_text_atomic(Path(path), yaml.safe_dump(data, sort_keys=False, default_flow_style=False))


def _as_list(data: Any, what: str) -> list:
    if data is None:
        return []
    if not isinstance(data, list):
        raise ConfigurationError(f"Expected a list of {what}, got {type(data).__name__}")
    return data


def parse_cm_analysis_list(data: Any) -> list[CmAnalysis]:
    """Build analyses from a parsed YAML list."""
    analyses = []
    for item in _as_list(data, 'analyses'):
        if not isinstance(item, dict):
            raise ConfigurationError(f"Each analysis must be a mapping, got {item!r}")
        analyses.append(CmAnalysis.from_dict(item))
    return analyses


def parse_target_comparator_outcomes_list(data: Any) -> list[TargetComparatorOutcomes]:
    """Build hypotheses from a parsed YAML list."""
    hypotheses = []
    for item in _as_list(data, 'target-comparator-outcomes'):
        if not isinstance(item, dict):
            raise ConfigurationError(f"Each hypothesis must be a mapping, got {item!r}")
        hypotheses.append(TargetComparatorOutcomes.from_dict(item))
    return hypotheses


def load_cm_analysis_list(path: Union[str, Path]) -> list[CmAnalysis]:
    """
    Load analyses from a YAML file.

    Raises
    ------
    FileNotFoundError
        If the file does not exist
    ConfigurationError
        If an analysis is malformed or inconsistent
    """
    return parse_cm_analysis_list(_read_yaml(path))


def save_cm_analysis_list(cm_analysis_list: list[CmAnalysis], path: Union[str, Path]) -> Path:
    """Save analyses to a YAML file (loadable with ``load_cm_analysis_list``)."""
    return _write_yaml(path, [a.to_dict() for a in cm_analysis_list])


def load_target_comparator_outcomes_list(path: Union[str, Path]) -> list[TargetComparatorOutcomes]:
    """Load hypotheses from a YAML file."""
    return parse_target_comparator_outcomes_list(_read_yaml(path))


def save_target_comparator_outcomes_list(
    target_comparator_outcomes_list: list[TargetComparatorOutcomes],
    path: Union[str, Path],
) -> Path:
    """Save hypotheses to a YAML file."""
    return _write_yaml(path, [t.to_dict() for t in target_comparator_outcomes_list])


# =============================================================================
# STUDY SETTINGS
# =============================================================================

def load_study_settings(path: Optional[Path] = None) -> StudySettings:
    """
    Load a study settings file.

    Parameters
    ----------
    path : Path, optional
        Settings file. Defaults to STUDY_SETTINGS_FILE from config.
        A relative ``output_folder`` is resolved against the file's folder.

    Returns
    -------
    StudySettings

    Raises
    ------
    FileNotFoundError
        If the settings file does not exist
    ConfigurationError
        If the settings are malformed
    """
    path = Path(path) if path is not None else STUDY_SETTINGS_FILE
    data = _read_yaml(path) or {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Study settings must be a mapping: {path}")

    unknown = sorted(set(data) - set(STUDY_SETTINGS_KEYS))
    if unknown:
        raise ConfigurationError(f"Unknown study setting(s) in {path.name}: {', '.join(unknown)}")
    for key in ('analyses', 'target_comparator_outcomes'):
        if not data.get(key):
            raise ConfigurationError(f"Study settings need a non-empty '{key}' list")

    output_folder = Path(data.get('output_folder') or DEFAULT_OUTPUT_FOLDER)
    if not output_folder.is_absolute():
        output_folder = path.resolve().parent / output_folder

    connection_details = data.get('connection_details') or {}
    if not isinstance(connection_details, dict):
        raise ConfigurationError("'connection_details' must be a mapping")

    return StudySettings(
        cm_analysis_list=parse_cm_analysis_list(data['analyses']),
        target_comparator_outcomes_list=parse_target_comparator_outcomes_list(
            data['target_comparator_outcomes']),
        output_folder=output_folder,
        backend=data.get('backend') or DEFAULT_BACKEND,
        connection_details=connection_details,
        analyses_to_exclude=normalize_exclusions(data.get('analyses_to_exclude')),
        refit_ps_for_every_outcome=bool(data.get('refit_ps_for_every_outcome', False)),
        multi_threading_settings=MultiThreadingSettings.from_dict(data.get('multi_threading')),
    )
