"""Tests for cohort_method.specifications module."""
from __future__ import annotations

import textwrap
from pathlib import Path

import pytest
import yaml

from cohort_method.errors import ConfigurationError
from cohort_method.scheduler import MultiThreadingSettings
from cohort_method.specifications import (
    load_cm_analysis_list,
    load_study_settings,
    load_target_comparator_outcomes_list,
    parse_cm_analysis_list,
    save_cm_analysis_list,
    save_target_comparator_outcomes_list,
)


MINIMAL_SETTINGS = textwrap.dedent("""\
    output_folder: results/cm
    analyses:
      - analysis_id: 1
        fit_outcome_model_args:
          model_type: poisson
    target_comparator_outcomes:
      - target_id: 1
        comparator_id: 2
        outcomes: [3, 4]
""")


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / 'study_settings.yml'
    path.write_text(text)
    return path


class TestAnalysisFiles:
    """Tests for analysis and hypothesis YAML files."""

    def test_analyses_round_trip(self, tmp_path, matched_analyses, balance_analysis):
        analyses = matched_analyses + [balance_analysis]
        path = save_cm_analysis_list(analyses, tmp_path / 'analyses.yml')
        assert load_cm_analysis_list(path) == analyses

    def test_hypotheses_round_trip(self, tmp_path, tco_three_outcomes):
        path = save_target_comparator_outcomes_list([tco_three_outcomes], tmp_path / 'tcos.yml')
        assert load_target_comparator_outcomes_list(path) == [tco_three_outcomes]

    def test_saved_yaml_is_readable(self, tmp_path, crude_analysis):
        path = save_cm_analysis_list([crude_analysis], tmp_path / 'analyses.yml')
        data = yaml.safe_load(path.read_text())
        assert data[0]['analysis_id'] == 1
        assert data[0]['fit_outcome_model_args']['model_type'] == 'cox'
        assert 'create_ps_args' not in data[0]

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_cm_analysis_list(tmp_path / 'nope.yml')

    def test_not_a_list(self):
        with pytest.raises(ConfigurationError, match="Expected a list"):
            parse_cm_analysis_list({'analysis_id': 1})

    def test_entry_not_a_mapping(self):
        with pytest.raises(ConfigurationError, match="must be a mapping"):
            parse_cm_analysis_list([1])

    def test_inconsistent_analysis(self):
        with pytest.raises(ConfigurationError, match="without 'create_ps_args'"):
            parse_cm_analysis_list([{'analysis_id': 1, 'match_on_ps_args': {}}])


class TestLoadStudySettings:
    """Tests for study settings files."""

    def test_minimal(self, tmp_path):
        settings = load_study_settings(_write(tmp_path, MINIMAL_SETTINGS))

        assert [a.analysis_id for a in settings.cm_analysis_list] == [1]
        assert settings.target_comparator_outcomes_list[0].outcome_ids == [3, 4]
        assert settings.backend == 'simulation'
        assert settings.connection_details == {}
        assert settings.analyses_to_exclude == []
        assert settings.refit_ps_for_every_outcome is False
        assert isinstance(settings.multi_threading_settings, MultiThreadingSettings)

    def test_relative_output_folder(self, tmp_path):
        settings = load_study_settings(_write(tmp_path, MINIMAL_SETTINGS))
        assert settings.output_folder == tmp_path.resolve() / 'results' / 'cm'

    def test_absolute_output_folder(self, tmp_path):
        target = tmp_path / 'abs_out'
        text = MINIMAL_SETTINGS.replace('results/cm', str(target))
        assert load_study_settings(_write(tmp_path, text)).output_folder == target

    def test_full_settings(self, tmp_path):
        text = MINIMAL_SETTINGS + textwrap.dedent("""\
            backend: simulation
            connection_details:
              n_persons: 500
            refit_ps_for_every_outcome: true
            multi_threading:
              max_workers: 2
              executor: thread
            analyses_to_exclude:
              - analysis_id: 1
                outcome_id: 4
        """)
        settings = load_study_settings(_write(tmp_path, text))

        assert settings.connection_details == {'n_persons': 500}
        assert settings.refit_ps_for_every_outcome is True
        assert settings.multi_threading_settings.workers == 2
        assert settings.multi_threading_settings.executor == 'thread'
        assert settings.analyses_to_exclude == [{'analysis_id': 1, 'outcome_id': 4}]

    def test_unknown_key(self, tmp_path):
        with pytest.raises(ConfigurationError, match="Unknown study setting"):
            load_study_settings(_write(tmp_path, MINIMAL_SETTINGS + "workers: 3\n"))

    def test_missing_analyses(self, tmp_path):
        text = "target_comparator_outcomes:\n  - {target_id: 1, comparator_id: 2, outcomes: [3]}\n"
        with pytest.raises(ConfigurationError, match="'analyses'"):
            load_study_settings(_write(tmp_path, text))

    def test_not_a_mapping(self, tmp_path):
        with pytest.raises(ConfigurationError, match="must be a mapping"):
            load_study_settings(_write(tmp_path, "- 1\n- 2\n"))

    def test_bad_connection_details(self, tmp_path):
        with pytest.raises(ConfigurationError, match="connection_details"):
            load_study_settings(_write(tmp_path, MINIMAL_SETTINGS + "connection_details: [1]\n"))

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_study_settings(tmp_path / 'missing.yml')

    def test_project_settings_file_loads(self, project_root):
        settings = load_study_settings(project_root / 'study_settings.yml')
        assert len(settings.cm_analysis_list) == 2
        assert settings.multi_threading_settings.limit_for('cohort_method_data') == 2
