"""Tests for cohort_method.scheduler module."""
from __future__ import annotations

import pytest

from cohort_method.errors import ConfigurationError, TaskComputationError
from cohort_method.planner import plan_tasks
from cohort_method.scheduler import (
    MultiThreadingSettings,
    RunReport,
    TaskScheduler,
    create_default_multi_threading_settings,
    execute_task,
)
from cohort_method.store import ArtifactStore
from cohort_method.tasks import StageKind, TaskState


INLINE = MultiThreadingSettings(max_workers=1)


def _run(plan, output_folder, backend, settings=INLINE):
    store = ArtifactStore(output_folder)
    return TaskScheduler(plan, store, backend, {}, settings=settings, verbose=False).run()


class TestMultiThreadingSettings:
    """Tests for parallelism settings."""

    def test_defaults(self):
        settings = MultiThreadingSettings()
        assert settings.workers >= 1
        assert settings.stage_limits == {}

    def test_invalid_workers(self):
        with pytest.raises(ConfigurationError, match="max_workers"):
            MultiThreadingSettings(max_workers=0)

    def test_invalid_executor(self):
        with pytest.raises(ConfigurationError, match="executor"):
            MultiThreadingSettings(executor='cluster')

    def test_unknown_stage_limit(self):
        with pytest.raises(ConfigurationError, match="Unknown stage kind"):
            MultiThreadingSettings(stage_limits={'ps': 2})

    def test_default_uses_every_core(self, monkeypatch):
        monkeypatch.setattr('cohort_method.scheduler.PARALLEL_MAX_WORKERS', None)
        monkeypatch.setattr('cohort_method.scheduler.os.cpu_count', lambda: 8)
        assert MultiThreadingSettings().workers == 8

    def test_limit_for(self):
        settings = MultiThreadingSettings(max_workers=4, stage_limits={StageKind.EXTRACT: 1})
        assert settings.limit_for(StageKind.EXTRACT) == 1
        assert settings.limit_for(StageKind.OUTCOME_MODEL) is None

    def test_default_settings_limit_extraction(self):
        settings = create_default_multi_threading_settings(max_cores=8)
        assert settings.workers == 8
        assert settings.limit_for(StageKind.EXTRACT) == 3

    def test_default_settings_small_machine(self):
        settings = create_default_multi_threading_settings(max_cores=2)
        assert settings.limit_for(StageKind.EXTRACT) == 2

    def test_dict_round_trip(self):
        settings = MultiThreadingSettings(max_workers=2, executor='thread',
                                          stage_limits={'cohort_method_data': 1})
        assert MultiThreadingSettings.from_dict(settings.to_dict()) == settings

    def test_from_dict_unknown_key(self):
        with pytest.raises(ConfigurationError, match="Unknown multi-threading"):
            MultiThreadingSettings.from_dict({'workers': 2})


class TestExecuteTask:
    """Tests for running a single task."""

    def test_commits_artifact(self, output_folder, backend, crude_analysis, tco_three_outcomes):
        plan = plan_tasks([crude_analysis], [tco_three_outcomes])
        ext = next(t for t in plan if t.kind == StageKind.EXTRACT)

        execute_task(ext, output_folder, backend, {})

        assert ArtifactStore(output_folder).has(ext.fingerprint, StageKind.EXTRACT)

    def test_wraps_stage_errors(self, output_folder, make_backend, crude_analysis, tco_three_outcomes):
        plan = plan_tasks([crude_analysis], [tco_three_outcomes])
        ext = next(t for t in plan if t.kind == StageKind.EXTRACT)
        backend = make_backend(fail_on={('get_db_cohort_method_data', None)})

        with pytest.raises(TaskComputationError, match="RuntimeError"):
            execute_task(ext, output_folder, backend, {})
        assert not ArtifactStore(output_folder).has(ext.fingerprint)


class TestTaskScheduler:
    """Tests for scheduling, caching and failure handling."""

    def test_default_settings_are_parallel(self, monkeypatch, output_folder, backend,
                                           crude_analysis, tco_three_outcomes):
        monkeypatch.setattr('cohort_method.scheduler.PARALLEL_MAX_WORKERS', None)
        monkeypatch.setattr('cohort_method.scheduler.os.cpu_count', lambda: 8)
        plan = plan_tasks([crude_analysis], [tco_three_outcomes])

        scheduler = TaskScheduler(plan, ArtifactStore(output_folder), backend)

        assert scheduler.settings.workers == 8

    def test_inline_run_commits_everything(self, output_folder, backend, matched_analyses, tco_three_outcomes):
        plan = plan_tasks(matched_analyses, [tco_three_outcomes])

        report = _run(plan, output_folder, backend)

        assert report.succeeded
        assert report.counts()['committed'] == len(plan)
        assert report.counts()['computed'] == len(plan)
        store = ArtifactStore(output_folder)
        assert all(store.has(t.fingerprint, t.kind) for t in plan)

    def test_each_shared_task_runs_once(self, output_folder, backend, matched_analyses, tco_three_outcomes):
        plan = plan_tasks(matched_analyses, [tco_three_outcomes])
        _run(plan, output_folder, backend)

        assert backend.count('get_db_cohort_method_data') == 1
        assert backend.count('create_ps') == 1
        assert backend.count('fit_outcome_model') == 6

    def test_second_run_computes_nothing(self, output_folder, make_backend, matched_analyses, tco_three_outcomes):
        plan = plan_tasks(matched_analyses, [tco_three_outcomes])
        _run(plan, output_folder, make_backend())

        second = make_backend()
        report = _run(plan, output_folder, second)

        assert second.calls == []
        assert report.counts()['computed'] == 0
        assert report.counts()['cached'] == len(plan)

    def test_resume_computes_only_missing(self, output_folder, make_backend, matched_analyses, tco_three_outcomes):
        plan = plan_tasks(matched_analyses, [tco_three_outcomes])
        _run(plan, output_folder, make_backend())

        store = ArtifactStore(output_folder)
        removed = [t for t in plan if t.kind == StageKind.OUTCOME_MODEL][:2]
        for task in removed:
            store.path(task.fingerprint, task.kind).unlink()

        report = _run(plan, output_folder, make_backend())

        assert sorted(report.computed) == sorted(t.fingerprint for t in removed)
        assert report.counts()['cached'] == len(plan) - 2

    def test_cached_downstream_needs_no_upstream(self, output_folder, make_backend, crude_analysis, tco_three_outcomes):
        plan = plan_tasks([crude_analysis], [tco_three_outcomes])
        _run(plan, output_folder, make_backend())

        ext = next(t for t in plan if t.kind == StageKind.EXTRACT)
        ArtifactStore(output_folder).path(ext.fingerprint, ext.kind).unlink()
        backend = make_backend()
        report = _run(plan, output_folder, backend)

        # Only the deleted extraction is recomputed
        assert report.computed == [ext.fingerprint]
        assert backend.count('fit_outcome_model') == 0

    def test_failure_skips_dependents_only(self, output_folder, make_backend, crude_analysis, tco_three_outcomes):
        plan = plan_tasks([crude_analysis], [tco_three_outcomes])
        backend = make_backend(fail_on={('fit_outcome_model', 4)})

        report = _run(plan, output_folder, backend)

        counts = report.counts()
        assert counts['failed'] == 1
        assert counts['skipped'] == 0
        assert counts['committed'] == len(plan) - 1
        assert not report.succeeded
        failed = report.failed[0]
        assert failed.kind == StageKind.OUTCOME_MODEL
        assert failed.outcome_id == 4
        assert 'RuntimeError' in failed.error

    def test_upstream_failure_skips_transitive_dependents(self, output_folder, make_backend,
                                                          matched_analyses, tco_three_outcomes):
        plan = plan_tasks(matched_analyses, [tco_three_outcomes])
        backend = make_backend(fail_on={('create_ps', None)})

        report = _run(plan, output_folder, backend)

        ps = next(t for t in plan if t.kind == StageKind.PROPENSITY)
        assert report.state(ps.fingerprint) == TaskState.FAILED
        for fp in plan.descendants(ps.fingerprint):
            assert report.state(fp) == TaskState.SKIPPED
        assert backend.count('fit_outcome_model') == 0
        ext = next(t for t in plan if t.kind == StageKind.EXTRACT)
        assert report.state(ext.fingerprint) == TaskState.COMMITTED

    def test_failure_in_one_pair_does_not_stop_another(self, output_folder, make_backend, crude_analysis):
        from cohort_method.hypotheses import create_target_comparator_outcomes

        tcos = [create_target_comparator_outcomes(1, 2, [3]),
                create_target_comparator_outcomes(5, 6, [3])]
        plan = plan_tasks([crude_analysis], tcos)
        backend = make_backend(fail_on={('fit_outcome_model', 3)})

        report = _run(plan, output_folder, backend)

        # Both outcome models fail, both extractions commit
        assert report.counts()['failed'] == 2
        assert backend.count('get_db_cohort_method_data') == 2

    def test_rerun_after_failure_retries_failed_only(self, output_folder, make_backend,
                                                     crude_analysis, tco_three_outcomes):
        plan = plan_tasks([crude_analysis], [tco_three_outcomes])
        _run(plan, output_folder, make_backend(fail_on={('fit_outcome_model', 4)}))

        backend = make_backend()
        report = _run(plan, output_folder, backend)

        assert report.succeeded
        assert len(report.computed) == 1
        assert backend.calls[-1][0] == 'fit_outcome_model'

    def test_thread_pool_matches_inline(self, tmp_path, make_backend, matched_analyses, balance_analysis,
                                        tco_three_outcomes):
        plan = plan_tasks(matched_analyses + [balance_analysis], [tco_three_outcomes])
        inline_report = _run(plan, tmp_path / 'inline', make_backend())
        settings = MultiThreadingSettings(max_workers=4, executor='thread',
                                          stage_limits={'cohort_method_data': 1})
        pooled_backend = make_backend()
        pooled_report = _run(plan, tmp_path / 'pooled', pooled_backend, settings)

        assert pooled_report.succeeded
        assert pooled_report.counts() == inline_report.counts()
        assert sorted(p.name for p in (tmp_path / 'pooled').iterdir()) == \
            sorted(p.name for p in (tmp_path / 'inline').iterdir())
        assert pooled_backend.count('get_db_cohort_method_data') == 1

    def test_thread_pool_failure_isolated(self, output_folder, make_backend, matched_analyses, tco_three_outcomes):
        plan = plan_tasks(matched_analyses, [tco_three_outcomes])
        settings = MultiThreadingSettings(max_workers=3, executor='thread')
        backend = make_backend(fail_on={('fit_outcome_model', 3)})

        report = _run(plan, output_folder, backend, settings)

        # Outcome 3 fails for both analyses; nothing depends on outcome models
        assert report.counts()['failed'] == 2
        assert report.counts()['skipped'] == 0

    def test_report_frame(self, output_folder, backend, crude_analysis, tco_three_outcomes):
        plan = plan_tasks([crude_analysis], [tco_three_outcomes])
        frame = _run(plan, output_folder, backend).to_frame()
        assert len(frame) == len(plan)
        assert set(frame['state']) == {'committed'}
        assert frame['file_name'].str.endswith('.pkl').all()

    def test_empty_plan(self, output_folder, backend, crude_analysis, tco_three_outcomes):
        plan = plan_tasks([crude_analysis], [tco_three_outcomes], analyses_to_exclude=[{'analysis_id': 1}])
        report = _run(plan, output_folder, backend)
        assert isinstance(report, RunReport)
        assert report.statuses == {}
        assert report.succeeded
