#!/usr/bin/env python3
"""
Tests for src/stages/s06_outcome_model.py

Tests cover:
- Fitting on a persisted adjusted population
- Redoing the adjustment when the population was not persisted
- Outcome ID attached to the fitted model
"""
from __future__ import annotations

import sys
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent.parent / 'src'))

from cohort_method.base import OutcomeModel
from cohort_method.planner import plan_tasks
from cohort_method.tasks import StageKind
from stages import run_stage
from stages.s06_outcome_model import run


def _outputs_for(plan, backend, until):
    """Run tasks in plan order up to (not including) ``until``."""
    outputs = {}
    for task in plan:
        if task.fingerprint == until.fingerprint:
            break
        inputs = {role: outputs[fp] for role, fp in task.dependencies.items() if fp in outputs}
        outputs[task.fingerprint] = run_stage(task, inputs, backend, {})
    return outputs


def _om_task(plan, outcome_id):
    return next(t for t in plan if t.kind == StageKind.OUTCOME_MODEL and t.outcome_id == outcome_id)


class TestOutcomeModelStage:
    """Tests for the outcome model runner."""

    def test_uses_persisted_population(self, backend, crude_analysis, tco_three_outcomes):
        plan = plan_tasks([crude_analysis], [tco_three_outcomes])
        om = _om_task(plan, 3)
        outputs = _outputs_for(plan, backend, om)
        backend.calls.clear()

        inputs = {role: outputs[fp] for role, fp in om.dependencies.items()}
        model = run(om, inputs, backend, {})

        assert StageKind.ADJUST.value in om.dependencies
        assert [c[0] for c in backend.calls] == ['fit_outcome_model']
        assert isinstance(model, OutcomeModel)
        assert model.outcome_id == 3

    def test_adjusts_negative_control_inline(self, backend, crude_analysis, tco_three_outcomes):
        plan = plan_tasks([crude_analysis], [tco_three_outcomes])
        om = _om_task(plan, 4)
        outputs = _outputs_for(plan, backend, om)
        backend.calls.clear()

        inputs = {role: outputs[fp] for role, fp in om.dependencies.items()}
        model = run(om, inputs, backend, {})

        assert StageKind.ADJUST.value not in om.dependencies
        assert backend.calls == [
            ('create_study_population', 1, 4),
            ('fit_outcome_model', 1, 4),
        ]
        assert model.outcome_id == 4

    def test_matched_negative_control(self, backend, matched_analyses, tco_three_outcomes):
        plan = plan_tasks(matched_analyses[:1], [tco_three_outcomes])
        om = _om_task(plan, 5)
        outputs = _outputs_for(plan, backend, om)
        backend.calls.clear()

        inputs = {role: outputs[fp] for role, fp in om.dependencies.items()}
        model = run(om, inputs, backend, {})

        assert set(om.dependencies) == {StageKind.EXTRACT.value, StageKind.PROPENSITY.value}
        assert [c[0] for c in backend.calls] == ['create_study_population', 'match_on_ps', 'fit_outcome_model']
        assert model.outcome_id == 5
