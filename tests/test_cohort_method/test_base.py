"""Tests for cohort_method.base module."""
from __future__ import annotations

import math
import pickle

import numpy as np
import pandas as pd
import pytest

from cohort_method.base import CohortMethodData, OutcomeModel


@pytest.fixture
def cm_data():
    return CohortMethodData(
        cohorts=pd.DataFrame({'row_id': [1, 2, 3], 'treatment': [1, 0, 1]}),
        outcomes=pd.DataFrame(columns=['row_id', 'outcome_id', 'days_to_event']),
        covariates=pd.DataFrame({
            'row_id': [1, 2, 3, 3],
            'covariate_id': [1001, 1001, 2001, 1001],
            'covariate_value': [1.0, 1.0, 1.0, 1.0],
        }),
        covariate_ref=pd.DataFrame({
            'covariate_id': [1001, 2001],
            'covariate_name': ['A', 'B'],
            'concept_id': [1, 2],
        }),
        metadata={'target_id': 1, 'comparator_id': 2, 'outcome_ids': [3]},
    )


class TestCohortMethodData:
    """Tests for the extracted data container."""

    def test_metadata_properties(self, cm_data):
        assert cm_data.target_id == 1
        assert cm_data.comparator_id == 2
        assert cm_data.outcome_ids == [3]

    def test_covariate_ids_filters(self, cm_data):
        assert cm_data.covariate_ids() == [1001, 2001]
        assert cm_data.covariate_ids(concept_ids_excluded=(2,)) == [1001]
        assert cm_data.covariate_ids(concept_ids_included=(2,)) == [2001]

    def test_covariate_matrix_order(self, cm_data):
        matrix = cm_data.covariate_matrix([3, 1], [2001, 1001])
        np.testing.assert_array_equal(matrix, [[1.0, 1.0], [0.0, 1.0]])

    def test_covariate_matrix_empty(self, cm_data):
        assert cm_data.covariate_matrix([], [1001]).shape == (0, 1)

    def test_picklable(self, cm_data):
        restored = pickle.loads(pickle.dumps(cm_data))
        pd.testing.assert_frame_equal(restored.covariates, cm_data.covariates)


class TestOutcomeModel:
    """Tests for derived estimates."""

    def test_estimates(self):
        model = OutcomeModel(outcome_id=3, model_type='cox', log_rr=math.log(2), se_log_rr=0.1)
        assert model.rr == pytest.approx(2.0)
        assert model.ci_95_lb == pytest.approx(2 * math.exp(-1.959964 * 0.1), rel=1e-5)
        assert model.ci_95_ub == pytest.approx(2 * math.exp(1.959964 * 0.1), rel=1e-5)
        assert model.p < 0.001

    def test_unfitted_model_is_nan(self):
        model = OutcomeModel(outcome_id=3, model_type='cox')
        assert math.isnan(model.rr)
        assert math.isnan(model.ci_95_lb)
        assert math.isnan(model.p)

    def test_to_dict_includes_estimates(self):
        data = OutcomeModel(outcome_id=3, model_type='poisson', log_rr=0.0, se_log_rr=0.5).to_dict()
        assert data['rr'] == 1.0
        assert data['p'] == pytest.approx(1.0)
        assert data['warnings'] == []
