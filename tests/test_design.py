"""Tests for design matrices, rank checks and contrast parsing."""

import numpy as np
import pandas as pd
import pytest

from core.exceptions import ContrastError, DesignError, RankDeficiencyError
from de_analysis.design import build_contrasts, build_design, check_rank, clean_column_name


@pytest.fixture
def samples():
    keys = [f"p{i}_{s}" for i in range(1, 5) for s in ('baseline', 'exacerbation')]
    return pd.DataFrame({
        'patient': [f"p{i}" for i in range(1, 5) for _ in range(2)],
        'status': pd.Categorical(['baseline', 'exacerbation'] * 4,
                                 categories=['baseline', 'exacerbation']),
        'rhinovirus': pd.Categorical(
            ['negative', 'positive', 'positive', 'positive',
             'negative', 'negative', 'positive', 'negative'],
            categories=['negative', 'positive']),
        'age': [30.0, 30.0, 45.0, 45.0, 52.0, 52.0, 61.0, 61.0],
        'wbc': [6.1, 9.8, 5.4, 11.2, 7.0, 8.3, 6.6, 10.1],
    }, index=keys)


class TestColumnNames:

    @pytest.mark.parametrize("raw, expected", [
        ("Intercept", "Intercept"),
        ("status[T.exacerbation]", "statusexacerbation"),
        ("status[baseline]", "statusbaseline"),
        ("status[exacerbation]:rhinovirus[positive]", "statusexacerbation_rhinoviruspositive"),
        ("wbc", "wbc"),
    ])
    def test_clean_column_name(self, raw, expected):
        assert clean_column_name(raw) == expected


class TestBuildDesign:

    def test_paired_design(self, samples):
        design = build_design(samples, "~ patient + status")

        assert design.columns == [
            'Intercept', 'patientp2', 'patientp3', 'patientp4', 'statusexacerbation'
        ]
        assert design.df_residual == 3
        assert list(design.matrix.index) == list(samples.index)
        np.testing.assert_array_equal(
            design.matrix['statusexacerbation'].values, [0, 1] * 4
        )

    def test_cell_means_design(self, samples):
        design = build_design(samples, "~ 0 + status:rhinovirus")
        assert set(design.columns) == {
            'statusbaseline_rhinovirusnegative',
            'statusexacerbation_rhinovirusnegative',
            'statusbaseline_rhinoviruspositive',
            'statusexacerbation_rhinoviruspositive',
        }
        np.testing.assert_array_equal(design.matrix.sum(axis=1).values, np.ones(8))

    def test_covariate_constant_within_patient_is_rank_deficient(self, samples):
        with pytest.raises(RankDeficiencyError) as exc:
            build_design(samples, "~ patient + status + age")

        assert exc.value.n_columns == 6
        assert exc.value.rank == 5
        assert len(exc.value.dependent_columns) == 1

    def test_covariate_varying_within_patient_is_estimable(self, samples):
        design = build_design(samples, "~ patient + status + wbc")
        assert 'wbc' in design.columns
        assert design.df_residual == 2

    def test_missing_values_raise(self, samples):
        samples = samples.copy()
        samples.loc['p2_baseline', 'wbc'] = np.nan
        with pytest.raises(DesignError, match="p2_baseline"):
            build_design(samples, "~ status + wbc")

    def test_unknown_variable_raises(self, samples):
        with pytest.raises(DesignError):
            build_design(samples, "~ status + crp")

    def test_no_residual_df_raises(self, samples):
        with pytest.raises(DesignError):
            check_rank(pd.DataFrame(np.eye(3), columns=['a', 'b', 'c']))


class TestContrasts:

    def test_difference_of_columns(self, samples):
        design = build_design(samples, "~ 0 + status")
        contrasts = build_contrasts(design, {'ev_b': 'statusexacerbation - statusbaseline'})

        assert list(contrasts.index) == ['statusbaseline', 'statusexacerbation']
        assert contrasts['ev_b'].tolist() == [-1.0, 1.0]

    def test_averaged_expression(self, samples):
        design = build_design(samples, "~ 0 + status:rhinovirus")
        contrasts = build_contrasts(design, {
            'avg': '(statusexacerbation_rhinoviruspositive + statusexacerbation_rhinovirusnegative) / 2'
                   ' - statusbaseline_rhinovirusnegative'
        })
        weights = contrasts['avg']
        assert weights['statusexacerbation_rhinoviruspositive'] == pytest.approx(0.5)
        assert weights['statusexacerbation_rhinovirusnegative'] == pytest.approx(0.5)
        assert weights['statusbaseline_rhinovirusnegative'] == pytest.approx(-1.0)
        assert weights['statusbaseline_rhinoviruspositive'] == 0.0

    def test_mapping_definition(self, samples):
        design = build_design(samples, "~ patient + status")
        contrasts = build_contrasts(design, {'status': {'statusexacerbation': 1}})
        assert contrasts['status'].sum() == 1.0
        assert contrasts.loc['statusexacerbation', 'status'] == 1.0

    @pytest.mark.parametrize("expression", [
        "statusexacerbation - statusmissing",
        "statusexacerbation * statusbaseline",
        "statusexacerbation + 1",
        "__import__('os')",
        "statusexacerbation - statusexacerbation",
    ])
    def test_invalid_contrasts_raise(self, samples, expression):
        design = build_design(samples, "~ 0 + status")
        with pytest.raises(ContrastError):
            build_contrasts(design, {'bad': expression})

    def test_contrast_error_is_design_error(self):
        assert issubclass(ContrastError, DesignError)
