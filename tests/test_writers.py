"""Tests for TSV and JSON writers."""

import json

import numpy as np
import pandas as pd
import pytest

from core.exceptions import OutputError
from covariate_screening.screening import ScreeningResult
from de_analysis.differential_expression import RESULT_COLUMNS, DEAnalysis, ModelSpec
from output import (
    safe_filename,
    write_differential_result,
    write_result_table,
    write_run_summary,
    write_screening_result,
)


@pytest.fixture
def result_table():
    return pd.DataFrame({
        'gene_id': ['g2', 'g1'],
        'logFC': [1.23456789012, -0.5],
        'AveExpr': [5.0, 6.0],
        't': [7.5, -2.0],
        'P.Value': [1e-6, np.nan],
        'adj.P.Val': [2e-6, np.nan],
        'B': [4.2, -3.1],
    })


def test_safe_filename():
    assert safe_filename('rv interaction/A') == 'rv_interaction_A'
    with pytest.raises(OutputError):
        safe_filename('///')


def test_result_table_format(tmp_path, result_table):
    path = write_result_table(result_table, tmp_path / 'de' / 'model__contrast.tsv')

    lines = path.read_text().splitlines()
    assert lines[0].split('\t') == RESULT_COLUMNS
    assert lines[1].split('\t')[:2] == ['g2', '1.2345679']
    assert lines[2].split('\t')[4] == 'NA'
    assert len(lines) == 3


def test_annotation_columns_follow_statistics(tmp_path, result_table):
    table = result_table.assign(description=['d2', 'd1'], symbol=['S2', 'S1'], extra=[0, 0])

    path = write_result_table(table, tmp_path / 'annotated.tsv')

    header = path.read_text().splitlines()[0].split('\t')
    assert header == RESULT_COLUMNS + ['symbol', 'description']


def test_missing_statistic_column_raises(tmp_path, result_table):
    with pytest.raises(OutputError):
        write_result_table(result_table.drop(columns=['B']), tmp_path / 'x.tsv')


def test_write_is_deterministic(tmp_path, result_table):
    first = write_result_table(result_table, tmp_path / 'a.tsv').read_bytes()
    second = write_result_table(result_table, tmp_path / 'b.tsv').read_bytes()
    assert first == second


def test_differential_result_files(tmp_path, tiny_paired_cohort):
    spec = ModelSpec('paired', '~ patient + status', {'exacerbation vs baseline': 'statusexacerbation'})
    result = DEAnalysis(tiny_paired_cohort).run_model(spec)

    paths = write_differential_result(result, tmp_path)

    assert [p.name for p in paths] == ['paired__exacerbation_vs_baseline.tsv']
    written = pd.read_csv(paths[0], sep='\t')
    assert list(written['gene_id']) == list(result.tables['exacerbation vs baseline']['gene_id'])


def test_screening_files(tmp_path):
    result = ScreeningResult(
        retained=['hgb'],
        excluded=pd.DataFrame([{
            'covariate': 'neut_abs', 'iteration': 1, 'reason': 'perfect_separator',
            'split_threshold': 6.5, 'deviance': 1e-4,
        }]),
        history=pd.DataFrame([
            {'iteration': 1, 'n_covariates': 2, 'n_samples': 16, 'deviance': 1e-4},
            {'iteration': 2, 'n_covariates': 1, 'n_samples': 16, 'deviance': 21.3},
        ]),
    )

    paths = write_screening_result(result, tmp_path)

    assert pd.read_csv(paths['retained'], sep='\t')['covariate'].tolist() == ['hgb']
    assert len(pd.read_csv(paths['history'], sep='\t')) == 2
    assert pd.read_csv(paths['excluded'], sep='\t')['covariate'].tolist() == ['neut_abs']


def test_run_summary_json(tmp_path):
    path = write_run_summary({'b': 1, 'a': {'n': 2}}, tmp_path / 'summary.json')
    text = path.read_text()
    assert json.loads(text) == {'a': {'n': 2}, 'b': 1}
    assert text.index('"a"') < text.index('"b"')
