"""Tests for exploratory tables and plots."""

import numpy as np
import pytest

from exploration import ExploratoryReporter


@pytest.fixture
def reporter(cohort):
    return ExploratoryReporter(cohort, top_genes=5, n_components=3)


def test_tables(reporter, cohort):
    tables = reporter.tables()

    assert set(tables) == {
        'library_sizes', 'patient_pairs', 'high_count_genes',
        'pca_scores', 'pca_explained_variance', 'sample_clusters',
    }
    assert len(tables['library_sizes']) == cohort.n_samples
    assert 'status' in tables['library_sizes'].columns
    assert len(tables['patient_pairs']) == 8
    assert len(tables['high_count_genes']) == 5
    assert len(tables['sample_clusters']) == cohort.n_samples


def test_pca_scores_are_annotated(reporter, cohort):
    scores, explained = reporter.pca_analysis()

    assert list(scores.index) == cohort.sample_keys
    assert {'PC1', 'PC2', 'PC3', 'patient', 'status'} <= set(scores.columns)
    assert explained.is_monotonic_decreasing
    assert 0 < explained.sum() <= 1.0 + 1e-12


def test_clustering_assigns_every_sample(reporter, cohort):
    linkage, table = reporter.sample_clustering(n_clusters=3)

    assert linkage.shape == (cohort.n_samples - 1, 4)
    assert sorted(table['leaf_order']) == list(range(cohort.n_samples))
    assert set(table['cluster']) <= {1, 2, 3}


def test_precomputed_expression_is_used(cohort):
    expr = np.log2(cohort.counts + 1.0)
    reporter = ExploratoryReporter(cohort, log_expr=expr[cohort.sample_keys[::-1]])
    assert list(reporter.log_expr.columns) == cohort.sample_keys


def test_render_plots(reporter, tmp_path):
    paths = reporter.render_plots(tmp_path / 'plots', dpi=40)

    names = sorted(p.name for p in paths)
    assert names == [
        'library_sizes.png', 'log_cpm_density.png', 'pca.png',
        'sample_correlation.png', 'sample_dendrogram.png',
    ]
    for path in paths:
        assert path.exists() and path.stat().st_size > 0


def test_expression_plots_only(reporter, tmp_path):
    paths = reporter.render_plots(tmp_path / 'normalized', dpi=40, library_plots=False)

    assert 'library_sizes.png' not in {p.name for p in paths}
    assert len(paths) == 4


def test_expression_tables(reporter, cohort):
    tables = reporter.expression_tables()

    assert set(tables) == {'pca_scores', 'pca_explained_variance', 'sample_clusters'}
    assert len(tables['pca_scores']) == cohort.n_samples
