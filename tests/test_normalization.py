"""Tests for TMM normalization, log-CPM scales and the low-count filter."""

import numpy as np
import pandas as pd
import pytest

from preprocessing.cohort import CohortData
from preprocessing.filtering import filter_cohort, filter_low_counts, low_count_mask
from preprocessing.normalization import (
    RNAseqNormalizer,
    compare_library_sizes,
    high_count_genes,
    log_cpm_voom,
)


class TestTMM:

    def test_geometric_mean_is_one(self, cohort):
        factors = RNAseqNormalizer(cohort.counts).tmm_factors()
        assert np.exp(np.mean(np.log(factors))) == pytest.approx(1.0)
        assert list(factors.index) == cohort.sample_keys

    def test_invariant_to_sample_order(self, cohort):
        factors = RNAseqNormalizer(cohort.counts).tmm_factors()

        rng = np.random.RandomState(3)
        order = list(rng.permutation(cohort.counts.columns))
        permuted = RNAseqNormalizer(cohort.counts[order]).tmm_factors()

        pd.testing.assert_series_equal(
            factors.sort_index(), permuted.sort_index(), check_exact=False, rtol=1e-10
        )

    def test_all_zero_genes_do_not_change_factors(self, cohort):
        factors = RNAseqNormalizer(cohort.counts).tmm_factors()

        zeros = pd.DataFrame(0, index=['zero_1', 'zero_2'], columns=cohort.counts.columns)
        padded = pd.concat([cohort.counts, zeros])
        padded_factors = RNAseqNormalizer(padded).tmm_factors()

        np.testing.assert_allclose(factors.values, padded_factors.values)

    def test_composition_bias_is_corrected(self):
        rng = np.random.RandomState(1)
        base = rng.lognormal(6, 1, size=500)
        a = rng.poisson(base)
        b = rng.poisson(base)
        # one sample has a few genes taking a large share of its library
        b[:10] = b[:10] * 50
        counts = pd.DataFrame({'s1': a, 's2': b})

        factors = RNAseqNormalizer(counts).tmm_factors()
        lib = counts.sum()
        # the effective library of s2 is close to its raw library minus the inflated genes
        effective = lib * factors
        expected_ratio = (lib['s2'] - b[:10].sum()) / (lib['s1'] - a[:10].sum())
        assert effective['s2'] / effective['s1'] == pytest.approx(expected_ratio, rel=0.05)


class TestLogScales:

    def test_voom_log_cpm_formula(self):
        counts = pd.DataFrame({'a': [0, 10], 'b': [5, 5]})
        lib = pd.Series({'a': 10.0, 'b': 10.0})
        expected = np.log2((counts + 0.5) / 11.0 * 1e6)
        pd.testing.assert_frame_equal(log_cpm_voom(counts, lib), expected)

    def test_log_cpm_is_finite_with_zeros(self, cohort):
        counts = cohort.counts.copy()
        counts.iloc[:5] = 0
        log_cpm = RNAseqNormalizer(counts).cpm(log=True)
        assert np.isfinite(log_cpm.values).all()

    def test_vst_requires_positive_dispersion(self, cohort):
        with pytest.raises(ValueError):
            RNAseqNormalizer(cohort.counts).vst(0.0)

    def test_vst_is_monotone_in_counts(self, cohort):
        normalizer = RNAseqNormalizer(cohort.counts)
        vst = normalizer.vst(0.1, factors=pd.Series(1.0, index=cohort.counts.columns))
        sample = cohort.counts.columns[0]
        order = np.argsort(cohort.counts[sample].values, kind='mergesort')
        assert np.all(np.diff(vst[sample].values[order]) >= 0)


class TestSummaries:

    def test_library_sizes(self, cohort):
        table = compare_library_sizes(cohort.counts)
        assert list(table['sample_id']) == cohort.sample_keys
        assert (table['total_counts'].values == cohort.counts.sum().values).all()

    def test_high_count_genes_sorted(self, cohort):
        table = high_count_genes(cohort.counts, top_n=5)
        assert len(table) == 5
        assert table['mean_pct_of_library'].is_monotonic_decreasing


class TestLowCountFilter:

    def test_removes_low_genes(self, cohort):
        counts = cohort.counts.copy()
        counts.iloc[0] = 0
        counts.iloc[1] = [1] + [0] * (counts.shape[1] - 1)

        # synthetic libraries are small: a zero sits near 3 log-CPM, a single read near 4.6
        filtered = filter_low_counts(counts, min_log_cpm=4.0, min_samples=4)

        assert counts.index[0] not in filtered.index
        assert counts.index[1] not in filtered.index

    def test_idempotent(self, cohort):
        rng = np.random.RandomState(7)
        counts = cohort.counts.copy()
        # a band of low genes near the threshold
        counts.iloc[:40] = rng.poisson(0.3, size=(40, counts.shape[1]))

        once = filter_low_counts(counts, min_log_cpm=4.0, min_samples=4)
        twice = filter_low_counts(once, min_log_cpm=4.0, min_samples=4)

        assert once.shape[0] < counts.shape[0]
        pd.testing.assert_frame_equal(once, twice)

    def test_filter_cohort_returns_new_snapshot(self, cohort):
        counts = cohort.counts.copy()
        counts.iloc[0] = 0
        source = CohortData(counts=counts, samples=cohort.samples)

        filtered = filter_cohort(source, min_log_cpm=4.0, min_samples=4)

        assert counts.index[0] not in filtered.counts.index
        assert filtered.n_genes < source.n_genes
        assert source.n_genes == 200
        assert filtered.sample_keys == source.sample_keys

    def test_min_samples_must_be_positive(self, cohort):
        with pytest.raises(ValueError):
            low_count_mask(cohort.counts, min_samples=0)


def test_summary_lists_each_computed_scale(cohort):
    normalizer = RNAseqNormalizer(cohort.counts)
    factors = normalizer.tmm_factors()
    normalizer.cpm(log=True)
    normalizer.log_cpm_voom(factors)

    summary = normalizer.get_summary_stats()

    assert list(summary['method']) == ['log_cpm', 'voom']
    assert (summary['min'] <= summary['mean']).all()
