"""Tests for loading, aligning and pairing the cohort."""

import pandas as pd
import pytest

from core.exceptions import (
    CohortDataError,
    DuplicateSampleError,
    IdentifierMismatchError,
)
from preprocessing.data_loader import (
    RNAseqDataLoader,
    drop_unpaired,
    make_sample_key,
    normalize_identifier,
    summarize_pairs,
)


def make_loader(counts_path, metadata_path, columns, vocabulary):
    return RNAseqDataLoader(
        str(counts_path),
        str(metadata_path),
        columns=columns,
        status_labels=vocabulary['status_labels'],
        rhinovirus_labels=vocabulary['rhinovirus_labels'],
    )


class TestIdentifiers:

    @pytest.mark.parametrize("raw, expected", [
        ("P01_Exacerbation", "p01_exacerbation"),
        ("  P-01.Exac ", "p_01_exac"),
        ("p01 exac", "p01_exac"),
        ("__A__", "a"),
    ])
    def test_normalize_identifier(self, raw, expected):
        assert normalize_identifier(raw) == expected

    def test_sample_key_matches_normalized_column(self):
        assert make_sample_key("P01", "exacerbation") == normalize_identifier("P01_Exacerbation")


class TestLoad:

    def test_every_column_has_metadata(self, cohort_files, loader_columns, label_vocabulary):
        cohort = make_loader(*cohort_files, loader_columns, label_vocabulary).load()

        assert cohort.n_samples == 16
        assert list(cohort.counts.columns) == list(cohort.samples.index)
        assert set(cohort.samples['status']) == {'baseline', 'exacerbation'}
        assert set(cohort.samples['rhinovirus']) == {'positive', 'negative'}
        assert cohort.counts.dtypes.eq('int64').all()

    def test_missing_metadata_row_raises(self, tmp_path, raw_cohort, loader_columns, label_vocabulary):
        counts, metadata, _ = raw_cohort
        counts.to_csv(tmp_path / "counts.tsv", sep='\t')
        metadata.iloc[1:].to_csv(tmp_path / "metadata.csv", index=False)

        loader = make_loader(tmp_path / "counts.tsv", tmp_path / "metadata.csv",
                             loader_columns, label_vocabulary)
        with pytest.raises(IdentifierMismatchError) as exc:
            loader.load()
        assert exc.value.missing_metadata == ['p01_baseline']
        assert exc.value.missing_counts == []

    def test_missing_count_column_raises(self, tmp_path, raw_cohort, loader_columns, label_vocabulary):
        counts, metadata, _ = raw_cohort
        counts.drop(columns=['P02_Exacerbation']).to_csv(tmp_path / "counts.tsv", sep='\t')
        metadata.to_csv(tmp_path / "metadata.csv", index=False)

        loader = make_loader(tmp_path / "counts.tsv", tmp_path / "metadata.csv",
                             loader_columns, label_vocabulary)
        with pytest.raises(IdentifierMismatchError) as exc:
            loader.load()
        assert exc.value.missing_counts == ['p02_exacerbation']

    def test_duplicate_patient_status_raises(self, tmp_path, raw_cohort, loader_columns, label_vocabulary):
        counts, metadata, _ = raw_cohort
        metadata = pd.concat([metadata, metadata.iloc[[0]]], ignore_index=True)
        metadata.to_csv(tmp_path / "metadata.csv", index=False)

        loader = make_loader(tmp_path / "counts.tsv", tmp_path / "metadata.csv",
                             loader_columns, label_vocabulary)
        with pytest.raises(DuplicateSampleError):
            loader.load_metadata()

    def test_negative_counts_rejected(self, tmp_path, raw_cohort, loader_columns, label_vocabulary):
        counts, _, _ = raw_cohort
        counts.iloc[0, 0] = -1
        counts.to_csv(tmp_path / "counts.tsv", sep='\t')

        loader = make_loader(tmp_path / "counts.tsv", tmp_path / "metadata.csv",
                             loader_columns, label_vocabulary)
        with pytest.raises(CohortDataError, match="negative"):
            loader.load_counts()

    def test_non_integer_counts_rejected(self, tmp_path, raw_cohort, loader_columns, label_vocabulary):
        counts, _, _ = raw_cohort
        counts = counts.astype(float)
        counts.iloc[0, 0] = 1.5
        counts.to_csv(tmp_path / "counts.tsv", sep='\t')

        loader = make_loader(tmp_path / "counts.tsv", tmp_path / "metadata.csv",
                             loader_columns, label_vocabulary)
        with pytest.raises(CohortDataError, match="non-integer"):
            loader.load_counts()

    def test_unknown_status_label_rejected(self, tmp_path, raw_cohort, loader_columns, label_vocabulary):
        _, metadata, _ = raw_cohort
        metadata.loc[0, 'status'] = 'convalescent'
        metadata.to_csv(tmp_path / "metadata.csv", index=False)

        loader = make_loader(tmp_path / "counts.tsv", tmp_path / "metadata.csv",
                             loader_columns, label_vocabulary)
        with pytest.raises(CohortDataError, match="convalescent"):
            loader.load_metadata()

    def test_unparseable_blood_counts_become_nan(self, tmp_path, raw_cohort, loader_columns, label_vocabulary):
        _, metadata, _ = raw_cohort
        metadata['hgb'] = metadata['hgb'].astype(object)
        metadata.loc[3, 'hgb'] = 'hemolysed'
        metadata.to_csv(tmp_path / "metadata.csv", index=False)

        loader = make_loader(tmp_path / "counts.tsv", tmp_path / "metadata.csv",
                             loader_columns, label_vocabulary)
        table = loader.load_metadata()
        assert table['hgb'].isna().sum() == 1
        assert pd.api.types.is_float_dtype(table['hgb'])

    def test_tab_delimited_metadata(self, tmp_path, raw_cohort, loader_columns, label_vocabulary):
        counts, metadata, _ = raw_cohort
        counts.to_csv(tmp_path / "counts.tsv", sep='\t')
        metadata.to_csv(tmp_path / "metadata.tsv", sep='\t', index=False)

        loader = make_loader(tmp_path / "counts.tsv", tmp_path / "metadata.tsv",
                             loader_columns, label_vocabulary)
        assert loader.load().n_samples == 16

    def test_abbreviated_status_in_count_headers(self, tmp_path, raw_cohort, loader_columns,
                                                 label_vocabulary):
        counts, metadata, _ = raw_cohort
        counts.columns = [c.replace('Exacerbation', 'Exac').replace('Baseline', 'B')
                          for c in counts.columns]
        counts.to_csv(tmp_path / "counts.tsv", sep='\t')
        metadata.to_csv(tmp_path / "metadata.csv", index=False)

        loader = make_loader(tmp_path / "counts.tsv", tmp_path / "metadata.csv",
                             loader_columns, label_vocabulary)
        cohort = loader.load()

        assert cohort.counts.columns[:2].tolist() == ['p01_baseline', 'p01_exacerbation']
        assert cohort.n_samples == 16


class TestDropUnpaired:

    def test_removes_exactly_incomplete_samples(self, cohort):
        incomplete = cohort.drop_samples(['p03_exacerbation', 'p07_baseline'])

        paired, dropped = drop_unpaired(incomplete)

        assert sorted(dropped) == ['p03_baseline', 'p07_exacerbation']
        assert paired.n_samples == 12
        assert set(paired.samples['patient']) == set(cohort.samples['patient']) - {'p03', 'p07'}
        assert list(paired.counts.columns) == list(paired.samples.index)

    def test_complete_cohort_unchanged(self, cohort):
        paired, dropped = drop_unpaired(cohort)

        assert dropped == []
        assert paired.sample_keys == cohort.sample_keys
        pd.testing.assert_frame_equal(paired.counts, cohort.counts)

    def test_pair_summary(self, cohort):
        table = summarize_pairs(cohort)
        assert (table.values == 1).all()
        assert list(table.columns) == ['baseline', 'exacerbation']


class TestCohortData:

    def test_misaligned_snapshot_rejected(self, cohort):
        with pytest.raises(CohortDataError):
            type(cohort)(counts=cohort.counts, samples=cohort.samples.iloc[::-1])

    def test_subset_genes_keeps_samples(self, cohort):
        genes = list(cohort.counts.index[:5])
        subset = cohort.subset_genes(genes)
        assert list(subset.counts.index) == genes
        assert subset.sample_keys == cohort.sample_keys
        assert cohort.n_genes == 200
