"""
Pytest configuration and shared fixtures.

Synthetic paired cohorts: every patient has a baseline and an exacerbation
draw, counts are negative binomial around gene-specific means with a
patient effect, and a handful of genes change with status.
"""

import numpy as np
import pandas as pd
import pytest

from preprocessing.cohort import CohortData
from preprocessing.data_loader import RHINOVIRUS_LEVELS, STATUS_LEVELS


def generate_paired_cohort(
    n_patients: int = 8,
    n_genes: int = 200,
    n_de: int = 10,
    fold_change: float = 4.0,
    seed: int = 0
):
    """
    Raw-label counts and metadata for a paired cohort.

    Returns
    -------
    counts : pd.DataFrame
        Genes x samples, columns like ``P01_Exacerbation``
    metadata : pd.DataFrame
        One row per sample with raw labels and blood counts
    de_genes : list
        Genes with a status effect
    """
    rng = np.random.RandomState(seed)

    gene_ids = [f"ENSG{i:011d}.{1 + i % 3}" for i in range(1, n_genes + 1)]
    base = rng.lognormal(mean=5, sigma=1.2, size=n_genes)
    patient_effect = rng.normal(0, 0.3, size=(n_genes, n_patients))
    de_idx = np.arange(n_de)

    columns, records, data = [], [], []
    for p in range(n_patients):
        patient = f"P{p + 1:02d}"
        for status in ('Baseline', 'Exacerbation'):
            mu = base * np.exp(patient_effect[:, p]) * rng.uniform(0.8, 1.2)
            if status == 'Exacerbation':
                mu[de_idx] *= fold_change
            size = 20.0
            data.append(rng.negative_binomial(size, size / (size + mu)))
            columns.append(f"{patient}_{status}")

            exac = status == 'Exacerbation'
            records.append({
                'patient_id': patient,
                'status': 'Exac' if exac else 'base',
                'rhinovirus': 'pos' if (exac and p % 2 == 0) or (not exac and p % 4 == 1) else 'neg',
                'neut_abs': rng.uniform(8, 12) if exac else rng.uniform(2, 5),
                'hgb': rng.normal(14, 1),
                'plt': rng.normal(250, 40),
            })

    counts = pd.DataFrame(np.array(data).T, index=gene_ids, columns=columns)
    counts.index.name = 'gene_id'
    metadata = pd.DataFrame(records)
    return counts, metadata, [gene_ids[i] for i in de_idx]


def to_cohort(counts: pd.DataFrame, metadata: pd.DataFrame) -> CohortData:
    """Canonical CohortData from raw generator output."""
    status = metadata['status'].str.lower().map(
        lambda s: 'exacerbation' if s.startswith('exac') else 'baseline'
    )
    rhino = metadata['rhinovirus'].map({'pos': 'positive', 'neg': 'negative'})
    patient = metadata['patient_id'].str.lower()
    keys = [f"{p}_{s}" for p, s in zip(patient, status)]

    samples = pd.DataFrame({
        'patient': patient.values,
        'status': pd.Categorical(status.values, categories=list(STATUS_LEVELS)),
        'rhinovirus': pd.Categorical(rhino.values, categories=list(RHINOVIRUS_LEVELS)),
        'neut_abs': metadata['neut_abs'].values,
        'hgb': metadata['hgb'].values,
        'plt': metadata['plt'].values,
    }, index=pd.Index(keys, name='sample_key'))

    counts = counts.copy()
    counts.columns = keys
    return CohortData(counts=counts, samples=samples)


@pytest.fixture
def raw_cohort():
    return generate_paired_cohort()


@pytest.fixture
def cohort(raw_cohort):
    counts, metadata, _ = raw_cohort
    return to_cohort(counts, metadata)


@pytest.fixture
def de_genes(raw_cohort):
    return raw_cohort[2]


@pytest.fixture
def cohort_files(tmp_path, raw_cohort):
    """Counts TSV and metadata CSV on disk, as the loader expects them."""
    counts, metadata, _ = raw_cohort
    counts_path = tmp_path / "counts.tsv"
    metadata_path = tmp_path / "metadata.csv"
    counts.to_csv(counts_path, sep='\t')
    metadata.to_csv(metadata_path, index=False)
    return counts_path, metadata_path


@pytest.fixture
def loader_columns():
    return {
        'patient': 'patient_id',
        'status': 'status',
        'rhinovirus': 'rhinovirus',
        'cbc': ['neut_abs', 'hgb', 'plt'],
    }


@pytest.fixture
def label_vocabulary():
    return {
        'status_labels': {
            'exacerbation': ['exac', 'e'],
            'baseline': ['base', 'b'],
        },
        'rhinovirus_labels': {
            'positive': ['pos'],
            'negative': ['neg'],
        },
    }


@pytest.fixture
def tiny_paired_cohort():
    """
    4 genes x 4 samples: one gene up ~8-fold in both patients, three flat
    genes whose small wiggles cancel between the two patients.
    """
    keys = ['p1_baseline', 'p1_exacerbation', 'p2_baseline', 'p2_exacerbation']
    counts = pd.DataFrame(
        [
            [10, 80, 12, 90],
            [5100, 4900, 4900, 5100],
            [3000, 3150, 3150, 3000],
            [8000, 7700, 7700, 8000],
        ],
        index=pd.Index(['gene_de', 'gene_flat1', 'gene_flat2', 'gene_flat3'], name='gene_id'),
        columns=keys,
    )
    samples = pd.DataFrame({
        'patient': ['p1', 'p1', 'p2', 'p2'],
        'status': pd.Categorical(
            ['baseline', 'exacerbation', 'baseline', 'exacerbation'],
            categories=list(STATUS_LEVELS)
        ),
    }, index=pd.Index(keys, name='sample_key'))
    return CohortData(counts=counts, samples=samples)
