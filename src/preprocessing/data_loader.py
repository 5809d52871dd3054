"""
RNA-seq Data Loader and Initial Processing
==========================================
Paired blood draws (exacerbation vs baseline) with rhinovirus status and
complete-blood-count covariates.

This module handles:
1. Loading the raw counts matrix
2. Loading the clinical metadata table
3. Normalizing sample identifiers so both sources share one composite key
4. Validating the pairing structure of the cohort
"""

import logging
import re
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from core.exceptions import (
    CohortDataError,
    DuplicateSampleError,
    IdentifierMismatchError,
)
from .cohort import CohortData

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

STATUS_LEVELS = ('baseline', 'exacerbation')
RHINOVIRUS_LEVELS = ('negative', 'positive')


def normalize_identifier(text) -> str:
    """
    Normalize identifier punctuation so keys match across sources.

    ``"P-01.Exac"``, ``"p01 exac"`` style variants collapse to a lowercase,
    underscore-separated key: ``"p_01_exac"``.
    """
    text = str(text).strip().lower()
    text = re.sub(r'[^0-9a-z]+', '_', text)
    return text.strip('_')


def make_sample_key(patient, status: str) -> str:
    """Composite sample key: patient x status."""
    return normalize_identifier(f"{patient}_{status}")


def _build_vocabulary(labels: Dict[str, List[str]]) -> Dict[str, str]:
    vocabulary = {}
    for canonical, aliases in labels.items():
        vocabulary[normalize_identifier(canonical)] = canonical
        for alias in aliases:
            vocabulary[normalize_identifier(alias)] = canonical
    return vocabulary


class RNAseqDataLoader:
    """Load the count matrix and sample metadata for a paired cohort."""

    def __init__(
        self,
        counts_file: str,
        metadata_file: str,
        columns: Optional[Dict] = None,
        status_labels: Optional[Dict[str, List[str]]] = None,
        rhinovirus_labels: Optional[Dict[str, List[str]]] = None
    ):
        """
        Parameters
        ----------
        counts_file : str
            Tab-delimited genes x samples counts, gene identifiers in the first column
        metadata_file : str
            Delimited table, one row per sample (``.csv`` comma, otherwise tab)
        columns : dict, optional
            Source column names for ``patient``, ``status``, ``rhinovirus`` and
            the ``cbc`` list of numeric blood-count columns
        status_labels, rhinovirus_labels : dict, optional
            Canonical level -> accepted raw spellings
        """
        self.counts_file = Path(counts_file)
        self.metadata_file = Path(metadata_file)
        self.columns = columns or {
            'patient': 'patient_id',
            'status': 'status',
            'rhinovirus': 'rhinovirus',
            'cbc': [],
        }
        self.status_vocab = _build_vocabulary(status_labels or {
            'exacerbation': ['exacerbation'],
            'baseline': ['baseline'],
        })
        self.rhinovirus_vocab = _build_vocabulary(rhinovirus_labels or {
            'positive': ['positive'],
            'negative': ['negative'],
        })
        self.counts_df: Optional[pd.DataFrame] = None
        self.metadata_df: Optional[pd.DataFrame] = None

    def load_counts(self) -> pd.DataFrame:
        """Load counts matrix from file."""
        logger.info(f"Loading counts from {self.counts_file}")

        counts = pd.read_csv(
            self.counts_file,
            sep='\t',
            index_col=0
        )
        counts.index = counts.index.astype(str)
        counts.index.name = 'gene_id'

        if counts.index.duplicated().any():
            dupes = counts.index[counts.index.duplicated()].unique().tolist()
            raise CohortDataError(f"Duplicate gene identifiers in counts: {dupes[:10]}")

        values = counts.to_numpy(dtype=float)
        if np.isnan(values).any():
            raise CohortDataError("Count matrix contains missing values")
        if (values < 0).any():
            raise CohortDataError("Count matrix contains negative values")
        if not np.array_equal(values, np.round(values)):
            raise CohortDataError("Count matrix contains non-integer values")

        keys = [self._count_key(c) for c in counts.columns]
        if len(set(keys)) != len(keys):
            seen, dupes = set(), []
            for k in keys:
                if k in seen:
                    dupes.append(k)
                seen.add(k)
            raise DuplicateSampleError(
                f"Count columns collide after identifier normalization: {sorted(set(dupes))}"
            )

        counts = counts.astype(np.int64)
        counts.columns = keys
        self.counts_df = counts

        logger.info(f"Loaded {counts.shape[0]} genes x {counts.shape[1]} samples")
        return self.counts_df

    def _count_key(self, column) -> str:
        """Normalized count header with a trailing status alias spelled canonically."""
        key = normalize_identifier(column)
        head, sep, tail = key.rpartition('_')
        if sep and tail in self.status_vocab:
            return make_sample_key(head, self.status_vocab[tail])
        return key

    def load_metadata(self) -> pd.DataFrame:
        """
        Load the sample metadata table.

        Status and rhinovirus labels are mapped onto canonical levels, the
        blood-count columns are coerced to numeric, and the table is indexed
        by the composite sample key.
        """
        logger.info(f"Loading sample metadata from {self.metadata_file}")

        patient_col = self.columns['patient']
        status_col = self.columns['status']
        rhino_col = self.columns.get('rhinovirus')
        cbc_cols = list(self.columns.get('cbc') or [])

        sep = ',' if self.metadata_file.suffix.lower() == '.csv' else '\t'
        raw = pd.read_csv(self.metadata_file, sep=sep, dtype={patient_col: str})

        for col in (patient_col, status_col):
            if col not in raw.columns:
                raise CohortDataError(f"Metadata is missing required column '{col}'")

        metadata = raw.copy()
        metadata = metadata.rename(columns={patient_col: 'patient', status_col: 'status'})
        metadata['patient'] = metadata['patient'].map(normalize_identifier)

        status = metadata['status'].map(
            lambda v: self.status_vocab.get(normalize_identifier(v)) if pd.notna(v) else None
        )
        unknown = metadata.loc[status.isna(), 'status'].unique().tolist()
        if unknown:
            raise CohortDataError(f"Unrecognised status labels: {unknown}")
        metadata['status'] = status

        if rhino_col and rhino_col in metadata.columns:
            if rhino_col != 'rhinovirus':
                metadata = metadata.rename(columns={rhino_col: 'rhinovirus'})
            rhino = metadata['rhinovirus'].map(
                lambda v: self.rhinovirus_vocab.get(normalize_identifier(v)) if pd.notna(v) else None
            )
            n_unknown = int(rhino.isna().sum())
            if n_unknown:
                logger.warning(f"{n_unknown} sample(s) with missing or unrecognised rhinovirus status")
            metadata['rhinovirus'] = rhino
        elif rhino_col:
            logger.warning(f"Rhinovirus column '{rhino_col}' not found in metadata")

        for col in cbc_cols:
            if col not in metadata.columns:
                logger.warning(f"Blood-count column '{col}' not found in metadata")
                continue
            coerced = pd.to_numeric(metadata[col], errors='coerce')
            n_bad = int((coerced.isna() & metadata[col].notna()).sum())
            if n_bad:
                logger.warning(f"Column '{col}': {n_bad} non-numeric value(s) set to NaN")
            metadata[col] = coerced

        metadata['sample_key'] = [
            make_sample_key(p, s) for p, s in zip(metadata['patient'], metadata['status'])
        ]
        duplicated = metadata['sample_key'].duplicated(keep=False)
        if duplicated.any():
            raise DuplicateSampleError(
                "More than one sample per patient and status: "
                f"{sorted(metadata.loc[duplicated, 'sample_key'].unique())}"
            )

        metadata = metadata.set_index('sample_key')
        self.metadata_df = metadata

        logger.info(f"Loaded metadata for {len(metadata)} samples")
        logger.info(f"Samples per status: {metadata['status'].value_counts().to_dict()}")
        return self.metadata_df

    def align(self) -> CohortData:
        """
        Align count columns with metadata rows.

        Raises
        ------
        IdentifierMismatchError
            If any sample lacks a metadata row or vice versa
        """
        if self.counts_df is None:
            self.load_counts()
        if self.metadata_df is None:
            self.load_metadata()

        count_keys = set(self.counts_df.columns)
        meta_keys = set(self.metadata_df.index)
        missing_metadata = count_keys - meta_keys
        missing_counts = meta_keys - count_keys
        if missing_metadata or missing_counts:
            raise IdentifierMismatchError(missing_metadata, missing_counts)

        order = list(self.counts_df.columns)
        samples = self.metadata_df.loc[order].copy()
        samples.index.name = 'sample_key'
        samples['status'] = pd.Categorical(samples['status'], categories=list(STATUS_LEVELS))
        if 'rhinovirus' in samples.columns:
            samples['rhinovirus'] = pd.Categorical(
                samples['rhinovirus'], categories=list(RHINOVIRUS_LEVELS)
            )

        logger.info(f"Aligned {len(order)} samples across counts and metadata")
        return CohortData(counts=self.counts_df.copy(), samples=samples)

    def load(self) -> CohortData:
        """Load both inputs and return the aligned cohort."""
        self.load_counts()
        self.load_metadata()
        return self.align()


def drop_unpaired(cohort: CohortData) -> Tuple[CohortData, List[str]]:
    """
    Remove samples whose patient lacks the other status.

    Only the incomplete sample is removed; complete pairs are untouched.

    Returns
    -------
    Tuple[CohortData, List[str]]
        Paired cohort and the dropped sample keys
    """
    samples = cohort.samples
    n_status = samples.groupby('patient', observed=True)['status'].nunique()
    incomplete = set(n_status[n_status < len(STATUS_LEVELS)].index)

    dropped = [key for key in samples.index if samples.at[key, 'patient'] in incomplete]
    if dropped:
        logger.warning(
            f"Dropping {len(dropped)} sample(s) without a paired status: {', '.join(dropped)}"
        )
    else:
        logger.info("All patients have both statuses")

    return cohort.drop_samples(dropped), dropped


def summarize_pairs(cohort: CohortData) -> pd.DataFrame:
    """Per-patient count of samples for each status."""
    samples = cohort.samples
    return pd.crosstab(samples['patient'], samples['status'].astype(str)).sort_index()
