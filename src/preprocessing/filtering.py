"""
Low-count gene filtering.

Counts near zero have a variance too large relative to their signal to
support inference, and leaving them in dilutes the multiple-testing
correction. A gene is kept when at least ``min_samples`` samples exceed
``min_log_cpm`` on the voom log-CPM scale.
"""

import logging

import pandas as pd

from .cohort import CohortData
from .normalization import log_cpm_voom

logger = logging.getLogger(__name__)


def low_count_mask(
    counts_df: pd.DataFrame,
    min_log_cpm: float = -2.5,
    min_samples: int = 4
) -> pd.Series:
    """
    Boolean mask of genes passing the abundance filter.

    Library sizes are taken from ``counts_df`` itself. Removing genes can only
    shrink libraries, which raises the log-CPM of the remaining genes, so
    applying the filter to its own output keeps every gene.
    """
    if min_samples < 1:
        raise ValueError(f"min_samples must be >= 1, got {min_samples}")

    lib_sizes = counts_df.sum(axis=0).astype(float)
    log_cpm = log_cpm_voom(counts_df, lib_sizes)
    return (log_cpm > min_log_cpm).sum(axis=1) >= min_samples


def filter_low_counts(
    counts_df: pd.DataFrame,
    min_log_cpm: float = -2.5,
    min_samples: int = 4
) -> pd.DataFrame:
    """
    Filter genes with low counts.

    Parameters
    ----------
    counts_df : pd.DataFrame
        Raw counts (genes x samples)
    min_log_cpm : float
        log2 CPM a sample has to exceed
    min_samples : int
        Number of samples that have to exceed it

    Returns
    -------
    pd.DataFrame
        Filtered counts
    """
    keep = low_count_mask(counts_df, min_log_cpm, min_samples)
    filtered_df = counts_df.loc[keep]

    n_genes_before = counts_df.shape[0]
    n_genes_after = filtered_df.shape[0]
    logger.info(f"Filtered genes: {n_genes_before} -> {n_genes_after} "
                f"(removed {n_genes_before - n_genes_after}; "
                f"log-CPM > {min_log_cpm} in >= {min_samples} samples)")

    return filtered_df


def filter_cohort(
    cohort: CohortData,
    min_log_cpm: float = -2.5,
    min_samples: int = 4
) -> CohortData:
    """Apply the low-count filter to a cohort snapshot."""
    keep = low_count_mask(cohort.counts, min_log_cpm, min_samples)
    filtered = cohort.subset_genes(keep)
    logger.info(f"Filtered genes: {cohort.n_genes} -> {filtered.n_genes}")
    return filtered
