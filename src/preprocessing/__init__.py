"""
Preprocessing module for RNA-seq analysis.
"""

from .cohort import CohortData
from .data_loader import RNAseqDataLoader, drop_unpaired, normalize_identifier, make_sample_key
from .normalization import RNAseqNormalizer, compare_library_sizes, high_count_genes, log_cpm_voom
from .filtering import filter_low_counts, filter_cohort, low_count_mask

__all__ = [
    'CohortData',
    'RNAseqDataLoader',
    'drop_unpaired',
    'normalize_identifier',
    'make_sample_key',
    'RNAseqNormalizer',
    'compare_library_sizes',
    'high_count_genes',
    'log_cpm_voom',
    'filter_low_counts',
    'filter_cohort',
    'low_count_mask',
]
