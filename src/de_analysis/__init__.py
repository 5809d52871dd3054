"""
Differential Expression Analysis module.
"""

from .design import DesignSpec, build_contrasts, build_design, check_rank, clean_column_name
from .dispersion import DispersionEstimate, dispersion_weights, estimate_dispersions
from .ebayes import EBayesFit, ebayes, fit_f_dist, squeeze_var, trigamma_inverse
from .linear_model import (
    BlockCorrelation,
    LinearModelFit,
    contrasts_fit,
    duplicate_correlation,
    lm_fit
)
from .voom import VoomResult, voom
from .differential_expression import (
    RESULT_COLUMNS,
    DEAnalysis,
    DifferentialResult,
    ModelSpec,
    fdr_correction,
    top_table,
    get_top_genes,
    filter_significant
)

__all__ = [
    'DesignSpec', 'build_design', 'build_contrasts', 'check_rank', 'clean_column_name',
    'DispersionEstimate', 'estimate_dispersions', 'dispersion_weights',
    'EBayesFit', 'ebayes', 'fit_f_dist', 'squeeze_var', 'trigamma_inverse',
    'LinearModelFit', 'BlockCorrelation', 'lm_fit', 'contrasts_fit', 'duplicate_correlation',
    'VoomResult', 'voom',
    'RESULT_COLUMNS', 'DEAnalysis', 'DifferentialResult', 'ModelSpec',
    'fdr_correction', 'top_table', 'get_top_genes', 'filter_significant',
]
