"""
voom precision weights.

Transforms counts to log-CPM, fits the gene-wise linear model, and models
the square-root residual standard deviation as a lowess trend of average
log count. Each observation's weight is the inverse of the predicted
variance at its fitted log count (Law et al. 2014).
"""

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
import pandas as pd
from statsmodels.nonparametric.smoothers_lowess import lowess

from preprocessing.normalization import log_cpm_voom
from .linear_model import DesignLike, lm_fit

logger = logging.getLogger(__name__)

MIN_GENES_FOR_TREND = 10


@dataclass(frozen=True)
class VoomResult:
    """log-CPM expression with matching precision weights (genes x samples)."""

    expr: pd.DataFrame
    weights: pd.DataFrame
    lib_sizes: pd.Series
    trend: Optional[pd.DataFrame] = None


def voom(
    counts: pd.DataFrame,
    design: DesignLike,
    lib_sizes: pd.Series,
    block=None,
    correlation: Optional[float] = None,
    span: float = 0.5
) -> VoomResult:
    """
    Compute voom log-CPM and observation-level precision weights.

    Parameters
    ----------
    counts : pd.DataFrame
        Raw counts (genes x samples)
    design : DesignSpec or pd.DataFrame
        Design matrix
    lib_sizes : pd.Series
        Effective (TMM-scaled) library sizes
    block, correlation
        Passed to ``lm_fit`` for repeated-measures designs
    span : float
        lowess span for the mean-variance trend

    Returns
    -------
    VoomResult
    """
    lib = lib_sizes.loc[counts.columns].astype(float)
    expr = log_cpm_voom(counts, lib)

    if counts.shape[0] < MIN_GENES_FOR_TREND:
        logger.info(
            f"Only {counts.shape[0]} genes; mean-variance trend not estimable, using unit weights"
        )
        weights = pd.DataFrame(1.0, index=counts.index, columns=counts.columns)
        return VoomResult(expr=expr, weights=weights, lib_sizes=lib)

    fit = lm_fit(expr, design, block=block, correlation=correlation)

    sx = fit.amean.to_numpy() + np.mean(np.log2(lib.to_numpy() + 1)) - np.log2(1e6)
    sy = np.sqrt(fit.sigma.to_numpy())

    delta = 0.01 * (sx.max() - sx.min())
    curve = lowess(sy, sx, frac=span, delta=delta, return_sorted=True)
    lx, ly = curve[:, 0], curve[:, 1]
    floor = np.min(sy[sy > 0]) if np.any(sy > 0) else 1e-4
    ly = np.maximum(ly, floor)

    fitted_log_cpm = fit.fitted_values()
    fitted_count = 1e-6 * np.power(2.0, fitted_log_cpm) * (lib.to_numpy() + 1)[None, :]
    fitted_log_count = np.log2(fitted_count)

    predicted_sqrt_sd = np.interp(fitted_log_count, lx, ly)
    weights = 1.0 / predicted_sqrt_sd ** 4

    logger.info(
        f"voom weights: median {np.median(weights):.3g}, "
        f"range {weights.min():.3g}-{weights.max():.3g}"
    )
    return VoomResult(
        expr=expr,
        weights=pd.DataFrame(weights, index=counts.index, columns=counts.columns),
        lib_sizes=lib,
        trend=pd.DataFrame({'mean_log_count': sx, 'sqrt_sigma': sy}, index=counts.index),
    )
