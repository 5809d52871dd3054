"""
Negative binomial dispersion estimates.

Biological variance per gene in three stages of increasing granularity:

- common:   one value pooled over all genes
- trended:  smoothed against average log-CPM
- tagwise:  each gene's own estimate shrunk toward the trend

Raw per-gene values are Pearson moment estimates around means from a
log-linear fit of the design. Shrinkage is an empirical Bayes weighted
average with ``prior_df`` pseudo degrees of freedom, so a gene with few
residual degrees of freedom stays close to the trend and a saturated
design returns the trend itself.
"""

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd
from statsmodels.nonparametric.smoothers_lowess import lowess

from preprocessing.normalization import log_cpm_voom
from .linear_model import DesignLike, _design_frame

logger = logging.getLogger(__name__)

MIN_DISPERSION = 1e-6
MIN_GENES_FOR_TREND = 10


@dataclass(frozen=True)
class DispersionEstimate:
    common: float
    trended: pd.Series
    tagwise: pd.Series
    raw: pd.Series
    ave_log_cpm: pd.Series
    fitted_mean: pd.DataFrame
    df_residual: int
    prior_df: float

    def to_frame(self) -> pd.DataFrame:
        """Per-gene summary table."""
        return pd.DataFrame({
            'gene_id': self.raw.index,
            'ave_log_cpm': self.ave_log_cpm.values,
            'raw': self.raw.values,
            'trended': self.trended.values,
            'tagwise': self.tagwise.values,
        })


def estimate_dispersions(
    counts: pd.DataFrame,
    design: DesignLike,
    lib_sizes: pd.Series,
    prior_df: float = 10,
    span: float = 0.3
) -> DispersionEstimate:
    """
    Estimate common, trended and tagwise dispersions.

    Parameters
    ----------
    counts : pd.DataFrame
        Raw counts (genes x samples)
    design : DesignSpec or pd.DataFrame
        Design matrix
    lib_sizes : pd.Series
        Effective (TMM-scaled) library sizes
    prior_df : float
        Weight of the trend in the tagwise estimate
    span : float
        lowess span of the trend

    Returns
    -------
    DispersionEstimate
    """
    design_df = _design_frame(design).loc[counts.columns]
    X = design_df.to_numpy(dtype=float)
    Y = counts.to_numpy(dtype=float)
    lib = lib_sizes.loc[counts.columns].to_numpy(dtype=float)

    n, p = X.shape
    df = n - p

    z = np.log((Y + 0.5) / (lib + 1.0))
    beta, *_ = np.linalg.lstsq(X, z.T, rcond=None)
    mu = np.exp(X @ beta).T * (lib + 1.0)

    pearson = ((Y - mu) ** 2 - mu) / mu ** 2
    ave_log_cpm = log_cpm_voom(counts, lib_sizes).mean(axis=1)

    if df > 0:
        raw = np.maximum(pearson.sum(axis=1) / df, 0.0)
        common = max(float(pearson.sum() / (df * Y.shape[0])), MIN_DISPERSION)
    else:
        logger.warning("Saturated design: dispersions fall back to the pooled moment estimate")
        raw = np.full(Y.shape[0], np.nan)
        common = max(float(np.mean(pearson)), MIN_DISPERSION)

    if Y.shape[0] >= MIN_GENES_FOR_TREND and df > 0:
        x = ave_log_cpm.to_numpy()
        delta = 0.01 * (x.max() - x.min())
        trended = lowess(raw, x, frac=span, delta=delta, return_sorted=False)
        trended = np.maximum(trended, MIN_DISPERSION)
    else:
        trended = np.full(Y.shape[0], common)

    if df > 0:
        tagwise = (prior_df * trended + df * raw) / (prior_df + df)
    else:
        tagwise = trended.copy()
    tagwise = np.maximum(tagwise, MIN_DISPERSION)

    logger.info(
        f"Dispersion: common={common:.4g} (BCV {np.sqrt(common):.3f}), "
        f"tagwise median={np.median(tagwise):.4g}, residual df={df}, prior df={prior_df}"
    )

    genes = counts.index
    return DispersionEstimate(
        common=common,
        trended=pd.Series(trended, index=genes, name='trended'),
        tagwise=pd.Series(tagwise, index=genes, name='tagwise'),
        raw=pd.Series(raw, index=genes, name='raw'),
        ave_log_cpm=ave_log_cpm.rename('ave_log_cpm'),
        fitted_mean=pd.DataFrame(mu, index=genes, columns=counts.columns),
        df_residual=df,
        prior_df=float(prior_df),
    )


def dispersion_weights(estimate: DispersionEstimate, which: str = 'tagwise') -> pd.DataFrame:
    """
    Precision weights for log counts: 1 / (1/mu + dispersion).

    The delta-method variance of log(y) under Var(y) = mu + phi * mu^2.
    """
    if which not in ('common', 'trended', 'tagwise'):
        raise ValueError(f"Unknown dispersion type: {which}")

    mu = estimate.fitted_mean
    if which == 'common':
        phi = np.full(mu.shape[0], estimate.common)
    else:
        phi = getattr(estimate, which).loc[mu.index].to_numpy()

    weights = 1.0 / (1.0 / mu.to_numpy() + phi[:, None])
    return pd.DataFrame(weights, index=mu.index, columns=mu.columns)
