"""
Empirical Bayes Moderation
==========================

Borrowing strength across genes to stabilise small-sample variance
estimates (Smyth 2004, limma ``eBayes``):

1. Fit a scaled F-distribution to the residual variances (method of moments)
2. Squeeze each gene's variance toward the prior
3. Moderated t-statistics on the augmented degrees of freedom
4. B-statistics (log-odds of differential expression)
"""

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
import pandas as pd
from scipy import stats
from scipy.special import digamma, polygamma
from statsmodels.nonparametric.smoothers_lowess import lowess

from .linear_model import LinearModelFit

logger = logging.getLogger(__name__)


def trigamma_inverse(x) -> np.ndarray:
    """
    Inverse of the trigamma function, elementwise.

    Newton iteration on 1/trigamma(y), which is convex and nearly linear,
    starting from y = 0.5 + 1/x (limma ``trigammaInverse``).
    """
    x = np.atleast_1d(np.asarray(x, dtype=float))
    y = np.full_like(x, np.nan)

    ok = np.isfinite(x) & (x > 0)
    big = ok & (x > 1e7)
    small = ok & (x < 1e-6)
    mid = ok & ~big & ~small

    y[big] = 1.0 / np.sqrt(x[big])
    y[small] = 1.0 / x[small]

    if mid.any():
        xm = x[mid]
        ym = 0.5 + 1.0 / xm
        for _ in range(50):
            tri = polygamma(1, ym)
            dif = tri * (1 - tri / xm) / polygamma(2, ym)
            ym = ym + dif
            if np.max(-dif / ym) < 1e-8:
                break
        else:
            logger.warning("trigamma_inverse: iteration limit exceeded")
        y[mid] = ym

    return y


def fit_f_dist(
    s2: np.ndarray,
    df1,
    covariate: Optional[np.ndarray] = None,
    span: float = 0.5
) -> Tuple[float, np.ndarray]:
    """
    Moment estimation of the scaled F prior for the gene variances.

    Assume s2_g ~ s0^2 * F(df1, d0). On the log scale

        z = log(s2) - digamma(df1/2) + log(df1/2)

    has mean log(s0^2) - digamma(d0/2) + log(d0/2) and variance
    trigamma(df1/2) + trigamma(d0/2).

    Parameters
    ----------
    s2 : np.ndarray
        Residual variances
    df1 : float or np.ndarray
        Residual degrees of freedom
    covariate : np.ndarray, optional
        Average expression; the prior location then follows a lowess trend

    Returns
    -------
    Tuple[float, np.ndarray]
        Prior degrees of freedom d0 (may be inf) and prior variance s0^2 per gene
    """
    s2 = np.asarray(s2, dtype=float)
    df1 = np.broadcast_to(np.asarray(df1, dtype=float), s2.shape)

    ok = np.isfinite(s2) & np.isfinite(df1) & (df1 > 1e-15)
    n_ok = int(ok.sum())
    if n_ok == 0:
        return np.inf, np.full(s2.shape, np.nan)

    x = np.maximum(s2[ok], 0)
    m = np.median(x)
    if m == 0:
        logger.warning("More than half of residual variances are exactly zero")
        m = 1.0
    x = np.maximum(x, 1e-5 * m)

    d = df1[ok]
    e = np.log(x) - digamma(d / 2) + np.log(d / 2)

    if covariate is not None and n_ok >= 10:
        cov_ok = np.asarray(covariate, dtype=float)[ok]
        trend = lowess(e, cov_ok, frac=span, return_sorted=False)
        evar = np.sum((e - trend) ** 2) / max(n_ok - 1, 1)
        emean_all = np.interp(
            np.asarray(covariate, dtype=float),
            np.sort(cov_ok),
            trend[np.argsort(cov_ok)]
        )
    else:
        emean = np.mean(e)
        evar = np.sum((e - emean) ** 2) / max(n_ok - 1, 1)
        emean_all = np.full(s2.shape, emean)

    if n_ok < 2:
        evar = 0.0
    evar = evar - np.mean(polygamma(1, d / 2))

    if evar > 0:
        d0 = float(2 * trigamma_inverse(evar)[0])
        if d0 > 1e10:
            d0 = np.inf
    else:
        d0 = np.inf

    if np.isfinite(d0):
        s0_sq = np.exp(emean_all + digamma(d0 / 2) - np.log(d0 / 2))
    else:
        s0_sq = np.exp(emean_all)

    return d0, s0_sq


def squeeze_var(
    var: np.ndarray,
    df,
    covariate: Optional[np.ndarray] = None
) -> Tuple[np.ndarray, np.ndarray, float]:
    """
    Posterior variances shrunk toward the fitted prior.

    Returns
    -------
    Tuple[np.ndarray, np.ndarray, float]
        Posterior variances, prior variances, prior degrees of freedom
    """
    var = np.asarray(var, dtype=float)
    df = np.broadcast_to(np.asarray(df, dtype=float), var.shape)

    d0, s0_sq = fit_f_dist(var, df, covariate=covariate)

    if np.isinf(d0):
        var_post = np.array(s0_sq, dtype=float)
    else:
        safe_var = np.where(df > 0, var, 0.0)
        var_post = (df * safe_var + d0 * s0_sq) / (df + d0)

    return var_post, s0_sq, d0


def tmixture_vector(
    tstat: np.ndarray,
    stdev_unscaled: np.ndarray,
    df: np.ndarray,
    proportion: float,
    v0_lim: Optional[Tuple[float, float]] = None
) -> float:
    """
    Prior variance of the non-null coefficients from the top t-statistics.

    Compares the largest |t| against the order statistics expected if a
    ``proportion`` of genes were differentially expressed.
    """
    ok = np.isfinite(tstat)
    tstat = np.abs(tstat[ok])
    stdev_unscaled = stdev_unscaled[ok]
    df = np.broadcast_to(np.asarray(df, dtype=float), ok.shape)[ok].copy()

    n_genes = len(tstat)
    n_target = int(np.ceil(proportion / 2 * n_genes))
    if n_target < 1:
        return np.nan
    p = max(n_target / n_genes, proportion)

    max_df = np.max(df)
    lower = df < max_df
    if lower.any():
        tail = stats.t.logsf(tstat[lower], df[lower])
        tstat[lower] = stats.t.isf(np.exp(tail), max_df)
        df[lower] = max_df

    order = np.argsort(-tstat, kind='mergesort')[:n_target]
    tstat = tstat[order]
    v1 = stdev_unscaled[order] ** 2

    rank = np.arange(1, n_target + 1)
    p0 = 2 * stats.t.sf(tstat, max_df)
    ptarget = ((rank - 0.5) / n_genes - (1 - p) * p0) / p

    v0 = np.zeros(n_target)
    pos = ptarget > p0
    if pos.any():
        qtarget = stats.t.isf(ptarget[pos] / 2, max_df)
        v0[pos] = v1[pos] * ((tstat[pos] / qtarget) ** 2 - 1)

    if v0_lim is not None:
        v0 = np.clip(v0, v0_lim[0], v0_lim[1])
    return float(np.mean(v0))


@dataclass(frozen=True)
class EBayesFit:
    """Moderated statistics for every gene and coefficient/contrast."""

    fit: LinearModelFit
    t: pd.DataFrame
    p_value: pd.DataFrame
    lods: pd.DataFrame
    s2_post: pd.Series
    s2_prior: np.ndarray
    df_prior: float
    df_total: pd.Series
    var_prior: np.ndarray

    @property
    def coefficients(self) -> pd.DataFrame:
        return self.fit.coefficients


def ebayes(
    fit: LinearModelFit,
    proportion: float = 0.01,
    stdev_coef_lim: Tuple[float, float] = (0.1, 4.0),
    trend: bool = False
) -> EBayesFit:
    """
    Empirical Bayes moderation of a (contrast) fit.

    Parameters
    ----------
    fit : LinearModelFit
        Output of ``lm_fit`` or ``contrasts_fit``
    proportion : float
        Assumed proportion of differentially expressed genes (B-statistic prior)
    stdev_coef_lim : tuple
        Limits on the prior standard deviation of true log fold changes
    trend : bool
        Let the prior variance depend on average expression

    Returns
    -------
    EBayesFit
    """
    coef = fit.coefficients.to_numpy()
    su = fit.stdev_unscaled.to_numpy()
    sigma = fit.sigma.to_numpy()
    df_res = fit.df_residual.to_numpy()

    covariate = fit.amean.to_numpy() if trend else None
    s2_post, s2_prior, d0 = squeeze_var(sigma ** 2, df_res, covariate=covariate)
    logger.info(
        f"Empirical Bayes prior: df={d0:.3g}, s2={np.median(s2_prior):.4g}"
    )

    t = coef / su / np.sqrt(s2_post)[:, None]

    df_pooled = np.sum(df_res[np.isfinite(df_res)])
    df_total = np.minimum(df_res + d0, df_pooled)
    p_value = 2 * stats.t.sf(np.abs(t), df_total[:, None])

    var_prior_lim = np.array(stdev_coef_lim) ** 2 / np.median(s2_prior)
    var_prior = np.array([
        tmixture_vector(t[:, j], su[:, j], df_total, proportion, tuple(var_prior_lim))
        for j in range(t.shape[1])
    ])
    var_prior = np.where(np.isnan(var_prior), 1.0 / np.median(s2_prior), var_prior)

    r = (su ** 2 + var_prior[None, :]) / su ** 2
    t2 = t ** 2
    if d0 > 1e6:
        kernel = t2 * (1 - 1 / r) / 2
    else:
        dt = df_total[:, None]
        kernel = (1 + dt) / 2 * np.log((t2 + dt) / (t2 / r + dt))
    lods = np.log(proportion / (1 - proportion)) - np.log(r) / 2 + kernel

    genes = fit.genes
    columns = fit.coefficients.columns
    return EBayesFit(
        fit=fit,
        t=pd.DataFrame(t, index=genes, columns=columns),
        p_value=pd.DataFrame(p_value, index=genes, columns=columns),
        lods=pd.DataFrame(lods, index=genes, columns=columns),
        s2_post=pd.Series(s2_post, index=genes, name='s2_post'),
        s2_prior=np.asarray(s2_prior),
        df_prior=float(d0),
        df_total=pd.Series(df_total, index=genes, name='df_total'),
        var_prior=var_prior,
    )
