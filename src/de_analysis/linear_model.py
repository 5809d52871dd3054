"""
Gene-wise Linear Models
=======================

Weighted least squares fit of one linear model per gene (limma ``lmFit``),
optionally with a compound-symmetric within-block correlation for
repeated measures (``duplicateCorrelation``), and exact per-gene contrast
evaluation (``contrasts.fit``).

Expression matrices are genes x samples; design matrices samples x columns.
"""

import logging
from dataclasses import dataclass, replace
from typing import Optional, Union

import numpy as np
import pandas as pd
from scipy import linalg, stats

from core.exceptions import ContrastError, DesignError
from .design import DesignSpec

logger = logging.getLogger(__name__)

DesignLike = Union[DesignSpec, pd.DataFrame]


@dataclass(frozen=True)
class LinearModelFit:
    """
    Per-gene linear model fit.

    Attributes
    ----------
    coefficients : pd.DataFrame
        Genes x coefficients
    stdev_unscaled : pd.DataFrame
        Genes x coefficients; standard errors divided by sigma
    cov_unscaled : np.ndarray
        Genes x coefficients x coefficients unscaled covariance
    sigma : pd.Series
        Residual standard deviation per gene
    df_residual : pd.Series
        Residual degrees of freedom per gene
    amean : pd.Series
        Average expression per gene
    correlation : float, optional
        Within-block correlation used for the fit
    """

    coefficients: pd.DataFrame
    stdev_unscaled: pd.DataFrame
    cov_unscaled: np.ndarray
    sigma: pd.Series
    df_residual: pd.Series
    amean: pd.Series
    design: pd.DataFrame
    correlation: Optional[float] = None

    @property
    def genes(self) -> pd.Index:
        return self.coefficients.index

    def fitted_values(self) -> np.ndarray:
        """Genes x samples fitted values (only meaningful before contrasts_fit)."""
        return self.coefficients.to_numpy() @ self.design.to_numpy(dtype=float).T


@dataclass(frozen=True)
class BlockCorrelation:
    """Consensus intra-block correlation and the per-gene estimates behind it."""

    consensus: float
    per_gene: pd.Series
    n_pairs: int


def _design_frame(design: DesignLike) -> pd.DataFrame:
    return design.matrix if isinstance(design, DesignSpec) else design


def _aligned_inputs(expr: pd.DataFrame, design: DesignLike, weights):
    design_df = _design_frame(design)
    missing = [s for s in expr.columns if s not in design_df.index]
    if missing:
        raise DesignError(f"Samples missing from the design: {missing}")
    design_df = design_df.loc[expr.columns]

    Y = expr.to_numpy(dtype=float)
    X = design_df.to_numpy(dtype=float)

    if weights is None:
        W = None
    else:
        W = weights.loc[expr.index, expr.columns].to_numpy(dtype=float) \
            if isinstance(weights, pd.DataFrame) else np.asarray(weights, dtype=float)
        if W.shape != Y.shape:
            raise ValueError(f"Weights shape {W.shape} does not match expression {Y.shape}")
        if not np.all(np.isfinite(W)) or np.any(W <= 0):
            raise ValueError("Weights must be finite and positive")
    return Y, X, W, design_df


def block_correlation_matrix(block, correlation: float) -> np.ndarray:
    """Compound-symmetric correlation: ``correlation`` within block, 0 between."""
    block = np.asarray(block)
    same = block[:, None] == block[None, :]
    C = np.where(same, correlation, 0.0)
    np.fill_diagonal(C, 1.0)
    return C


def _ols(Xw: np.ndarray, Yw: np.ndarray):
    """Least squares for a shared whitened design. Yw is samples x genes."""
    q, r = np.linalg.qr(Xw)
    r_inv = linalg.solve_triangular(r, np.eye(r.shape[0]))
    cov = r_inv @ r_inv.T
    coef = r_inv @ (q.T @ Yw)
    resid = Yw - Xw @ coef
    rss = np.sum(resid ** 2, axis=0)
    return coef.T, cov, rss


def lm_fit(
    expr: pd.DataFrame,
    design: DesignLike,
    weights: Optional[Union[pd.DataFrame, np.ndarray]] = None,
    block=None,
    correlation: Optional[float] = None
) -> LinearModelFit:
    """
    Fit a linear model to each gene.

    Parameters
    ----------
    expr : pd.DataFrame
        Log-expression (genes x samples)
    design : DesignSpec or pd.DataFrame
        Design matrix (samples x columns)
    weights : pd.DataFrame or np.ndarray, optional
        Precision weights (genes x samples)
    block : array-like, optional
        Block label per sample (e.g. patient) for correlated repeated measures
    correlation : float, optional
        Intra-block correlation; required with ``block``

    Returns
    -------
    LinearModelFit
    """
    Y, X, W, design_df = _aligned_inputs(expr, design, weights)
    G, n = Y.shape
    p = X.shape[1]
    df_residual = n - p
    if df_residual <= 0:
        raise DesignError(f"No residual degrees of freedom ({n} samples, {p} columns)")

    chol = None
    if block is not None:
        if correlation is None:
            raise ValueError("A block requires an intra-block correlation")
        block = np.asarray(pd.Series(block).loc[expr.columns]) \
            if isinstance(block, pd.Series) else np.asarray(block)
        if len(block) != n:
            raise ValueError(f"Block has {len(block)} labels for {n} samples")
        C = block_correlation_matrix(block, correlation)
        chol = np.linalg.cholesky(C)

    coef = np.empty((G, p))
    cov = np.empty((G, p, p))
    rss = np.empty(G)

    if W is None:
        if chol is None:
            Xw, Yw = X, Y.T
        else:
            Xw = linalg.solve_triangular(chol, X, lower=True)
            Yw = linalg.solve_triangular(chol, Y.T, lower=True)
        coef, shared_cov, rss = _ols(Xw, Yw)
        cov[:] = shared_cov
    else:
        sw = np.sqrt(W)
        for g in range(G):
            if chol is None:
                Xw = X * sw[g][:, None]
                yw = Y[g] * sw[g]
            else:
                # V = W^-1/2 C W^-1/2, whitened by (W^-1/2 L)^-1 = L^-1 W^1/2
                Xw = linalg.solve_triangular(chol, X * sw[g][:, None], lower=True)
                yw = linalg.solve_triangular(chol, Y[g] * sw[g], lower=True)
            c, v, r = _ols(Xw, yw[:, None])
            coef[g] = c[0]
            cov[g] = v
            rss[g] = r[0]

    sigma = np.sqrt(rss / df_residual)
    stdev = np.sqrt(np.einsum('gii->gi', cov))

    genes = expr.index
    columns = list(design_df.columns)
    return LinearModelFit(
        coefficients=pd.DataFrame(coef, index=genes, columns=columns),
        stdev_unscaled=pd.DataFrame(stdev, index=genes, columns=columns),
        cov_unscaled=cov,
        sigma=pd.Series(sigma, index=genes, name='sigma'),
        df_residual=pd.Series(float(df_residual), index=genes, name='df_residual'),
        amean=pd.Series(Y.mean(axis=1), index=genes, name='AveExpr'),
        design=design_df,
        correlation=correlation if block is not None else None,
    )


def contrasts_fit(fit: LinearModelFit, contrasts: pd.DataFrame) -> LinearModelFit:
    """
    Re-express a fit in terms of contrasts.

    Uses the per-gene unscaled covariance, so the standard errors are exact
    even when precision weights differ between genes.

    Parameters
    ----------
    fit : LinearModelFit
    contrasts : pd.DataFrame
        Design columns x contrasts
    """
    missing = [c for c in fit.coefficients.columns if c not in contrasts.index]
    extra = [c for c in contrasts.index if c not in fit.coefficients.columns]
    if missing or extra:
        raise ContrastError(
            f"Contrast rows do not match coefficients (missing {missing}, unknown {extra})"
        )

    C = contrasts.loc[fit.coefficients.columns].to_numpy(dtype=float)
    coef = fit.coefficients.to_numpy() @ C
    cov = np.einsum('pi,gpq,qj->gij', C, fit.cov_unscaled, C)
    stdev = np.sqrt(np.einsum('gii->gi', cov))

    names = list(contrasts.columns)
    return replace(
        fit,
        coefficients=pd.DataFrame(coef, index=fit.genes, columns=names),
        stdev_unscaled=pd.DataFrame(stdev, index=fit.genes, columns=names),
        cov_unscaled=cov,
    )


def duplicate_correlation(
    expr: pd.DataFrame,
    design: DesignLike,
    block,
    weights: Optional[Union[pd.DataFrame, np.ndarray]] = None,
    trim: float = 0.15
) -> BlockCorrelation:
    """
    Estimate the intra-block correlation of repeated measures.

    For every gene the standardized residuals of the (weighted) design fit
    give a moment estimate of the within-block correlation: the mean
    product of residual pairs sharing a block over the mean squared
    residual. Estimates are clipped to the range where the block
    covariance stays positive definite and pooled as a trimmed mean on
    the Fisher-z scale.

    Parameters
    ----------
    block : array-like
        Block label per sample (e.g. patient identifier)
    trim : float
        Fraction trimmed from each end before averaging
    """
    fit = lm_fit(expr, design, weights=weights)
    Y, X, W, _ = _aligned_inputs(expr, design, weights)

    block = np.asarray(pd.Series(block).loc[expr.columns]) \
        if isinstance(block, pd.Series) else np.asarray(block)
    if len(block) != Y.shape[1]:
        raise ValueError(f"Block has {len(block)} labels for {Y.shape[1]} samples")

    resid = Y - fit.fitted_values()
    if W is not None:
        resid = resid * np.sqrt(W)

    labels, counts = np.unique(block, return_counts=True)
    repeated = labels[counts > 1]
    n_pairs = int(np.sum(counts * (counts - 1) // 2))
    if n_pairs == 0:
        raise DesignError("Block has no repeated samples; correlation is not estimable")

    cross = np.zeros(Y.shape[0])
    for label in repeated:
        r = resid[:, block == label]
        cross += 0.5 * (r.sum(axis=1) ** 2 - (r ** 2).sum(axis=1))

    mean_sq = (resid ** 2).mean(axis=1)
    with np.errstate(divide='ignore', invalid='ignore'):
        rho = (cross / n_pairs) / mean_sq

    lower = max(-0.99, -1.0 / (counts.max() - 1) + 0.01)
    rho = np.where(np.isfinite(rho), np.clip(rho, lower, 0.99), np.nan)

    valid = rho[np.isfinite(rho)]
    if len(valid) == 0:
        raise DesignError("No gene gave a finite intra-block correlation")

    consensus = float(np.tanh(stats.trim_mean(np.arctanh(valid), trim)))
    logger.info(
        f"Intra-block correlation: {consensus:.4f} "
        f"({len(repeated)} blocks, {n_pairs} within-block pairs, {len(valid)} genes)"
    )
    return BlockCorrelation(
        consensus=consensus,
        per_gene=pd.Series(rho, index=expr.index, name='correlation'),
        n_pairs=n_pairs,
    )
