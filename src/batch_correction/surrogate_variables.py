"""
Surrogate Variables and Covariate Removal
=========================================

This module implements:
1. Surrogate variable estimation (two-step SVA, Leek & Storey 2007)
   with the number of factors chosen by a Buja-Eyuboglu permutation test
2. limma-style removeBatchEffect for visualization

Surrogate variables capture unmodelled heterogeneity (cell-type mixture,
processing batches) and can be added to a design as covariates. Removing
covariates from expression is for plots only; models should include the
covariates instead.
"""

import logging
from typing import Optional

import numpy as np
import pandas as pd
from scipy import stats
from statsmodels.stats.multitest import multipletests

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def _as_matrix(design) -> np.ndarray:
    # DesignSpec carries its frame in ``matrix``
    design = getattr(design, 'matrix', design)
    if isinstance(design, pd.DataFrame):
        return design.to_numpy(dtype=float)
    return np.asarray(design, dtype=float)


def _residualize(data: np.ndarray, X: np.ndarray) -> np.ndarray:
    """Residuals of each row of ``data`` (genes x samples) regressed on ``X``."""
    beta, *_ = np.linalg.lstsq(X, data.T, rcond=None)
    return data - (X @ beta).T


class SurrogateVariableAnalysis:
    """
    Estimate surrogate variables from log-expression.

    Parameters
    ----------
    expr : pd.DataFrame
        Log-expression (genes x samples)
    design : DesignSpec or pd.DataFrame
        Full model (variables of interest + adjustment variables)
    null_design : DesignSpec or pd.DataFrame
        Null model (adjustment variables only)
    n_permutations : int
        Permutations for the number-of-factors test
    random_state : int
        Seed; the estimate is deterministic for a given seed
    """

    def __init__(
        self,
        expr: pd.DataFrame,
        design,
        null_design,
        n_permutations: int = 20,
        random_state: int = 42
    ):
        self.expr = expr
        self.X = _as_matrix(design)
        self.X0 = _as_matrix(null_design)
        self.n_permutations = n_permutations
        self.random_state = random_state

        if self.X.shape[0] != expr.shape[1] or self.X0.shape[0] != expr.shape[1]:
            raise ValueError("Design rows must match expression columns")

        self.residuals = _residualize(expr.to_numpy(dtype=float), self.X)

    def num_sv(self, alpha: float = 0.10) -> int:
        """
        Number of significant residual factors (Buja & Eyuboglu 1992).

        Each gene's residuals are permuted independently to break the
        correlation structure; a factor is significant when its share of
        residual variance beats the permuted shares.
        """
        res = self.residuals
        n = res.shape[1]
        hat_trace = np.linalg.matrix_rank(self.X)
        n_df = n - int(np.ceil(hat_trace))
        if n_df <= 0:
            return 0

        d = np.linalg.svd(res, compute_uv=False)[:n_df]
        dstat = d ** 2 / np.sum(d ** 2)

        rng = np.random.RandomState(self.random_state)
        dstat0 = np.zeros((self.n_permutations, n_df))
        for i in range(self.n_permutations):
            order = np.argsort(rng.random_sample(res.shape), axis=1)
            res0 = np.take_along_axis(res, order, axis=1)
            res0 = _residualize(res0, self.X)
            d0 = np.linalg.svd(res0, compute_uv=False)[:n_df]
            dstat0[i] = d0 ** 2 / np.sum(d0 ** 2)

        psv = np.array([np.mean(dstat0[:, i] >= dstat[i]) for i in range(n_df)])
        psv = np.maximum.accumulate(psv)
        n_sv = int(np.sum(psv <= alpha))

        logger.info(f"Permutation test: {n_sv} significant surrogate variable(s)")
        return n_sv

    def fit(self, n_sv: Optional[int] = None, fdr: float = 0.10) -> pd.DataFrame:
        """
        Estimate surrogate variables (two-step algorithm).

        1. Eigengenes of the full-model residuals
        2. For each eigengene, genes significantly associated with it
        3. The right singular vector of those genes (null-model residuals)
           most correlated with the eigengene

        Returns
        -------
        pd.DataFrame
            Samples x ``sv1..svK``
        """
        if n_sv is None:
            n_sv = self.num_sv()

        samples = self.expr.columns
        if n_sv == 0:
            logger.info("No surrogate variables estimated")
            return pd.DataFrame(index=samples)

        res = self.residuals
        n = res.shape[1]
        _, _, vt = np.linalg.svd(res, full_matrices=False)
        null_res = _residualize(self.expr.to_numpy(dtype=float), self.X0)

        svs = np.zeros((n, n_sv))
        for k in range(n_sv):
            eigengene = vt[k]
            r = np.array([
                np.corrcoef(row, eigengene)[0, 1] if np.std(row) > 0 else 0.0
                for row in res
            ])
            r = np.clip(np.nan_to_num(r), -0.999999, 0.999999)
            t = r * np.sqrt((n - 2) / (1 - r ** 2))
            pvals = 2 * stats.t.sf(np.abs(t), n - 2)
            reject, _, _, _ = multipletests(pvals, alpha=fdr, method='fdr_bh')

            if reject.sum() < n_sv + 1:
                # too few associated genes: fall back to the eigengene itself
                svs[:, k] = eigengene
                continue

            sub = null_res[reject]
            sub = sub - sub.mean(axis=1, keepdims=True)
            _, _, vt_sub = np.linalg.svd(sub, full_matrices=False)
            cors = [abs(np.corrcoef(v, eigengene)[0, 1]) for v in vt_sub]
            best = vt_sub[int(np.nanargmax(cors))]
            # sign convention: positively correlated with the eigengene
            if np.corrcoef(best, eigengene)[0, 1] < 0:
                best = -best
            svs[:, k] = best

        columns = [f"sv{i + 1}" for i in range(n_sv)]
        logger.info(f"Estimated {n_sv} surrogate variable(s)")
        return pd.DataFrame(svs, index=samples, columns=columns)


def add_surrogate_variables(samples: pd.DataFrame, svs: pd.DataFrame) -> pd.DataFrame:
    """Sample table with ``sv1..svK`` columns appended (existing ones replaced)."""
    table = samples.drop(columns=[c for c in samples.columns if c in svs.columns])
    return table.join(svs, how='left')


def remove_batch_effect(
    data: pd.DataFrame,
    covariates: pd.DataFrame,
    design: Optional[pd.DataFrame] = None
) -> pd.DataFrame:
    """
    Remove covariate effects similar to limma's removeBatchEffect.

    Fits [design | covariates] to every gene and subtracts only the
    covariate part. Categorical covariates are dummy coded and centred so
    the overall level is preserved.

    Parameters
    ----------
    data : pd.DataFrame
        Log-expression matrix (genes x samples)
    covariates : pd.DataFrame
        Covariates to remove (samples x covariates)
    design : pd.DataFrame, optional
        Effects to preserve (e.g. status); intercept only if omitted

    Returns
    -------
    pd.DataFrame
        Covariate-adjusted expression
    """
    samples = data.columns
    cov = pd.get_dummies(covariates.loc[samples], drop_first=True).astype(float)
    cov = cov - cov.mean(axis=0)

    if design is None:
        keep = np.ones((len(samples), 1))
    else:
        keep = design.loc[samples].to_numpy(dtype=float)

    X = np.hstack([keep, cov.to_numpy()])
    beta, *_ = np.linalg.lstsq(X, data.to_numpy(dtype=float).T, rcond=None)
    beta_cov = beta[keep.shape[1]:]

    adjusted = data.to_numpy(dtype=float) - (cov.to_numpy() @ beta_cov).T
    return pd.DataFrame(adjusted, index=data.index, columns=samples)
