"""
RNA-seq Normalization Methods
=============================

This module implements the normalization used by the pipeline:
1. TMM (Trimmed Mean of M-values) scale factors
2. CPM / log-CPM on TMM-effective library sizes
3. voom-style log-CPM (the expression scale the linear models are fit on)
4. VST (variance stabilizing transformation) for visualization only

All-zero genes are excluded before scale factors are computed; they carry
no information about composition and produce degenerate log-ratios.
"""

import logging
from typing import Optional

import numpy as np
import pandas as pd
from scipy import stats

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def _tmm_factor(
    obs: np.ndarray,
    ref: np.ndarray,
    lib_obs: float,
    lib_ref: float,
    logratio_trim: float = 0.3,
    sum_trim: float = 0.05,
    weighted: bool = True
) -> float:
    """TMM scale factor of one sample against the reference sample."""
    with np.errstate(divide='ignore', invalid='ignore'):
        obs_p = obs / lib_obs
        ref_p = ref / lib_ref
        log_r = np.log2(obs_p / ref_p)
        abs_e = 0.5 * (np.log2(obs_p) + np.log2(ref_p))
        v = (lib_obs - obs) / lib_obs / obs + (lib_ref - ref) / lib_ref / ref

    finite = np.isfinite(log_r) & np.isfinite(abs_e)
    log_r, abs_e, v = log_r[finite], abs_e[finite], v[finite]

    if len(log_r) == 0 or np.max(np.abs(log_r)) < 1e-6:
        return 1.0

    n = len(log_r)
    lo_l = np.floor(n * logratio_trim) + 1
    hi_l = n + 1 - lo_l
    lo_s = np.floor(n * sum_trim) + 1
    hi_s = n + 1 - lo_s

    rank_r = stats.rankdata(log_r, method='average')
    rank_e = stats.rankdata(abs_e, method='average')
    keep = (rank_r >= lo_l) & (rank_r <= hi_l) & (rank_e >= lo_s) & (rank_e <= hi_s)

    if not keep.any():
        return 1.0

    if weighted:
        f = np.sum(log_r[keep] / v[keep]) / np.sum(1.0 / v[keep])
    else:
        f = np.mean(log_r[keep])

    if not np.isfinite(f):
        f = 0.0
    return float(2 ** f)


class RNAseqNormalizer:
    """Normalize RNA-seq count data."""

    def __init__(self, counts_df: pd.DataFrame):
        """
        Initialize normalizer with counts DataFrame.

        Parameters
        ----------
        counts_df : pd.DataFrame
            Raw counts matrix (genes x samples)
        """
        self.counts_df = counts_df.copy()
        self.normalized = {}
        self._factors: Optional[pd.Series] = None

    @property
    def lib_sizes(self) -> pd.Series:
        return self.counts_df.sum(axis=0).astype(float)

    def tmm_factors(
        self,
        logratio_trim: float = 0.3,
        sum_trim: float = 0.05,
        weighted: bool = True
    ) -> pd.Series:
        """
        Calculate TMM (Trimmed Mean of M-values) normalization factors.

        Based on Robinson & Oshlack (2010) - edgeR method. The reference is
        the sample whose upper-quartile proportion is closest to the mean
        upper quartile; log-ratios are trimmed by ``logratio_trim`` and
        average abundances by ``sum_trim`` before taking the precision
        weighted mean.

        Parameters
        ----------
        logratio_trim : float
            Fraction trimmed from each end of the M (log-ratio) distribution
        sum_trim : float
            Fraction trimmed from each end of the A (abundance) distribution
        weighted : bool
            Use asymptotic binomial precision weights

        Returns
        -------
        pd.Series
            Factors indexed by sample, geometric mean 1
        """
        nonzero = self.counts_df.loc[(self.counts_df > 0).any(axis=1)]
        n_removed = self.counts_df.shape[0] - nonzero.shape[0]
        if n_removed:
            logger.info(f"Excluded {n_removed} all-zero genes from TMM")

        values = nonzero.to_numpy(dtype=float)
        lib_sizes = values.sum(axis=0)
        if np.any(lib_sizes <= 0):
            empty = nonzero.columns[lib_sizes <= 0].tolist()
            raise ValueError(f"Samples with zero library size: {empty}")

        upper_q = np.quantile(values, 0.75, axis=0) / lib_sizes
        if np.median(upper_q) < 1e-20:
            ref_idx = int(np.argmax(np.sqrt(values).sum(axis=0)))
        else:
            ref_idx = int(np.argmin(np.abs(upper_q - upper_q.mean())))
        logger.info(f"TMM reference sample: {nonzero.columns[ref_idx]}")

        ref = values[:, ref_idx]
        factors = np.array([
            _tmm_factor(
                values[:, j], ref, lib_sizes[j], lib_sizes[ref_idx],
                logratio_trim=logratio_trim, sum_trim=sum_trim, weighted=weighted
            )
            for j in range(values.shape[1])
        ])
        factors = factors / np.exp(np.mean(np.log(factors)))

        self._factors = pd.Series(factors, index=self.counts_df.columns, name='norm_factor')
        return self._factors

    def effective_library_sizes(self, factors: Optional[pd.Series] = None) -> pd.Series:
        """Library size times TMM factor."""
        if factors is None:
            factors = self._factors if self._factors is not None else self.tmm_factors()
        return self.lib_sizes * factors.loc[self.counts_df.columns]

    def cpm(
        self,
        log: bool = False,
        prior_count: float = 2,
        factors: Optional[pd.Series] = None
    ) -> pd.DataFrame:
        """
        Calculate Counts Per Million (CPM) on TMM-effective library sizes.

        Parameters
        ----------
        log : bool
            If True, return log2 CPM with a library-size scaled prior count
        prior_count : float
            Average prior count added before log transformation

        Returns
        -------
        pd.DataFrame
            CPM normalized counts
        """
        lib = self.effective_library_sizes(factors)

        if log:
            prior = prior_count * lib / lib.mean()
            cpm_df = np.log2(
                (self.counts_df + prior) / (lib + 2 * prior) * 1e6
            )
        else:
            cpm_df = self.counts_df * 1e6 / lib

        self.normalized['log_cpm' if log else 'cpm'] = cpm_df
        logger.info("CPM normalization complete")
        return cpm_df

    def log_cpm_voom(self, factors: Optional[pd.Series] = None) -> pd.DataFrame:
        """voom scale: log2((count + 0.5) / (library + 1) * 1e6)."""
        lib = self.effective_library_sizes(factors)
        log_cpm = log_cpm_voom(self.counts_df, lib)
        self.normalized['voom'] = log_cpm
        return log_cpm

    def vst(self, dispersion: float, factors: Optional[pd.Series] = None) -> pd.DataFrame:
        """
        Negative binomial variance stabilizing transformation.

        Closed form for Var = mu + dispersion * mu^2 on size-factor
        normalized counts. Output is on an approximately log2 scale and is
        meant for visualization (PCA, clustering, heatmaps) only.

        Parameters
        ----------
        dispersion : float
            Common dispersion (must be positive)
        """
        if not dispersion > 0:
            raise ValueError(f"VST requires a positive dispersion, got {dispersion}")

        lib = self.effective_library_sizes(factors)
        size_factors = lib / np.exp(np.mean(np.log(lib)))
        q = self.counts_df / size_factors

        a = float(dispersion)
        vst_df = np.log2(
            (1 + 2 * a * q + 2 * np.sqrt(a * q * (1 + a * q))) / (4 * a)
        )

        self.normalized['vst'] = vst_df
        logger.info(f"VST complete (dispersion={a:.4g})")
        return vst_df

    def get_summary_stats(self) -> pd.DataFrame:
        """Get summary statistics for all normalization methods."""
        stats_list = []

        for method, df in self.normalized.items():
            stats_list.append({
                'method': method,
                'mean': df.values.mean(),
                'std': df.values.std(),
                'min': df.values.min(),
                'max': df.values.max(),
            })

        return pd.DataFrame(stats_list)


def log_cpm_voom(counts_df: pd.DataFrame, lib_sizes: pd.Series) -> pd.DataFrame:
    """log2((count + 0.5) / (library + 1) * 1e6) for the given library sizes."""
    lib = lib_sizes.loc[counts_df.columns].astype(float)
    return np.log2((counts_df + 0.5) / (lib + 1.0) * 1e6)


def compare_library_sizes(counts_df: pd.DataFrame) -> pd.DataFrame:
    """
    Compare library sizes across samples.

    Parameters
    ----------
    counts_df : pd.DataFrame
        Raw counts matrix

    Returns
    -------
    pd.DataFrame
        Library size statistics
    """
    lib_sizes = counts_df.sum(axis=0)

    stats_df = pd.DataFrame({
        'sample_id': lib_sizes.index,
        'total_counts': lib_sizes.values,
        'detected_genes': (counts_df > 0).sum(axis=0).values,
        'mean_count': counts_df.mean(axis=0).values,
        'median_count': counts_df.median(axis=0).values
    })

    return stats_df


def high_count_genes(counts_df: pd.DataFrame, top_n: int = 20) -> pd.DataFrame:
    """
    Genes taking the largest share of the libraries.

    A handful of extremely abundant genes (e.g. hemoglobin transcripts in
    whole blood) can dominate library sizes; TMM trimming protects the
    scale factors from them, this table shows who they are.
    """
    share = counts_df / counts_df.sum(axis=0) * 100
    table = pd.DataFrame({
        'gene_id': counts_df.index,
        'mean_count': counts_df.mean(axis=1).values,
        'mean_pct_of_library': share.mean(axis=1).values,
        'max_pct_of_library': share.max(axis=1).values,
    })
    return (
        table.sort_values(['mean_pct_of_library', 'gene_id'], ascending=[False, True], kind='mergesort')
        .head(top_n)
        .reset_index(drop=True)
    )
