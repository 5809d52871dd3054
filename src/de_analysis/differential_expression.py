"""
Differential Expression Analysis
================================

This module runs the limma-voom analysis of a paired cohort:
1. voom precision weights (or negative binomial dispersion weights)
2. Intra-patient correlation for blocked designs (duplicateCorrelation)
3. Gene-wise weighted linear models and contrasts
4. Empirical Bayes moderated statistics
5. Ranked per-contrast tables with Benjamini-Hochberg adjustment

Each model variant is described by a ``ModelSpec`` and produces an
independent ``DifferentialResult``; nothing is shared between variants.
"""

import logging
import re
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from statsmodels.stats.multitest import multipletests

from batch_correction.surrogate_variables import (
    SurrogateVariableAnalysis,
    add_surrogate_variables,
)
from core.exceptions import CohortDEError, DegenerateFitError, DesignError
from preprocessing.cohort import CohortData
from preprocessing.normalization import RNAseqNormalizer, log_cpm_voom
from .design import ContrastDefinition, DesignSpec, build_contrasts, build_design
from .dispersion import dispersion_weights, estimate_dispersions
from .ebayes import EBayesFit, ebayes
from .linear_model import contrasts_fit, duplicate_correlation, lm_fit
from .voom import voom

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

RESULT_COLUMNS = ['gene_id', 'logFC', 'AveExpr', 't', 'P.Value', 'adj.P.Val', 'B']

_FDR_METHODS = {
    'BH': 'fdr_bh',
    'BY': 'fdr_by',
    'bonferroni': 'bonferroni',
    'holm': 'holm',
}

_IDENTIFIER = re.compile(r'[A-Za-z_][A-Za-z0-9_]*')


def fdr_correction(pvalues, method: str = 'BH') -> np.ndarray:
    """
    Multiple-testing adjustment of p-values.

    Missing p-values stay missing and are not counted as tests.

    Parameters
    ----------
    pvalues : array-like
        Raw p-values
    method : str
        'BH' (Benjamini-Hochberg), 'BY', 'bonferroni' or 'holm'
    """
    if method not in _FDR_METHODS:
        raise ValueError(f"Unknown adjustment method: {method}")

    pvalues = np.asarray(pvalues, dtype=float)
    adjusted = np.full(pvalues.shape, np.nan)
    ok = np.isfinite(pvalues)
    if ok.any():
        _, padj, _, _ = multipletests(pvalues[ok], method=_FDR_METHODS[method])
        adjusted[ok] = padj
    return adjusted


def top_table(eb: EBayesFit, coef: str) -> pd.DataFrame:
    """
    Ranked table of all genes for one contrast.

    Genes are sorted by P.Value, ties broken by gene_id, so the order is
    reproducible across runs.
    """
    if coef not in eb.t.columns:
        raise KeyError(f"Unknown contrast '{coef}'; available: {list(eb.t.columns)}")

    pvalues = eb.p_value[coef].to_numpy()
    table = pd.DataFrame({
        'gene_id': eb.fit.genes.astype(str),
        'logFC': eb.coefficients[coef].to_numpy(),
        'AveExpr': eb.fit.amean.to_numpy(),
        't': eb.t[coef].to_numpy(),
        'P.Value': pvalues,
        'adj.P.Val': fdr_correction(pvalues),
        'B': eb.lods[coef].to_numpy(),
    })
    table = table.sort_values(['P.Value', 'gene_id'], kind='mergesort', na_position='last')
    return table.reset_index(drop=True)[RESULT_COLUMNS]


@dataclass(frozen=True)
class ModelSpec:
    """
    One model variant.

    Attributes
    ----------
    name : str
        Used in log messages and output file names
    formula : str
        Right-hand-side patsy formula over sample columns
    contrasts : dict
        Contrast name -> expression over design column names
    block : str, optional
        Sample column whose levels share a random intercept (patient)
    surrogate_variables : 'auto' or int, optional
        Add estimated surrogate variables to the formula
    null_formula : str
        Null model for surrogate variable estimation
    covariates : tuple of str, optional
        Extra numeric covariates appended to the formula, chosen by the
        analyst from the screening tables
    """

    name: str
    formula: str
    contrasts: Dict[str, ContrastDefinition]
    block: Optional[str] = None
    surrogate_variables: Optional[Union[str, int]] = None
    null_formula: str = '~ 1'
    covariates: Optional[Tuple[str, ...]] = None

    @classmethod
    def from_config(cls, entry: Dict) -> 'ModelSpec':
        """Build from one entry of the ``models`` configuration list."""
        for key in ('name', 'formula', 'contrasts'):
            if not entry.get(key):
                raise DesignError(f"Model definition is missing '{key}': {entry}")

        sv = entry.get('surrogate_variables')
        if sv is not None and sv != 'auto':
            sv = int(sv)
            if sv < 0:
                raise DesignError(f"Model '{entry['name']}': surrogate_variables must be >= 0")

        covariates = entry.get('covariates')
        if covariates is not None:
            if isinstance(covariates, str):
                raise DesignError(
                    f"Model '{entry['name']}': covariates must be a list of sample columns, "
                    f"got '{covariates}'"
                )
            covariates = tuple(covariates)

        return cls(
            name=str(entry['name']),
            formula=str(entry['formula']),
            contrasts=dict(entry['contrasts']),
            block=entry.get('block'),
            surrogate_variables=sv,
            null_formula=entry.get('null_formula', '~ 1'),
            covariates=covariates,
        )

    def resolve_covariates(self) -> 'ModelSpec':
        """Copy with covariate columns written into the formula."""
        if self.covariates is None:
            return self

        columns = list(self.covariates)
        if not columns:
            logger.warning(f"Model '{self.name}': no covariates to add")
            return replace(self, covariates=None)

        formula = f"{self.formula} + {' + '.join(columns)}"
        return replace(self, formula=formula, covariates=None)

    def referenced_columns(self, samples: pd.DataFrame) -> List[str]:
        """Sample columns the formula and block refer to."""
        names = set(_IDENTIFIER.findall(self.formula))
        if self.block:
            names.add(self.block)
        return [c for c in samples.columns if c in names]


@dataclass(frozen=True)
class DifferentialResult:
    """Per-contrast ranked tables of one model variant and the fit behind them."""

    model: ModelSpec
    tables: Dict[str, pd.DataFrame]
    design: DesignSpec
    contrasts: pd.DataFrame
    correlation: Optional[float]
    df_prior: float
    s2_prior: float
    excluded_genes: List[str] = field(default_factory=list)
    excluded_samples: List[str] = field(default_factory=list)
    surrogate_variables: Optional[pd.DataFrame] = None

    def summary(self, padj_threshold: float = 0.05, log2fc_threshold: float = 0.0) -> pd.DataFrame:
        """One row per contrast: tested genes and up/down counts."""
        rows = []
        for contrast, table in self.tables.items():
            sig = filter_significant(table, padj_threshold, log2fc_threshold)
            rows.append({
                'model': self.model.name,
                'contrast': contrast,
                'n_samples': self.design.n_samples,
                'n_genes': len(table),
                'n_significant': len(sig),
                'n_up': int((sig['logFC'] > 0).sum()),
                'n_down': int((sig['logFC'] < 0).sum()),
                'correlation': self.correlation,
                'df_prior': self.df_prior,
            })
        return pd.DataFrame(rows)

    def significant(
        self,
        contrast: str,
        padj_threshold: float = 0.05,
        log2fc_threshold: float = 0.0
    ) -> pd.DataFrame:
        return filter_significant(self.tables[contrast], padj_threshold, log2fc_threshold)


class DEAnalysis:
    """Differential Expression Analysis."""

    def __init__(
        self,
        cohort: CohortData,
        norm_factors: Optional[pd.Series] = None,
        weighting: str = 'voom',
        voom_span: float = 0.5,
        proportion: float = 0.01,
        trend: bool = False,
        dispersion_prior_df: float = 10,
        dispersion_span: float = 0.3,
        sv_permutations: int = 20,
        random_state: int = 42
    ):
        """
        Initialize DE analysis.

        Parameters
        ----------
        cohort : CohortData
            Filtered counts and the sample table
        norm_factors : pd.Series, optional
            TMM factors by sample; computed from the counts if omitted
        weighting : str
            'voom', 'dispersion' (negative binomial weights) or 'none'
        voom_span : float
            lowess span of the voom mean-variance trend
        proportion : float
            Assumed proportion of DE genes for the B-statistic
        trend : bool
            Empirical Bayes prior variance follows average expression
        dispersion_prior_df, dispersion_span : float
            Dispersion shrinkage settings for ``weighting='dispersion'``
        sv_permutations, random_state : int
            Surrogate variable permutation test settings
        """
        if weighting not in ('voom', 'dispersion', 'none'):
            raise ValueError(f"Unknown weighting: {weighting}")

        self.weighting = weighting
        self.voom_span = voom_span
        self.proportion = proportion
        self.trend = trend
        self.dispersion_prior_df = dispersion_prior_df
        self.dispersion_span = dispersion_span
        self.sv_permutations = sv_permutations
        self.random_state = random_state

        if norm_factors is None:
            norm_factors = RNAseqNormalizer(cohort.counts).tmm_factors()
        self.norm_factors = norm_factors.loc[cohort.counts.columns]
        self.lib_sizes = cohort.counts.sum(axis=0).astype(float) * self.norm_factors

        degenerate = self.degenerate_genes(cohort.counts, self.lib_sizes)
        if degenerate:
            logger.warning(
                f"Excluding {len(degenerate)} degenerate gene(s) (all-zero or constant): "
                f"{', '.join(degenerate[:10])}{' ...' if len(degenerate) > 10 else ''}"
            )
            cohort = cohort.subset_genes([g for g in cohort.counts.index if g not in set(degenerate)])
        if cohort.n_genes == 0:
            raise DegenerateFitError("No gene with a usable fit remains")

        self.cohort = cohort
        self.excluded_genes = degenerate

        logger.info(
            f"Initialized DE analysis with {cohort.n_genes} genes x {cohort.n_samples} samples"
        )

    @staticmethod
    def degenerate_genes(counts: pd.DataFrame, lib_sizes: pd.Series) -> List[str]:
        """Genes with all-zero counts or identical log-CPM in every sample."""
        all_zero = (counts == 0).all(axis=1)
        expr = log_cpm_voom(counts, lib_sizes.loc[counts.columns])
        constant = np.ptp(expr.to_numpy(), axis=1) < 1e-12
        mask = all_zero.to_numpy() | constant
        return [str(g) for g in counts.index[mask]]

    def _model_cohort(self, spec: ModelSpec) -> Tuple[CohortData, List[str]]:
        """Cohort restricted to samples complete in the model's variables."""
        samples = self.cohort.samples
        columns = spec.referenced_columns(samples)
        incomplete = samples[columns].isna().any(axis=1)
        if not incomplete.any():
            return self.cohort, []

        dropped = [str(k) for k in samples.index[incomplete]]
        logger.warning(
            f"Model '{spec.name}': excluding {len(dropped)} sample(s) with missing "
            f"values in {columns}: {', '.join(dropped)}"
        )
        return self.cohort.drop_samples(dropped), dropped

    def _log_expression(self, counts: pd.DataFrame, design: DesignSpec, lib: pd.Series, block):
        """Log-CPM, precision weights and intra-block correlation for one design."""
        correlation = None

        if self.weighting == 'voom':
            v = voom(counts, design, lib, span=self.voom_span)
            if block is None:
                return v.expr, v.weights, None
            # second pass: weights and correlation estimated jointly
            dc = duplicate_correlation(v.expr, design, block, weights=v.weights)
            v = voom(counts, design, lib, block=block, correlation=dc.consensus, span=self.voom_span)
            dc = duplicate_correlation(v.expr, design, block, weights=v.weights)
            return v.expr, v.weights, dc.consensus

        expr = log_cpm_voom(counts, lib)
        if self.weighting == 'dispersion':
            estimate = estimate_dispersions(
                counts, design, lib,
                prior_df=self.dispersion_prior_df, span=self.dispersion_span
            )
            weights = dispersion_weights(estimate)
        else:
            weights = None

        if block is not None:
            correlation = duplicate_correlation(expr, design, block, weights=weights).consensus
        return expr, weights, correlation

    def _surrogate_variables(
        self,
        spec: ModelSpec,
        cohort: CohortData,
        design: DesignSpec,
        lib: pd.Series
    ) -> pd.DataFrame:
        null_design = build_design(cohort.samples, spec.null_formula)
        expr = log_cpm_voom(cohort.counts, lib)
        sva = SurrogateVariableAnalysis(
            expr, design, null_design,
            n_permutations=self.sv_permutations,
            random_state=self.random_state
        )
        n_sv = None if spec.surrogate_variables == 'auto' else int(spec.surrogate_variables)
        return sva.fit(n_sv=n_sv)

    def run_model(self, spec: ModelSpec) -> DifferentialResult:
        """
        Fit one model variant and rank genes for each of its contrasts.

        Parameters
        ----------
        spec : ModelSpec
            Model variant

        Returns
        -------
        DifferentialResult
        """
        spec = spec.resolve_covariates()
        logger.info(f"Fitting model '{spec.name}': {spec.formula}"
                    f"{f' (block: {spec.block})' if spec.block else ''}")

        cohort, dropped = self._model_cohort(spec)
        lib = self.lib_sizes.loc[cohort.counts.columns]
        samples = cohort.samples
        formula = spec.formula

        design = build_design(samples, formula)

        svs = None
        if spec.surrogate_variables is not None:
            svs = self._surrogate_variables(spec, cohort, design, lib)
            if svs.shape[1] > 0:
                samples = add_surrogate_variables(samples, svs)
                formula = f"{formula} + {' + '.join(svs.columns)}"
                design = build_design(samples, formula)

        contrasts = build_contrasts(design, spec.contrasts)

        block = None
        if spec.block:
            if spec.block not in samples.columns:
                raise DesignError(f"Block column '{spec.block}' not in sample table")
            if spec.block in _IDENTIFIER.findall(formula):
                logger.warning(
                    f"Model '{spec.name}': '{spec.block}' is both a fixed effect and the block"
                )
            block = samples[spec.block].astype(str)

        expr, weights, correlation = self._log_expression(cohort.counts, design, lib, block)

        fit = lm_fit(expr, design, weights=weights, block=block, correlation=correlation)
        fit = contrasts_fit(fit, contrasts)
        eb = ebayes(fit, proportion=self.proportion, trend=self.trend)

        tables = {}
        for name in contrasts.columns:
            table = top_table(eb, name)
            n_sig = int((table['adj.P.Val'] < 0.05).sum())
            logger.info(f"Model '{spec.name}', contrast '{name}': {n_sig} genes with adj.P.Val < 0.05")
            tables[name] = table

        return DifferentialResult(
            model=replace(spec, formula=formula),
            tables=tables,
            design=design,
            contrasts=contrasts,
            correlation=correlation,
            df_prior=eb.df_prior,
            s2_prior=float(np.median(eb.s2_prior)),
            excluded_genes=list(self.excluded_genes),
            excluded_samples=dropped,
            surrogate_variables=svs,
        )

    def run_models(
        self,
        specs: Sequence[ModelSpec],
        errors: Optional[Dict[str, CohortDEError]] = None
    ) -> Dict[str, DifferentialResult]:
        """
        Fit every model variant independently, keyed by model name.

        Parameters
        ----------
        specs : list of ModelSpec
            Model variants; names must be unique
        errors : dict, optional
            If given, a variant that fails is logged and recorded here under
            its name and the remaining variants are still fitted. Otherwise
            the first failure is raised.
        """
        names = [spec.name for spec in specs]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise DesignError(f"Duplicate model name: {', '.join(duplicates)}")

        results = {}
        for spec in specs:
            try:
                results[spec.name] = self.run_model(spec)
            except CohortDEError as e:
                if errors is None:
                    raise
                logger.error(f"Model '{spec.name}' failed: {e}")
                errors[spec.name] = e
        return results

    @staticmethod
    def compare_models(
        results: Dict[str, DifferentialResult],
        padj_threshold: float = 0.05,
        log2fc_threshold: float = 0.0
    ) -> pd.DataFrame:
        """
        Compare significant-gene counts across model variants.

        Returns
        -------
        pd.DataFrame
            One row per model and contrast
        """
        frames = [r.summary(padj_threshold, log2fc_threshold) for r in results.values()]
        if not frames:
            return pd.DataFrame()
        return pd.concat(frames, ignore_index=True)


def get_top_genes(
    de_results: pd.DataFrame,
    n_top: int = 50,
    by: str = 'P.Value'
) -> pd.DataFrame:
    """Get top differentially expressed genes."""
    return de_results.sort_values([by, 'gene_id'], kind='mergesort').head(n_top)


def filter_significant(
    de_results: pd.DataFrame,
    padj_threshold: float = 0.05,
    log2fc_threshold: float = 1.0
) -> pd.DataFrame:
    """Filter for significant genes based on adj.P.Val and logFC."""
    mask = (
        (de_results['adj.P.Val'] < padj_threshold) &
        (de_results['logFC'].abs() >= log2fc_threshold)
    )

    return de_results[mask]
