"""
Paired-Cohort RNA-seq Pipeline
==============================

Main pipeline script that orchestrates:
1. Data loading and pairing
2. Exploratory report
3. Filtering, normalization and dispersion estimates
4. Covariate screening
5. Differential expression per model variant

Each step hands the next an immutable snapshot (``CohortData``,
``DifferentialResult``); nothing is shared through module state.

Usage:
    python pipeline.py --config configs/config.yaml
    cohort-de --config configs/config.yaml --step de
"""

import argparse
import logging
import sys
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import pandas as pd

from annotation.gene_annotation import GeneAnnotator
from batch_correction.surrogate_variables import remove_batch_effect
from core.config import get_settings, load_config, resolve_path
from core.exceptions import AnnotationUnavailableError, CohortDEError, DesignError
from covariate_screening.screening import CovariateScreener, ScreeningResult
from de_analysis.design import build_design
from de_analysis.differential_expression import DEAnalysis, DifferentialResult, ModelSpec
from de_analysis.dispersion import DispersionEstimate, estimate_dispersions
from exploration.report import ExploratoryReporter
from output.writers import (
    write_differential_result,
    write_run_summary,
    write_screening_result,
    write_table,
)
from preprocessing.cohort import CohortData
from preprocessing.data_loader import RNAseqDataLoader, drop_unpaired
from preprocessing.filtering import filter_cohort
from preprocessing.normalization import RNAseqNormalizer

logger = logging.getLogger(__name__)


class CohortDEPipeline:
    """Paired-cohort differential expression pipeline."""

    def __init__(self, config_path: Optional[str] = None, project_root: Optional[str] = None):
        """
        Initialize pipeline with configuration.

        Parameters
        ----------
        config_path : str, optional
            Path to YAML configuration file; defaults only if omitted
        project_root : str, optional
            Base for relative data paths; the parent of the config directory
            by default
        """
        self.config = load_config(config_path)
        self.settings = get_settings()

        if project_root is not None:
            self.project_root = Path(project_root)
        elif config_path is not None:
            self.project_root = Path(config_path).resolve().parent.parent
        else:
            self.project_root = Path.cwd()

        self.results_dir = resolve_path(self.config, 'output_dir', self.project_root)
        self.results_dir.mkdir(parents=True, exist_ok=True)

        # Initialize containers
        self.cohort: Optional[CohortData] = None
        self.dropped_samples: List[str] = []
        self.cohort_filtered: Optional[CohortData] = None
        self.norm_factors: Optional[pd.Series] = None
        self.dispersion: Optional[DispersionEstimate] = None
        self.screening: Optional[ScreeningResult] = None
        self.de_results: Optional[Dict[str, DifferentialResult]] = None
        self.failed_models: List[str] = []
        self.annotated = False

        logger.info(f"Initialized pipeline for: {self.config['project']['name']}")

    def step1_load_data(self) -> CohortData:
        """Load counts and metadata, align them and keep complete pairs."""
        logger.info("=== Step 1: Loading Data ===")

        loader = RNAseqDataLoader(
            str(resolve_path(self.config, 'counts', self.project_root)),
            str(resolve_path(self.config, 'metadata', self.project_root)),
            columns=self.config['columns'],
            status_labels=self.config['status_labels'],
            rhinovirus_labels=self.config['rhinovirus_labels'],
        )
        cohort = loader.load()
        self.cohort, self.dropped_samples = drop_unpaired(cohort)

        logger.info(
            f"Cohort: {self.cohort.n_genes} genes x {self.cohort.n_samples} samples "
            f"({self.cohort.samples['patient'].nunique()} patients, "
            f"{len(self.dropped_samples)} unpaired sample(s) dropped)"
        )
        return self.cohort

    def step2_explore(self) -> Dict[str, pd.DataFrame]:
        """Exploratory tables and plots on the unfiltered cohort."""
        logger.info("=== Step 2: Exploratory Report ===")

        if self.cohort is None:
            self.step1_load_data()

        cfg = self.config['exploration']
        reporter = ExploratoryReporter(
            self.cohort,
            top_genes=cfg['top_genes'],
            n_components=cfg['n_components']
        )

        output_dir = self.results_dir / 'exploration'
        tables = reporter.tables()
        for name, table in tables.items():
            write_table(table, output_dir / f"{name}.tsv")

        if self.settings.RENDER_PLOTS:
            reporter.render_plots(output_dir, dpi=self.settings.PLOT_DPI)

        return tables

    def step3_filter_and_normalize(self) -> CohortData:
        """Filter low counts, compute TMM factors and dispersion estimates."""
        logger.info("=== Step 3: Filtering and Normalization ===")

        if self.cohort is None:
            self.step1_load_data()

        fcfg = self.config['filtering']
        self.cohort_filtered = filter_cohort(
            self.cohort,
            min_log_cpm=fcfg['min_log_cpm'],
            min_samples=fcfg['min_samples']
        )

        ncfg = self.config['normalization']
        normalizer = RNAseqNormalizer(self.cohort_filtered.counts)
        self.norm_factors = normalizer.tmm_factors(
            logratio_trim=ncfg['logratio_trim'],
            sum_trim=ncfg['sum_trim']
        )
        lib_sizes = normalizer.effective_library_sizes(self.norm_factors)

        factors = pd.DataFrame({
            'sample_id': self.norm_factors.index,
            'lib_size': normalizer.lib_sizes.values,
            'norm_factor': self.norm_factors.values,
            'effective_lib_size': lib_sizes.values,
        })
        write_table(factors, self.results_dir / 'normalization_factors.tsv')

        dcfg = self.config['dispersion']
        design = build_design(self.cohort_filtered.samples, dcfg['formula'])
        self.dispersion = estimate_dispersions(
            self.cohort_filtered.counts, design, lib_sizes,
            prior_df=dcfg['prior_df'], span=dcfg['span']
        )
        write_table(self.dispersion.to_frame(), self.results_dir / 'dispersions.tsv')

        normalizer.log_cpm_voom(self.norm_factors)
        vst = normalizer.vst(self.dispersion.common, self.norm_factors)
        write_table(vst, self.results_dir / 'vst_expression.tsv', index=True)
        write_table(normalizer.get_summary_stats(), self.results_dir / 'normalization_summary.tsv')

        self._explore_normalized(vst)

        return self.cohort_filtered

    def _explore_normalized(self, vst: pd.DataFrame) -> Dict[str, pd.DataFrame]:
        """PCA and clustering of the VST matrix with nuisance covariates regressed out."""
        cfg = self.config['exploration']
        samples = self.cohort_filtered.samples

        expr = vst
        adjust_for = list(cfg['adjust_for'])
        if adjust_for:
            missing = [c for c in adjust_for if c not in samples.columns]
            if missing:
                raise DesignError(f"Cannot adjust for unknown sample column(s): {missing}")
            keep = build_design(samples, cfg['preserve_formula']).matrix
            expr = remove_batch_effect(vst, samples[adjust_for], design=keep)
            logger.info(f"Regressed {', '.join(adjust_for)} out of VST expression for plots")

        reporter = ExploratoryReporter(
            self.cohort_filtered,
            log_expr=expr,
            n_components=cfg['n_components']
        )
        output_dir = self.results_dir / 'exploration' / 'normalized'
        tables = reporter.expression_tables()
        for name, table in tables.items():
            write_table(table, output_dir / f"{name}.tsv")

        if self.settings.RENDER_PLOTS:
            reporter.render_plots(output_dir, dpi=self.settings.PLOT_DPI, library_plots=False)

        return tables

    def step4_screen_covariates(self) -> ScreeningResult:
        """Screen blood-count covariates for perfect separation of status."""
        logger.info("=== Step 4: Covariate Screening ===")

        if self.cohort is None:
            self.step1_load_data()

        cfg = self.config['screening']
        screener = CovariateScreener(
            self.cohort.samples,
            candidates=cfg['candidates'],
            outcome=cfg['outcome'],
            deviance_threshold=cfg['deviance_threshold']
        )
        self.screening = screener.run()
        write_screening_result(self.screening, self.results_dir / 'screening')

        logger.info(
            f"Screening retained {len(self.screening.retained)} and excluded "
            f"{len(self.screening.excluded)} covariate(s)"
        )
        return self.screening

    def step5_differential_expression(self) -> Dict[str, DifferentialResult]:
        """Fit every configured model variant and write its tables."""
        logger.info("=== Step 5: Differential Expression Analysis ===")

        if self.cohort_filtered is None:
            self.step3_filter_and_normalize()

        specs = [ModelSpec.from_config(m) for m in self.config['models']]

        cfg = self.config['de_analysis']
        sv_cfg = cfg['surrogate_variables']
        de = DEAnalysis(
            self.cohort_filtered,
            norm_factors=self.norm_factors,
            weighting=cfg['weighting'],
            voom_span=cfg['voom_span'],
            proportion=cfg['proportion'],
            trend=cfg['trend'],
            dispersion_prior_df=self.config['dispersion']['prior_df'],
            dispersion_span=self.config['dispersion']['span'],
            sv_permutations=sv_cfg['n_permutations'],
            random_state=sv_cfg['random_state'],
        )

        failures: Dict[str, CohortDEError] = {}
        results = de.run_models(specs, errors=failures)
        results = self._annotate(results)

        output_dir = self.results_dir / 'differential_expression'
        for result in results.values():
            write_differential_result(result, output_dir)

        thresholds = cfg['thresholds']
        comparison = DEAnalysis.compare_models(
            results,
            padj_threshold=thresholds['padj'],
            log2fc_threshold=thresholds['log2fc']
        )
        write_table(comparison, output_dir / 'model_comparison.tsv')
        logger.info(f"\nModel comparison:\n{comparison}")

        self.de_results = results
        self.failed_models = sorted(failures)
        if failures:
            logger.error(
                f"{len(failures)} of {len(specs)} model(s) failed and were not written: "
                f"{', '.join(self.failed_models)}"
            )
            raise next(iter(failures.values()))
        return results

    def _annotate(self, results: Dict[str, DifferentialResult]) -> Dict[str, DifferentialResult]:
        """Add symbols and descriptions; leave tables as they are if the service fails."""
        if not self.settings.ANNOTATION_ENABLED:
            logger.info("Gene annotation disabled")
            return results

        annotator = GeneAnnotator(
            species=self.settings.ANNOTATION_SPECIES,
            scopes=self.settings.ANNOTATION_SCOPES,
            batch_size=self.settings.ANNOTATION_BATCH_SIZE,
        )
        try:
            annotated = {
                name: replace(
                    result,
                    tables={c: annotator.annotate(t) for c, t in result.tables.items()}
                )
                for name, result in results.items()
            }
        except AnnotationUnavailableError as e:
            logger.warning(f"Gene annotation unavailable, writing tables without it: {e}")
            return results

        self.annotated = True
        return annotated

    def run_full_pipeline(self) -> Dict[str, DifferentialResult]:
        """Run the complete analysis pipeline."""
        logger.info("=" * 60)
        logger.info("Starting Paired-Cohort RNA-seq Pipeline")
        logger.info("=" * 60)

        start_time = datetime.now()

        self.step1_load_data()
        self.step2_explore()
        self.step3_filter_and_normalize()
        self.step4_screen_covariates()
        try:
            self.step5_differential_expression()
        finally:
            self._generate_summary_report()

        duration = datetime.now() - start_time

        logger.info("=" * 60)
        logger.info(f"Pipeline completed in {duration}")
        logger.info(f"Results saved to: {self.results_dir}")
        logger.info("=" * 60)

        return self.de_results

    def _generate_summary_report(self):
        """Generate a summary report of the analysis."""
        thresholds = self.config['de_analysis']['thresholds']
        summary = {
            'project': self.config['project']['name'],
            'date': datetime.now().isoformat(),
            'data': {
                'genes': self.cohort.n_genes if self.cohort is not None else None,
                'filtered_genes': (
                    self.cohort_filtered.n_genes if self.cohort_filtered is not None else None
                ),
                'samples': self.cohort.n_samples if self.cohort is not None else None,
                'dropped_unpaired': self.dropped_samples,
            },
            'dispersion': {
                'common': self.dispersion.common if self.dispersion is not None else None,
            },
            'screening': {
                'retained': self.screening.retained if self.screening is not None else None,
                'excluded': (
                    self.screening.excluded_covariates if self.screening is not None else None
                ),
            },
            'de_analysis': {
                'annotated': self.annotated,
                'failed_models': self.failed_models,
                'models': {
                    name: {
                        'formula': result.model.formula,
                        'block': result.model.block,
                        'correlation': result.correlation,
                        'df_prior': result.df_prior,
                        'excluded_genes': len(result.excluded_genes),
                        'excluded_samples': result.excluded_samples,
                        'significant': {
                            contrast: len(result.significant(
                                contrast, thresholds['padj'], thresholds['log2fc']
                            ))
                            for contrast in result.tables
                        },
                    }
                    for name, result in (self.de_results or {}).items()
                },
            },
        }
        write_run_summary(summary, self.results_dir / 'pipeline_summary.json')


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(description='Paired-cohort RNA-seq differential expression')
    parser.add_argument(
        '--config',
        type=str,
        default='configs/config.yaml',
        help='Path to configuration file'
    )
    parser.add_argument(
        '--project-root',
        type=str,
        default=None,
        help='Base directory for relative data paths'
    )
    parser.add_argument(
        '--step',
        type=str,
        choices=['all', 'load', 'explore', 'normalize', 'screen', 'de'],
        default='all',
        help='Pipeline step to run'
    )

    args = parser.parse_args(argv)

    settings = get_settings()
    logging.basicConfig(level=settings.LOG_LEVEL, format=settings.LOG_FORMAT, force=True)

    try:
        pipeline = CohortDEPipeline(args.config, project_root=args.project_root)

        if args.step == 'all':
            pipeline.run_full_pipeline()
        elif args.step == 'load':
            pipeline.step1_load_data()
        elif args.step == 'explore':
            pipeline.step2_explore()
        elif args.step == 'normalize':
            pipeline.step3_filter_and_normalize()
        elif args.step == 'screen':
            pipeline.step4_screen_covariates()
        elif args.step == 'de':
            pipeline.step5_differential_expression()
    except (CohortDEError, OSError) as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
