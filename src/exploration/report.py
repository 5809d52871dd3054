"""
Exploratory Report
==================

Sample-level summaries produced before any model is fit:
1. Library sizes, detected genes and pairing per patient
2. Genes dominating the libraries
3. PCA of log-expression
4. Hierarchical clustering of samples on correlation distance
5. PNG plots of the above
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns
from scipy.cluster import hierarchy
from scipy.spatial.distance import pdist
from sklearn.decomposition import PCA
from sklearn.preprocessing import StandardScaler

from preprocessing.cohort import CohortData
from preprocessing.data_loader import summarize_pairs
from preprocessing.normalization import RNAseqNormalizer, compare_library_sizes, high_count_genes

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class ExploratoryReporter:
    """Exploratory summaries of a cohort snapshot."""

    def __init__(
        self,
        cohort: CohortData,
        log_expr: Optional[pd.DataFrame] = None,
        top_genes: int = 20,
        n_components: int = 5
    ):
        """
        Parameters
        ----------
        cohort : CohortData
            Counts and sample table
        log_expr : pd.DataFrame, optional
            Log-expression (genes x samples) for PCA and clustering;
            TMM log-CPM of the counts if omitted
        top_genes : int
            Rows in the high-count genes table
        n_components : int
            Principal components to keep
        """
        self.cohort = cohort
        if log_expr is None:
            log_expr = RNAseqNormalizer(cohort.counts).cpm(log=True)
        self.log_expr = log_expr.loc[:, cohort.sample_keys]
        self.top_genes = top_genes
        self.n_components = n_components

    def _annotations(self) -> pd.DataFrame:
        columns = [c for c in ('patient', 'status', 'rhinovirus') if c in self.cohort.samples.columns]
        table = self.cohort.samples[columns].copy()
        for c in ('status', 'rhinovirus'):
            if c in table.columns:
                table[c] = table[c].astype(str)
        return table

    def library_summary(self) -> pd.DataFrame:
        """Per-sample library size and detected genes with sample annotations."""
        stats_df = compare_library_sizes(self.cohort.counts)
        return stats_df.merge(
            self._annotations(), left_on='sample_id', right_index=True, how='left'
        )

    def pair_summary(self) -> pd.DataFrame:
        """Samples per patient and status."""
        return summarize_pairs(self.cohort).reset_index()

    def high_count_genes(self) -> pd.DataFrame:
        return high_count_genes(self.cohort.counts, top_n=self.top_genes)

    def pca_analysis(self) -> Tuple[pd.DataFrame, pd.Series]:
        """
        PCA of samples on standardised log-expression.

        Returns
        -------
        Tuple[pd.DataFrame, pd.Series]
            Scores (samples x PCs, with annotations) and explained variance ratios
        """
        X = self.log_expr.T.values
        X = X[:, np.ptp(X, axis=0) > 0]
        n_components = min(self.n_components, X.shape[0], X.shape[1])
        if n_components < 1:
            raise ValueError("PCA needs at least one sample and one variable gene")

        X_scaled = StandardScaler().fit_transform(X)
        pca = PCA(n_components=n_components)
        scores = pca.fit_transform(X_scaled)

        columns = [f'PC{i+1}' for i in range(n_components)]
        scores_df = pd.DataFrame(scores, index=self.log_expr.columns, columns=columns)
        scores_df.index.name = 'sample_key'
        scores_df = scores_df.join(self._annotations())

        explained = pd.Series(pca.explained_variance_ratio_, index=columns, name='explained_variance')
        logger.info(
            "PCA explained variance: "
            + ", ".join(f"{c}={v:.1%}" for c, v in explained.items())
        )
        return scores_df, explained

    def sample_clustering(self, method: str = 'average', n_clusters: int = 2) -> Tuple[np.ndarray, pd.DataFrame]:
        """
        Hierarchical clustering of samples on 1 - Pearson correlation.

        Returns
        -------
        Tuple[np.ndarray, pd.DataFrame]
            Linkage matrix, and per-sample leaf order and cluster label
        """
        distances = pdist(self.log_expr.T.values, metric='correlation')
        linkage = hierarchy.linkage(distances, method=method)
        order = hierarchy.leaves_list(linkage)
        clusters = hierarchy.fcluster(linkage, t=n_clusters, criterion='maxclust')

        samples = self.log_expr.columns
        table = pd.DataFrame({
            'sample_key': samples,
            'leaf_order': np.argsort(order),
            'cluster': clusters,
        }).join(self._annotations(), on='sample_key')
        return linkage, table

    def expression_tables(self) -> Dict[str, pd.DataFrame]:
        """PCA and clustering tables of the log-expression matrix."""
        scores, explained = self.pca_analysis()
        _, clusters = self.sample_clustering()
        return {
            'pca_scores': scores.reset_index(),
            'pca_explained_variance': explained.rename_axis('component').reset_index(),
            'sample_clusters': clusters,
        }

    def tables(self) -> Dict[str, pd.DataFrame]:
        """All exploratory tables keyed by output name."""
        return {
            'library_sizes': self.library_summary(),
            'patient_pairs': self.pair_summary(),
            'high_count_genes': self.high_count_genes(),
            **self.expression_tables(),
        }

    def render_plots(self, output_dir, dpi: int = 150, library_plots: bool = True) -> List[Path]:
        """
        Write exploratory PNGs.

        Parameters
        ----------
        output_dir : str or Path
            Directory for the PNG files
        dpi : int
            Resolution
        library_plots : bool
            Include the library-size bar chart

        Returns
        -------
        List[Path]
            Files written
        """
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        written = []
        annotations = self._annotations()

        # log-expression densities
        fig, ax = plt.subplots(figsize=(8, 5))
        for sample in self.log_expr.columns:
            sns.kdeplot(self.log_expr[sample], ax=ax, linewidth=0.8, warn_singular=False)
        ax.set_xlabel('log2 CPM')
        ax.set_title('Expression density per sample')
        written.append(self._save(fig, output_dir / 'log_cpm_density.png', dpi))

        # library sizes
        if library_plots:
            libs = self.library_summary()
            fig, ax = plt.subplots(figsize=(max(6, 0.3 * len(libs)), 5))
            sns.barplot(data=libs, x='sample_id', y='total_counts',
                        hue='status' if 'status' in libs.columns else None, dodge=False, ax=ax)
            ax.set_xlabel('')
            ax.set_ylabel('Total counts')
            ax.set_title('Library sizes')
            ax.tick_params(axis='x', rotation=90)
            written.append(self._save(fig, output_dir / 'library_sizes.png', dpi))

        # PCA
        scores, explained = self.pca_analysis()
        if 'PC2' in scores.columns:
            fig, ax = plt.subplots(figsize=(7, 6))
            sns.scatterplot(
                data=scores, x='PC1', y='PC2',
                hue='status' if 'status' in scores.columns else None,
                style='rhinovirus' if 'rhinovirus' in scores.columns else None,
                s=80, ax=ax
            )
            if 'patient' in scores.columns:
                for _, group in scores.groupby('patient'):
                    if len(group) == 2:
                        ax.plot(group['PC1'], group['PC2'], color='grey', linewidth=0.5, alpha=0.6)
            ax.set_xlabel(f"PC1 ({explained['PC1']:.1%})")
            ax.set_ylabel(f"PC2 ({explained['PC2']:.1%})")
            ax.set_title('PCA of log-expression')
            written.append(self._save(fig, output_dir / 'pca.png', dpi))

        # dendrogram
        linkage, _ = self.sample_clustering()
        labels = [
            f"{s} ({annotations.at[s, 'status']})" if 'status' in annotations.columns else s
            for s in self.log_expr.columns
        ]
        fig, ax = plt.subplots(figsize=(max(8, 0.3 * len(labels)), 5))
        hierarchy.dendrogram(linkage, labels=labels, leaf_rotation=90, ax=ax)
        ax.set_ylabel('1 - Pearson correlation')
        ax.set_title('Sample clustering')
        written.append(self._save(fig, output_dir / 'sample_dendrogram.png', dpi))

        # correlation heatmap
        corr = self.log_expr.corr()
        fig, ax = plt.subplots(figsize=(8, 7))
        sns.heatmap(corr, cmap='viridis', square=True, ax=ax, xticklabels=True, yticklabels=True)
        ax.set_title('Sample correlation')
        written.append(self._save(fig, output_dir / 'sample_correlation.png', dpi))

        logger.info(f"Saved {len(written)} plots to {output_dir}")
        return written

    @staticmethod
    def _save(fig, path: Path, dpi: int) -> Path:
        fig.tight_layout()
        fig.savefig(path, dpi=dpi)
        plt.close(fig)
        return path
