"""
Immutable cohort snapshot passed between pipeline stages.
"""

from dataclasses import dataclass
from typing import Iterable

import pandas as pd

from core.exceptions import CohortDataError


@dataclass(frozen=True)
class CohortData:
    """
    Count matrix and sample table sharing one composite sample key.

    ``counts`` is genes x samples; ``samples`` is indexed by the same keys,
    in the same order, as ``counts.columns``. Subsetting returns a new
    snapshot with both axes kept in sync.
    """

    counts: pd.DataFrame
    samples: pd.DataFrame

    def __post_init__(self):
        if list(self.counts.columns) != list(self.samples.index):
            raise CohortDataError(
                "Count matrix columns and sample table index are not aligned"
            )

    @property
    def n_genes(self) -> int:
        return self.counts.shape[0]

    @property
    def n_samples(self) -> int:
        return self.counts.shape[1]

    @property
    def sample_keys(self) -> list:
        return list(self.samples.index)

    def subset_genes(self, genes: Iterable) -> 'CohortData':
        """Keep only ``genes`` (labels or boolean mask), preserving matrix order."""
        if isinstance(genes, pd.Series) and genes.dtype == bool:
            counts = self.counts.loc[genes.reindex(self.counts.index, fill_value=False)]
        else:
            keep = set(genes)
            counts = self.counts.loc[[g for g in self.counts.index if g in keep]]
        return CohortData(counts=counts.copy(), samples=self.samples.copy())

    def subset_samples(self, keys: Iterable[str]) -> 'CohortData':
        """Keep only samples in ``keys``, preserving current column order."""
        keep = set(keys)
        ordered = [k for k in self.samples.index if k in keep]
        return CohortData(
            counts=self.counts[ordered].copy(),
            samples=self.samples.loc[ordered].copy()
        )

    def drop_samples(self, keys: Iterable[str]) -> 'CohortData':
        drop = set(keys)
        return self.subset_samples(k for k in self.samples.index if k not in drop)
