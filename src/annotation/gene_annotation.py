"""
Gene annotation from MyGene.info.

Result tables are keyed by the identifiers in the count matrix (usually
versioned Ensembl gene ids). Symbols and descriptions are an optional
enrichment: any failure to reach the service is raised as
``AnnotationUnavailableError`` so the caller can write tables without them.
"""

import logging
import re
from typing import Dict, Iterable, Optional

import mygene
import pandas as pd

from core.exceptions import AnnotationUnavailableError

logger = logging.getLogger(__name__)

_ENSEMBL_VERSION = re.compile(r'^(ENS[A-Z]*G\d+)\.\d+$')


def strip_version(gene_id: str) -> str:
    """ENSG00000141510.17 -> ENSG00000141510; other identifiers unchanged."""
    match = _ENSEMBL_VERSION.match(str(gene_id))
    return match.group(1) if match else str(gene_id)


class GeneAnnotator:
    """Map gene identifiers to symbols and descriptions."""

    def __init__(
        self,
        species: str = 'human',
        scopes: str = 'ensembl.gene,symbol',
        batch_size: int = 1000,
        client: Optional[mygene.MyGeneInfo] = None
    ):
        self.species = species
        self.scopes = scopes
        self.batch_size = batch_size
        self.client = client
        self._cache: Dict[str, Dict[str, Optional[str]]] = {}

    def _query(self, queries: list) -> list:
        client = self.client if self.client is not None else mygene.MyGeneInfo()
        hits = []
        for start in range(0, len(queries), self.batch_size):
            batch = queries[start:start + self.batch_size]
            try:
                results = client.querymany(
                    batch,
                    scopes=self.scopes,
                    fields='symbol,name',
                    species=self.species,
                    returnall=True,
                    verbose=False,
                )
            except Exception as e:
                raise AnnotationUnavailableError(f"MyGene.info query failed: {e}") from e
            hits.extend(results.get('out', []))
        return hits

    def annotate_ids(self, gene_ids: Iterable[str]) -> pd.DataFrame:
        """
        Look up symbols and descriptions.

        Returns
        -------
        pd.DataFrame
            ``gene_id, symbol, description``; unresolved genes have empty values
        """
        gene_ids = [str(g) for g in gene_ids]
        queries = sorted({strip_version(g) for g in gene_ids} - set(self._cache))

        if queries:
            logger.info(f"Querying MyGene.info for {len(queries)} gene(s)")
            for hit in self._query(queries):
                query = hit.get('query')
                if query is None or hit.get('notfound') or query in self._cache:
                    continue
                self._cache[query] = {
                    'symbol': hit.get('symbol'),
                    'description': hit.get('name'),
                }
            unresolved = [q for q in queries if q not in self._cache]
            if unresolved:
                logger.info(f"{len(unresolved)} gene(s) without annotation")
            for q in unresolved:
                self._cache[q] = {'symbol': None, 'description': None}

        records = [
            {'gene_id': g, **self._cache[strip_version(g)]}
            for g in gene_ids
        ]
        return pd.DataFrame(records, columns=['gene_id', 'symbol', 'description'], dtype=object)

    def annotate(self, table: pd.DataFrame) -> pd.DataFrame:
        """Copy of a result table with ``symbol`` and ``description`` appended."""
        annotations = self.annotate_ids(table['gene_id'])
        annotated = table.drop(columns=['symbol', 'description'], errors='ignore').copy()
        annotated['symbol'] = annotations['symbol'].to_numpy()
        annotated['description'] = annotations['description'].to_numpy()
        return annotated
