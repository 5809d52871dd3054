"""
Tab-delimited result writers.

Output is deterministic: fixed column order, fixed float format, rows in
the order the caller ranked them, and no timestamps inside the tables.
Every file is read back after writing to confirm no row was lost.
"""

import json
import logging
import re
from pathlib import Path
from typing import Dict, List

import pandas as pd

from core.exceptions import OutputError
from covariate_screening.screening import ScreeningResult
from de_analysis.differential_expression import RESULT_COLUMNS, DifferentialResult

logger = logging.getLogger(__name__)

ANNOTATION_COLUMNS = ['symbol', 'description']
FLOAT_FORMAT = '%.8g'

_UNSAFE = re.compile(r'[^A-Za-z0-9_.-]+')


def safe_filename(name: str) -> str:
    """File-system safe version of a model or contrast name."""
    cleaned = _UNSAFE.sub('_', str(name)).strip('_')
    if not cleaned:
        raise OutputError(f"Cannot build a file name from '{name}'")
    return cleaned


def _verify_rows(path: Path, expected: int):
    n_written = len(pd.read_csv(path, sep='\t', usecols=[0], keep_default_na=False))
    if n_written != expected:
        raise OutputError(f"{path}: wrote {n_written} of {expected} rows")


def write_table(table: pd.DataFrame, path, index: bool = False) -> Path:
    """Write any table as TSV with the fixed float format."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        table.to_csv(path, sep='\t', index=index, float_format=FLOAT_FORMAT, na_rep='NA')
    except OSError as e:
        raise OutputError(f"Could not write {path}: {e}") from e
    _verify_rows(path, len(table))
    return path


def write_result_table(table: pd.DataFrame, path) -> Path:
    """
    Write one differential expression table.

    Columns are ``gene_id, logFC, AveExpr, t, P.Value, adj.P.Val, B``
    followed by ``symbol, description`` when present.

    Raises
    ------
    OutputError
        If a required column is missing or not every row reached the file
    """
    missing = [c for c in RESULT_COLUMNS if c not in table.columns]
    if missing:
        raise OutputError(f"Result table is missing columns: {missing}")

    columns = list(RESULT_COLUMNS)
    if all(c in table.columns for c in ANNOTATION_COLUMNS):
        columns += ANNOTATION_COLUMNS

    path = write_table(table[columns], path)
    logger.info(f"Wrote {len(table)} genes to {path}")
    return path


def write_differential_result(result: DifferentialResult, output_dir) -> List[Path]:
    """One ``<model>__<contrast>.tsv`` per contrast."""
    output_dir = Path(output_dir)
    paths = []
    for contrast, table in result.tables.items():
        filename = f"{safe_filename(result.model.name)}__{safe_filename(contrast)}.tsv"
        paths.append(write_result_table(table, output_dir / filename))

    if result.surrogate_variables is not None and result.surrogate_variables.shape[1] > 0:
        sv_path = output_dir / f"{safe_filename(result.model.name)}__surrogate_variables.tsv"
        paths.append(write_table(result.surrogate_variables, sv_path, index=True))
    return paths


def write_screening_result(result: ScreeningResult, output_dir) -> Dict[str, Path]:
    """Retained covariates, exclusions and the deviance history."""
    output_dir = Path(output_dir)
    retained = pd.DataFrame({'covariate': result.retained})
    return {
        'retained': write_table(retained, output_dir / 'screening_retained.tsv'),
        'excluded': write_table(result.excluded, output_dir / 'screening_excluded.tsv'),
        'history': write_table(result.history, output_dir / 'screening_history.tsv'),
    }


def write_run_summary(summary: Dict, path) -> Path:
    """JSON summary of a pipeline run (keys sorted)."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w') as f:
        json.dump(summary, f, indent=2, sort_keys=True, default=str)
    logger.info(f"Saved run summary to {path}")
    return path
