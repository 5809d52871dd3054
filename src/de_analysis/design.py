"""
Design matrices and contrasts.

Design matrices are built from R-style formulas with patsy and renamed to
identifier-safe column names in the R ``model.matrix`` manner
(``status[T.exacerbation]`` -> ``statusexacerbation``), so contrasts can be
written as plain arithmetic over column names::

    "statusexacerbation - statusbaseline"
    "(statusexacerbation_rhinoviruspositive + statusexacerbation_rhinovirusnegative) / 2"

Rank is checked with a pivoted QR before any fit: a covariate that is
constant within a blocking factor used as a fixed effect would otherwise
produce silently arbitrary coefficients.
"""

import ast
import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Mapping, Union

import numpy as np
import pandas as pd
import patsy
from scipy import linalg

from core.exceptions import ContrastError, DesignError, RankDeficiencyError

logger = logging.getLogger(__name__)

ContrastDefinition = Union[str, Mapping[str, float]]

_FACTOR_LEVEL = re.compile(r'([A-Za-z_][A-Za-z0-9_]*)\[(?:T\.)?([^\]]*)\]')


def clean_column_name(name: str) -> str:
    """
    Identifier-safe design column name.

    ``Intercept`` stays, ``factor[T.level]`` and ``factor[level]`` become
    ``factorlevel``, interaction separators become ``_``.
    """
    cleaned = _FACTOR_LEVEL.sub(lambda m: m.group(1) + m.group(2), name)
    cleaned = cleaned.replace(':', '_')
    cleaned = re.sub(r'[^0-9A-Za-z_]+', '_', cleaned).strip('_')
    if not cleaned:
        raise DesignError(f"Design column '{name}' has no usable name")
    if cleaned[0].isdigit():
        cleaned = 'X' + cleaned
    return cleaned


@dataclass(frozen=True)
class DesignSpec:
    """Numeric design matrix (samples x columns) and the formula it came from."""

    formula: str
    matrix: pd.DataFrame
    term_names: tuple

    @property
    def columns(self) -> List[str]:
        return list(self.matrix.columns)

    @property
    def n_samples(self) -> int:
        return self.matrix.shape[0]

    @property
    def n_columns(self) -> int:
        return self.matrix.shape[1]

    @property
    def df_residual(self) -> int:
        return self.n_samples - self.n_columns

    def to_numpy(self) -> np.ndarray:
        return self.matrix.to_numpy(dtype=float)


def check_rank(matrix: pd.DataFrame, tol: float = 1e-7) -> int:
    """
    Verify the design has full column rank and residual degrees of freedom.

    Raises
    ------
    RankDeficiencyError
        Naming the columns a pivoted QR could not estimate
    DesignError
        If there are no residual degrees of freedom
    """
    X = matrix.to_numpy(dtype=float)
    n, p = X.shape
    if p == 0:
        raise DesignError("Design matrix has no columns")

    _, r, pivot = linalg.qr(X, mode='economic', pivoting=True)
    diag = np.abs(np.diag(r))
    rank = int(np.sum(diag > tol * diag[0])) if diag[0] > 0 else 0

    if rank < p:
        dependent = [matrix.columns[i] for i in pivot[rank:]]
        raise RankDeficiencyError(rank, p, dependent)
    if n <= p:
        raise DesignError(
            f"Design has {p} columns for {n} samples; no residual degrees of freedom"
        )
    return rank


def build_design(
    samples: pd.DataFrame,
    formula: str,
    check: bool = True
) -> DesignSpec:
    """
    Build a design matrix from a patsy formula over sample columns.

    Parameters
    ----------
    samples : pd.DataFrame
        Sample table indexed by sample key
    formula : str
        Right-hand-side formula, e.g. ``"~ patient + status"``
    check : bool
        Run the rank check

    Returns
    -------
    DesignSpec
    """
    try:
        matrix = patsy.dmatrix(
            formula,
            samples,
            NA_action=patsy.NAAction(NA_types=['None', 'NaN']),
            return_type='dataframe'
        )
    except patsy.PatsyError as e:
        raise DesignError(f"Could not build design '{formula}': {e}") from e

    if len(matrix) != len(samples):
        missing = sorted(set(samples.index) - set(matrix.index))
        raise DesignError(
            f"Design '{formula}' dropped {len(missing)} sample(s) with missing "
            f"covariate values: {', '.join(map(str, missing))}"
        )

    term_names = tuple(matrix.columns)
    cleaned = [clean_column_name(c) for c in term_names]
    if len(set(cleaned)) != len(cleaned):
        raise DesignError(f"Design column names collide after cleaning: {cleaned}")

    matrix = pd.DataFrame(
        matrix.to_numpy(dtype=float),
        index=samples.index,
        columns=cleaned
    )

    if check:
        check_rank(matrix)

    logger.info(f"Design '{formula}': {matrix.shape[0]} samples x {matrix.shape[1]} columns")
    return DesignSpec(formula=formula, matrix=matrix, term_names=term_names)


def _evaluate_contrast(expression: str, columns: List[str]) -> np.ndarray:
    """Evaluate a linear expression over design column names to a weight vector."""
    try:
        tree = ast.parse(expression, mode='eval')
    except SyntaxError as e:
        raise ContrastError(f"Cannot parse contrast '{expression}': {e}") from e

    index = {c: i for i, c in enumerate(columns)}

    def visit(node):
        if isinstance(node, ast.Expression):
            return visit(node.body)
        if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)):
            return float(node.value)
        if isinstance(node, ast.Name):
            if node.id not in index:
                raise ContrastError(
                    f"Unknown design column '{node.id}' in contrast '{expression}'; "
                    f"available: {', '.join(columns)}"
                )
            vec = np.zeros(len(columns))
            vec[index[node.id]] = 1.0
            return vec
        if isinstance(node, ast.UnaryOp) and isinstance(node.op, (ast.USub, ast.UAdd)):
            value = visit(node.operand)
            return -value if isinstance(node.op, ast.USub) else value
        if isinstance(node, ast.BinOp):
            left, right = visit(node.left), visit(node.right)
            left_vec, right_vec = isinstance(left, np.ndarray), isinstance(right, np.ndarray)
            if isinstance(node.op, (ast.Add, ast.Sub)):
                if left_vec != right_vec:
                    raise ContrastError(f"Contrast '{expression}' is not linear (constant term)")
                return left + right if isinstance(node.op, ast.Add) else left - right
            if isinstance(node.op, ast.Mult):
                if left_vec and right_vec:
                    raise ContrastError(f"Contrast '{expression}' multiplies two coefficients")
                return left * right
            if isinstance(node.op, ast.Div):
                if right_vec:
                    raise ContrastError(f"Contrast '{expression}' divides by a coefficient")
                return left / right
        raise ContrastError(f"Unsupported syntax in contrast '{expression}'")

    result = visit(tree)
    if not isinstance(result, np.ndarray):
        raise ContrastError(f"Contrast '{expression}' does not reference any design column")
    return result


def build_contrasts(
    design: DesignSpec,
    contrasts: Dict[str, ContrastDefinition]
) -> pd.DataFrame:
    """
    Contrast matrix (design columns x named contrasts).

    Parameters
    ----------
    design : DesignSpec
        Design the contrasts refer to
    contrasts : dict
        Name -> expression string, or name -> {column: weight}
    """
    if not contrasts:
        raise ContrastError("At least one contrast is required")

    columns = design.columns
    matrix = {}
    for name, definition in contrasts.items():
        if isinstance(definition, Mapping):
            unknown = [c for c in definition if c not in columns]
            if unknown:
                raise ContrastError(f"Unknown design column(s) in contrast '{name}': {unknown}")
            vec = np.array([float(definition.get(c, 0.0)) for c in columns])
        else:
            vec = _evaluate_contrast(str(definition), columns)

        if not np.any(vec):
            raise ContrastError(f"Contrast '{name}' has all-zero weights")
        matrix[name] = vec

    return pd.DataFrame(matrix, index=columns)
