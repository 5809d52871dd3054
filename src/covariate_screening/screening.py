"""
Covariate Screening
===================

Blood-count covariates measured at the same draw as the expression data
can predict the clinical status perfectly (e.g. neutrophil counts during
an exacerbation). Such a covariate absorbs the status effect when added
to a model, so it is screened out first:

1. Fit a near-unpenalised logistic regression of status on the candidates
2. If the residual deviance is essentially zero the outcome is separated
3. A depth-1 decision tree names the covariate with a pure split
4. Drop it and repeat until the deviance is no longer degenerate

The result is a report; it is not applied to any model automatically.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

import numpy as np
import pandas as pd
from sklearn.linear_model import LogisticRegression
from sklearn.metrics import log_loss
from sklearn.preprocessing import StandardScaler
from sklearn.tree import DecisionTreeClassifier

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScreeningResult:
    """
    Outcome of the screening loop.

    Attributes
    ----------
    retained : List[str]
        Covariates that survived
    excluded : pd.DataFrame
        One row per removed covariate with the reason and iteration
    history : pd.DataFrame
        Deviance of the logistic fit at every iteration
    """

    retained: List[str]
    excluded: pd.DataFrame
    history: pd.DataFrame

    @property
    def excluded_covariates(self) -> List[str]:
        return self.excluded['covariate'].tolist()


class CovariateScreener:
    """Iterative perfect-separator screening of candidate covariates."""

    def __init__(
        self,
        samples: pd.DataFrame,
        candidates: List[str],
        outcome: str = 'status',
        positive_level: str = 'exacerbation',
        deviance_threshold: float = 1.0
    ):
        """
        Initialize the screener.

        Parameters
        ----------
        samples : pd.DataFrame
            Sample table with the outcome and candidate columns
        candidates : List[str]
            Numeric covariates to screen
        outcome : str
            Binary outcome column
        positive_level : str
            Outcome level coded as 1
        deviance_threshold : float
            Residual deviance below which the fit is treated as separated
        """
        if outcome not in samples.columns:
            raise KeyError(f"Outcome column '{outcome}' not in sample table")

        self.samples = samples
        self.outcome = outcome
        self.positive_level = positive_level
        self.deviance_threshold = deviance_threshold

        missing = [c for c in candidates if c not in samples.columns]
        if missing:
            logger.warning(f"Screening candidates not in sample table: {missing}")
        self.candidates = [c for c in candidates if c in samples.columns]

    def _complete_cases(self, covariates: List[str]):
        data = self.samples[[self.outcome] + covariates].dropna()
        y = (data[self.outcome].astype(str) == self.positive_level).astype(int).to_numpy()
        return data[covariates], y

    @staticmethod
    def residual_deviance(X: np.ndarray, y: np.ndarray) -> float:
        """-2 log-likelihood of a near-unpenalised logistic fit."""
        model = LogisticRegression(C=1e6, max_iter=10000)
        model.fit(X, y)
        proba = model.predict_proba(X)[:, 1]
        return float(2 * log_loss(y, proba, labels=[0, 1], normalize=False))

    @staticmethod
    def pure_split(X: pd.DataFrame, y: np.ndarray) -> Optional[dict]:
        """
        Covariate whose single threshold splits the outcome perfectly.

        Returns
        -------
        dict or None
            ``covariate`` and ``threshold`` of the split, or None
        """
        tree = DecisionTreeClassifier(max_depth=1, random_state=0)
        tree.fit(X.to_numpy(dtype=float), y)

        structure = tree.tree_
        if structure.node_count < 3:
            return None
        left, right = structure.children_left[0], structure.children_right[0]
        if structure.impurity[left] > 0 or structure.impurity[right] > 0:
            return None

        return {
            'covariate': X.columns[structure.feature[0]],
            'threshold': float(structure.threshold[0]),
        }

    def run(self) -> ScreeningResult:
        """
        Run the screening loop.

        Returns
        -------
        ScreeningResult
        """
        logger.info(
            f"Screening {len(self.candidates)} covariate(s) against '{self.outcome}'"
        )

        remaining = list(self.candidates)
        excluded, history = [], []

        constant = [c for c in remaining if self.samples[c].dropna().nunique() < 2]
        for c in constant:
            logger.info(f"Excluding constant covariate '{c}'")
            excluded.append({
                'covariate': c, 'iteration': 0, 'reason': 'constant',
                'split_threshold': np.nan, 'deviance': np.nan,
            })
        remaining = [c for c in remaining if c not in constant]

        iteration = 0
        while remaining:
            iteration += 1
            X, y = self._complete_cases(remaining)

            if len(np.unique(y)) < 2:
                logger.warning(
                    f"Only one outcome level among {len(y)} complete case(s); stopping"
                )
                break

            X_scaled = StandardScaler().fit_transform(X.to_numpy(dtype=float))
            deviance = self.residual_deviance(X_scaled, y)
            history.append({
                'iteration': iteration,
                'n_covariates': len(remaining),
                'n_samples': len(y),
                'deviance': deviance,
            })
            logger.info(
                f"Iteration {iteration}: {len(remaining)} covariate(s), "
                f"{len(y)} complete case(s), deviance {deviance:.4g}"
            )

            if deviance >= self.deviance_threshold:
                break

            split = self.pure_split(X, y)
            if split is None:
                logger.warning(
                    "Outcome is separated but no single covariate splits it; "
                    "stopping with the current set"
                )
                break

            logger.info(
                f"Excluding perfect separator '{split['covariate']}' "
                f"(threshold {split['threshold']:.4g})"
            )
            excluded.append({
                'covariate': split['covariate'],
                'iteration': iteration,
                'reason': 'perfect_separator',
                'split_threshold': split['threshold'],
                'deviance': deviance,
            })
            remaining.remove(split['covariate'])

        logger.info(f"Retained covariates: {remaining}")
        return ScreeningResult(
            retained=remaining,
            excluded=pd.DataFrame(
                excluded,
                columns=['covariate', 'iteration', 'reason', 'split_threshold', 'deviance']
            ),
            history=pd.DataFrame(
                history,
                columns=['iteration', 'n_covariates', 'n_samples', 'deviance']
            ),
        )
