"""
Error taxonomy for the cohort differential expression pipeline.

Errors are raised by the stage that detects them and reported by the
command line entry point; the pipeline does not retry.
"""

from typing import Iterable, List


class CohortDEError(Exception):
    """Base exception for pipeline errors."""

    pass


class CohortDataError(CohortDEError):
    """Invalid count matrix or sample metadata."""

    pass


class IdentifierMismatchError(CohortDataError):
    """Samples present in one input but not the other."""

    def __init__(
        self,
        missing_metadata: Iterable[str],
        missing_counts: Iterable[str]
    ):
        self.missing_metadata: List[str] = sorted(missing_metadata)
        self.missing_counts: List[str] = sorted(missing_counts)
        parts = []
        if self.missing_metadata:
            parts.append(
                f"{len(self.missing_metadata)} count column(s) without metadata: "
                f"{', '.join(self.missing_metadata)}"
            )
        if self.missing_counts:
            parts.append(
                f"{len(self.missing_counts)} metadata row(s) without counts: "
                f"{', '.join(self.missing_counts)}"
            )
        super().__init__("Sample identifier mismatch; " + "; ".join(parts))


class DuplicateSampleError(CohortDataError):
    """A patient contributes more than one sample for the same status."""

    pass


class DesignError(CohortDEError):
    """Design matrix could not be built from the sample table."""

    pass


class RankDeficiencyError(DesignError):
    """Design matrix columns are linearly dependent."""

    def __init__(self, rank: int, n_columns: int, dependent_columns: Iterable[str]):
        self.rank = rank
        self.n_columns = n_columns
        self.dependent_columns: List[str] = list(dependent_columns)
        super().__init__(
            f"Design matrix is rank deficient (rank {rank} < {n_columns} columns); "
            f"non-estimable: {', '.join(self.dependent_columns)}"
        )


class ContrastError(DesignError):
    """Contrast refers to unknown design columns or is not linear."""

    pass


class DegenerateFitError(CohortDEError):
    """No gene left with a usable fit."""

    pass


class AnnotationUnavailableError(CohortDEError):
    """Gene annotation service could not be queried."""

    pass


class OutputError(CohortDEError):
    """A result table was not written completely."""

    pass
