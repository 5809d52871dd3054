"""
Result writers.
"""

from .writers import (
    ANNOTATION_COLUMNS,
    safe_filename,
    write_differential_result,
    write_result_table,
    write_run_summary,
    write_screening_result,
    write_table,
)

__all__ = [
    'ANNOTATION_COLUMNS',
    'safe_filename',
    'write_differential_result',
    'write_result_table',
    'write_run_summary',
    'write_screening_result',
    'write_table',
]
