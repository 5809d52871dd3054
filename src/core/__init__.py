"""
Configuration and error types shared by all pipeline stages.
"""

from .config import Settings, get_settings, load_config, DEFAULT_CONFIG
from .exceptions import (
    CohortDEError,
    CohortDataError,
    IdentifierMismatchError,
    DuplicateSampleError,
    DesignError,
    RankDeficiencyError,
    ContrastError,
    DegenerateFitError,
    AnnotationUnavailableError,
    OutputError,
)

__all__ = [
    'Settings',
    'get_settings',
    'load_config',
    'DEFAULT_CONFIG',
    'CohortDEError',
    'CohortDataError',
    'IdentifierMismatchError',
    'DuplicateSampleError',
    'DesignError',
    'RankDeficiencyError',
    'ContrastError',
    'DegenerateFitError',
    'AnnotationUnavailableError',
    'OutputError',
]
