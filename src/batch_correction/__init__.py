"""
Surrogate variable and covariate-removal module for RNA-seq analysis.
"""

from .surrogate_variables import (
    SurrogateVariableAnalysis,
    add_surrogate_variables,
    remove_batch_effect,
)

__all__ = ['SurrogateVariableAnalysis', 'add_surrogate_variables', 'remove_batch_effect']
