"""
Gene annotation module.
"""

from .gene_annotation import GeneAnnotator, strip_version

__all__ = ['GeneAnnotator', 'strip_version']
