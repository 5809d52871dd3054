"""
Exploratory analysis module.
"""

from .report import ExploratoryReporter

__all__ = ['ExploratoryReporter']
