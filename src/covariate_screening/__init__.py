"""
Covariate screening module.
"""

from .screening import CovariateScreener, ScreeningResult

__all__ = ['CovariateScreener', 'ScreeningResult']
