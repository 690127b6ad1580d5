"""Utility functions for laplace_ep package."""

from .linalg import cholesky, invert_chol, log_det_chol
from .quadrature import QuadratureRule
from .sparse import SparsePrecision

__all__ = [
    'cholesky', 'invert_chol', 'log_det_chol',
    'QuadratureRule',
    'SparsePrecision',
]
