"""
Sparse symmetric precision matrix with explicit diagonal access.

The auxiliary variables of the scale mixture carry a sparse precision
matrix: the structural prior ``K`` plus diagonal site contributions.
"""

from typing import Tuple

import numpy as np
from numpy.typing import ArrayLike, NDArray
from scipy import sparse


class SparsePrecision:
    """
    Immutable wrapper around a symmetric ``scipy.sparse`` matrix.

    Parameters
    ----------
    matrix : array_like or sparse matrix, shape (d, d)
        Symmetric precision matrix. Dense input is converted to CSC.

    Examples
    --------
    >>> P = SparsePrecision(np.diag([1.0, 2.0]))
    >>> P.add_to_diagonal([0.5, 0.5]).get_diagonal()
    array([1.5, 2.5])
    """

    __slots__ = ('_matrix',)

    def __init__(self, matrix):
        if isinstance(matrix, SparsePrecision):
            matrix = matrix._matrix
        matrix = sparse.csc_matrix(matrix, dtype=float)
        if matrix.shape[0] != matrix.shape[1]:
            raise ValueError(f"Precision matrix must be square, got shape {matrix.shape}")
        self._matrix = matrix

    @property
    def shape(self) -> Tuple[int, int]:
        return self._matrix.shape

    @property
    def matrix(self) -> sparse.csc_matrix:
        """Underlying sparse matrix (do not modify in-place)."""
        return self._matrix

    def get_diagonal(self) -> NDArray:
        """Diagonal entries as a dense vector."""
        return self._matrix.diagonal()

    def add_to_diagonal(self, values: ArrayLike) -> 'SparsePrecision':
        """
        Return a new precision matrix with ``values`` added to the diagonal.

        Parameters
        ----------
        values : array_like, shape (d,)
        """
        values = np.asarray(values, dtype=float)
        if values.shape != (self.shape[0],):
            raise ValueError(
                f"Expected {self.shape[0]} diagonal values, got shape {values.shape}"
            )
        return SparsePrecision(self._matrix + sparse.diags(values, format='csc'))

    def scaled(self, factor: float) -> 'SparsePrecision':
        """Return ``factor`` times this matrix."""
        return SparsePrecision(self._matrix * factor)

    def toarray(self) -> NDArray:
        return self._matrix.toarray()

    def __repr__(self) -> str:
        return f"SparsePrecision(shape={self.shape}, nnz={self._matrix.nnz})"
