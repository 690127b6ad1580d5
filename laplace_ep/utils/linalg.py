"""Linear algebra utilities for laplace_ep.

Provides the Cholesky primitive with an explicit positive definiteness flag,
plus inversion and log-determinant helpers built on it.
"""

from typing import Optional, Tuple

import numpy as np
from numpy.typing import ArrayLike, NDArray
from scipy.linalg import LinAlgError, cho_solve
from scipy.linalg import cholesky as _scipy_cholesky


def _dense(A) -> NDArray:
    if hasattr(A, 'toarray'):
        return A.toarray()
    return np.asarray(A, dtype=float)


def cholesky(A: ArrayLike) -> Tuple[Optional[NDArray], bool]:
    r"""
    Lower Cholesky factor together with a positive definiteness flag.

    No regularization is applied: a matrix that is not positive definite
    is reported through the flag, and the caller decides what to do.

    Parameters
    ----------
    A : array_like or sparse matrix, shape (d, d)
        Symmetric matrix. Only the lower triangle is read. Sparse matrices
        are densified, scipy has no sparse Cholesky.

    Returns
    -------
    L : ndarray or None
        Lower factor with :math:`L L^T = A`, or ``None`` on failure.
    ok : bool
        Whether ``A`` is (numerically) positive definite.

    Examples
    --------
    >>> L, ok = cholesky(np.array([[4.0, 2.0], [2.0, 3.0]]))
    >>> ok
    True
    >>> cholesky(np.array([[1.0, 2.0], [2.0, 1.0]]))[1]
    False
    """
    A = _dense(A)
    try:
        L = _scipy_cholesky(A, lower=True, check_finite=False)
    except LinAlgError:
        return None, False
    if not np.all(np.isfinite(L)):
        return None, False
    return L, True


def log_det_chol(L: NDArray) -> float:
    """Log-determinant :math:`2 \\sum_i \\log L_{ii}` from a Cholesky factor."""
    return 2.0 * float(np.sum(np.log(np.diag(L))))


def invert_chol(A: ArrayLike) -> Tuple[NDArray, float]:
    """
    Invert a positive definite matrix through its Cholesky factor.

    Parameters
    ----------
    A : array_like or sparse matrix, shape (d, d)

    Returns
    -------
    inv : ndarray, shape (d, d)
        Inverse of ``A``.
    logdet : float
        :math:`\\log|A|`.

    Raises
    ------
    LinAlgError
        If ``A`` is not positive definite.
    """
    L, ok = cholesky(A)
    if not ok:
        raise LinAlgError("Matrix is not positive definite")
    inv = cho_solve((L, True), np.eye(L.shape[0]), check_finite=False)
    return inv, log_det_chol(L)
