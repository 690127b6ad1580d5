"""
Canonical Gaussian approximation of the posterior.

The joint approximation over regression parameters :math:`\\beta` and the
auxiliary scale variables has a block diagonal precision matrix

.. math::
    \\begin{pmatrix} K_\\beta & \\\\ & K_{aux} \\end{pmatrix},
    \\qquad K_\\beta = A^T \\mathrm{diag}(\\hat K) A + \\mathrm{diag}(K_d)

where :math:`A` is the sign-flipped feature matrix, :math:`\\hat K` collects
one precision per sample and :math:`K_d` one precision per feature. The
canonical mean of :math:`\\beta` is :math:`h`. The auxiliary precision
:math:`K_{aux}` is the structural prior :math:`K` plus diagonal site terms.

Internal storage
----------------
Only the canonical fields ``A``, ``hatK``, ``diagK``, ``h`` and ``auxK`` are
stored. The moment form (mean, marginal and projected variances) is a cached
property, computed on demand and invalidated when the canonical fields change.

Moment conversion takes one of two routes:

- ``nsamples > nfeatures``: form :math:`K_\\beta` and invert it directly.
- ``nfeatures >= nsamples``: apply the Woodbury identity so that only an
  ``nsamples x nsamples`` matrix is inverted.
"""

from functools import cached_property
from typing import Tuple

import numpy as np
from numpy.typing import ArrayLike, NDArray
from scipy.linalg import LinAlgError, solve_triangular

from laplace_ep.params import GaussianMoments, SiteTerms
from laplace_ep.utils import SparsePrecision, cholesky, invert_chol


def labels_to_signs(labels: ArrayLike) -> NDArray:
    """Map class labels ``{1, 2}`` to signs ``{+1, -1}``."""
    labels = np.asarray(labels).ravel()
    if not np.all(np.isin(labels, (1, 2))):
        raise ValueError("Labels must take values in {1, 2}")
    return 3.0 - 2.0 * labels


class CanonicalGaussian:
    """
    Global Gaussian approximation in canonical form.

    Parameters
    ----------
    A : ndarray, shape (nsamples, nfeatures)
        Feature matrix with every row multiplied by its label sign.
    hatK : ndarray, shape (nsamples,)
        Per-sample diagonal precision contribution.
    diagK : ndarray, shape (nfeatures,)
        Per-feature diagonal precision contribution.
    h : ndarray, shape (nfeatures,)
        Canonical mean of the regression parameters.
    auxK : SparsePrecision or array_like, shape (nfeatures, nfeatures)
        Precision matrix of the auxiliary variables.

    Examples
    --------
    >>> model = CanonicalGaussian.prior([1, 2], np.eye(2), np.eye(2))
    >>> model = model.update(SiteTerms.initial(2, 2, 0.001))
    >>> moments, logdet = model.moment_form
    >>> moments.m.shape
    (2,)
    """

    _cached_attrs: Tuple[str, ...] = ('moment_form',)

    def __init__(self, A, hatK, diagK, h, auxK):
        A = np.asarray(A, dtype=float)
        if A.ndim != 2:
            raise ValueError(f"Feature matrix must be 2-dimensional, got shape {A.shape}")
        self._A = A
        self._set_canonical(hatK=hatK, diagK=diagK, h=h, auxK=auxK)

    @classmethod
    def prior(cls, labels: ArrayLike, examples: ArrayLike, K) -> 'CanonicalGaussian':
        """
        Prior model without any site contribution.

        Parameters
        ----------
        labels : array_like, shape (nsamples,)
            Class labels in ``{1, 2}``.
        examples : array_like, shape (nsamples, nfeatures)
            Feature matrix, including a bias column if desired.
        K : array_like or sparse matrix, shape (nfeatures, nfeatures)
            Prior precision matrix of the auxiliary variables.
        """
        examples = np.asarray(examples, dtype=float)
        if examples.ndim != 2:
            raise ValueError(f"examples must be 2-dimensional, got shape {examples.shape}")
        nsamples, nfeatures = examples.shape
        signs = labels_to_signs(labels)
        if len(signs) != nsamples:
            raise ValueError(f"Expected {nsamples} labels, got {len(signs)}")
        K = SparsePrecision(K)
        if K.shape != (nfeatures, nfeatures):
            raise ValueError(
                f"Prior precision must have shape {(nfeatures, nfeatures)}, got {K.shape}"
            )
        return cls(
            A=examples * signs[:, None],
            hatK=np.zeros(nsamples),
            diagK=np.zeros(nfeatures),
            h=np.zeros(nfeatures),
            auxK=K,
        )

    # ================================================================
    # Internal state management
    # ================================================================

    def _set_canonical(self, *, hatK, diagK, h, auxK) -> None:
        nsamples, nfeatures = self._A.shape
        hatK = np.asarray(hatK, dtype=float)
        diagK = np.asarray(diagK, dtype=float)
        h = np.asarray(h, dtype=float)
        if hatK.shape != (nsamples,):
            raise ValueError(f"hatK must have shape {(nsamples,)}, got {hatK.shape}")
        if diagK.shape != (nfeatures,) or h.shape != (nfeatures,):
            raise ValueError(f"diagK and h must have shape {(nfeatures,)}")
        auxK = SparsePrecision(auxK)
        if auxK.shape != (nfeatures, nfeatures):
            raise ValueError(
                f"auxK must have shape {(nfeatures, nfeatures)}, got {auxK.shape}"
            )
        self._hatK = hatK
        self._diagK = diagK
        self._h = h
        self._auxK = auxK
        self._invalidate_cache()

    def _invalidate_cache(self) -> None:
        """Drop every derived quantity computed from the canonical fields."""
        for attr in self._cached_attrs:
            self.__dict__.pop(attr, None)

    @property
    def A(self) -> NDArray:
        return self._A

    @property
    def hatK(self) -> NDArray:
        return self._hatK

    @property
    def diagK(self) -> NDArray:
        return self._diagK

    @property
    def h(self) -> NDArray:
        return self._h

    @property
    def auxK(self) -> SparsePrecision:
        return self._auxK

    @property
    def nsamples(self) -> int:
        return self._A.shape[0]

    @property
    def nfeatures(self) -> int:
        return self._A.shape[1]

    def weight_precision(self) -> NDArray:
        """Full precision matrix :math:`A^T \\mathrm{diag}(\\hat K) A + \\mathrm{diag}(K_d)`."""
        A = self._A
        return A.T @ (A * self._hatK[:, None]) + np.diag(self._diagK)

    # ================================================================
    # Term bookkeeping
    # ================================================================

    def update(self, terms: SiteTerms, const: float = 1.0) -> 'CanonicalGaussian':
        """
        Add ``const`` times the site terms to the canonical parameters.

        Use ``const=-1`` to take terms out again. Returns a new model,
        ``self`` is left unchanged.
        """
        return CanonicalGaussian(
            A=self._A,
            hatK=self._hatK + const * terms.hatK,
            diagK=self._diagK + const * terms.diagK,
            h=self._h + const * (self._A.T @ terms.hath) + const * terms.h,
            auxK=self._auxK.add_to_diagonal(const * np.asarray(terms.auxK)),
        )

    def scaled(self, factor: float) -> 'CanonicalGaussian':
        """Multiply every canonical parameter by ``factor``."""
        return CanonicalGaussian(
            A=self._A,
            hatK=factor * self._hatK,
            diagK=factor * self._diagK,
            h=factor * self._h,
            auxK=self._auxK.scaled(factor),
        )

    # ================================================================
    # Derived quantities
    # ================================================================

    @cached_property
    def moment_form(self) -> Tuple[GaussianMoments, float]:
        """
        Moments and log-determinant term (cached).

        Raises
        ------
        LinAlgError
            If a precision matrix is not positive definite.
        """
        return to_moments(self)

    def __repr__(self) -> str:
        return f"CanonicalGaussian(nsamples={self.nsamples}, nfeatures={self.nfeatures})"


# ============================================================
# Moment conversion
# ============================================================

def _weight_moments_direct(model: CanonicalGaussian):
    A = model.A
    C, logdet = invert_chol(model.weight_precision())
    m = C @ model.h
    hatB = np.einsum('ij,jk,ik->i', A, C, A)
    diagC = np.diag(C).copy()
    hatn = A @ m
    return m, hatn, hatB, diagC, logdet


def _woodbury_parts(model: CanonicalGaussian):
    A = model.A
    scaledA = A / model.diagK[None, :]
    W = A @ scaledA.T
    W = (W + W.T) / 2
    Q, logdet = invert_chol(np.diag(1.0 / model.hatK) + W)
    return scaledA, W, Q, logdet


def _weight_moments_woodbury(model: CanonicalGaussian):
    """
    Woodbury route: :math:`C = D^{-1} - S^T (\\hat K^{-1} + A D^{-1} A^T)^{-1} S`
    with :math:`D = \\mathrm{diag}(K_d)` and :math:`S = A D^{-1}`.
    """
    A, diagK, hatK = model.A, model.diagK, model.hatK
    scaledA, W, Q, logdet = _woodbury_parts(model)

    hatB = np.diag(W) - np.sum((W @ Q) * W, axis=1)
    m = model.h / diagK - scaledA.T @ (Q @ (scaledA @ model.h))
    hatn = A @ m
    diagC = 1.0 / diagK - np.sum(scaledA * (Q @ scaledA), axis=0)

    logdet = logdet + np.sum(np.log(diagK)) + np.sum(np.log(hatK))
    # quadratic correction term of the evidence
    qterm = np.sum(m * diagK * m) + np.sum(hatn * hatK * hatn)
    logdet = -logdet + qterm
    return m, hatn, hatB, diagC, logdet


def to_moments(model: CanonicalGaussian) -> Tuple[GaussianMoments, float]:
    """
    Convert canonical parameters to moments.

    Parameters
    ----------
    model : CanonicalGaussian

    Returns
    -------
    moments : GaussianMoments
        Mean, projected mean and variances, marginal variances of the
        regression parameters and of the auxiliary variables.
    logdet : float
        Log-determinant term of the evidence: the weight part minus twice
        :math:`\\log|K_{aux}|`.

    Raises
    ------
    LinAlgError
        If the weight or auxiliary precision is not positive definite.

    Notes
    -----
    In the direct route the weight part is :math:`\\log|K_\\beta|`. In the
    Woodbury route it is :math:`-\\log|K_\\beta|` plus the quadratic term
    :math:`m^T \\mathrm{diag}(K_d) m + \\hat n^T \\mathrm{diag}(\\hat K) \\hat n`.
    Both are kept as they enter the evidence estimate, which is an
    approximation in either case.
    """
    if model.nsamples > model.nfeatures:
        m, hatn, hatB, diagC, logdet1 = _weight_moments_direct(model)
    else:
        m, hatn, hatB, diagC, logdet1 = _weight_moments_woodbury(model)

    # the dominant cost when nsamples << nfeatures and auxK has off-diagonal structure
    auxC, logdet2 = invert_chol(model.auxK.matrix)

    moments = GaussianMoments(
        m=m, hatn=hatn, hatB=hatB, diagC=diagC, auxC=np.diag(auxC).copy(),
    )
    return moments, logdet1 - 2.0 * logdet2


def predictive_moments(model: CanonicalGaussian, X: ArrayLike) -> Tuple[NDArray, NDArray]:
    """
    Mean and variance of :math:`x^T \\beta` for new feature rows.

    Parameters
    ----------
    model : CanonicalGaussian
    X : array_like, shape (n, nfeatures)

    Returns
    -------
    mean : ndarray, shape (n,)
    var : ndarray, shape (n,)
        :math:`x^T C x` for every row, computed without forming ``C`` in the
        Woodbury regime.
    """
    X = np.atleast_2d(np.asarray(X, dtype=float))
    if X.shape[1] != model.nfeatures:
        raise ValueError(f"Expected {model.nfeatures} features, got {X.shape[1]}")
    moments, _ = model.moment_form
    mean = X @ moments.m

    if model.nsamples > model.nfeatures:
        L, ok = cholesky(model.weight_precision())
        if not ok:
            raise LinAlgError("Weight precision is not positive definite")
        V = solve_triangular(L, X.T, lower=True, check_finite=False)
        var = np.sum(V ** 2, axis=0)
    else:
        scaledA, _, Q, _ = _woodbury_parts(model)
        B = scaledA @ X.T
        var = np.sum(X * X / model.diagK[None, :], axis=1) - np.sum(B * (Q @ B), axis=0)
    return mean, var
