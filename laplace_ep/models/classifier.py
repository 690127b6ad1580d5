"""
Bayesian logistic classification with a sparsifying multivariate Laplace prior.

Thin sklearn-style wrapper around :func:`laplace_ep.ep.bayesian_linreg_ep`
that takes care of the label encoding, the bias column and the predictive
distribution.
"""

from typing import Any, Optional

import numpy as np
from numpy.typing import ArrayLike, NDArray
from scipy import sparse
from scipy.special import expit

from laplace_ep.ep import bayesian_linreg_ep
from laplace_ep.gaussian import predictive_moments
from laplace_ep.params import EPResult, as_options
from laplace_ep.utils import QuadratureRule


class LaplaceEPClassifier:
    """
    Binary classifier with posterior inference by expectation propagation.

    Parameters
    ----------
    prior_precision : float or array_like or sparse matrix, optional
        Prior precision :math:`K` of the auxiliary variables over the
        features (without bias). A scalar gives ``prior_precision * I``.
        Default is 1.
    fit_intercept : bool, optional
        Whether to append a bias column. Default is True.
    bias_precision : float, optional
        Prior precision of the bias term. Default is 1.
    options : EPOptions or mapping, optional
        Solver options, see :class:`~laplace_ep.params.EPOptions`.

    Attributes
    ----------
    classes_ : ndarray, shape (2,)
        Class labels; ``classes_[0]`` is encoded as label 1.
    coef_ : ndarray, shape (n_features,)
        Posterior mean of the weights.
    coef_var_ : ndarray, shape (n_features,)
        Posterior marginal variances of the weights.
    intercept_ : float
        Posterior mean of the bias (0 without intercept).
    log_evidence_ : float
        Approximate marginal log-likelihood.
    n_iter_ : int
        Number of EP iterations.
    converged_ : bool
        Whether EP converged.
    result_ : EPResult
        Full solver output.

    Examples
    --------
    >>> rng = np.random.default_rng(0)
    >>> X = rng.standard_normal((40, 5))
    >>> y = (X[:, 0] - X[:, 1] > 0).astype(int)
    >>> clf = LaplaceEPClassifier(prior_precision=0.5).fit(X, y)
    >>> clf.predict_proba(X[:3]).shape
    (3, 2)
    """

    def __init__(
        self,
        prior_precision: Any = 1.0,
        fit_intercept: bool = True,
        bias_precision: float = 1.0,
        options: Optional[Any] = None,
    ):
        self.prior_precision = prior_precision
        self.fit_intercept = fit_intercept
        self.bias_precision = bias_precision
        self.options = options
        self.result_: Optional[EPResult] = None

    def _design(self, X: ArrayLike) -> NDArray:
        X = np.asarray(X, dtype=float)
        if X.ndim == 1:
            X = X.reshape(-1, 1)
        if self.fit_intercept:
            X = np.column_stack([X, np.ones(len(X))])
        return X

    def _prior(self, n_features: int):
        K = self.prior_precision
        if np.isscalar(K):
            if K <= 0:
                raise ValueError(f"prior_precision must be positive, got {K}")
            K = sparse.identity(n_features, format='csc') * float(K)
        else:
            K = sparse.csc_matrix(K, dtype=float)
            if K.shape != (n_features, n_features):
                raise ValueError(
                    f"prior_precision must have shape {(n_features, n_features)}, "
                    f"got {K.shape}"
                )
        if self.fit_intercept:
            K = sparse.block_diag([K, [[self.bias_precision]]], format='csc')
        return K

    def _check_fitted(self) -> None:
        if self.result_ is None:
            raise ValueError("LaplaceEPClassifier is not fitted yet. Call fit() first.")

    def fit(self, X: ArrayLike, y: ArrayLike, *, verbose: int = 0) -> 'LaplaceEPClassifier':
        """
        Compute the EP posterior for training data ``(X, y)``.

        Parameters
        ----------
        X : array_like, shape (n_samples, n_features)
        y : array_like, shape (n_samples,)
            Binary targets, any two distinct values.
        verbose : int, optional
            Passed to the solver. Default is 0.

        Returns
        -------
        self : LaplaceEPClassifier
        """
        y = np.asarray(y).ravel()
        classes, encoded = np.unique(y, return_inverse=True)
        if len(classes) != 2:
            raise ValueError(f"Expected exactly two classes, got {len(classes)}")

        n_features = np.asarray(X).reshape(len(y), -1).shape[1]
        design = self._design(X)
        K = self._prior(n_features)

        result = bayesian_linreg_ep(
            encoded + 1, design, K, as_options(self.options), verbose=verbose
        )

        self.classes_ = classes
        self.result_ = result
        m = result.moments.m
        diagC = result.moments.diagC
        if self.fit_intercept:
            self.coef_, self.intercept_ = m[:-1], float(m[-1])
            self.coef_var_ = diagC[:-1]
        else:
            self.coef_, self.intercept_ = m, 0.0
            self.coef_var_ = diagC
        self.log_evidence_ = result.logp
        self.n_iter_ = result.n_iter
        self.converged_ = result.converged
        return self

    def decision_function(self, X: ArrayLike) -> NDArray:
        """Posterior mean of :math:`x^T \\beta`; positive favours ``classes_[0]``."""
        self._check_fitted()
        mean, _ = predictive_moments(self.result_.model, self._design(X))
        return mean

    def predict_proba(self, X: ArrayLike, nweights: int = 50) -> NDArray:
        """
        Predictive class probabilities.

        Integrates the logistic function over the Gaussian predictive
        distribution of :math:`x^T \\beta` with Gauss-Hermite quadrature.

        Returns
        -------
        proba : ndarray, shape (n_samples, 2)
            Columns ordered as ``classes_``.
        """
        self._check_fitted()
        mean, var = predictive_moments(self.result_.model, self._design(X))
        hermite = QuadratureRule.gauss_hermite(nweights)
        x = mean[:, None] + np.sqrt(np.maximum(var, 0.0))[:, None] * hermite.nodes[None, :]
        p = expit(x) @ hermite.weights
        return np.column_stack([p, 1.0 - p])

    def predict(self, X: ArrayLike) -> NDArray:
        """Most probable class for every row of ``X``."""
        proba = self.predict_proba(X)
        return self.classes_[np.where(proba[:, 0] >= 0.5, 0, 1)]
