"""
Assumed density filtering updates of all site terms.

For every site the tilted distribution, cavity times (a power of) the exact
factor, is projected onto a Gaussian by matching the first two moments. The
moments are computed by quadrature:

- **Likelihood terms**: the logistic likelihood :math:`\\sigma(a_k^T\\beta)`
  of the projected parameter :math:`x = a_k^T\\beta` under a normal cavity,
  with Gauss-Hermite nodes shifted and scaled to the cavity.
- **Cross terms**: the scale mixture :math:`\\beta_i | U \\sim N(0, U)` with an
  exponential cavity on :math:`U`. Given :math:`U` all moments of
  :math:`\\beta_i` are analytic; the integral over :math:`U` uses
  Gauss-Laguerre nodes scaled by :math:`2 C_{aux}`.

The change from cavity to tilted moments is translated back into canonical
site parameters by :func:`compute_termproxy`.
"""

from typing import Tuple

import numpy as np
from numpy.typing import ArrayLike, NDArray
from scipy.special import log_expit

from laplace_ep.params import CavityMoments, SiteTerms
from laplace_ep.utils import QuadratureRule


def log_logistic(x: ArrayLike) -> NDArray:
    """
    :math:`-\\log(1 + e^{-x})`, without overflow for large :math:`|x|`.

    Examples
    --------
    >>> bool(np.all(np.isfinite(log_logistic(np.array([-1000.0, 0.0, 1000.0])))))
    True
    """
    return log_expit(x)


def compute_termproxy(
    newC: NDArray,
    newm: NDArray,
    oldC: NDArray,
    oldm: NDArray,
    fraction: float = 1.0,
) -> Tuple[NDArray, NDArray, NDArray]:
    """
    Site term implied by a change of moments from ``(oldC, oldm)`` to ``(newC, newm)``.

    Parameters
    ----------
    newC, newm : ndarray
        Moments of the tilted distribution.
    oldC, oldm : ndarray
        Moments of the cavity distribution.
    fraction : float, optional
        Power of the fractional update. Default is 1.

    Returns
    -------
    K : ndarray
        Site precision :math:`(1/C' - 1/C) / f`.
    h : ndarray
        Site canonical mean :math:`(m'/C' - m/C) / f`.
    logz : ndarray
        Log normalizer
        :math:`-\\log(C'/C)/2 + m^2/(2C) - m'^2/(2C')`.
    """
    K = (1.0 / newC - 1.0 / oldC) / fraction
    h = (newm / newC - oldm / oldC) / fraction
    logz = -np.log(newC / oldC) / 2 + oldm ** 2 / oldC / 2 - newm ** 2 / newC / 2
    return K, h, logz


def _normalize_log_weights(g: NDArray) -> Tuple[NDArray, NDArray, NDArray]:
    """Row-wise responsibilities of log weights, with the log normalizer split off."""
    maxg = np.max(g, axis=1)
    expg = np.exp(g - maxg[:, None])
    denominator = np.sum(expg, axis=1)
    return expg / denominator[:, None], maxg, denominator


def _adf_likelihood(
    cavity: CavityMoments,
    hermite: QuadratureRule,
    fraction: float,
    temperature: float,
):
    oldm = cavity.hatn
    oldC = cavity.hatB

    # shift and scale the nodes to the cavity mean and variance
    x = oldm[:, None] + np.sqrt(oldC)[:, None] * hermite.nodes[None, :]

    g = fraction * log_logistic(x) / temperature + np.log(hermite.weights)[None, :]
    neww, maxg, denominator = _normalize_log_weights(g)

    Ex = np.sum(x * neww, axis=1)
    Exx = np.sum(x ** 2 * neww, axis=1)
    newm = Ex
    newC = Exx - Ex ** 2

    hatK, hath, logzextra = compute_termproxy(newC, newm, oldC, oldm, fraction)
    logz = maxg + np.log(denominator) + logzextra
    return hatK, hath, logz


def _adf_scale_mixture(
    cavity: CavityMoments,
    laguerre: QuadratureRule,
    fraction: float,
):
    oldm = cavity.m
    oldC = cavity.diagC
    oldlambda = cavity.auxC
    nfeatures = len(oldm)

    # exponential cavity on U with mean 2 * auxC
    U = 2.0 * oldlambda[:, None] * laguerre.nodes[None, :]
    mm = oldm[:, None]
    CC = oldC[:, None]

    # log partition of x given U, turned into weights over U
    g = -mm ** 2 / (U + CC) / 2 - np.log(U + CC) / 2 - np.log(2 * np.pi) / 2
    g = fraction * g + np.log(laguerre.weights)[None, :]
    neww, maxg, denominator = _normalize_log_weights(g)

    ExgU = mm * U / (U + CC)
    Ex = np.sum(ExgU * neww, axis=1)
    ExxgU = ExgU ** 2 + CC * U / (U + CC)
    Exx = np.sum(ExxgU * neww, axis=1)
    EU = np.sum(U * neww, axis=1)

    newm = Ex
    newC = Exx - Ex ** 2
    newlambda = EU / 2

    diagK, h, logzextra1 = compute_termproxy(newC, newm, oldC, oldm, fraction)
    zeros = np.zeros(nfeatures)
    auxK, _, logzextra2 = compute_termproxy(newlambda, zeros, oldlambda, zeros, fraction)

    crosslogz = maxg + np.log(denominator) + logzextra1 + logzextra2
    return diagK, h, auxK, crosslogz


def adf_update(
    cavity: CavityMoments,
    hermite: QuadratureRule,
    laguerre: QuadratureRule,
    fraction: float = 1.0,
    temperature: float = 1.0,
) -> Tuple[SiteTerms, NDArray, NDArray]:
    """
    Full (undamped) EP update of every site term from the cavities.

    Parameters
    ----------
    cavity : CavityMoments
        Cavity moments of all sites.
    hermite : QuadratureRule
        Gauss-Hermite rule for the likelihood terms.
    laguerre : QuadratureRule
        Gauss-Laguerre rule for the scale mixture terms.
    fraction : float, optional
        Power of fractional EP. Default is 1.
    temperature : float, optional
        Annealing temperature, divides the log likelihood. Default is 1.

    Returns
    -------
    terms : SiteTerms
        Fitted site terms.
    logz : ndarray, shape (nsamples,)
        Log partition contributions of the likelihood terms.
    crosslogz : ndarray, shape (nfeatures,)
        Log partition contributions of the cross and auxiliary terms.
    """
    hatK, hath, logz = _adf_likelihood(cavity, hermite, fraction, temperature)
    diagK, h, auxK, crosslogz = _adf_scale_mixture(cavity, laguerre, fraction)
    terms = SiteTerms(hatK=hatK, hath=hath, diagK=diagK, h=h, auxK=auxK)
    return terms, logz, crosslogz
