"""
Cavity distributions by rank-one (Sherman-Morrison) updates.

Adding canonical parameters :math:`(K, h)` to a univariate Gaussian marginal
with variance :math:`C` and mean :math:`m` gives

.. math::
    C' = \\frac{C}{1 + K C}, \\qquad m' = \\frac{m + h C}{1 + K C}

so that :math:`1/C' = 1/C + K`. Cavities subtract a fraction of each site
term, i.e. use :math:`(-f K, -f h)`.
"""

from typing import Optional, Tuple

import numpy as np
from numpy.typing import NDArray

from laplace_ep.params import CavityMoments, GaussianMoments, SiteTerms


def rank_one_update(
    oldC: NDArray,
    oldm: Optional[NDArray],
    K: NDArray,
    h: Optional[NDArray] = None,
) -> Tuple[NDArray, Optional[NDArray]]:
    """
    Change of marginal moments when ``(K, h)`` is added to the canonical form.

    Parameters
    ----------
    oldC : ndarray
        Current marginal variances.
    oldm : ndarray or None
        Current marginal means, ``None`` if no mean is tracked.
    K : ndarray
        Precision to add.
    h : ndarray, optional
        Canonical mean to add. Required when ``oldm`` is given.

    Returns
    -------
    newC : ndarray
    newm : ndarray or None
    """
    oneminusdelta = 1.0 / (1.0 + K * oldC)
    newC = oneminusdelta * oldC
    if oldm is None:
        return newC, None
    return newC, oneminusdelta * (oldm + h * oldC)


def project_all(
    moments: GaussianMoments,
    terms: SiteTerms,
    fraction: float = 1.0,
) -> Tuple[CavityMoments, bool]:
    """
    Cavity moments for every site, removing ``fraction`` of each term.

    Parameters
    ----------
    moments : GaussianMoments
        Moments of the current global approximation.
    terms : SiteTerms
        Current site terms.
    fraction : float, optional
        Fraction of the terms to remove. Default is 1.

    Returns
    -------
    cavity : CavityMoments
    ok : bool
        True iff every cavity variance is strictly positive. Improper
        cavities are reported here, never raised.
    """
    # (1) projected regression parameters, one per sample
    hatB, hatn = rank_one_update(
        moments.hatB, moments.hatn, -fraction * terms.hatK, -fraction * terms.hath
    )
    # (2) regression parameters in the cross terms, one per feature
    diagC, m = rank_one_update(
        moments.diagC, moments.m, -fraction * terms.diagK, -fraction * terms.h
    )
    # (3) auxiliary variables, zero mean
    auxC, _ = rank_one_update(moments.auxC, None, -fraction * terms.auxK)

    cavity = CavityMoments(m=m, hatn=hatn, hatB=hatB, diagC=diagC, auxC=auxC)
    ok = bool(np.all(hatB > 0) and np.all(diagC > 0) and np.all(auxC > 0))
    return cavity, ok
