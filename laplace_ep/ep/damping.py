"""
Damped replacement of site terms with step size control.

Every outer iteration proposes new site terms as a convex combination of the
freshly fitted ("full") terms and the current ones. A proposal is accepted
only if the resulting Gaussian and all its cavities are proper; otherwise the
step size is halved and a new proposal is tried. After an accepted proposal
the step size grows again, up to ``maxstepsize``.
"""

import warnings
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
from scipy.linalg import LinAlgError

from laplace_ep.gaussian import CanonicalGaussian
from laplace_ep.params import (
    TERM_FIELDS,
    CavityMoments,
    EPOptions,
    GaussianMoments,
    SiteTerms,
)
from laplace_ep.utils import cholesky
from laplace_ep.ep.cavity import project_all

STEPSIZE_GROWTH = 1.9
STEPSIZE_FLOOR = 1e-10


class StepSizeCollapseWarning(RuntimeWarning):
    """No proper update was found before the step size underflowed."""


def combine_terms(full: SiteTerms, current: SiteTerms, stepsize: float) -> SiteTerms:
    """
    Weighted combination ``stepsize * full + (1 - stepsize) * current``.

    Applied field by field over ``TERM_FIELDS``.
    """
    return SiteTerms(**{
        name: stepsize * getattr(full, name) + (1 - stepsize) * getattr(current, name)
        for name in TERM_FIELDS
    })


def try_update(
    model: CanonicalGaussian,
    full: SiteTerms,
    current: SiteTerms,
    stepsize: float = 1.0,
) -> Tuple[CanonicalGaussian, SiteTerms, bool]:
    """
    Replace the current terms in ``model`` by a damped version of ``full``.

    Returns
    -------
    candidate : CanonicalGaussian
        Model with the current terms taken out and the combined terms added.
    newterms : SiteTerms
        The combined terms.
    ok : bool
        Whether the auxiliary precision is positive definite and every
        ``hatK`` and ``diagK`` entry is positive.
    """
    newterms = combine_terms(full, current, stepsize)
    candidate = model.update(current, -1.0).update(newterms, 1.0)

    # the Cholesky is redone in the moment conversion once this passes
    _, chol_ok = cholesky(candidate.auxK.matrix)
    ok = chol_ok and bool(np.all(candidate.hatK > 0) and np.all(candidate.diagK > 0))
    return candidate, newterms, ok


def try_project(
    model: CanonicalGaussian,
    terms: SiteTerms,
    fraction: float = 1.0,
) -> Tuple[Optional[GaussianMoments], Optional[CavityMoments], float, bool]:
    """
    Moment form of ``model`` and the cavities of all its terms.

    Returns
    -------
    moments : GaussianMoments or None
    cavity : CavityMoments or None
    logdet : float
    ok : bool
        False if a factorization failed or a cavity is improper.
    """
    try:
        moments, logdet = model.moment_form
    except LinAlgError:
        return None, None, np.nan, False
    cavity, ok = project_all(moments, terms, fraction)
    return moments, cavity, logdet, ok


@dataclass(frozen=True, slots=True)
class DampedOutcome:
    """
    Result of :func:`damped_update`.

    When ``accepted`` is False the step size collapsed and the model fields
    are ``None``; the caller keeps its last accepted state.
    """
    accepted: bool
    stepsize: float
    model: Optional[CanonicalGaussian] = None
    terms: Optional[SiteTerms] = None
    moments: Optional[GaussianMoments] = None
    cavity: Optional[CavityMoments] = None
    logdet: float = np.nan
    n_rejected_terms: int = 0
    n_rejected_cavity: int = 0


def damped_update(
    model: CanonicalGaussian,
    full: SiteTerms,
    current: SiteTerms,
    stepsize: float,
    options: EPOptions,
    verbose: int = 0,
) -> DampedOutcome:
    """
    Propose, validate and accept or back off until a proper update is found.

    Parameters
    ----------
    model : CanonicalGaussian
        Current model, including ``current``.
    full : SiteTerms
        Fitted terms of a full EP step.
    current : SiteTerms
        Currently accepted terms.
    stepsize : float
        Step size of the first proposal.
    options : EPOptions
        Provides ``maxstepsize`` and ``fraction``.
    verbose : int, optional
        Print every rejected proposal when ``verbose >= 2``.

    Returns
    -------
    outcome : DampedOutcome
        On acceptance the step size is grown to
        ``min(maxstepsize, 1.9 * stepsize)``.

    Warns
    -----
    StepSizeCollapseWarning
        If the step size drops below ``1e-10`` without a proper update.
    """
    n_rejected_terms = 0
    n_rejected_cavity = 0

    while True:
        candidate, newterms, ok = try_update(model, full, current, stepsize)
        if ok:
            moments, cavity, logdet, ok = try_project(candidate, newterms, options.fraction)
            if ok:
                return DampedOutcome(
                    accepted=True,
                    stepsize=min(options.maxstepsize, stepsize * STEPSIZE_GROWTH),
                    model=candidate,
                    terms=newterms,
                    moments=moments,
                    cavity=cavity,
                    logdet=logdet,
                    n_rejected_terms=n_rejected_terms,
                    n_rejected_cavity=n_rejected_cavity,
                )
            n_rejected_cavity += 1
            reason = "improper cavity covariance"
        else:
            n_rejected_terms += 1
            reason = "improper full covariance"

        stepsize = stepsize / 2
        if verbose >= 2:
            print(f"  {reason}: lowering stepsize to {stepsize:g}")

        if stepsize < STEPSIZE_FLOOR:
            warnings.warn(
                "Cannot find an update that leads to proper cavity approximations",
                StepSizeCollapseWarning,
            )
            return DampedOutcome(
                accepted=False,
                stepsize=stepsize,
                n_rejected_terms=n_rejected_terms,
                n_rejected_cavity=n_rejected_cavity,
            )
