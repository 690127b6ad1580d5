"""
laplace_ep: Bayesian linear classification with a multivariate Laplace prior.

Approximates the posterior of a logistic regression model whose weights
follow a sparsifying multivariate Laplace prior, written as a Gaussian scale
mixture, by expectation propagation.

Key features:
- Fractional (power) EP with adaptive damping and oscillation detection
- Annealing temperature for MAP-like solutions
- Direct or Woodbury moment conversion depending on the problem shape
- Estimate of the marginal log-likelihood
- Frozen dataclass containers for options, site terms and results (laplace_ep.params)
"""

from laplace_ep.params import (
    EPOptions,
    SiteTerms,
    GaussianMoments,
    CavityMoments,
    RoundDiagnostics,
    EPState,
    EPResult,
)
from laplace_ep.gaussian import CanonicalGaussian, to_moments, predictive_moments
from laplace_ep.ep import (
    bayesian_linreg_ep,
    ImproperCavityError,
    StepSizeCollapseWarning,
)
from laplace_ep.models import LaplaceEPClassifier

__all__ = [
    # Records
    "EPOptions",
    "SiteTerms",
    "GaussianMoments",
    "CavityMoments",
    "RoundDiagnostics",
    "EPState",
    "EPResult",
    # Model
    "CanonicalGaussian",
    "to_moments",
    "predictive_moments",
    # Inference
    "bayesian_linreg_ep",
    "ImproperCavityError",
    "StepSizeCollapseWarning",
    "LaplaceEPClassifier",
]
