"""Expectation propagation: cavities, ADF updates, damping and the outer loop."""

from .adf import adf_update, compute_termproxy, log_logistic
from .cavity import project_all, rank_one_update
from .damping import (
    DampedOutcome,
    StepSizeCollapseWarning,
    combine_terms,
    damped_update,
    try_project,
    try_update,
)
from .driver import (
    ImproperCavityError,
    bayesian_linreg_ep,
    ep_round,
    has_converged,
    initialize,
    prior_log_det,
    quadrature_rules,
)

__all__ = [
    "adf_update", "compute_termproxy", "log_logistic",
    "project_all", "rank_one_update",
    "DampedOutcome", "StepSizeCollapseWarning", "combine_terms",
    "damped_update", "try_project", "try_update",
    "ImproperCavityError", "bayesian_linreg_ep", "ep_round", "has_converged",
    "initialize", "prior_log_det", "quadrature_rules",
]
