"""
Expectation propagation for linear classification with a multivariate
Laplace prior.

The prior on the regression parameters :math:`\\beta` is written as a scale
mixture: :math:`\\beta_i | u_i, v_i \\sim N(0, u_i^2 + v_i^2)` where the
auxiliary variables :math:`u, v` are Gaussian with a shared precision matrix
:math:`K` that couples the features. EP approximates

- one logistic likelihood term per sample,
- one cross term per feature linking :math:`\\beta_i` to its scale,
- one diagonal term per feature on the auxiliary variables,

by Gaussian site terms. Each outer iteration fits all terms at once
(:func:`~laplace_ep.ep.adf.adf_update`), then replaces the current terms
by a damped combination (:func:`~laplace_ep.ep.damping.damped_update`).

References
----------
van Gerven, M. A. J., Cseke, B., de Lange, F. P. and Heskes, T. (2010).
Efficient Bayesian multivariate fMRI analysis using a sparsifying
spatio-temporal prior. NeuroImage 50, 150-161.
"""

import time
from typing import Any, List, Optional, Tuple

import numpy as np
from numpy.typing import ArrayLike
from scipy.linalg import LinAlgError

from laplace_ep.gaussian import CanonicalGaussian
from laplace_ep.params import (
    EPOptions,
    EPResult,
    EPState,
    RoundDiagnostics,
    SiteTerms,
    as_options,
)
from laplace_ep.utils import QuadratureRule, SparsePrecision, cholesky, log_det_chol
from laplace_ep.ep.adf import adf_update
from laplace_ep.ep.cavity import project_all
from laplace_ep.ep.damping import damped_update


class ImproperCavityError(ValueError):
    """The initial cavity distributions are not proper."""


def prior_log_det(K) -> float:
    """
    :math:`\\log|K|` of the prior precision, used in the evidence.

    Raises
    ------
    ValueError
        If ``K`` is not positive definite.
    """
    L, ok = cholesky(SparsePrecision(K).matrix)
    if not ok:
        raise ValueError("Prior precision matrix must be positive definite")
    return log_det_chol(L)


def quadrature_rules(options: EPOptions) -> Tuple[QuadratureRule, QuadratureRule]:
    """Gauss-Hermite and Gauss-Laguerre rules with ``options.nweights`` nodes."""
    return (
        QuadratureRule.gauss_hermite(int(options.nweights)),
        QuadratureRule.gauss_laguerre(int(options.nweights)),
    )


def initialize(
    labels: ArrayLike,
    examples: ArrayLike,
    K,
    options: EPOptions,
) -> EPState:
    """
    Initial EP state: prior plus regularizing site terms and their cavities.

    With ``temperature != 1`` the prior and the initial terms are divided by
    the temperature.

    Raises
    ------
    ImproperCavityError
        If the initial cavity distributions are improper.
    """
    prior = CanonicalGaussian.prior(labels, examples, K)
    terms = SiteTerms.initial(prior.nsamples, prior.nfeatures, options.lambda_)

    if options.temperature != 1:
        prior = prior.scaled(1.0 / options.temperature)
        terms = terms.scaled(1.0 / options.temperature)

    model = prior.update(terms)
    try:
        moments, _ = model.moment_form
    except LinAlgError as exc:
        raise ImproperCavityError("improper initial Gaussian approximation") from exc

    cavity, ok = project_all(moments, terms, options.fraction)
    if not ok:
        raise ImproperCavityError("improper cavity distributions")

    return EPState(model=model, terms=terms, cavity=cavity, stepsize=options.maxstepsize)


def has_converged(state: EPState, options: EPOptions) -> bool:
    """Whether the last evidence change is within ``stepsize * tol``."""
    return bool(abs(state.logp - state.logpold) <= state.stepsize * options.tol)


def ep_round(
    state: EPState,
    options: EPOptions,
    hermite: QuadratureRule,
    laguerre: QuadratureRule,
    log_det_prior: float,
    verbose: int = 0,
) -> Tuple[EPState, RoundDiagnostics]:
    """
    One outer EP iteration.

    Parameters
    ----------
    state : EPState
        Current state, left unchanged.
    options : EPOptions
    hermite, laguerre : QuadratureRule
        Quadrature rules for the likelihood and scale mixture terms.
    log_det_prior : float
        :math:`\\log|K|` of the prior precision.
    verbose : int, optional
        Verbosity level. 0 = silent, 1 = evidence per iteration,
        2 = also rejected proposals. Default is 0.

    Returns
    -------
    new_state : EPState
    diagnostics : RoundDiagnostics
    """
    iteration = state.n_iter + 1
    logpold = state.logp
    oldchange = state.change

    full, logz, crosslogz = adf_update(
        state.cavity, hermite, laguerre, options.fraction, options.temperature
    )
    outcome = damped_update(
        state.model, full, state.terms, state.stepsize, options, verbose=verbose
    )

    if not outcome.accepted:
        new_state = state.evolve(
            stepsize=outcome.stepsize, logpold=logpold, n_iter=iteration, aborted=True
        )
        diagnostics = RoundDiagnostics(
            iteration=iteration,
            logp=state.logp,
            change=0.0,
            stepsize=outcome.stepsize,
            n_rejected_terms=outcome.n_rejected_terms,
            n_rejected_cavity=outcome.n_rejected_cavity,
            aborted=True,
        )
        return new_state, diagnostics

    # EP free energy; logdet/2 is half the log-determinant of the posterior
    # precision and log_det_prior that of the prior on the auxiliary variables
    logp = (
        np.sum(logz) / options.fraction
        + np.sum(crosslogz) / options.fraction
        + outcome.logdet / 2
        + log_det_prior
    )
    logp = float(logp)
    stepsize = outcome.stepsize

    if verbose >= 1:
        print(f"{iteration}: {logp:g} (stepsize: {stepsize:g})")

    # evidence going up and down, possibly cycling
    change = logp - logpold
    oscillating = bool(change * oldchange < 0)
    if oscillating:
        stepsize = stepsize / 2

    new_state = state.evolve(
        model=outcome.model,
        terms=outcome.terms,
        cavity=outcome.cavity,
        stepsize=stepsize,
        logp=logp,
        logpold=logpold,
        change=change,
        n_iter=iteration,
    )
    diagnostics = RoundDiagnostics(
        iteration=iteration,
        logp=logp,
        change=change,
        stepsize=stepsize,
        n_rejected_terms=outcome.n_rejected_terms,
        n_rejected_cavity=outcome.n_rejected_cavity,
        oscillating=oscillating,
    )
    return new_state, diagnostics


def bayesian_linreg_ep(
    labels: ArrayLike,
    examples: ArrayLike,
    K,
    options: Optional[Any] = None,
    *,
    verbose: int = 0,
    **option_kwargs,
) -> EPResult:
    """
    Bayesian linear classification with a multivariate Laplace prior using EP.

    Parameters
    ----------
    labels : array_like, shape (nsamples,)
        Class labels in ``{1, 2}``.
    examples : array_like, shape (nsamples, nfeatures)
        Feature matrix. A bias term must be added explicitly, both to the
        examples and to ``K``.
    K : array_like or sparse matrix, shape (nfeatures, nfeatures)
        Symmetric positive definite prior precision of the auxiliary
        variables.
    options : EPOptions or mapping, optional
        Solver options, see :class:`~laplace_ep.params.EPOptions`.
    verbose : int, optional
        Verbosity level. 0 = silent, 1 = progress per iteration,
        2 = also rejected proposals. Default is 0.
    **option_kwargs
        Option overrides, e.g. ``fraction=0.9``.

    Returns
    -------
    result : EPResult

    Raises
    ------
    ImproperCavityError
        If the initial cavity distributions are improper.
    ValueError
        If inputs or options are invalid.

    Warns
    -----
    StepSizeCollapseWarning
        If no proper update could be found. The last accepted state is
        returned with ``ok=False``.

    Examples
    --------
    >>> rng = np.random.default_rng(0)
    >>> X = np.column_stack([rng.standard_normal((20, 2)), np.ones(20)])
    >>> labels = np.where(X[:, 0] > 0, 1, 2)
    >>> result = bayesian_linreg_ep(labels, X, 0.1 * np.eye(3))
    >>> result.moments.m.shape  # posterior mean of the weights
    (3,)
    """
    options = as_options(options, **option_kwargs)

    if verbose >= 1:
        print("starting EP")
    start = time.perf_counter()

    hermite, laguerre = quadrature_rules(options)
    log_det_prior = prior_log_det(K)
    state = initialize(labels, examples, K, options)

    history: List[float] = []
    diagnostics: List[RoundDiagnostics] = []
    while (
        not has_converged(state, options)
        and state.n_iter < options.niter
        and not state.aborted
    ):
        state, round_diagnostics = ep_round(
            state, options, hermite, laguerre, log_det_prior, verbose=verbose
        )
        diagnostics.append(round_diagnostics)
        if not round_diagnostics.aborted:
            history.append(state.logp)

    comptime = time.perf_counter() - start
    if verbose >= 1:
        print(f"EP finished in {comptime:.4g} seconds")

    moments, _ = state.model.moment_form
    return EPResult(
        model=state.model,
        moments=moments,
        terms=state.terms,
        logp=state.logp,
        comptime=comptime,
        n_iter=state.n_iter,
        converged=(not state.aborted) and has_converged(state, options),
        ok=not state.aborted,
        stepsize=state.stepsize,
        logp_history=tuple(history),
        diagnostics=tuple(diagnostics),
    )
