"""
Frozen dataclass containers for options, site terms and moment records.

Every record is a frozen dataclass with ``slots=True``. This provides:

- **IDE autocompletion**: ``terms.hatK`` instead of ``terms['hatK']``
- **Immutability**: an accepted EP state cannot be mutated by later rounds
- **Type safety**: Type hints for all fields
- **Dict conversion**: ``dataclasses.asdict(opts)`` when needed

Examples
--------
>>> from laplace_ep.params import EPOptions
>>> opts = EPOptions(fraction=0.9)
>>> opts.fraction
0.9
>>> opts.fraction = 1.0  # Raises FrozenInstanceError

>>> EPOptions.from_dict({'lambda': 0.01}).lambda_
0.01

Notes
-----
The ``frozen=True`` flag prevents attribute reassignment, but numpy arrays
are internally mutable (``terms.hatK[0] = 999`` still works at the Python level).
Nothing in the package modifies returned arrays in-place.
"""

import numbers
from dataclasses import dataclass, fields, replace
from typing import Any, Mapping, Optional, Tuple

import numpy as np
from numpy.typing import NDArray


class _ParamsBase:
    """Mixin providing dict-style access on frozen dataclass records.

    Allows both ``opts.tol`` and ``opts['tol']`` access styles,
    plus ``items()``, ``keys()``, ``values()`` for iteration.
    """

    __slots__ = ()

    def __getitem__(self, key: str):
        try:
            return getattr(self, key)
        except AttributeError:
            raise KeyError(key)

    def __contains__(self, key: str) -> bool:
        return hasattr(self, key)

    def keys(self):
        """Yield field names."""
        return (f.name for f in fields(self))

    def values(self):
        """Yield field values."""
        return (getattr(self, f.name) for f in fields(self))

    def items(self):
        """Yield ``(name, value)`` pairs."""
        return ((f.name, getattr(self, f.name)) for f in fields(self))


# ============================================================================
# Configuration
# ============================================================================

# ``lambda`` is a reserved word, the field is stored as ``lambda_``
_OPTION_ALIASES = {'lambda': 'lambda_'}


def _is_integer(x) -> bool:
    """Integral numbers and finite floats with an integral value."""
    if isinstance(x, numbers.Integral):
        return True
    return isinstance(x, numbers.Real) and bool(np.isfinite(x)) and float(x).is_integer()


@dataclass(frozen=True, slots=True)
class EPOptions(_ParamsBase):
    """
    Options of the expectation propagation solver.

    Attributes
    ----------
    maxstepsize : float
        Upper bound on the damping step size. Default is 1.
    fraction : float
        Power of fractional EP, :math:`0 < f \\leq 1`. Default is 0.99.
    niter : int
        Maximum number of outer iterations. Default is 100.
    tol : float
        Convergence threshold on the change of the evidence, scaled by the
        current step size. Default is 1e-5.
    nweights : int
        Number of Gauss-Hermite and Gauss-Laguerre nodes. Default is 50.
    temperature : float
        Annealing divisor on all canonical parameters. Values below one
        sharpen the approximation towards the MAP solution. Default is 1.
    lambda_ : float
        Scale of the initial feature precision site terms
        (``diagK = 1 / lambda / 10``). Given as ``lambda`` in
        :meth:`from_dict`. Default is 0.001.
    """
    maxstepsize: float = 1.0
    fraction: float = 0.99
    niter: int = 100
    tol: float = 1e-5
    nweights: int = 50
    temperature: float = 1.0
    lambda_: float = 0.001

    def __post_init__(self):
        if not self.maxstepsize > 0:
            raise ValueError(f"maxstepsize must be positive, got {self.maxstepsize}")
        if not 0 < self.fraction <= 1:
            raise ValueError(f"fraction must be in (0, 1], got {self.fraction}")
        if not _is_integer(self.niter) or self.niter < 0:
            raise ValueError(f"niter must be a non-negative integer, got {self.niter}")
        if not self.tol >= 0:
            raise ValueError(f"tol must be non-negative, got {self.tol}")
        if not _is_integer(self.nweights) or self.nweights < 1:
            raise ValueError(f"nweights must be a positive integer, got {self.nweights}")
        if not self.temperature > 0:
            raise ValueError(f"temperature must be positive, got {self.temperature}")
        if not self.lambda_ > 0:
            raise ValueError(f"lambda must be positive, got {self.lambda_}")

    @classmethod
    def from_dict(cls, options: Mapping[str, Any]) -> 'EPOptions':
        """
        Build options from a mapping of option keys.

        Parameters
        ----------
        options : mapping
            Keys among ``maxstepsize``, ``fraction``, ``niter``, ``tol``,
            ``nweights``, ``temperature`` and ``lambda`` (or ``lambda_``).

        Returns
        -------
        opts : EPOptions

        Raises
        ------
        TypeError
            If an unknown key is given.
        """
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in options.items():
            name = _OPTION_ALIASES.get(key, key)
            if name not in known:
                raise TypeError(f"Unknown EP option '{key}'")
            kwargs[name] = value
        return cls(**kwargs)


# ============================================================================
# Site terms
# ============================================================================

TERM_FIELDS: Tuple[str, ...] = ('hatK', 'hath', 'diagK', 'h', 'auxK')


@dataclass(frozen=True, slots=True)
class SiteTerms(_ParamsBase):
    """
    Canonical parameters of all approximate site terms.

    The canonical mean of the regression parameters contributed by the terms
    is ``h + A' hath``.

    Attributes
    ----------
    hatK : ndarray
        Precision of the likelihood terms, shape ``(nsamples,)``.
    hath : ndarray
        Canonical mean of the likelihood terms, shape ``(nsamples,)``.
    diagK : ndarray
        Precision of the cross terms between weights and scale variables,
        shape ``(nfeatures,)``.
    h : ndarray
        Canonical mean of the cross terms, shape ``(nfeatures,)``.
    auxK : ndarray
        Diagonal precision contribution to the auxiliary variables,
        shape ``(nfeatures,)``.
    """
    hatK: NDArray
    hath: NDArray
    diagK: NDArray
    h: NDArray
    auxK: NDArray

    @classmethod
    def initial(cls, nsamples: int, nfeatures: int, lambda_: float) -> 'SiteTerms':
        """Small regularizing guess used to start the iterations."""
        return cls(
            hatK=np.ones(nsamples) / 10,
            hath=np.zeros(nsamples),
            diagK=np.ones(nfeatures) / lambda_ / 10,
            h=np.zeros(nfeatures),
            auxK=np.zeros(nfeatures),
        )

    def scaled(self, factor: float) -> 'SiteTerms':
        """Multiply every canonical parameter by ``factor``."""
        return SiteTerms(**{name: factor * getattr(self, name) for name in TERM_FIELDS})


# ============================================================================
# Moment form
# ============================================================================

@dataclass(frozen=True, slots=True)
class GaussianMoments(_ParamsBase):
    """
    Moment form of the global Gaussian approximation.

    Attributes
    ----------
    m : ndarray
        Posterior mean of the regression parameters, shape ``(nfeatures,)``.
    hatn : ndarray
        Projected mean ``A m``, shape ``(nsamples,)``.
    hatB : ndarray
        Projected variances, diagonal of ``A C A'``, shape ``(nsamples,)``.
    diagC : ndarray
        Marginal variances of the regression parameters, shape ``(nfeatures,)``.
    auxC : ndarray
        Marginal variances of the auxiliary variables, shape ``(nfeatures,)``.
    """
    m: NDArray
    hatn: NDArray
    hatB: NDArray
    diagC: NDArray
    auxC: NDArray


@dataclass(frozen=True, slots=True)
class CavityMoments(_ParamsBase):
    """
    Moments of all cavity distributions, same layout as :class:`GaussianMoments`.

    Each entry describes the marginal with a fraction of its own site term
    removed. The auxiliary variables have zero mean, so only ``auxC`` is kept.
    """
    m: NDArray
    hatn: NDArray
    hatB: NDArray
    diagC: NDArray
    auxC: NDArray


# ============================================================================
# Solver state and results
# ============================================================================

@dataclass(frozen=True, slots=True)
class RoundDiagnostics(_ParamsBase):
    """
    Summary of a single outer EP iteration.

    Attributes
    ----------
    iteration : int
        One-based iteration counter.
    logp : float
        Evidence estimate after the round (unchanged if the round aborted).
    change : float
        Difference with the previous evidence estimate.
    stepsize : float
        Step size at the end of the round.
    n_rejected_terms : int
        Proposals rejected because the full Gaussian was improper.
    n_rejected_cavity : int
        Proposals rejected because a cavity was improper.
    oscillating : bool
        Whether the evidence change flipped sign, halving the step size.
    aborted : bool
        Whether the step size collapsed before an update was accepted.
    """
    iteration: int
    logp: float
    change: float
    stepsize: float
    n_rejected_terms: int = 0
    n_rejected_cavity: int = 0
    oscillating: bool = False
    aborted: bool = False


@dataclass(frozen=True, slots=True)
class EPState(_ParamsBase):
    """
    Complete state threaded through the outer iterations.

    Attributes
    ----------
    model : CanonicalGaussian
        Prior plus accepted site terms, canonical form.
    terms : SiteTerms
        Accepted site terms.
    cavity : CavityMoments
        Cavity moments of ``model`` and ``terms``.
    stepsize : float
        Current damping step size.
    logp : float
        Latest evidence estimate (0 before the first round).
    logpold : float
        Evidence estimate of the previous round.
    change : float
        Latest evidence change, used for oscillation detection.
    n_iter : int
        Number of completed outer iterations.
    aborted : bool
        Whether the step size collapsed.
    """
    model: Any
    terms: SiteTerms
    cavity: CavityMoments
    stepsize: float
    logp: float = 0.0
    logpold: float = np.inf
    change: float = 0.0
    n_iter: int = 0
    aborted: bool = False

    def evolve(self, **changes) -> 'EPState':
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)


@dataclass(frozen=True, slots=True)
class EPResult(_ParamsBase):
    """
    Output of :func:`laplace_ep.ep.bayesian_linreg_ep`.

    Attributes
    ----------
    model : CanonicalGaussian
        Final canonical Gaussian (prior plus site terms).
    moments : GaussianMoments
        Moment form of ``model``.
    terms : SiteTerms
        Final site terms.
    logp : float
        Estimated marginal log-likelihood. This is the EP free energy
        expression, an approximation that is least reliable for
        fractional updates.
    comptime : float
        Wall clock time of the computation in seconds.
    n_iter : int
        Number of outer iterations performed.
    converged : bool
        Whether the evidence change dropped below ``stepsize * tol``.
    ok : bool
        False if the iterations stopped because the step size collapsed.
    stepsize : float
        Final step size.
    logp_history : tuple of float
        Evidence estimate after every accepted round.
    diagnostics : tuple of RoundDiagnostics
        Per-round diagnostics.
    """
    model: Any
    moments: GaussianMoments
    terms: SiteTerms
    logp: float
    comptime: float
    n_iter: int
    converged: bool
    ok: bool
    stepsize: float
    logp_history: Tuple[float, ...] = ()
    diagnostics: Tuple[RoundDiagnostics, ...] = ()


def as_options(options: Optional[Any] = None, **kwargs) -> EPOptions:
    """
    Coerce ``None``, a mapping or an :class:`EPOptions` plus keyword
    overrides into an :class:`EPOptions`.
    """
    if options is None:
        merged = {}
    elif isinstance(options, EPOptions):
        merged = dict(options.items())
    else:
        merged = dict(options)
    merged.update(kwargs)
    return EPOptions.from_dict(merged)


__all__ = [
    "EPOptions",
    "SiteTerms",
    "TERM_FIELDS",
    "GaussianMoments",
    "CavityMoments",
    "RoundDiagnostics",
    "EPState",
    "EPResult",
    "as_options",
]
