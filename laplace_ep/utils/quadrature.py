"""
Gauss-Hermite and Gauss-Laguerre quadrature rules.

Both rules are normalized so that their weights sum to one:

- Gauss-Hermite integrates against the standard normal density,
  :math:`E[f(Z)] \\approx \\sum_i w_i f(x_i)` for :math:`Z \\sim N(0, 1)`.
- Gauss-Laguerre integrates against :math:`e^{-x}` on :math:`[0, \\infty)`,
  i.e. against the unit rate exponential density.

Shifting and scaling the nodes turns these into expectations under any
normal or exponential cavity distribution.
"""

from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray
from scipy.special import roots_hermitenorm, roots_laguerre


@dataclass(frozen=True, slots=True)
class QuadratureRule:
    """
    Fixed set of quadrature nodes and weights.

    Attributes
    ----------
    nodes : ndarray, shape (n,)
    weights : ndarray, shape (n,)
    """
    nodes: NDArray
    weights: NDArray

    def __post_init__(self):
        if np.shape(self.nodes) != np.shape(self.weights):
            raise ValueError("nodes and weights must have the same shape")
        if not (np.all(np.isfinite(self.nodes)) and np.all(np.isfinite(self.weights))):
            raise ValueError("quadrature nodes and weights must be finite")

    def __len__(self) -> int:
        return len(self.nodes)

    @classmethod
    def gauss_hermite(cls, n: int) -> 'QuadratureRule':
        """
        ``n``-point rule for expectations under the standard normal.

        Uses the probabilists' Hermite polynomials, whose weight function
        :math:`e^{-x^2/2}` is normalized by :math:`\\sqrt{2\\pi}`.
        """
        x, w = roots_hermitenorm(n)
        return cls(nodes=x, weights=w / np.sqrt(2.0 * np.pi))

    @classmethod
    def gauss_laguerre(cls, n: int) -> 'QuadratureRule':
        """``n``-point rule for expectations under the unit exponential."""
        x, w = roots_laguerre(n)
        return cls(nodes=x, weights=w)
