"""
Tests for the linear algebra, sparse and quadrature utilities.
"""

import numpy as np
import pytest
from numpy.testing import assert_allclose
from scipy import sparse
from scipy.linalg import LinAlgError

from laplace_ep.utils import (
    QuadratureRule,
    SparsePrecision,
    cholesky,
    invert_chol,
    log_det_chol,
)


# ============================================================
# Cholesky primitive
# ============================================================

class TestCholesky:
    @pytest.fixture
    def spd(self):
        rng = np.random.default_rng(1)
        B = rng.standard_normal((5, 5))
        return B @ B.T + 5 * np.eye(5)

    def test_factor(self, spd):
        L, ok = cholesky(spd)
        assert ok
        assert_allclose(L @ L.T, spd, atol=1e-10)
        assert_allclose(L, np.tril(L))

    def test_not_positive_definite(self):
        L, ok = cholesky(np.array([[1.0, 2.0], [2.0, 1.0]]))
        assert not ok
        assert L is None

    def test_sparse_input(self):
        L, ok = cholesky(sparse.diags([4.0, 9.0]))
        assert ok
        assert_allclose(np.diag(L), [2.0, 3.0])

    def test_log_det(self, spd):
        L, _ = cholesky(spd)
        assert_allclose(log_det_chol(L), np.linalg.slogdet(spd)[1])

    def test_invert(self, spd):
        inv, logdet = invert_chol(spd)
        assert_allclose(inv @ spd, np.eye(5), atol=1e-10)
        assert_allclose(logdet, np.linalg.slogdet(spd)[1])

    def test_invert_raises(self):
        with pytest.raises(LinAlgError):
            invert_chol(-np.eye(2))


# ============================================================
# SparsePrecision
# ============================================================

class TestSparsePrecision:
    def test_diagonal_access(self):
        K = np.array([[2.0, 0.5, 0.0], [0.5, 3.0, 0.0], [0.0, 0.0, 4.0]])
        P = SparsePrecision(K)
        assert_allclose(P.get_diagonal(), [2.0, 3.0, 4.0])
        assert P.shape == (3, 3)

    def test_add_to_diagonal_returns_new(self):
        K = sparse.csr_matrix(np.array([[2.0, 0.5], [0.5, 3.0]]))
        P = SparsePrecision(K)
        Q = P.add_to_diagonal([1.0, -1.0])
        assert_allclose(Q.toarray(), [[3.0, 0.5], [0.5, 2.0]])
        assert_allclose(P.get_diagonal(), [2.0, 3.0])

    def test_add_to_empty_diagonal(self):
        K = sparse.csc_matrix(np.array([[0.0, 1.0], [1.0, 0.0]]))
        Q = SparsePrecision(K).add_to_diagonal([2.0, 2.0])
        assert_allclose(Q.toarray(), [[2.0, 1.0], [1.0, 2.0]])

    def test_add_to_diagonal_wrong_length(self):
        with pytest.raises(ValueError):
            SparsePrecision(np.eye(2)).add_to_diagonal([1.0, 2.0, 3.0])

    def test_scaled(self):
        P = SparsePrecision(2 * np.eye(2)).scaled(0.25)
        assert_allclose(P.toarray(), 0.5 * np.eye(2))

    def test_non_square(self):
        with pytest.raises(ValueError):
            SparsePrecision(np.ones((2, 3)))

    def test_wraps_existing(self):
        P = SparsePrecision(np.eye(2))
        assert_allclose(SparsePrecision(P).toarray(), np.eye(2))


# ============================================================
# Quadrature rules
# ============================================================

class TestQuadrature:
    def test_hermite_normal_moments(self):
        rule = QuadratureRule.gauss_hermite(20)
        assert len(rule) == 20
        assert_allclose(np.sum(rule.weights), 1.0)
        assert_allclose(np.sum(rule.weights * rule.nodes), 0.0, atol=1e-12)
        assert_allclose(np.sum(rule.weights * rule.nodes ** 2), 1.0)
        assert_allclose(np.sum(rule.weights * rule.nodes ** 4), 3.0)

    def test_laguerre_exponential_moments(self):
        rule = QuadratureRule.gauss_laguerre(20)
        assert_allclose(np.sum(rule.weights), 1.0)
        assert_allclose(np.sum(rule.weights * rule.nodes), 1.0)
        assert_allclose(np.sum(rule.weights * rule.nodes ** 2), 2.0)
        assert np.all(rule.nodes > 0)

    def test_shape_mismatch(self):
        with pytest.raises(ValueError):
            QuadratureRule(nodes=np.zeros(3), weights=np.zeros(2))

    def test_non_finite_rejected(self):
        with pytest.raises(ValueError):
            QuadratureRule(nodes=np.zeros(2), weights=np.array([0.5, np.nan]))

    def test_large_rules_finite(self):
        for rule in (QuadratureRule.gauss_hermite(200), QuadratureRule.gauss_laguerre(200)):
            assert len(rule) == 200
            assert np.all(np.isfinite(rule.weights))
            assert_allclose(np.sum(rule.weights), 1.0)
