"""
Tests for the damped update controller.

Tests that:
- combine_terms hits both boundary cases exactly
- Improper proposals are rejected and the step size is halved
- Accepted step sizes never exceed maxstepsize
- Step size collapse warns and returns without a model
"""

import numpy as np
import pytest
from numpy.testing import assert_allclose, assert_array_equal

import laplace_ep.ep.damping as damping
from laplace_ep.ep.damping import (
    StepSizeCollapseWarning,
    combine_terms,
    damped_update,
    try_project,
    try_update,
)
from laplace_ep.ep.driver import initialize
from laplace_ep.params import EPOptions, SiteTerms, TERM_FIELDS


def random_terms(nsamples: int, nfeatures: int, seed: int) -> SiteTerms:
    rng = np.random.default_rng(seed)
    return SiteTerms(
        hatK=rng.uniform(0.1, 1.0, nsamples), hath=rng.standard_normal(nsamples),
        diagK=rng.uniform(1.0, 5.0, nfeatures), h=rng.standard_normal(nfeatures),
        auxK=rng.uniform(-0.01, 0.01, nfeatures),
    )


@pytest.fixture
def problem():
    X = np.array([
        [1.0, 0.5, 1.0],
        [0.3, -1.2, 1.0],
        [-0.7, 0.8, 1.0],
        [0.2, 0.4, 1.0],
        [-1.1, -0.3, 1.0],
    ])
    labels = np.array([1, 2, 2, 1, 2])
    return labels, X, 0.1 * np.eye(3)


@pytest.fixture
def state(problem):
    return initialize(*problem, EPOptions())


# ============================================================
# combine_terms
# ============================================================

class TestCombineTerms:
    def test_full_step(self):
        full, current = random_terms(4, 3, 0), random_terms(4, 3, 1)
        combined = combine_terms(full, current, 1.0)
        for name in TERM_FIELDS:
            assert_array_equal(combined[name], full[name])

    def test_zero_step(self):
        full, current = random_terms(4, 3, 0), random_terms(4, 3, 1)
        combined = combine_terms(full, current, 0.0)
        for name in TERM_FIELDS:
            assert_array_equal(combined[name], current[name])

    def test_half_step(self):
        full, current = random_terms(4, 3, 0), random_terms(4, 3, 1)
        combined = combine_terms(full, current, 0.5)
        for name in TERM_FIELDS:
            assert_allclose(combined[name], (full[name] + current[name]) / 2)


# ============================================================
# Validation
# ============================================================

class TestTryUpdate:
    def test_same_terms_keep_model(self, state):
        candidate, newterms, ok = try_update(state.model, state.terms, state.terms, 0.7)
        assert ok
        assert_allclose(candidate.hatK, state.model.hatK)
        assert_allclose(candidate.diagK, state.model.diagK)
        assert_allclose(candidate.auxK.toarray(), state.model.auxK.toarray())
        assert_allclose(newterms.hatK, state.terms.hatK)

    def test_negative_precision_rejected(self, state):
        full = SiteTerms(
            hatK=np.full(5, -10.0), hath=state.terms.hath, diagK=state.terms.diagK,
            h=state.terms.h, auxK=state.terms.auxK,
        )
        _, _, ok = try_update(state.model, full, state.terms, 1.0)
        assert not ok

    def test_improper_aux_rejected(self, state):
        full = SiteTerms(
            hatK=state.terms.hatK, hath=state.terms.hath, diagK=state.terms.diagK,
            h=state.terms.h, auxK=np.full(3, -1.0),
        )
        _, _, ok = try_update(state.model, full, state.terms, 1.0)
        assert not ok

    def test_try_project(self, state):
        moments, cavity, logdet, ok = try_project(state.model, state.terms, 0.99)
        assert ok
        assert np.isfinite(logdet)
        assert_allclose(cavity.hatB, state.cavity.hatB)


# ============================================================
# Controller
# ============================================================

class TestDampedUpdate:
    def test_accept_grows_stepsize(self, state):
        outcome = damped_update(state.model, state.terms, state.terms, 0.2, EPOptions())
        assert outcome.accepted
        assert_allclose(outcome.stepsize, 0.38)
        assert outcome.n_rejected_terms == 0
        assert outcome.n_rejected_cavity == 0

    def test_stepsize_capped(self, state):
        opts = EPOptions(maxstepsize=0.6)
        outcome = damped_update(state.model, state.terms, state.terms, 0.5, opts)
        assert outcome.accepted
        assert outcome.stepsize == 0.6

    def test_rejections_halve(self, state, monkeypatch):
        calls = []
        real = damping.try_update

        def flaky(model, full, current, stepsize=1.0):
            calls.append(stepsize)
            candidate, newterms, ok = real(model, full, current, stepsize)
            return candidate, newterms, ok and len(calls) > 2

        monkeypatch.setattr(damping, "try_update", flaky)
        outcome = damped_update(state.model, state.terms, state.terms, 1.0, EPOptions())
        assert calls == [1.0, 0.5, 0.25]
        assert outcome.accepted
        assert outcome.n_rejected_terms == 2
        assert_allclose(outcome.stepsize, 0.25 * 1.9)

    def test_improper_cavity_counted(self, state, monkeypatch):
        calls = []
        real = damping.try_project

        def flaky(model, terms, fraction=1.0):
            calls.append(fraction)
            moments, cavity, logdet, ok = real(model, terms, fraction)
            return moments, cavity, logdet, ok and len(calls) > 1

        monkeypatch.setattr(damping, "try_project", flaky)
        outcome = damped_update(state.model, state.terms, state.terms, 1.0, EPOptions())
        assert outcome.accepted
        assert outcome.n_rejected_cavity == 1
        assert_allclose(outcome.stepsize, 0.95)

    def test_collapse(self, state, monkeypatch):
        def reject(model, full, current, stepsize=1.0):
            return model, current, False

        monkeypatch.setattr(damping, "try_update", reject)
        with pytest.warns(StepSizeCollapseWarning):
            outcome = damped_update(state.model, state.terms, state.terms, 1.0, EPOptions())
        assert not outcome.accepted
        assert outcome.model is None
        assert outcome.stepsize < 1e-10
        # 2**-34 is the first power of two below 1e-10
        assert outcome.n_rejected_terms == 34

    def test_verbose_reports_rejections(self, state, monkeypatch, capsys):
        def reject(model, full, current, stepsize=1.0):
            return model, current, False

        monkeypatch.setattr(damping, "try_update", reject)
        with pytest.warns(StepSizeCollapseWarning):
            damped_update(state.model, state.terms, state.terms, 1e-9, EPOptions(), verbose=2)
        assert "improper full covariance" in capsys.readouterr().out
