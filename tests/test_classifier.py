"""
Tests for the sklearn-style LaplaceEPClassifier.
"""

import numpy as np
import pytest
from numpy.testing import assert_allclose
from scipy import sparse

from laplace_ep import EPResult, LaplaceEPClassifier


@pytest.fixture
def data():
    rng = np.random.default_rng(0)
    X = rng.standard_normal((60, 4))
    y = (X[:, 0] - X[:, 1] > 0).astype(int)
    return X, y


class TestFit:
    def test_fitted_attributes(self, data):
        X, y = data
        clf = LaplaceEPClassifier(prior_precision=0.5).fit(X, y)
        assert_allclose(clf.classes_, [0, 1])
        assert clf.coef_.shape == (4,)
        assert clf.coef_var_.shape == (4,)
        assert np.all(clf.coef_var_ > 0)
        assert isinstance(clf.intercept_, float)
        assert isinstance(clf.result_, EPResult)
        assert np.isfinite(clf.log_evidence_)
        assert clf.n_iter_ >= 1

    def test_weights_point_the_right_way(self, data):
        X, y = data
        clf = LaplaceEPClassifier(prior_precision=0.5).fit(X, y)
        # classes_[0] (y == 0) is the positive direction: x0 - x1 < 0
        assert clf.coef_[0] < 0
        assert clf.coef_[1] > 0

    def test_training_accuracy(self, data):
        X, y = data
        clf = LaplaceEPClassifier(prior_precision=0.5).fit(X, y)
        assert np.mean(clf.predict(X) == y) >= 0.8

    def test_without_intercept(self, data):
        X, y = data
        clf = LaplaceEPClassifier(fit_intercept=False).fit(X, y)
        assert clf.intercept_ == 0.0
        assert clf.result_.model.nfeatures == 4

    def test_string_labels(self, data):
        X, y = data
        labels = np.where(y == 1, "spam", "ham")
        clf = LaplaceEPClassifier().fit(X, labels)
        assert set(clf.predict(X[:10])) <= {"spam", "ham"}

    def test_matrix_prior(self, data):
        X, y = data
        K = sparse.diags([np.full(3, -0.1), np.ones(4), np.full(3, -0.1)], [-1, 0, 1])
        clf = LaplaceEPClassifier(prior_precision=K).fit(X, y)
        assert clf.result_.model.nfeatures == 5

    def test_options(self, data):
        X, y = data
        clf = LaplaceEPClassifier(options={"niter": 2, "tol": 0.0}).fit(X, y)
        assert clf.n_iter_ == 2
        assert not clf.converged_


class TestPredict:
    def test_proba_rows(self, data):
        X, y = data
        clf = LaplaceEPClassifier().fit(X, y)
        proba = clf.predict_proba(X)
        assert proba.shape == (60, 2)
        assert_allclose(proba.sum(axis=1), 1.0)
        assert np.all((proba > 0) & (proba < 1))

    def test_decision_function_sign(self, data):
        X, y = data
        clf = LaplaceEPClassifier().fit(X, y)
        scores = clf.decision_function(X)
        proba = clf.predict_proba(X)
        # E[sigmoid] is above one half exactly when the mean is positive
        assert np.all((scores > 0) == (proba[:, 0] > 0.5))


class TestValidation:
    def test_not_fitted(self):
        with pytest.raises(ValueError, match="not fitted"):
            LaplaceEPClassifier().predict_proba(np.ones((1, 2)))

    def test_three_classes(self, data):
        X, _ = data
        with pytest.raises(ValueError):
            LaplaceEPClassifier().fit(X, np.arange(60) % 3)

    def test_bad_prior_shape(self, data):
        X, y = data
        with pytest.raises(ValueError):
            LaplaceEPClassifier(prior_precision=np.eye(3)).fit(X, y)

    def test_bad_scalar_prior(self, data):
        X, y = data
        with pytest.raises(ValueError):
            LaplaceEPClassifier(prior_precision=0.0).fit(X, y)
