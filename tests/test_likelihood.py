"""Tests for epidynamics.likelihood: observation models."""

import numpy as np
import pytest
from scipy import stats

from epidynamics.errors import ConfigurationError
from epidynamics.likelihood import log_likelihood, negbinom_loglik, poisson_loglik


class TestPoisson:

    def test_matches_scipy_for_integers(self):
        y = np.array([0, 3, 7, 12])
        mu = np.array([0.5, 2.5, 8.0, 11.0])
        np.testing.assert_allclose(poisson_loglik(y, mu), stats.poisson.logpmf(y, mu))

    def test_defined_for_non_integer_counts(self):
        assert np.isfinite(poisson_loglik(np.array([2.4]), np.array([2.4]))).all()

    def test_maximised_at_observation(self):
        y = np.array([7.3])
        grid = np.linspace(5, 10, 501)
        best = grid[np.argmax([poisson_loglik(y, np.array([m]))[0] for m in grid])]
        assert best == pytest.approx(7.3, abs=0.01)


class TestNegativeBinomial:

    def test_matches_scipy(self):
        y = np.array([0, 4, 9])
        mu = np.array([1.0, 5.0, 7.0])
        k = 3.0
        expected = stats.nbinom.logpmf(y, k, k / (k + mu))
        np.testing.assert_allclose(negbinom_loglik(y, mu, k), expected)


class TestDispatch:

    def test_gaussian(self):
        assert log_likelihood("gaussian", [1.0, 2.0], [1.0, 2.0], 1.0) == pytest.approx(
            2 * stats.norm.logpdf(0.0))

    def test_non_finite_prediction_scores_minus_inf(self):
        assert log_likelihood("poisson", [1, 2], [np.nan, 2.0]) == -np.inf

    def test_length_mismatch(self):
        with pytest.raises(ConfigurationError):
            log_likelihood("poisson", [1, 2, 3], [1.0, 2.0])

    def test_unknown(self):
        with pytest.raises(ConfigurationError):
            log_likelihood("binomial", [1], [1.0])

    def test_negative_counts(self):
        with pytest.raises(ConfigurationError):
            log_likelihood("poisson", [-1], [1.0])
