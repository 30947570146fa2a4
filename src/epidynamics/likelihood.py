"""
===========================================================
likelihood.py
Last Updated: 2026-10-19
===========================================================
Observation Models
==================

Log-likelihood of observed case counts given the simulated
mean (incidence or prevalence at the observation times).

    poisson   y ~ Poisson(mu)                       (default)
    negbinom  y ~ NegBin(mean mu, size k)           Var = mu + mu^2/k
    gaussian  y ~ Normal(mu, sigma)

The Poisson and negative binomial forms use gammaln rather
than a factorial, so they are defined for non-integer y and
noise-free model output can be fitted directly.

License: MIT
===========================================================
"""
from __future__ import annotations

from typing import Callable, Dict, Optional

import numpy as np
from scipy.special import gammaln, xlogy
from scipy.stats import norm

from .errors import ConfigurationError

# predictions below this are treated as this (log(0) guard)
MEAN_FLOOR = 1e-10


def poisson_loglik(observed: np.ndarray, mean: np.ndarray, dispersion: Optional[float] = None) -> np.ndarray:
    y = np.asarray(observed, dtype=float)
    mu = np.maximum(np.asarray(mean, dtype=float), MEAN_FLOOR)
    return xlogy(y, mu) - mu - gammaln(y + 1.0)


def negbinom_loglik(observed: np.ndarray, mean: np.ndarray, dispersion: float = 10.0) -> np.ndarray:
    y = np.asarray(observed, dtype=float)
    mu = np.maximum(np.asarray(mean, dtype=float), MEAN_FLOOR)
    k = float(dispersion)
    return (gammaln(y + k) - gammaln(k) - gammaln(y + 1.0)
            + k * np.log(k / (k + mu)) + xlogy(y, mu / (k + mu)))


def gaussian_loglik(observed: np.ndarray, mean: np.ndarray, dispersion: float = 1.0) -> np.ndarray:
    return norm.logpdf(np.asarray(observed, dtype=float), loc=np.asarray(mean, dtype=float), scale=dispersion)


LIKELIHOOD_FUNCTIONS: Dict[str, Callable[..., np.ndarray]] = {
    "poisson": poisson_loglik,
    "negbinom": negbinom_loglik,
    "gaussian": gaussian_loglik,
}


def log_likelihood(kind: str, observed, mean, dispersion: float = 10.0) -> float:
    """Summed log-likelihood; -inf if the prediction is not finite"""
    try:
        fn = LIKELIHOOD_FUNCTIONS[kind]
    except KeyError:
        raise ConfigurationError(f"unknown likelihood {kind!r}") from None
    mean = np.asarray(mean, dtype=float)
    if np.shape(observed) != mean.shape:
        raise ConfigurationError(f"observed {np.shape(observed)} and predicted {mean.shape} lengths differ")
    if not np.all(np.isfinite(mean)):
        return -np.inf
    if kind != "gaussian" and np.any(np.asarray(observed) < 0):
        raise ConfigurationError("count likelihoods need non-negative observations")
    return float(np.sum(fn(observed, mean, dispersion)))
