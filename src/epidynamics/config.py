"""
===========================================================
config.py
Last Updated: 2026-10-19
===========================================================

Description:
    Explicit configuration structs handed to each component at
    construction time. Every struct validates itself in
    __post_init__ and raises ConfigurationError on bad input;
    nothing here is read from global state.

    Defines:
        - IntegratorConfig: deterministic solver method and tolerances
        - StochasticConfig: exact vs tau-leap simulation settings
        - NetworkConfig: step limit and per-node recording
        - EstimatorConfig: likelihood, observable and optimizer settings
        - MCMCConfig: chains, burn-in and convergence threshold
        - CrossValidationConfig: temporal k-fold layout
-----------------------------------------------------------
License: MIT
===========================================================
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from .errors import ConfigurationError

FIXED_STEP_METHODS = ("euler", "rk4")
ADAPTIVE_METHODS = ("RK45", "RK23", "DOP853", "Radau", "BDF", "LSODA")
OPTIMIZERS = ("Nelder-Mead", "L-BFGS-B", "Powell", "differential_evolution")
LIKELIHOODS = ("poisson", "negbinom", "gaussian")
OBSERVABLES = ("incidence", "prevalence")


@dataclass(frozen=True)
class IntegratorConfig:
    """Settings for the deterministic integrator.

    Attributes:
    method: str. "euler", "rk4" or any adaptive scipy solve_ivp method (default "RK45")
    conservation_tol: float. Relative tolerance on sum(compartments) == N at each report
    rtol, atol: float. Tolerances passed to solve_ivp for adaptive methods
    max_step_reductions: int. Retries (halved step or 10x tighter tolerance) before giving up
    """
    method: str = "RK45"
    conservation_tol: float = 1e-6
    rtol: float = 1e-8
    atol: float = 1e-8
    max_step_reductions: int = 8

    def __post_init__(self):
        if self.method not in FIXED_STEP_METHODS + ADAPTIVE_METHODS:
            raise ConfigurationError(f"unknown integration method {self.method!r}")
        if not self.conservation_tol > 0:
            raise ConfigurationError("conservation_tol must be positive")
        if not (self.rtol > 0 and self.atol > 0):
            raise ConfigurationError("rtol and atol must be positive")
        if self.max_step_reductions < 0:
            raise ConfigurationError("max_step_reductions must be non-negative")

    @property
    def adaptive(self) -> bool:
        return self.method not in FIXED_STEP_METHODS


@dataclass(frozen=True)
class StochasticConfig:
    method: str = "exact"           # "exact" (Gillespie) or "tau_leap"
    tau: float = 1.0                # interval length for tau-leaping
    max_events: Optional[int] = None  # iteration bound for exact mode

    def __post_init__(self):
        if self.method not in ("exact", "tau_leap"):
            raise ConfigurationError("method must be 'exact' or 'tau_leap'")
        if not self.tau > 0:
            raise ConfigurationError("tau must be positive")
        if self.max_events is not None and self.max_events <= 0:
            raise ConfigurationError("max_events must be positive when given")


@dataclass(frozen=True)
class NetworkConfig:
    max_steps: int = 1000
    record_nodes: bool = False

    def __post_init__(self):
        if self.max_steps <= 0:
            raise ConfigurationError("max_steps must be positive")


@dataclass(frozen=True)
class EstimatorConfig:
    """Settings shared by point estimation and posterior sampling.

    Attributes:
    observable: str. "incidence" (new cases per interval) or "prevalence" (I)
    likelihood: str. "poisson", "negbinom" or "gaussian"
    dispersion: float. Negative binomial size k, or Gaussian sigma
    optimizer: str. scipy.optimize.minimize method or "differential_evolution"
    n_starts: int. Number of coarse-search candidates refined locally
    grid_points: int. Coarse grid points per free parameter (capped, see estimation)
    maxiter: int. Iteration budget per local refinement
    seed: int. Seed for random restarts and global search
    t0: float, optional. Simulation start time; observations are at t >= t0.
        None starts one reporting period before the first observation, so
        the first incidence count covers a full period
    integrator: IntegratorConfig. Solver used for every likelihood evaluation
    """
    observable: str = "incidence"
    likelihood: str = "poisson"
    dispersion: float = 10.0
    optimizer: str = "Nelder-Mead"
    n_starts: int = 3
    grid_points: int = 7
    maxiter: int = 4000
    xatol: float = 1e-7
    fatol: float = 1e-9
    seed: Optional[int] = 42
    t0: Optional[float] = None
    integrator: IntegratorConfig = field(default_factory=IntegratorConfig)

    def __post_init__(self):
        if self.observable not in OBSERVABLES:
            raise ConfigurationError(f"observable must be one of {OBSERVABLES}")
        if self.likelihood not in LIKELIHOODS:
            raise ConfigurationError(f"likelihood must be one of {LIKELIHOODS}")
        if self.optimizer not in OPTIMIZERS:
            raise ConfigurationError(f"optimizer must be one of {OPTIMIZERS}")
        if not self.dispersion > 0:
            raise ConfigurationError("dispersion must be positive")
        if self.n_starts < 1 or self.grid_points < 1:
            raise ConfigurationError("n_starts and grid_points must be >= 1")
        if self.maxiter < 1:
            raise ConfigurationError("maxiter must be >= 1")


@dataclass(frozen=True)
class MCMCConfig:
    n_chains: int = 4
    n_samples: int = 2000           # per chain, including burn-in
    burn_in: float = 0.5            # fraction discarded from the start of each chain
    proposal_scale: float = 0.02    # relative to each parameter's bound width
    adapt: bool = True              # tune proposal scale during burn-in
    rhat_threshold: float = 1.1
    seed: Optional[int] = 42

    def __post_init__(self):
        if self.n_chains < 2:
            raise ConfigurationError("at least two chains are needed for R-hat")
        if not 0.0 <= self.burn_in < 1.0:
            raise ConfigurationError("burn_in must be a fraction in [0, 1)")
        if int(self.n_samples * (1.0 - self.burn_in)) < 2:
            raise ConfigurationError("n_samples too small after burn-in")
        if not self.proposal_scale > 0:
            raise ConfigurationError("proposal_scale must be positive")
        if not self.rhat_threshold > 1.0:
            raise ConfigurationError("rhat_threshold must exceed 1")


@dataclass(frozen=True)
class CrossValidationConfig:
    n_folds: int = 5
    horizon: int = 7
    min_train_size: int = 14

    def __post_init__(self):
        if self.n_folds < 1:
            raise ConfigurationError("n_folds must be >= 1")
        if self.horizon < 1:
            raise ConfigurationError("horizon must be >= 1")
        if self.min_train_size < 1:
            raise ConfigurationError("min_train_size must be >= 1")
