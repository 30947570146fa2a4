"""
===========================================================
estimation.py
Last Updated: 2026-10-19
===========================================================
Parameter Estimation
====================

Fits a model family to an observed case series. Observed
counts are modeled as draws from a distribution (Poisson by
default, see likelihood.py) whose mean is the simulated
incidence or prevalence at the observation times.

Two modes share the same likelihood:

    fit_point()      maximum likelihood
                       1) coarse grid over the bounds, plus random
                          restarts when the grid is small
                       2) local refinement of the best candidates
                          (scipy.optimize.minimize or
                          differential_evolution)
                       3) Wald intervals from a finite-difference
                          Hessian of the negative log-likelihood

    fit_posterior()  random-walk Metropolis, several chains,
                     burn-in discarded, Gelman-Rubin R-hat

Free parameters are any of the model's rates plus two
observation parameters:
    initial_infected   seeded infectious count at the simulation start
    rho                reporting fraction, mean = rho * simulated

Candidates outside the declared bounds or the model's domain
score -inf and never reach the simulator. A candidate whose
integration breaks down (NumericalInstability) also scores
-inf and is counted in the diagnostics.

License: MIT
===========================================================
"""
from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from itertools import product
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import stats
from scipy.optimize import differential_evolution, minimize

from .config import EstimatorConfig, MCMCConfig
from .deterministic import DeterministicIntegrator
from .errors import (ConfigurationError, ConvergenceFailure, InsufficientDataError,
                     NumericalInstability, NumericalStabilityWarning)
from .interventions import InterventionSchedule
from .likelihood import log_likelihood as observation_loglik
from .models import CompartmentalModel
from .observations import ObservationsLike, ObservedSeries, as_arrays
from .state import Trajectory, validate_state

logger = logging.getLogger(__name__)

OBSERVATION_PARAMETERS = ("initial_infected", "rho")

# objective value handed to the optimizer for rejected candidates
PENALTY = 1e10
# upper bound on coarse-grid evaluations; points per dimension shrink with dimension
MAX_GRID_EVALUATIONS = 256


@dataclass(frozen=True)
class FitResult:
    """
    Outcome of one calibration.

    Attributes:
    model: str. Model family name
    method: str. "mle" or "mcmc"
    estimates: dict. Free parameter point estimates (MLE, or posterior median)
    params: dict. Full parameter set (fixed and estimated) used for forecasting
    intervals: dict. name -> (lower, upper); Wald 95% (mle) or 2.5/97.5 percentiles (mcmc)
    log_likelihood: float. At the point estimate
    n_params: int. Number of free parameters
    n_obs: int. Number of observations
    converged: bool
    r0: float. Basic reproduction number at the point estimate (posterior median for mcmc)
    trajectory: Trajectory. Model run at the point estimate from the simulation start through the last observation
    samples: DataFrame, optional. Post burn-in posterior draws (mcmc only)
    diagnostics: dict. Optimizer/sampler details
    """
    model: str
    method: str
    estimates: Dict[str, float]
    params: Dict[str, float]
    intervals: Dict[str, Tuple[float, float]]
    log_likelihood: float
    n_params: int
    n_obs: int
    converged: bool
    r0: float
    trajectory: Optional[Trajectory] = None
    samples: Optional[pd.DataFrame] = None
    diagnostics: Dict[str, object] = field(default_factory=dict)

    @property
    def aic(self) -> float:
        return 2 * self.n_params - 2 * self.log_likelihood

    @property
    def bic(self) -> float:
        return self.n_params * np.log(self.n_obs) - 2 * self.log_likelihood

    def raise_for_convergence(self) -> "FitResult":
        """Raise ConvergenceFailure unless converged; returns self for chaining"""
        if not self.converged:
            reason = self.diagnostics.get("message", "did not converge")
            raise ConvergenceFailure(f"{self.model} {self.method} fit: {reason}", result=self)
        return self

    def to_dict(self) -> Dict[str, object]:
        """Flat record of the scalar results (no trajectory or samples)"""
        out: Dict[str, object] = {
            "model": self.model, "method": self.method,
            "log_likelihood": self.log_likelihood, "aic": self.aic, "bic": self.bic,
            "n_params": self.n_params, "n_obs": self.n_obs,
            "converged": self.converged, "r0": self.r0,
        }
        for name, value in self.estimates.items():
            lo, hi = self.intervals.get(name, (np.nan, np.nan))
            out[name] = value
            out[f"{name}_lower"] = lo
            out[f"{name}_upper"] = hi
        for key, value in self.diagnostics.items():
            if np.isscalar(value):
                out[f"diag_{key}"] = value
        return out


def _hessian(f, x: np.ndarray, rel_step: float = 1e-3) -> np.ndarray:
    """Central finite-difference Hessian"""
    d = len(x)
    h = rel_step * np.maximum(np.abs(x), 1e-3)
    H = np.empty((d, d))
    f0 = f(x)
    for i in range(d):
        ei = np.zeros(d)
        ei[i] = h[i]
        H[i, i] = (f(x + ei) - 2.0 * f0 + f(x - ei)) / h[i] ** 2
        for j in range(i + 1, d):
            ej = np.zeros(d)
            ej[j] = h[j]
            H[i, j] = H[j, i] = (
                f(x + ei + ej) - f(x + ei - ej) - f(x - ei + ej) + f(x - ei - ej)
            ) / (4.0 * h[i] * h[j])
    return H


def gelman_rubin(chains: np.ndarray) -> np.ndarray:
    """
    Potential scale reduction R-hat per parameter.

    chains: (m, n, d) post burn-in draws. Returns (d,); NaN where the
    within-chain variance is zero (stuck chains).
    """
    m, n, _ = chains.shape
    means = chains.mean(axis=1)
    W = chains.var(axis=1, ddof=1).mean(axis=0)
    B = n * means.var(axis=0, ddof=1)
    var_hat = (n - 1) / n * W + B / n
    with np.errstate(divide="ignore", invalid="ignore"):
        rhat = np.sqrt(var_hat / W)
    return np.where(W > 0, rhat, np.nan)


class ParameterEstimator:
    """
    Calibrate one model family against an observed series.

    Parameters:
    -----------
    model: CompartmentalModel
    bounds: dict
        name -> (lower, upper) for every free parameter (model rates,
        "initial_infected", "rho")
    fixed: dict, optional
        Values for the model rates that are not free
    initial_state: CompartmentState, optional
        Starting state at t0; otherwise the population is seeded with
        `initial_infected` infectious individuals
    initial_infected: float
        Seed size when initial_state is not given and initial_infected is not free
    population: float, optional
        N for seeding; defaults to the ObservedSeries population
    config: EstimatorConfig, optional
    schedule: InterventionSchedule, optional
    priors: dict, optional
        name -> frozen scipy.stats distribution for fit_posterior;
        uniform over the bounds where not given
    """
    def __init__(
            self,
            model: CompartmentalModel,
            bounds: Mapping[str, Tuple[float, float]],
            fixed: Optional[Mapping[str, float]] = None,
            initial_state: Optional[Mapping[str, float]] = None,
            initial_infected: float = 1.0,
            population: Optional[float] = None,
            config: Optional[EstimatorConfig] = None,
            schedule: Optional[InterventionSchedule] = None,
            priors: Optional[Mapping[str, object]] = None,
    ):
        self.model = model
        self.config = config or EstimatorConfig()
        self.fixed = dict(fixed or {})
        self.free = tuple(bounds)
        if not self.free:
            raise ConfigurationError("at least one free parameter is required")
        known = set(model.parameter_names) | set(OBSERVATION_PARAMETERS)
        unknown = (set(self.free) | set(self.fixed)) - known
        if unknown:
            raise ConfigurationError(f"{model.name}: unknown parameters {sorted(unknown)}")
        overlap = set(self.free) & set(self.fixed)
        if overlap:
            raise ConfigurationError(f"parameters both free and fixed: {sorted(overlap)}")
        missing = [n for n in model.parameter_names if n not in self.free and n not in self.fixed]
        if missing:
            raise ConfigurationError(f"{model.name}: parameters neither free nor fixed: {missing}")

        lower, upper = [], []
        for name in self.free:
            lo, hi = map(float, bounds[name])
            if not (np.isfinite(lo) and np.isfinite(hi) and lo < hi):
                raise ConfigurationError(f"bounds for {name} must be finite with lower < upper")
            lower.append(lo)
            upper.append(hi)
        self.lower = np.array(lower)
        self.upper = np.array(upper)

        if initial_state is not None:
            validate_state(initial_state, model.compartments)
        self.initial_state = dict(initial_state) if initial_state is not None else None
        self.initial_infected = float(initial_infected)
        self.population = population
        # seed from initial_infected unless a full starting state pins it
        self._seeded = self.initial_state is None or "initial_infected" in self.free
        self.schedule = schedule
        self.priors = {
            name: (priors or {}).get(name) or stats.uniform(loc=lo, scale=hi - lo)
            for name, lo, hi in zip(self.free, self.lower, self.upper)
        }
        self._integrator = DeterministicIntegrator(model, self.config.integrator, schedule)
        self._unstable = 0

    @property
    def n_free(self) -> int:
        return len(self.free)

    # ---------- parameter handling ----------

    def full_parameters(self, theta: Sequence[float]) -> Dict[str, float]:
        return {**self.fixed, **dict(zip(self.free, map(float, theta)))}

    def _in_bounds(self, theta: np.ndarray) -> bool:
        return bool(np.all(np.isfinite(theta)) and np.all(theta >= self.lower) and np.all(theta <= self.upper))

    def _admissible(self, full: Mapping[str, float], population: float) -> bool:
        if not self.model.in_domain(full):
            return False
        if not 0.0 < full.get("rho", 1.0) <= 1.0:
            return False
        if self._seeded:
            return 0.0 <= full.get("initial_infected", self.initial_infected) <= population
        return True

    def resolve_population(self, data: Optional[ObservationsLike] = None) -> float:
        if self.initial_state is not None:
            return float(sum(self.initial_state.values()))
        if self.population is not None:
            return float(self.population)
        if isinstance(data, ObservedSeries):
            return data.population
        raise ConfigurationError("population unknown: pass population=, initial_state= or an ObservedSeries")

    def initial_condition(self, full: Mapping[str, float], population: float) -> Dict[str, float]:
        if not self._seeded:
            return self.initial_state
        seed = full.get("initial_infected", self.initial_infected)
        return self.model.seed_state(population, initial_infected=seed)

    # ---------- forward model ----------

    def start_time(self, times: Sequence[float]) -> float:
        """Configured t0, or one reporting period before the first observation"""
        if self.config.t0 is not None:
            return float(self.config.t0)
        times = np.asarray(times, dtype=float)
        period = float(times[1] - times[0]) if len(times) > 1 else 1.0
        return float(times[0]) - period

    def simulate(self, params: Mapping[str, float], times: Sequence[float], population: float) -> Trajectory:
        """Deterministic run reported at t0 (if not already) and every observation time"""
        times = np.asarray(times, dtype=float)
        t0 = self.start_time(times)
        if times[0] < t0:
            raise ConfigurationError(f"observations start at {times[0]} before t0={t0}")
        grid = times if times[0] == t0 else np.concatenate(([t0], times))
        dt = float(np.min(np.diff(grid))) if len(grid) > 1 else 1.0
        model_params = {n: params[n] for n in self.model.parameter_names}
        return self._integrator.run(model_params, self.initial_condition(params, population),
                                    t_span=(grid[0], grid[-1] if len(grid) > 1 else grid[0] + dt),
                                    dt=dt, t_eval=grid)

    def predict(self, params: Mapping[str, float], times: Sequence[float], population: float) -> np.ndarray:
        """
        Expected observation at each time.

        incidence: new infections since the previous observation (since t0 for the first)
        prevalence: infectious compartments at the observation time
        """
        times = np.asarray(times, dtype=float)
        traj = self.simulate(params, times, population)
        offset = len(traj.times) - len(times)
        if self.config.observable == "incidence":
            mean = traj.incidence[offset:]
        else:
            mean = sum(traj[c] for c in self.model.infectious)[offset:]
        return params.get("rho", 1.0) * np.asarray(mean, dtype=float)

    def log_likelihood(self, theta: Sequence[float], t: np.ndarray, y: np.ndarray, population: float) -> float:
        """Log-likelihood of free-parameter vector theta; -inf when inadmissible"""
        theta = np.asarray(theta, dtype=float)
        if not self._in_bounds(theta):
            return -np.inf
        full = self.full_parameters(theta)
        if not self._admissible(full, population):
            return -np.inf
        try:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore", NumericalStabilityWarning)
                mean = self.predict(full, t, population)
        except NumericalInstability as exc:
            self._unstable += 1
            logger.debug("unstable candidate %s: %s", dict(zip(self.free, theta)), exc)
            return -np.inf
        return observation_loglik(self.config.likelihood, y, mean, self.config.dispersion)

    def _prepare(self, data: ObservationsLike) -> Tuple[np.ndarray, np.ndarray, float]:
        t, y = as_arrays(data)
        if len(y) <= self.n_free:
            raise InsufficientDataError(f"{len(y)} observations for {self.n_free} free parameters")
        return t, y, self.resolve_population(data)

    # ---------- point estimation ----------

    def _candidates(self, objective) -> List[Tuple[float, np.ndarray]]:
        """Coarse grid (cell centres) plus random draws; best n_starts by objective"""
        cfg = self.config
        per_dim = max(1, min(cfg.grid_points, int(MAX_GRID_EVALUATIONS ** (1.0 / self.n_free))))
        axes = [lo + (np.arange(per_dim) + 0.5) / per_dim * (hi - lo) for lo, hi in zip(self.lower, self.upper)]
        points = [np.array(p) for p in product(*axes)]
        rng = np.random.default_rng(cfg.seed)
        while len(points) < cfg.n_starts:
            points.append(rng.uniform(self.lower, self.upper))
        scored = sorted(((objective(p), i, p) for i, p in enumerate(points)), key=lambda s: (s[0], s[1]))
        logger.debug("coarse search: %d candidates, best objective %.6g", len(points), scored[0][0])
        return [(val, p) for val, _, p in scored[:cfg.n_starts]]

    def _refine(self, objective, x0: np.ndarray):
        cfg = self.config
        bounds = list(zip(self.lower, self.upper))
        if cfg.optimizer == "Nelder-Mead":
            options = {"maxiter": cfg.maxiter, "maxfev": 2 * cfg.maxiter, "xatol": cfg.xatol, "fatol": cfg.fatol}
        elif cfg.optimizer == "L-BFGS-B":
            options = {"maxiter": cfg.maxiter}
        else:
            options = {"maxiter": cfg.maxiter, "xtol": cfg.xatol, "ftol": cfg.fatol}
        return minimize(objective, x0, method=cfg.optimizer, bounds=bounds, options=options)

    def _wald_intervals(self, nll, x: np.ndarray) -> Tuple[Dict[str, Tuple[float, float]], Optional[np.ndarray], str]:
        H = _hessian(nll, x)
        nan = {name: (np.nan, np.nan) for name in self.free}
        if not np.all(np.isfinite(H)):
            return nan, None, "hessian not finite"
        try:
            cov = np.linalg.inv(H)
        except np.linalg.LinAlgError:
            return nan, None, "hessian singular"
        var = np.diag(cov)
        if np.any(var <= 0) or np.any(np.linalg.eigvalsh((cov + cov.T) / 2) <= 0):
            return nan, None, "hessian not positive definite"
        half = 1.959963984540054 * np.sqrt(var)
        lo = np.maximum(x - half, self.lower)
        hi = np.minimum(x + half, self.upper)
        return {n: (float(a), float(b)) for n, a, b in zip(self.free, lo, hi)}, cov, "ok"

    def fit_point(self, data: ObservationsLike) -> FitResult:
        """Maximum-likelihood fit (grid, then bounded local or global optimizer)"""
        t, y, N = self._prepare(data)
        cfg = self.config
        self._unstable = 0
        logger.info("MLE fit of %s: %d observations, free %s, %s likelihood, %s",
                    self.model.name, len(y), list(self.free), cfg.likelihood, cfg.optimizer)

        def nll(theta):
            ll = self.log_likelihood(theta, t, y, N)
            return -ll if np.isfinite(ll) else PENALTY

        if cfg.optimizer == "differential_evolution":
            res = differential_evolution(nll, bounds=list(zip(self.lower, self.upper)), seed=cfg.seed,
                                         maxiter=cfg.maxiter, atol=1e-6, tol=1e-6, polish=True)
            runs = [res]
        else:
            runs = []
            for k, (val, x0) in enumerate(self._candidates(nll)):
                res = self._refine(nll, x0)
                logger.debug("start %d: %s -> %s, nll %.8g -> %.8g (%s)",
                             k, np.round(x0, 6), np.round(res.x, 6), val, res.fun, res.message)
                runs.append(res)
        best = min(runs, key=lambda r: r.fun)
        x = np.clip(np.asarray(best.x, dtype=float), self.lower, self.upper)
        ll = self.log_likelihood(x, t, y, N)
        converged = bool(best.success) and np.isfinite(ll)
        if not converged:
            logger.warning("%s MLE did not converge: %s", self.model.name, best.message)

        intervals, cov, hessian_status = self._wald_intervals(nll, x) if np.isfinite(ll) else (
            {n: (np.nan, np.nan) for n in self.free}, None, "skipped")
        full = self.full_parameters(x)
        model_params = {n: full[n] for n in self.model.parameter_names}
        trajectory = self.simulate(full, t, N) if np.isfinite(ll) else None
        return FitResult(
            model=self.model.name,
            method="mle",
            estimates=dict(zip(self.free, map(float, x))),
            params=full,
            intervals=intervals,
            log_likelihood=float(ll),
            n_params=self.n_free,
            n_obs=len(y),
            converged=converged,
            r0=self.model.basic_reproduction_number(model_params),
            trajectory=trajectory,
            diagnostics={
                "optimizer": cfg.optimizer,
                "message": str(best.message),
                "nfev": int(sum(getattr(r, "nfev", 0) for r in runs)),
                "n_starts": len(runs),
                "unstable_evaluations": self._unstable,
                "hessian": hessian_status,
                "covariance": cov,
            },
        )

    # ---------- posterior sampling ----------

    def log_posterior(self, theta: np.ndarray, t: np.ndarray, y: np.ndarray, population: float) -> float:
        if not self._in_bounds(theta):
            return -np.inf
        lp = sum(float(self.priors[n].logpdf(v)) for n, v in zip(self.free, theta))
        if not np.isfinite(lp):
            return -np.inf
        return lp + self.log_likelihood(theta, t, y, population)

    def _chain(self, x0, chol, n_samples, n_burn, adapt, rng, t, y, N):
        d = len(x0)
        x, lp = np.array(x0, dtype=float), self.log_posterior(x0, t, y, N)
        draws = np.empty((n_samples, d))
        lps = np.empty(n_samples)
        scale = 1.0
        window, accepted = 0, 0
        for i in range(n_samples):
            proposal = x + scale * (chol @ rng.standard_normal(d))
            lp_new = self.log_posterior(proposal, t, y, N)
            if np.log(rng.random()) < lp_new - lp:
                x, lp = proposal, lp_new
                window += 1
                if i >= n_burn:
                    accepted += 1
            draws[i], lps[i] = x, lp
            if adapt and i < n_burn and (i + 1) % 50 == 0:
                rate = window / 50.0
                if rate < 0.15:
                    scale *= 0.6
                elif rate > 0.40:
                    scale *= 1.5
                window = 0
        kept = n_samples - n_burn
        return draws[n_burn:], lps[n_burn:], accepted / kept if kept else np.nan

    def fit_posterior(self, data: ObservationsLike, mcmc: Optional[MCMCConfig] = None,
                      start: Optional[FitResult] = None) -> FitResult:
        """
        Random-walk Metropolis over the free parameters.

        Chains start near the maximum-likelihood point (computed unless
        `start` is given) and use its Hessian covariance as the proposal
        shape when available.
        """
        mcmc = mcmc or MCMCConfig()
        t, y, N = self._prepare(data)
        point = start or self.fit_point(data)
        x_hat = np.array([point.estimates[n] for n in self.free])
        cov = point.diagnostics.get("covariance")
        if cov is not None:
            proposal = np.asarray(cov) * (2.38 ** 2 / self.n_free)
        else:
            proposal = np.diag((mcmc.proposal_scale * (self.upper - self.lower)) ** 2)
        chol = np.linalg.cholesky(proposal)

        n_burn = int(mcmc.n_samples * mcmc.burn_in)
        seeds = np.random.SeedSequence(mcmc.seed).spawn(mcmc.n_chains)
        logger.info("MCMC for %s: %d chains x %d draws (%d burn-in)",
                    self.model.name, mcmc.n_chains, mcmc.n_samples, n_burn)
        self._unstable = 0
        chains, log_posts, acceptance = [], [], []
        for c, ss in enumerate(seeds):
            rng = np.random.default_rng(ss)
            x0 = x_hat
            for _ in range(100):
                candidate = np.clip(x_hat + 2.0 * (chol @ rng.standard_normal(self.n_free)), self.lower, self.upper)
                if np.isfinite(self.log_posterior(candidate, t, y, N)):
                    x0 = candidate
                    break
            draws, lps, acc = self._chain(x0, chol, mcmc.n_samples, n_burn, mcmc.adapt, rng, t, y, N)
            logger.debug("chain %d: acceptance %.3f", c, acc)
            chains.append(draws)
            log_posts.append(lps)
            acceptance.append(acc)

        stacked = np.stack(chains)
        rhat = gelman_rubin(stacked)
        converged = bool(np.all(np.isfinite(rhat)) and np.all(rhat < mcmc.rhat_threshold))
        if not converged:
            logger.warning("%s MCMC not converged: R-hat %s", self.model.name,
                           dict(zip(self.free, np.round(rhat, 3))))

        flat = stacked.reshape(-1, self.n_free)
        samples = pd.DataFrame(flat, columns=list(self.free))
        samples.insert(0, "chain", np.repeat(np.arange(mcmc.n_chains), stacked.shape[1]))
        samples["log_posterior"] = np.concatenate(log_posts)
        r0_draws = [
            self.model.basic_reproduction_number({n: full[n] for n in self.model.parameter_names})
            for full in (self.full_parameters(row) for row in flat)
        ]
        samples["r0"] = r0_draws

        median = np.median(flat, axis=0)
        lo, hi = np.percentile(flat, [2.5, 97.5], axis=0)
        full = self.full_parameters(median)
        ll = self.log_likelihood(median, t, y, N)
        return FitResult(
            model=self.model.name,
            method="mcmc",
            estimates=dict(zip(self.free, map(float, median))),
            params=full,
            intervals={n: (float(a), float(b)) for n, a, b in zip(self.free, lo, hi)},
            log_likelihood=float(ll),
            n_params=self.n_free,
            n_obs=len(y),
            converged=converged,
            r0=float(np.median(r0_draws)),
            trajectory=self.simulate(full, t, N) if np.isfinite(ll) else None,
            samples=samples,
            diagnostics={
                "message": "R-hat below threshold" if converged else "R-hat above threshold",
                "rhat": dict(zip(self.free, map(float, rhat))),
                "max_rhat": float(np.nanmax(rhat)) if np.any(np.isfinite(rhat)) else np.nan,
                "acceptance": acceptance,
                "posterior_mean": dict(zip(self.free, map(float, flat.mean(axis=0)))),
                "n_kept": int(flat.shape[0]),
                "burn_in": n_burn,
                "unstable_evaluations": self._unstable,
            },
        )

    def fit(self, data: ObservationsLike, method: str = "mle", **kwargs) -> FitResult:
        if method == "mle":
            return self.fit_point(data)
        if method == "mcmc":
            return self.fit_posterior(data, **kwargs)
        raise ConfigurationError(f"method must be 'mle' or 'mcmc', got {method!r}")
