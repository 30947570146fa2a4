"""
===========================================================
deterministic.py
Last Updated: 2026-10-19
===========================================================

Description:
    Deterministic integration of compartmental flow equations.

    Defines:
        - integrate_system(): generic driver for any flat ODE
                              system (used by the single-population,
                              metapopulation and age-structured paths)
        - DeterministicIntegrator: model-aware wrapper producing
                                   a Trajectory
        - integrate(): one-call convenience

    Methods:
        - "euler": first order, fixed step
        - "rk4":   classic Runge-Kutta 4th order, fixed step
        - "RK45" (default), "DOP853", "LSODA", ...: adaptive
          scipy.integrate.solve_ivp

Notes:
    - Cumulative new infections ride along as an extra state
      component; incidence is its per-interval difference.
    - Population conservation is checked at every reported
      step to IntegratorConfig.conservation_tol (relative).
    - Negative values are clamped to zero, flagged on the
      trajectory and reported with NumericalStabilityWarning.
      Integration always continues from the clamped state
      (adaptive solves restart at the clamped report).
    - Tolerance failures are retried with a halved step (fixed
      step) or 10x tighter rtol/atol (adaptive), at most
      max_step_reductions times, then NumericalInstability.
-----------------------------------------------------------
License: MIT
===========================================================
"""
from __future__ import annotations

import logging
import warnings
from typing import Callable, List, Mapping, Optional, Sequence, Tuple

import numpy as np
from scipy.integrate import solve_ivp

from .config import IntegratorConfig
from .errors import ConfigurationError, NumericalInstability, NumericalStabilityWarning
from .interventions import NO_INTERVENTION, InterventionSchedule
from .models import CompartmentalModel
from .state import Trajectory, validate_state

logger = logging.getLogger(__name__)

SystemRHS = Callable[[float, np.ndarray], Tuple[np.ndarray, np.ndarray]]


class _StepFailure(Exception):
    def __init__(self, t: float, message: str):
        super().__init__(message)
        self.t = t


def time_grid(t_span: Tuple[float, float], dt: float) -> np.ndarray:
    """Reporting grid t0, t0+dt, ... ending exactly at t1"""
    t0, t1 = map(float, t_span)
    if not dt > 0:
        raise ConfigurationError("step size dt must be positive")
    if not t1 > t0:
        raise ConfigurationError("t_span must be increasing")
    n = int(np.floor((t1 - t0) / dt + 1e-9))
    grid = t0 + dt * np.arange(n + 1)
    if grid[-1] < t1 - 1e-9 * max(1.0, abs(t1)):
        grid = np.append(grid, t1)
    return grid


def _euler_step(f, t, y, h):
    return y + h * f(t, y)


def _rk4_step(f, t, y, h):
    k1 = f(t, y)
    k2 = f(t + 0.5*h, y + 0.5*h*k1)
    k3 = f(t + 0.5*h, y + 0.5*h*k2)
    k4 = f(t + h, y + h*k3)
    return y + (h/6.0)*(k1 + 2*k2 + 2*k3 + k4)


_FIXED_STEPPERS = {"euler": _euler_step, "rk4": _rk4_step}


class _ClampLog:
    """Collects clamp events for one integration attempt"""
    def __init__(self):
        self.count = 0
        self.first_t: Optional[float] = None
        self.most_negative = 0.0

    def clamp(self, y: np.ndarray, t: float, n_state: int) -> np.ndarray:
        state = y[:n_state]
        neg = state < 0
        if np.any(neg):
            self.count += int(neg.sum())
            self.most_negative = min(self.most_negative, float(state.min()))
            if self.first_t is None:
                self.first_t = float(t)
            y = y.copy()
            y[:n_state] = np.where(neg, 0.0, state)
        return y

    def flags(self) -> List[str]:
        if not self.count:
            return []
        return [f"clamped {self.count} negative compartment values to zero "
                f"(first at t={self.first_t:.6g}, most negative {self.most_negative:.3g})"]


def _solve_fixed(f, y0, times, h, method, n_state, clamp_log):
    step = _FIXED_STEPPERS[method]
    out = np.empty((len(times), len(y0)), dtype=float)
    out[0] = y0
    y = y0
    for k in range(1, len(times)):
        span = times[k] - times[k-1]
        n_sub = max(1, int(np.ceil(span / h - 1e-9)))
        hk = span / n_sub
        t = times[k-1]
        for _ in range(n_sub):
            y = step(f, t, y, hk)
            t += hk
            if not np.all(np.isfinite(y)):
                raise _StepFailure(t, "non-finite state")
            y = clamp_log.clamp(y, t, n_state)
        out[k] = y
    return out


def _solve_adaptive(f, y0, times, method, rtol, atol, breakpoints, n_state, clamp_log):
    inner = [b for b in breakpoints if times[0] < b < times[-1]]
    edges = [times[0], *inner, times[-1]]
    out = np.empty((len(times), len(y0)), dtype=float)
    out[0] = y0
    y = y0
    for a, b in zip(edges[:-1], edges[1:]):
        while a < b:
            idx = np.flatnonzero((times > a) & (times <= b))
            seg_eval = np.unique(np.append(times[idx], b))
            sol = solve_ivp(f, (a, b), y, method=method, t_eval=seg_eval, rtol=rtol, atol=atol)
            if sol.status < 0:
                raise _StepFailure(sol.t[-1] if len(sol.t) else a, sol.message)
            seg = sol.y.T
            negative = np.flatnonzero(np.any(seg[:, :n_state] < 0, axis=1))
            if not len(negative):
                out[idx] = seg[:len(idx)]
                y, a = seg[-1], b
                continue
            # accept up to the first negative report, clamp it and restart from there
            r = int(negative[0])
            y = clamp_log.clamp(seg[r], seg_eval[r], n_state)
            n_ok = min(r, len(idx))
            out[idx[:n_ok]] = seg[:n_ok]
            if r < len(idx):
                out[idx[r]] = y
            a = float(seg_eval[r])
    return out


def integrate_system(
        rhs: SystemRHS,
        y0: np.ndarray,
        times: Sequence[float],
        config: IntegratorConfig,
        dt: Optional[float] = None,
        breakpoints: Sequence[float] = (),
) -> Tuple[np.ndarray, np.ndarray, List[str]]:
    """
    Integrate a flat ODE system and report at `times`.

    Parameters:
    rhs: callable (t, y) -> (dy/dt, new-infection rate)
    y0: flat initial state at times[0]
    times: strictly increasing reporting times
    config: IntegratorConfig
    dt: fixed step size (fixed-step methods); defaults to the smallest reporting interval
    breakpoints: times where the right-hand side is discontinuous (adaptive methods
                 restart there instead of stepping across)

    Returns:
    values: (T, n) state at each reporting time
    incidence: new infections per interval, incidence[0] == 0; shape (T,) for a
               scalar new-infection rate, (T, m) when rhs reports m strata
    flags: list of numerical-stability notes
    """
    y0 = np.asarray(y0, dtype=float).ravel()
    times = np.asarray(times, dtype=float)
    if times.ndim != 1 or len(times) == 0:
        raise ConfigurationError("times must be a non-empty 1-D sequence")
    if len(times) > 1 and np.any(np.diff(times) <= 0):
        raise ConfigurationError("times must be strictly increasing")
    N0 = float(y0.sum())
    n_state = len(y0)
    n_aux = int(np.size(rhs(float(times[0]), y0)[1]))
    if len(times) == 1:
        incidence = np.zeros(1) if n_aux == 1 else np.zeros((1, n_aux))
        return y0[None, :].copy(), incidence, []

    def f_aug(t, y_aug):
        dy, new_inf = rhs(t, y_aug[:n_state])
        return np.concatenate((np.ravel(dy), np.ravel(np.asarray(new_inf, dtype=float))))

    y_aug0 = np.concatenate((y0, np.zeros(n_aux)))
    if dt is None:
        dt = float(np.min(np.diff(times)))
    failure_t, reason = None, ""

    for attempt in range(config.max_step_reductions + 1):
        clamp_log = _ClampLog()
        try:
            if config.adaptive:
                scale = 10.0 ** attempt
                raw = _solve_adaptive(f_aug, y_aug0, times, config.method,
                                      config.rtol / scale, config.atol / scale, breakpoints,
                                      n_state, clamp_log)
            else:
                raw = _solve_fixed(f_aug, y_aug0, times, dt / 2 ** attempt, config.method,
                                   n_state, clamp_log)
        except _StepFailure as exc:
            failure_t, reason = exc.t, str(exc)
            logger.debug("integration attempt %d failed at t=%.4g: %s", attempt, exc.t, exc)
            continue

        values, cumulative = raw[:, :n_state], raw[:, n_state:]
        drift = np.abs(values.sum(axis=1) - N0) / N0
        bad = drift > config.conservation_tol
        if not np.any(bad):
            incidence = np.vstack((np.zeros((1, n_aux)), np.maximum(np.diff(cumulative, axis=0), 0.0)))
            if n_aux == 1:
                incidence = incidence[:, 0]
            flags = clamp_log.flags()
            if flags:
                warnings.warn(flags[0], NumericalStabilityWarning, stacklevel=3)
            if attempt:
                flags.append(f"tolerance held after {attempt} step reductions")
            return values, incidence, flags

        k = int(np.argmax(bad))
        failure_t, reason = float(times[k]), f"population drift {drift[k]:.3g} exceeds {config.conservation_tol:g}"
        logger.debug("integration attempt %d: %s at t=%.4g", attempt, reason, failure_t)

    raise NumericalInstability(
        f"{config.method}: {reason} (t={failure_t}) after {config.max_step_reductions} step reductions",
        t=failure_t,
        reductions=config.max_step_reductions,
    )


class DeterministicIntegrator:
    """
    Deterministic solver for one model family.

    Parameters:
    -----------
    model: CompartmentalModel
    config: IntegratorConfig, optional
    schedule: InterventionSchedule, optional
        Multiplier on beta over time
    """
    def __init__(self, model: CompartmentalModel, config: Optional[IntegratorConfig] = None,
                 schedule: Optional[InterventionSchedule] = None):
        self.model = model
        self.config = config or IntegratorConfig()
        self.schedule = schedule or NO_INTERVENTION

    def rhs(self, params: Mapping[str, float]) -> SystemRHS:
        model, schedule = self.model, self.schedule

        def _rhs(t, y):
            return model.derivatives(y, params, schedule.factor(t))
        return _rhs

    def run(
            self,
            params: Mapping[str, float],
            initial_state: Mapping[str, float],
            t_span: Tuple[float, float] = (0.0, 100.0),
            dt: float = 1.0,
            t_eval: Optional[Sequence[float]] = None,
    ) -> Trajectory:
        """
        Solve from initial_state.

        Parameters:
        params: model parameters (validated; ConfigurationError if out of domain)
        initial_state: CompartmentState at the first reporting time
        t_span: (t0, t1), reported every dt when t_eval is not given
        dt: reporting interval, and the step size for fixed-step methods
        t_eval: explicit reporting times; the initial state is taken at t_eval[0]
        """
        params = self.model.validate_parameters(params)
        y0 = validate_state(initial_state, self.model.compartments)
        times = time_grid(t_span, dt) if t_eval is None else np.asarray(t_eval, dtype=float)
        values, incidence, flags = integrate_system(
            self.rhs(params), y0, times, self.config, dt=dt, breakpoints=self.schedule.breakpoints(),
        )
        return Trajectory(
            times=times,
            values=values,
            compartments=self.model.compartments,
            incidence=incidence,
            flags=tuple(flags),
            metadata={"model": self.model.name, "method": self.config.method, "params": dict(params)},
        )


def integrate(model: CompartmentalModel, params: Mapping[str, float], initial_state: Mapping[str, float],
              t_span: Tuple[float, float] = (0.0, 100.0), dt: float = 1.0, method: str = "RK45",
              schedule: Optional[InterventionSchedule] = None, **config_kwargs) -> Trajectory:
    """Convenience: DeterministicIntegrator(model, IntegratorConfig(method=...)).run(...)"""
    config = IntegratorConfig(method=method, **config_kwargs)
    return DeterministicIntegrator(model, config, schedule).run(params, initial_state, t_span, dt)
