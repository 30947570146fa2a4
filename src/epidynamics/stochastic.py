"""
===========================================================
stochastic.py
Last Updated: 2026-10-19
===========================================================

Description:
    Discrete-state stochastic simulation of the same flows the
    deterministic integrator solves. Reactions are taken from
    the model's Transition descriptors, so the loop below is
    generic over model families.

    Defines:
        - StochasticSimulator.run(): one realization, either
            "exact"    Gillespie direct method, event by event
            "tau_leap" Poisson counts per fixed interval tau
        - run_ensemble(): many independent realizations with
                          spawned random streams, optionally in
                          worker processes
        - EnsembleResult: realizations on a common grid with
                          mean/median/quantile summaries

Notes:
    - Both modes stop at t_max or when every "infected"
      compartment of the model is empty, whichever is first.
    - Tau-leap: if a compartment cannot cover all reactions
      drawing from it, those reaction counts are scaled down
      in proportion and floored, so no compartment goes
      negative and no reaction is favoured by ordering.
    - Rates are re-evaluated at every intervention breakpoint,
      so a window opening between events takes effect on time.
    - Each realization owns its random stream; ensemble output
      does not depend on worker scheduling.
-----------------------------------------------------------
License: MIT
===========================================================
"""
from __future__ import annotations

import logging
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from .config import StochasticConfig
from .deterministic import time_grid
from .errors import ConfigurationError
from .interventions import NO_INTERVENTION, InterventionSchedule
from .models import CompartmentalModel
from .state import Trajectory, validate_state

logger = logging.getLogger(__name__)

SeedLike = Union[None, int, np.random.SeedSequence, np.random.Generator]


def integer_state(state: Mapping[str, float], compartments: Sequence[str]) -> np.ndarray:
    y = validate_state(state, compartments)
    if not np.all(np.equal(np.mod(y, 1.0), 0.0)):
        raise ConfigurationError("stochastic simulation needs integer compartment counts")
    return y.astype(np.int64)


class StochasticSimulator:
    """
    Stochastic event simulator for one model family.

    Parameters:
    -----------
    model: CompartmentalModel
    config: StochasticConfig, optional
        method ("exact" or "tau_leap"), tau, max_events
    schedule: InterventionSchedule, optional
        Evaluated at the current event time (exact) or at the start
        of each interval (tau-leap). Waiting times are redrawn and
        tau-leap intervals are cut at every schedule breakpoint
    """
    def __init__(self, model: CompartmentalModel, config: Optional[StochasticConfig] = None,
                 schedule: Optional[InterventionSchedule] = None):
        self.model = model
        self.config = config or StochasticConfig()
        self.schedule = schedule or NO_INTERVENTION
        self._reactions = model.reactions()
        self._deltas = np.array([r.delta for r in self._reactions], dtype=np.int64)   # (R, C)
        self._is_incidence = np.array([r.transition.incidence for r in self._reactions])
        # index of the single compartment each reaction draws from (-1 for inflows)
        self._sources = np.array([
            model.index(r.transition.source) if r.transition.source is not None else -1
            for r in self._reactions
        ])
        self._breakpoints = self.schedule.breakpoints()

    def _next_breakpoint(self, t: float) -> float:
        """First schedule breakpoint strictly after t (inf when none)"""
        k = int(np.searchsorted(self._breakpoints, t, side="right"))
        return float(self._breakpoints[k]) if k < len(self._breakpoints) else np.inf

    def _rates(self, y: np.ndarray, params: Mapping[str, float], t: float) -> np.ndarray:
        ym = self.model.as_mapping(y.astype(float))
        foi = self.model.force_of_infection(ym, params, self.schedule.factor(t))
        return np.array([float(r.transition.rate(ym, params, foi)) for r in self._reactions])

    def run(self, params: Mapping[str, float], initial_state: Mapping[str, float], t_max: float,
            seed: SeedLike = None) -> Trajectory:
        """One realization from t=0 to t_max (or absorption)"""
        params = self.model.validate_parameters(params)
        y0 = integer_state(initial_state, self.model.compartments)
        if not t_max > 0:
            raise ConfigurationError("t_max must be positive")
        rng = seed if isinstance(seed, np.random.Generator) else np.random.default_rng(seed)
        if self.config.method == "exact":
            return self._exact(params, y0, float(t_max), rng)
        return self._tau_leap(params, y0, float(t_max), rng)

    def _finish(self, times, states, incidence, params, termination, flags=()) -> Trajectory:
        return Trajectory(
            times=np.asarray(times, dtype=float),
            values=np.asarray(states, dtype=np.int64),
            compartments=self.model.compartments,
            incidence=np.asarray(incidence, dtype=np.int64),
            flags=tuple(flags),
            metadata={"model": self.model.name, "method": self.config.method,
                      "params": dict(params), "termination": termination},
        )

    def _exact(self, params, y0, t_max, rng) -> Trajectory:
        y = y0.copy()
        t = 0.0
        times, states, incidence = [t], [y.copy()], [0]
        n_events = 0
        max_events = self.config.max_events
        termination = "horizon"

        while True:
            if self.model.is_absorbed(y):
                termination = "absorbed"
                break
            rates = self._rates(y, params, t)
            total = rates.sum()
            if total <= 0:
                boundary = self._next_breakpoint(t)
                if boundary < t_max:
                    t = boundary
                    continue
                termination = "no_events"
                break
            t_next = t + rng.exponential(1.0 / total)
            if t_next > t_max:
                break
            boundary = self._next_breakpoint(t)
            if t_next > boundary:
                # rates change at the boundary; redraw the waiting time from there
                t = boundary
                continue
            j = int(np.searchsorted(np.cumsum(rates), rng.random() * total, side="right"))
            j = min(j, len(rates) - 1)
            y = y + self._deltas[j]
            t = t_next
            times.append(t)
            states.append(y.copy())
            incidence.append(int(self._is_incidence[j]))
            n_events += 1
            if max_events is not None and n_events >= max_events:
                termination = "max_events"
                break

        if termination == "horizon" and times[-1] < t_max:
            times.append(t_max)
            states.append(y.copy())
            incidence.append(0)
        logger.debug("exact run ended (%s) after %d events at t=%.4g", termination, n_events, times[-1])
        return self._finish(times, states, incidence, params, termination)

    def _tau_leap(self, params, y0, t_max, rng) -> Trajectory:
        tau = self.config.tau
        y = y0.copy()
        t = 0.0
        times, states, incidence = [t], [y.copy()], [0]
        n_clamped = 0
        termination = "horizon"

        while t < t_max - 1e-12:
            if self.model.is_absorbed(y):
                termination = "absorbed"
                break
            h = min(tau, t_max - t, self._next_breakpoint(t) - t)
            rates = self._rates(y, params, t)
            counts = rng.poisson(rates * h).astype(np.int64)
            for c in range(len(y)):
                drawing = self._sources == c
                demand = counts[drawing].sum()
                if demand > y[c]:
                    counts[drawing] = np.floor(counts[drawing] * (y[c] / demand)).astype(np.int64)
                    n_clamped += 1
            y = y + counts @ self._deltas
            t += h
            times.append(t)
            states.append(y.copy())
            incidence.append(int(counts[self._is_incidence].sum()))

        flags = [f"tau-leap clamped over-drawn compartments {n_clamped} times"] if n_clamped else []
        return self._finish(times, states, incidence, params, termination, flags)


def _run_one(job):
    simulator, params, initial_state, t_max, seed_seq = job
    return simulator.run(params, initial_state, t_max, seed=np.random.default_rng(seed_seq))


@dataclass(frozen=True)
class EnsembleResult:
    """
    Independent realizations resampled onto a common grid.

    Attributes:
    grid: np.ndarray. Common reporting times, shape (T,)
    samples: np.ndarray. Counts, shape (n_runs, T, C)
    incidence: np.ndarray. New infections per grid interval, shape (n_runs, T)
    compartments: tuple of str
    realizations: tuple of Trajectory. The raw event-level runs
    """
    grid: np.ndarray
    samples: np.ndarray
    incidence: np.ndarray
    compartments: Tuple[str, ...]
    realizations: Tuple[Trajectory, ...]
    infected: Tuple[str, ...] = ("I",)

    @property
    def n_runs(self) -> int:
        return self.samples.shape[0]

    def _col(self, compartment: str) -> np.ndarray:
        return self.samples[:, :, self.compartments.index(compartment)]

    def mean(self) -> Trajectory:
        return Trajectory(self.grid, self.samples.mean(axis=0), self.compartments,
                          incidence=self.incidence.mean(axis=0), metadata={"statistic": "mean"})

    def median(self) -> Trajectory:
        return Trajectory(self.grid, np.median(self.samples, axis=0), self.compartments,
                          incidence=np.median(self.incidence, axis=0), metadata={"statistic": "median"})

    def envelope(self, compartment: str, lower: float = 2.5, upper: float = 97.5) -> Dict[str, np.ndarray]:
        """Percentile envelope (and median) of one compartment across runs"""
        lo, med, hi = np.percentile(self._col(compartment), [lower, 50.0, upper], axis=0)
        return {"lower": lo, "median": med, "upper": hi}

    def final_sizes(self) -> np.ndarray:
        """Total infections per run (cumulative incidence plus the initially infected)"""
        seeded = sum(self._col(c)[:, 0] for c in self.infected)
        return self.incidence.sum(axis=1) + seeded

    def to_dataframe(self, lower: float = 2.5, upper: float = 97.5) -> pd.DataFrame:
        """Tidy summary: one row per (t, compartment) with mean/median/envelope"""
        frames = []
        for c in self.compartments:
            env = self.envelope(c, lower, upper)
            frames.append(pd.DataFrame({
                "t": self.grid, "compartment": c,
                "mean": self._col(c).mean(axis=0),
                "median": env["median"], "lower": env["lower"], "upper": env["upper"],
            }))
        return pd.concat(frames, ignore_index=True)


def run_ensemble(
        simulator: StochasticSimulator,
        params: Mapping[str, float],
        initial_state: Mapping[str, float],
        t_max: float,
        n_runs: int = 100,
        seed: Optional[int] = None,
        grid: Optional[Sequence[float]] = None,
        max_workers: Optional[int] = None,
) -> EnsembleResult:
    """
    Run n_runs independent realizations with identical parameters.

    Each run gets its own child of SeedSequence(seed), so the ensemble is
    reproducible for a fixed seed regardless of max_workers.
    max_workers > 1 distributes runs over a ProcessPoolExecutor.
    """
    if n_runs <= 0:
        raise ConfigurationError("n_runs must be positive")
    children = np.random.SeedSequence(seed).spawn(n_runs)
    jobs = [(simulator, dict(params), dict(initial_state), t_max, child) for child in children]
    logger.info("running %d %s realizations (%s, workers=%s)",
                n_runs, simulator.model.name, simulator.config.method, max_workers or 1)

    if max_workers is not None and max_workers > 1:
        with ProcessPoolExecutor(max_workers=max_workers) as executor:
            runs = list(executor.map(_run_one, jobs))
    else:
        runs = [_run_one(job) for job in jobs]

    grid = time_grid((0.0, t_max), 1.0) if grid is None else np.asarray(grid, dtype=float)
    resampled = [run.resample(grid) for run in runs]
    return EnsembleResult(
        grid=grid,
        samples=np.stack([r.values for r in resampled]),
        incidence=np.stack([r.incidence for r in resampled]),
        compartments=simulator.model.compartments,
        realizations=tuple(runs),
        infected=simulator.model.infected,
    )
