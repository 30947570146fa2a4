"""
===========================================================
metapopulation.py
Last Updated: 2026-10-19
===========================================================

Description:
    K regions running the same model family, coupled by
    movement between regions. For compartment X in region i:

        dX_i/dt = local_i(X) + sum_j M[j, i] * X_j - X_i * sum_j M[i, j]

    M is the MobilityMatrix (per-capita movement rate from
    row region to column region). The diagonal is ignored
    and rows need not sum to one.

    All regions are stacked into one (C, K) state and solved
    as a single ODE system through integrate_system, so every
    region sees the others' values at the same instant.

Notes:
    - Parameters may be scalars or length-K arrays (per-region
      transmission, recovery, ...).
    - Interventions may be one schedule for all regions or one
      schedule per region.
    - Non-mixing compartments (the dead in SIRD) do not move.
-----------------------------------------------------------
License: MIT
===========================================================
"""
from __future__ import annotations

import logging
from typing import Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from .config import IntegratorConfig
from .deterministic import SystemRHS, integrate_system, time_grid
from .errors import ConfigurationError
from .interventions import NO_INTERVENTION, InterventionSchedule
from .models import CompartmentalModel
from .state import StratifiedResult, stack_states

logger = logging.getLogger(__name__)

ScheduleLike = Union[None, InterventionSchedule, Sequence[InterventionSchedule]]


class MetapopulationResult(StratifiedResult):
    """Per-region trajectories (result["north"]) plus the aggregate over regions"""


def validate_mobility(mobility, n_regions: Optional[int] = None) -> np.ndarray:
    """Square, finite, non-negative matrix with the diagonal zeroed"""
    M = np.array(mobility, dtype=float, copy=True)
    if M.ndim != 2 or M.shape[0] != M.shape[1]:
        raise ConfigurationError(f"mobility matrix must be square, got shape {M.shape}")
    if n_regions is not None and M.shape[0] != n_regions:
        raise ConfigurationError(f"mobility matrix is {M.shape[0]}x{M.shape[0]} but there are {n_regions} regions")
    if not np.all(np.isfinite(M)):
        raise ConfigurationError("mobility rates must be finite")
    if np.any(M < 0):
        raise ConfigurationError("mobility rates must be non-negative")
    np.fill_diagonal(M, 0.0)
    M.flags.writeable = False
    return M


class MetapopulationModel:
    """
    Coupled multi-region deterministic model.

    Parameters:
    -----------
    model: CompartmentalModel
        Family shared by every region
    mobility: array-like, shape (K, K)
        mobility[i, j] is the per-capita rate of movement from region i to j
    regions: sequence of str, optional
        Region names; defaults to "region_0" ... "region_{K-1}"
    config: IntegratorConfig, optional
    schedule: InterventionSchedule or a sequence of K schedules, optional
    """
    def __init__(self, model: CompartmentalModel, mobility, regions: Optional[Sequence[str]] = None,
                 config: Optional[IntegratorConfig] = None, schedule: ScheduleLike = None):
        n = np.shape(mobility)[0] if np.ndim(mobility) >= 1 else 0
        if regions is None:
            regions = [f"region_{k}" for k in range(n)]
        self.regions: Tuple[str, ...] = tuple(regions)
        if len(set(self.regions)) != len(self.regions):
            raise ConfigurationError("region names must be unique")
        self.mobility = validate_mobility(mobility, len(self.regions))
        self.model = model
        self.config = config or IntegratorConfig()
        self.schedules = self._schedules(schedule)
        self._moving = np.array([c not in model.non_mixing for c in model.compartments], dtype=float)[:, None]

    @property
    def n_regions(self) -> int:
        return len(self.regions)

    def _schedules(self, schedule: ScheduleLike) -> Tuple[InterventionSchedule, ...]:
        if schedule is None or isinstance(schedule, InterventionSchedule):
            return (schedule or NO_INTERVENTION,) * self.n_regions
        schedules = tuple(schedule)
        if len(schedules) != self.n_regions:
            raise ConfigurationError(f"expected {self.n_regions} schedules, got {len(schedules)}")
        return schedules

    def rhs(self, params: Mapping[str, float]) -> SystemRHS:
        model, M, moving = self.model, self.mobility, self._moving
        schedules = self.schedules
        C, K = len(model.compartments), self.n_regions
        out_rate = M.sum(axis=1)

        def _rhs(t, y):
            Y = y.reshape(C, K)
            factor = np.array([s.factor(t) for s in schedules])
            dY, new_inf = model.derivatives(Y, params, factor)
            dY = dY + moving * (Y @ M - Y * out_rate)
            return dY.ravel(), new_inf
        return _rhs

    def breakpoints(self) -> np.ndarray:
        pts = [s.breakpoints() for s in self.schedules]
        return np.unique(np.concatenate(pts)) if pts else np.array([])

    def run(
            self,
            params: Mapping[str, float],
            initial_state,
            t_span: Tuple[float, float] = (0.0, 100.0),
            dt: float = 1.0,
            t_eval: Optional[Sequence[float]] = None,
    ) -> MetapopulationResult:
        """
        Solve all regions jointly.

        initial_state: mapping region -> CompartmentState, or a sequence of K states
        """
        params = self.model.validate_parameters(params, n_strata=self.n_regions)
        Y0 = stack_states(initial_state, self.regions, self.model.compartments)
        times = time_grid(t_span, dt) if t_eval is None else np.asarray(t_eval, dtype=float)
        logger.info("metapopulation run: %s x %d regions, %d reporting times",
                    self.model.name, self.n_regions, len(times))
        values, incidence, flags = integrate_system(
            self.rhs(params), Y0.ravel(), times, self.config, dt=dt, breakpoints=self.breakpoints(),
        )
        return MetapopulationResult.from_arrays(
            times, values, incidence, self.model.compartments, self.regions, flags=flags,
            metadata={"model": self.model.name, "method": self.config.method, "params": dict(params)},
        )
