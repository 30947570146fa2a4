"""
===========================================================
experiments.py
Last Updated: 2026-10-19
===========================================================

Description:
    Parameter sweeps for any deterministic model family: run
    the integrator over the Cartesian product of parameter
    values and collect tidy summary statistics.

Example Usage:
    from epidynamics.experiments import grid_sweep, pivot_for_plot
    from epidynamics.models import SIR
    df = grid_sweep(SIR, {"beta": betas, "gamma": gammas},
                    initial_state={"S": 999, "I": 1}, t_span=(0, 160))
    X, Y, Z = pivot_for_plot(df, x="beta", y="gamma", value="final_size")

Notes:
    - One row per parameter combination, sorted by the swept
      parameters in the order given.
    - pivot_for_plot only reshapes; drawing is left to the caller.
-----------------------------------------------------------
License: MIT
===========================================================
"""
from __future__ import annotations

from itertools import product
from typing import Dict, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .config import IntegratorConfig
from .deterministic import DeterministicIntegrator
from .errors import ConfigurationError
from .interventions import InterventionSchedule
from .models import CompartmentalModel


def _summarize_one(integrator: DeterministicIntegrator, params: Dict[str, float],
                   initial_state: Mapping[str, float], t_span, dt) -> Dict[str, float]:
    """Run one simulation and return a dict of summary statistics"""
    traj = integrator.run(params, initial_state, t_span=t_span, dt=dt)
    infectious = integrator.model.infectious[0]
    return {
        **params,
        "R0": integrator.model.basic_reproduction_number(params),
        **traj.summary(infectious),
    }


def grid_sweep(
        model: CompartmentalModel,
        grid: Mapping[str, Sequence[float]],
        initial_state: Mapping[str, float],
        fixed: Optional[Mapping[str, float]] = None,
        t_span: Tuple[float, float] = (0.0, 160.0),
        dt: float = 1.0,
        config: Optional[IntegratorConfig] = None,
        schedule: Optional[InterventionSchedule] = None,
) -> pd.DataFrame:
    """
    Evaluate the model across a grid of parameter values. Returns a tidy
    DataFrame with one row per combination: the parameters, R0, peak_day,
    peak_infected, peak_prevalence, final_size and max_incidence.
    """
    fixed = dict(fixed or {})
    names = list(grid)
    clash = set(names) & set(fixed)
    if clash:
        raise ConfigurationError(f"parameters both swept and fixed: {sorted(clash)}")
    integrator = DeterministicIntegrator(model, config, schedule)
    records = []
    for values in product(*(grid[n] for n in names)):
        params = {**fixed, **{n: float(v) for n, v in zip(names, values)}}
        records.append(_summarize_one(integrator, params, initial_state, t_span, dt))
    df = pd.DataFrame.from_records(records)
    return df.sort_values(names).reset_index(drop=True)


def pivot_for_plot(df: pd.DataFrame, x: str, y: str, value: str):
    """Pivot a DataFrame to 2D arrays for plotting (heatmaps/contour)
    Return X_grid, Y_grid, Z_values
    """
    table = df.pivot_table(index=y, columns=x, values=value, aggfunc="first").sort_index().sort_index(axis=1)
    X, Y = np.meshgrid(table.columns.to_numpy(dtype=float), table.index.to_numpy(dtype=float))
    return X, Y, table.to_numpy(dtype=float)   # rows: y, cols: x
