"""
===========================================================
state.py
Last Updated: 2026-10-19
===========================================================

Description:
    Compartment state vectors and the read-only Trajectory
    produced by every simulator.

    Defines:
        - validate_state(): checks a CompartmentState mapping and
                            converts it to an ordered vector
        - state_dict(): vector -> {compartment: value}
        - Trajectory: (time, CompartmentState) sequence with
                      incidence, flags and summary helpers
        - stack_states(), StratifiedResult: per-region / per-band
                      input states and outputs of joint runs

Notes:
    - Arrays inside a Trajectory are copied and marked
      non-writeable on construction.
    - incidence[k] is new infections in (t[k-1], t[k]];
      incidence[0] is always 0.
-----------------------------------------------------------
License: MIT
===========================================================
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterator, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .errors import ConfigurationError

CompartmentState = Dict[str, float]


def validate_state(state: Mapping[str, float], compartments: Sequence[str]) -> np.ndarray:
    """Validate a CompartmentState against a model's compartment order.

    Compartments missing from the mapping are taken as zero; unknown keys,
    negative or non-finite counts and an empty population are rejected.
    """
    unknown = set(state) - set(compartments)
    if unknown:
        raise ConfigurationError(f"unknown compartments {sorted(unknown)}; expected {list(compartments)}")
    y = np.array([float(state.get(c, 0.0)) for c in compartments], dtype=float)
    if not np.all(np.isfinite(y)):
        raise ConfigurationError("compartment values must be finite")
    if np.any(y < 0):
        raise ConfigurationError("compartment values must be non-negative")
    if y.sum() <= 0:
        raise ConfigurationError("total population must be positive")
    return y


def state_dict(y: np.ndarray, compartments: Sequence[str]) -> CompartmentState:
    return {c: float(v) for c, v in zip(compartments, y)}


def _frozen(a: np.ndarray, dtype=None) -> np.ndarray:
    out = np.array(a, dtype=dtype, copy=True)
    out.flags.writeable = False
    return out


@dataclass(frozen=True)
class Trajectory:
    """
    Ordered (time, CompartmentState) pairs from one simulator invocation.

    Attributes:
    -----------
    times: np.ndarray
        Reporting times, shape (T,)
    values: np.ndarray
        Compartment counts, shape (T, C), columns in `compartments` order
    compartments: tuple of str
        Compartment names
    incidence: np.ndarray, optional
        New infections per reporting interval, shape (T,)
    flags: tuple of str
        Numerical-stability notes raised while producing the run
    metadata: dict
        Free-form run description (model name, method, seed, ...)
    """
    times: np.ndarray
    values: np.ndarray
    compartments: Tuple[str, ...]
    incidence: Optional[np.ndarray] = None
    flags: Tuple[str, ...] = ()
    metadata: Dict[str, object] = field(default_factory=dict)

    def __post_init__(self):
        times = np.asarray(self.times, dtype=float)
        values = np.asarray(self.values)
        if values.ndim != 2 or values.shape != (len(times), len(self.compartments)):
            raise ConfigurationError(
                f"values shape {values.shape} does not match {len(times)} times x {len(self.compartments)} compartments"
            )
        object.__setattr__(self, "times", _frozen(times))
        object.__setattr__(self, "values", _frozen(values))
        object.__setattr__(self, "compartments", tuple(self.compartments))
        object.__setattr__(self, "flags", tuple(self.flags))
        if self.incidence is not None:
            inc = np.asarray(self.incidence)
            if inc.shape != times.shape:
                raise ConfigurationError("incidence must have one entry per time point")
            object.__setattr__(self, "incidence", _frozen(inc))

    def __len__(self) -> int:
        return len(self.times)

    def __getitem__(self, compartment: str) -> np.ndarray:
        try:
            return self.values[:, self.compartments.index(compartment)]
        except ValueError:
            raise KeyError(compartment) from None

    def __iter__(self) -> Iterator[Tuple[float, CompartmentState]]:
        for k in range(len(self.times)):
            yield float(self.times[k]), state_dict(self.values[k], self.compartments)

    def state_at(self, index: int) -> CompartmentState:
        return state_dict(self.values[index], self.compartments)

    @property
    def final_state(self) -> CompartmentState:
        return self.state_at(-1)

    @property
    def totals(self) -> np.ndarray:
        """Population total at each reported time"""
        return self.values.sum(axis=1)

    @property
    def population(self) -> float:
        return float(self.values[0].sum())

    @property
    def cumulative_incidence(self) -> np.ndarray:
        if self.incidence is None:
            raise ValueError("trajectory does not carry incidence")
        return np.cumsum(self.incidence)

    def resample(self, grid: Sequence[float]) -> "Trajectory":
        """Sample onto `grid` holding the last reported state (event-driven runs).

        Grid points past the final time keep the final (absorbed) state.
        """
        grid = np.asarray(grid, dtype=float)
        idx = np.searchsorted(self.times, grid, side="right") - 1
        idx = np.clip(idx, 0, len(self.times) - 1)
        incidence = None
        if self.incidence is not None:
            cum = self.cumulative_incidence[idx]
            incidence = np.concatenate(([0.0], np.diff(cum)))
        return Trajectory(
            times=grid,
            values=self.values[idx],
            compartments=self.compartments,
            incidence=incidence,
            flags=self.flags,
            metadata={**self.metadata, "resampled": True},
        )

    def to_dataframe(self) -> pd.DataFrame:
        """Tidy wide table: one row per time, one column per compartment"""
        df = pd.DataFrame(self.values, columns=list(self.compartments))
        df.insert(0, "t", self.times)
        if self.incidence is not None:
            df["incidence"] = self.incidence
        return df

    def summary(self, infectious: str = "I") -> Dict[str, float]:
        """Peak timing/size and final epidemic size as fractions of N"""
        I = self[infectious]
        N0 = self.population
        peak_idx = int(np.argmax(I))
        never_infected = self["S"][-1] if "S" in self.compartments else 0.0
        vaccinated = self["V"][-1] if "V" in self.compartments else 0.0
        out = {
            "peak_day": float(self.times[peak_idx]),
            "peak_infected": float(I[peak_idx]),
            "peak_prevalence": float(I[peak_idx] / N0),
            "final_size": float((N0 - never_infected - vaccinated) / N0),
        }
        if self.incidence is not None:
            out["max_incidence"] = float(np.max(self.incidence))
        return out


def stack_states(states: Mapping[str, Mapping[str, float]] | Sequence[Mapping[str, float]],
                 names: Sequence[str], compartments: Sequence[str]) -> np.ndarray:
    """Per-stratum CompartmentStates -> (C, K) array, columns in `names` order.

    `states` is either a mapping stratum name -> CompartmentState or a
    sequence of CompartmentStates in stratum order.
    """
    if isinstance(states, Mapping):
        unknown = set(states) - set(names)
        if unknown:
            raise ConfigurationError(f"unknown strata {sorted(unknown)}")
        missing = [n for n in names if n not in states]
        if missing:
            raise ConfigurationError(f"no initial state for {missing}")
        ordered = [states[n] for n in names]
    else:
        ordered = list(states)
        if len(ordered) != len(names):
            raise ConfigurationError(f"expected {len(names)} initial states, got {len(ordered)}")
    columns = []
    for name, state in zip(names, ordered):
        unknown = set(state) - set(compartments)
        if unknown:
            raise ConfigurationError(f"{name}: unknown compartments {sorted(unknown)}")
        y = np.array([float(state.get(c, 0.0)) for c in compartments], dtype=float)
        if not np.all(np.isfinite(y)) or np.any(y < 0):
            raise ConfigurationError(f"{name}: compartment values must be finite and non-negative")
        columns.append(y)
    Y = np.column_stack(columns)
    if Y.sum() <= 0:
        raise ConfigurationError("total population must be positive")
    return Y


@dataclass(frozen=True)
class StratifiedResult:
    """
    Jointly integrated strata (regions or age bands).

    Attributes:
    strata: tuple of str. Stratum names in column order
    trajectories: dict. Stratum name -> Trajectory
    aggregate: Trajectory. Compartments summed over strata
    """
    strata: Tuple[str, ...]
    trajectories: Dict[str, Trajectory]
    aggregate: Trajectory

    @classmethod
    def from_arrays(cls, times: np.ndarray, values: np.ndarray, incidence: np.ndarray,
                    compartments: Sequence[str], strata: Sequence[str],
                    flags: Sequence[str] = (), metadata: Optional[Mapping[str, object]] = None):
        """values: (T, C*K) flattened compartment-major; incidence: (T, K)"""
        C, K = len(compartments), len(strata)
        cube = np.asarray(values).reshape(len(times), C, K)
        incidence = np.asarray(incidence).reshape(len(times), K)
        meta = dict(metadata or {})
        trajectories = {
            name: Trajectory(times, cube[:, :, k], compartments, incidence=incidence[:, k],
                             flags=flags, metadata={**meta, "stratum": name})
            for k, name in enumerate(strata)
        }
        aggregate = Trajectory(times, cube.sum(axis=2), compartments, incidence=incidence.sum(axis=1),
                               flags=flags, metadata={**meta, "stratum": "aggregate"})
        return cls(strata=tuple(strata), trajectories=trajectories, aggregate=aggregate)

    def __getitem__(self, name: str) -> Trajectory:
        return self.trajectories[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self.strata)

    def __len__(self) -> int:
        return len(self.strata)

    def to_dataframe(self) -> pd.DataFrame:
        """Long table: the per-stratum wide tables stacked with a `stratum` column"""
        frames = []
        for name in self.strata:
            df = self.trajectories[name].to_dataframe()
            df.insert(1, "stratum", name)
            frames.append(df)
        return pd.concat(frames, ignore_index=True)

    def summary(self, infectious: str = "I") -> pd.DataFrame:
        rows = {name: self.trajectories[name].summary(infectious) for name in self.strata}
        rows["aggregate"] = self.aggregate.summary(infectious)
        return pd.DataFrame.from_dict(rows, orient="index")
