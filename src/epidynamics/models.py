"""
===========================================================
models.py
Last Updated: 2026-10-19
===========================================================

Description:
    Compartmental model families as strategy objects. A model
    is a fixed compartment order, a parameter domain and a
    small closed set of Transition descriptors
    (name, source, target, rate). The same descriptors give
    the ODE right-hand side and the stochastic reactions, so
    no simulator hard-codes a reaction count.

    Families:
        - SIR   (beta, gamma)
        - SEIR  (beta, sigma, gamma)
        - SIRD  (beta, gamma, mu)         D = disease deaths
        - SEIRV (beta, sigma, gamma, nu)  V = vaccinated, S -> V at rate nu

Example Usage:
    from epidynamics.models import get_model
    model = get_model("SEIR")
    dy, new_inf = model.derivatives(y, {"beta": 0.4, "sigma": 0.2, "gamma": 0.1})

Notes:
    - beta: transmission rate (per day)
    - sigma: progression rate E->I (per day) [1/sigma = incubation period]
    - gamma: recovery rate (per day)  [1/gamma = infectious period]
    - Force of infection is frequency dependent: beta * I / N,
      where N counts living compartments only.
    - Rate functions are module-level so models pickle cleanly
      into worker processes.
-----------------------------------------------------------
License: MIT
===========================================================
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional, Tuple

import numpy as np

from .errors import ConfigurationError

RateFn = Callable[[Mapping[str, np.ndarray], Mapping[str, float], np.ndarray], np.ndarray]


# ---------- rate functions: (y, params, force_of_infection) -> flow ----------

def _infection(y, p, foi):
    return foi * y["S"]

def _progression(y, p, foi):
    return p["sigma"] * y["E"]

def _recovery(y, p, foi):
    return p["gamma"] * y["I"]

def _death(y, p, foi):
    return p["mu"] * y["I"]

def _vaccination(y, p, foi):
    return p["nu"] * y["S"]


def _r0_beta_gamma(p: Mapping[str, float]) -> float:
    return float(p["beta"] / p["gamma"]) if p["gamma"] > 0 else np.inf

def _r0_sird(p: Mapping[str, float]) -> float:
    removal = p["gamma"] + p["mu"]
    return float(p["beta"] / removal) if removal > 0 else np.inf


@dataclass(frozen=True)
class ParameterSpec:
    """Domain of one named rate/probability parameter"""
    name: str
    lower: float = 0.0
    upper: float = np.inf
    lower_inclusive: bool = False
    doc: str = ""

    def contains(self, value) -> bool:
        v = np.asarray(value, dtype=float)
        if not np.all(np.isfinite(v)):
            return False
        above = v >= self.lower if self.lower_inclusive else v > self.lower
        return bool(np.all(above) and np.all(v <= self.upper))


@dataclass(frozen=True)
class Transition:
    """One flow between compartments; source/target None means outside the system"""
    name: str
    source: Optional[str]
    target: Optional[str]
    rate: RateFn
    incidence: bool = False     # counts as a new infection


@dataclass(frozen=True)
class Reaction:
    """Stochastic view of a Transition: rate function plus state-delta vector"""
    name: str
    transition: Transition
    delta: np.ndarray


@dataclass(frozen=True)
class CompartmentalModel:
    """
    One model family. Stateless: parameters and state are passed in.

    Attributes:
    -----------
    name: str
    compartments: tuple of str
        Compartment order used for all state vectors
    parameters: tuple of ParameterSpec
    transitions: tuple of Transition
    infectious: tuple of str
        Compartments that transmit
    infected: tuple of str
        Compartments whose joint emptiness is the absorbing condition
    non_mixing: tuple of str
        Compartments excluded from the mixing population (the dead)
    """
    name: str
    compartments: Tuple[str, ...]
    parameters: Tuple[ParameterSpec, ...]
    transitions: Tuple[Transition, ...]
    r0_fn: Callable[[Mapping[str, float]], float]
    infectious: Tuple[str, ...] = ("I",)
    infected: Tuple[str, ...] = ("I",)
    non_mixing: Tuple[str, ...] = ()

    @property
    def parameter_names(self) -> Tuple[str, ...]:
        return tuple(spec.name for spec in self.parameters)

    def index(self, compartment: str) -> int:
        return self.compartments.index(compartment)

    def spec(self, name: str) -> ParameterSpec:
        for s in self.parameters:
            if s.name == name:
                return s
        raise KeyError(name)

    # ---------- parameters ----------

    def in_domain(self, params: Mapping[str, float]) -> bool:
        """True when every model parameter is present and inside its domain"""
        return all(s.name in params and s.contains(params[s.name]) for s in self.parameters)

    def validate_parameters(self, params: Mapping[str, float], n_strata: Optional[int] = None) -> Dict[str, float]:
        """Check a directly supplied parameter set; raises ConfigurationError.

        With n_strata (regions or age bands) each value may be a scalar or a
        length-n_strata array; arrays are returned as float ndarrays.
        """
        missing = [n for n in self.parameter_names if n not in params]
        if missing:
            raise ConfigurationError(f"{self.name}: missing parameters {missing}")
        out = {}
        for s in self.parameters:
            value = params[s.name]
            if n_strata is not None and np.ndim(value) > 0:
                value = np.asarray(value, dtype=float)
                if value.shape != (n_strata,):
                    raise ConfigurationError(
                        f"{self.name}: {s.name} has shape {value.shape}, expected a scalar or ({n_strata},)"
                    )
            elif np.ndim(value) > 0:
                raise ConfigurationError(f"{self.name}: {s.name} must be a scalar")
            if not s.contains(value):
                bracket = "[" if s.lower_inclusive else "("
                raise ConfigurationError(
                    f"{self.name}: {s.name}={params[s.name]!r} outside {bracket}{s.lower}, {s.upper}]"
                )
            out[s.name] = value
        return out

    def basic_reproduction_number(self, params: Mapping[str, float]) -> float:
        return self.r0_fn(params)

    # ---------- dynamics ----------

    def as_mapping(self, y: np.ndarray) -> Dict[str, np.ndarray]:
        return {c: y[i] for i, c in enumerate(self.compartments)}

    def mixing_population(self, ym: Mapping[str, np.ndarray]) -> np.ndarray:
        return sum(ym[c] for c in self.compartments if c not in self.non_mixing)

    def force_of_infection(self, ym: Mapping[str, np.ndarray], params: Mapping[str, float],
                           factor: float = 1.0) -> np.ndarray:
        """Well-mixed force of infection: factor * beta * I / N (element-wise over regions)"""
        N = self.mixing_population(ym)
        infectious = sum(ym[c] for c in self.infectious)
        with np.errstate(divide="ignore", invalid="ignore"):
            foi = np.where(N > 0, factor * params["beta"] * infectious / N, 0.0)
        return foi

    def flows(self, ym: Mapping[str, np.ndarray], params: Mapping[str, float], foi) -> List[np.ndarray]:
        return [tr.rate(ym, params, foi) for tr in self.transitions]

    def derivatives_from_foi(self, y: np.ndarray, params: Mapping[str, float], foi) -> Tuple[np.ndarray, np.ndarray]:
        """Right-hand side for a given force of infection.

        y has the compartment axis first: shape (C,) or (C, ...) for stratified
        states. Returns (dy/dt, new-infection rate).
        """
        ym = self.as_mapping(y)
        dy = np.zeros_like(y, dtype=float)
        new_inf = np.zeros_like(y[0], dtype=float)
        for tr, flow in zip(self.transitions, self.flows(ym, params, foi)):
            if tr.source is not None:
                dy[self.index(tr.source)] -= flow
            if tr.target is not None:
                dy[self.index(tr.target)] += flow
            if tr.incidence:
                new_inf = new_inf + flow
        return dy, new_inf

    def derivatives(self, y: np.ndarray, params: Mapping[str, float], factor: float = 1.0) -> Tuple[np.ndarray, np.ndarray]:
        """Instantaneous rate of change at state y; factor scales transmission"""
        foi = self.force_of_infection(self.as_mapping(y), params, factor)
        return self.derivatives_from_foi(y, params, foi)

    def reactions(self) -> List[Reaction]:
        out = []
        for tr in self.transitions:
            delta = np.zeros(len(self.compartments), dtype=np.int64)
            if tr.source is not None:
                delta[self.index(tr.source)] -= 1
            if tr.target is not None:
                delta[self.index(tr.target)] += 1
            out.append(Reaction(tr.name, tr, delta))
        return out

    def is_absorbed(self, y: np.ndarray) -> bool:
        return all(y[self.index(c)] <= 0 for c in self.infected)

    def seed_state(self, population: float, initial_infected: float = 1.0,
                   initial_exposed: float = 0.0) -> Dict[str, float]:
        """Fully susceptible population apart from the seeded infections"""
        if initial_infected < 0 or initial_exposed < 0:
            raise ConfigurationError("initial infections must be non-negative")
        if initial_exposed and "E" not in self.compartments:
            raise ConfigurationError(f"{self.name} has no exposed compartment")
        S0 = population - initial_infected - initial_exposed
        if S0 < 0:
            raise ConfigurationError("initial infections exceed the population")
        state = {c: 0.0 for c in self.compartments}
        state["S"] = float(S0)
        state["I"] = float(initial_infected)
        if "E" in self.compartments:
            state["E"] = float(initial_exposed)
        return state


_BETA = ParameterSpec("beta", doc="transmission rate")
_GAMMA = ParameterSpec("gamma", doc="recovery rate")
_SIGMA = ParameterSpec("sigma", doc="incubation (E->I) rate")

SIR = CompartmentalModel(
    name="SIR",
    compartments=("S", "I", "R"),
    parameters=(_BETA, _GAMMA),
    transitions=(
        Transition("infection", "S", "I", _infection, incidence=True),
        Transition("recovery", "I", "R", _recovery),
    ),
    r0_fn=_r0_beta_gamma,
)

SEIR = CompartmentalModel(
    name="SEIR",
    compartments=("S", "E", "I", "R"),
    parameters=(_BETA, _SIGMA, _GAMMA),
    transitions=(
        Transition("infection", "S", "E", _infection, incidence=True),
        Transition("progression", "E", "I", _progression),
        Transition("recovery", "I", "R", _recovery),
    ),
    r0_fn=_r0_beta_gamma,
    infected=("E", "I"),
)

SIRD = CompartmentalModel(
    name="SIRD",
    compartments=("S", "I", "R", "D"),
    parameters=(_BETA, _GAMMA, ParameterSpec("mu", lower_inclusive=True, doc="disease death rate")),
    transitions=(
        Transition("infection", "S", "I", _infection, incidence=True),
        Transition("recovery", "I", "R", _recovery),
        Transition("death", "I", "D", _death),
    ),
    r0_fn=_r0_sird,
    non_mixing=("D",),
)

SEIRV = CompartmentalModel(
    name="SEIRV",
    compartments=("S", "E", "I", "R", "V"),
    parameters=(_BETA, _SIGMA, _GAMMA, ParameterSpec("nu", lower_inclusive=True, doc="vaccination rate")),
    transitions=(
        Transition("infection", "S", "E", _infection, incidence=True),
        Transition("progression", "E", "I", _progression),
        Transition("recovery", "I", "R", _recovery),
        Transition("vaccination", "S", "V", _vaccination),
    ),
    r0_fn=_r0_beta_gamma,
    infected=("E", "I"),
)

MODELS: Dict[str, CompartmentalModel] = {m.name: m for m in (SIR, SEIR, SIRD, SEIRV)}


def get_model(name: str) -> CompartmentalModel:
    try:
        return MODELS[name.upper()]
    except KeyError:
        raise ConfigurationError(f"unknown model {name!r}; choose from {sorted(MODELS)}") from None
