"""
===========================================================
age_structured.py
Last Updated: 2026-10-19
===========================================================

Description:
    Age-structured version of any model family. Each of B age
    bands keeps its own compartments; bands mix through a
    ContactMatrix C, with force of infection

        lambda_i(t) = factor(t) * sum_j C[i, j] * beta_j * I_j / N_j

    where I_j counts band j's infectious compartments and N_j
    its living population.

    Rates (beta, sigma, gamma, ...) are scalars or length-B
    arrays, so bands may differ in transmissibility, incubation
    and recovery.

R0:
    Spectral radius of the next-generation matrix
        K[i, j] = C[i, j] * beta_j * (N_i / N_j) / removal_j
    with removal = gamma (+ mu for SIRD). A 1x1 unit contact
    matrix gives back beta / gamma.
-----------------------------------------------------------
License: MIT
===========================================================
"""
from __future__ import annotations

import logging
from typing import Mapping, Optional, Sequence, Tuple

import numpy as np

from .config import IntegratorConfig
from .deterministic import SystemRHS, integrate_system, time_grid
from .errors import ConfigurationError
from .interventions import NO_INTERVENTION, InterventionSchedule
from .models import CompartmentalModel
from .state import StratifiedResult, stack_states

logger = logging.getLogger(__name__)


class AgeStructuredResult(StratifiedResult):
    """Per-band trajectories (result["0-19"]) plus the whole-population aggregate"""


def validate_contact_matrix(contact_matrix, n_bands: int) -> np.ndarray:
    C = np.array(contact_matrix, dtype=float, copy=True)
    if C.shape != (n_bands, n_bands):
        raise ConfigurationError(f"contact matrix has shape {C.shape}, expected ({n_bands}, {n_bands}) for {n_bands} age bands")
    if not np.all(np.isfinite(C)) or np.any(C < 0):
        raise ConfigurationError("contact intensities must be finite and non-negative")
    C.flags.writeable = False
    return C


class AgeStructuredModel:
    """
    Deterministic age-structured model.

    Parameters:
    -----------
    model: CompartmentalModel
        Family shared by every band
    contact_matrix: array-like, shape (B, B)
        Relative contact intensity of band i with band j
    bands: sequence of str
        Age band labels, e.g. ("0-19", "20-64", "65+")
    config: IntegratorConfig, optional
    schedule: InterventionSchedule, optional
        Multiplies every band's force of infection
    """
    def __init__(self, model: CompartmentalModel, contact_matrix, bands: Sequence[str],
                 config: Optional[IntegratorConfig] = None, schedule: Optional[InterventionSchedule] = None):
        self.bands: Tuple[str, ...] = tuple(bands)
        if not self.bands:
            raise ConfigurationError("at least one age band is required")
        if len(set(self.bands)) != len(self.bands):
            raise ConfigurationError("age band labels must be unique")
        self.contact_matrix = validate_contact_matrix(contact_matrix, len(self.bands))
        self.model = model
        self.config = config or IntegratorConfig()
        self.schedule = schedule or NO_INTERVENTION

    @property
    def n_bands(self) -> int:
        return len(self.bands)

    def force_of_infection(self, Y: np.ndarray, params: Mapping[str, float], factor: float = 1.0) -> np.ndarray:
        """lambda per band for a (C, B) state"""
        ym = self.model.as_mapping(Y)
        N = self.model.mixing_population(ym)
        infectious = sum(ym[c] for c in self.model.infectious)
        with np.errstate(divide="ignore", invalid="ignore"):
            pressure = np.where(N > 0, params["beta"] * infectious / N, 0.0)
        return factor * (self.contact_matrix @ pressure)

    def rhs(self, params: Mapping[str, float]) -> SystemRHS:
        model, schedule = self.model, self.schedule
        shape = (len(model.compartments), self.n_bands)

        def _rhs(t, y):
            Y = y.reshape(shape)
            foi = self.force_of_infection(Y, params, schedule.factor(t))
            dY, new_inf = model.derivatives_from_foi(Y, params, foi)
            return dY.ravel(), new_inf
        return _rhs

    def next_generation_matrix(self, params: Mapping[str, float], populations: Sequence[float]) -> np.ndarray:
        params = self.model.validate_parameters(params, n_strata=self.n_bands)
        N = np.asarray(populations, dtype=float)
        if N.shape != (self.n_bands,) or np.any(N <= 0):
            raise ConfigurationError(f"need {self.n_bands} positive band populations")
        beta = np.broadcast_to(params["beta"], N.shape)
        removal = np.broadcast_to(params["gamma"] + params.get("mu", 0.0), N.shape)
        return self.contact_matrix * beta[None, :] * (N[:, None] / N[None, :]) / removal[None, :]

    def basic_reproduction_number(self, params: Mapping[str, float], populations: Sequence[float]) -> float:
        """Dominant eigenvalue of the next-generation matrix"""
        K = self.next_generation_matrix(params, populations)
        return float(np.max(np.abs(np.linalg.eigvals(K))))

    def run(
            self,
            params: Mapping[str, float],
            initial_state,
            t_span: Tuple[float, float] = (0.0, 100.0),
            dt: float = 1.0,
            t_eval: Optional[Sequence[float]] = None,
    ) -> AgeStructuredResult:
        """
        Solve all bands jointly.

        initial_state: mapping band -> CompartmentState, or a sequence of B states
        """
        params = self.model.validate_parameters(params, n_strata=self.n_bands)
        Y0 = stack_states(initial_state, self.bands, self.model.compartments)
        times = time_grid(t_span, dt) if t_eval is None else np.asarray(t_eval, dtype=float)
        logger.info("age-structured run: %s x %d bands, %d reporting times",
                    self.model.name, self.n_bands, len(times))
        values, incidence, flags = integrate_system(
            self.rhs(params), Y0.ravel(), times, self.config, dt=dt, breakpoints=self.schedule.breakpoints(),
        )
        metadata = {"model": self.model.name, "method": self.config.method, "params": dict(params)}
        populations = Y0.sum(axis=0)
        if np.all(populations > 0):
            metadata["r0"] = self.basic_reproduction_number(params, populations)
        return AgeStructuredResult.from_arrays(
            times, values, incidence, self.model.compartments, self.bands, flags=flags, metadata=metadata,
        )
