"""
===========================================================
errors.py
Last Updated: 2026-10-19
===========================================================

Description:
    Exception and warning types raised by the simulation and
    calibration engine.

    Hard failures (bad configuration, integrator breakdown,
    too little data) are raised. Soft failures during fitting
    (non-convergence, an unstable candidate) are recorded as
    flags on the result objects instead.
-----------------------------------------------------------
License: MIT
===========================================================
"""
from __future__ import annotations


class EpidynamicsError(Exception):
    """Base class for all engine errors"""


class ConfigurationError(EpidynamicsError, ValueError):
    """Dimension mismatch, out-of-domain parameter or malformed schedule"""


class NumericalInstability(EpidynamicsError, ArithmeticError):
    """Integrator could not hold its tolerance after the allowed step reductions"""

    def __init__(self, message: str, t: float | None = None, reductions: int = 0):
        super().__init__(message)
        self.t = t
        self.reductions = reductions


class ConvergenceFailure(EpidynamicsError):
    """Optimizer or sampler did not converge within its budget"""

    def __init__(self, message: str, result=None):
        super().__init__(message)
        self.result = result


class InsufficientDataError(EpidynamicsError, ValueError):
    """Too few observations for the requested fit or fold"""


class NumericalStabilityWarning(RuntimeWarning):
    """A negative compartment value was clamped to zero"""
