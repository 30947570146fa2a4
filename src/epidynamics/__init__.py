"""
===========================================================
epidynamics
===========================================================
Epidemic dynamics simulation and calibration engine.

Simulators (deterministic ODE, stochastic event, contact
network, metapopulation, age-structured) share one set of
model families and one Trajectory output; the estimator and
comparator calibrate and rank them against observed series.

License: MIT
===========================================================
"""
import logging

from .age_structured import AgeStructuredModel, AgeStructuredResult
from .comparison import CrossValidationResult, ModelComparator, ModelVariant
from .config import (CrossValidationConfig, EstimatorConfig, IntegratorConfig, MCMCConfig,
                     NetworkConfig, StochasticConfig)
from .deterministic import DeterministicIntegrator, integrate
from .errors import (ConfigurationError, ConvergenceFailure, EpidynamicsError, InsufficientDataError,
                     NumericalInstability, NumericalStabilityWarning)
from .estimation import FitResult, ParameterEstimator
from .experiments import grid_sweep, pivot_for_plot
from .interventions import Intervention, InterventionSchedule
from .metapopulation import MetapopulationModel, MetapopulationResult
from .models import MODELS, SEIR, SEIRV, SIR, SIRD, CompartmentalModel, get_model
from .network import NetworkResult, NetworkSimulator, build_network
from .observations import ObservedSeries
from .state import StratifiedResult, Trajectory
from .stochastic import EnsembleResult, StochasticSimulator, run_ensemble

__version__ = "0.1.0"

logging.getLogger(__name__).addHandler(logging.NullHandler())
