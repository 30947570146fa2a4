"""Shared fixtures for the epidynamics test suite."""

import numpy as np
import pytest

from epidynamics.config import IntegratorConfig
from epidynamics.models import SEIR, SIR


@pytest.fixture
def sir_params():
    return {"beta": 0.3, "gamma": 0.1}


@pytest.fixture
def seir_params():
    return {"beta": 0.5, "sigma": 0.2, "gamma": 0.1}


@pytest.fixture
def sir_state():
    """N = 1000 with a single infectious individual."""
    return SIR.seed_state(1000, initial_infected=1)


@pytest.fixture
def seir_state():
    return SEIR.seed_state(1000, initial_infected=5)


@pytest.fixture
def rk4_config():
    return IntegratorConfig(method="rk4")


@pytest.fixture
def rng():
    return np.random.default_rng(12345)
