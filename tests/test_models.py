"""Tests for epidynamics.models: model families, parameter domains, flows."""

import numpy as np
import pytest

from epidynamics.errors import ConfigurationError
from epidynamics.models import MODELS, SEIR, SEIRV, SIR, SIRD, get_model


class TestRegistry:

    def test_lookup_is_case_insensitive(self):
        assert get_model("seir") is SEIR
        assert get_model("Sird") is SIRD

    def test_unknown_model(self):
        with pytest.raises(ConfigurationError):
            get_model("SIS")

    def test_all_families_registered(self):
        assert set(MODELS) == {"SIR", "SEIR", "SIRD", "SEIRV"}


class TestParameters:

    def test_validate_returns_only_model_parameters(self, sir_params):
        out = SIR.validate_parameters({**sir_params, "rho": 0.5})
        assert out == sir_params

    def test_missing_parameter(self):
        with pytest.raises(ConfigurationError, match="missing"):
            SIR.validate_parameters({"beta": 0.3})

    def test_negative_rate_rejected(self):
        with pytest.raises(ConfigurationError):
            SIR.validate_parameters({"beta": -0.1, "gamma": 0.1})

    def test_zero_gamma_rejected_but_zero_mu_allowed(self):
        with pytest.raises(ConfigurationError):
            SIR.validate_parameters({"beta": 0.3, "gamma": 0.0})
        SIRD.validate_parameters({"beta": 0.3, "gamma": 0.1, "mu": 0.0})

    def test_non_finite_rejected(self):
        assert not SIR.in_domain({"beta": np.nan, "gamma": 0.1})
        assert not SIR.in_domain({"beta": np.inf, "gamma": 0.1})

    def test_stratified_arrays(self):
        out = SIR.validate_parameters({"beta": [0.2, 0.4, 0.3], "gamma": 0.1}, n_strata=3)
        np.testing.assert_allclose(out["beta"], [0.2, 0.4, 0.3])
        with pytest.raises(ConfigurationError, match="shape"):
            SIR.validate_parameters({"beta": [0.2, 0.4], "gamma": 0.1}, n_strata=3)

    def test_array_without_strata_rejected(self):
        with pytest.raises(ConfigurationError, match="scalar"):
            SIR.validate_parameters({"beta": [0.2, 0.4], "gamma": 0.1})


class TestReproductionNumber:

    def test_sir(self, sir_params):
        assert SIR.basic_reproduction_number(sir_params) == pytest.approx(3.0)

    def test_sird_counts_death_as_removal(self):
        r0 = SIRD.basic_reproduction_number({"beta": 0.3, "gamma": 0.1, "mu": 0.05})
        assert r0 == pytest.approx(2.0)

    def test_seir_matches_sir_ratio(self, seir_params):
        assert SEIR.basic_reproduction_number(seir_params) == pytest.approx(5.0)


class TestDynamics:

    def test_derivatives_conserve_population(self):
        y = np.array([900.0, 50.0, 40.0, 10.0, 0.0])
        dy, _ = SEIRV.derivatives(y, {"beta": 0.5, "sigma": 0.2, "gamma": 0.1, "nu": 0.01})
        assert dy.sum() == pytest.approx(0.0, abs=1e-12)

    def test_new_infections_equal_infection_flow(self, sir_params):
        y = np.array([990.0, 10.0, 0.0])
        dy, new_inf = SIR.derivatives(y, sir_params)
        assert new_inf == pytest.approx(0.3 * 990 * 10 / 1000)
        assert dy[0] == pytest.approx(-new_inf)

    def test_factor_scales_transmission(self, sir_params):
        y = np.array([990.0, 10.0, 0.0])
        _, full = SIR.derivatives(y, sir_params)
        _, half = SIR.derivatives(y, sir_params, factor=0.5)
        assert half == pytest.approx(0.5 * full)

    def test_dead_do_not_mix(self):
        y = np.array([500.0, 100.0, 0.0, 400.0])
        ym = SIRD.as_mapping(y)
        assert SIRD.mixing_population(ym) == pytest.approx(600.0)

    def test_stratified_state(self, sir_params):
        Y = np.array([[990.0, 500.0], [10.0, 0.0], [0.0, 0.0]])
        dY, new_inf = SIR.derivatives(Y, sir_params)
        assert dY.shape == (3, 2)
        assert new_inf.shape == (2,)
        assert new_inf[1] == 0.0


class TestReactions:

    def test_reaction_deltas(self):
        deltas = {r.name: r.delta.tolist() for r in SEIR.reactions()}
        assert deltas == {
            "infection": [-1, 1, 0, 0],
            "progression": [0, -1, 1, 0],
            "recovery": [0, 0, -1, 1],
        }

    def test_absorbing_condition_uses_infected_compartments(self):
        assert SEIR.is_absorbed(np.array([990, 0, 0, 10]))
        assert not SEIR.is_absorbed(np.array([990, 1, 0, 9]))


class TestSeedState:

    def test_seed_state(self):
        assert SIR.seed_state(1000, 1) == {"S": 999.0, "I": 1.0, "R": 0.0}

    def test_seed_exposed_needs_e(self):
        with pytest.raises(ConfigurationError):
            SIR.seed_state(1000, 1, initial_exposed=2)

    def test_seed_exceeding_population(self):
        with pytest.raises(ConfigurationError):
            SIR.seed_state(10, 11)
