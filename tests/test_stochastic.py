"""Tests for epidynamics.stochastic: exact and tau-leap simulation, ensembles."""

import numpy as np
import pytest

from epidynamics.config import StochasticConfig
from epidynamics.deterministic import integrate
from epidynamics.errors import ConfigurationError
from epidynamics.interventions import Intervention, InterventionSchedule
from epidynamics.models import SEIR, SIR
from epidynamics.stochastic import StochasticSimulator, run_ensemble

TAU_LEAP = StochasticConfig(method="tau_leap", tau=0.5)


def _assert_integer_non_negative(traj):
    assert np.issubdtype(traj.values.dtype, np.integer)
    assert np.all(traj.values >= 0)


class TestSingleRun:

    @pytest.mark.parametrize("config", [StochasticConfig(), TAU_LEAP])
    def test_counts_are_non_negative_integers(self, config, sir_params):
        sim = StochasticSimulator(SIR, config)
        traj = sim.run(sir_params, SIR.seed_state(500, 5), t_max=200, seed=1)
        _assert_integer_non_negative(traj)
        assert np.all(traj.totals == 500)

    @pytest.mark.parametrize("config", [StochasticConfig(), TAU_LEAP])
    def test_seir(self, config, seir_params):
        traj = StochasticSimulator(SEIR, config).run(seir_params, SEIR.seed_state(300, 3), t_max=150, seed=4)
        _assert_integer_non_negative(traj)
        assert np.all(traj.totals == 300)

    def test_same_seed_same_events(self, sir_params):
        sim = StochasticSimulator(SIR)
        a = sim.run(sir_params, SIR.seed_state(300, 3), t_max=100, seed=99)
        b = sim.run(sir_params, SIR.seed_state(300, 3), t_max=100, seed=99)
        np.testing.assert_array_equal(a.times, b.times)
        np.testing.assert_array_equal(a.values, b.values)

    def test_different_seeds_differ(self, sir_params):
        sim = StochasticSimulator(SIR)
        a = sim.run(sir_params, SIR.seed_state(300, 3), t_max=100, seed=1)
        b = sim.run(sir_params, SIR.seed_state(300, 3), t_max=100, seed=2)
        assert len(a) != len(b) or not np.array_equal(a.times, b.times)

    def test_exact_run_is_event_by_event(self, sir_params):
        traj = StochasticSimulator(SIR).run(sir_params, SIR.seed_state(200, 2), t_max=50, seed=3)
        steps = np.abs(np.diff(traj.values, axis=0)).sum(axis=1)
        assert set(np.unique(steps)) <= {0, 2}

    def test_non_integer_state_rejected(self, sir_params):
        with pytest.raises(ConfigurationError, match="integer"):
            StochasticSimulator(SIR).run(sir_params, {"S": 99.5, "I": 0.5}, t_max=10)


class TestTermination:

    def test_absorbed_immediately_without_infection(self, sir_params):
        traj = StochasticSimulator(SIR).run(sir_params, {"S": 100, "I": 0, "R": 5}, t_max=50, seed=0)
        assert len(traj) == 1
        assert traj.metadata["termination"] == "absorbed"

    def test_absorption_before_horizon(self):
        # R0 well below one: the chain dies out quickly
        traj = StochasticSimulator(SIR).run({"beta": 0.01, "gamma": 1.0}, SIR.seed_state(100, 1),
                                            t_max=1e6, seed=5)
        assert traj.metadata["termination"] == "absorbed"
        assert traj["I"][-1] == 0

    def test_horizon_appends_final_time(self, sir_params):
        traj = StochasticSimulator(SIR).run(sir_params, SIR.seed_state(10000, 50), t_max=5, seed=6)
        assert traj.metadata["termination"] == "horizon"
        assert traj.times[-1] == 5.0

    def test_max_events(self, sir_params):
        sim = StochasticSimulator(SIR, StochasticConfig(max_events=25))
        traj = sim.run(sir_params, SIR.seed_state(10000, 50), t_max=500, seed=7)
        assert traj.metadata["termination"] == "max_events"
        assert len(traj) == 26

    def test_seir_absorbs_only_when_exposed_empty(self, seir_params):
        sim = StochasticSimulator(SEIR)
        traj = sim.run(seir_params, {"S": 100, "E": 2, "I": 0}, t_max=500, seed=8)
        assert len(traj) > 1


class TestTauLeap:

    def test_over_drawn_compartment_clamped(self):
        sim = StochasticSimulator(SIR, StochasticConfig(method="tau_leap", tau=5.0))
        traj = sim.run({"beta": 50.0, "gamma": 3.0}, {"S": 20, "I": 80, "R": 0}, t_max=20, seed=11)
        _assert_integer_non_negative(traj)
        assert any("clamped" in f for f in traj.flags)

    def test_fixed_intervals(self, sir_params):
        traj = StochasticSimulator(SIR, TAU_LEAP).run(sir_params, SIR.seed_state(10000, 100), t_max=10, seed=2)
        np.testing.assert_allclose(np.diff(traj.times), 0.5)


class TestEnsemble:

    def test_reproducible_for_seed(self, sir_params):
        sim = StochasticSimulator(SIR, TAU_LEAP)
        a = run_ensemble(sim, sir_params, SIR.seed_state(200, 5), t_max=60, n_runs=8, seed=2024)
        b = run_ensemble(sim, sir_params, SIR.seed_state(200, 5), t_max=60, n_runs=8, seed=2024)
        np.testing.assert_array_equal(a.samples, b.samples)

    def test_workers_do_not_change_results(self, sir_params):
        sim = StochasticSimulator(SIR, TAU_LEAP)
        serial = run_ensemble(sim, sir_params, SIR.seed_state(200, 5), t_max=60, n_runs=6, seed=7)
        pooled = run_ensemble(sim, sir_params, SIR.seed_state(200, 5), t_max=60, n_runs=6, seed=7,
                              max_workers=2)
        np.testing.assert_array_equal(serial.samples, pooled.samples)

    def test_realizations_differ(self, sir_params):
        sim = StochasticSimulator(SIR)
        ens = run_ensemble(sim, sir_params, SIR.seed_state(200, 5), t_max=60, n_runs=5, seed=3)
        assert len({tuple(r.times[:5]) for r in ens.realizations}) > 1

    def test_mean_approaches_deterministic(self, sir_params):
        state = SIR.seed_state(500, 10)
        ode = integrate(SIR, sir_params, state, t_span=(0, 200))
        ens = run_ensemble(StochasticSimulator(SIR), sir_params, state, t_max=200, n_runs=120, seed=42)
        mean_final = ens.final_sizes().mean() / 500
        assert mean_final == pytest.approx(ode.summary()["final_size"], abs=0.03)
        assert ens.mean()["S"][-1] == pytest.approx(ode["S"][-1], abs=0.03 * 500)

    def test_shapes_and_summaries(self, sir_params):
        sim = StochasticSimulator(SIR, TAU_LEAP)
        ens = run_ensemble(sim, sir_params, SIR.seed_state(200, 5), t_max=30, n_runs=10, seed=1)
        assert ens.samples.shape == (10, 31, 3)
        assert ens.incidence.shape == (10, 31)
        env = ens.envelope("I")
        assert np.all(env["lower"] <= env["median"]) and np.all(env["median"] <= env["upper"])
        df = ens.to_dataframe()
        assert set(df.columns) == {"t", "compartment", "mean", "median", "lower", "upper"}
        assert len(df) == 31 * 3

    def test_rejects_empty_ensemble(self, sir_params):
        with pytest.raises(ConfigurationError):
            run_ensemble(StochasticSimulator(SIR), sir_params, SIR.seed_state(10, 1), t_max=5, n_runs=0)

    def test_final_sizes_exclude_initially_immune(self, sir_params):
        state = {"S": 190, "I": 5, "R": 5}
        ens = run_ensemble(StochasticSimulator(SIR), sir_params, state, t_max=100, n_runs=8, seed=5)
        np.testing.assert_allclose(ens.final_sizes(), 200 - ens.samples[:, -1, 0] - 5)
        assert np.all(ens.final_sizes() >= 5)


class TestInterventions:

    SLOW = {"beta": 0.01, "gamma": 1e-4}

    @pytest.mark.parametrize("config", [StochasticConfig(), StochasticConfig(method="tau_leap", tau=2.0)])
    def test_lockdown_opening_between_events_stops_transmission(self, config):
        schedule = InterventionSchedule([Intervention(5.0, 1e6, 1.0)])
        sim = StochasticSimulator(SIR, config, schedule)
        for seed in range(40):
            traj = sim.run(self.SLOW, {"S": 1000, "I": 1, "R": 0}, t_max=500, seed=seed)
            assert traj.incidence[traj.times > 5.0].sum() == 0

    def test_tau_leap_steps_land_on_window_edges(self):
        schedule = InterventionSchedule([Intervention(5.0, 9.0, 0.5)])
        sim = StochasticSimulator(SIR, StochasticConfig(method="tau_leap", tau=2.0), schedule)
        traj = sim.run(self.SLOW, {"S": 1000, "I": 1, "R": 0}, t_max=12, seed=0)
        np.testing.assert_allclose(traj.times, [0, 2, 4, 5, 7, 9, 11, 12])

    def test_transmission_resumes_after_window(self):
        schedule = InterventionSchedule([Intervention(5.0, 50.0, 1.0)])
        sim = StochasticSimulator(SIR, schedule=schedule)
        resumed = 0
        for seed in range(20):
            traj = sim.run(self.SLOW, {"S": 1000, "I": 1, "R": 0}, t_max=200, seed=seed)
            in_window = (traj.times > 5.0) & (traj.times < 50.0)
            assert traj.incidence[in_window].sum() == 0
            resumed += traj.incidence[traj.times > 50.0].sum() > 0
        assert resumed > 0
