"""Tests for epidynamics.state: state validation and Trajectory helpers."""

import numpy as np
import pytest

from epidynamics.errors import ConfigurationError
from epidynamics.state import Trajectory, stack_states, validate_state

COMPARTMENTS = ("S", "I", "R")


@pytest.fixture
def traj():
    return Trajectory(
        times=[0.0, 1.5, 4.0],
        values=[[99, 1, 0], [95, 4, 1], [90, 5, 5]],
        compartments=COMPARTMENTS,
        incidence=[0, 4, 5],
        metadata={"model": "SIR"},
    )


class TestValidateState:

    def test_missing_compartments_are_zero(self):
        np.testing.assert_array_equal(validate_state({"S": 10, "I": 2}, COMPARTMENTS), [10, 2, 0])

    @pytest.mark.parametrize("state", [
        {"S": -1, "I": 2},
        {"S": np.nan, "I": 2},
        {"S": 0, "I": 0},
        {"S": 10, "X": 1},
    ])
    def test_rejects(self, state):
        with pytest.raises(ConfigurationError):
            validate_state(state, COMPARTMENTS)


class TestTrajectory:

    def test_shape_mismatch(self):
        with pytest.raises(ConfigurationError):
            Trajectory([0, 1], [[1, 2, 3]], COMPARTMENTS)

    def test_iteration_yields_states(self, traj):
        t, state = list(traj)[1]
        assert t == 1.5
        assert state == {"S": 95.0, "I": 4.0, "R": 1.0}

    def test_column_access(self, traj):
        np.testing.assert_array_equal(traj["I"], [1, 4, 5])
        with pytest.raises(KeyError):
            traj["E"]

    def test_final_state_and_population(self, traj):
        assert traj.final_state["R"] == 5.0
        assert traj.population == 100.0

    def test_resample_holds_last_state(self, traj):
        out = traj.resample([0, 1, 2, 3, 4, 5])
        np.testing.assert_array_equal(out["I"], [1, 1, 4, 4, 5, 5])
        np.testing.assert_array_equal(out.incidence, [0, 0, 4, 0, 5, 0])
        assert out.metadata["resampled"]

    def test_summary(self, traj):
        s = traj.summary()
        assert s["peak_day"] == 4.0
        assert s["peak_prevalence"] == pytest.approx(0.05)
        assert s["final_size"] == pytest.approx(0.10)
        assert s["max_incidence"] == 5.0

    def test_to_dataframe(self, traj):
        df = traj.to_dataframe()
        assert list(df.columns) == ["t", "S", "I", "R", "incidence"]
        assert len(df) == 3


class TestStackStates:

    def test_mapping_in_name_order(self):
        Y = stack_states({"b": {"S": 5}, "a": {"S": 7, "I": 1}}, ("a", "b"), COMPARTMENTS)
        np.testing.assert_array_equal(Y, [[7, 5], [1, 0], [0, 0]])

    def test_unknown_stratum(self):
        with pytest.raises(ConfigurationError):
            stack_states({"a": {"S": 1}, "z": {"S": 1}}, ("a",), COMPARTMENTS)

    def test_sequence_length(self):
        with pytest.raises(ConfigurationError):
            stack_states([{"S": 1}], ("a", "b"), COMPARTMENTS)

    def test_empty_stratum_allowed(self):
        Y = stack_states([{"S": 10}, {}], ("a", "b"), COMPARTMENTS)
        assert Y[:, 1].sum() == 0
