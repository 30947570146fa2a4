"""Tests for epidynamics.observations: observed series intake and validation."""

import numpy as np
import pandas as pd
import pytest

from epidynamics.errors import ConfigurationError, InsufficientDataError
from epidynamics.observations import ObservedSeries, as_arrays


@pytest.fixture
def records():
    dates = pd.date_range("2024-03-01", periods=10, freq="D")
    return [(d, c, 50000, "Freetown") for d, c in zip(dates, [0, 1, 1, 3, 5, 8, 13, 20, 31, 40])]


class TestConstruction:

    def test_from_records(self, records):
        series = ObservedSeries.from_records(records)
        assert len(series) == 10
        assert series.location == "Freetown"
        assert series.population == 50000.0
        np.testing.assert_array_equal(series.t, np.arange(10.0))

    def test_gap_is_an_error(self, records):
        with pytest.raises(ConfigurationError, match="contiguous"):
            ObservedSeries.from_records(records[:4] + records[5:])

    def test_unordered_dates(self, records):
        with pytest.raises(ConfigurationError):
            ObservedSeries.from_records([records[1], records[0]] + records[2:])

    def test_negative_counts(self, records):
        bad = list(records)
        bad[3] = (bad[3][0], -1, 50000, "Freetown")
        with pytest.raises(ConfigurationError):
            ObservedSeries.from_records(bad)

    def test_fractional_counts(self, records):
        bad = list(records)
        bad[3] = (bad[3][0], 2.5, 50000, "Freetown")
        with pytest.raises(ConfigurationError, match="integers"):
            ObservedSeries.from_records(bad)

    def test_mixed_locations(self, records):
        bad = list(records)
        bad[0] = (bad[0][0], 0, 50000, "Bo")
        with pytest.raises(ConfigurationError, match="locations"):
            ObservedSeries.from_records(bad)

    def test_weekly(self):
        dates = pd.date_range("2024-01-03", periods=5, freq="7D")
        series = ObservedSeries(dates, [1, 2, 3, 4, 5], population=1000, freq="W")
        np.testing.assert_array_equal(series.t, np.arange(5.0))

    def test_empty(self):
        with pytest.raises(InsufficientDataError):
            ObservedSeries.from_records([])

    def test_cases_read_only(self, records):
        series = ObservedSeries.from_records(records)
        with pytest.raises(ValueError):
            series.cases[0] = 3


class TestDataFrame:

    def test_from_dataframe_selects_location(self, records):
        df = pd.DataFrame(records, columns=["date", "cases", "population", "location"])
        other = df.assign(location="Bo", cases=df["cases"] * 2)
        series = ObservedSeries.from_dataframe(pd.concat([df, other]), location="Bo")
        assert series.location == "Bo"
        assert series.cases[-1] == 80

    def test_ambiguous_location(self, records):
        df = pd.DataFrame(records, columns=["date", "cases", "population", "location"])
        with pytest.raises(ConfigurationError):
            ObservedSeries.from_dataframe(pd.concat([df, df.assign(location="Bo")]))

    def test_round_trip_frame(self, records):
        series = ObservedSeries.from_records(records)
        df = series.to_dataframe()
        assert list(df.columns) == ["date", "t", "cases", "population", "location"]

    def test_missing_column(self):
        with pytest.raises(ConfigurationError, match="cases"):
            ObservedSeries.from_dataframe(pd.DataFrame({"date": [], "population": []}))


class TestWindows:

    def test_window(self, records):
        series = ObservedSeries.from_records(records)
        head = series.window(0, 4)
        assert len(head) == 4
        assert head.cases.tolist() == [0, 1, 1, 3]

    def test_empty_window(self, records):
        with pytest.raises(InsufficientDataError):
            ObservedSeries.from_records(records).window(20, 30)


class TestAsArrays:

    def test_series(self, records):
        t, y = as_arrays(ObservedSeries.from_records(records))
        assert y.dtype == float and len(t) == 10

    def test_pair(self):
        t, y = as_arrays(([0, 1, 2], [0.0, 0.5, 1.5]))
        np.testing.assert_array_equal(y, [0.0, 0.5, 1.5])

    def test_pair_must_increase(self):
        with pytest.raises(ConfigurationError):
            as_arrays(([0, 2, 1], [1, 2, 3]))

    def test_not_a_pair(self):
        with pytest.raises(ConfigurationError):
            as_arrays(42)
