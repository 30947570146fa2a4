"""Tests for epidynamics.comparison: ranking variants and temporal cross-validation."""

import numpy as np
import pytest

from epidynamics.comparison import (TABLE_COLUMNS, ModelComparator, ModelVariant,
                                    akaike_weights)
from epidynamics.config import CrossValidationConfig, EstimatorConfig
from epidynamics.errors import ConfigurationError
from epidynamics.estimation import ParameterEstimator
from epidynamics.models import SIR

N = 1000
DAYS = np.arange(0.0, 61.0)
FAST = EstimatorConfig(n_starts=1, maxiter=800)

SIR_2 = ModelVariant("SIR", SIR, bounds={"beta": (0.05, 1.0), "gamma": (0.02, 0.5)})
SIR_4 = ModelVariant("SIR+seed+rho", SIR, bounds={
    "beta": (0.05, 1.0), "gamma": (0.02, 0.5), "initial_infected": (0.5, 5.0), "rho": (0.5, 1.0),
})


@pytest.fixture(scope="module")
def data():
    est = ParameterEstimator(SIR, {"beta": (0.05, 1.0), "gamma": (0.02, 0.5)}, population=N)
    return DAYS, est.predict({"beta": 0.4, "gamma": 0.1}, DAYS, N)


@pytest.fixture(scope="module")
def table(data):
    return ModelComparator([SIR_4, SIR_2], config=FAST, population=N).compare(data)


class TestCompare:

    def test_columns(self, table):
        assert list(table.columns) == TABLE_COLUMNS

    def test_simpler_model_ranks_first(self, table):
        assert list(table["name"]) == ["SIR", "SIR+seed+rho"]
        assert list(table["rank"]) == [1, 2]
        assert table.loc[0, "delta_aic"] == 0.0
        assert table.loc[1, "delta_aic"] > 0.0

    def test_weights(self, table):
        assert table["aic_weight"].sum() == pytest.approx(1.0)
        assert table.loc[0, "aic_weight"] > table.loc[1, "aic_weight"]

    def test_information_criteria_consistent(self, table):
        row = table.loc[0]
        assert row["aic"] == pytest.approx(2 * row["n_params"] - 2 * row["log_likelihood"])
        assert row["bic"] == pytest.approx(row["n_params"] * np.log(len(DAYS)) - 2 * row["log_likelihood"])
        assert row["r0"] == pytest.approx(4.0, rel=0.01)

    def test_no_cross_validation_by_default(self, table):
        assert table["cv_mae"].isna().all()
        assert (table["cv_folds"] == 0).all()


class TestCrossValidation:

    def test_fold_cutoffs(self):
        comp = ModelComparator([SIR_2], cv=CrossValidationConfig(n_folds=3, horizon=7))
        assert comp.fold_cutoffs(61) == [40, 47, 54]

    def test_correct_model_forecasts_well(self, data):
        comp = ModelComparator([SIR_2], config=FAST, population=N,
                               cv=CrossValidationConfig(n_folds=3, horizon=7, min_train_size=20))
        cv = comp.cross_validate(SIR_2, data)
        assert cv.n_folds == 3 and cv.skipped == ()
        assert list(cv.folds["cutoff"]) == [40, 47, 54]
        assert cv.mae < 1.0
        assert cv.rmse >= cv.mae

    def test_short_training_windows_skipped(self, data, caplog):
        comp = ModelComparator([SIR_2], config=FAST, population=N,
                               cv=CrossValidationConfig(n_folds=3, horizon=7, min_train_size=100))
        cv = comp.cross_validate(SIR_2, data)
        assert cv.n_folds == 0
        assert cv.skipped == (0, 1, 2)
        assert np.isnan(cv.mae) and np.isnan(cv.rmse)
        assert (cv.folds["status"] == "skipped").all()
        assert "every cross-validation fold was skipped" in caplog.text

    def test_compare_fills_cv_columns(self, data):
        comp = ModelComparator([SIR_2], config=FAST, population=N,
                               cv=CrossValidationConfig(n_folds=2, horizon=5, min_train_size=20))
        table = comp.compare(data, cross_validate=True)
        assert table.loc[0, "cv_folds"] == 2
        assert np.isfinite(table.loc[0, "cv_mae"])


class TestValidation:

    def test_duplicate_names(self):
        with pytest.raises(ConfigurationError, match="unique"):
            ModelComparator([SIR_2, SIR_2])

    def test_empty(self):
        with pytest.raises(ConfigurationError):
            ModelComparator([])


class TestAkaikeWeights:

    def test_sum_to_one(self):
        w = akaike_weights([100.0, 102.0, 110.0])
        assert w.sum() == pytest.approx(1.0)
        assert w[0] / w[1] == pytest.approx(np.e)

    def test_infinite_aic_gets_zero_weight(self):
        w = akaike_weights([10.0, np.inf])
        assert w[0] == pytest.approx(1.0) and w[1] == 0.0

    def test_all_infinite(self):
        assert np.all(np.isnan(akaike_weights([np.inf, np.inf])))
