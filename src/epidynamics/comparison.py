"""
===========================================================
comparison.py
Last Updated: 2026-10-19
===========================================================

Description:
    Fits a set of candidate model variants to one observed
    series and ranks them.

    - AIC = 2k - 2 log L,  BIC = k ln n - 2 log L
    - variants ranked ascending by AIC, with delta-AIC and
      Akaike weights exp(-delta/2) / sum
    - optional k-fold temporal cross-validation: fold i trains
      on the leading window [0, cutoff_i), forecasts `horizon`
      periods and scores MAE / RMSE on the held-out counts.
      Folds whose training window is shorter than
      min_train_size are skipped and reported as skipped.

Example Usage:
    comparator = ModelComparator([
        ModelVariant("SIR", SIR, bounds={"beta": (0.05, 1), "gamma": (0.02, 0.5)}),
        ModelVariant("SEIR", SEIR, bounds={...}, fixed={"sigma": 0.2}),
    ])
    table = comparator.compare(series, cross_validate=True)
-----------------------------------------------------------
License: MIT
===========================================================
"""
from __future__ import annotations

import logging
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .config import CrossValidationConfig, EstimatorConfig
from .errors import ConfigurationError, InsufficientDataError
from .estimation import FitResult, ParameterEstimator
from .interventions import InterventionSchedule
from .models import CompartmentalModel
from .observations import ObservationsLike, ObservedSeries, as_arrays

logger = logging.getLogger(__name__)

TABLE_COLUMNS = [
    "rank", "name", "n_params", "log_likelihood", "aic", "bic", "delta_aic", "aic_weight",
    "converged", "r0", "cv_mae", "cv_rmse", "cv_folds",
]


@dataclass(frozen=True)
class ModelVariant:
    """One candidate: a model family with its own free parameters and fixed values"""
    name: str
    model: CompartmentalModel
    bounds: Mapping[str, Tuple[float, float]]
    fixed: Mapping[str, float] = field(default_factory=dict)
    initial_state: Optional[Mapping[str, float]] = None
    initial_infected: float = 1.0
    schedule: Optional[InterventionSchedule] = None

    @property
    def n_params(self) -> int:
        return len(self.bounds)

    def estimator(self, config: Optional[EstimatorConfig] = None,
                  population: Optional[float] = None) -> ParameterEstimator:
        return ParameterEstimator(
            self.model, self.bounds, fixed=self.fixed, initial_state=self.initial_state,
            initial_infected=self.initial_infected, population=population,
            config=config, schedule=self.schedule,
        )


@dataclass(frozen=True)
class CrossValidationResult:
    """
    Pooled forecast error over the folds that ran.

    folds: DataFrame with one row per fold (cutoff, status, mae, rmse)
    """
    variant: str
    mae: float
    rmse: float
    n_folds: int
    skipped: Tuple[int, ...]
    folds: pd.DataFrame


def _slice(data: ObservationsLike, stop: int) -> ObservationsLike:
    if isinstance(data, ObservedSeries):
        return data.window(0, stop)
    t, y = as_arrays(data)
    return t[:stop], y[:stop]


def _fit_variant(job) -> FitResult:
    variant, data, config, population = job
    return variant.estimator(config, population).fit_point(data)


def akaike_weights(aic: Sequence[float]) -> np.ndarray:
    aic = np.asarray(aic, dtype=float)
    finite = np.isfinite(aic)
    if not np.any(finite):
        return np.full(aic.shape, np.nan)
    delta = np.where(finite, aic - np.min(aic[finite]), np.inf)
    w = np.exp(-0.5 * delta)
    return w / w.sum()


class ModelComparator:
    """
    Ranks model variants on a shared observed series.

    Parameters:
    -----------
    variants: sequence of ModelVariant (unique names)
    config: EstimatorConfig, optional
        Likelihood and optimizer settings used for every variant
    cv: CrossValidationConfig, optional
    population: float, optional
        N when the data is a raw (t, y) pair and variants carry no initial state
    max_workers: int, optional
        > 1 fits variants in a ProcessPoolExecutor
    """
    def __init__(self, variants: Sequence[ModelVariant], config: Optional[EstimatorConfig] = None,
                 cv: Optional[CrossValidationConfig] = None, population: Optional[float] = None,
                 max_workers: Optional[int] = None):
        self.variants = tuple(variants)
        if not self.variants:
            raise ConfigurationError("no model variants to compare")
        names = [v.name for v in self.variants]
        if len(set(names)) != len(names):
            raise ConfigurationError(f"variant names must be unique: {names}")
        self.config = config or EstimatorConfig()
        self.cv = cv or CrossValidationConfig()
        self.population = population
        self.max_workers = max_workers

    def _map(self, fn, jobs: List) -> List:
        if self.max_workers is not None and self.max_workers > 1 and len(jobs) > 1:
            with ProcessPoolExecutor(max_workers=self.max_workers) as executor:
                return list(executor.map(fn, jobs))
        return [fn(job) for job in jobs]

    def fit_all(self, data: ObservationsLike) -> Dict[str, FitResult]:
        """Point fit of every variant, in variant order"""
        logger.info("fitting %d variants (workers=%s)", len(self.variants), self.max_workers or 1)
        jobs = [(v, data, self.config, self.population) for v in self.variants]
        return {v.name: fit for v, fit in zip(self.variants, self._map(_fit_variant, jobs))}

    def fold_cutoffs(self, n_obs: int) -> List[int]:
        """Training-window ends for each fold, earliest first"""
        h = self.cv.horizon
        return [n_obs - h * (self.cv.n_folds - i) for i in range(self.cv.n_folds)]

    def cross_validate(self, variant: ModelVariant, data: ObservationsLike) -> CrossValidationResult:
        t, y = as_arrays(data)
        errors, rows, skipped = [], [], []
        for i, cutoff in enumerate(self.fold_cutoffs(len(y))):
            if cutoff < self.cv.min_train_size:
                logger.warning("%s fold %d skipped: %d training points < min_train_size %d",
                               variant.name, i, max(cutoff, 0), self.cv.min_train_size)
                skipped.append(i)
                rows.append({"fold": i, "cutoff": cutoff, "status": "skipped", "mae": np.nan, "rmse": np.nan})
                continue
            train = _slice(data, cutoff)
            estimator = variant.estimator(self.config, self.population)
            try:
                fit = estimator.fit_point(train)
            except InsufficientDataError as exc:
                logger.warning("%s fold %d skipped: %s", variant.name, i, exc)
                skipped.append(i)
                rows.append({"fold": i, "cutoff": cutoff, "status": "skipped", "mae": np.nan, "rmse": np.nan})
                continue
            stop = cutoff + self.cv.horizon
            population = estimator.resolve_population(data)
            forecast = estimator.predict(fit.params, t[:stop], population)[cutoff:stop]
            err = forecast - y[cutoff:stop]
            errors.append(err)
            rows.append({"fold": i, "cutoff": cutoff, "status": "ok" if fit.converged else "not_converged",
                         "mae": float(np.mean(np.abs(err))), "rmse": float(np.sqrt(np.mean(err ** 2)))})
            logger.debug("%s fold %d: cutoff %d, mae %.4g", variant.name, i, cutoff, rows[-1]["mae"])

        if errors:
            pooled = np.concatenate(errors)
            mae, rmse = float(np.mean(np.abs(pooled))), float(np.sqrt(np.mean(pooled ** 2)))
        else:
            logger.warning("%s: every cross-validation fold was skipped", variant.name)
            mae = rmse = np.nan
        return CrossValidationResult(variant.name, mae, rmse, len(errors), tuple(skipped), pd.DataFrame(rows))

    def compare(self, data: ObservationsLike, cross_validate: bool = False) -> pd.DataFrame:
        """Comparison table, one row per variant, ranked by AIC"""
        fits = self.fit_all(data)
        rows = []
        for v in self.variants:
            fit = fits[v.name]
            row = {
                "name": v.name, "n_params": fit.n_params, "log_likelihood": fit.log_likelihood,
                "aic": fit.aic, "bic": fit.bic, "converged": fit.converged, "r0": fit.r0,
                "cv_mae": np.nan, "cv_rmse": np.nan, "cv_folds": 0,
            }
            if cross_validate:
                cv = self.cross_validate(v, data)
                row.update(cv_mae=cv.mae, cv_rmse=cv.rmse, cv_folds=cv.n_folds)
            rows.append(row)

        table = pd.DataFrame(rows)
        table["aic_weight"] = akaike_weights(table["aic"])
        table = table.sort_values("aic", kind="mergesort", na_position="last").reset_index(drop=True)
        table["delta_aic"] = table["aic"] - table["aic"].min()
        table["rank"] = np.arange(1, len(table) + 1)
        return table[TABLE_COLUMNS]
