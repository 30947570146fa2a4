"""
===========================================================
observations.py
Last Updated: 2026-10-19
===========================================================

Description:
    Intake of an observed case series from a collaborator:
    (date, case_count, population[, location]) records, already
    cleaned upstream.

    The series must be regular: dates strictly increasing with
    no missing periods at `freq` (default daily). Missing dates
    are an error here; filling or interpolating them is the
    caller's job.

Notes:
    - t is the number of periods since the first date, so
      observation k sits at t[k] = k on the simulator clock.
    - A single location per series; split multi-location
      frames before building a series.
-----------------------------------------------------------
License: MIT
===========================================================
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from .errors import ConfigurationError, InsufficientDataError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ObservedSeries:
    """
    Regular series of case counts for one location.

    Attributes:
    dates: pd.DatetimeIndex
    cases: np.ndarray. Non-negative integer counts per period
    population: float. Population size N (taken from the first record)
    location: str
    freq: str. Fixed reporting period as a timedelta unit ("D" or "W")
    """
    dates: pd.DatetimeIndex
    cases: np.ndarray
    population: float
    location: str = ""
    freq: str = "D"

    def __post_init__(self):
        dates = pd.DatetimeIndex(pd.to_datetime(self.dates))
        cases = np.asarray(self.cases, dtype=float)
        if len(dates) == 0:
            raise InsufficientDataError("observed series is empty")
        if cases.shape != (len(dates),):
            raise ConfigurationError(f"{len(dates)} dates but cases has shape {cases.shape}")
        if not np.all(np.isfinite(cases)) or np.any(cases < 0):
            raise ConfigurationError("case counts must be finite and non-negative")
        if not np.all(np.equal(np.mod(cases, 1.0), 0.0)):
            raise ConfigurationError("case counts must be integers")
        if not dates.is_monotonic_increasing or dates.has_duplicates:
            raise ConfigurationError("dates must be strictly increasing")
        try:
            period = pd.to_timedelta(1, unit=self.freq)
        except ValueError:
            raise ConfigurationError(f"freq must be a fixed-length period such as 'D' or 'W', got {self.freq!r}") from None
        steps = dates[1:] - dates[:-1]
        if len(steps) and not np.all(steps == period):
            k = int(np.argmax(steps != period))
            raise ConfigurationError(
                f"series is not contiguous at freq={self.freq!r}: gap after {dates[k].date()}"
            )
        if not (np.isfinite(self.population) and self.population > 0):
            raise ConfigurationError("population must be positive")
        cases = cases.astype(np.int64)
        cases.flags.writeable = False
        object.__setattr__(self, "dates", dates)
        object.__setattr__(self, "cases", cases)
        object.__setattr__(self, "population", float(self.population))

    @classmethod
    def from_records(cls, records: Iterable[Sequence], freq: str = "D") -> "ObservedSeries":
        """records: (date, case_count, population) or (date, case_count, population, location)"""
        rows = [tuple(r) for r in records]
        if not rows:
            raise InsufficientDataError("no records")
        if any(len(r) not in (3, 4) for r in rows):
            raise ConfigurationError("records must be (date, cases, population[, location])")
        locations = {r[3] for r in rows if len(r) == 4}
        if len(locations) > 1:
            raise ConfigurationError(f"records span several locations {sorted(locations)}; build one series each")
        populations = np.array([float(r[2]) for r in rows])
        if np.any(populations != populations[0]):
            logger.warning("population varies across records; using the first value %.0f", populations[0])
        return cls(
            dates=pd.DatetimeIndex([r[0] for r in rows]),
            cases=np.array([r[1] for r in rows], dtype=float),
            population=populations[0],
            location=locations.pop() if locations else "",
            freq=freq,
        )

    @classmethod
    def from_dataframe(cls, df: pd.DataFrame, date_col: str = "date", cases_col: str = "cases",
                       population_col: str = "population", location_col: str = "location",
                       location: Optional[str] = None, freq: str = "D") -> "ObservedSeries":
        """Build from a tidy frame, optionally selecting one location"""
        for col in (date_col, cases_col, population_col):
            if col not in df.columns:
                raise ConfigurationError(f"missing column {col!r}")
        if location is not None:
            if location_col not in df.columns:
                raise ConfigurationError(f"missing column {location_col!r}")
            df = df[df[location_col] == location]
            if df.empty:
                raise InsufficientDataError(f"no rows for location {location!r}")
        elif location_col in df.columns:
            found = df[location_col].unique()
            if len(found) > 1:
                raise ConfigurationError(f"frame spans locations {list(found)}; pass location=")
            location = str(found[0]) if len(found) else ""
        df = df.sort_values(date_col)
        records = zip(df[date_col], df[cases_col], df[population_col])
        series = cls.from_records(records, freq=freq)
        return cls(series.dates, series.cases, series.population, location or "", freq)

    def __len__(self) -> int:
        return len(self.cases)

    @property
    def t(self) -> np.ndarray:
        """Periods since the first date"""
        return np.arange(len(self.cases), dtype=float)

    def window(self, start: int = 0, stop: Optional[int] = None) -> "ObservedSeries":
        """Positional slice [start, stop) as a new series"""
        dates = self.dates[start:stop]
        if len(dates) == 0:
            raise InsufficientDataError(f"window [{start}, {stop}) is empty")
        return ObservedSeries(dates, self.cases[start:stop], self.population, self.location, self.freq)

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame({
            "date": self.dates, "t": self.t, "cases": self.cases,
            "population": self.population, "location": self.location,
        })


ObservationsLike = Union[ObservedSeries, Tuple[Sequence[float], Sequence[float]]]


def as_arrays(data: ObservationsLike) -> Tuple[np.ndarray, np.ndarray]:
    """(t, y) from an ObservedSeries or a raw (times, values) pair"""
    if isinstance(data, ObservedSeries):
        return data.t, data.cases.astype(float)
    try:
        t, y = data
    except (TypeError, ValueError):
        raise ConfigurationError("observations must be an ObservedSeries or a (times, values) pair") from None
    t = np.asarray(t, dtype=float)
    y = np.asarray(y, dtype=float)
    if t.ndim != 1 or t.shape != y.shape:
        raise ConfigurationError(f"times {t.shape} and values {y.shape} must be matching 1-D arrays")
    if len(t) > 1 and np.any(np.diff(t) <= 0):
        raise ConfigurationError("observation times must be strictly increasing")
    if not np.all(np.isfinite(y)):
        raise ConfigurationError("observed values must be finite")
    return t, y
