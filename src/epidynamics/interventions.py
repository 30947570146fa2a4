"""
===========================================================
interventions.py
Last Updated: 2026-10-19
===========================================================

Description:
    Time-varying multiplicative modulation of transmission.
    An InterventionSchedule is a read-only set of
    (start, end, effect) windows; factor(t) returns the
    multiplier applied to beta (or to the per-contact
    transmission probability on networks) at time t.

API:
    - Intervention(start, end, effect, ramp=0.0, name="")
        window is closed-open [start, end); effect is the
        fractional reduction in (0..1); ramp > 0 grows the
        effect linearly over the first `ramp` time units
    - InterventionSchedule(interventions, combination="multiplicative")
        combination: "multiplicative" (default), "additive",
        or a callable effects -> factor
    - InterventionSchedule.from_piecewise(edges, factors)
    - factor(t), factors(t_array)

Notes:
    - Overlapping windows compose multiplicatively by default:
      two 50% reductions leave 0.5 * 0.5 = 25% transmission.
    - "additive" sums reductions and clamps the factor to [0, 1]
      so transmission never goes negative.
-----------------------------------------------------------
License: MIT
===========================================================
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterable, Sequence, Tuple, Union

import numpy as np

from .errors import ConfigurationError

CombinationRule = Union[str, Callable[[Sequence[float]], float]]


@dataclass(frozen=True)
class Intervention:
    start: float
    end: float
    effect: float
    ramp: float = 0.0
    name: str = ""

    def __post_init__(self):
        for label, v in (("start", self.start), ("end", self.end), ("effect", self.effect), ("ramp", self.ramp)):
            if not np.isfinite(v):
                raise ConfigurationError(f"intervention {label} must be finite")
        if self.end <= self.start:
            raise ConfigurationError(f"intervention window [{self.start}, {self.end}) is empty")
        if not 0.0 <= self.effect <= 1.0:
            raise ConfigurationError("intervention effect must be a reduction in [0, 1]")
        if self.ramp < 0:
            raise ConfigurationError("ramp must be non-negative")

    def active(self, t: float) -> bool:
        return self.start <= t < self.end

    def effect_at(self, t: float) -> float:
        """Reduction in force at time t (0 outside the window)"""
        if not self.active(t):
            return 0.0
        if self.ramp > 0:
            # linear ramp up to full effect
            return self.effect * min((t - self.start) / self.ramp, 1.0)
        return self.effect


def _multiplicative(effects: Sequence[float]) -> float:
    return float(np.prod([1.0 - e for e in effects])) if effects else 1.0


def _additive(effects: Sequence[float]) -> float:
    return float(np.clip(1.0 - sum(effects), 0.0, 1.0))


_RULES = {"multiplicative": _multiplicative, "additive": _additive}


class InterventionSchedule:
    """
    Ordered, possibly overlapping set of intervention windows.

    The schedule is immutable after construction; identical schedule and
    time always give an identical factor.
    """
    def __init__(self, interventions: Iterable[Intervention] = (), combination: CombinationRule = "multiplicative"):
        items = tuple(interventions)
        for it in items:
            if not isinstance(it, Intervention):
                raise ConfigurationError(f"expected Intervention records, got {type(it).__name__}")
        self._interventions: Tuple[Intervention, ...] = tuple(sorted(items, key=lambda it: (it.start, it.end)))
        if callable(combination):
            self._combine = combination
            self.combination = getattr(combination, "__name__", "custom")
        elif combination in _RULES:
            self._combine = _RULES[combination]
            self.combination = combination
        else:
            raise ConfigurationError(f"unknown combination rule {combination!r}")

    @classmethod
    def from_records(cls, records: Iterable[Tuple[float, float, float]], **kwargs) -> "InterventionSchedule":
        """Build from plain (start, end, effect) tuples"""
        try:
            items = [Intervention(float(s), float(e), float(m)) for s, e, m in records]
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"malformed intervention record: {exc}") from exc
        return cls(items, **kwargs)

    @classmethod
    def from_piecewise(cls, edges: Sequence[float], factors: Sequence[float]) -> "InterventionSchedule":
        """
        Piecewise-constant transmission multiplier.

        edges: strictly increasing, len K+1; factors: len K multipliers in [0, 1]
        for segments [e0,e1), ..., [e_{K-1}, e_K). Outside the edges the factor is 1.
        """
        edges = np.asarray(edges, dtype=float)
        factors = np.asarray(factors, dtype=float)
        if len(edges) < 2 or not np.all(np.diff(edges) > 0):
            raise ConfigurationError("edges must be strictly increasing, len >= 2")
        if len(factors) != len(edges) - 1:
            raise ConfigurationError("factors length must be len(edges) - 1")
        items = [
            Intervention(float(edges[k]), float(edges[k + 1]), 1.0 - float(f), name=f"segment_{k}")
            for k, f in enumerate(factors) if f != 1.0
        ]
        return cls(items)

    @property
    def interventions(self) -> Tuple[Intervention, ...]:
        return self._interventions

    def __len__(self) -> int:
        return len(self._interventions)

    def active(self, t: float) -> Tuple[Intervention, ...]:
        return tuple(it for it in self._interventions if it.active(t))

    def factor(self, t: float) -> float:
        """Multiplier on transmission at time t"""
        effects = [it.effect_at(t) for it in self._interventions if it.active(t)]
        if not effects:
            return 1.0
        f = float(self._combine(effects))
        if not np.isfinite(f) or f < 0:
            raise ConfigurationError(f"combination rule produced invalid factor {f!r}")
        return f

    def factors(self, times: Sequence[float]) -> np.ndarray:
        return np.array([self.factor(float(t)) for t in times], dtype=float)

    def breakpoints(self) -> np.ndarray:
        """Window starts/ends (and ramp ends), for solvers that should not step across them"""
        pts = set()
        for it in self._interventions:
            pts.update((it.start, it.end))
            if it.ramp > 0:
                pts.add(min(it.start + it.ramp, it.end))
        return np.array(sorted(pts), dtype=float)

    def __repr__(self) -> str:
        return f"InterventionSchedule({len(self)} interventions, combination={self.combination!r})"


NO_INTERVENTION = InterventionSchedule()
