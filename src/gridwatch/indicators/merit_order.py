from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Optional


@dataclass(frozen=True, slots=True)
class GenerationUnit:
    unit_id: str
    capacity: float        # MW
    marginal_cost: float   # currency/MWh (SRMC)


@dataclass(frozen=True, slots=True)
class MeritStep:
    unit_id: str
    capacity: float
    marginal_cost: float
    cumulative_capacity: float


@dataclass(frozen=True, slots=True)
class MeritOrderCurve:
    """
    Step function: x = cumulative capacity, y = marginal cost of the unit filling that step.
    `active_count` is the length of the minimal prefix covering `demand`.
    """
    steps: tuple[MeritStep, ...]
    demand: float
    active_count: int
    clearing_price: Optional[float]
    shortfall: float       # demand not covered by total capacity (0 when covered)

    @property
    def active(self) -> tuple[MeritStep, ...]:
        return self.steps[: self.active_count]


def validate_units(units: Iterable[GenerationUnit]) -> tuple[GenerationUnit, ...]:
    out = tuple(units)
    seen: set[str] = set()
    for u in out:
        if u.unit_id in seen:
            raise ValueError(f"duplicate generation unit id {u.unit_id!r}")
        seen.add(u.unit_id)
        if not (math.isfinite(u.capacity) and u.capacity > 0.0):
            raise ValueError(f"unit {u.unit_id!r}: capacity must be positive")
        if not math.isfinite(u.marginal_cost):
            raise ValueError(f"unit {u.unit_id!r}: marginal cost must be finite")
    return out


def compute_merit_order(units: Iterable[GenerationUnit], demand: float) -> MeritOrderCurve:
    """
    Sort by marginal cost (unit_id breaks ties), accumulate capacity, and pick the
    shortest prefix whose cumulative capacity >= demand. If the whole stack is
    short, every unit is active and `shortfall` reports the gap.
    """
    ordered = sorted(units, key=lambda u: (u.marginal_cost, u.unit_id))
    steps: list[MeritStep] = []
    cum = 0.0
    for u in ordered:
        cum += u.capacity
        steps.append(MeritStep(u.unit_id, u.capacity, u.marginal_cost, cum))

    active = 0
    if demand > 0.0:
        for i, s in enumerate(steps):
            if s.cumulative_capacity >= demand:
                active = i + 1
                break
        else:
            active = len(steps)

    clearing = steps[active - 1].marginal_cost if active else None
    shortfall = max(0.0, demand - cum) if demand > 0.0 else 0.0
    return MeritOrderCurve(
        steps=tuple(steps),
        demand=float(demand),
        active_count=active,
        clearing_price=clearing,
        shortfall=shortfall,
    )
