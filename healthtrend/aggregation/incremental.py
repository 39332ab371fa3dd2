"""Incremental aggregation primitives.

Each merge folds one new observation into a small summary state, so a metric
can be maintained over an unbounded stream in O(1) memory. States are
immutable pydantic models (validated when loaded from storage); every merge
returns a new state and refreshes the derived field from the accumulators.
"""

from __future__ import annotations

import math

from pydantic import BaseModel


def round_half_up(value: float, ndigits: int = 0) -> float:
    """Round with halves going up (``2.5 -> 3``), unlike Python's banker's rounding."""
    scale = 10**ndigits
    rounded = math.floor(value * scale + 0.5) / scale
    return int(rounded) if ndigits == 0 else rounded


# ── Counter ──────────────────────────────────────────────────────────────────


class CounterState(BaseModel):
    model_config = {"frozen": True}

    count: int | float = 0


def merge_counter(existing: CounterState | None, increment: bool | int | float) -> CounterState:
    """Add to a counter. ``True`` counts 1, ``False`` 0, numbers count themselves."""
    if isinstance(increment, bool):
        value = 1 if increment else 0
    else:
        value = max(increment, 0)
    return CounterState(count=(existing.count if existing else 0) + value)


# ── Average ──────────────────────────────────────────────────────────────────


class AverageState(BaseModel):
    model_config = {"frozen": True}

    sum: float = 0
    count: int = 0
    avg: float = 0


def merge_average(existing: AverageState | None, value: float | None) -> AverageState:
    """Fold a value into a running average (rounded to one decimal)."""
    if value is None:
        return existing or AverageState()

    total = (existing.sum if existing else 0) + value
    count = (existing.count if existing else 0) + 1
    return AverageState(sum=total, count=count, avg=round_half_up(total / count, 1))


# ── Rate ─────────────────────────────────────────────────────────────────────


class RateState(BaseModel):
    model_config = {"frozen": True}

    successes: int = 0
    total: int = 0
    rate: int = 0  # percent, 0-100


def merge_rate(existing: RateState | None, success: bool | None) -> RateState:
    """Fold an outcome into a success rate percentage."""
    if success is None:
        return existing or RateState()

    successes = (existing.successes if existing else 0) + (1 if success else 0)
    total = (existing.total if existing else 0) + 1
    return RateState(
        successes=successes,
        total=total,
        rate=round_half_up(successes / total * 100),
    )


# ── Min / max ────────────────────────────────────────────────────────────────


class MinMaxState(BaseModel):
    model_config = {"frozen": True}

    min: float = 0
    max: float = 0


def merge_min_max(existing: MinMaxState | None, value: float | None) -> MinMaxState:
    """Track the smallest and largest value seen."""
    if value is None:
        return existing or MinMaxState()
    if existing is None:
        return MinMaxState(min=value, max=value)
    return MinMaxState(min=min(existing.min, value), max=max(existing.max, value))
