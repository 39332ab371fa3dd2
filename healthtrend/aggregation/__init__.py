"""Aggregation primitives and bucket math."""

from .incremental import (
    AverageState,
    CounterState,
    MinMaxState,
    RateState,
    merge_average,
    merge_counter,
    merge_min_max,
    merge_rate,
    round_half_up,
)
