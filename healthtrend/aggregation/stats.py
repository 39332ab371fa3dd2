"""Bucket statistics shared by the history query and the retention job."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Iterable

from ..plugins.registry import (
    COLLECTOR_INTERNAL_FIELDS,
    COLLECTOR_TAG,
    tag_payload,
    unpack_collector,
)
from .incremental import round_half_up


def calculate_percentile(values: list[float], percentile: float) -> float:
    """Nearest-rank percentile: sort, take index ``ceil(p/100 * n) - 1``."""
    ordered = sorted(values)
    index = math.ceil(percentile * len(ordered) / 100) - 1
    return ordered[max(0, index)]


@dataclass
class StatusCounts:
    healthy_count: int = 0
    degraded_count: int = 0
    unhealthy_count: int = 0


def count_statuses(statuses: Iterable[Any]) -> StatusCounts:
    """Count healthy/degraded/unhealthy; unrecognised values are ignored."""
    counts = StatusCounts()
    for status in statuses:
        value = getattr(status, "value", status)
        if value == "healthy":
            counts.healthy_count += 1
        elif value == "degraded":
            counts.degraded_count += 1
        elif value == "unhealthy":
            counts.unhealthy_count += 1
    return counts


@dataclass
class LatencyStats:
    latency_sum_ms: float | None = None
    avg_latency_ms: float | None = None
    min_latency_ms: float | None = None
    max_latency_ms: float | None = None
    p95_latency_ms: float | None = None


def extract_latencies(runs: Iterable[Any]) -> list[float]:
    """Latencies of the runs that have one."""
    return [r.latency_ms for r in runs if r.latency_ms is not None]


def calculate_latency_stats(latencies: list[float]) -> LatencyStats:
    if not latencies:
        return LatencyStats()

    total = sum(latencies)
    return LatencyStats(
        latency_sum_ms=total,
        avg_latency_ms=round_half_up(total / len(latencies)),
        min_latency_ms=min(latencies),
        max_latency_ms=max(latencies),
        p95_latency_ms=calculate_percentile(latencies, 95),
    )


def aggregate_collector_data(runs: Iterable[Any], collector_registry: Any | None) -> dict[str, Any]:
    """Group collector payloads by correlation id and aggregate each group.

    Each payload names its collector through ``_collectorId``. Groups whose
    collector is not registered (or has no ``aggregate_result``) are skipped.
    """
    if collector_registry is None:
        return {}

    grouped: dict[str, tuple[str, list[dict[str, Any]]]] = {}
    for run in runs:
        for correlation_id, payload in run.collectors().items():
            if not isinstance(payload, dict):
                continue
            collector_id = payload.get(COLLECTOR_TAG)
            if not collector_id:
                continue
            metadata = {k: v for k, v in payload.items() if k not in COLLECTOR_INTERNAL_FIELDS}
            entry = grouped.setdefault(correlation_id, (collector_id, []))
            entry[1].append({
                "status": run.status.value,
                "latency_ms": run.latency_ms,
                "metadata": metadata,
            })

    result: dict[str, Any] = {}
    for correlation_id, (collector_id, collector_runs) in grouped.items():
        collector, result_model = unpack_collector(collector_registry.get_collector(collector_id))
        if collector is None or not hasattr(collector, "aggregate_result"):
            continue
        aggregated = collector.aggregate_result(collector_runs)
        result[correlation_id] = tag_payload(COLLECTOR_TAG, collector_id, aggregated, result_model)
    return result
