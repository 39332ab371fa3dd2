"""Real-time hourly aggregation.

Every completed run folds into the current hour's aggregate row, so
availability and latency trends are up to date without waiting for the
retention job. Latency p95 is tracked with a t-digest stored on the row.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from ..aggregation.digest import (
    deserialize_digest,
    digest_count,
    digest_percentile,
    serialize_digest,
)
from ..aggregation.incremental import (
    AverageState,
    CounterState,
    MinMaxState,
    merge_average,
    merge_counter,
    merge_min_max,
    round_half_up,
)
from ..plugins.registry import (
    COLLECTOR_INTERNAL_FIELDS,
    COLLECTOR_TAG,
    tag_payload,
    unpack_collector,
)
from .models import AggregateRow, BucketSize, HealthStatus, Observation, to_utc

if TYPE_CHECKING:
    from ..storage.store import HealthStore

logger = logging.getLogger(__name__)


def get_hour_bucket_start(timestamp: datetime) -> datetime:
    """Floor a timestamp to its UTC hour."""
    return to_utc(timestamp).replace(minute=0, second=0, microsecond=0)


def increment_hourly_aggregate(
    store: HealthStore,
    run: Observation,
    collector_registry: Any | None = None,
) -> AggregateRow:
    """Fold ``run`` into its hourly aggregate row and persist it."""
    bucket_start = get_hour_bucket_start(run.timestamp)

    with store.transaction():
        existing = store.get_aggregate(
            run.system_id, run.configuration_id, bucket_start, BucketSize.HOURLY,
        )
        row = existing or AggregateRow(
            system_id=run.system_id,
            configuration_id=run.configuration_id,
            bucket_start=bucket_start,
            bucket_size=BucketSize.HOURLY,
        )

        row.run_count = int(merge_counter(CounterState(count=row.run_count), True).count)
        row.healthy_count = int(merge_counter(
            CounterState(count=row.healthy_count), run.status == HealthStatus.HEALTHY,
        ).count)
        row.degraded_count = int(merge_counter(
            CounterState(count=row.degraded_count), run.status == HealthStatus.DEGRADED,
        ).count)
        row.unhealthy_count = int(merge_counter(
            CounterState(count=row.unhealthy_count), run.status == HealthStatus.UNHEALTHY,
        ).count)

        if run.latency_ms is not None:
            _merge_latency(row, run.latency_ms)

        merged = _merge_collector_results(row.aggregated_result, run, collector_registry)
        if merged is not None:
            row.aggregated_result = merged

        store.upsert_aggregate(row)

    return row


def _merge_latency(row: AggregateRow, latency_ms: float) -> None:
    digest = deserialize_digest(row.tdigest_state)

    # The digest weight is the number of latency samples, which can be lower
    # than run_count when some runs reported no latency.
    previous = None
    if row.latency_sum_ms is not None:
        samples = digest_count(digest) or row.run_count - 1
        previous = AverageState(sum=row.latency_sum_ms, count=max(samples, 0))
    average = merge_average(previous, latency_ms)
    extrema = merge_min_max(
        MinMaxState(min=row.min_latency_ms, max=row.max_latency_ms)
        if row.min_latency_ms is not None and row.max_latency_ms is not None
        else None,
        latency_ms,
    )

    digest.update(latency_ms)
    p95 = digest_percentile(digest, 95)

    row.latency_sum_ms = average.sum
    row.latency_sum_source = "exact"
    row.avg_latency_ms = average.avg
    row.min_latency_ms = extrema.min
    row.max_latency_ms = extrema.max
    row.p95_latency_ms = round_half_up(p95) if p95 is not None else None
    row.tdigest_state = serialize_digest(digest)


def _merge_collector_results(
    existing_result: dict[str, Any] | None,
    run: Observation,
    collector_registry: Any | None,
) -> dict[str, Any] | None:
    """Merge this run's collector payloads into the row's collector aggregates.

    Uses each collector's ``merge_result(existing, run)``; collectors that are
    unknown or cannot merge incrementally are left out.
    """
    run_collectors = run.collectors()
    if not run_collectors or collector_registry is None:
        return existing_result

    existing_collectors: dict[str, Any] = dict((existing_result or {}).get("collectors") or {})
    merged = dict(existing_collectors)

    for correlation_id, payload in run_collectors.items():
        if not isinstance(payload, dict):
            continue
        collector_id = payload.get(COLLECTOR_TAG)
        if not collector_id:
            continue
        collector, result_model = unpack_collector(collector_registry.get_collector(collector_id))
        if collector is None or not hasattr(collector, "merge_result"):
            continue

        previous = existing_collectors.get(correlation_id)
        if previous is not None:
            previous = {k: v for k, v in previous.items() if k != COLLECTOR_TAG}
        new_run = {
            "status": run.status.value,
            "latency_ms": run.latency_ms,
            "metadata": {k: v for k, v in payload.items() if k not in COLLECTOR_INTERNAL_FIELDS},
        }
        aggregate = collector.merge_result(previous, new_run)
        merged[correlation_id] = tag_payload(COLLECTOR_TAG, collector_id, aggregate, result_model)

    return {**(existing_result or {}), "collectors": merged}


def record_run(
    store: HealthStore,
    run: Observation,
    collector_registry: Any | None = None,
) -> AggregateRow:
    """Persist a completed run and update its hourly aggregate atomically."""
    with store.transaction():
        store.insert_run(run)
        row = increment_hourly_aggregate(store, run, collector_registry)
    logger.debug(
        "Recorded run %s/%s: %s (%sms)",
        run.system_id, run.configuration_id, run.status.value, run.latency_ms,
    )
    return row
