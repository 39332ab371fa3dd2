"""Cross-tier bucket merging.

History can come from three tiers: raw runs (within raw retention), hourly
aggregates and daily aggregates. Buckets from every tier are normalised to
``NormalizedBucket``, merged with precedence raw > hourly > daily, then
re-aggregated into the query's target interval.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

TIER_PRIORITY = {"raw": 0, "hourly": 1, "daily": 2}


@dataclass
class NormalizedBucket:
    bucket_start: datetime
    bucket_end: datetime
    run_count: int
    healthy_count: int
    degraded_count: int
    unhealthy_count: int
    latency_sum_ms: float | None = None
    latency_count: int = 0  # samples behind latency_sum_ms
    min_latency_ms: float | None = None
    max_latency_ms: float | None = None
    p95_latency_ms: float | None = None
    aggregated_result: dict[str, Any] | None = None
    source_tier: str = "raw"


def _coverage(buckets: list[NormalizedBucket]) -> list[tuple[datetime, datetime]]:
    """Sorted, merged time ranges covered by ``buckets``."""
    ranges = sorted((b.bucket_start, b.bucket_end) for b in buckets)
    merged: list[list[datetime]] = []
    for start, end in ranges:
        if merged and start <= merged[-1][1]:
            merged[-1][1] = max(merged[-1][1], end)
        else:
            merged.append([start, end])
    return [(start, end) for start, end in merged]


def _overlaps(bucket: NormalizedBucket, coverage: list[tuple[datetime, datetime]]) -> bool:
    for start, end in coverage:
        if start >= bucket.bucket_end:
            break
        if bucket.bucket_start < end and start < bucket.bucket_end:
            return True
    return False


def merge_tiered_buckets(
    raw_buckets: list[NormalizedBucket],
    hourly_buckets: list[NormalizedBucket],
    daily_buckets: list[NormalizedBucket],
) -> list[NormalizedBucket]:
    """Combine tiers, keeping a coarser bucket only where finer data is absent.

    Raw buckets always win, even when an aggregate starts earlier and merely
    overlaps them, so fresh raw data is never hidden by a stale aggregate.
    """
    raw_coverage = _coverage(raw_buckets)
    hourly_coverage = _coverage(hourly_buckets)

    result = list(raw_buckets)
    result.extend(b for b in hourly_buckets if not _overlaps(b, raw_coverage))
    result.extend(
        b for b in daily_buckets
        if not _overlaps(b, raw_coverage) and not _overlaps(b, hourly_coverage)
    )
    result.sort(key=lambda b: b.bucket_start)
    return result


def combine_buckets(
    buckets: list[NormalizedBucket],
    target_start: datetime,
    target_end: datetime,
) -> NormalizedBucket:
    """Fold several buckets into one target bucket.

    Counts and latency sums add up; extrema take the min/max; p95 takes the
    max of the source p95s as an upper bound. ``aggregated_result`` is kept
    only when no re-aggregation of opaque payloads is needed.
    """
    combined = NormalizedBucket(
        bucket_start=target_start,
        bucket_end=target_end,
        run_count=0,
        healthy_count=0,
        degraded_count=0,
        unhealthy_count=0,
    )
    if not buckets:
        return combined

    latency_sum = 0.0
    has_latency = False
    lowest_tier = "raw"
    for b in buckets:
        combined.run_count += b.run_count
        combined.healthy_count += b.healthy_count
        combined.degraded_count += b.degraded_count
        combined.unhealthy_count += b.unhealthy_count
        if b.latency_sum_ms is not None:
            latency_sum += b.latency_sum_ms
            combined.latency_count += b.latency_count
            has_latency = True
        if TIER_PRIORITY[b.source_tier] > TIER_PRIORITY[lowest_tier]:
            lowest_tier = b.source_tier

    mins = [b.min_latency_ms for b in buckets if b.min_latency_ms is not None]
    maxes = [b.max_latency_ms for b in buckets if b.max_latency_ms is not None]
    p95s = [b.p95_latency_ms for b in buckets if b.p95_latency_ms is not None]

    combined.latency_sum_ms = latency_sum if has_latency else None
    combined.min_latency_ms = min(mins) if mins else None
    combined.max_latency_ms = max(maxes) if maxes else None
    combined.p95_latency_ms = max(p95s) if p95s else None
    combined.source_tier = lowest_tier

    results = [b.aggregated_result for b in buckets if b.aggregated_result is not None]
    if len(buckets) == 1:
        combined.aggregated_result = buckets[0].aggregated_result
    elif lowest_tier == "raw" and len(results) == 1:
        combined.aggregated_result = results[0]
    return combined


def reaggregate_buckets(
    source_buckets: list[NormalizedBucket],
    target_interval: timedelta,
    range_start: datetime,
    range_end: datetime,
) -> list[NormalizedBucket]:
    """Regroup source buckets into ``target_interval`` buckets from ``range_start``.

    The last bucket is stretched to ``range_end`` so trailing data is covered.
    """
    if not source_buckets:
        return []

    groups: dict[int, list[NormalizedBucket]] = {}
    for bucket in source_buckets:
        index = int((bucket.bucket_start - range_start) // target_interval)
        groups.setdefault(index, []).append(bucket)

    last_index = max(groups)
    result = []
    for index, group in groups.items():
        target_start = range_start + index * target_interval
        target_end = target_start + target_interval
        if index == last_index:
            target_end = max(target_end, range_end)
        result.append(combine_buckets(group, target_start, target_end))

    result.sort(key=lambda b: b.bucket_start)
    return result
