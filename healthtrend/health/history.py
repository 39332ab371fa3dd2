"""History queries: raw run listing and bucketed aggregated history."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel

from ..aggregation.incremental import round_half_up
from ..aggregation.stats import (
    aggregate_collector_data,
    calculate_latency_stats,
    count_statuses,
    extract_latencies,
)
from ..aggregation.tiers import NormalizedBucket, merge_tiered_buckets, reaggregate_buckets
from ..config import settings
from ..plugins.registry import aggregate_strategy_result
from .models import AggregateRow, BucketSize, Observation, to_utc

if TYPE_CHECKING:
    from ..storage.store import HealthStore

logger = logging.getLogger(__name__)


class HistoryBucket(BaseModel):
    bucket_start: datetime
    bucket_interval_seconds: int
    run_count: int
    healthy_count: int
    degraded_count: int
    unhealthy_count: int
    success_rate: float
    avg_latency_ms: float | None = None
    min_latency_ms: float | None = None
    max_latency_ms: float | None = None
    p95_latency_ms: float | None = None
    aggregated_result: dict[str, Any] | None = None
    source_tier: Literal["raw", "hourly", "daily"] = "raw"


class AggregatedHistory(BaseModel):
    bucket_interval_seconds: int
    buckets: list[HistoryBucket]


class DetailedHistory(BaseModel):
    runs: list[dict[str, Any]]
    total: int


def calculate_bucket_interval(start: datetime, end: datetime, target_points: int) -> int:
    """Seconds per bucket so that ``[start, end)`` yields about ``target_points`` buckets."""
    if target_points < 1:
        raise ValueError(f"target_points must be >= 1, got {target_points}")
    range_seconds = (end - start).total_seconds()
    return max(1, round_half_up(range_seconds / target_points))


class HistoryService:
    """Answers history queries from raw runs and hourly/daily aggregates."""

    def __init__(
        self,
        store: HealthStore,
        strategies: Any | None = None,
        collectors: Any | None = None,
    ) -> None:
        self.store = store
        self.strategies = strategies
        self.collectors = collectors

    def _resolve_strategy(self, configuration_id: str) -> Any | None:
        config = self.store.get_configuration(configuration_id)
        if config is None:
            logger.debug("Configuration %s not found, no strategy metadata", configuration_id)
            return None
        if self.strategies is None:
            return None
        strategy = self.strategies.get_strategy(config.strategy_id)
        if strategy is None:
            logger.debug("Strategy %s not registered", config.strategy_id)
        return strategy

    def get_detailed_history(
        self,
        system_id: str,
        configuration_id: str,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        limit: int = 100,
        offset: int = 0,
        sort_order: Literal["asc", "desc"] = "desc",
    ) -> DetailedHistory:
        """Raw runs, paginated."""
        runs = self.store.get_runs(
            system_id, configuration_id, start_date, end_date,
            limit=limit, offset=offset, descending=sort_order == "desc",
        )
        total = self.store.count_runs(system_id, configuration_id, start_date, end_date)
        return DetailedHistory(runs=[r.to_dict() for r in runs], total=total)

    def get_aggregated_history(
        self,
        system_id: str,
        configuration_id: str,
        start_date: datetime,
        end_date: datetime,
        target_points: int | None = None,
        include_aggregated_result: bool = False,
    ) -> AggregatedHistory:
        """Bucket history into roughly ``target_points`` buckets.

        Only buckets that contain data are returned. Raw runs give exact
        statistics (including nearest-rank p95); time not covered by raw runs
        falls back to hourly, then daily aggregates.
        """
        start = to_utc(start_date)
        end = to_utc(end_date)
        interval_seconds = calculate_bucket_interval(
            start, end, target_points or settings.default_target_points,
        )
        interval = timedelta(seconds=interval_seconds)

        strategy = self._resolve_strategy(configuration_id) if include_aggregated_result else None

        runs = self.store.get_runs(system_id, configuration_id, start, end)
        raw_buckets = self._bucket_runs(runs, start, interval, strategy, include_aggregated_result)

        hourly = self.store.get_aggregates(system_id, configuration_id, BucketSize.HOURLY, start, end)
        daily = self.store.get_aggregates(system_id, configuration_id, BucketSize.DAILY, start, end)

        merged = merge_tiered_buckets(
            raw_buckets,
            [_normalize_aggregate(a, timedelta(hours=1), "hourly") for a in hourly],
            [_normalize_aggregate(a, timedelta(days=1), "daily") for a in daily],
        )
        buckets = reaggregate_buckets(merged, interval, start, end)

        return AggregatedHistory(
            bucket_interval_seconds=interval_seconds,
            buckets=[
                _to_history_bucket(b, interval_seconds, include_aggregated_result)
                for b in buckets
            ],
        )

    def _bucket_runs(
        self,
        runs: list[Observation],
        start: datetime,
        interval: timedelta,
        strategy: Any | None,
        include_aggregated_result: bool,
    ) -> list[NormalizedBucket]:
        grouped: dict[int, list[Observation]] = {}
        for run in runs:
            index = int((run.timestamp - start) // interval)
            grouped.setdefault(index, []).append(run)

        buckets = []
        for index in sorted(grouped):
            bucket_runs = grouped[index]
            counts = count_statuses(r.status for r in bucket_runs)
            latencies = extract_latencies(bucket_runs)
            stats = calculate_latency_stats(latencies)
            bucket_start = start + index * interval

            aggregated_result = None
            if include_aggregated_result:
                aggregated_result = self._aggregate_result(bucket_runs, strategy)

            buckets.append(NormalizedBucket(
                bucket_start=bucket_start,
                bucket_end=bucket_start + interval,
                run_count=len(bucket_runs),
                healthy_count=counts.healthy_count,
                degraded_count=counts.degraded_count,
                unhealthy_count=counts.unhealthy_count,
                latency_sum_ms=stats.latency_sum_ms,
                latency_count=len(latencies),
                min_latency_ms=stats.min_latency_ms,
                max_latency_ms=stats.max_latency_ms,
                p95_latency_ms=stats.p95_latency_ms,
                aggregated_result=aggregated_result,
                source_tier="raw",
            ))
        return buckets

    def _aggregate_result(self, runs: list[Observation], strategy: Any | None) -> dict[str, Any] | None:
        """Strategy and collector output for one bucket; a failing plugin is left out."""
        result: dict[str, Any] = {}
        if strategy is not None:
            try:
                result.update(aggregate_strategy_result(self.strategies, strategy, runs))
            except Exception:
                logger.exception("Strategy %s failed to aggregate results", strategy.id)

        try:
            collectors = aggregate_collector_data(runs, self.collectors)
        except Exception:
            logger.exception("Collector aggregation failed")
            collectors = {}
        if collectors:
            result["collectors"] = collectors

        return result or None


def _normalize_aggregate(agg: AggregateRow, size: timedelta, tier: str) -> NormalizedBucket:
    latency_sum = agg.latency_sum
    if latency_sum is None and agg.avg_latency_ms is not None:
        latency_sum_ms = agg.avg_latency_ms * agg.run_count
    else:
        latency_sum_ms = latency_sum.value if latency_sum else None

    return NormalizedBucket(
        bucket_start=agg.bucket_start,
        bucket_end=agg.bucket_start + size,
        run_count=agg.run_count,
        healthy_count=agg.healthy_count,
        degraded_count=agg.degraded_count,
        unhealthy_count=agg.unhealthy_count,
        latency_sum_ms=latency_sum_ms,
        latency_count=agg.run_count if latency_sum_ms is not None else 0,
        min_latency_ms=agg.min_latency_ms,
        max_latency_ms=agg.max_latency_ms,
        p95_latency_ms=agg.p95_latency_ms,
        aggregated_result=agg.aggregated_result,
        source_tier=tier,
    )


def _to_history_bucket(
    bucket: NormalizedBucket,
    interval_seconds: int,
    include_aggregated_result: bool,
) -> HistoryBucket:
    avg = None
    if bucket.latency_sum_ms is not None and bucket.latency_count > 0:
        avg = round_half_up(bucket.latency_sum_ms / bucket.latency_count)

    return HistoryBucket(
        bucket_start=bucket.bucket_start,
        bucket_interval_seconds=interval_seconds,
        run_count=bucket.run_count,
        healthy_count=bucket.healthy_count,
        degraded_count=bucket.degraded_count,
        unhealthy_count=bucket.unhealthy_count,
        success_rate=bucket.healthy_count / bucket.run_count if bucket.run_count else 0.0,
        avg_latency_ms=avg,
        min_latency_ms=bucket.min_latency_ms,
        max_latency_ms=bucket.max_latency_ms,
        p95_latency_ms=bucket.p95_latency_ms,
        aggregated_result=bucket.aggregated_result if include_aggregated_result else None,
        source_tier=bucket.source_tier,
    )
