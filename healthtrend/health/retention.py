"""Retention job: prune raw runs, roll hourly aggregates into daily ones.

For every system/configuration assignment, in order:

1. Raw runs older than ``raw_retention_days`` are deleted. Hours that never
   got a real-time hourly row are backfilled from the raw runs first.
2. Hourly aggregates older than ``hourly_retention_days`` are rolled up into
   one daily aggregate per UTC day and removed.
3. Daily aggregates older than ``daily_retention_days`` are deleted.

A failure on one assignment is logged and the job moves on to the next.
The whole run holds a lease in the store so overlapping invocations (e.g.
two instances on the same schedule) do not process the same data twice.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from ..aggregation.incremental import round_half_up
from ..aggregation.stats import (
    aggregate_collector_data,
    calculate_latency_stats,
    count_statuses,
    extract_latencies,
)
from ..config import settings
from ..plugins.registry import aggregate_strategy_result
from .models import (
    AggregateRow,
    ApproximatedLatencySum,
    Assignment,
    BucketSize,
    ExactLatencySum,
    LatencySum,
    Observation,
    to_utc,
    utcnow,
)

if TYPE_CHECKING:
    from ..storage.store import HealthStore

logger = logging.getLogger(__name__)

RETENTION_JOB_NAME = "health-check-retention"


@dataclass
class RetentionReport:
    """Outcome of one retention run."""

    started_at: datetime
    skipped: bool = False
    processed: list[tuple[str, str]] = field(default_factory=list)
    failed: list[tuple[str, str]] = field(default_factory=list)
    runs_deleted: int = 0
    hourly_backfilled: int = 0
    daily_written: int = 0
    hourly_rolled_up: int = 0
    daily_deleted: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "skipped": self.skipped,
            "processed": [{"system_id": s, "configuration_id": c} for s, c in self.processed],
            "failed": [{"system_id": s, "configuration_id": c} for s, c in self.failed],
            "runs_deleted": self.runs_deleted,
            "hourly_backfilled": self.hourly_backfilled,
            "daily_written": self.daily_written,
            "hourly_rolled_up": self.hourly_rolled_up,
            "daily_deleted": self.daily_deleted,
        }


def _floor_hour(ts: datetime) -> datetime:
    return ts.replace(minute=0, second=0, microsecond=0)


def _floor_day(ts: datetime) -> datetime:
    return ts.replace(hour=0, minute=0, second=0, microsecond=0)


def run_retention_job(
    store: HealthStore,
    strategies: Any | None = None,
    collectors: Any | None = None,
    now: datetime | None = None,
    owner: str | None = None,
) -> RetentionReport:
    """Apply retention to every assignment."""
    now = to_utc(now or utcnow())
    owner = owner or uuid.uuid4().hex
    report = RetentionReport(started_at=now)

    if not store.acquire_lock(RETENTION_JOB_NAME, owner, settings.retention_lock_ttl_seconds, now):
        logger.info("Retention job already running elsewhere, skipping this trigger")
        report.skipped = True
        return report

    try:
        for assignment in store.list_assignments():
            key = (assignment.system_id, assignment.configuration_id)
            try:
                _process_assignment(store, strategies, collectors, assignment, now, report)
                report.processed.append(key)
            except Exception:
                logger.exception(
                    "Retention job failed for %s/%s", assignment.system_id, assignment.configuration_id,
                )
                report.failed.append(key)
    finally:
        store.release_lock(RETENTION_JOB_NAME, owner)

    logger.info(
        "Retention job done: %d assignments, %d failed, %d runs deleted, %d daily rows written",
        len(report.processed), len(report.failed), report.runs_deleted, report.daily_written,
    )
    return report


def _process_assignment(
    store: HealthStore,
    strategies: Any | None,
    collectors: Any | None,
    assignment: Assignment,
    now: datetime,
    report: RetentionReport,
) -> None:
    retention = assignment.effective_retention
    system_id, configuration_id = assignment.system_id, assignment.configuration_id

    backfilled, deleted = delete_expired_runs(
        store, system_id, configuration_id, retention.raw_retention_days, now,
        strategies=strategies, collectors=collectors,
    )
    report.hourly_backfilled += backfilled
    report.runs_deleted += deleted

    written, consumed = rollup_hourly_aggregates(
        store, system_id, configuration_id, retention.hourly_retention_days, now,
    )
    report.daily_written += written
    report.hourly_rolled_up += consumed

    report.daily_deleted += delete_expired_aggregates(
        store, system_id, configuration_id, retention.daily_retention_days, now,
    )


# ── Step 1: raw runs ─────────────────────────────────────────────────────────


def delete_expired_runs(
    store: HealthStore,
    system_id: str,
    configuration_id: str,
    raw_retention_days: int,
    now: datetime,
    strategies: Any | None = None,
    collectors: Any | None = None,
) -> tuple[int, int]:
    """Delete raw runs before the hour-aligned cutoff.

    Returns ``(hourly rows backfilled, runs deleted)``.
    """
    cutoff = _floor_hour(to_utc(now) - timedelta(days=raw_retention_days))

    with store.transaction():
        old_runs = store.get_runs(system_id, configuration_id, end=cutoff)
        if not old_runs:
            return 0, 0

        backfilled = _backfill_hourly(store, strategies, collectors, configuration_id, old_runs)
        deleted = store.delete_runs_before(system_id, configuration_id, cutoff)

    logger.debug(
        "%s/%s: deleted %d raw runs before %s (backfilled %d hours)",
        system_id, configuration_id, deleted, cutoff.isoformat(), backfilled,
    )
    return backfilled, deleted


def _backfill_hourly(
    store: HealthStore,
    strategies: Any | None,
    collectors: Any | None,
    configuration_id: str,
    runs: list[Observation],
) -> int:
    """Create hourly rows for hours that have runs but no aggregate yet.

    Hours already aggregated in real time are left alone so their runs are
    not counted twice.
    """
    by_hour: dict[datetime, list[Observation]] = {}
    for run in runs:
        by_hour.setdefault(_floor_hour(run.timestamp), []).append(run)

    strategy = None
    if strategies is not None:
        config = store.get_configuration(configuration_id)
        strategy = strategies.get_strategy(config.strategy_id) if config else None

    created = 0
    for hour, hour_runs in by_hour.items():
        first = hour_runs[0]
        if store.get_aggregate(first.system_id, first.configuration_id, hour, BucketSize.HOURLY):
            continue

        counts = count_statuses(r.status for r in hour_runs)
        stats = calculate_latency_stats(extract_latencies(hour_runs))

        aggregated_result: dict[str, Any] = {}
        if strategy is not None:
            aggregated_result.update(aggregate_strategy_result(strategies, strategy, hour_runs))
        collector_data = aggregate_collector_data(hour_runs, collectors)
        if collector_data:
            aggregated_result["collectors"] = collector_data

        store.upsert_aggregate(AggregateRow(
            system_id=first.system_id,
            configuration_id=first.configuration_id,
            bucket_start=hour,
            bucket_size=BucketSize.HOURLY,
            run_count=len(hour_runs),
            healthy_count=counts.healthy_count,
            degraded_count=counts.degraded_count,
            unhealthy_count=counts.unhealthy_count,
            latency_sum_ms=stats.latency_sum_ms,
            latency_sum_source="exact" if stats.latency_sum_ms is not None else None,
            avg_latency_ms=stats.avg_latency_ms,
            min_latency_ms=stats.min_latency_ms,
            max_latency_ms=stats.max_latency_ms,
            p95_latency_ms=stats.p95_latency_ms,
            aggregated_result=aggregated_result or None,
        ))
        created += 1
    return created


# ── Step 2: hourly -> daily rollup ───────────────────────────────────────────


def aggregate_latency_sum(row: AggregateRow) -> LatencySum | None:
    """A row's latency sum, falling back to ``avg x run_count`` when no exact sum was kept."""
    exact = row.latency_sum
    if exact is not None:
        return exact
    if row.avg_latency_ms is not None:
        return ApproximatedLatencySum(row.avg_latency_ms * row.run_count)
    return None


def combine_into_daily(day: datetime, rows: list[AggregateRow]) -> AggregateRow:
    """Combine aggregate rows of one day into a daily row.

    p95 is the max of the source p95s: an upper bound, since the samples
    behind each hour are gone by now. Opaque ``aggregated_result`` payloads
    are not carried over.
    """
    first = rows[0]
    daily = AggregateRow(
        system_id=first.system_id,
        configuration_id=first.configuration_id,
        bucket_start=day,
        bucket_size=BucketSize.DAILY,
    )

    parts: list[LatencySum] = []
    for row in rows:
        daily.run_count += row.run_count
        daily.healthy_count += row.healthy_count
        daily.degraded_count += row.degraded_count
        daily.unhealthy_count += row.unhealthy_count
        part = aggregate_latency_sum(row)
        if part is not None:
            parts.append(part)

    if parts:
        total = sum(p.value for p in parts)
        approximated = any(isinstance(p, ApproximatedLatencySum) for p in parts)
        latency_sum = ApproximatedLatencySum(total) if approximated else ExactLatencySum(total)
        daily.latency_sum_ms = latency_sum.value
        daily.latency_sum_source = latency_sum.source
        if daily.run_count > 0:
            daily.avg_latency_ms = round_half_up(latency_sum.value / daily.run_count)

    mins = [r.min_latency_ms for r in rows if r.min_latency_ms is not None]
    maxes = [r.max_latency_ms for r in rows if r.max_latency_ms is not None]
    p95s = [r.p95_latency_ms for r in rows if r.p95_latency_ms is not None]
    daily.min_latency_ms = min(mins) if mins else None
    daily.max_latency_ms = max(maxes) if maxes else None
    daily.p95_latency_ms = max(p95s) if p95s else None
    daily.aggregated_result = None
    return daily


def rollup_hourly_aggregates(
    store: HealthStore,
    system_id: str,
    configuration_id: str,
    hourly_retention_days: int,
    now: datetime,
) -> tuple[int, int]:
    """Roll hourly rows before the day-aligned cutoff into daily rows.

    Each day is written in one transaction: the daily row is upserted (any
    daily row already present for that day is folded in) and the consumed
    hourly rows are deleted. Returns ``(daily rows written, hourly rows consumed)``.
    """
    cutoff = _floor_day(to_utc(now) - timedelta(days=hourly_retention_days))

    old_hourly = store.get_aggregates(system_id, configuration_id, BucketSize.HOURLY, end=cutoff)
    if not old_hourly:
        return 0, 0

    by_day: dict[datetime, list[AggregateRow]] = {}
    for row in old_hourly:
        by_day.setdefault(_floor_day(row.bucket_start), []).append(row)

    written = consumed = 0
    for day, rows in sorted(by_day.items()):
        with store.transaction():
            existing = store.get_aggregate(system_id, configuration_id, day, BucketSize.DAILY)
            sources = ([existing] if existing else []) + rows
            store.upsert_aggregate(combine_into_daily(day, sources))
            consumed += store.delete_aggregates([r.id for r in rows if r.id is not None])
        written += 1

    logger.debug(
        "%s/%s: rolled %d hourly rows into %d daily rows",
        system_id, configuration_id, consumed, written,
    )
    return written, consumed


# ── Step 3: daily expiry ─────────────────────────────────────────────────────


def delete_expired_aggregates(
    store: HealthStore,
    system_id: str,
    configuration_id: str,
    daily_retention_days: int,
    now: datetime,
) -> int:
    cutoff = to_utc(now) - timedelta(days=daily_retention_days)
    return store.delete_aggregates_before(system_id, configuration_id, BucketSize.DAILY, cutoff)
