"""Tests for the history query service."""

from __future__ import annotations

from datetime import datetime
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from conftest import CONFIG_ID, SYSTEM_ID, ResponseTimeCollector, collector_result, ts

from healthtrend.health.history import HistoryService, calculate_bucket_interval
from healthtrend.health.models import AggregateRow, BucketSize, Observation
from healthtrend.health.realtime import record_run


def _run(when: datetime, status: str = "healthy", latency: float | None = 100, result=None) -> Observation:
    return Observation(
        system_id=SYSTEM_ID, configuration_id=CONFIG_ID,
        status=status, latency_ms=latency, result=result, timestamp=when,
    )


# ── Bucket interval ──────────────────────────────────────────────────────────


class TestBucketInterval:
    @pytest.mark.parametrize("start,end,points,expected", [
        (ts(0), ts(0, day=16), 500, 173),
        (ts(10), ts(11), 100, 36),
        (ts(10), ts(10, 0, 10), 2000, 1),
        (ts(10), ts(11), 60, 60),
    ])
    def test_interval(self, start, end, points, expected) -> None:
        assert calculate_bucket_interval(start, end, points) == expected

    def test_rejects_zero_points(self) -> None:
        with pytest.raises(ValueError):
            calculate_bucket_interval(ts(10), ts(11), 0)


# ── Raw buckets ──────────────────────────────────────────────────────────────


class TestRawHistory:
    def test_two_non_empty_buckets(self, assigned_store) -> None:
        record_run(assigned_store, _run(ts(10, 0, 10), "healthy", 100))
        record_run(assigned_store, _run(ts(10, 0, 20), "healthy", 150))
        record_run(assigned_store, _run(ts(10, 1, 0), "unhealthy", 300))

        history = HistoryService(assigned_store).get_aggregated_history(
            SYSTEM_ID, CONFIG_ID, ts(10), ts(11), target_points=60,
        )

        assert history.bucket_interval_seconds == 60
        assert len(history.buckets) == 2

        first, second = history.buckets
        assert first.bucket_start == ts(10)
        assert first.run_count == 2
        assert first.healthy_count == 2
        assert first.success_rate == 1
        assert first.avg_latency_ms == 125
        assert first.source_tier == "raw"

        assert second.bucket_start == ts(10, 1)
        assert second.run_count == 1
        assert second.unhealthy_count == 1
        assert second.success_rate == 0

    def test_echoes_interval_per_bucket(self, assigned_store) -> None:
        record_run(assigned_store, _run(ts(10, 5)))
        record_run(assigned_store, _run(ts(12, 5)))
        history = HistoryService(assigned_store).get_aggregated_history(
            SYSTEM_ID, CONFIG_ID, ts(10), ts(14), target_points=4,
        )
        assert [b.bucket_interval_seconds for b in history.buckets] == [3600, 3600]

    def test_p95_nearest_rank(self, assigned_store) -> None:
        for i in range(20):
            assigned_store.insert_run(_run(ts(10, 0, i), latency=100 + 5 * i))
        history = HistoryService(assigned_store).get_aggregated_history(
            SYSTEM_ID, CONFIG_ID, ts(10), ts(11), target_points=1,
        )
        assert history.buckets[0].p95_latency_ms == 190

    def test_missing_latency_excluded(self, assigned_store) -> None:
        assigned_store.insert_run(_run(ts(10, 1), latency=None))
        assigned_store.insert_run(_run(ts(10, 2), latency=80))
        bucket = HistoryService(assigned_store).get_aggregated_history(
            SYSTEM_ID, CONFIG_ID, ts(10), ts(11), target_points=1,
        ).buckets[0]
        assert bucket.run_count == 2
        assert bucket.avg_latency_ms == 80
        assert bucket.min_latency_ms == 80

    def test_end_exclusive(self, assigned_store) -> None:
        assigned_store.insert_run(_run(ts(11)))
        history = HistoryService(assigned_store).get_aggregated_history(
            SYSTEM_ID, CONFIG_ID, ts(10), ts(11), target_points=60,
        )
        assert history.buckets == []

    def test_default_target_points(self, assigned_store) -> None:
        history = HistoryService(assigned_store).get_aggregated_history(
            SYSTEM_ID, CONFIG_ID, ts(10), ts(11),
        )
        assert history.bucket_interval_seconds == 60


# ── Aggregated result ────────────────────────────────────────────────────────


class TestAggregatedResult:
    def test_strategy_output_tagged(self, assigned_store, strategies) -> None:
        assigned_store.insert_run(_run(ts(10, 1)))
        assigned_store.insert_run(_run(ts(10, 2)))
        bucket = HistoryService(assigned_store, strategies).get_aggregated_history(
            SYSTEM_ID, CONFIG_ID, ts(10), ts(11), target_points=1, include_aggregated_result=True,
        ).buckets[0]
        assert bucket.aggregated_result == {"_strategyId": "fake", "observed": 2}

    def test_omitted_unless_requested(self, assigned_store, strategies) -> None:
        assigned_store.insert_run(_run(ts(10, 1)))
        bucket = HistoryService(assigned_store, strategies).get_aggregated_history(
            SYSTEM_ID, CONFIG_ID, ts(10), ts(11), target_points=1,
        ).buckets[0]
        assert bucket.aggregated_result is None

    def test_unknown_configuration_degrades(self, store, strategies) -> None:
        store.insert_run(_run(ts(10, 1)))
        bucket = HistoryService(store, strategies).get_aggregated_history(
            SYSTEM_ID, CONFIG_ID, ts(10), ts(11), target_points=1, include_aggregated_result=True,
        ).buckets[0]
        assert bucket.run_count == 1
        assert bucket.aggregated_result is None

    def test_unregistered_strategy_degrades(self, assigned_store) -> None:
        assigned_store.insert_run(_run(ts(10, 1)))
        bucket = HistoryService(assigned_store).get_aggregated_history(
            SYSTEM_ID, CONFIG_ID, ts(10), ts(11), target_points=1, include_aggregated_result=True,
        ).buckets[0]
        assert bucket.aggregated_result is None

    def test_collectors_aggregated(self, assigned_store, strategies, collectors) -> None:
        assigned_store.insert_run(_run(ts(10, 1), result=collector_result(100)))
        assigned_store.insert_run(_run(ts(10, 2), result=collector_result(200)))
        bucket = HistoryService(assigned_store, strategies, collectors).get_aggregated_history(
            SYSTEM_ID, CONFIG_ID, ts(10), ts(11), target_points=1, include_aggregated_result=True,
        ).buckets[0]
        collected = bucket.aggregated_result["collectors"]["rt-1"]
        assert collected["_collectorId"] == "response-time"
        assert collected["avg_response_time"] == 150

    def test_lookup_only_registries(self, assigned_store, strategy) -> None:
        collector = ResponseTimeCollector()
        strategies = SimpleNamespace(get_strategy=lambda strategy_id: strategy)
        collectors = SimpleNamespace(
            get_collector=lambda collector_id: {"collector": collector},
        )
        assigned_store.insert_run(_run(ts(10, 1), result=collector_result(100)))
        assigned_store.insert_run(_run(ts(10, 2), result=collector_result(300)))

        bucket = HistoryService(assigned_store, strategies, collectors).get_aggregated_history(
            SYSTEM_ID, CONFIG_ID, ts(10), ts(11), target_points=1, include_aggregated_result=True,
        ).buckets[0]

        assert bucket.aggregated_result["_strategyId"] == "fake"
        assert bucket.aggregated_result["observed"] == 2
        assert bucket.aggregated_result["collectors"]["rt-1"]["avg_response_time"] == 200

    def test_failing_strategy_left_out(self, assigned_store, strategies, strategy, collectors) -> None:
        def broken(observations):
            raise RuntimeError("bad payload")

        strategy.aggregate_result = broken
        assigned_store.insert_run(_run(ts(10, 1), result=collector_result(100)))

        bucket = HistoryService(assigned_store, strategies, collectors).get_aggregated_history(
            SYSTEM_ID, CONFIG_ID, ts(10), ts(11), target_points=1, include_aggregated_result=True,
        ).buckets[0]

        assert bucket.run_count == 1
        assert "_strategyId" not in bucket.aggregated_result
        assert bucket.aggregated_result["collectors"]["rt-1"]["avg_response_time"] == 100

    def test_failing_collector_left_out(self, assigned_store, strategies) -> None:
        collector = MagicMock()
        collector.aggregate_result.side_effect = RuntimeError("bad payload")
        collectors = SimpleNamespace(get_collector=lambda collector_id: {"collector": collector})
        assigned_store.insert_run(_run(ts(10, 1), result=collector_result(100)))

        bucket = HistoryService(assigned_store, strategies, collectors).get_aggregated_history(
            SYSTEM_ID, CONFIG_ID, ts(10), ts(11), target_points=1, include_aggregated_result=True,
        ).buckets[0]

        assert bucket.aggregated_result == {"_strategyId": "fake", "observed": 1}


# ── Tier fallback ────────────────────────────────────────────────────────────


class TestTierFallback:
    def _hourly(self, store, hour: datetime, runs: int, latency_sum: float) -> None:
        store.upsert_aggregate(AggregateRow(
            system_id=SYSTEM_ID, configuration_id=CONFIG_ID,
            bucket_start=hour, bucket_size=BucketSize.HOURLY,
            run_count=runs, healthy_count=runs,
            latency_sum_ms=latency_sum, latency_sum_source="exact",
            avg_latency_ms=latency_sum / runs,
            min_latency_ms=10, max_latency_ms=90, p95_latency_ms=85,
        ))

    def test_hourly_used_without_raw(self, assigned_store) -> None:
        self._hourly(assigned_store, ts(3), 4, 200)
        history = HistoryService(assigned_store).get_aggregated_history(
            SYSTEM_ID, CONFIG_ID, ts(0), ts(0, day=16), target_points=24,
        )
        assert len(history.buckets) == 1
        bucket = history.buckets[0]
        assert bucket.source_tier == "hourly"
        assert bucket.run_count == 4
        assert bucket.avg_latency_ms == 50
        assert bucket.p95_latency_ms == 85

    def test_raw_preferred_over_hourly(self, assigned_store) -> None:
        for minute in (5, 6):
            record_run(assigned_store, _run(ts(10, minute), latency=100))
        history = HistoryService(assigned_store).get_aggregated_history(
            SYSTEM_ID, CONFIG_ID, ts(10), ts(11), target_points=1,
        )
        assert len(history.buckets) == 1
        assert history.buckets[0].run_count == 2
        assert history.buckets[0].source_tier == "raw"

    def test_daily_used_for_old_range(self, assigned_store) -> None:
        assigned_store.upsert_aggregate(AggregateRow(
            system_id=SYSTEM_ID, configuration_id=CONFIG_ID,
            bucket_start=ts(0, day=1), bucket_size=BucketSize.DAILY,
            run_count=1440, healthy_count=1400, unhealthy_count=40,
            latency_sum_ms=144000, latency_sum_source="approximated", avg_latency_ms=100,
        ))
        history = HistoryService(assigned_store).get_aggregated_history(
            SYSTEM_ID, CONFIG_ID, ts(0, day=1), ts(0, day=8), target_points=7,
        )
        bucket = history.buckets[0]
        assert bucket.source_tier == "daily"
        assert bucket.run_count == 1440
        assert bucket.avg_latency_ms == 100
        assert bucket.success_rate == pytest.approx(1400 / 1440)


# ── Detailed history ─────────────────────────────────────────────────────────


class TestDetailedHistory:
    def test_paginates_newest_first(self, assigned_store) -> None:
        for minute in range(5):
            assigned_store.insert_run(_run(ts(10, minute), latency=minute))
        page = HistoryService(assigned_store).get_detailed_history(
            SYSTEM_ID, CONFIG_ID, limit=2, offset=1,
        )
        assert page.total == 5
        assert [r["latency_ms"] for r in page.runs] == [3, 2]
