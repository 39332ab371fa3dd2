"""Shared test fixtures."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pytest

from healthtrend.health.models import Assignment, HealthCheckConfiguration
from healthtrend.plugins.registry import CheckOutcome, CollectorRegistry, StrategyRegistry
from healthtrend.storage.store import HealthStore

SYSTEM_ID = "sys-1"
CONFIG_ID = "cfg-1"


def ts(hour: int, minute: int = 0, second: int = 0, day: int = 15) -> datetime:
    """A UTC timestamp on 2025-01-<day>."""
    return datetime(2025, 1, day, hour, minute, second, tzinfo=timezone.utc)


class FakeStrategy:
    """Counts observations per status; executes to a fixed outcome."""

    id = "fake"

    def __init__(self, outcome: CheckOutcome | None = None) -> None:
        self.outcome = outcome or CheckOutcome(status="healthy", latency_ms=42.0, message="ok")
        self.executed: list[dict[str, Any]] = []

    def execute(self, config: dict[str, Any]) -> CheckOutcome:
        self.executed.append(config)
        return self.outcome

    def aggregate_result(self, observations: list[Any]) -> dict[str, Any]:
        return {"observed": len(observations)}


class ResponseTimeCollector:
    """Averages ``response_time`` from collector payloads."""

    def aggregate_result(self, runs: list[dict[str, Any]]) -> dict[str, Any]:
        times = [r["metadata"]["response_time"] for r in runs if "response_time" in r["metadata"]]
        return {
            "avg_response_time": sum(times) / len(times) if times else None,
            "samples": len(times),
        }

    def merge_result(self, existing: dict[str, Any] | None, run: dict[str, Any]) -> dict[str, Any]:
        existing = existing or {"total": 0, "samples": 0}
        value = run["metadata"].get("response_time")
        if value is None:
            return existing
        total = existing["total"] + value
        samples = existing["samples"] + 1
        return {"total": total, "samples": samples, "avg_response_time": total / samples}


def collector_result(response_time: float, correlation_id: str = "rt-1") -> dict[str, Any]:
    """A run result carrying one response-time collector payload."""
    return {
        "metadata": {
            "collectors": {
                correlation_id: {"_collectorId": "response-time", "response_time": response_time},
            },
        },
    }


@pytest.fixture
def store(tmp_path: Path) -> HealthStore:
    s = HealthStore(db_path=tmp_path / "health.db")
    yield s
    s.close()


@pytest.fixture
def strategy() -> FakeStrategy:
    return FakeStrategy()


@pytest.fixture
def strategies(strategy: FakeStrategy) -> StrategyRegistry:
    registry = StrategyRegistry()
    registry.register(strategy)
    return registry


@pytest.fixture
def collectors() -> CollectorRegistry:
    registry = CollectorRegistry()
    registry.register("response-time", ResponseTimeCollector())
    return registry


@pytest.fixture
def assigned_store(store: HealthStore) -> HealthStore:
    """Store with one configuration using the fake strategy, assigned to one system."""
    store.upsert_configuration(HealthCheckConfiguration(
        id=CONFIG_ID, name="Fake check", strategy_id="fake", interval_seconds=60,
    ))
    store.upsert_assignment(Assignment(system_id=SYSTEM_ID, configuration_id=CONFIG_ID))
    return store
