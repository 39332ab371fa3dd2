"""Health history models: raw observations, aggregate rows, retention config.

Raw observations are immutable and live until the raw-retention horizon.
Aggregate rows summarise one hour (written in real time) or one day (written
only by the retention rollup).
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from ..config import settings


def to_utc(ts: datetime) -> datetime:
    """Normalise a datetime to aware UTC; naive values are taken as UTC."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Enums ────────────────────────────────────────────────────────────────────


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class BucketSize(str, Enum):
    HOURLY = "hourly"
    DAILY = "daily"


# ── Raw observations ─────────────────────────────────────────────────────────


@dataclass
class Observation:
    """A single completed health check run."""

    system_id: str
    configuration_id: str
    status: HealthStatus
    latency_ms: float | None = None
    result: dict[str, Any] | None = None
    timestamp: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self) -> None:
        self.status = HealthStatus(self.status)
        self.timestamp = to_utc(self.timestamp)

    def collectors(self) -> dict[str, dict[str, Any]]:
        """Collector payloads embedded under ``result.metadata.collectors``."""
        metadata = (self.result or {}).get("metadata")
        if not isinstance(metadata, dict):
            return {}
        collectors = metadata.get("collectors")
        return collectors if isinstance(collectors, dict) else {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "system_id": self.system_id,
            "configuration_id": self.configuration_id,
            "status": self.status.value,
            "latency_ms": self.latency_ms,
            "result": self.result,
            "timestamp": self.timestamp.isoformat(),
        }


# ── Latency sum provenance ───────────────────────────────────────────────────


@dataclass(frozen=True)
class ExactLatencySum:
    """Sum of every individual latency sample."""

    value: float
    source: str = "exact"


@dataclass(frozen=True)
class ApproximatedLatencySum:
    """Sum reconstructed as ``avg x run_count`` for rows lacking an exact sum."""

    value: float
    source: str = "approximated"


LatencySum = ExactLatencySum | ApproximatedLatencySum


# ── Aggregates ───────────────────────────────────────────────────────────────


@dataclass
class AggregateRow:
    """An hourly or daily summary of runs for one system/configuration."""

    system_id: str
    configuration_id: str
    bucket_start: datetime
    bucket_size: BucketSize
    run_count: int = 0
    healthy_count: int = 0
    degraded_count: int = 0
    unhealthy_count: int = 0
    latency_sum_ms: float | None = None
    avg_latency_ms: float | None = None
    min_latency_ms: float | None = None
    max_latency_ms: float | None = None
    p95_latency_ms: float | None = None
    aggregated_result: dict[str, Any] | None = None
    latency_sum_source: str | None = None
    tdigest_state: list[dict[str, float]] | None = None
    id: int | None = None

    def __post_init__(self) -> None:
        self.bucket_size = BucketSize(self.bucket_size)
        self.bucket_start = to_utc(self.bucket_start)

    @property
    def latency_sum(self) -> LatencySum | None:
        if self.latency_sum_ms is None:
            return None
        if self.latency_sum_source == "approximated":
            return ApproximatedLatencySum(self.latency_sum_ms)
        return ExactLatencySum(self.latency_sum_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "system_id": self.system_id,
            "configuration_id": self.configuration_id,
            "bucket_start": self.bucket_start.isoformat(),
            "bucket_size": self.bucket_size.value,
            "run_count": self.run_count,
            "healthy_count": self.healthy_count,
            "degraded_count": self.degraded_count,
            "unhealthy_count": self.unhealthy_count,
            "latency_sum_ms": self.latency_sum_ms,
            "latency_sum_source": self.latency_sum_source,
            "avg_latency_ms": self.avg_latency_ms,
            "min_latency_ms": self.min_latency_ms,
            "max_latency_ms": self.max_latency_ms,
            "p95_latency_ms": self.p95_latency_ms,
            "aggregated_result": self.aggregated_result,
        }


# ── Configuration & assignments ──────────────────────────────────────────────


class RetentionConfig(BaseModel):
    """Per-assignment retention windows, in days."""

    raw_retention_days: int = Field(default=settings.default_raw_retention_days, ge=1)
    hourly_retention_days: int = Field(default=settings.default_hourly_retention_days, ge=1)
    daily_retention_days: int = Field(default=settings.default_daily_retention_days, ge=1)


DEFAULT_RETENTION_CONFIG = RetentionConfig()


@dataclass
class HealthCheckConfiguration:
    """A check definition: which strategy runs, with what config, how often."""

    id: str
    name: str
    strategy_id: str
    config: dict[str, Any] = field(default_factory=dict)
    interval_seconds: int = 60


@dataclass
class Assignment:
    """A configuration attached to a system, with optional retention override."""

    system_id: str
    configuration_id: str
    enabled: bool = True
    retention_config: RetentionConfig | None = None

    @property
    def effective_retention(self) -> RetentionConfig:
        return self.retention_config or DEFAULT_RETENTION_CONFIG
