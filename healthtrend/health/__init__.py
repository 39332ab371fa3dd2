"""Health history subsystem: hourly writer, history queries and retention."""

from .catalog import CheckCatalog
from .history import AggregatedHistory, HistoryBucket, HistoryService
from .models import (
    AggregateRow,
    Assignment,
    BucketSize,
    HealthCheckConfiguration,
    HealthStatus,
    Observation,
    RetentionConfig,
)
from .realtime import get_hour_bucket_start, increment_hourly_aggregate, record_run
from .retention import RetentionReport, run_retention_job
from .scheduler import CheckScheduler, RetentionScheduler
