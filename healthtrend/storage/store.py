"""SQLite storage for check configurations, raw runs and aggregates.

Timestamps are stored as fixed-width UTC ISO strings, so lexical order in
SQL matches chronological order.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Iterator

from ..config import settings
from ..health.models import (
    AggregateRow,
    Assignment,
    BucketSize,
    HealthCheckConfiguration,
    Observation,
    RetentionConfig,
    to_utc,
    utcnow,
)

logger = logging.getLogger(__name__)

DB_PATH = Path(settings.db_path)


def _ts(value: datetime) -> str:
    return to_utc(value).isoformat(timespec="microseconds")


def _parse_ts(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _dumps(value: Any) -> str | None:
    return json.dumps(value) if value is not None else None


def _loads(value: str | None) -> Any:
    return json.loads(value) if value else None


class HealthStore:
    """SQLite-backed storage for health history."""

    def __init__(self, db_path: Path | str | None = None) -> None:
        self._db_path = Path(db_path or DB_PATH)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._tx_depth = 0
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
        return self._conn

    def _init_db(self) -> None:
        conn = self._get_conn()
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS health_check_configurations (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                strategy_id TEXT NOT NULL,
                config TEXT NOT NULL DEFAULT '{}',
                interval_seconds INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS system_health_checks (
                system_id TEXT NOT NULL,
                configuration_id TEXT NOT NULL,
                enabled INTEGER NOT NULL DEFAULT 1,
                retention_config TEXT,
                PRIMARY KEY (system_id, configuration_id)
            );

            CREATE TABLE IF NOT EXISTS health_check_runs (
                id TEXT PRIMARY KEY,
                system_id TEXT NOT NULL,
                configuration_id TEXT NOT NULL,
                status TEXT NOT NULL,
                latency_ms REAL,
                result TEXT,
                timestamp TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_runs_assignment
                ON health_check_runs (system_id, configuration_id, timestamp);

            CREATE TABLE IF NOT EXISTS health_check_aggregates (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                system_id TEXT NOT NULL,
                configuration_id TEXT NOT NULL,
                bucket_start TEXT NOT NULL,
                bucket_size TEXT NOT NULL,
                run_count INTEGER NOT NULL DEFAULT 0,
                healthy_count INTEGER NOT NULL DEFAULT 0,
                degraded_count INTEGER NOT NULL DEFAULT 0,
                unhealthy_count INTEGER NOT NULL DEFAULT 0,
                latency_sum_ms REAL,
                latency_sum_source TEXT,
                avg_latency_ms REAL,
                min_latency_ms REAL,
                max_latency_ms REAL,
                p95_latency_ms REAL,
                tdigest_state TEXT,
                aggregated_result TEXT,
                UNIQUE (configuration_id, system_id, bucket_start, bucket_size)
            );

            CREATE TABLE IF NOT EXISTS job_locks (
                name TEXT PRIMARY KEY,
                owner TEXT NOT NULL,
                expires_at TEXT NOT NULL
            );
        """)
        conn.commit()

    # ── Transactions ─────────────────────────────────────────────────────────

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Group writes into one commit. Nested blocks join the outer one."""
        with self._lock:
            conn = self._get_conn()
            self._tx_depth += 1
            try:
                yield conn
            except BaseException:
                self._tx_depth -= 1
                if self._tx_depth == 0:
                    conn.rollback()
                raise
            else:
                self._tx_depth -= 1
                if self._tx_depth == 0:
                    conn.commit()

    # ── Configurations & assignments ─────────────────────────────────────────

    def upsert_configuration(self, cfg: HealthCheckConfiguration) -> None:
        now = _ts(utcnow())
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO health_check_configurations "
                "(id, name, strategy_id, config, interval_seconds, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT (id) DO UPDATE SET name = excluded.name, "
                "strategy_id = excluded.strategy_id, config = excluded.config, "
                "interval_seconds = excluded.interval_seconds, updated_at = excluded.updated_at",
                (cfg.id, cfg.name, cfg.strategy_id, json.dumps(cfg.config),
                 cfg.interval_seconds, now, now),
            )

    def get_configuration(self, configuration_id: str) -> HealthCheckConfiguration | None:
        with self._lock:
            row = self._get_conn().execute(
                "SELECT * FROM health_check_configurations WHERE id = ? LIMIT 1",
                (configuration_id,),
            ).fetchone()
        if not row:
            return None
        return HealthCheckConfiguration(
            id=row["id"],
            name=row["name"],
            strategy_id=row["strategy_id"],
            config=_loads(row["config"]) or {},
            interval_seconds=row["interval_seconds"],
        )

    def upsert_assignment(self, assignment: Assignment) -> None:
        retention = assignment.retention_config
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO system_health_checks "
                "(system_id, configuration_id, enabled, retention_config) VALUES (?, ?, ?, ?) "
                "ON CONFLICT (system_id, configuration_id) DO UPDATE SET "
                "enabled = excluded.enabled, retention_config = excluded.retention_config",
                (assignment.system_id, assignment.configuration_id, int(assignment.enabled),
                 retention.model_dump_json() if retention else None),
            )

    def _row_to_assignment(self, row: sqlite3.Row) -> Assignment:
        raw = row["retention_config"]
        return Assignment(
            system_id=row["system_id"],
            configuration_id=row["configuration_id"],
            enabled=bool(row["enabled"]),
            retention_config=RetentionConfig.model_validate_json(raw) if raw else None,
        )

    def get_assignment(self, system_id: str, configuration_id: str) -> Assignment | None:
        with self._lock:
            row = self._get_conn().execute(
                "SELECT * FROM system_health_checks WHERE system_id = ? AND configuration_id = ?",
                (system_id, configuration_id),
            ).fetchone()
        return self._row_to_assignment(row) if row else None

    def list_assignments(self, enabled_only: bool = False) -> list[Assignment]:
        query = "SELECT * FROM system_health_checks"
        if enabled_only:
            query += " WHERE enabled = 1"
        with self._lock:
            rows = self._get_conn().execute(
                query + " ORDER BY system_id, configuration_id",
            ).fetchall()
        return [self._row_to_assignment(r) for r in rows]

    def set_retention_config(
        self, system_id: str, configuration_id: str, retention: RetentionConfig | None,
    ) -> bool:
        """Store (or clear) an assignment's retention config. False if no such assignment."""
        with self.transaction() as conn:
            cursor = conn.execute(
                "UPDATE system_health_checks SET retention_config = ? "
                "WHERE system_id = ? AND configuration_id = ?",
                (retention.model_dump_json() if retention else None, system_id, configuration_id),
            )
        return cursor.rowcount > 0

    # ── Raw runs ─────────────────────────────────────────────────────────────

    def insert_run(self, run: Observation) -> None:
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO health_check_runs "
                "(id, system_id, configuration_id, status, latency_ms, result, timestamp) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (run.id, run.system_id, run.configuration_id, run.status.value,
                 run.latency_ms, _dumps(run.result), _ts(run.timestamp)),
            )

    @staticmethod
    def _row_to_run(row: sqlite3.Row) -> Observation:
        return Observation(
            id=row["id"],
            system_id=row["system_id"],
            configuration_id=row["configuration_id"],
            status=row["status"],
            latency_ms=row["latency_ms"],
            result=_loads(row["result"]),
            timestamp=_parse_ts(row["timestamp"]),
        )

    def get_runs(
        self,
        system_id: str,
        configuration_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
        offset: int = 0,
        descending: bool = False,
    ) -> list[Observation]:
        """Runs with ``start <= timestamp < end``, in time order."""
        query = "SELECT * FROM health_check_runs WHERE system_id = ? AND configuration_id = ?"
        params: list[Any] = [system_id, configuration_id]
        if start is not None:
            query += " AND timestamp >= ?"
            params.append(_ts(start))
        if end is not None:
            query += " AND timestamp < ?"
            params.append(_ts(end))
        query += " ORDER BY timestamp DESC" if descending else " ORDER BY timestamp ASC"
        if limit is not None:
            query += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])
        with self._lock:
            rows = self._get_conn().execute(query, params).fetchall()
        return [self._row_to_run(r) for r in rows]

    def count_runs(
        self,
        system_id: str,
        configuration_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> int:
        query = "SELECT COUNT(*) FROM health_check_runs WHERE system_id = ? AND configuration_id = ?"
        params: list[Any] = [system_id, configuration_id]
        if start is not None:
            query += " AND timestamp >= ?"
            params.append(_ts(start))
        if end is not None:
            query += " AND timestamp < ?"
            params.append(_ts(end))
        with self._lock:
            return self._get_conn().execute(query, params).fetchone()[0]

    def delete_runs_before(self, system_id: str, configuration_id: str, cutoff: datetime) -> int:
        with self.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM health_check_runs "
                "WHERE system_id = ? AND configuration_id = ? AND timestamp < ?",
                (system_id, configuration_id, _ts(cutoff)),
            )
        return cursor.rowcount

    # ── Aggregates ───────────────────────────────────────────────────────────

    @staticmethod
    def _row_to_aggregate(row: sqlite3.Row) -> AggregateRow:
        return AggregateRow(
            id=row["id"],
            system_id=row["system_id"],
            configuration_id=row["configuration_id"],
            bucket_start=_parse_ts(row["bucket_start"]),
            bucket_size=row["bucket_size"],
            run_count=row["run_count"],
            healthy_count=row["healthy_count"],
            degraded_count=row["degraded_count"],
            unhealthy_count=row["unhealthy_count"],
            latency_sum_ms=row["latency_sum_ms"],
            latency_sum_source=row["latency_sum_source"],
            avg_latency_ms=row["avg_latency_ms"],
            min_latency_ms=row["min_latency_ms"],
            max_latency_ms=row["max_latency_ms"],
            p95_latency_ms=row["p95_latency_ms"],
            tdigest_state=_loads(row["tdigest_state"]),
            aggregated_result=_loads(row["aggregated_result"]),
        )

    def get_aggregate(
        self,
        system_id: str,
        configuration_id: str,
        bucket_start: datetime,
        bucket_size: BucketSize,
    ) -> AggregateRow | None:
        with self._lock:
            row = self._get_conn().execute(
                "SELECT * FROM health_check_aggregates "
                "WHERE system_id = ? AND configuration_id = ? "
                "AND bucket_start = ? AND bucket_size = ? LIMIT 1",
                (system_id, configuration_id, _ts(bucket_start), BucketSize(bucket_size).value),
            ).fetchone()
        return self._row_to_aggregate(row) if row else None

    def get_aggregates(
        self,
        system_id: str,
        configuration_id: str,
        bucket_size: BucketSize,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[AggregateRow]:
        """Aggregates whose ``start <= bucket_start < end``, in time order."""
        query = (
            "SELECT * FROM health_check_aggregates "
            "WHERE system_id = ? AND configuration_id = ? AND bucket_size = ?"
        )
        params: list[Any] = [system_id, configuration_id, BucketSize(bucket_size).value]
        if start is not None:
            query += " AND bucket_start >= ?"
            params.append(_ts(start))
        if end is not None:
            query += " AND bucket_start < ?"
            params.append(_ts(end))
        with self._lock:
            rows = self._get_conn().execute(query + " ORDER BY bucket_start", params).fetchall()
        return [self._row_to_aggregate(r) for r in rows]

    def upsert_aggregate(self, agg: AggregateRow) -> None:
        """Insert or fully replace the row for (system, config, bucket, size)."""
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO health_check_aggregates "
                "(system_id, configuration_id, bucket_start, bucket_size, run_count, "
                "healthy_count, degraded_count, unhealthy_count, latency_sum_ms, "
                "latency_sum_source, avg_latency_ms, min_latency_ms, max_latency_ms, "
                "p95_latency_ms, tdigest_state, aggregated_result) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT (configuration_id, system_id, bucket_start, bucket_size) "
                "DO UPDATE SET run_count = excluded.run_count, "
                "healthy_count = excluded.healthy_count, "
                "degraded_count = excluded.degraded_count, "
                "unhealthy_count = excluded.unhealthy_count, "
                "latency_sum_ms = excluded.latency_sum_ms, "
                "latency_sum_source = excluded.latency_sum_source, "
                "avg_latency_ms = excluded.avg_latency_ms, "
                "min_latency_ms = excluded.min_latency_ms, "
                "max_latency_ms = excluded.max_latency_ms, "
                "p95_latency_ms = excluded.p95_latency_ms, "
                "tdigest_state = excluded.tdigest_state, "
                "aggregated_result = excluded.aggregated_result",
                (
                    agg.system_id, agg.configuration_id, _ts(agg.bucket_start),
                    agg.bucket_size.value, agg.run_count, agg.healthy_count,
                    agg.degraded_count, agg.unhealthy_count, agg.latency_sum_ms,
                    agg.latency_sum_source, agg.avg_latency_ms, agg.min_latency_ms,
                    agg.max_latency_ms, agg.p95_latency_ms, _dumps(agg.tdigest_state),
                    _dumps(agg.aggregated_result),
                ),
            )

    def delete_aggregates(self, ids: list[int]) -> int:
        if not ids:
            return 0
        placeholders = ", ".join("?" for _ in ids)
        with self.transaction() as conn:
            cursor = conn.execute(
                f"DELETE FROM health_check_aggregates WHERE id IN ({placeholders})", ids,
            )
        return cursor.rowcount

    def delete_aggregates_before(
        self,
        system_id: str,
        configuration_id: str,
        bucket_size: BucketSize,
        cutoff: datetime,
    ) -> int:
        with self.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM health_check_aggregates "
                "WHERE system_id = ? AND configuration_id = ? "
                "AND bucket_size = ? AND bucket_start < ?",
                (system_id, configuration_id, BucketSize(bucket_size).value, _ts(cutoff)),
            )
        return cursor.rowcount

    # ── Job locks ────────────────────────────────────────────────────────────

    def acquire_lock(self, name: str, owner: str, ttl_seconds: int, now: datetime | None = None) -> bool:
        """Take a lease on ``name``. Expired leases are reclaimed; re-entry by the same owner extends."""
        now = to_utc(now or utcnow())
        expires = _ts(now + timedelta(seconds=ttl_seconds))
        with self.transaction() as conn:
            conn.execute(
                "DELETE FROM job_locks WHERE name = ? AND expires_at <= ?", (name, _ts(now)),
            )
            cursor = conn.execute(
                "INSERT INTO job_locks (name, owner, expires_at) VALUES (?, ?, ?) "
                "ON CONFLICT (name) DO UPDATE SET expires_at = excluded.expires_at "
                "WHERE job_locks.owner = excluded.owner",
                (name, owner, expires),
            )
        return cursor.rowcount > 0

    def release_lock(self, name: str, owner: str) -> None:
        with self.transaction() as conn:
            conn.execute("DELETE FROM job_locks WHERE name = ? AND owner = ?", (name, owner))

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None
