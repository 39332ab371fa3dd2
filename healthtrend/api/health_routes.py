"""API routes for health history and retention.

Endpoints:
  POST /api/health/runs                                   — record a completed run
  GET  /api/health/assignments                            — configured assignments
  GET  /api/health/history/{system_id}/{configuration_id} — raw runs, paginated
  GET  /api/health/history/{system_id}/{configuration_id}/aggregated
                                                          — bucketed history
  GET  /api/health/retention/{system_id}/{configuration_id}
  PUT  /api/health/retention/{system_id}/{configuration_id}
  POST /api/health/retention/run                          — run retention now
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Literal

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel

from healthtrend.health.history import AggregatedHistory, DetailedHistory, HistoryService
from healthtrend.health.models import HealthStatus, Observation, RetentionConfig, to_utc, utcnow
from healthtrend.health.realtime import record_run
from healthtrend.health.retention import run_retention_job

logger = logging.getLogger(__name__)

health_router = APIRouter()


class RunIn(BaseModel):
    system_id: str
    configuration_id: str
    status: HealthStatus
    latency_ms: float | None = None
    result: dict[str, Any] | None = None
    timestamp: datetime | None = None


def _history(request: Request) -> HistoryService:
    state = request.app.state
    return HistoryService(state.health_store, state.strategies, state.collectors)


def _require_assignment(request: Request, system_id: str, configuration_id: str):
    assignment = request.app.state.health_store.get_assignment(system_id, configuration_id)
    if assignment is None:
        raise HTTPException(
            status_code=404,
            detail=f"Assignment not found: {system_id}/{configuration_id}",
        )
    return assignment


# ── Runs ─────────────────────────────────────────────────────────────────────


@health_router.post("/health/runs", status_code=201)
def create_run(body: RunIn, request: Request) -> dict[str, Any]:
    """Record a run executed elsewhere and fold it into its hourly aggregate."""
    run = Observation(
        system_id=body.system_id,
        configuration_id=body.configuration_id,
        status=body.status,
        latency_ms=body.latency_ms,
        result=body.result,
        timestamp=body.timestamp or utcnow(),
    )
    aggregate = record_run(request.app.state.health_store, run, request.app.state.collectors)
    return {"run": run.to_dict(), "hourly_aggregate": aggregate.to_dict()}


@health_router.get("/health/assignments")
def list_assignments(request: Request, enabled_only: bool = False) -> dict[str, Any]:
    store = request.app.state.health_store
    return {
        "assignments": [
            {
                "system_id": a.system_id,
                "configuration_id": a.configuration_id,
                "enabled": a.enabled,
                "retention": a.effective_retention.model_dump(),
            }
            for a in store.list_assignments(enabled_only=enabled_only)
        ],
    }


# ── History ──────────────────────────────────────────────────────────────────


@health_router.get("/health/history/{system_id}/{configuration_id}")
def detailed_history(
    system_id: str,
    configuration_id: str,
    request: Request,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    sort_order: Literal["asc", "desc"] = "desc",
) -> DetailedHistory:
    return _history(request).get_detailed_history(
        system_id, configuration_id, start_date, end_date, limit, offset, sort_order,
    )


@health_router.get("/health/history/{system_id}/{configuration_id}/aggregated")
def aggregated_history(
    system_id: str,
    configuration_id: str,
    request: Request,
    start_date: datetime,
    end_date: datetime,
    target_points: int | None = Query(None, ge=1),
    include_aggregated_result: bool = False,
) -> AggregatedHistory:
    if to_utc(end_date) <= to_utc(start_date):
        raise HTTPException(status_code=400, detail="end_date must be after start_date")
    try:
        return _history(request).get_aggregated_history(
            system_id, configuration_id, start_date, end_date,
            target_points=target_points,
            include_aggregated_result=include_aggregated_result,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e


# ── Retention ────────────────────────────────────────────────────────────────


@health_router.get("/health/retention/{system_id}/{configuration_id}")
def get_retention(system_id: str, configuration_id: str, request: Request) -> dict[str, Any]:
    assignment = _require_assignment(request, system_id, configuration_id)
    return {
        "system_id": system_id,
        "configuration_id": configuration_id,
        "retention": assignment.retention_config.model_dump() if assignment.retention_config else None,
        "effective": assignment.effective_retention.model_dump(),
    }


@health_router.put("/health/retention/{system_id}/{configuration_id}")
def update_retention(
    system_id: str,
    configuration_id: str,
    request: Request,
    body: RetentionConfig | None = None,
) -> dict[str, Any]:
    """Set an assignment's retention windows; a null body resets to defaults."""
    _require_assignment(request, system_id, configuration_id)
    request.app.state.health_store.set_retention_config(system_id, configuration_id, body)
    logger.info("Retention for %s/%s set to %s", system_id, configuration_id, body)
    return get_retention(system_id, configuration_id, request)


@health_router.post("/health/retention/run")
def trigger_retention(request: Request) -> dict[str, Any]:
    """Run the retention job immediately."""
    state = request.app.state
    report = run_retention_job(state.health_store, state.strategies, state.collectors)
    return report.to_dict()
