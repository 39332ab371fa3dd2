"""Tests for the FastAPI routes."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from conftest import CONFIG_ID, SYSTEM_ID, collector_result, ts

from healthtrend.api.server import create_app
from healthtrend.health.catalog import CheckCatalog


@pytest.fixture
def client(assigned_store, strategies, collectors, tmp_path):
    app = create_app(
        store=assigned_store,
        strategies=strategies,
        collectors=collectors,
        catalog=CheckCatalog(tmp_path / "checks.yaml"),
        start_schedulers=False,
    )
    with TestClient(app) as c:
        yield c


def _post_run(client, when, status="healthy", latency=100, result=None):
    return client.post("/api/health/runs", json={
        "system_id": SYSTEM_ID,
        "configuration_id": CONFIG_ID,
        "status": status,
        "latency_ms": latency,
        "result": result,
        "timestamp": when.isoformat(),
    })


class TestRunRoutes:
    def test_record_run(self, client) -> None:
        resp = _post_run(client, ts(10, 5))
        assert resp.status_code == 201
        data = resp.json()
        assert data["run"]["status"] == "healthy"
        assert data["hourly_aggregate"]["run_count"] == 1
        assert data["hourly_aggregate"]["bucket_start"].startswith("2025-01-15T10:00:00")

    def test_invalid_status(self, client) -> None:
        resp = _post_run(client, ts(10), status="sideways")
        assert resp.status_code == 422


class TestHistoryRoutes:
    def test_aggregated(self, client) -> None:
        _post_run(client, ts(10, 0, 10), latency=100)
        _post_run(client, ts(10, 0, 20), latency=150)
        _post_run(client, ts(10, 1, 0), status="unhealthy", latency=300)

        resp = client.get(
            f"/api/health/history/{SYSTEM_ID}/{CONFIG_ID}/aggregated",
            params={
                "start_date": ts(10).isoformat(),
                "end_date": ts(11).isoformat(),
                "target_points": 60,
            },
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["bucket_interval_seconds"] == 60
        assert [b["run_count"] for b in data["buckets"]] == [2, 1]
        assert data["buckets"][0]["avg_latency_ms"] == 125

    def test_aggregated_with_result(self, client) -> None:
        _post_run(client, ts(10, 1), result=collector_result(120))
        resp = client.get(
            f"/api/health/history/{SYSTEM_ID}/{CONFIG_ID}/aggregated",
            params={
                "start_date": ts(10).isoformat(),
                "end_date": ts(11).isoformat(),
                "target_points": 1,
                "include_aggregated_result": True,
            },
        )
        result = resp.json()["buckets"][0]["aggregated_result"]
        assert result["_strategyId"] == "fake"
        assert result["collectors"]["rt-1"]["avg_response_time"] == 120

    def test_bad_range(self, client) -> None:
        resp = client.get(
            f"/api/health/history/{SYSTEM_ID}/{CONFIG_ID}/aggregated",
            params={"start_date": ts(11).isoformat(), "end_date": ts(10).isoformat()},
        )
        assert resp.status_code == 400

    def test_mixed_naive_and_aware_dates(self, client) -> None:
        _post_run(client, ts(10, 5), latency=100)
        resp = client.get(
            f"/api/health/history/{SYSTEM_ID}/{CONFIG_ID}/aggregated",
            params={
                "start_date": "2025-01-15T10:00:00Z",
                "end_date": "2025-01-15T11:00:00",
                "target_points": 1,
            },
        )
        assert resp.status_code == 200
        assert [b["run_count"] for b in resp.json()["buckets"]] == [1]

    def test_bad_range_across_offsets(self, client) -> None:
        # 11:00+02:00 is 09:00 UTC, before the naive (UTC) start.
        resp = client.get(
            f"/api/health/history/{SYSTEM_ID}/{CONFIG_ID}/aggregated",
            params={
                "start_date": "2025-01-15T10:00:00",
                "end_date": "2025-01-15T11:00:00+02:00",
            },
        )
        assert resp.status_code == 400

    def test_invalid_target_points(self, client) -> None:
        resp = client.get(
            f"/api/health/history/{SYSTEM_ID}/{CONFIG_ID}/aggregated",
            params={
                "start_date": ts(10).isoformat(),
                "end_date": ts(11).isoformat(),
                "target_points": 0,
            },
        )
        assert resp.status_code == 422

    def test_detailed(self, client) -> None:
        for minute in range(3):
            _post_run(client, ts(10, minute), latency=minute)
        resp = client.get(f"/api/health/history/{SYSTEM_ID}/{CONFIG_ID}", params={"limit": 2})
        data = resp.json()
        assert data["total"] == 3
        assert len(data["runs"]) == 2


class TestRetentionRoutes:
    def test_get_defaults(self, client) -> None:
        resp = client.get(f"/api/health/retention/{SYSTEM_ID}/{CONFIG_ID}")
        assert resp.status_code == 200
        data = resp.json()
        assert data["retention"] is None
        assert data["effective"]["raw_retention_days"] == 7

    def test_update(self, client) -> None:
        resp = client.put(
            f"/api/health/retention/{SYSTEM_ID}/{CONFIG_ID}",
            json={"raw_retention_days": 2, "hourly_retention_days": 10, "daily_retention_days": 100},
        )
        assert resp.status_code == 200
        assert resp.json()["effective"]["hourly_retention_days"] == 10

    def test_update_rejects_non_positive(self, client) -> None:
        resp = client.put(
            f"/api/health/retention/{SYSTEM_ID}/{CONFIG_ID}", json={"raw_retention_days": 0},
        )
        assert resp.status_code == 422

    def test_unknown_assignment(self, client) -> None:
        assert client.get("/api/health/retention/nope/nada").status_code == 404

    def test_run_job(self, client) -> None:
        resp = client.post("/api/health/retention/run")
        assert resp.status_code == 200
        data = resp.json()
        assert data["skipped"] is False
        assert data["processed"] == [{"system_id": SYSTEM_ID, "configuration_id": CONFIG_ID}]

    def test_list_assignments(self, client) -> None:
        data = client.get("/api/health/assignments").json()
        assert data["assignments"][0]["system_id"] == SYSTEM_ID
