"""Built-in HTTP strategy.

Config keys: ``url`` (required), ``method`` (GET), ``expected_status`` (200),
``timeout_ms`` (10000), ``degraded_latency_ms`` (3000).
"""

from __future__ import annotations

import logging
import time
from collections import Counter
from typing import Any

import httpx

from .registry import CheckOutcome

logger = logging.getLogger(__name__)


class HttpStrategy:
    id = "http"

    def execute(self, config: dict[str, Any]) -> CheckOutcome:
        url = config["url"]
        method = config.get("method", "GET")
        expected_status = int(config.get("expected_status", 200))
        timeout_ms = int(config.get("timeout_ms", 10_000))
        degraded_latency_ms = float(config.get("degraded_latency_ms", 3000))

        t0 = time.perf_counter()
        try:
            with httpx.Client(timeout=timeout_ms / 1000, follow_redirects=True) as client:
                resp = client.request(method, url)
        except httpx.ConnectTimeout:
            return CheckOutcome(
                status="unhealthy", latency_ms=timeout_ms,
                message=f"Connection timed out ({timeout_ms}ms)",
            )
        except httpx.HTTPError as e:
            latency = (time.perf_counter() - t0) * 1000
            return CheckOutcome(
                status="unhealthy", latency_ms=round(latency, 1),
                message=f"Connection error: {e}",
            )
        latency = (time.perf_counter() - t0) * 1000

        if resp.status_code != expected_status:
            status = "unhealthy"
            message = f"Expected {expected_status}, got {resp.status_code}"
        elif latency > degraded_latency_ms:
            status = "degraded"
            message = f"{resp.status_code} OK (slow)"
        else:
            status = "healthy"
            message = f"{resp.status_code} OK"

        return CheckOutcome(
            status=status,
            latency_ms=round(latency, 1),
            message=message,
            metadata={"status_code": resp.status_code},
        )

    def aggregate_result(self, observations: list[Any]) -> dict[str, Any]:
        """Status code distribution over the bucket."""
        codes: Counter[str] = Counter()
        errors = 0
        for obs in observations:
            metadata = (obs.result or {}).get("metadata") or {}
            code = metadata.get("status_code")
            if code is None:
                errors += 1
            else:
                codes[str(code)] += 1
        return {"status_codes": dict(codes), "connection_errors": errors}
