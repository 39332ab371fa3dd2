"""Schedulers for per-check run loops and the daily retention trigger.

Check loops execute each enabled assignment's strategy at its configured
interval and feed the outcome to the real-time writer. The retention
scheduler delivers ``{"trigger": "scheduled"}`` once per interval.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, Any

from ..config import settings
from ..plugins.registry import CheckOutcome
from .models import Assignment, HealthCheckConfiguration, HealthStatus, Observation
from .realtime import record_run
from .retention import RetentionReport, run_retention_job

if TYPE_CHECKING:
    from ..storage.store import HealthStore

logger = logging.getLogger(__name__)


def execute_check(
    strategies: Any,
    config: HealthCheckConfiguration,
    assignment: Assignment,
) -> Observation:
    """Run the configuration's strategy once and turn the outcome into an observation."""
    strategy = strategies.get_strategy(config.strategy_id)
    if strategy is None or not hasattr(strategy, "execute"):
        raise LookupError(f"No executable strategy '{config.strategy_id}'")

    t0 = time.perf_counter()
    try:
        outcome: CheckOutcome = strategy.execute(config.config)
    except Exception as e:
        latency = (time.perf_counter() - t0) * 1000
        return Observation(
            system_id=assignment.system_id,
            configuration_id=assignment.configuration_id,
            status=HealthStatus.UNHEALTHY,
            latency_ms=round(latency, 1),
            result={"message": f"Error: {type(e).__name__}: {e}"},
        )

    return Observation(
        system_id=assignment.system_id,
        configuration_id=assignment.configuration_id,
        status=HealthStatus(outcome.status),
        latency_ms=outcome.latency_ms,
        result={"message": outcome.message, "metadata": outcome.metadata or {}},
    )


class CheckScheduler:
    """Runs every enabled assignment's check at its interval.

    Each check runs in a thread pool to avoid blocking the event loop;
    results are written to the store from the loop.
    """

    def __init__(
        self,
        store: HealthStore,
        strategies: Any,
        collectors: Any | None = None,
        on_result: Callable[[Observation], Any] | None = None,
    ) -> None:
        self.store = store
        self.strategies = strategies
        self.collectors = collectors
        self.on_result = on_result
        self._executor = ThreadPoolExecutor(max_workers=settings.check_workers)
        self._tasks: list[asyncio.Task[None]] = []
        self._running = False

    async def start(self) -> None:
        if self._running:
            return
        self._running = True

        scheduled = 0
        for assignment in self.store.list_assignments(enabled_only=True):
            config = self.store.get_configuration(assignment.configuration_id)
            if config is None:
                logger.warning(
                    "Assignment %s/%s references unknown configuration, skipped",
                    assignment.system_id, assignment.configuration_id,
                )
                continue
            task = asyncio.create_task(
                self._check_loop(assignment, config),
                name=f"check-{assignment.system_id}-{assignment.configuration_id}",
            )
            self._tasks.append(task)
            scheduled += 1

        if not scheduled:
            logger.info("No health checks assigned, check scheduler idle")
            return
        logger.info("Check scheduler started: %d checks", scheduled)

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        self._executor.shutdown(wait=False)
        logger.info("Check scheduler stopped")

    async def run_once(self, assignment: Assignment, config: HealthCheckConfiguration) -> Observation:
        """Execute one check and record it."""
        loop = asyncio.get_running_loop()
        run = await loop.run_in_executor(
            self._executor, execute_check, self.strategies, config, assignment,
        )
        record_run(self.store, run, self.collectors)
        if self.on_result:
            try:
                self.on_result(run)
            except Exception:
                logger.exception("Result callback error")
        return run

    async def _check_loop(self, assignment: Assignment, config: HealthCheckConfiguration) -> None:
        interval = config.interval_seconds
        while self._running:
            try:
                run = await self.run_once(assignment, config)
                logger.debug(
                    "Check %s/%s: %s (%sms)",
                    assignment.system_id, config.id, run.status.value, run.latency_ms,
                )
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Health check error: %s/%s", assignment.system_id, config.id)
                await asyncio.sleep(min(interval, 60))


class RetentionScheduler:
    """Delivers the scheduled retention trigger and runs the job for it.

    The job runs in the default executor so the event loop keeps serving
    check loops and requests meanwhile.
    """

    def __init__(
        self,
        store: HealthStore,
        strategies: Any | None = None,
        collectors: Any | None = None,
        interval_seconds: float | None = None,
    ) -> None:
        self.store = store
        self.strategies = strategies
        self.collectors = collectors
        self.interval_seconds = interval_seconds or settings.retention_interval_seconds
        self._task: asyncio.Task[None] | None = None

    def handle(self, payload: dict[str, Any]) -> RetentionReport:
        """Consume one trigger payload."""
        if payload.get("trigger") != "scheduled":
            raise ValueError(f"Unknown retention trigger: {payload!r}")
        logger.info("Starting health check retention job")
        report = run_retention_job(self.store, self.strategies, self.collectors)
        logger.info("Completed health check retention job")
        return report

    async def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._loop(), name="health-check-retention")
        logger.info("Health check retention job scheduled (every %ds)", self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None

    async def _loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.interval_seconds)
                loop = asyncio.get_running_loop()
                await loop.run_in_executor(None, self.handle, {"trigger": "scheduled"})
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Retention trigger failed")
