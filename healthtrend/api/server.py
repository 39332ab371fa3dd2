"""FastAPI server for health history."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from healthtrend.api.health_routes import health_router
from healthtrend.health.catalog import CheckCatalog
from healthtrend.health.scheduler import CheckScheduler, RetentionScheduler
from healthtrend.plugins.http import HttpStrategy
from healthtrend.plugins.registry import CollectorRegistry, StrategyRegistry
from healthtrend.storage.store import HealthStore

logger = logging.getLogger(__name__)


def default_strategies() -> StrategyRegistry:
    strategies = StrategyRegistry()
    strategies.register(HttpStrategy())
    return strategies


def create_app(
    store: HealthStore | None = None,
    strategies: StrategyRegistry | None = None,
    collectors: CollectorRegistry | None = None,
    catalog: CheckCatalog | None = None,
    start_schedulers: bool = True,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Initialize shared resources on startup."""
        health_store = store or HealthStore()
        app.state.health_store = health_store
        app.state.strategies = strategies or default_strategies()
        app.state.collectors = collectors or CollectorRegistry()

        # Check catalog
        check_catalog = catalog or CheckCatalog()
        try:
            check_catalog.load().sync(health_store)
        except Exception:
            logger.exception("Failed to sync check catalog")
        app.state.catalog = check_catalog

        check_scheduler = CheckScheduler(health_store, app.state.strategies, app.state.collectors)
        retention_scheduler = RetentionScheduler(
            health_store, app.state.strategies, app.state.collectors,
        )
        app.state.check_scheduler = check_scheduler
        app.state.retention_scheduler = retention_scheduler

        if start_schedulers:
            try:
                await check_scheduler.start()
                await retention_scheduler.start()
            except Exception:
                logger.exception("Scheduler failed to start")

        yield

        # Shutdown
        await retention_scheduler.stop()
        await check_scheduler.stop()
        if store is None:
            health_store.close()

    app = FastAPI(
        title="healthtrend - Health History",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router, prefix="/api")

    return app
