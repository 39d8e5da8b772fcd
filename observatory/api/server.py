"""FastAPI server wiring the store, bus, controllers and sweeper together."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from observatory.api.routes import router
from observatory.config import Settings, settings as default_settings
from observatory.events.bus import BroadcastBus
from observatory.health.retention import RetentionSweeper
from observatory.health.scheduler import HealthScheduler
from observatory.health.store import ObservationStore
from observatory.targets.registry import TargetRegistry

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Load targets, then start one controller per target plus the sweeper."""
        # Malformed target files abort startup here
        targets = TargetRegistry(settings.targets_file).load()

        store = ObservationStore(settings.database)
        for target in targets:
            store.upsert_target(target)
        app.state.store = store

        bus = BroadcastBus(capacity=settings.bus_capacity)
        app.state.bus = bus

        scheduler = HealthScheduler(
            targets, store, bus, persist_attempts=settings.persist_attempts,
        )
        app.state.scheduler = scheduler
        await scheduler.start()

        sweeper = RetentionSweeper(
            store,
            retention_days=settings.observation_retention_days,
            interval=settings.observation_retention_check_interval,
        )
        app.state.sweeper = sweeper
        await sweeper.start()

        yield

        # Shutdown
        await sweeper.stop()
        await scheduler.stop()
        bus.close()
        store.close()

    app = FastAPI(
        title="Observatory",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    app.include_router(router, prefix="/api")

    return app
