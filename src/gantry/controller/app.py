"""FastAPI application factory for the Gantry controller."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

import redis.asyncio as aioredis
from fastapi import FastAPI

from gantry.config.bootstrap import load_bootstrap_config
from gantry.controller.job_spawner import build_job_spawner
from gantry.db.engine import create_engine, create_session_factory
from gantry.pipeline.orchestrator import Orchestrator
from gantry.pipeline.services import build_services


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage DB + Redis connections across app lifecycle."""
    cfg = load_bootstrap_config()

    engine = create_engine(cfg.postgres_url)
    session_factory = create_session_factory(engine)
    redis_client = aioredis.from_url(cfg.redis_url)
    services = build_services(cfg, redis_client, session_factory)

    app.state.config = cfg
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.redis = redis_client
    app.state.event_bus = services.event_bus
    app.state.orchestrator = Orchestrator(services)
    app.state.job_spawner = build_job_spawner(cfg, redis_client)

    yield

    await redis_client.aclose()
    await engine.dispose()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Gantry Pipeline Controller",
        description="Infrastructure CI/CD pipeline orchestration",
        version="0.1.0",
        lifespan=lifespan,
    )

    from gantry.controller.routes.events import router as events_router
    from gantry.controller.routes.health import router as health_router
    from gantry.controller.routes.intake import router as intake_router
    from gantry.controller.routes.locks import router as locks_router
    from gantry.controller.routes.pipeline import router as pipeline_router

    app.include_router(health_router)
    app.include_router(intake_router, prefix="/api")
    app.include_router(events_router, prefix="/api")
    app.include_router(pipeline_router, prefix="/api")
    app.include_router(locks_router, prefix="/api")

    return app


def main() -> None:
    import uvicorn

    cfg = load_bootstrap_config()
    uvicorn.run(
        "gantry.controller.app:create_app",
        factory=True,
        host=cfg.controller_host,
        port=cfg.controller_port,
        log_level=cfg.log_level.lower(),
    )
