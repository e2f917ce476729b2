"""Main FastAPI application."""
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from loguru import logger
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from src.rollout.api import api_router
from src.rollout.api.health import router as health_router
from src.rollout.core.config import settings
from src.rollout.core.limiter import limiter
from src.rollout.core.logging import setup_logging
from src.rollout.core.middleware import RequestContextMiddleware
from src.rollout.deployment.definitions import DefinitionStore
from src.rollout.deployment.scheduler import Scheduler
from src.rollout.monitoring.metrics import PrometheusMiddleware, metrics_endpoint
from src.rollout.monitoring.tracing import setup_tracing


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle: start the scheduler, stop it gracefully."""
    logger.info("🚀 Starting rollout controller v{}", settings.VERSION)

    scheduler: Optional[Scheduler] = app.state.scheduler
    if scheduler is None:
        # Cluster credentials are only loaded when no scheduler was injected
        from src.rollout.services.registry import build_scheduler
        scheduler = build_scheduler(settings)
        app.state.scheduler = scheduler

    store: Optional[DefinitionStore] = app.state.definitions
    if store is None and settings.ROLLOUTS_DIR:
        store = DefinitionStore(settings.ROLLOUTS_DIR)
        app.state.definitions = store

    if store is not None:
        for spec in store.load():
            await scheduler.register(spec)
    else:
        logger.warning("ROLLOUTS_DIR is not set; rollouts applied through the API are lost on restart")

    await scheduler.start()
    logger.info("✅ Controller is reconciling")

    yield

    logger.info("🛑 Shutting down gracefully...")
    app.state.shutting_down = True
    await scheduler.shutdown(settings.SHUTDOWN_GRACE_SECONDS)
    logger.info("✅ Shutdown complete")


def create_app(
    scheduler: Optional[Scheduler] = None,
    definitions: Optional[DefinitionStore] = None,
) -> FastAPI:
    """Create FastAPI application with all middleware and routes."""
    setup_logging()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        lifespan=lifespan,
    )

    app.state.shutting_down = False
    app.state.scheduler = scheduler
    app.state.definitions = definitions

    # Rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(PrometheusMiddleware)

    setup_tracing(app)

    app.include_router(health_router, prefix="/api", tags=["health"])
    app.include_router(api_router, prefix=settings.API_V1_STR)

    app.add_route("/metrics", metrics_endpoint)

    logger.info("📦 Application configured successfully")

    return app


def run() -> None:
    uvicorn.run(create_app(), host="0.0.0.0", port=8080, log_config=None)


if __name__ == "__main__":
    run()
