"""Health check endpoints."""
from fastapi import APIRouter, Request, Response, status
from loguru import logger
from prometheus_client import Gauge

from src.rollout.core.circuit_breaker import breaker_states
from src.rollout.core.config import settings

router = APIRouter()

SERVICE_READY = Gauge("service_ready", "Service readiness: 1=ready, 0=not ready")


@router.get("/healthz", status_code=status.HTTP_200_OK)
async def healthz():
    """Liveness: is the process alive?"""
    return {
        "status": "ok",
        "version": settings.VERSION,
        "service": settings.PROJECT_NAME,
    }


@router.get("/ready", status_code=status.HTTP_200_OK)
async def ready(request: Request, response: Response):
    """
    Readiness: is the controller reconciling?

    Checks:
    - Scheduler started
    - Not shutting down

    Open notifier circuits are reported but do not fail readiness.
    """
    scheduler = getattr(request.app.state, "scheduler", None)
    checks = {
        "scheduler_started": bool(scheduler and scheduler.started),
        "not_shutting_down": not getattr(request.app.state, "shutting_down", False),
    }

    is_ready = all(checks.values())
    SERVICE_READY.set(1 if is_ready else 0)

    body = {
        "status": "ready" if is_ready else "not_ready",
        "checks": checks,
        "rollouts": len(scheduler.workers()) if scheduler else 0,
        "circuits": breaker_states(),
    }
    if not is_ready:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        logger.warning(f"Controller NOT READY: {checks}")
    return body
