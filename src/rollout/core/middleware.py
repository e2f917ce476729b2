"""Request context middleware for correlation and logging."""
import time
import uuid

from fastapi import Request
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.middleware.base import BaseHTTPMiddleware

from src.rollout.core.logging import trace_id as trace_id_var
from src.rollout.monitoring.tracing import get_current_span, record_exception, set_span_attributes


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Adds a correlation ID to every request, its logs and its span."""

    async def dispatch(self, request: Request, call_next):
        if getattr(request.app.state, "shutting_down", False):
            logger.warning("⚠️  Rejecting request during shutdown")
            return JSONResponse(
                status_code=503,
                content={"detail": "Controller is shutting down"},
            )

        start_time = time.time()
        correlation_id = request.headers.get("X-Correlation-ID", str(uuid.uuid4()))
        token = trace_id_var.set(correlation_id)

        span = get_current_span()
        if span:
            set_span_attributes(
                span,
                correlation_id=correlation_id,
                http_method=request.method,
                http_url=str(request.url),
            )

        request.state.correlation_id = correlation_id

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(f"❌ {request.method} {request.url.path} failed: {e}")
            if span:
                record_exception(span, e)
            raise
        finally:
            trace_id_var.reset(token)

        process_time = time.time() - start_time
        logger.info(
            f"{request.method} {request.url.path} → {response.status_code} "
            f"({process_time * 1000:.1f}ms)"
        )
        response.headers["X-Correlation-ID"] = correlation_id
        response.headers["X-Process-Time"] = f"{process_time:.4f}"
        return response
