import time
from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp
from fastapi import Request, Response

# HTTP surface
REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total number of HTTP requests",
    ["method", "endpoint", "status_code"]
)

REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint"]
)

# Reconciliation engine
ROLLOUT_STATUS = Gauge(
    "rollout_status",
    "Rollout status: 0=running, 1=succeeded, 2=failed, 3=initialized or waiting",
    ["name", "namespace"]
)

ROLLOUT_WEIGHT = Gauge(
    "rollout_weight",
    "Traffic weight as last read from the router",
    ["workload", "namespace"]
)

TICK_DURATION = Histogram(
    "rollout_tick_duration_seconds",
    "Duration of one reconciliation tick",
    ["name", "namespace"]
)

TICK_ERRORS = Counter(
    "rollout_tick_errors_total",
    "Ticks aborted by collaborator or configuration errors",
    ["name", "namespace", "reason"]
)

CHECK_VALUE = Gauge(
    "rollout_metric_check_value",
    "Last observed value of a metric check",
    ["name", "namespace", "metric"]
)

CHECK_FAILURES = Counter(
    "rollout_metric_check_failures_total",
    "Failed metric checks, including query errors",
    ["name", "namespace", "metric"]
)

ALERTS_SENT = Counter(
    "rollout_alerts_total",
    "Alert deliveries by outcome",
    ["provider", "outcome"]
)


class PrometheusMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp):
        super().__init__(app)

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()

        try:
            response = await call_next(request)
            status_code = response.status_code
        except Exception:
            status_code = 500
            raise
        finally:
            process_time = time.time() - start_time

            # Skip health checks and scrapes
            if "/health" not in request.url.path and "/metrics" not in request.url.path:
                REQUEST_COUNT.labels(
                    method=request.method,
                    endpoint=request.url.path,
                    status_code=status_code
                ).inc()

                REQUEST_LATENCY.labels(
                    method=request.method,
                    endpoint=request.url.path
                ).observe(process_time)

        return response

def metrics_endpoint(request: Request):
    """Endpoint for Prometheus scraping."""
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
