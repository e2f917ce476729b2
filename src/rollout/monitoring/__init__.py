"""Monitoring components for the rollout controller."""

from .metrics import (
    ROLLOUT_STATUS,
    ROLLOUT_WEIGHT,
    TICK_DURATION,
    TICK_ERRORS,
    CHECK_VALUE,
    CHECK_FAILURES,
    ALERTS_SENT,
    PrometheusMiddleware,
    metrics_endpoint,
)

from .tracing import (
    tracer,
    setup_tracing,
    set_span_attributes,
    record_exception,
)

__all__ = [
    # Prometheus
    "ROLLOUT_STATUS",
    "ROLLOUT_WEIGHT",
    "TICK_DURATION",
    "TICK_ERRORS",
    "CHECK_VALUE",
    "CHECK_FAILURES",
    "ALERTS_SENT",
    "PrometheusMiddleware",
    "metrics_endpoint",
    # Tracing
    "tracer",
    "setup_tracing",
    "set_span_attributes",
    "record_exception",
]
