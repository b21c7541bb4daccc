"""Vreamio – Logging and Prometheus instrumentation."""

import logging
import time
from typing import Callable

import structlog
from fastapi import APIRouter, FastAPI, Request, Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Histogram,
    generate_latest,
)

router = APIRouter(tags=["monitoring"])

REQUEST_COUNT = Counter(
    "vreamio_http_requests_total",
    "Total HTTP requests by method, endpoint and status",
    ["method", "endpoint", "status"],
)

SUBSCRIPTION_TRANSITIONS = Counter(
    "vreamio_subscription_transitions_total",
    "Applied subscription state transitions",
    ["from_status", "to_status", "event"],
)

PROVISIONING_OUTCOMES = Counter(
    "vreamio_provisioning_outcomes_total",
    "Provisioning attempts by outcome",
    ["outcome"],
)

VENDOR_REQUESTS = Counter(
    "vreamio_vendor_requests_total",
    "TorBox vendor API requests by endpoint and outcome",
    ["endpoint", "outcome"],
)

WORKER_CYCLES = Counter(
    "vreamio_provisioning_worker_cycles_total",
    "Completed provisioning worker cycles",
)

WORKER_CYCLE_DURATION = Histogram(
    "vreamio_provisioning_worker_cycle_seconds",
    "Duration of one provisioning worker cycle",
)


@router.get("/metrics")
def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


def setup_logging(log_level: str = "info") -> None:
    """Configure structlog for JSON output."""
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def setup_instrumentation(app: FastAPI, log_level: str = "info") -> None:
    """Configure logging and attach the request metrics middleware."""
    setup_logging(log_level)

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        path = request.url.path
        status = "500"
        try:
            response = await call_next(request)
            status = str(response.status_code)
        finally:
            REQUEST_COUNT.labels(method=request.method, endpoint=path, status=status).inc()
            structlog.get_logger().debug(
                "gateway.request",
                method=request.method,
                path=path,
                status=status,
                duration_ms=round((time.time() - start_time) * 1000, 1),
            )
        return response
