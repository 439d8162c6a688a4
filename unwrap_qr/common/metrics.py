"""
Prometheus metrics for the server and the worker.

The worker does not serve /metrics; its counters are still kept so that the
same actor code runs in both processes.
"""

from __future__ import annotations

import time

from fastapi import FastAPI, Request
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

from .logging import get_project_logger

log = get_project_logger("http")

REQUESTS_TOTAL = Counter(
    "unwrap_qr_http_requests_total",
    "HTTP requests served",
    ["route", "method", "status"],
)

HTTP_REQUEST_LATENCY_MS = Histogram(
    "unwrap_qr_http_request_latency_ms",
    "HTTP request latency (ms)",
    ["route", "method"],
    buckets=(5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000),
)

DELIVERIES_TOTAL = Counter(
    "unwrap_qr_deliveries_total",
    "Broker deliveries processed by a queue actor",
    ["queue", "result"],  # replied|no_reply|missing_correlation_id|handler_error
)

PUBLISH_TOTAL = Counter(
    "unwrap_qr_publish_total",
    "Publishes attempted by a queue actor",
    ["queue", "result"],  # ok|failed
)

OUTBOUND_DEPTH = Gauge(
    "unwrap_qr_outbound_depth",
    "Messages waiting in the actor's outbound queue",
    ["queue"],
)

TASK_ANOMALIES_TOTAL = Counter(
    "unwrap_qr_task_anomalies_total",
    "Registry updates that could not be applied",
    ["kind"],  # unknown_task|transition_rejected
)

TASKS_SUBMITTED_TOTAL = Counter(
    "unwrap_qr_tasks_submitted_total",
    "Uploads turned into tasks",
)

SCAN_RESULTS_TOTAL = Counter(
    "unwrap_qr_scan_results_total",
    "Worker scan outcomes",
    ["result"],  # success|failure
)


def setup_metrics_endpoint(app: FastAPI) -> None:
    """
    Registers /metrics and the request counting middleware.
    """

    @app.middleware("http")
    async def http_metrics(request: Request, call_next):
        method = request.method
        started = time.perf_counter()

        response = await call_next(request)
        # label by route template so task ids do not explode cardinality
        matched = request.scope.get("route")
        route = getattr(matched, "path", request.url.path)
        elapsed_ms = (time.perf_counter() - started) * 1000
        status_code = str(response.status_code)

        REQUESTS_TOTAL.labels(route=route, method=method, status=status_code).inc()
        HTTP_REQUEST_LATENCY_MS.labels(route=route, method=method).observe(elapsed_ms)
        log.info(
            "http_request",
            extra={
                "payload": {
                    "route": route,
                    "method": method,
                    "status": response.status_code,
                    "elapsed_ms": round(elapsed_ms, 2),
                }
            },
        )
        return response

    @app.get("/metrics")
    def metrics() -> Response:
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
