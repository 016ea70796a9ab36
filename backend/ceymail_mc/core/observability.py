"""
Prometheus instrumentation for the Mission Control API.

This module sets up:
- Request/exception counters and latency histogram
- Backup outcome counters and creation duration
- The /metrics endpoint
"""

from __future__ import annotations

import logging
import re
import time

from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from fastapi import Request, Response
from fastapi.responses import PlainTextResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

# Prometheus metrics
http_requests_total = Counter(
    "http_server_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"]
)

http_request_duration_seconds = Histogram(
    "http_server_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

http_exceptions_total = Counter(
    "http_server_exceptions_total",
    "Total unhandled exceptions",
    ["method", "path", "exception_type"]
)

backups_created_total = Counter(
    "ceymail_backups_created_total",
    "Backup archives created successfully"
)

backup_failures_total = Counter(
    "ceymail_backup_failures_total",
    "Backup creations that failed",
    ["stage"]
)

backup_rejections_total = Counter(
    "ceymail_backup_rejections_total",
    "Backup creations rejected before any work started",
    ["reason"]
)

backup_duration_seconds = Histogram(
    "ceymail_backup_duration_seconds",
    "Wall time of successful backup creations",
    buckets=[1, 5, 15, 30, 60, 120, 300, 600]
)

backup_creation_in_progress = Gauge(
    "ceymail_backup_creation_in_progress",
    "1 while a backup creation holds the lock"
)

_ID_SEGMENT = re.compile(r"/(\d+|ceymail-backup-[A-Za-z0-9_-]+)")


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Middleware to collect Prometheus metrics for all requests."""

    async def dispatch(self, request: Request, call_next) -> Response:
        # Skip metrics endpoint to avoid recursion
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method
        path = self._normalize_path(request.url.path)

        start_time = time.perf_counter()

        try:
            response = await call_next(request)
            duration = time.perf_counter() - start_time

            http_requests_total.labels(
                method=method,
                path=path,
                status=response.status_code
            ).inc()

            http_request_duration_seconds.labels(
                method=method,
                path=path
            ).observe(duration)

            return response
        except Exception as e:
            duration = time.perf_counter() - start_time

            http_exceptions_total.labels(
                method=method,
                path=path,
                exception_type=type(e).__name__
            ).inc()

            http_requests_total.labels(
                method=method,
                path=path,
                status=500
            ).inc()

            http_request_duration_seconds.labels(
                method=method,
                path=path
            ).observe(duration)

            raise

    def _normalize_path(self, path: str) -> str:
        """Replace backup ids and numeric ids with a placeholder to reduce cardinality."""
        normalized = _ID_SEGMENT.sub("/{id}", path)
        parts = normalized.split("/")[:5]
        return "/".join(parts)


async def metrics_endpoint(request: Request) -> Response:
    """Prometheus metrics endpoint handler."""
    return PlainTextResponse(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )
