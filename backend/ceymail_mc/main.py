from __future__ import annotations

import logging
import os
import shutil

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from ceymail_mc.core.logging import RequestLoggingMiddleware, configure_logging
from ceymail_mc.core.observability import PrometheusMiddleware, metrics_endpoint
from ceymail_mc.core.settings import settings
from ceymail_mc.modules.router_registry import include_all_routers

configure_logging(level=settings.log_level)
logger = logging.getLogger("ceymail_mc")

app = FastAPI(title=settings.project_name, version=settings.project_version)

if settings.is_production:
    if any(origin.strip() == "*" for origin in settings.allow_origins):
        raise RuntimeError("ALLOW_ORIGINS cannot include '*' in production")
    if settings.session_secret.startswith("change_me"):
        raise RuntimeError("SESSION_SECRET must be set in production")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allow_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Request-Id", "Accept"],
)

# Observability middleware
app.add_middleware(PrometheusMiddleware)
app.add_middleware(RequestLoggingMiddleware)

app.add_api_route("/metrics", metrics_endpoint, methods=["GET"], tags=["observability"], include_in_schema=False)

include_all_routers(app)


@app.get("/healthz", tags=["health"])
def healthcheck() -> dict[str, str | bool | float]:
    """
    Liveness plus backup storage status.
    A missing backup directory is normal before the first backup; an existing
    one that is not writable is reported as degraded.
    """
    root = settings.backup_root
    checks: dict[str, str | bool | float] = {"status": "ok", "backup_dir_exists": root.is_dir()}
    if root.is_dir():
        writable = os.access(root, os.W_OK)
        checks["backup_dir_writable"] = writable
        if not writable:
            checks["status"] = "degraded"
        try:
            usage = shutil.disk_usage(root)
            checks["disk_free_percent"] = round((usage.free / usage.total) * 100, 1)
        except OSError:
            logger.warning("disk_usage_unavailable")
    if checks["status"] != "ok":
        raise HTTPException(status_code=503, detail=checks)
    return checks


@app.get("/version", tags=["health"])
def version() -> dict[str, str | None]:
    return {
        "version": settings.project_version,
        "git_sha": settings.git_sha,
        "environment": settings.environment,
    }
