"""CORS and request accounting middleware"""
import logging
import time

from fastapi import Request
from fastapi.middleware.cors import CORSMiddleware

from billing.core.config import settings
from billing.core.metrics import http_request_duration_histogram
from billing.core.security import log_api_access

logger = logging.getLogger(__name__)

# Probes and scrapes are not worth an access log line each
QUIET_PATHS = {"/health", "/metrics"}


def get_allowed_origins():
    """Origins allowed to call the API from a browser (the admin frontend)"""
    allowed_origins = [settings.FRONTEND_URL]
    if settings.ENVIRONMENT == "development":
        allowed_origins.extend([
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ])
    return allowed_origins


def setup_cors_middleware(app):
    app.add_middleware(
        CORSMiddleware,
        allow_origins=get_allowed_origins(),
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "X-Service-Token"],
    )


def route_template(request: Request) -> str:
    """Route path with placeholders, e.g. /api/usage/{account_id}/summary"""
    route = request.scope.get("route")
    return getattr(route, "path", "unmatched")


async def access_log_middleware(request: Request, call_next):
    """Time every API call, export the latency and write an access log line"""
    started = time.perf_counter()
    status_code = 500
    error = None
    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    except Exception as e:
        error = str(e)
        logger.error(f"Request failed: {request.method} {request.url.path}: {error}", exc_info=True)
        raise
    finally:
        if request.url.path not in QUIET_PATHS:
            elapsed = time.perf_counter() - started
            http_request_duration_histogram.labels(
                method=request.method,
                route=route_template(request),
                status=str(status_code)
            ).observe(elapsed)
            log_api_access(request, status_code, elapsed, error)
