"""Service-token dependency and API access logging"""
import json
import logging
import secrets
from datetime import datetime, timezone
from typing import Optional

from fastapi import Header, HTTPException, Request

from billing.core.config import settings
from billing.core.logging import API_ACCESS_LOGGER

security_logger = logging.getLogger("security")
api_access_logger = logging.getLogger(API_ACCESS_LOGGER)


def require_service_token(x_service_token: Optional[str] = Header(None)) -> None:
    """Dependency: require the shared service token when one is configured"""
    if not settings.SERVICE_TOKEN:
        return

    if not x_service_token or not secrets.compare_digest(x_service_token, settings.SERVICE_TOKEN):
        security_logger.warning("Rejected request with missing or invalid service token")
        raise HTTPException(401, "Invalid service token")


def caller_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
    if forwarded:
        return forwarded
    return request.client.host if request.client else "unknown"


def log_api_access(request: Request, status_code: int, duration_seconds: float, error: Optional[str] = None):
    """One JSON line per billing API call.

    The account id is taken from the path when the route carries one, so
    access lines can be joined with the transition audit log.
    """
    log_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "method": request.method,
        "path": request.url.path,
        "account_id": request.path_params.get("account_id"),
        "caller": caller_ip(request),
        "authenticated": bool(settings.SERVICE_TOKEN),
        "status_code": status_code,
        "duration_ms": round(duration_seconds * 1000, 1),
        "error": error
    }

    if error or status_code >= 500:
        api_access_logger.error(f"API Access: {json.dumps(log_data)}")
    elif status_code >= 400 or duration_seconds >= settings.SLOW_REQUEST_SECONDS:
        api_access_logger.warning(f"API Access: {json.dumps(log_data)}")
    else:
        api_access_logger.info(f"API Access: {json.dumps(log_data)}")
