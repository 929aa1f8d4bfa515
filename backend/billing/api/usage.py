"""Usage metering and access check routes"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from billing.core.security import require_service_token
from billing.db.session import get_db
from billing.schemas.usage import AccessCheckRequest, AccessDecision, RecordUsageRequest, ResourceAccessRequest
from billing.services.access_service import check_access
from billing.services.subscription_service import ensure_subscription
from billing.services.usage_service import (
    get_usage_history, get_usage_summary, record_resource_access, record_usage
)

router = APIRouter(prefix="/api/usage", tags=["usage"], dependencies=[Depends(require_service_token)])
access_router = APIRouter(prefix="/api/access", tags=["access"], dependencies=[Depends(require_service_token)])
logger = logging.getLogger(__name__)


@router.post("/record")
def record_usage_route(usage_request: RecordUsageRequest, db: Session = Depends(get_db)):
    """Record metered usage; a repeated request_id is applied once"""
    return record_usage(
        usage_request.account_id,
        usage_request.request_id,
        usage_request.usage,
        db,
        category=usage_request.category
    )


@router.post("/resource", response_model=AccessDecision)
def record_resource_access_route(access_request: ResourceAccessRequest, db: Session = Depends(get_db)):
    """Open a distinct resource, counting it against the period allowance"""
    return record_resource_access(access_request.account_id, access_request.resource, db)


@router.get("/{account_id}/summary")
def get_usage_summary_route(account_id: int, db: Session = Depends(get_db)):
    """Current-period usage with per-category totals"""
    return get_usage_summary(account_id, db)


@router.get("/{account_id}/history")
def get_usage_history_route(
    account_id: int,
    limit: int = Query(50, ge=1, le=500),
    category: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Recent usage events"""
    return {"events": get_usage_history(account_id, db, limit, category)}


@access_router.post("/check", response_model=AccessDecision)
def check_access_route(access_request: AccessCheckRequest, db: Session = Depends(get_db)):
    """Allow/deny decision for an action. Provisions the free tier first if the account has no subscription."""
    ensure_subscription(access_request.account_id, db)
    return check_access(access_request.account_id, access_request.action, access_request.resource, db)
