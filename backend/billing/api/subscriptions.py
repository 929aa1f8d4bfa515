"""Subscriptions API routes"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from billing.core.security import require_service_token
from billing.db.session import get_db
from billing.schemas.subscriptions import CancelRequest, ScopeSelectionRequest
from billing.services.subscription_service import (
    get_subscription_info, get_transition_history, reactivate, request_cancellation, select_scope
)

router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"], dependencies=[Depends(require_service_token)])
logger = logging.getLogger(__name__)


@router.get("/{account_id}")
def get_current_subscription(account_id: int, db: Session = Depends(get_db)):
    """Get the account's current subscription.

    Auto-provisions the free tier for accounts that have none.
    """
    return {"subscription": get_subscription_info(account_id, db)}


@router.get("/{account_id}/history")
def get_subscription_history(
    account_id: int,
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db)
):
    """Get subscription transition history, newest first"""
    return {"transitions": get_transition_history(account_id, db, limit)}


@router.post("/{account_id}/cancel")
def cancel_subscription(account_id: int, cancel_request: Optional[CancelRequest] = None, db: Session = Depends(get_db)):
    """
    Schedule cancellation at the end of the current period.
    Yearly plans keep their monthly refreshes until the prepaid year ends.
    """
    reason = cancel_request.reason if cancel_request else None
    return request_cancellation(account_id, reason, db)


@router.post("/{account_id}/reactivate")
def reactivate_subscription(account_id: int, db: Session = Depends(get_db)):
    """Undo a pending cancellation"""
    return reactivate(account_id, db)


@router.post("/{account_id}/scope")
def select_subscription_scope(account_id: int, selection: ScopeSelectionRequest, db: Session = Depends(get_db)):
    """One-time scope selection; locked once set"""
    return select_scope(account_id, selection.scope_ids, db)
