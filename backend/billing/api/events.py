"""Inbound payment event routes"""
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from billing.core.security import require_service_token
from billing.db.session import get_db
from billing.schemas.subscriptions import PaymentCompletedEvent, PaymentFailedEvent
from billing.services.subscription_service import apply_payment_completed, apply_payment_failed

router = APIRouter(prefix="/api/events", tags=["events"], dependencies=[Depends(require_service_token)])
logger = logging.getLogger(__name__)


@router.post("/payment-completed")
def payment_completed(event: PaymentCompletedEvent, db: Session = Depends(get_db)):
    """Apply a successful payment (create, upgrade, downgrade or renew). Deduplicated on external_txn_id."""
    return apply_payment_completed(
        event.account_id,
        event.tier,
        event.billing_cycle,
        event.payment_method_class,
        event.external_txn_id,
        db,
        payload=event.model_dump()
    )


@router.post("/payment-failed")
def payment_failed(event: PaymentFailedEvent, db: Session = Depends(get_db)):
    """Suspend the paid subscription after a failed payment"""
    return apply_payment_failed(event.account_id, event.reason, event.external_txn_id, db)
