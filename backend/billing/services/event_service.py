"""Transition outbox dispatch: referral consumer plus Redis pub/sub fan-out"""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import redis
from sqlalchemy.orm import Session

from billing.core.config import settings
from billing.core.metrics import transition_outbox_gauge
from billing.db.redis import publish_message
from billing.models.subscription_transition import SubscriptionTransition
from billing.services.referral_service import handle_transition_for_referrals
from billing.utils.dates import as_utc, utcnow

logger = logging.getLogger(__name__)

EVENT_TYPE = "subscription_transitioned"


def build_event_message(transition: SubscriptionTransition) -> str:
    """Serialize a transition as a SubscriptionTransitioned message"""
    created_at = as_utc(transition.created_at)
    event = {
        "type": EVENT_TYPE,
        "id": transition.id,
        "data": transition.to_event(),
        "timestamp": (created_at or datetime.now(timezone.utc)).isoformat()
    }
    return json.dumps(event, default=str)


def publish_transition(message: str) -> int:
    """Publish one serialized event. Returns receiver count, 0 if Redis is unavailable."""
    try:
        receivers = publish_message(settings.TRANSITION_CHANNEL, message)
    except redis.RedisError as e:
        logger.warning(f"Failed to publish transition event to {settings.TRANSITION_CHANNEL}: {e}")
        return 0
    if receivers == 0:
        logger.debug(f"Transition event published to {settings.TRANSITION_CHANNEL} with no subscribers")
    return receivers


def dispatch_pending_transitions(db: Session, limit: Optional[int] = None,
                                 now: Optional[datetime] = None) -> int:
    """
    Deliver undispatched transitions to their consumers.

    Referral rewards and the dispatched_at marks commit together, so a crash
    never awards the same transition twice. Pub/sub delivery happens after
    the commit and is best effort.

    Returns:
        Number of transitions dispatched
    """
    limit = limit or settings.TRANSITION_DISPATCH_BATCH_SIZE
    now = as_utc(now) or utcnow()

    transitions = db.query(SubscriptionTransition).filter(
        SubscriptionTransition.dispatched_at.is_(None)
    ).order_by(SubscriptionTransition.id).limit(limit).with_for_update(skip_locked=True).all()

    if not transitions:
        transition_outbox_gauge.set(0)
        return 0

    messages: List[str] = []
    try:
        for transition in transitions:
            handle_transition_for_referrals(transition, db, now)
            transition.dispatched_at = now
            messages.append(build_event_message(transition))
        db.commit()
    except Exception as e:
        logger.error(f"Failed to dispatch subscription transitions: {e}", exc_info=True)
        db.rollback()
        raise

    for message in messages:
        publish_transition(message)

    pending = db.query(SubscriptionTransition.id).filter(SubscriptionTransition.dispatched_at.is_(None)).count()
    transition_outbox_gauge.set(pending)
    logger.info(f"Dispatched {len(messages)} subscription transitions ({pending} pending)")
    return len(messages)


def get_pending_transitions(db: Session, limit: int = 100) -> List[Dict[str, Any]]:
    transitions = db.query(SubscriptionTransition).filter(
        SubscriptionTransition.dispatched_at.is_(None)
    ).order_by(SubscriptionTransition.id).limit(limit).all()
    return [{"id": t.id, **t.to_event()} for t in transitions]
