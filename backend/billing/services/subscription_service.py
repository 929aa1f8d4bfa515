"""Subscription lifecycle: payment events, cancellation, scope selection, expiry"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing.core.exceptions import ConflictError, NotFoundError, ValidationError
from billing.core.logging import AUDIT_LOGGER
from billing.core.metrics import payment_events_counter, subscription_transitions_counter
from billing.models.account import Account
from billing.models.payment_event import PaymentEvent
from billing.models.subscription import CURRENT_STATUSES, Subscription
from billing.models.subscription_transition import SubscriptionTransition
from billing.schemas.subscriptions import BillingCycle
from billing.schemas.tiers import TierInfo
from billing.services import transition_rules
from billing.services.tier_catalog import TierCatalog
from billing.utils.conversion import dollars_to_tokens, to_decimal
from billing.utils.dates import as_utc, utcnow

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger(AUDIT_LOGGER)


# ============================================================================
# LOOKUPS
# ============================================================================

def get_account(account_id: int, db: Session) -> Account:
    account = db.query(Account).filter(Account.id == account_id).first()
    if not account:
        raise NotFoundError(f"Account {account_id} not found", account_id=account_id)
    return account


def get_current_subscription(account_id: int, db: Session) -> Optional[Subscription]:
    """The account's active or suspended row, without locking"""
    return db.query(Subscription).filter(
        Subscription.account_id == account_id,
        Subscription.status.in_(CURRENT_STATUSES)
    ).first()


def lock_current_subscription(account_id: int, db: Session) -> Optional[Subscription]:
    """The account's current row under a row lock (SELECT ... FOR UPDATE).

    Every read-modify-write of an account's subscription or counters goes
    through this so concurrent writers on one account serialize.
    """
    return db.query(Subscription).filter(
        Subscription.account_id == account_id,
        Subscription.status.in_(CURRENT_STATUSES)
    ).with_for_update().first()


def _apply_changes(subscription: Subscription, changes: Dict[str, Any]) -> None:
    for field, value in changes.items():
        setattr(subscription, field, value)


def record_transition(
    subscription: Subscription,
    old_tier: Optional[TierInfo],
    new_tier: Optional[TierInfo],
    reason: str,
    db: Session,
    payload: Optional[Dict[str, Any]] = None
) -> SubscriptionTransition:
    """Append a transition to the history/outbox in the caller's transaction"""
    transition = SubscriptionTransition(
        account_id=subscription.account_id,
        subscription_id=subscription.id,
        old_tier=old_tier.name if old_tier else None,
        new_tier=new_tier.name if new_tier else None,
        reason=reason,
        payload=payload or {}
    )
    db.add(transition)
    subscription_transitions_counter.labels(reason=reason).inc()
    audit_logger.info(
        f"Subscription transition account={subscription.account_id} "
        f"{transition.old_tier} -> {transition.new_tier} reason={reason}"
    )
    return transition


# ============================================================================
# PROVISIONING
# ============================================================================

def ensure_subscription(account_id: int, db: Session, now: Optional[datetime] = None) -> Subscription:
    """Return the account's current subscription, creating a default-tier one if missing.

    Idempotent. A concurrent creator winning the unique index race is
    tolerated by re-reading its row.
    """
    current = get_current_subscription(account_id, db)
    if current:
        return current

    get_account(account_id, db)
    now = as_utc(now) or utcnow()
    default_tier = TierCatalog.get_default(db)

    subscription = Subscription(account_id=account_id, **transition_rules.plan_default_subscription(default_tier, now))
    try:
        db.add(subscription)
        db.flush()
        record_transition(subscription, None, default_tier, transition_rules.PROVISIONED, db)
        db.commit()
    except IntegrityError:
        db.rollback()
        current = get_current_subscription(account_id, db)
        if current:
            return current
        raise ConflictError(f"Could not provision subscription for account {account_id}", account_id=account_id)

    db.refresh(subscription)
    logger.info(f"Provisioned {default_tier.name} subscription for account {account_id}")
    return subscription


def create_account(
    external_ref: str,
    db: Session,
    email: Optional[str] = None,
    referred_by_account_id: Optional[int] = None,
    now: Optional[datetime] = None
) -> Account:
    """Get or create an account; new accounts get a default-tier subscription in the same transaction"""
    from billing.services.referral_service import attach_referral

    account = db.query(Account).filter(Account.external_ref == external_ref).first()
    if account:
        ensure_subscription(account.id, db, now)
        return account

    now = as_utc(now) or utcnow()
    default_tier = TierCatalog.get_default(db)
    try:
        account = Account(external_ref=external_ref, email=email)
        db.add(account)
        db.flush()

        subscription = Subscription(account_id=account.id, **transition_rules.plan_default_subscription(default_tier, now))
        db.add(subscription)
        db.flush()
        record_transition(subscription, None, default_tier, transition_rules.PROVISIONED, db)

        if referred_by_account_id is not None:
            attach_referral(referred_by_account_id, account.id, db)

        db.commit()
    except IntegrityError:
        db.rollback()
        account = db.query(Account).filter(Account.external_ref == external_ref).first()
        if account:
            return account
        raise ConflictError(f"Could not create account '{external_ref}'")
    except Exception:
        db.rollback()
        raise

    db.refresh(account)
    logger.info(f"Created account {account.id} ({external_ref}) on {default_tier.name}")
    return account


# ============================================================================
# PAYMENT EVENTS
# ============================================================================

def _payment_already_processed(event_id: str, db: Session) -> bool:
    return db.query(PaymentEvent.id).filter(PaymentEvent.event_id == event_id).first() is not None


def activate_subscription(
    account_id: int,
    tier: TierInfo,
    billing_cycle: str,
    payment_method_class: Optional[str],
    db: Session,
    now: datetime,
    payload: Optional[Dict[str, Any]] = None
) -> Subscription:
    """Apply a paid activation inside the caller's transaction (no commit).

    Upserts on the account's current row: an existing row is upgraded,
    downgraded or renewed in place, otherwise a new active row is inserted.
    """
    current = lock_current_subscription(account_id, db)
    old_tier = TierCatalog.get(db, current.tier_id) if current else None

    changes, reason = transition_rules.plan_activation(
        current, old_tier, tier, billing_cycle, payment_method_class, now
    )

    if current is None:
        current = Subscription(account_id=account_id, **changes)
        db.add(current)
    else:
        _apply_changes(current, changes)
    db.flush()

    details = dict(payload or {})
    details.update({"billing_cycle": billing_cycle, "payment_method_class": payment_method_class})
    if changes.get("resource_limit_override") is not None:
        details["resource_limit_override"] = str(changes["resource_limit_override"])
    record_transition(current, old_tier, tier, reason, db, payload=details)
    return current


def apply_payment_completed(
    account_id: int,
    tier_name: str,
    billing_cycle: str,
    payment_method_class: Optional[str],
    external_txn_id: str,
    db: Session,
    now: Optional[datetime] = None,
    payload: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """
    Apply a PaymentCompleted notification exactly once.

    Args:
        account_id: Paying account
        tier_name: Tier that was purchased
        billing_cycle: 'daily', 'monthly', 'yearly' or 'lifetime'
        payment_method_class: Payment method family ('card', 'bank_transfer', ...)
        external_txn_id: Provider transaction id, the deduplication key
        db: Database session
        now: Transition time, defaults to the current time
        payload: Raw notification stored with the event log

    Returns:
        Dict with status ('applied' or 'duplicate'), reason and the subscription
    """
    now = as_utc(now) or utcnow()

    cycle = BillingCycle.from_string(billing_cycle)
    if cycle is None:
        raise ValidationError(f"Unknown billing cycle '{billing_cycle}'", account_id=account_id)
    try:
        tier = TierCatalog.get(db, tier_name)
    except NotFoundError:
        raise ValidationError(f"Unknown tier '{tier_name}'", account_id=account_id)
    if not tier.is_active:
        raise ValidationError(f"Tier '{tier_name}' is not available for purchase", account_id=account_id)
    get_account(account_id, db)

    if _payment_already_processed(external_txn_id, db):
        logger.info(f"Payment {external_txn_id} already processed, skipping")
        payment_events_counter.labels(event_type="payment_completed", result="duplicate").inc()
        return {"status": "duplicate", "external_txn_id": external_txn_id}

    try:
        db.add(PaymentEvent(
            event_id=external_txn_id,
            event_type="payment_completed",
            account_id=account_id,
            payload=payload or {},
            processed=True,
            processed_at=now
        ))
        db.flush()

        subscription = activate_subscription(
            account_id, tier, cycle.value, payment_method_class, db, now,
            payload={"external_txn_id": external_txn_id}
        )
        db.commit()
    except IntegrityError as e:
        db.rollback()
        if _payment_already_processed(external_txn_id, db):
            payment_events_counter.labels(event_type="payment_completed", result="duplicate").inc()
            return {"status": "duplicate", "external_txn_id": external_txn_id}
        logger.warning(f"Concurrent subscription change for account {account_id}: {e}")
        raise ConflictError(f"Concurrent subscription change for account {account_id}, retry", account_id=account_id)
    except Exception as e:
        logger.error(f"Failed to apply payment {external_txn_id} for account {account_id}: {e}", exc_info=True)
        db.rollback()
        raise

    db.refresh(subscription)
    payment_events_counter.labels(event_type="payment_completed", result="applied").inc()
    logger.info(f"Applied payment {external_txn_id}: account {account_id} now on {tier.name} ({cycle.value})")
    return {
        "status": "applied",
        "external_txn_id": external_txn_id,
        "subscription": subscription_to_dict(subscription, tier)
    }


def apply_payment_failed(
    account_id: int,
    reason: str,
    external_txn_id: str,
    db: Session,
    now: Optional[datetime] = None
) -> Dict[str, Any]:
    """Suspend the account's paid subscription after a failed payment (exactly once)"""
    now = as_utc(now) or utcnow()
    get_account(account_id, db)

    if _payment_already_processed(external_txn_id, db):
        payment_events_counter.labels(event_type="payment_failed", result="duplicate").inc()
        return {"status": "duplicate", "external_txn_id": external_txn_id}

    try:
        event = PaymentEvent(
            event_id=external_txn_id,
            event_type="payment_failed",
            account_id=account_id,
            payload={"reason": reason},
            processed=True,
            processed_at=now
        )
        db.add(event)
        db.flush()

        current = lock_current_subscription(account_id, db)
        tier = TierCatalog.get(db, current.tier_id) if current else None

        if current is None or current.status != "active" or (tier is not None and tier.is_default):
            event.error_message = "No active paid subscription to suspend"
            db.commit()
            payment_events_counter.labels(event_type="payment_failed", result="ignored").inc()
            logger.info(f"Payment failure {external_txn_id} for account {account_id} ignored: nothing to suspend")
            return {"status": "ignored", "external_txn_id": external_txn_id}

        current.status = "suspended"
        current.suspended_reason = reason
        db.flush()
        record_transition(current, tier, tier, transition_rules.SUSPENDED, db,
                          payload={"reason": reason, "external_txn_id": external_txn_id})
        db.commit()
    except IntegrityError:
        db.rollback()
        if _payment_already_processed(external_txn_id, db):
            return {"status": "duplicate", "external_txn_id": external_txn_id}
        raise ConflictError(f"Concurrent subscription change for account {account_id}, retry", account_id=account_id)
    except Exception as e:
        logger.error(f"Failed to apply payment failure {external_txn_id} for account {account_id}: {e}", exc_info=True)
        db.rollback()
        raise

    db.refresh(current)
    payment_events_counter.labels(event_type="payment_failed", result="applied").inc()
    logger.warning(f"Suspended subscription for account {account_id}: {reason}")
    return {
        "status": "suspended",
        "external_txn_id": external_txn_id,
        "subscription": subscription_to_dict(current, tier)
    }


# ============================================================================
# USER-TRIGGERED TRANSITIONS
# ============================================================================

def request_cancellation(account_id: int, reason: Optional[str], db: Session,
                         now: Optional[datetime] = None) -> Dict[str, Any]:
    """Schedule cancellation at the end of the current period (or term, for yearly plans)"""
    now = as_utc(now) or utcnow()
    try:
        subscription = lock_current_subscription(account_id, db)
        tier = TierCatalog.get(db, subscription.tier_id) if subscription else None
        changes = transition_rules.plan_cancellation(subscription, tier, reason, now)
        _apply_changes(subscription, changes)
        db.flush()
        record_transition(subscription, tier, tier, transition_rules.CANCELLATION_REQUESTED, db,
                          payload={"reason": reason})
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(subscription)
    ends_at = subscription.subscription_end if subscription.billing_cycle == "yearly" else subscription.period_end
    logger.info(f"Cancellation requested for account {account_id}, access continues until {ends_at}")
    return {
        "message": "Subscription will be cancelled at the end of the current period",
        "ends_at": as_utc(ends_at).isoformat() if ends_at else None,
        "subscription": subscription_to_dict(subscription, tier)
    }


def reactivate(account_id: int, db: Session) -> Dict[str, Any]:
    """Undo a pending cancellation"""
    try:
        subscription = lock_current_subscription(account_id, db)
        changes = transition_rules.plan_reactivation(subscription)
        tier = TierCatalog.get(db, subscription.tier_id)
        _apply_changes(subscription, changes)
        db.flush()
        record_transition(subscription, tier, tier, transition_rules.REACTIVATED, db)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(subscription)
    logger.info(f"Subscription reactivated for account {account_id}")
    return {"message": "Subscription reactivated", "subscription": subscription_to_dict(subscription, tier)}


def select_scope(account_id: int, scope_ids: List[str], db: Session) -> Dict[str, Any]:
    """One-time scope (subject/grade) selection for plans that support it"""
    try:
        subscription = lock_current_subscription(account_id, db)
        tier = TierCatalog.get(db, subscription.tier_id) if subscription else None
        if subscription is None:
            raise NotFoundError("No active subscription found", account_id=account_id)
        normalized = transition_rules.validate_scope_selection(subscription, tier, scope_ids)
        subscription.selected_scope_ids = normalized
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(subscription)
    audit_logger.info(f"Scope selected for account {account_id}: {normalized}")
    return {"selected_scope_ids": subscription.selected_scope_ids, "subscription": subscription_to_dict(subscription, tier)}


# ============================================================================
# EXPIRY
# ============================================================================

def downgrade_to_default(subscription: Subscription, reason: str, db: Session,
                         now: Optional[datetime] = None) -> Subscription:
    """Replace a row with a clean default-tier row inside the caller's transaction.

    The old row is archived as 'expired' and the new row inserted in the same
    transaction, so the account is never left without a subscription.
    """
    now = as_utc(now) or utcnow()
    default_tier = TierCatalog.get_default(db)
    old_tier = TierCatalog.get(db, subscription.tier_id)

    subscription.status = "expired"
    db.flush()  # Free the current-row slot before inserting the replacement

    replacement = Subscription(
        account_id=subscription.account_id,
        **transition_rules.plan_default_subscription(default_tier, now)
    )
    db.add(replacement)
    db.flush()
    record_transition(replacement, old_tier, default_tier, reason, db,
                      payload={"previous_subscription_id": subscription.id})
    return replacement


# ============================================================================
# READ MODELS
# ============================================================================

def subscription_to_dict(subscription: Subscription, tier: Optional[TierInfo]) -> Dict[str, Any]:
    """Serialize a subscription with derived allowance figures (-1 = unlimited)"""
    used = to_decimal(subscription.resource_cost_used_current_period or 0)
    limit = transition_rules.effective_limit(subscription)
    remaining = None if limit is None else max(Decimal("0"), limit - used)
    count_limit = subscription.resource_count_limit

    def _iso(value):
        value = as_utc(value)
        return value.isoformat() if value else None

    return {
        "id": subscription.id,
        "account_id": subscription.account_id,
        "tier": tier.name if tier else None,
        "tier_display_name": tier.display_name if tier else None,
        "status": subscription.status,
        "billing_cycle": subscription.billing_cycle,
        "is_recurring": subscription.is_recurring,
        "cancel_at_period_end": subscription.cancel_at_period_end,
        "cancellation_reason": subscription.cancellation_reason,
        "payment_method_class": subscription.payment_method_class,
        "period_start": _iso(subscription.period_start),
        "period_end": _iso(subscription.period_end),
        "subscription_end": _iso(subscription.subscription_end),
        "last_payment_at": _iso(subscription.last_payment_at),
        "selected_scope_ids": subscription.selected_scope_ids,
        "cost_used": str(used),
        "cost_limit": str(limit) if limit is not None else None,
        "cost_remaining": str(remaining) if remaining is not None else None,
        "tokens_used": dollars_to_tokens(used),
        "tokens_limit": dollars_to_tokens(limit) if limit is not None else -1,
        "tokens_remaining": dollars_to_tokens(remaining) if remaining is not None else -1,
        "resources_used": subscription.resource_count_used_current_period,
        "resources_limit": count_limit if count_limit is not None else -1,
        "resource_limit_override": str(subscription.resource_limit_override)
        if subscription.resource_limit_override is not None else None,
    }


def get_subscription_info(account_id: int, db: Session) -> Dict[str, Any]:
    """Current subscription for an account, auto-provisioning the default tier if missing"""
    subscription = ensure_subscription(account_id, db)
    tier = TierCatalog.get(db, subscription.tier_id)
    return subscription_to_dict(subscription, tier)


def get_transition_history(account_id: int, db: Session, limit: int = 50) -> List[Dict[str, Any]]:
    get_account(account_id, db)
    transitions = db.query(SubscriptionTransition).filter(
        SubscriptionTransition.account_id == account_id
    ).order_by(SubscriptionTransition.created_at.desc(), SubscriptionTransition.id.desc()).limit(limit).all()

    return [
        {
            "id": t.id,
            "subscription_id": t.subscription_id,
            "old_tier": t.old_tier,
            "new_tier": t.new_tier,
            "reason": t.reason,
            "details": t.payload or {},
            "created_at": as_utc(t.created_at).isoformat(),
            "dispatched": t.dispatched_at is not None,
        }
        for t in transitions
    ]
