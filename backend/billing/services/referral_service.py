"""Referral rewards and points redemption"""
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from billing.core.exceptions import NotFoundError, ValidationError
from billing.models.account import Account
from billing.models.referral import PointsTransaction, Referral
from billing.models.subscription_transition import SubscriptionTransition
from billing.services import transition_rules
from billing.services.subscription_service import activate_subscription, get_account, subscription_to_dict
from billing.services.tier_catalog import TierCatalog
from billing.utils.dates import as_utc, utcnow

logger = logging.getLogger(__name__)

POINTS_PAYMENT_METHOD = "points"


def attach_referral(referrer_account_id: int, referred_account_id: int, db: Session) -> Referral:
    """Link a new account to the account that referred it (no commit)"""
    if referrer_account_id == referred_account_id:
        raise ValidationError("An account cannot refer itself", account_id=referred_account_id)
    get_account(referrer_account_id, db)

    referral = Referral(referrer_account_id=referrer_account_id, referred_account_id=referred_account_id)
    db.add(referral)
    db.flush()
    logger.info(f"Account {referred_account_id} referred by {referrer_account_id}")
    return referral


def _credit_points(account: Account, amount: int, transaction_type: str, db: Session,
                   metadata: Optional[Dict[str, Any]] = None) -> PointsTransaction:
    account.points_balance = (account.points_balance or 0) + amount
    if amount > 0:
        account.points_total_earned = (account.points_total_earned or 0) + amount
    transaction = PointsTransaction(
        account_id=account.id,
        transaction_type=transaction_type,
        amount=amount,
        balance_after=account.points_balance,
        transaction_metadata=metadata or {}
    )
    db.add(transaction)
    return transaction


def handle_transition_for_referrals(transition: SubscriptionTransition, db: Session,
                                    now: Optional[datetime] = None) -> bool:
    """Award the referrer for a paid purchase or renewal by a referred account (no commit).

    Returns True if points were credited.
    """
    if transition.reason not in transition_rules.PAID_ACTIVATION_REASONS or not transition.new_tier:
        return False
    if (transition.payload or {}).get("payment_method_class") == POINTS_PAYMENT_METHOD:
        return False

    tier = TierCatalog.get(db, transition.new_tier)
    if tier.referral_reward_amount <= 0:
        return False

    referral = db.query(Referral).filter(
        Referral.referred_account_id == transition.account_id
    ).with_for_update().first()
    if referral is None:
        return False

    referrer = db.query(Account).filter(Account.id == referral.referrer_account_id).with_for_update().first()
    if referrer is None:
        logger.warning(f"Referrer {referral.referrer_account_id} for account {transition.account_id} no longer exists")
        return False

    now = as_utc(now) or utcnow()
    _credit_points(referrer, tier.referral_reward_amount, "referral_reward", db, metadata={
        "referred_account_id": transition.account_id,
        "tier": tier.name,
        "transition_id": transition.id,
    })
    referral.times_awarded = (referral.times_awarded or 0) + 1
    referral.last_awarded_at = now
    referral.status = "completed"

    logger.info(
        f"Awarded {tier.referral_reward_amount} points to account {referrer.id} "
        f"for referral of {transition.account_id} ({transition.reason} to {tier.name})"
    )
    return True


def redeem_points_for_subscription(account_id: int, tier_name: str, db: Session,
                                   now: Optional[datetime] = None) -> Dict[str, Any]:
    """Spend referral points on a one-month, non-recurring subscription"""
    now = as_utc(now) or utcnow()
    try:
        tier = TierCatalog.get(db, tier_name)
    except NotFoundError:
        raise ValidationError(f"Unknown tier '{tier_name}'", account_id=account_id)
    if not tier.is_active or tier.redeemable_point_cost <= 0:
        raise ValidationError(f"The {tier.display_name} plan cannot be redeemed with points", account_id=account_id)

    try:
        account = db.query(Account).filter(Account.id == account_id).with_for_update().first()
        if account is None:
            raise NotFoundError(f"Account {account_id} not found", account_id=account_id)
        if (account.points_balance or 0) < tier.redeemable_point_cost:
            raise ValidationError(
                f"Insufficient points: {tier.redeemable_point_cost} required, {account.points_balance} available",
                account_id=account_id
            )

        redemption_id = f"points-{uuid.uuid4().hex}"
        _credit_points(account, -tier.redeemable_point_cost, "redemption", db, metadata={
            "tier": tier.name,
            "redemption_id": redemption_id,
        })
        subscription = activate_subscription(
            account_id, tier, "monthly", POINTS_PAYMENT_METHOD, db, now,
            payload={"redemption_id": redemption_id}
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(subscription)
    db.refresh(account)
    logger.info(f"Account {account_id} redeemed {tier.redeemable_point_cost} points for {tier.name}")
    return {
        "points_spent": tier.redeemable_point_cost,
        "points_balance": account.points_balance,
        "subscription": subscription_to_dict(subscription, tier),
    }


def get_referral_stats(account_id: int, db: Session) -> Dict[str, Any]:
    account = get_account(account_id, db)
    referrals = db.query(Referral).filter(Referral.referrer_account_id == account_id).all()
    return {
        "points_balance": account.points_balance,
        "points_total_earned": account.points_total_earned,
        "referrals": len(referrals),
        "completed_referrals": sum(1 for r in referrals if r.status == "completed"),
        "times_awarded": sum(r.times_awarded or 0 for r in referrals),
    }
