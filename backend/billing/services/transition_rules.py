"""Transition rules for subscriptions.

Pure decision functions: they read a Subscription row and TierInfo snapshots
and return the field changes a transition should apply. They never touch the
session; subscription_service and rollover_service apply the result inside
one transaction.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from billing.core.config import settings
from billing.core.exceptions import NotFoundError, ValidationError
from billing.schemas.tiers import TierInfo
from billing.utils.conversion import to_decimal
from billing.utils.dates import advance_period, as_utc, days_from, next_period_end, term_end

RESETTABLE_CYCLES = ("daily", "monthly")

# Transition reasons
CREATED = "created"
PROVISIONED = "provisioned"
RENEWAL = "renewal"
UPGRADE = "upgrade"
DOWNGRADE = "downgrade"
CYCLE_CHANGE = "cycle_change"
CANCELLATION_REQUESTED = "cancellation_requested"
REACTIVATED = "reactivated"
SUSPENDED = "suspended"
EXPIRED_CANCELLED = "expired_cancelled"
EXPIRED_TERM_ENDED = "expired_term_ended"
EXPIRED_NOT_RENEWED = "expired_not_renewed"

PAID_ACTIVATION_REASONS = (CREATED, RENEWAL, UPGRADE, DOWNGRADE, CYCLE_CHANGE)


def is_recurring_for(billing_cycle: str, payment_method_class: Optional[str],
                     manual_methods: Iterable[str] = None) -> bool:
    """Whether a subscription auto-renews.

    Yearly plans are prepaid and keep refreshing monthly until their term
    ends, so they always count as recurring. Lifetime never renews. Other
    cycles renew unless the payment method needs a manual payment each time.
    """
    if billing_cycle == "yearly":
        return True
    if billing_cycle == "lifetime":
        return False
    if manual_methods is None:
        manual_methods = settings.MANUAL_RENEWAL_PAYMENT_METHODS
    method = (payment_method_class or "").strip().lower()
    return method not in manual_methods


def period_for_activation(billing_cycle: str, now: datetime) -> Tuple[datetime, Optional[datetime], Optional[datetime]]:
    """(period_start, period_end, subscription_end) for a period starting now"""
    return now, next_period_end(now, billing_cycle), term_end(now, billing_cycle)


def tier_limits(tier: TierInfo) -> Dict[str, Any]:
    """Allowance snapshot copied onto a subscription when a period starts.

    Catalog edits reach an existing row only at its next fresh period or rollover.
    """
    return {
        "resource_cost_limit": tier.resource_cost_limit_per_period,
        "resource_count_limit": tier.resource_count_limit_per_period,
    }


def effective_limit(subscription) -> Optional[Decimal]:
    """Cost limit in force: the carryover override if set, else the row's snapshot. None = unlimited."""
    if subscription.resource_limit_override is not None:
        return to_decimal(subscription.resource_limit_override)
    if subscription.resource_cost_limit is None:
        return None
    return to_decimal(subscription.resource_cost_limit)


def carryover_override(old_limit: Optional[Decimal], new_limit: Optional[Decimal],
                       used: Any) -> Optional[Decimal]:
    """New limit after a mid-period tier change.

    new_limit + max(0, old_limit - used) when both limits are finite.
    Returns None (use the tier limit) when nothing is left over or either
    side is unlimited.
    """
    if old_limit is None or new_limit is None:
        return None
    remaining = max(Decimal("0"), to_decimal(old_limit) - to_decimal(used or 0))
    if remaining <= 0:
        return None
    return to_decimal(new_limit) + remaining


def classify_change(old_tier: Optional[TierInfo], new_tier: TierInfo,
                    old_cycle: Optional[str], new_cycle: str) -> str:
    if old_tier is None:
        return CREATED
    if old_tier.id == new_tier.id:
        return RENEWAL if old_cycle == new_cycle else CYCLE_CHANGE
    if new_tier.display_order >= old_tier.display_order:
        return UPGRADE
    return DOWNGRADE


def _fresh_period(billing_cycle: str, now: datetime) -> Dict[str, Any]:
    period_start, period_end, subscription_end = period_for_activation(billing_cycle, now)
    return {
        "period_anchor": period_start,
        "period_start": period_start,
        "period_end": period_end,
        "subscription_end": subscription_end,
    }


def _zero_usage() -> Dict[str, Any]:
    return {
        "resource_cost_used_current_period": Decimal("0"),
        "resource_count_used_current_period": 0,
        "accessed_resource_ids": [],
        "resource_limit_override": None,
    }


def _period_running(subscription, now: datetime) -> bool:
    if subscription.billing_cycle == "lifetime":
        return True
    period_end = as_utc(subscription.period_end)
    return period_end is not None and period_end > now


def _early_renewal_term(subscription, billing_cycle: str, is_recurring: bool, now: datetime) -> Dict[str, Any]:
    """Term change for a same-plan payment made while the period is still running.

    Yearly adds a year to the prepaid term. A daily/monthly row that does not
    auto-renew is prepaid one more cycle through subscription_end, and the
    rollover keeps refreshing it until then. Auto-renewing rows are advanced
    by the rollover anyway, so their payment only confirms the current term.
    """
    if billing_cycle == "yearly":
        current_end = as_utc(subscription.subscription_end)
        return {"subscription_end": term_end(max(current_end or now, now), billing_cycle)}
    if billing_cycle not in RESETTABLE_CYCLES:
        return {}
    if is_recurring:
        return {"subscription_end": None}
    paid_through = as_utc(subscription.subscription_end) or as_utc(subscription.period_end)
    return {"subscription_end": next_period_end(max(paid_through, now), billing_cycle)}


def plan_activation(subscription, old_tier: Optional[TierInfo], new_tier: TierInfo,
                    billing_cycle: str, payment_method_class: Optional[str],
                    now: datetime) -> Tuple[Dict[str, Any], str]:
    """Changes for a successful payment.

    Args:
        subscription: The account's current row (active or suspended), or None
        old_tier: Tier of the current row
        new_tier: Tier that was paid for
        billing_cycle: Validated billing cycle value
        payment_method_class: Payment method family, decides auto-renewal
        now: Transition time (UTC)

    Returns:
        (field changes, transition reason)
    """
    changes: Dict[str, Any] = {
        "tier_id": new_tier.id,
        "status": "active",
        "billing_cycle": billing_cycle,
        "is_recurring": is_recurring_for(billing_cycle, payment_method_class),
        "payment_method_class": payment_method_class,
        "cancel_at_period_end": False,
        "cancellation_reason": None,
        "cancellation_requested_at": None,
        "suspended_reason": None,
        "last_payment_at": now,
    }

    reason = classify_change(old_tier, new_tier, subscription.billing_cycle if subscription else None, billing_cycle)

    if subscription is None:
        changes.update(_fresh_period(billing_cycle, now))
        changes.update(_zero_usage())
        changes.update(tier_limits(new_tier))
        changes["selected_scope_ids"] = None
        return changes, reason

    running = _period_running(subscription, now)

    if reason == RENEWAL:
        if running:
            # Early renewal: period, counters and allowance snapshot stay as they are
            changes.update(_early_renewal_term(subscription, billing_cycle, changes["is_recurring"], now))
        else:
            changes.update(_fresh_period(billing_cycle, now))
            changes.update(_zero_usage())
            changes.update(tier_limits(new_tier))
        return changes, reason

    # Tier or cycle change: new period from now
    changes.update(_fresh_period(billing_cycle, now))
    changes.update(tier_limits(new_tier))
    if running:
        # Usage carries forward; unused allowance from the old plan is added on top
        old_limit = effective_limit(subscription)
        changes["resource_limit_override"] = carryover_override(
            old_limit, new_tier.resource_cost_limit_per_period, subscription.resource_cost_used_current_period
        )
    else:
        changes.update(_zero_usage())

    if old_tier is not None and old_tier.id != new_tier.id:
        # A new purchase may choose its scope again
        changes["selected_scope_ids"] = None

    return changes, reason


def plan_cancellation(subscription, tier: Optional[TierInfo], reason: Optional[str],
                      now: datetime) -> Dict[str, Any]:
    """Changes for a user's cancellation request. Raises before any write."""
    if subscription is None or subscription.status != "active":
        raise NotFoundError("No active subscription found")
    if subscription.cancel_at_period_end:
        raise ValidationError("Subscription is already scheduled for cancellation")
    if tier is not None and tier.is_default:
        raise ValidationError("The free plan cannot be cancelled")
    if subscription.billing_cycle == "lifetime":
        raise ValidationError("Lifetime subscriptions cannot be cancelled")

    return {
        "cancel_at_period_end": True,
        "cancellation_reason": reason,
        "cancellation_requested_at": now,
        # Yearly is prepaid: keep monthly refreshes until subscription_end
        "is_recurring": subscription.billing_cycle == "yearly",
    }


def plan_reactivation(subscription) -> Dict[str, Any]:
    """Changes for undoing a pending cancellation"""
    if subscription is None or subscription.status != "active":
        raise NotFoundError("No active subscription found")
    if not subscription.cancel_at_period_end:
        raise ValidationError("Subscription is not scheduled for cancellation")

    return {
        "cancel_at_period_end": False,
        "cancellation_reason": None,
        "cancellation_requested_at": None,
        "is_recurring": is_recurring_for(subscription.billing_cycle, subscription.payment_method_class),
    }


def validate_scope_selection(subscription, tier: TierInfo, scope_ids: List[str]) -> List[str]:
    """Normalized scope list, or ValidationError.

    The selection is one-time: once set it stays until the account buys a
    different tier (which clears it).
    """
    if subscription is None or subscription.status != "active":
        raise NotFoundError("No active subscription found")
    if not tier.can_select_scope:
        raise ValidationError(f"The {tier.display_name} plan does not support scope selection")
    if subscription.selected_scope_ids:
        raise ValidationError(
            "Scope selection is locked after purchase. Purchase a new subscription to choose again."
        )
    if not isinstance(scope_ids, list) or not scope_ids:
        raise ValidationError("Select at least one category")

    normalized = []
    for scope_id in scope_ids:
        if not isinstance(scope_id, str) or not scope_id.strip():
            raise ValidationError("Scope ids must be non-empty strings")
        value = scope_id.strip()
        if value in normalized:
            raise ValidationError(f"Duplicate scope id '{value}'")
        normalized.append(value)

    if tier.max_selectable_categories and len(normalized) > tier.max_selectable_categories:
        raise ValidationError(
            f"The {tier.display_name} plan allows at most {tier.max_selectable_categories} categories"
        )
    return normalized


def plan_default_subscription(default_tier: TierInfo, now: datetime) -> Dict[str, Any]:
    """Field values for a clean default-tier row (new accounts and downgrades)"""
    values = {
        "tier_id": default_tier.id,
        "status": "active",
        "billing_cycle": "monthly",
        "is_recurring": False,
        "payment_method_class": None,
        "period_start": now,
        "period_end": days_from(now, settings.EXPIRED_DOWNGRADE_DAYS),
        "subscription_end": None,
        "selected_scope_ids": None,
        "cancel_at_period_end": False,
        "cancellation_reason": None,
        "cancellation_requested_at": None,
        "suspended_reason": None,
    }
    # Monthly boundaries count from the end of the grace period
    values["period_anchor"] = values["period_end"]
    values.update(_zero_usage())
    values.update(tier_limits(default_tier))
    return values


def _prepaid_until(subscription, now: datetime) -> bool:
    """Whether a daily/monthly row was paid ahead past now (manual early renewal)"""
    subscription_end = as_utc(subscription.subscription_end)
    return subscription_end is not None and subscription_end > now


def rollover_decision(subscription, tier: Optional[TierInfo], now: datetime) -> bool:
    """Whether the rollover job should reset this row's period"""
    if subscription.status != "active":
        return False
    period_end = as_utc(subscription.period_end)
    if period_end is None or period_end > now:
        return False

    if subscription.billing_cycle in RESETTABLE_CYCLES:
        if _prepaid_until(subscription, now):
            return True
        if subscription.cancel_at_period_end:
            return False
        # The default tier renews for free
        return bool(subscription.is_recurring or (tier is not None and tier.is_default))

    if subscription.billing_cycle == "yearly":
        # Regardless of cancel_at_period_end: the year is prepaid
        subscription_end = as_utc(subscription.subscription_end)
        return subscription_end is None or subscription_end > now

    return False


def plan_period_reset(subscription, tier: Optional[TierInfo], now: datetime) -> Dict[str, Any]:
    """Changes for a period reset: counters cleared, period advanced past now.

    Periods step from period_anchor so a month-end start keeps its day of
    month. The allowance snapshot is refreshed from the current catalog.
    """
    period_start, period_end = advance_period(
        subscription.period_end, subscription.billing_cycle, now, anchor=subscription.period_anchor
    )
    subscription_end = as_utc(subscription.subscription_end)
    if subscription_end is not None:
        period_end = min(period_end, subscription_end)
    changes = {"period_start": period_start, "period_end": period_end}
    changes.update(_zero_usage())
    if tier is not None:
        changes.update(tier_limits(tier))
    return changes


def expiry_decision(subscription, tier: Optional[TierInfo], now: datetime) -> Optional[str]:
    """Downgrade reason if this row should be replaced by the default tier, else None"""
    if subscription.status != "active":
        return None

    if subscription.billing_cycle == "yearly":
        subscription_end = as_utc(subscription.subscription_end)
        if subscription_end is None or subscription_end > now:
            return None
        return EXPIRED_CANCELLED if subscription.cancel_at_period_end else EXPIRED_TERM_ENDED

    if subscription.billing_cycle in RESETTABLE_CYCLES:
        period_end = as_utc(subscription.period_end)
        if period_end is None or period_end > now:
            return None
        if _prepaid_until(subscription, now):
            return None
        if subscription.cancel_at_period_end:
            return EXPIRED_CANCELLED
        if not subscription.is_recurring and not (tier is not None and tier.is_default):
            return EXPIRED_NOT_RENEWED

    return None
