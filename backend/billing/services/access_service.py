"""Access evaluation: allow/deny decisions from subscription state (read-only)"""
import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from billing.core.metrics import access_decisions_counter
from billing.models.subscription import CURRENT_STATUSES, Subscription
from billing.schemas.tiers import TierInfo
from billing.schemas.usage import AccessAction, AccessDecision, ResourceRef
from billing.services.tier_catalog import TierCatalog
from billing.services.transition_rules import effective_limit
from billing.utils.conversion import dollars_to_tokens, to_decimal

logger = logging.getLogger(__name__)

UNLIMITED = -1

REASON_GRANTED = "Access granted"
REASON_NO_SUBSCRIPTION = "No active subscription found"
REASON_SUSPENDED = "Subscription suspended"
REASON_OUT_OF_SCOPE = "Resource is outside the selected scope"
REASON_COST_EXCEEDED = "Usage limit exceeded for current period"
REASON_COUNT_EXCEEDED = "Resource limit exceeded for current period"


def evaluate_access(
    subscription: Optional[Subscription],
    tier: Optional[TierInfo],
    action: AccessAction,
    resource: Optional[ResourceRef] = None
) -> AccessDecision:
    """Decide whether an action is allowed.

    Uses only the subscription row, its tier snapshot and the resource's own
    attributes; no further queries, so the answer matches one consistent
    snapshot of the counters.
    """
    resource = resource or ResourceRef()

    if subscription is None or subscription.status not in CURRENT_STATUSES:
        return AccessDecision(allowed=False, reason=REASON_NO_SUBSCRIPTION)

    tier_name = tier.name if tier else None
    used = to_decimal(subscription.resource_cost_used_current_period or 0)
    cost_limit = effective_limit(subscription)
    count_limit = subscription.resource_count_limit
    accessed = subscription.accessed_resource_ids or []
    count_used = subscription.resource_count_used_current_period or 0

    cost_remaining = None if cost_limit is None else max(Decimal("0"), cost_limit - used)
    count_remaining = UNLIMITED if count_limit is None else max(0, count_limit - count_used)

    def decision(allowed: bool, reason: str) -> AccessDecision:
        return AccessDecision(
            allowed=allowed,
            reason=reason,
            tier_name=tier_name,
            cost_remaining=Decimal(UNLIMITED) if cost_remaining is None else cost_remaining,
            tokens_remaining=UNLIMITED if cost_remaining is None else dollars_to_tokens(cost_remaining),
            count_remaining=count_remaining,
        )

    if subscription.status == "suspended":
        return decision(False, REASON_SUSPENDED)

    selection = subscription.selected_scope_ids
    targets_resource = action == AccessAction.RESOURCE or resource.resource_id is not None
    if tier is not None and tier.can_select_scope and selection and targets_resource:
        # A resource with no category cannot be shown to be inside the selection
        if resource.category_id is None or resource.category_id not in selection:
            return decision(False, REASON_OUT_OF_SCOPE)

    if action == AccessAction.USAGE:
        if cost_limit is not None and used >= cost_limit:
            return decision(False, REASON_COST_EXCEEDED)

    elif action == AccessAction.RESOURCE:
        already_opened = resource.resource_id is not None and resource.resource_id in accessed
        if count_limit is not None and not already_opened and count_used >= count_limit:
            return decision(False, REASON_COUNT_EXCEEDED)

    return decision(True, REASON_GRANTED)


def check_access(account_id: int, action: AccessAction, resource: Optional[ResourceRef],
                 db: Session) -> AccessDecision:
    """Resolve the account's current subscription and evaluate access. Never writes."""
    subscription = db.query(Subscription).filter(
        Subscription.account_id == account_id,
        Subscription.status.in_(CURRENT_STATUSES)
    ).first()
    tier = TierCatalog.get(db, subscription.tier_id) if subscription else None

    result = evaluate_access(subscription, tier, action, resource)
    access_decisions_counter.labels(action=action.value, allowed=str(result.allowed).lower()).inc()
    if not result.allowed:
        logger.info(f"Access denied for account {account_id} ({action.value}): {result.reason}")
    return result
