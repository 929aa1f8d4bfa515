"""Usage metering: cost calculation, idempotent recording and usage analytics"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing.core.exceptions import ConflictError, ValidationError
from billing.core.metrics import usage_cost_histogram, usage_events_counter
from billing.models.provider_rate import ProviderRate
from billing.models.subscription import Subscription
from billing.models.usage_event import UsageEvent
from billing.schemas.tiers import ProviderRateRequest
from billing.schemas.usage import AccessAction, AccessDecision, ProviderUsageDetail, ResourceRef
from billing.services.access_service import evaluate_access
from billing.services.subscription_service import (
    ensure_subscription, get_account, lock_current_subscription, subscription_to_dict
)
from billing.services.tier_catalog import TierCatalog
from billing.utils.conversion import compute_cost, dollars_to_tokens, to_decimal
from billing.utils.dates import as_utc, utcnow

logger = logging.getLogger(__name__)


# ============================================================================
# PRICING
# ============================================================================

def get_provider_rate(provider: str, model: str, db: Session) -> Optional[ProviderRate]:
    return db.query(ProviderRate).filter(
        ProviderRate.provider == provider,
        ProviderRate.model == model,
        ProviderRate.is_active.is_(True)
    ).first()


def upsert_provider_rate(request: ProviderRateRequest, db: Session) -> Dict[str, Any]:
    """Register or update the per-million prices for a provider model"""
    rate = db.query(ProviderRate).filter(
        ProviderRate.provider == request.provider,
        ProviderRate.model == request.model
    ).first()
    if rate is None:
        rate = ProviderRate(provider=request.provider, model=request.model)
        db.add(rate)
    rate.input_price_per_million = request.input_price_per_million
    rate.output_price_per_million = request.output_price_per_million
    rate.is_active = request.is_active
    db.commit()
    db.refresh(rate)
    logger.info(
        f"Provider rate {request.provider}/{request.model}: "
        f"in={request.input_price_per_million} out={request.output_price_per_million} per million"
    )
    return {
        "provider": rate.provider,
        "model": rate.model,
        "input_price_per_million": str(rate.input_price_per_million),
        "output_price_per_million": str(rate.output_price_per_million),
        "is_active": rate.is_active,
    }


def resolve_unit_prices(usage: ProviderUsageDetail, db: Session) -> Tuple[Decimal, Decimal]:
    """Explicit prices from the call win; otherwise the registered rate for provider/model"""
    if usage.input_price_per_million is not None and usage.output_price_per_million is not None:
        return to_decimal(usage.input_price_per_million), to_decimal(usage.output_price_per_million)

    if not usage.provider or not usage.model:
        raise ValidationError("Unit prices are required when provider and model are not given")

    rate = get_provider_rate(usage.provider, usage.model, db)
    if rate is None:
        raise ValidationError(f"No price registered for {usage.provider}/{usage.model}")

    input_price = usage.input_price_per_million
    output_price = usage.output_price_per_million
    return (
        to_decimal(input_price if input_price is not None else rate.input_price_per_million),
        to_decimal(output_price if output_price is not None else rate.output_price_per_million),
    )


# ============================================================================
# RECORDING
# ============================================================================

def _find_usage_event(request_id: str, db: Session) -> Optional[UsageEvent]:
    return db.query(UsageEvent).filter(UsageEvent.request_id == request_id).first()


def _duplicate_result(event: UsageEvent, account_id: int) -> Dict[str, Any]:
    if event.account_id != account_id:
        raise ConflictError(f"Request id '{event.request_id}' was already used by another account", account_id=account_id)
    usage_events_counter.labels(category=event.category, result="duplicate").inc()
    cost = to_decimal(event.cost)
    return {
        "request_id": event.request_id,
        "usage_event_id": event.id,
        "cost": cost,
        "tokens": dollars_to_tokens(cost),
        "duplicate": True,
    }


def record_usage(
    account_id: int,
    request_id: str,
    usage: ProviderUsageDetail,
    db: Session,
    category: str = "chat",
    now: Optional[datetime] = None
) -> Dict[str, Any]:
    """
    Record metered usage and add its cost to the current period, exactly once per request_id.

    The usage event insert and the counter increment share one transaction
    under the subscription row lock; a retry with the same request_id returns
    the cost recorded the first time without writing.

    Args:
        account_id: Account that consumed the resource
        request_id: Caller's idempotency key
        usage: Provider/model and input/output unit counts, optionally with prices
        db: Database session
        category: Usage category tag ('chat', 'ingestion', ...)
        now: Event time, defaults to the current time

    Returns:
        Dict with cost (reference currency), tokens (display units) and duplicate flag
    """
    now = as_utc(now) or utcnow()

    existing = _find_usage_event(request_id, db)
    if existing:
        logger.info(f"Usage request {request_id} already recorded, returning original cost")
        return _duplicate_result(existing, account_id)

    input_price, output_price = resolve_unit_prices(usage, db)
    cost = compute_cost(usage.input_units, usage.output_units, input_price, output_price)

    ensure_subscription(account_id, db, now)

    try:
        subscription = lock_current_subscription(account_id, db)
        if subscription is None:
            raise ConflictError(f"Subscription for account {account_id} changed concurrently, retry", account_id=account_id)

        event = UsageEvent(
            account_id=account_id,
            subscription_id=subscription.id,
            request_id=request_id,
            category=category,
            provider=usage.provider,
            model=usage.model,
            input_units=usage.input_units,
            output_units=usage.output_units,
            input_unit_price=input_price,
            output_unit_price=output_price,
            cost=cost,
            created_at=now
        )
        db.add(event)
        # Increment in SQL so the row value, not a stale in-memory copy, is the base
        subscription.resource_cost_used_current_period = Subscription.resource_cost_used_current_period + cost
        db.flush()
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = _find_usage_event(request_id, db)
        if existing:
            return _duplicate_result(existing, account_id)
        raise ConflictError(f"Concurrent usage write for account {account_id}, retry", account_id=account_id)
    except Exception as e:
        logger.error(f"Error recording usage {request_id} for account {account_id}: {e}", exc_info=True)
        db.rollback()
        raise

    db.refresh(subscription)
    usage_events_counter.labels(category=category, result="recorded").inc()
    usage_cost_histogram.labels(category=category).observe(float(cost))
    logger.info(
        f"Recorded usage {request_id} for account {account_id}: {usage.input_units} in / "
        f"{usage.output_units} out, cost ${cost}"
    )
    return {
        "request_id": request_id,
        "usage_event_id": event.id,
        "cost": cost,
        "tokens": dollars_to_tokens(cost),
        "duplicate": False,
        "cost_used_current_period": to_decimal(subscription.resource_cost_used_current_period),
    }


def record_resource_access(account_id: int, resource: ResourceRef, db: Session,
                           now: Optional[datetime] = None) -> AccessDecision:
    """Open a distinct resource: check the count allowance and remember it for this period.

    Resources already opened this period stay accessible and are not counted twice.
    """
    if not resource.resource_id:
        raise ValidationError("resource_id is required to record resource access", account_id=account_id)

    ensure_subscription(account_id, db, now)

    try:
        subscription = lock_current_subscription(account_id, db)
        if subscription is None:
            raise ConflictError(f"Subscription for account {account_id} changed concurrently, retry", account_id=account_id)
        tier = TierCatalog.get(db, subscription.tier_id)

        decision = evaluate_access(subscription, tier, AccessAction.RESOURCE, resource)
        if not decision.allowed:
            db.rollback()
            usage_events_counter.labels(category="resource", result="denied").inc()
            return decision

        accessed = list(subscription.accessed_resource_ids or [])
        if resource.resource_id not in accessed:
            accessed.append(resource.resource_id)
            subscription.accessed_resource_ids = accessed
            subscription.resource_count_used_current_period = len(accessed)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(subscription)
    usage_events_counter.labels(category="resource", result="recorded").inc()
    return evaluate_access(subscription, tier, AccessAction.RESOURCE, resource)


# ============================================================================
# ANALYTICS
# ============================================================================

def get_usage_summary(account_id: int, db: Session) -> Dict[str, Any]:
    """Current-period usage with a per-category breakdown from the event log"""
    subscription = ensure_subscription(account_id, db)
    tier = TierCatalog.get(db, subscription.tier_id)

    rows = db.query(
        UsageEvent.category,
        func.count(UsageEvent.id),
        func.sum(UsageEvent.cost),
        func.sum(UsageEvent.input_units),
        func.sum(UsageEvent.output_units)
    ).filter(
        UsageEvent.account_id == account_id,
        UsageEvent.subscription_id == subscription.id,
        UsageEvent.created_at >= subscription.period_start
    ).group_by(UsageEvent.category).all()

    by_category = {}
    for category, count, cost, input_units, output_units in rows:
        cost = to_decimal(cost or 0)
        by_category[category] = {
            "events": count,
            "cost": str(cost),
            "tokens": dollars_to_tokens(cost),
            "input_units": int(input_units or 0),
            "output_units": int(output_units or 0),
        }

    return {
        "subscription": subscription_to_dict(subscription, tier),
        "by_category": by_category,
    }


def get_usage_history(account_id: int, db: Session, limit: int = 50,
                      category: Optional[str] = None) -> List[Dict[str, Any]]:
    """Most recent usage events for an account"""
    get_account(account_id, db)
    query = db.query(UsageEvent).filter(UsageEvent.account_id == account_id)
    if category:
        query = query.filter(UsageEvent.category == category)
    events = query.order_by(UsageEvent.created_at.desc(), UsageEvent.id.desc()).limit(limit).all()

    return [
        {
            "id": e.id,
            "request_id": e.request_id,
            "category": e.category,
            "provider": e.provider,
            "model": e.model,
            "input_units": e.input_units,
            "output_units": e.output_units,
            "cost": str(to_decimal(e.cost)),
            "tokens": dollars_to_tokens(e.cost),
            "created_at": as_utc(e.created_at).isoformat(),
        }
        for e in events
    ]


def recompute_period_usage(account_id: int, db: Session) -> Decimal:
    """Sum the event log for the current period (audit helper; does not write)"""
    subscription = ensure_subscription(account_id, db)
    total = db.query(func.coalesce(func.sum(UsageEvent.cost), 0)).filter(
        UsageEvent.subscription_id == subscription.id,
        UsageEvent.created_at >= subscription.period_start
    ).scalar()
    return to_decimal(total)
