"""Period rollover and expiry jobs.

Both jobs walk candidate rows one at a time, claiming each with
SELECT ... FOR UPDATE SKIP LOCKED and committing per account, so several
workers can run side by side and a crash mid-batch leaves only whole
per-account transitions behind.
"""
import logging
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from billing.core.config import settings
from billing.core.exceptions import ConfigurationError
from billing.core.logging import ROLLOVER_LOGGER
from billing.core.metrics import rollover_accounts_processed_counter, rollover_runs_counter
from billing.core.otel import billing_span
from billing.models.subscription import Subscription
from billing.services import transition_rules
from billing.services.subscription_service import downgrade_to_default
from billing.services.tier_catalog import TierCatalog
from billing.utils.dates import as_utc, utcnow

logger = logging.getLogger(ROLLOVER_LOGGER)


def _claim_next(db: Session, criteria, after_id: int) -> Optional[Subscription]:
    return db.query(Subscription).filter(
        Subscription.status == "active",
        Subscription.id > after_id,
        criteria
    ).order_by(Subscription.id).with_for_update(skip_locked=True).first()


def run_rollover_tick(db: Session, now: Optional[datetime] = None, batch_size: Optional[int] = None) -> Dict[str, int]:
    """Reset counters and advance periods for every row whose period has ended.

    Idempotent: a reset moves period_end past `now`, so running the tick
    again immediately finds nothing to do.

    Returns:
        Dict with counts of reset, skipped and failed rows
    """
    now = as_utc(now) or utcnow()
    batch_size = batch_size or settings.ROLLOVER_BATCH_SIZE
    stats = {"reset": 0, "skipped": 0, "errors": 0}
    criteria = and_(Subscription.period_end.isnot(None), Subscription.period_end <= now)

    with billing_span("rollover_tick", batch_size=batch_size, now=now.isoformat()) as span:
        last_id = 0
        for _ in range(batch_size):
            subscription = _claim_next(db, criteria, last_id)
            if subscription is None:
                break
            last_id = subscription.id

            try:
                tier = TierCatalog.get(db, subscription.tier_id)
                if not transition_rules.rollover_decision(subscription, tier, now):
                    db.rollback()  # release the row lock
                    stats["skipped"] += 1
                    continue

                changes = transition_rules.plan_period_reset(subscription, tier, now)
                for field, value in changes.items():
                    setattr(subscription, field, value)
                db.commit()
                stats["reset"] += 1
                logger.info(
                    f"Reset period for account {subscription.account_id} "
                    f"({subscription.billing_cycle}), next boundary {changes['period_end']}"
                )
            except Exception as e:
                db.rollback()
                stats["errors"] += 1
                logger.error(f"Rollover failed for subscription {last_id}: {e}", exc_info=True)

        span.set_attribute("billing.reset", stats["reset"])

    rollover_accounts_processed_counter.labels(job="rollover").inc(stats["reset"])
    rollover_runs_counter.labels(job="rollover", status="error" if stats["errors"] else "success").inc()
    logger.info(f"Rollover tick complete: {stats}")
    return stats


def run_expiry_tick(db: Session, now: Optional[datetime] = None, batch_size: Optional[int] = None) -> Dict[str, int]:
    """Downgrade rows whose cancellation or prepaid term has run out.

    Daily and monthly rows are judged on period_end unless a manual renewal
    prepaid them past it; yearly rows are judged on subscription_end.
    A missing default tier aborts the tick (ConfigurationError) rather than
    leaving accounts half-migrated.
    """
    now = as_utc(now) or utcnow()
    batch_size = batch_size or settings.ROLLOVER_BATCH_SIZE
    stats = {"downgraded": 0, "skipped": 0, "errors": 0}
    criteria = or_(
        and_(Subscription.period_end.isnot(None), Subscription.period_end <= now),
        and_(Subscription.subscription_end.isnot(None), Subscription.subscription_end <= now)
    )

    with billing_span("expiry_tick", batch_size=batch_size, now=now.isoformat()) as span:
        last_id = 0
        for _ in range(batch_size):
            subscription = _claim_next(db, criteria, last_id)
            if subscription is None:
                break
            last_id = subscription.id

            try:
                tier = TierCatalog.get(db, subscription.tier_id)
                reason = transition_rules.expiry_decision(subscription, tier, now)
                if reason is None:
                    db.rollback()
                    stats["skipped"] += 1
                    continue

                account_id = subscription.account_id
                downgrade_to_default(subscription, reason, db, now)
                db.commit()
                stats["downgraded"] += 1
                logger.info(f"Downgraded account {account_id} from {tier.name} ({reason})")
            except ConfigurationError:
                db.rollback()
                rollover_runs_counter.labels(job="expiry", status="error").inc()
                logger.critical("Expiry tick aborted: default tier is not configured", exc_info=True)
                raise
            except Exception as e:
                db.rollback()
                stats["errors"] += 1
                logger.error(f"Expiry failed for subscription {last_id}: {e}", exc_info=True)

        span.set_attribute("billing.downgraded", stats["downgraded"])

    rollover_accounts_processed_counter.labels(job="expiry").inc(stats["downgraded"])
    rollover_runs_counter.labels(job="expiry", status="error" if stats["errors"] else "success").inc()
    logger.info(f"Expiry tick complete: {stats}")
    return stats
