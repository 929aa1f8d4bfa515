"""Background scheduler tasks for period rollover, expiry and transition dispatch"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from billing.core.config import settings
from billing.db.redis import ROLLOVER_LOCK_KEY, acquire_lock, release_lock
from billing.db.session import SessionLocal
from billing.services.event_service import dispatch_pending_transitions
from billing.services.rollover_service import run_expiry_tick, run_rollover_tick

logger = logging.getLogger(__name__)


def run_scheduled_ticks(now: Optional[datetime] = None) -> Dict[str, Any]:
    """Run the rollover tick, then the expiry tick, then dispatch the transitions they produced.

    Guarded by a Redis lock so only one instance runs a tick at a time; row
    locks inside each tick keep concurrent manual triggers safe as well.
    """
    token = acquire_lock(ROLLOVER_LOCK_KEY, timeout=settings.ROLLOVER_LOCK_TIMEOUT)
    if token is None:
        logger.info("Rollover lock held by another instance, skipping this tick")
        return {"skipped": True}

    try:
        db = SessionLocal()
        try:
            rollover = run_rollover_tick(db, now)
            expiry = run_expiry_tick(db, now)
            dispatched = dispatch_pending_transitions(db, now=now)
        finally:
            db.close()
    finally:
        release_lock(ROLLOVER_LOCK_KEY, token)

    return {"skipped": False, "rollover": rollover, "expiry": expiry, "dispatched": dispatched}


async def rollover_scheduler_task():
    """Background task that resets lapsed periods and downgrades expired subscriptions"""
    logger.info("Starting rollover scheduler task...")

    while True:
        try:
            await asyncio.sleep(settings.ROLLOVER_INTERVAL_SECONDS)
            result = run_scheduled_ticks()
            if not result.get("skipped"):
                logger.info(f"Scheduled rollover finished: {result}")
        except asyncio.CancelledError:
            logger.info("Rollover scheduler task cancelled")
            raise
        except Exception as e:
            logger.error(f"Error in rollover scheduler: {e}", exc_info=True)


async def transition_dispatch_task():
    """Background task that drains the transition outbox between rollover runs"""
    logger.info("Starting transition dispatch task...")

    while True:
        try:
            await asyncio.sleep(settings.TRANSITION_DISPATCH_INTERVAL_SECONDS)

            db = SessionLocal()
            try:
                dispatch_pending_transitions(db)
            except Exception as e:
                logger.error(f"Error dispatching transitions: {e}", exc_info=True)
                db.rollback()
            finally:
                db.close()

        except asyncio.CancelledError:
            logger.info("Transition dispatch task cancelled")
            raise
        except Exception as e:
            logger.error(f"Fatal error in transition dispatch task: {e}", exc_info=True)
