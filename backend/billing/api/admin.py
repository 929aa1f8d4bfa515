"""Administrative routes: catalog management and on-demand scheduled jobs"""
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from billing.core.security import require_service_token
from billing.db.session import get_db
from billing.schemas.tiers import ProviderRateRequest, TierUpsertRequest
from billing.services.event_service import dispatch_pending_transitions, get_pending_transitions
from billing.services.rollover_service import run_expiry_tick, run_rollover_tick
from billing.services.tier_catalog import TierCatalog, upsert_tier
from billing.services.usage_service import upsert_provider_rate

router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(require_service_token)])
logger = logging.getLogger(__name__)


@router.post("/tiers")
def upsert_tier_route(tier_request: TierUpsertRequest, db: Session = Depends(get_db)):
    """Create or update a tier (takes effect for new subscriptions and at rollover)"""
    tier = upsert_tier(tier_request, db)
    return {"tier": tier.model_dump(mode="json")}


@router.post("/tiers/reload")
def reload_tiers(db: Session = Depends(get_db)):
    """Reload the cached tier catalog"""
    count = TierCatalog.reload(db)
    return {"tiers_loaded": count}


@router.post("/rates")
def upsert_rate_route(rate_request: ProviderRateRequest, db: Session = Depends(get_db)):
    """Register per-million prices for a provider model"""
    return {"rate": upsert_provider_rate(rate_request, db)}


@router.post("/rollover/run")
def run_rollover(
    now: Optional[datetime] = Query(None, description="Override the current time (testing)"),
    db: Session = Depends(get_db)
):
    """Run the period rollover tick on demand"""
    logger.info(f"Manual rollover triggered (now={now})")
    return run_rollover_tick(db, now)


@router.post("/expiry/run")
def run_expiry(
    now: Optional[datetime] = Query(None, description="Override the current time (testing)"),
    db: Session = Depends(get_db)
):
    """Run the expiry tick on demand"""
    logger.info(f"Manual expiry triggered (now={now})")
    return run_expiry_tick(db, now)


@router.post("/transitions/dispatch")
def dispatch_transitions(db: Session = Depends(get_db)):
    """Deliver pending transition events now"""
    return {"dispatched": dispatch_pending_transitions(db)}


@router.get("/transitions/pending")
def list_pending_transitions(limit: int = Query(100, ge=1, le=1000), db: Session = Depends(get_db)):
    return {"transitions": get_pending_transitions(db, limit)}
