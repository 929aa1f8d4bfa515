"""Tier catalog routes"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from billing.core.security import require_service_token
from billing.db.session import get_db
from billing.services.tier_catalog import TierCatalog
from billing.utils.conversion import dollars_to_tokens

router = APIRouter(prefix="/api/tiers", tags=["tiers"], dependencies=[Depends(require_service_token)])


@router.get("")
def list_tiers(db: Session = Depends(get_db)):
    """Active tiers in display order. -1 limits mean unlimited."""
    tiers = []
    for tier in TierCatalog.list_tiers(db):
        data = tier.model_dump(mode="json")
        data["tokens_per_period"] = (
            dollars_to_tokens(tier.resource_cost_limit_per_period)
            if tier.resource_cost_limit_per_period is not None else -1
        )
        if tier.resource_count_limit_per_period is None:
            data["resource_count_limit_per_period"] = -1
        tiers.append(data)
    return {"tiers": tiers}
