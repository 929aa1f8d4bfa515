"""Tier catalog: cached, read-mostly plan definitions with explicit reload"""
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Union

from sqlalchemy.orm import Session

from billing.core.config import settings
from billing.core.exceptions import ConfigurationError, NotFoundError
from billing.models.tier import Tier
from billing.schemas.tiers import TierInfo, TierUpsertRequest

logger = logging.getLogger(__name__)


DEFAULT_TIERS = [
    {
        "name": "free",
        "display_name": "Free",
        "description": "Basic access with a small monthly allowance",
        "display_order": 0,
        "is_default": True,
        "resource_cost_limit_per_period": Decimal("0.10"),
        "resource_count_limit_per_period": 2,
        "max_selectable_categories": 0,
        "can_select_scope": False,
        "has_premium_feature_access": False,
        "billing_price_monthly": Decimal("0"),
        "billing_price_yearly": Decimal("0"),
        "referral_reward_amount": 0,
        "redeemable_point_cost": 0,
    },
    {
        "name": "student",
        "display_name": "Student",
        "description": "Choose up to three subjects, unlimited documents in them",
        "display_order": 1,
        "is_default": False,
        "resource_cost_limit_per_period": Decimal("1.00"),
        "resource_count_limit_per_period": None,
        "max_selectable_categories": 3,
        "can_select_scope": True,
        "has_premium_feature_access": False,
        "billing_price_monthly": Decimal("4.99"),
        "billing_price_yearly": Decimal("49.99"),
        "referral_reward_amount": 100,
        "redeemable_point_cost": 1000,
    },
    {
        "name": "pro",
        "display_name": "Pro",
        "description": "Unlimited usage and every premium feature",
        "display_order": 2,
        "is_default": False,
        "resource_cost_limit_per_period": None,
        "resource_count_limit_per_period": None,
        "max_selectable_categories": 0,
        "can_select_scope": False,
        "has_premium_feature_access": True,
        "billing_price_monthly": Decimal("9.99"),
        "billing_price_yearly": Decimal("99.99"),
        "referral_reward_amount": 250,
        "redeemable_point_cost": 0,
    },
]


class TierCatalog:
    """
    Single source of truth for tier definitions.

    Holds frozen TierInfo snapshots keyed by id and by name. The cache is
    filled lazily and refreshed only by reload()/invalidate(); admin writes
    call invalidate() so the next lookup sees the new definition.
    """
    _by_id: Dict[int, TierInfo] = {}
    _by_name: Dict[str, TierInfo] = {}
    _last_sync: Optional[datetime] = None

    @classmethod
    def reload(cls, db: Session) -> int:
        """Load every tier from the database, replacing the cache"""
        rows = db.query(Tier).all()
        by_id = {}
        by_name = {}
        for row in rows:
            info = TierInfo.model_validate(row)
            by_id[info.id] = info
            by_name[info.name] = info
        cls._by_id = by_id
        cls._by_name = by_name
        cls._last_sync = datetime.now(timezone.utc)
        logger.info(f"Tier catalog loaded: {len(by_id)} tiers")
        return len(by_id)

    @classmethod
    def invalidate(cls) -> None:
        cls._by_id = {}
        cls._by_name = {}
        cls._last_sync = None

    @classmethod
    def _lookup(cls, key: Union[int, str]) -> Optional[TierInfo]:
        if isinstance(key, int):
            return cls._by_id.get(key)
        return cls._by_name.get(key.strip().lower())

    @classmethod
    def get(cls, db: Session, key: Union[int, str]) -> TierInfo:
        """Get a tier by id or name. Raises NotFoundError."""
        if cls._last_sync is None:
            cls.reload(db)
        tier = cls._lookup(key)
        if tier is None:
            # Another process may have added it since our last load
            cls.reload(db)
            tier = cls._lookup(key)
        if tier is None:
            raise NotFoundError(f"Tier '{key}' not found")
        return tier

    @classmethod
    def get_default(cls, db: Session) -> TierInfo:
        """The tier accounts fall back to on expiry. Raises ConfigurationError."""
        try:
            tier = cls.get(db, settings.DEFAULT_TIER_NAME)
        except NotFoundError:
            tier = None
        if tier is None or not tier.is_active:
            defaults = [t for t in cls._by_id.values() if t.is_default and t.is_active]
            tier = defaults[0] if defaults else None
        if tier is None:
            logger.critical(
                f"Default tier '{settings.DEFAULT_TIER_NAME}' is missing from the catalog - "
                f"downgrades and free-tier provisioning are blocked"
            )
            raise ConfigurationError(f"Default tier '{settings.DEFAULT_TIER_NAME}' is not configured")
        return tier

    @classmethod
    def list_tiers(cls, db: Session, include_inactive: bool = False) -> List[TierInfo]:
        if cls._last_sync is None:
            cls.reload(db)
        tiers = [t for t in cls._by_id.values() if include_inactive or t.is_active]
        return sorted(tiers, key=lambda t: (t.display_order, t.id))


def upsert_tier(request: TierUpsertRequest, db: Session) -> TierInfo:
    """Create or update a tier by name.

    Edits are forward-looking: existing subscriptions keep their counters and
    pick up new limits at their next fresh period or rollover.
    """
    tier = db.query(Tier).filter(Tier.name == request.name).first()
    values = request.model_dump()
    if tier is None:
        tier = Tier(**values)
        db.add(tier)
        logger.info(f"Creating tier {request.name}")
    else:
        for field, value in values.items():
            setattr(tier, field, value)
        logger.info(f"Updating tier {request.name}")

    if request.is_default:
        # Only one default tier
        db.query(Tier).filter(Tier.name != request.name, Tier.is_default.is_(True)).update(
            {Tier.is_default: False}, synchronize_session=False
        )

    db.commit()
    db.refresh(tier)
    TierCatalog.invalidate()
    return TierInfo.model_validate(tier)


def seed_default_tiers(db: Session) -> int:
    """Install the built-in tiers if they are missing. Returns number created."""
    existing = {name for (name,) in db.query(Tier.name).all()}
    created = 0
    for definition in DEFAULT_TIERS:
        if definition["name"] in existing:
            continue
        db.add(Tier(**definition))
        created += 1
    if created:
        db.commit()
        TierCatalog.invalidate()
        logger.info(f"Seeded {created} default tiers")
    return created
