"""Shared pytest fixtures for test suite"""
import os
import sys
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Generator
from unittest.mock import patch

import pytest
import fakeredis
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("ENABLE_SCHEDULER", "false")
os.environ.setdefault("SERVICE_TOKEN", "")
os.environ.setdefault("OTEL_EXPORTER_OTLP_ENDPOINT", "")

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from billing.main import app
from billing.db.session import get_db
from billing.db import redis as redis_module
from billing.models import Base
from billing.models.account import Account
from billing.models.subscription import Subscription
from billing.schemas.tiers import TierUpsertRequest
from billing.services.tier_catalog import TierCatalog, seed_default_tiers, upsert_tier
from billing.services.transition_rules import is_recurring_for, period_for_activation, tier_limits


# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

# Create test engine with StaticPool for in-memory database
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# Create test session factory
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

# Fixed reference time so period arithmetic is deterministic (2025 is not a leap year)
T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database with the built-in tiers for each test"""
    Base.metadata.create_all(bind=test_engine)
    TierCatalog.invalidate()

    session = TestSessionLocal()
    seed_default_tiers(session)

    try:
        yield session
    finally:
        session.close()
        TierCatalog.invalidate()
        # Drop all tables after test
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def other_session(db_session: Session) -> Generator[Session, None, None]:
    """Second session on the same database, standing in for a concurrent writer"""
    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="function")
def mock_redis():
    """Mock Redis client using fakeredis"""
    fake_redis = fakeredis.FakeStrictRedis(decode_responses=True)
    with patch.object(redis_module, '_client', fake_redis):
        yield fake_redis


@pytest.fixture(scope="function")
def client(db_session: Session, mock_redis) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database and mocked Redis"""

    # Override get_db dependency to use test database
    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db

    try:
        # Startup seeds through its own session; point it at the test database
        with patch('billing.main.init_db'):
            with patch('billing.main.SessionLocal', TestSessionLocal):
                with patch('billing.core.otel.initialize_otel', return_value=False):
                    with patch('billing.core.otel.setup_otel_logging', return_value=False):
                        with patch('billing.core.otel.instrument_sqlalchemy'):
                            with TestClient(app) as test_client:
                                yield test_client
    finally:
        # Cleanup - always clear overrides
        app.dependency_overrides.clear()


@pytest.fixture
def now() -> datetime:
    return T0


@pytest.fixture(scope="function")
def account(db_session: Session) -> Account:
    """Bare account without a subscription"""
    account = Account(external_ref="acct-1", email="owner@example.com")
    db_session.add(account)
    db_session.commit()
    db_session.refresh(account)
    return account


@pytest.fixture(scope="function")
def plus_tier(db_session: Session):
    """Paid tier with a $10 allowance, ranked above student"""
    return upsert_tier(TierUpsertRequest(
        name="plus",
        display_name="Plus",
        display_order=2,
        resource_cost_limit_per_period=Decimal("10"),
        billing_price_monthly=Decimal("14.99"),
        referral_reward_amount=150,
    ), db_session)


@pytest.fixture(scope="function")
def make_subscription(db_session: Session):
    """Factory inserting a current subscription row directly (bypasses payment events)"""

    def _make(account: Account, tier_name: str, start: datetime = T0, billing_cycle: str = "monthly",
              payment_method_class: str = "card", **fields) -> Subscription:
        tier = TierCatalog.get(db_session, tier_name)
        period_start, period_end, subscription_end = period_for_activation(billing_cycle, start)
        values = dict(
            tier_id=tier.id,
            status="active",
            billing_cycle=billing_cycle,
            is_recurring=is_recurring_for(billing_cycle, payment_method_class),
            payment_method_class=payment_method_class,
            period_anchor=period_start,
            period_start=period_start,
            period_end=period_end,
            subscription_end=subscription_end,
            resource_cost_used_current_period=Decimal("0"),
            resource_count_used_current_period=0,
            accessed_resource_ids=[],
            **tier_limits(tier),
        )
        values.update(fields)
        subscription = Subscription(account_id=account.id, **values)
        db_session.add(subscription)
        db_session.commit()
        db_session.refresh(subscription)
        return subscription

    return _make
