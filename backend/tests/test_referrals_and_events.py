"""Referral rewards, points redemption and transition outbox tests"""
import json
import pytest
from datetime import timedelta
from unittest.mock import patch

import redis
from dateutil.relativedelta import relativedelta

from billing.core.exceptions import NotFoundError, ValidationError
from billing.models.account import Account
from billing.models.referral import PointsTransaction, Referral
from billing.models.subscription_transition import SubscriptionTransition
from billing.services.event_service import (
    EVENT_TYPE, dispatch_pending_transitions, get_pending_transitions
)
from billing.services.referral_service import attach_referral, get_referral_stats, redeem_points_for_subscription
from billing.services.rollover_service import run_expiry_tick, run_rollover_tick
from billing.services.subscription_service import apply_payment_completed, create_account, get_current_subscription
from billing.services.tier_catalog import TierCatalog


def points(db_session, account_id):
    return db_session.query(Account).filter(Account.id == account_id).one().points_balance


def current_tier_name(db_session, account_id):
    return TierCatalog.get(db_session, get_current_subscription(account_id, db_session).tier_id).name


@pytest.fixture
def referred_pair(db_session, now):
    """Referrer and an account it referred, both on free"""
    referrer = create_account("referrer", db_session, now=now)
    referred = create_account("referred", db_session, referred_by_account_id=referrer.id, now=now)
    return referrer, referred


@pytest.mark.high
class TestReferralRewards:
    """Test points awarded through the transition outbox"""

    def test_paid_purchase_rewards_referrer(self, db_session, referred_pair, mock_redis, now):
        referrer, referred = referred_pair
        apply_payment_completed(referred.id, "student", "monthly", "card", "txn-1", db_session, now=now)

        dispatched = dispatch_pending_transitions(db_session, now=now)

        assert dispatched == 3  # two provisions and the upgrade
        assert points(db_session, referrer.id) == 100
        referral = db_session.query(Referral).filter(Referral.referred_account_id == referred.id).one()
        assert referral.status == "completed"
        assert referral.times_awarded == 1
        reward = db_session.query(PointsTransaction).filter(PointsTransaction.account_id == referrer.id).one()
        assert reward.transaction_type == "referral_reward"
        assert reward.balance_after == 100

    def test_dispatch_awards_once(self, db_session, referred_pair, mock_redis, now):
        """Test re-running dispatch does not award the same transition again"""
        referrer, referred = referred_pair
        apply_payment_completed(referred.id, "student", "monthly", "card", "txn-1", db_session, now=now)

        dispatch_pending_transitions(db_session, now=now)
        assert dispatch_pending_transitions(db_session, now=now) == 0

        assert points(db_session, referrer.id) == 100

    def test_renewal_rewards_again(self, db_session, referred_pair, mock_redis, now):
        referrer, referred = referred_pair
        apply_payment_completed(referred.id, "pro", "monthly", "card", "txn-1", db_session, now=now)
        apply_payment_completed(referred.id, "pro", "monthly", "card", "txn-2", db_session, now=now)

        dispatch_pending_transitions(db_session, now=now)

        assert points(db_session, referrer.id) == 500
        assert get_referral_stats(referrer.id, db_session)["times_awarded"] == 2

    def test_free_provisioning_not_rewarded(self, db_session, referred_pair, mock_redis, now):
        referrer, _ = referred_pair

        dispatch_pending_transitions(db_session, now=now)

        assert points(db_session, referrer.id) == 0
        assert get_referral_stats(referrer.id, db_session)["completed_referrals"] == 0

    def test_self_referral_rejected(self, db_session, account):
        with pytest.raises(ValidationError):
            attach_referral(account.id, account.id, db_session)

    def test_unknown_referrer_rolls_back_account(self, db_session, now):
        with pytest.raises(NotFoundError):
            create_account("orphan", db_session, referred_by_account_id=999, now=now)

        assert db_session.query(Account).filter(Account.external_ref == "orphan").first() is None


@pytest.mark.high
class TestPointsRedemption:
    """Test spending points on a subscription"""

    def test_redeem_for_one_month(self, db_session, referred_pair, mock_redis, now):
        """Test redemption spends points and grants a non-recurring month without rewarding anyone"""
        referrer, referred = referred_pair
        db_session.query(Account).filter(Account.id == referred.id).update({Account.points_balance: 1200})
        db_session.commit()

        result = redeem_points_for_subscription(referred.id, "student", db_session, now=now)

        assert result["points_spent"] == 1000
        assert result["points_balance"] == 200
        sub = result["subscription"]
        assert sub["tier"] == "student"
        assert sub["billing_cycle"] == "monthly"
        assert sub["is_recurring"] is False
        assert sub["payment_method_class"] == "points"

        dispatch_pending_transitions(db_session, now=now)
        assert points(db_session, referrer.id) == 0

    def test_second_redemption_extends_paid_month(self, db_session, now):
        """Test redeeming again while the month runs adds a month instead of being spent for nothing"""
        account = create_account("saver", db_session, now=now)
        db_session.query(Account).filter(Account.id == account.id).update({Account.points_balance: 2000})
        db_session.commit()

        redeem_points_for_subscription(account.id, "student", db_session, now=now)
        result = redeem_points_for_subscription(account.id, "student", db_session, now=now + timedelta(days=10))

        assert result["points_balance"] == 0
        assert result["subscription"]["subscription_end"] == (now + relativedelta(months=2)).isoformat()

        run_rollover_tick(db_session, now + relativedelta(months=1, hours=1))
        run_expiry_tick(db_session, now + relativedelta(months=1, hours=1))
        assert current_tier_name(db_session, account.id) == "student"

        run_rollover_tick(db_session, now + relativedelta(months=2, hours=1))
        run_expiry_tick(db_session, now + relativedelta(months=2, hours=1))
        assert current_tier_name(db_session, account.id) == "free"

    def test_insufficient_points(self, db_session, now):
        account = create_account("poor", db_session, now=now)

        with pytest.raises(ValidationError, match="Insufficient points"):
            redeem_points_for_subscription(account.id, "student", db_session, now=now)

        assert points(db_session, account.id) == 0
        assert db_session.query(PointsTransaction).count() == 0

    def test_tier_not_redeemable(self, db_session, now):
        account = create_account("rich", db_session, now=now)
        db_session.query(Account).filter(Account.id == account.id).update({Account.points_balance: 100_000})
        db_session.commit()

        with pytest.raises(ValidationError):
            redeem_points_for_subscription(account.id, "pro", db_session, now=now)
        assert current_tier_name(db_session, account.id) == "free"


@pytest.mark.high
class TestTransitionOutbox:
    """Test SubscriptionTransitioned delivery"""

    def test_dispatch_publishes_events(self, db_session, mock_redis, now):
        account = create_account("acct-events", db_session, now=now)
        apply_payment_completed(account.id, "student", "monthly", "card", "txn-1", db_session, now=now)

        with patch("billing.services.event_service.publish_message", return_value=1) as mock_publish:
            assert dispatch_pending_transitions(db_session, now=now) == 2

        messages = [json.loads(call.args[1]) for call in mock_publish.call_args_list]
        assert [m["type"] for m in messages] == [EVENT_TYPE, EVENT_TYPE]
        assert [m["data"]["reason"] for m in messages] == ["provisioned", "upgrade"]
        assert messages[1]["data"]["old_tier"] == "free"
        assert messages[1]["data"]["new_tier"] == "student"
        assert messages[1]["data"]["details"]["external_txn_id"] == "txn-1"

    def test_publish_failure_still_marks_dispatched(self, db_session, mock_redis, now):
        """Test pub/sub is best effort once the outbox commit succeeded"""
        create_account("acct-events", db_session, now=now)

        with patch("billing.services.event_service.publish_message", side_effect=redis.ConnectionError("down")):
            assert dispatch_pending_transitions(db_session, now=now) == 1

        assert get_pending_transitions(db_session) == []
        assert db_session.query(SubscriptionTransition).filter(
            SubscriptionTransition.dispatched_at.is_(None)
        ).count() == 0

    def test_pending_listing(self, db_session, now):
        account = create_account("acct-events", db_session, now=now)

        pending = get_pending_transitions(db_session)

        assert len(pending) == 1
        assert pending[0]["account_id"] == account.id
        assert pending[0]["reason"] == "provisioned"

    def test_limit_respected(self, db_session, mock_redis, now):
        for i in range(3):
            create_account(f"acct-{i}", db_session, now=now)

        assert dispatch_pending_transitions(db_session, limit=2, now=now) == 2
        assert len(get_pending_transitions(db_session)) == 1
