"""API endpoint tests"""
import pytest
from unittest.mock import patch

from billing.core.config import settings


def create_account(client, external_ref="api-acct", **extra):
    response = client.post("/api/accounts", json={"external_ref": external_ref, **extra})
    assert response.status_code == 200
    return response.json()


def pay(client, account_id, tier="student", cycle="monthly", txn="txn-1", method="card"):
    return client.post("/api/events/payment-completed", json={
        "account_id": account_id,
        "tier": tier,
        "billing_cycle": cycle,
        "payment_method_class": method,
        "external_txn_id": txn,
    })


@pytest.mark.critical
class TestServiceToken:
    """Test service-to-service authentication"""

    def test_token_required_when_configured(self, client):
        with patch.object(settings, "SERVICE_TOKEN", "s3cret"):
            assert client.get("/api/tiers").status_code == 401
            assert client.get("/api/tiers", headers={"X-Service-Token": "wrong"}).status_code == 401
            assert client.get("/api/tiers", headers={"X-Service-Token": "s3cret"}).status_code == 200

    def test_open_when_not_configured(self, client):
        assert client.get("/api/tiers").status_code == 200

    def test_health_is_public(self, client):
        with patch.object(settings, "SERVICE_TOKEN", "s3cret"):
            assert client.get("/health").status_code == 200


@pytest.mark.high
class TestAccountEndpoints:
    """Test account creation and referral endpoints"""

    def test_create_account(self, client):
        data = create_account(client, email="a@example.com")

        assert data["external_ref"] == "api-acct"
        assert data["subscription"]["tier"] == "free"
        assert data["subscription"]["tokens_limit"] == 50_000

    def test_referral_stats(self, client):
        referrer = create_account(client, "referrer")
        create_account(client, "referred", referred_by_account_id=referrer["id"])

        response = client.get(f"/api/accounts/{referrer['id']}/referrals")

        assert response.status_code == 200
        assert response.json()["referrals"] == 1

    def test_redeem_without_points(self, client):
        account = create_account(client)
        response = client.post(f"/api/accounts/{account['id']}/redeem", json={"tier": "student"})

        assert response.status_code == 422
        assert response.json()["error"] == "ValidationError"


@pytest.mark.high
class TestTierEndpoints:
    """Test the public tier catalog"""

    def test_list_tiers(self, client):
        response = client.get("/api/tiers")

        assert response.status_code == 200
        tiers = {t["name"]: t for t in response.json()["tiers"]}
        assert list(tiers) == ["free", "student", "pro"]
        assert tiers["free"]["tokens_per_period"] == 50_000
        assert tiers["student"]["tokens_per_period"] == 500_000
        assert tiers["pro"]["tokens_per_period"] == -1
        assert tiers["pro"]["resource_count_limit_per_period"] == -1

    def test_admin_upsert_tier(self, client):
        response = client.post("/api/admin/tiers", json={
            "name": "Team",
            "display_name": "Team",
            "display_order": 3,
            "resource_cost_limit_per_period": "25",
            "resource_count_limit_per_period": -1,
        })

        assert response.status_code == 200
        assert response.json()["tier"]["name"] == "team"
        assert response.json()["tier"]["resource_count_limit_per_period"] is None
        names = [t["name"] for t in client.get("/api/tiers").json()["tiers"]]
        assert "team" in names


@pytest.mark.critical
class TestPaymentEndpoints:
    """Test inbound payment events"""

    def test_payment_completed(self, client):
        account = create_account(client)

        response = pay(client, account["id"])

        assert response.status_code == 200
        assert response.json()["status"] == "applied"
        assert response.json()["subscription"]["tier"] == "student"

    def test_duplicate_delivery(self, client):
        account = create_account(client)
        pay(client, account["id"])

        response = pay(client, account["id"])

        assert response.status_code == 200
        assert response.json()["status"] == "duplicate"

    def test_unknown_tier(self, client):
        account = create_account(client)
        response = pay(client, account["id"], tier="platinum")

        assert response.status_code == 422
        assert response.json()["error"] == "ValidationError"

    def test_unknown_account(self, client):
        response = pay(client, 9999)

        assert response.status_code == 404

    def test_payment_failed_suspends(self, client):
        account = create_account(client)
        pay(client, account["id"])

        response = client.post("/api/events/payment-failed", json={
            "account_id": account["id"],
            "reason": "card_declined",
            "external_txn_id": "txn-fail",
        })

        assert response.status_code == 200
        assert response.json()["status"] == "suspended"
        check = client.post("/api/access/check", json={"account_id": account["id"]})
        assert check.json()["allowed"] is False
        assert check.json()["reason"] == "Subscription suspended"


@pytest.mark.high
class TestSubscriptionEndpoints:
    """Test subscription read and user-triggered transitions"""

    def test_get_subscription_provisions_free(self, client, account):
        response = client.get(f"/api/subscriptions/{account.id}")

        assert response.status_code == 200
        assert response.json()["subscription"]["tier"] == "free"

    def test_cancel_and_reactivate(self, client):
        account = create_account(client)
        pay(client, account["id"])

        cancel = client.post(f"/api/subscriptions/{account['id']}/cancel", json={"reason": "budget"})
        assert cancel.status_code == 200
        assert cancel.json()["subscription"]["cancel_at_period_end"] is True
        assert cancel.json()["subscription"]["is_recurring"] is False

        again = client.post(f"/api/subscriptions/{account['id']}/cancel")
        assert again.status_code == 422

        reactivated = client.post(f"/api/subscriptions/{account['id']}/reactivate")
        assert reactivated.status_code == 200
        assert reactivated.json()["subscription"]["is_recurring"] is True

    def test_cancel_free_rejected(self, client):
        account = create_account(client)
        response = client.post(f"/api/subscriptions/{account['id']}/cancel")

        assert response.status_code == 422

    def test_scope_selection(self, client):
        account = create_account(client)
        pay(client, account["id"])

        first = client.post(f"/api/subscriptions/{account['id']}/scope", json={"scope_ids": ["math"]})
        second = client.post(f"/api/subscriptions/{account['id']}/scope", json={"scope_ids": ["art"]})

        assert first.status_code == 200
        assert second.status_code == 422
        assert "locked" in second.json()["detail"]

    def test_history(self, client):
        account = create_account(client)
        pay(client, account["id"])

        response = client.get(f"/api/subscriptions/{account['id']}/history")

        assert [t["reason"] for t in response.json()["transitions"]] == ["upgrade", "provisioned"]


@pytest.mark.high
class TestUsageEndpoints:
    """Test metering and access endpoints"""

    def test_record_usage_and_summary(self, client):
        account = create_account(client)
        body = {
            "account_id": account["id"],
            "request_id": "req-1",
            "usage": {"input_units": 1000, "output_units": 100,
                      "input_price_per_million": "6", "output_price_per_million": "20"},
        }

        first = client.post("/api/usage/record", json=body)
        retry = client.post("/api/usage/record", json=body)

        assert first.status_code == 200
        assert first.json()["tokens"] == 4000
        assert first.json()["duplicate"] is False
        assert retry.json()["duplicate"] is True
        summary = client.get(f"/api/usage/{account['id']}/summary").json()
        assert summary["subscription"]["tokens_used"] == 4000
        assert summary["by_category"]["chat"]["events"] == 1
        history = client.get(f"/api/usage/{account['id']}/history").json()
        assert len(history["events"]) == 1

    def test_registered_rate(self, client):
        account = create_account(client)
        rate = client.post("/api/admin/rates", json={
            "provider": "openai", "model": "gpt-4o",
            "input_price_per_million": "2.5", "output_price_per_million": "10",
        })
        assert rate.status_code == 200

        response = client.post("/api/usage/record", json={
            "account_id": account["id"],
            "request_id": "req-rate",
            "usage": {"provider": "openai", "model": "gpt-4o", "input_units": 2000, "output_units": 500},
        })

        assert response.status_code == 200
        assert response.json()["tokens"] == 5000

    def test_resource_access_limit(self, client):
        account = create_account(client)

        def open_doc(doc_id):
            return client.post("/api/usage/resource", json={
                "account_id": account["id"], "resource": {"resource_id": doc_id}
            }).json()

        assert open_doc("d1")["allowed"] is True
        assert open_doc("d2")["allowed"] is True
        assert open_doc("d3")["allowed"] is False
        assert open_doc("d1")["allowed"] is True

    def test_access_check_unknown_account(self, client):
        response = client.post("/api/access/check", json={"account_id": 12345})

        assert response.status_code == 404


@pytest.mark.medium
class TestAdminEndpoints:
    """Test on-demand scheduled jobs"""

    def test_rollover_and_expiry_runs(self, client):
        account = create_account(client)
        pay(client, account["id"], method="bank_transfer")

        rollover = client.post("/api/admin/rollover/run", params={"now": "2099-01-01T00:00:00+00:00"})
        expiry = client.post("/api/admin/expiry/run", params={"now": "2099-01-01T00:00:00+00:00"})

        assert rollover.status_code == 200
        assert expiry.status_code == 200
        assert expiry.json()["downgraded"] == 1
        subscription = client.get(f"/api/subscriptions/{account['id']}").json()["subscription"]
        assert subscription["tier"] == "free"

    def test_dispatch_and_pending(self, client):
        create_account(client)

        pending = client.get("/api/admin/transitions/pending").json()["transitions"]
        assert len(pending) == 1

        response = client.post("/api/admin/transitions/dispatch")
        assert response.json() == {"dispatched": 1}
        assert client.get("/api/admin/transitions/pending").json()["transitions"] == []

    def test_reload_catalog(self, client):
        response = client.post("/api/admin/tiers/reload")

        assert response.status_code == 200
        assert response.json()["tiers_loaded"] == 3
