"""Application wiring tests (health, metrics, error mapping, CORS)"""
import pytest
from unittest.mock import patch

from billing.core.exceptions import BillingError, ConfigurationError, ConflictError, NotFoundError, ValidationError


@pytest.mark.medium
class TestHealthAndMetrics:
    """Test operational endpoints"""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    def test_metrics_exposes_billing_series(self, client):
        create = client.post("/api/accounts", json={"external_ref": "metrics-acct"})
        client.post("/api/access/check", json={"account_id": create.json()["id"]})

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "billing_access_decisions_total" in response.text
        assert "billing_subscription_transitions_total" in response.text
        assert 'route="/api/access/check"' in response.text


@pytest.mark.medium
class TestErrorMapping:
    """Test domain errors become HTTP responses"""

    @pytest.mark.parametrize("error, status", [
        (ValidationError("bad"), 422),
        (NotFoundError("missing"), 404),
        (ConflictError("retry"), 409),
        (ConfigurationError("no default tier"), 500),
        (BillingError("generic"), 500),
    ])
    def test_status_codes(self, client, error, status):
        with patch("billing.api.tiers.TierCatalog.list_tiers", side_effect=error):
            response = client.get("/api/tiers")

        assert response.status_code == status
        assert response.json()["detail"] == error.message
        assert response.json()["error"] == type(error).__name__

    def test_cors_allows_frontend(self, client):
        response = client.options("/api/tiers", headers={
            "Origin": "http://localhost:3000",
            "Access-Control-Request-Method": "GET",
        })

        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "http://localhost:3000"
