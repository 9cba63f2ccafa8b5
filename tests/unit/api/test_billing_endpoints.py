"""Unit tests for the billing endpoints.

Services are patched; these tests cover routing, request and response shapes, and
the mapping of service errors to status codes.
"""

import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from billflow import schemas
from billflow.api import deps
from billflow.api.context import ApiContext
from billflow.billing.billing_service import billing_service
from billflow.billing.price_sync import price_catalog_sync
from billflow.billing.reconciliation import reconciliation_sweep
from billflow.billing.webhook_gateway import WebhookResponse, webhook_gateway
from billflow.core.config import settings
from billflow.core.exceptions import (
    ConcurrentUpdateError,
    ExternalServiceError,
    InvalidPlanError,
    InvalidStateError,
    NotFoundException,
    SubscriptionConflictError,
)
from billflow.core.logging import logger
from billflow.main import app

TENANT_ID = uuid.uuid4()


@pytest.fixture
def tenant():
    """Create the tenant the requests act for."""
    return schemas.Tenant(id=TENANT_ID, name="Acme Inc", email="billing@acme.test")


@pytest.fixture
def client(tenant):
    """Create a test client with the database and tenant context overridden."""

    async def _get_db():
        yield MagicMock()

    async def _get_context():
        return ApiContext(
            request_id="test-request-id",
            tenant=tenant,
            auth_method="tenant_header",
            logger=logger.with_context(request_id="test-request-id"),
        )

    app.dependency_overrides[deps.get_db] = _get_db
    app.dependency_overrides[deps.get_context] = _get_context
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def system_headers():
    """Authorization header for system endpoints."""
    with patch.object(settings, "SYSTEM_API_TOKEN", "system-token"):
        yield {"Authorization": "Bearer system-token"}


class TestCheckout:
    """Tests for POST /billing/checkout-session."""

    def test_create_checkout_session(self, client):
        """Test that the camelCase body reaches the service and the result is camelCase."""
        with patch.object(billing_service, "create_checkout", new_callable=AsyncMock) as mock:
            mock.return_value = schemas.CheckoutSessionResponse(
                session_url="https://checkout.stripe.test/cs_1", session_id="cs_1", trial_days=7
            )
            response = client.post(
                "/billing/checkout-session",
                json={"priceId": "price_pro_monthly", "planId": "pro", "billingPeriod": "monthly"},
            )

        assert response.status_code == 200
        assert response.json() == {
            "sessionUrl": "https://checkout.stripe.test/cs_1",
            "sessionId": "cs_1",
            "trialDays": 7,
        }
        request = mock.await_args.args[1]
        assert request.price_id == "price_pro_monthly"
        assert request.billing_period == schemas.BillingPeriod.MONTHLY

    def test_missing_fields(self, client):
        """Test that an incomplete body is a validation error."""
        response = client.post("/billing/checkout-session", json={"planId": "pro"})

        assert response.status_code == 422
        fields = [next(iter(error)) for error in response.json()["errors"]]
        assert "body.priceId" in fields

    @pytest.mark.parametrize(
        "error, status_code",
        [
            (SubscriptionConflictError("Tenant already has an active subscription"), 409),
            (InvalidPlanError("No active monthly price price_x for plan pro"), 400),
            (ExternalServiceError(service_name="Stripe", message="unavailable"), 502),
            (NotFoundException("Tenant not found"), 404),
        ],
    )
    def test_service_errors(self, client, error, status_code):
        """Test the status code of each service error."""
        with patch.object(
            billing_service, "create_checkout", new_callable=AsyncMock, side_effect=error
        ):
            response = client.post(
                "/billing/checkout-session",
                json={"priceId": "price_x", "planId": "pro", "billingPeriod": "monthly"},
            )

        assert response.status_code == status_code
        assert response.json()["detail"]


class TestVerifyCheckout:
    """Tests for GET /billing/checkout-session/{session_id}."""

    def test_verify_checkout_session(self, client):
        """Test that the session ID reaches the service and the view is camelCase."""
        with patch.object(billing_service, "verify_checkout", new_callable=AsyncMock) as mock:
            mock.return_value = schemas.CheckoutVerification(
                session_id="cs_1",
                session_status="complete",
                payment_status="paid",
                customer_email="owner@acme.test",
                subscription=schemas.CheckoutSubscription(
                    status=schemas.SubscriptionStatus.TRIAL,
                    plan_id="pro",
                    billing_period=schemas.BillingPeriod.MONTHLY,
                    amount=2000,
                    currency="usd",
                ),
            )
            response = client.get("/billing/checkout-session/cs_1")

        assert response.status_code == 200
        body = response.json()
        assert body["sessionStatus"] == "complete"
        assert body["paymentStatus"] == "paid"
        assert body["subscription"]["planId"] == "pro"
        assert mock.await_args.args[1] == "cs_1"

    def test_unknown_session(self, client):
        """Test that a session the tenant did not start is a 404."""
        with patch.object(
            billing_service,
            "verify_checkout",
            new_callable=AsyncMock,
            side_effect=NotFoundException("Checkout session cs_x not found"),
        ):
            response = client.get("/billing/checkout-session/cs_x")

        assert response.status_code == 404


class TestPrices:
    """Tests for GET /billing/prices."""

    def test_list_prices(self, client):
        """Test the catalog listing for a billing period."""
        with patch.object(billing_service, "list_prices", new_callable=AsyncMock) as mock:
            mock.return_value = [
                schemas.CatalogPrice(
                    price_id="price_pro_annual",
                    plan_id="pro",
                    billing_period=schemas.BillingPeriod.ANNUAL,
                    amount=20000,
                    currency="usd",
                )
            ]
            response = client.get("/billing/prices", params={"billing_period": "annual"})

        assert response.status_code == 200
        assert response.json() == [
            {
                "priceId": "price_pro_annual",
                "planId": "pro",
                "billingPeriod": "annual",
                "amount": 20000,
                "currency": "usd",
            }
        ]
        assert mock.await_args.args[1] == schemas.BillingPeriod.ANNUAL

    def test_defaults_to_monthly(self, client):
        """Test that the billing period defaults to monthly."""
        with patch.object(
            billing_service, "list_prices", new_callable=AsyncMock, return_value=[]
        ) as mock:
            response = client.get("/billing/prices")

        assert response.status_code == 200
        assert mock.await_args.args[1] == schemas.BillingPeriod.MONTHLY

    def test_unknown_billing_period(self, client):
        """Test that an unknown billing period is a validation error."""
        response = client.get("/billing/prices", params={"billing_period": "weekly"})
        assert response.status_code == 422


class TestCancel:
    """Tests for the cancellation endpoints."""

    def test_cancel(self, client):
        """Test an immediate cancellation request."""
        with patch.object(billing_service, "cancel", new_callable=AsyncMock) as mock:
            mock.return_value = schemas.CancellationSummary(
                cancellation_type=schemas.CancellationType.IMMEDIATE,
                canceled=True,
                cancel_at_period_end=False,
                refund_amount=1333,
            )
            response = client.post(
                "/billing/cancel", json={"immediately": True, "reason": "too_expensive"}
            )

        assert response.status_code == 200
        body = response.json()
        assert body["cancellationType"] == "immediate"
        assert body["refundAmount"] == 1333
        request = mock.await_args.args[1]
        assert request.immediately is True
        assert request.reason == "too_expensive"

    def test_cancel_defaults_to_period_end(self, client):
        """Test that an empty body schedules the cancellation."""
        with patch.object(billing_service, "cancel", new_callable=AsyncMock) as mock:
            mock.return_value = schemas.CancellationSummary(
                cancellation_type=schemas.CancellationType.AT_PERIOD_END,
                canceled=False,
                cancel_at_period_end=True,
            )
            response = client.post("/billing/cancel", json={})

        assert response.status_code == 200
        assert mock.await_args.args[1].immediately is False

    def test_cancel_in_wrong_state(self, client):
        """Test that a cancellation that does not apply is a conflict."""
        with patch.object(
            billing_service,
            "cancel",
            new_callable=AsyncMock,
            side_effect=InvalidStateError("Cancellation at period end is already scheduled"),
        ):
            response = client.post("/billing/cancel", json={})

        assert response.status_code == 409

    def test_concurrent_update_is_retryable(self, client):
        """Test that losing a write race asks the caller to retry."""
        with patch.object(
            billing_service, "cancel", new_callable=AsyncMock, side_effect=ConcurrentUpdateError()
        ):
            response = client.post("/billing/cancel", json={"immediately": True})

        assert response.status_code == 503

    def test_preview(self, client):
        """Test that the preview reads the query flag."""
        with patch.object(billing_service, "preview_cancel", new_callable=AsyncMock) as mock:
            mock.return_value = schemas.CancellationPreview(
                cancellation_type=schemas.CancellationType.IMMEDIATE,
                canceled=False,
                cancel_at_period_end=False,
                refund_amount=1999,
                current_status=schemas.SubscriptionStatus.ACTIVE,
                billing_period=schemas.BillingPeriod.MONTHLY,
                days_until_period_end=20,
                recommendation=schemas.Recommendation(
                    suggested=schemas.CancellationType.AT_PERIOD_END
                ),
            )
            response = client.get("/billing/cancel", params={"immediately": "true"})

        assert response.status_code == 200
        assert mock.await_args.args[1] is True
        body = response.json()
        assert body["daysUntilPeriodEnd"] == 20
        assert body["recommendation"]["suggested"] == "at_period_end"


class TestStatus:
    """Tests for the status endpoints."""

    def test_get_subscription(self, client):
        """Test the status view."""
        with patch.object(billing_service, "get_status", new_callable=AsyncMock) as mock:
            mock.return_value = schemas.SubscriptionStatusView(
                status=schemas.SubscriptionStatus.TRIAL,
                plan_id="pro",
                is_active=True,
                trial=schemas.TrialStatus(is_in_trial=True, days_left=4),
            )
            response = client.get("/billing/subscription")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "trial"
        assert body["trial"]["daysLeft"] == 4

    def test_get_trial(self, client):
        """Test the trial view."""
        with patch.object(billing_service, "get_trial_status", new_callable=AsyncMock) as mock:
            mock.return_value = schemas.TrialStatus(is_in_trial=False)
            response = client.get("/billing/trial")

        assert response.status_code == 200
        assert response.json()["isInTrial"] is False

    def test_extend_trial_without_body(self, client):
        """Test that the extension defaults to seven days."""
        with patch.object(billing_service, "extend_trial", new_callable=AsyncMock) as mock:
            mock.return_value = schemas.TrialStatus(is_in_trial=True, days_left=9)
            response = client.post("/billing/trial/extend")

        assert response.status_code == 200
        assert mock.await_args.args[1].days == 7

    def test_extend_trial_out_of_range(self, client):
        """Test the bounds of an extension."""
        response = client.post("/billing/trial/extend", json={"days": 90})
        assert response.status_code == 422


class TestWebhook:
    """Tests for POST /billing/webhook."""

    def test_response_mirrors_gateway(self, client):
        """Test that the raw body and signature reach the gateway."""
        with patch.object(webhook_gateway, "handle", new_callable=AsyncMock) as mock:
            mock.return_value = WebhookResponse(200, schemas.DispatchOutcome.DUPLICATE)
            response = client.post(
                "/billing/webhook",
                content=b'{"id": "evt_1"}',
                headers={"Stripe-Signature": "t=1,v1=abc"},
            )

        assert response.status_code == 200
        assert response.json() == {"received": True, "outcome": "duplicate"}
        _, payload, signature = mock.await_args.args
        assert payload == b'{"id": "evt_1"}'
        assert signature == "t=1,v1=abc"

    def test_rejected_signature(self, client):
        """Test that a bad signature is answered with a 400."""
        with patch.object(webhook_gateway, "handle", new_callable=AsyncMock) as mock:
            mock.return_value = WebhookResponse(400)
            response = client.post("/billing/webhook", content=b"{}")

        assert response.status_code == 400
        assert response.json() == {"received": False}
        assert mock.await_args.args[2] is None

    def test_trailing_slash(self, client):
        """Test that the webhook is served on both spellings of its path."""
        with patch.object(webhook_gateway, "handle", new_callable=AsyncMock) as mock:
            mock.return_value = WebhookResponse(200, schemas.DispatchOutcome.PROCESSED)
            response = client.post("/billing/webhook/", content=b"{}", follow_redirects=False)

        assert response.status_code == 200


class TestSystemEndpoints:
    """Tests for the token-guarded system endpoints."""

    def test_reconcile(self, client, system_headers):
        """Test a manual sweep."""
        with patch.object(reconciliation_sweep, "run", new_callable=AsyncMock) as mock:
            mock.return_value = schemas.ReconciliationResult(tenants_scanned=3, reminders_sent=1)
            response = client.post("/billing/reconcile", headers=system_headers)

        assert response.status_code == 200
        assert response.json()["remindersSent"] == 1

    def test_reconcile_requires_token(self, client, system_headers):
        """Test that a sweep cannot be triggered without the token."""
        with patch.object(reconciliation_sweep, "run", new_callable=AsyncMock) as mock:
            response = client.post(
                "/billing/reconcile", headers={"Authorization": "Bearer wrong"}
            )

        assert response.status_code == 401
        mock.assert_not_awaited()

    def test_price_sync(self, client, system_headers):
        """Test a manual price catalog sync."""
        with patch.object(price_catalog_sync, "sync", new_callable=AsyncMock) as mock:
            mock.return_value = schemas.PriceSyncResult(created=2)
            response = client.post("/billing/prices/sync", headers=system_headers)

        assert response.status_code == 200
        assert response.json() == {"created": 2, "updated": 0, "deactivated": 0}
