"""Common test fixtures."""

from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from billflow import crud, schemas
from billflow.api.context import ApiContext
from billflow.billing.state_store import SubscriptionStateStore
from billflow.core.datetime_utils import utc_now_naive
from billflow.core.logging import logger
from billflow.integrations.notifier import Notifier
from billflow.integrations.stripe_client import StripeClient


@pytest.fixture
def mock_stripe_client():
    """Create a mock Stripe client with canned customer and checkout responses."""
    client = MagicMock(spec=StripeClient)
    client.create_customer = AsyncMock(return_value=SimpleNamespace(id="cus_new"))
    client.create_checkout_session = AsyncMock(
        return_value=SimpleNamespace(id="cs_test_1", url="https://checkout.stripe.test/cs_test_1")
    )
    client.retrieve_subscription = AsyncMock()
    client.retrieve_checkout_session = AsyncMock()
    client.cancel_subscription = AsyncMock()
    client.extend_trial = AsyncMock()
    client.list_active_prices = AsyncMock(return_value=[])
    return client


@pytest.fixture
def mock_notifier():
    """Create a mock notifier that reports every notification as sent."""
    sender = MagicMock(spec=Notifier)
    sender.send = AsyncMock(return_value=True)
    return sender


@pytest.fixture
def state_store():
    """Create a state store with its own tenant lock registry."""
    return SubscriptionStateStore()


@pytest.fixture
def tenant_factory(db):
    """Create tenants in the test database."""

    async def _create(**overrides):
        values = {"name": "Acme Inc", "email": "billing@acme.test", **overrides}
        return await crud.tenant.create(db, obj_in=schemas.TenantCreate(**values))

    return _create


@pytest.fixture
def price_factory(db):
    """Create catalog prices in the test database."""

    async def _create(**overrides):
        values = {
            "external_price_id": "price_pro_monthly",
            "plan_id": "pro",
            "billing_period": schemas.BillingPeriod.MONTHLY,
            "amount": 2000,
            "currency": "usd",
            **overrides,
        }
        return await crud.price.create(db, obj_in=schemas.PriceCreate(**values))

    return _create


@pytest.fixture
def subscription_factory(db, tenant_factory, state_store):
    """Create a tenant holding a subscription in the given status.

    Trials run from three days ago until four days ahead; paid periods from ten days
    ago until twenty days ahead. Any ``SubscriptionCreate`` field can be overridden.
    """

    async def _create(
        status: schemas.SubscriptionStatus = schemas.SubscriptionStatus.ACTIVE,
        tenant=None,
        **overrides,
    ):
        now = utc_now_naive()
        if tenant is None:
            tenant = await tenant_factory(stripe_customer_id=overrides.get("external_customer_id"))

        values = {
            "plan_id": "pro",
            "billing_period": schemas.BillingPeriod.MONTHLY,
            "amount": 2000,
            "currency": "usd",
            "external_subscription_id": "sub_123",
        }
        if status == schemas.SubscriptionStatus.TRIAL:
            values.update(
                trial_start=now - timedelta(days=3),
                trial_end=now + timedelta(days=4),
                current_period_start=now - timedelta(days=3),
                current_period_end=now + timedelta(days=4),
            )
        elif status != schemas.SubscriptionStatus.INCOMPLETE:
            values.update(
                current_period_start=now - timedelta(days=10),
                current_period_end=now + timedelta(days=20),
            )
        values.update(overrides)

        async with state_store.transaction(db, tenant.id) as tx:
            subscription = await tx.create_subscription(
                schemas.SubscriptionCreate(tenant_id=tenant.id, status=status, **values)
            )
        return tenant, subscription

    return _create


@pytest.fixture
def api_context():
    """Build the API context a request for a tenant would carry."""

    def _build(tenant) -> ApiContext:
        tenant_schema = schemas.Tenant.model_validate(tenant)
        return ApiContext(
            request_id="test-request-id",
            tenant=tenant_schema,
            auth_method="tenant_header",
            logger=logger.with_context(
                request_id="test-request-id", tenant_id=str(tenant_schema.id)
            ),
        )

    return _build
