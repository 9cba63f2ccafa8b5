"""Billing endpoints: provider webhook, checkout, prices, cancellation and status."""

from typing import Optional

from fastapi import Depends, Header, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from billflow import schemas
from billflow.api import deps
from billflow.api.context import ApiContext
from billflow.api.router import TrailingSlashRouter
from billflow.billing.billing_service import billing_service
from billflow.billing.price_sync import price_catalog_sync
from billflow.billing.reconciliation import reconciliation_sweep
from billflow.billing.webhook_gateway import webhook_gateway

router = TrailingSlashRouter()


@router.post("/webhook", include_in_schema=False)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None),
    db: AsyncSession = Depends(deps.get_db),
) -> JSONResponse:
    """Handle Stripe webhook events.

    Security:
    - Verifies the signature over the raw body before anything is parsed
    - Idempotent: a redelivered event is acknowledged without effect

    Returns:
        200 once the event is settled, 400 on a bad signature, 500 when Stripe
        should redeliver.
    """
    payload = await request.body()
    result = await webhook_gateway.handle(db, payload, stripe_signature)
    content = {"received": result.status_code == 200}
    if result.outcome is not None:
        content["outcome"] = result.outcome.value
    return JSONResponse(status_code=result.status_code, content=content)


@router.post("/checkout-session", response_model=schemas.CheckoutSessionResponse)
async def create_checkout_session(
    request: schemas.CheckoutRequest,
    db: AsyncSession = Depends(deps.get_db),
    ctx: ApiContext = Depends(deps.get_context),
) -> schemas.CheckoutSessionResponse:
    """Create a Stripe checkout session for a plan price.

    The tenant stays ``incomplete`` until Stripe confirms the checkout.

    Raises:
        SubscriptionConflictError: 409 if the tenant is already subscribed
        InvalidPlanError: 400 if the price is not an active price of the plan
    """
    return await billing_service.create_checkout(db, request, ctx)


@router.get("/checkout-session/{session_id}", response_model=schemas.CheckoutVerification)
async def verify_checkout_session(
    session_id: str,
    db: AsyncSession = Depends(deps.get_db),
    ctx: ApiContext = Depends(deps.get_context),
) -> schemas.CheckoutVerification:
    """Check a checkout session the tenant started, for the post-checkout page.

    Raises:
        NotFoundException: 404 if the session is not one of the tenant's checkouts
    """
    return await billing_service.verify_checkout(db, session_id, ctx)


@router.get("/prices", response_model=list[schemas.CatalogPrice])
async def list_prices(
    billing_period: schemas.BillingPeriod = Query(schemas.BillingPeriod.MONTHLY),
    db: AsyncSession = Depends(deps.get_db),
) -> list[schemas.CatalogPrice]:
    """List the active plan prices of a billing period, cheapest first."""
    return await billing_service.list_prices(db, billing_period)


@router.post("/cancel", response_model=schemas.CancellationSummary)
async def cancel_subscription(
    request: schemas.CancelRequest,
    db: AsyncSession = Depends(deps.get_db),
    ctx: ApiContext = Depends(deps.get_context),
) -> schemas.CancellationSummary:
    """Cancel the tenant's subscription now (with a prorated refund) or at period end."""
    return await billing_service.cancel(db, request, ctx)


@router.get("/cancel", response_model=schemas.CancellationPreview)
async def preview_cancellation(
    immediately: bool = Query(False, description="Preview an immediate cancellation"),
    db: AsyncSession = Depends(deps.get_db),
    ctx: ApiContext = Depends(deps.get_context),
) -> schemas.CancellationPreview:
    """Preview a cancellation without changing anything, for confirmation screens."""
    return await billing_service.preview_cancel(db, immediately, ctx)


@router.get("/subscription", response_model=schemas.SubscriptionStatusView)
async def get_subscription(
    db: AsyncSession = Depends(deps.get_db),
    ctx: ApiContext = Depends(deps.get_context),
) -> schemas.SubscriptionStatusView:
    """Get the tenant's billing status, trial view and latest history."""
    return await billing_service.get_status(db, ctx)


@router.get("/trial", response_model=schemas.TrialStatus)
async def get_trial(
    db: AsyncSession = Depends(deps.get_db),
    ctx: ApiContext = Depends(deps.get_context),
) -> schemas.TrialStatus:
    """Get the tenant's trial status."""
    return await billing_service.get_trial_status(db, ctx)


@router.post("/trial/extend", response_model=schemas.TrialStatus)
async def extend_trial(
    request: Optional[schemas.TrialExtendRequest] = None,
    db: AsyncSession = Depends(deps.get_db),
    ctx: ApiContext = Depends(deps.get_context),
) -> schemas.TrialStatus:
    """Extend the tenant's running trial."""
    return await billing_service.extend_trial(db, request or schemas.TrialExtendRequest(), ctx)


@router.post(
    "/reconcile",
    response_model=schemas.ReconciliationResult,
    dependencies=[Depends(deps.require_system_token)],
)
async def run_reconciliation() -> schemas.ReconciliationResult:
    """Run a reconciliation sweep now. For cron jobs and operators."""
    return await reconciliation_sweep.run()


@router.post(
    "/prices/sync",
    response_model=schemas.PriceSyncResult,
    dependencies=[Depends(deps.require_system_token)],
)
async def sync_prices(
    db: AsyncSession = Depends(deps.get_db),
) -> schemas.PriceSyncResult:
    """Mirror the active Stripe price catalog."""
    return await price_catalog_sync.sync(db)
