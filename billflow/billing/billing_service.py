"""Billing operations requested by tenants.

Checkout, cancellation (and its preview), status reads and trial extension. Every
write goes through the state store under the tenant's lock; provider calls are
made before the lock is taken.
"""

from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from billflow import crud, schemas
from billflow.api.context import ApiContext
from billflow.billing.audit_ledger import AuditLedger, audit_ledger
from billflow.billing.proration import calculate_refund, days_until
from billflow.billing.state_machine import Trigger, decide
from billflow.billing.state_store import SubscriptionStateStore, state_store
from billflow.core.config import settings
from billflow.core.datetime_utils import to_timestamp, utc_now_naive
from billflow.core.exceptions import (
    InvalidPlanError,
    InvalidStateError,
    NotFoundException,
    SubscriptionConflictError,
)
from billflow.integrations.stripe_client import StripeClient, stripe_client
from billflow.models import Subscription

SubscriptionStatus = schemas.SubscriptionStatus

# Past this many days left in the period, keeping access until period end is suggested
_RECOMMEND_PERIOD_END_AFTER_DAYS = 7


def trial_status(tenant: Any, now: Optional[datetime] = None) -> schemas.TrialStatus:
    """Trial view of a tenant row or schema."""
    now = now or utc_now_naive()
    trial_end = tenant.trial_end
    in_trial = tenant.subscription_status == SubscriptionStatus.TRIAL and trial_end is not None
    if not in_trial:
        return schemas.TrialStatus(is_in_trial=False)

    days_left = days_until(trial_end, now)
    return schemas.TrialStatus(
        is_in_trial=True,
        days_left=days_left,
        trial_end=trial_end,
        has_trial_ended=trial_end <= now,
        # Without a provider subscription no payment method was collected
        needs_payment_method=tenant.external_subscription_id is None,
        can_extend_trial=days_left <= 3,
        conversion_ready=days_left <= 1,
    )


class BillingService:
    """Service for managing tenant subscriptions."""

    def __init__(
        self,
        store: Optional[SubscriptionStateStore] = None,
        provider: Optional[StripeClient] = None,
        ledger: Optional[AuditLedger] = None,
    ):
        """Initialize billing service."""
        self.store = store or state_store
        self.stripe = provider or stripe_client
        self.ledger = ledger or audit_ledger

    async def _get_current(self, db: AsyncSession, ctx: ApiContext) -> Subscription:
        subscription = await crud.subscription.get_current_for_tenant(db, tenant_id=ctx.tenant.id)
        if subscription is None:
            raise NotFoundException("Tenant has no active subscription")
        return subscription

    async def _refund_for(
        self, db: AsyncSession, subscription: Subscription, now: datetime
    ) -> tuple[int, str]:
        """Prorated refund of the current period from the latest succeeded payment."""
        payment = await crud.payment.get_latest_succeeded(db, subscription_id=subscription.id)
        start, end = subscription.current_period_start, subscription.current_period_end
        if payment is None or start is None or end is None:
            return 0, subscription.currency
        return calculate_refund(start, end, now, payment.amount), payment.currency

    # Checkout

    async def create_checkout(
        self,
        db: AsyncSession,
        request: schemas.CheckoutRequest,
        ctx: ApiContext,
    ) -> schemas.CheckoutSessionResponse:
        """Start a hosted checkout for a plan price.

        The tenant becomes ``incomplete`` with the plan pending; trial or active
        status is only granted once the provider confirms the checkout.

        Raises:
            SubscriptionConflictError: If the tenant is already subscribed.
            InvalidPlanError: If the price does not match an active plan price.
            ExternalServiceError: If Stripe fails.
        """
        tenant = ctx.tenant
        log = ctx.logger
        self._ensure_can_subscribe(tenant.subscription_status)

        price = await crud.price.get_active_match(
            db,
            external_price_id=request.price_id,
            plan_id=request.plan_id,
            billing_period=request.billing_period,
        )
        if price is None:
            raise InvalidPlanError(
                f"No active {request.billing_period.value} price {request.price_id} "
                f"for plan {request.plan_id}"
            )

        customer_id = tenant.stripe_customer_id
        if not customer_id:
            customer = await self.stripe.create_customer(
                email=tenant.email,
                name=tenant.name,
                metadata={"tenant_id": str(tenant.id)},
            )
            customer_id = customer.id
            log.info(f"Created Stripe customer {customer_id}")

        trial_days = settings.TRIAL_PERIOD_DAYS if price.amount > 0 else 0
        session = await self.stripe.create_checkout_session(
            customer_id=customer_id,
            price_id=price.external_price_id,
            success_url=settings.CHECKOUT_SUCCESS_URL,
            cancel_url=settings.CHECKOUT_CANCEL_URL,
            trial_period_days=trial_days,
            client_reference_id=str(tenant.id),
            metadata={
                "tenant_id": str(tenant.id),
                "plan_id": price.plan_id,
                "billing_period": price.billing_period,
            },
        )

        async with self.store.transaction(db, tenant.id, log) as tx:
            self._ensure_can_subscribe(tx.status)
            if tx.status == SubscriptionStatus.INCOMPLETE:
                # An abandoned checkout is superseded by the new one
                now = utc_now_naive()
                await tx.transition(
                    Trigger.CANCEL_IMMEDIATELY,
                    action=schemas.HistoryAction.CANCELED,
                    update=schemas.SubscriptionUpdate(
                        canceled_at=now, ended_at=now, cancellation_reason="checkout_superseded"
                    ),
                    actor=schemas.Actor.USER,
                )

            await tx.create_subscription(
                schemas.SubscriptionCreate(
                    tenant_id=tenant.id,
                    status=SubscriptionStatus.INCOMPLETE,
                    plan_id=price.plan_id,
                    billing_period=schemas.BillingPeriod(price.billing_period),
                    amount=price.amount,
                    currency=price.currency,
                    external_customer_id=customer_id,
                    checkout_session_id=session.id,
                ),
                action=schemas.HistoryAction.CREATED,
                actor=schemas.Actor.USER,
                metadata={
                    "checkout_session_id": session.id,
                    "price_id": price.external_price_id,
                    "trial_days": trial_days,
                },
            )

        log.info(f"Started checkout {session.id} for plan {price.plan_id}")
        return schemas.CheckoutSessionResponse(
            session_url=session.url, session_id=session.id, trial_days=trial_days
        )

    @staticmethod
    def _ensure_can_subscribe(status: Optional[SubscriptionStatus]) -> None:
        if status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIAL):
            raise SubscriptionConflictError(f"Tenant already has a {status.value} subscription")
        if status == SubscriptionStatus.PAST_DUE:
            raise SubscriptionConflictError(
                "Tenant has a past-due subscription; update its payment method instead"
            )

    async def verify_checkout(
        self, db: AsyncSession, session_id: str, ctx: ApiContext
    ) -> schemas.CheckoutVerification:
        """Report a checkout session's state for the success page.

        Read-only: the local status only moves when the provider's webhook is applied.

        Raises:
            NotFoundException: If the tenant started no checkout with this session.
            ExternalServiceError: If Stripe fails.
        """
        subscription = await crud.subscription.get_by_checkout_session(
            db, checkout_session_id=session_id
        )
        if subscription is None or subscription.tenant_id != ctx.tenant.id:
            raise NotFoundException(f"Checkout session {session_id} not found")

        session = await self.stripe.retrieve_checkout_session(session_id)
        return schemas.CheckoutVerification(
            session_id=session.id,
            session_status=session.status,
            payment_status=session.payment_status,
            customer_email=session.email,
            subscription=schemas.CheckoutSubscription.model_validate(
                subscription, from_attributes=True
            ),
        )

    async def list_prices(
        self, db: AsyncSession, billing_period: schemas.BillingPeriod
    ) -> list[schemas.CatalogPrice]:
        """Active plan prices of a billing period, cheapest first."""
        prices = await crud.price.get_catalog(db, billing_period=billing_period)
        return [
            schemas.CatalogPrice(
                price_id=price.external_price_id,
                plan_id=price.plan_id,
                billing_period=price.billing_period,
                amount=price.amount,
                currency=price.currency,
            )
            for price in prices
        ]

    # Cancellation

    async def cancel(
        self,
        db: AsyncSession,
        request: schemas.CancelRequest,
        ctx: ApiContext,
    ) -> schemas.CancellationSummary:
        """Cancel the tenant's subscription now or at the end of the period.

        Raises:
            NotFoundException: If there is no non-canceled subscription.
            InvalidStateError: If the cancellation does not apply to the current state.
            ExternalServiceError: If Stripe fails.
        """
        log = ctx.logger
        if request.immediately:
            trigger = Trigger.CANCEL_IMMEDIATELY
        else:
            trigger = Trigger.CANCEL_AT_PERIOD_END
        current = await self._get_current(db, ctx)
        self._ensure_cancelable(trigger, current)

        if current.external_subscription_id:
            await self.stripe.cancel_subscription(
                current.external_subscription_id, at_period_end=not request.immediately
            )

        now = utc_now_naive()
        metadata = {"reason": request.reason, "feedback": request.feedback}
        async with self.store.transaction(db, ctx.tenant.id, log) as tx:
            subscription = tx.subscription
            if subscription is None or subscription.id != current.id:
                raise InvalidStateError("Subscription changed while canceling, try again")
            self._ensure_cancelable(trigger, subscription)

            if request.immediately:
                refund, currency = await self._refund_for(db, subscription, now)
                await tx.transition(
                    trigger,
                    action=schemas.HistoryAction.CANCELED,
                    update=schemas.SubscriptionUpdate(
                        canceled_at=now,
                        ended_at=now,
                        cancel_at_period_end=False,
                        cancellation_reason=request.reason,
                    ),
                    actor=schemas.Actor.USER,
                    metadata={**metadata, "refund_amount": refund},
                )
                summary = schemas.CancellationSummary(
                    cancellation_type=schemas.CancellationType.IMMEDIATE,
                    canceled=True,
                    cancel_at_period_end=False,
                    current_period_end=subscription.current_period_end,
                    refund_amount=refund,
                    refund_currency=currency,
                    access_until=now,
                )
            else:
                await tx.transition(
                    trigger,
                    action=schemas.HistoryAction.CANCEL_SCHEDULED,
                    update=schemas.SubscriptionUpdate(
                        cancel_at_period_end=True, cancellation_reason=request.reason
                    ),
                    actor=schemas.Actor.USER,
                    metadata=metadata,
                )
                summary = schemas.CancellationSummary(
                    cancellation_type=schemas.CancellationType.AT_PERIOD_END,
                    canceled=False,
                    cancel_at_period_end=True,
                    current_period_end=subscription.current_period_end,
                    refund_amount=0,
                    refund_currency=subscription.currency,
                    access_until=subscription.current_period_end,
                )

        log.info(f"Canceled subscription {current.id} ({summary.cancellation_type.value})")
        return summary

    @staticmethod
    def _ensure_cancelable(trigger: Trigger, subscription: Subscription) -> None:
        decision = decide(trigger, SubscriptionStatus(subscription.status))
        if not decision.allowed:
            raise InvalidStateError(decision.reason)
        if trigger == Trigger.CANCEL_AT_PERIOD_END and subscription.cancel_at_period_end:
            raise InvalidStateError("Cancellation at period end is already scheduled")

    async def preview_cancel(
        self, db: AsyncSession, immediately: bool, ctx: ApiContext
    ) -> schemas.CancellationPreview:
        """Project a cancellation without changing anything."""
        now = utc_now_naive()
        subscription = await self._get_current(db, ctx)
        period_end = subscription.current_period_end
        days_left = days_until(period_end, now) if period_end else 0

        if immediately:
            refund, currency = await self._refund_for(db, subscription, now)
            cancellation_type = schemas.CancellationType.IMMEDIATE
            access_until: Optional[datetime] = now
        else:
            refund, currency = 0, subscription.currency
            cancellation_type = schemas.CancellationType.AT_PERIOD_END
            access_until = period_end

        return schemas.CancellationPreview(
            cancellation_type=cancellation_type,
            canceled=False,
            cancel_at_period_end=subscription.cancel_at_period_end,
            current_period_end=period_end,
            refund_amount=refund,
            refund_currency=currency,
            access_until=access_until,
            current_status=SubscriptionStatus(subscription.status),
            billing_period=schemas.BillingPeriod(subscription.billing_period),
            days_until_period_end=days_left,
            recommendation=self._recommend(days_left, refund, currency),
        )

    @staticmethod
    def _recommend(days_left: int, refund: int, currency: str) -> schemas.Recommendation:
        if days_left > _RECOMMEND_PERIOD_END_AFTER_DAYS:
            return schemas.Recommendation(
                suggested=schemas.CancellationType.AT_PERIOD_END,
                reasons=[
                    f"{days_left} days remain in the current period",
                    "You keep full access until the period ends",
                ],
            )
        reasons = [f"Only {days_left} days remain in the current period"]
        if refund > 0:
            reasons.append(f"A prorated refund of {refund / 100:.2f} {currency.upper()} applies")
        return schemas.Recommendation(
            suggested=schemas.CancellationType.IMMEDIATE, reasons=reasons
        )

    # Status

    async def get_status(
        self, db: AsyncSession, ctx: ApiContext
    ) -> schemas.SubscriptionStatusView:
        """Tenant billing status with its trial view and latest history entries."""
        tenant = await crud.tenant.get(db, ctx.tenant.id)
        if tenant is None:
            raise NotFoundException(f"Tenant {ctx.tenant.id} not found")
        subscription = await crud.subscription.get_latest_for_tenant(db, tenant_id=tenant.id)
        history = await self.ledger.recent_history(db, tenant.id, limit=10)

        status = (
            SubscriptionStatus(tenant.subscription_status) if tenant.subscription_status else None
        )
        return schemas.SubscriptionStatusView(
            status=status,
            plan_id=tenant.plan_id,
            pending_plan_id=tenant.pending_plan_id,
            billing_period=tenant.billing_period,
            is_active=status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIAL),
            is_canceled=status == SubscriptionStatus.CANCELED,
            is_past_due=status == SubscriptionStatus.PAST_DUE,
            cancel_at_period_end=tenant.cancel_at_period_end,
            current_period_end=subscription.current_period_end if subscription else None,
            access_until=tenant.access_until,
            trial=trial_status(tenant),
            history=[schemas.HistoryEntry.model_validate(entry) for entry in history],
        )

    async def get_trial_status(self, db: AsyncSession, ctx: ApiContext) -> schemas.TrialStatus:
        """Trial view of the tenant."""
        tenant = await crud.tenant.get(db, ctx.tenant.id)
        if tenant is None:
            raise NotFoundException(f"Tenant {ctx.tenant.id} not found")
        return trial_status(tenant)

    # Trial management

    async def extend_trial(
        self,
        db: AsyncSession,
        request: schemas.TrialExtendRequest,
        ctx: ApiContext,
    ) -> schemas.TrialStatus:
        """Push a running trial's end back by ``request.days``.

        Raises:
            NotFoundException: If there is no non-canceled subscription.
            InvalidStateError: If the subscription is not in trial.
            ExternalServiceError: If Stripe fails.
        """
        log = ctx.logger
        current = await self._get_current(db, ctx)
        if current.status != SubscriptionStatus.TRIAL.value:
            raise InvalidStateError(f"Cannot extend a trial from status {current.status}")

        now = utc_now_naive()
        previous_end = current.trial_end or now
        new_end = max(previous_end, now) + timedelta(days=request.days)

        if current.external_subscription_id:
            await self.stripe.extend_trial(current.external_subscription_id, to_timestamp(new_end))

        async with self.store.transaction(db, ctx.tenant.id, log) as tx:
            if tx.subscription is None or tx.subscription.id != current.id:
                raise InvalidStateError("Subscription changed while extending the trial")
            decision = await tx.transition(
                Trigger.TRIAL_EXTENDED,
                action=schemas.HistoryAction.TRIAL_EXTENDED,
                update=schemas.SubscriptionUpdate(trial_end=new_end, current_period_end=new_end),
                actor=schemas.Actor.USER,
                metadata={
                    "days": request.days,
                    "previous_trial_end": previous_end.isoformat(),
                },
            )
            if not decision.allowed:
                raise InvalidStateError(decision.reason)
            result = trial_status(tx.tenant, now)

        log.info(f"Extended trial of subscription {current.id} to {new_end.isoformat()}")
        return result


billing_service = BillingService()
