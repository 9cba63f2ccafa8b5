"""Dispatcher for provider (Stripe) billing events.

This module routes verified webhook events to handlers that apply them to the
tenant's subscription through the state store, exactly once per event ID.
"""

from dataclasses import dataclass, field
from typing import Any, Optional, Union
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from billflow import crud, schemas
from billflow.billing.event_parser import UnknownEventType, parse_event
from billflow.billing.idempotency import IdempotencyGuard, idempotency_guard
from billflow.billing.state_machine import Trigger, map_provider_status
from billflow.billing.state_store import (
    SubscriptionStateStore,
    TenantTransaction,
    state_store,
)
from billflow.core.datetime_utils import from_timestamp
from billflow.core.exceptions import (
    ExternalServiceError,
    MalformedEventError,
    NotFoundException,
)
from billflow.core.logging import ContextualLogger, logger
from billflow.db.unit_of_work import UnitOfWork
from billflow.integrations.notifier import NotificationKind, Notifier, notifier
from billflow.integrations.stripe_client import StripeClient, stripe_client

Outcome = schemas.DispatchOutcome


@dataclass
class EventContext:
    """Everything a handler needs to apply one event."""

    event: schemas.ProviderEvent
    tx: TenantTransaction
    log: ContextualLogger
    provider_subscription: Optional[schemas.SubscriptionData] = None
    notifications: list[tuple[NotificationKind, dict[str, Any]]] = field(default_factory=list)

    def notify(self, kind: NotificationKind, **payload: Any) -> None:
        """Queue a notification to send once the transaction has committed."""
        self.notifications.append((kind, {"email": self.tx.tenant.email, **payload}))


def _billing_period(interval: Optional[str]) -> schemas.BillingPeriod:
    if interval == "year":
        return schemas.BillingPeriod.ANNUAL
    return schemas.BillingPeriod.MONTHLY


def _provider_update(data: schemas.SubscriptionData) -> dict[str, Any]:
    """Fields a provider subscription payload carries authoritatively."""
    values: dict[str, Any] = {
        "external_subscription_id": data.id,
        "trial_start": from_timestamp(data.trial_start),
        "trial_end": from_timestamp(data.trial_end),
        "cancel_at_period_end": data.cancel_at_period_end,
    }
    if data.customer:
        values["external_customer_id"] = data.customer
    if data.period_start is not None:
        values["current_period_start"] = data.period_start
    if data.period_end is not None:
        values["current_period_end"] = data.period_end
    if data.amount is not None:
        values["amount"] = data.amount
    if data.currency:
        values["currency"] = data.currency
    if data.interval:
        values["billing_period"] = _billing_period(data.interval)
    if data.canceled_at is not None:
        values["canceled_at"] = from_timestamp(data.canceled_at)
    return values


class EventDispatcher:
    """Apply provider events to tenant billing state."""

    def __init__(
        self,
        store: Optional[SubscriptionStateStore] = None,
        guard: Optional[IdempotencyGuard] = None,
        provider: Optional[StripeClient] = None,
        sender: Optional[Notifier] = None,
    ):
        """Initialize the dispatcher."""
        self.store = store or state_store
        self.guard = guard or idempotency_guard
        self.provider = provider or stripe_client
        self.notifier = sender or notifier

        # Event handler mapping
        self.handlers = {
            schemas.ProviderEventType.CHECKOUT_SESSION_COMPLETED: self._handle_checkout_completed,
            schemas.ProviderEventType.SUBSCRIPTION_CREATED: self._handle_subscription_created,
            schemas.ProviderEventType.SUBSCRIPTION_UPDATED: self._handle_subscription_updated,
            schemas.ProviderEventType.SUBSCRIPTION_DELETED: self._handle_subscription_deleted,
            schemas.ProviderEventType.SUBSCRIPTION_TRIAL_WILL_END: self._handle_trial_will_end,
            schemas.ProviderEventType.INVOICE_PAYMENT_SUCCEEDED: self._handle_payment_succeeded,
            schemas.ProviderEventType.INVOICE_PAYMENT_FAILED: self._handle_payment_failed,
            schemas.ProviderEventType.INVOICE_UPCOMING: self._handle_invoice_upcoming,
        }

    def _create_context_logger(self, event: schemas.ProviderEvent) -> ContextualLogger:
        return logger.with_context(
            auth_method="stripe_webhook",
            event_type=event.type.value,
            stripe_event_id=event.id,
        )

    async def dispatch_raw(
        self, db: AsyncSession, payload: Union[bytes, str, dict[str, Any]]
    ) -> Outcome:
        """Parse a verified webhook body and dispatch it.

        Malformed bodies are rejected and unknown event types ignored; both are
        acknowledged since redelivering them cannot succeed.
        """
        try:
            event = parse_event(payload)
        except UnknownEventType as e:
            logger.info(f"Ignoring unhandled webhook event type {e.event_type} ({e.event_id})")
            return Outcome.IGNORED
        except MalformedEventError as e:
            logger.warning(f"Rejecting malformed webhook event {e.event_id}: {e.message}")
            return Outcome.REJECTED
        return await self.process_event(db, event)

    async def process_event(self, db: AsyncSession, event: schemas.ProviderEvent) -> Outcome:
        """Apply one event exactly once.

        Raises:
            ExternalServiceError: If a provider lookup needed by the handler failed.
            ConcurrentUpdateError: If the subscription changed underneath the handler.
        """
        log = self._create_context_logger(event)

        if await self.guard.is_processed(db, event.id):
            log.info(f"Duplicate webhook event {event.id}, already processed")
            return Outcome.DUPLICATE

        handler = self.handlers.get(event.type)
        if handler is None:
            log.info(f"Unhandled webhook event type: {event.type.value}")
            return Outcome.IGNORED

        tenant_id = await self._resolve_tenant(db, event)
        if tenant_id is None:
            log.warning(f"Could not resolve a tenant for {event.type.value} {event.id}")
            return await self._record_rejected(db, event, log)
        log = log.with_context(tenant_id=str(tenant_id))

        # Provider lookups happen before the tenant lock is taken
        provider_subscription = await self._prefetch(event, log)

        try:
            async with self.store.transaction(db, tenant_id, log) as tx:
                if await self.guard.is_processed(db, event.id):
                    log.info(f"Duplicate webhook event {event.id}, processed concurrently")
                    return Outcome.DUPLICATE
                ctx = EventContext(event, tx, log, provider_subscription)
                log.info(f"Processing webhook event: {event.type.value}")
                outcome = await handler(ctx)
                await tx.mark_processed(event, outcome)
        except IntegrityError as e:
            if self.guard.is_duplicate(e):
                log.info(f"Duplicate webhook event {event.id}, lost the race to record it")
                return Outcome.DUPLICATE
            log.error(f"Error handling {event.type.value}: {e}", exc_info=True)
            raise
        except MalformedEventError as e:
            log.warning(f"Rejecting {event.type.value} {event.id}: {e.message}")
            return Outcome.REJECTED
        except NotFoundException as e:
            log.warning(f"Rejecting {event.type.value} {event.id}: {e.message}")
            return Outcome.REJECTED
        except Exception as e:
            log.error(f"Error handling {event.type.value}: {e}", exc_info=True)
            raise

        log.info(f"Webhook event {event.id} {outcome.value}")
        await self._send_notifications(ctx.notifications, log)
        return outcome

    async def _resolve_tenant(
        self, db: AsyncSession, event: schemas.ProviderEvent
    ) -> Optional[UUID]:
        """Find the tenant an event belongs to.

        Metadata stamped at checkout first, then the subscription the event refers
        to, then the Stripe customer.
        """
        data = event.data
        tenant_id = data.tenant_id
        if tenant_id is not None and await crud.tenant.get(db, tenant_id) is not None:
            return tenant_id

        if isinstance(data, schemas.SubscriptionData):
            external_subscription_id: Optional[str] = data.id
        else:
            external_subscription_id = data.subscription
        if external_subscription_id:
            subscription = await crud.subscription.get_by_external_id(
                db, external_subscription_id=external_subscription_id
            )
            if subscription is not None:
                return subscription.tenant_id

        if data.customer:
            tenant = await crud.tenant.get_by_stripe_customer(
                db, stripe_customer_id=data.customer
            )
            if tenant is not None:
                return tenant.id
        return None

    async def _record_rejected(
        self, db: AsyncSession, event: schemas.ProviderEvent, log: ContextualLogger
    ) -> Outcome:
        """Remember an event nothing can be done with, so redelivery is a duplicate."""
        try:
            async with UnitOfWork(db) as uow:
                await self.guard.record(db, event, Outcome.REJECTED, uow=uow)
        except IntegrityError as e:
            if self.guard.is_duplicate(e):
                return Outcome.DUPLICATE
            raise
        log.info(f"Recorded {event.id} as rejected")
        return Outcome.REJECTED

    async def _prefetch(
        self, event: schemas.ProviderEvent, log: ContextualLogger
    ) -> Optional[schemas.SubscriptionData]:
        if event.type != schemas.ProviderEventType.CHECKOUT_SESSION_COMPLETED:
            return None
        session = event.data
        if not session.subscription:
            return None
        log.info(f"Retrieving subscription {session.subscription} for checkout {session.id}")
        return await self.provider.retrieve_subscription(session.subscription)

    async def _send_notifications(
        self,
        notifications: list[tuple[NotificationKind, dict[str, Any]]],
        log: ContextualLogger,
    ) -> None:
        """Best-effort delivery after commit; failures are logged, never raised."""
        for kind, payload in notifications:
            try:
                await self.notifier.send(kind, payload)
            except ExternalServiceError as e:
                log.warning(f"Failed to send {kind.value} notification: {e.message}")

    async def _resolve_plan(
        self, ctx: EventContext, data: schemas.SubscriptionData
    ) -> Optional[str]:
        plan_id = data.metadata.get("plan_id")
        if plan_id:
            return plan_id
        item = data.first_item
        if item and item.price and item.price.id:
            price = await crud.price.get_by_external_id(
                ctx.tx.db, external_price_id=item.price.id
            )
            if price is not None:
                return price.plan_id
        return ctx.tx.tenant.pending_plan_id or ctx.tx.tenant.plan_id

    # Event handlers

    async def _handle_checkout_completed(self, ctx: EventContext) -> Outcome:
        """Confirm a checkout started here: incomplete -> trial or active."""
        session: schemas.CheckoutSessionData = ctx.event.data
        tx, log = ctx.tx, ctx.log

        provider_sub = ctx.provider_subscription
        if not session.subscription or provider_sub is None:
            log.info(f"Checkout session {session.id} created no subscription")
            return Outcome.SKIPPED

        subscription = await tx.use_external_subscription(session.subscription)
        if subscription is None:
            log.warning(f"No local subscription awaits checkout session {session.id}")
            return Outcome.SKIPPED
        if subscription.checkout_session_id not in (None, session.id):
            log.warning(
                f"Checkout session {session.id} was superseded by "
                f"{subscription.checkout_session_id}; not linking {session.subscription}"
            )
            return Outcome.SKIPPED

        proposed = map_provider_status(provider_sub.status)
        values = _provider_update(provider_sub)
        values["external_subscription_id"] = session.subscription
        if session.customer:
            values["external_customer_id"] = session.customer

        action = (
            schemas.HistoryAction.TRIAL_STARTED
            if proposed == schemas.SubscriptionStatus.TRIAL
            else schemas.HistoryAction.UPDATED
        )
        decision = await tx.transition(
            Trigger.CHECKOUT_COMPLETED,
            action=action,
            proposed=proposed,
            update=schemas.SubscriptionUpdate(**values),
            actor=schemas.Actor.PROVIDER,
            event_id=ctx.event.id,
            metadata={"checkout_session_id": session.id},
        )
        if not decision.allowed:
            return Outcome.SKIPPED

        trial_end = subscription.trial_end
        ctx.notify(
            NotificationKind.WELCOME,
            plan_id=subscription.plan_id,
            trial_end=trial_end.date().isoformat() if trial_end else None,
        )
        return Outcome.PROCESSED

    async def _handle_subscription_created(self, ctx: EventContext) -> Outcome:
        """Mirror a new provider subscription, creating the local row if needed."""
        data: schemas.SubscriptionData = ctx.event.data
        tx, log = ctx.tx, ctx.log
        proposed = map_provider_status(data.status)

        subscription = await tx.use_external_subscription(data.id)
        if subscription is not None:
            return await self._apply_provider_state(
                ctx, Trigger.SUBSCRIPTION_CREATED, data, proposed
            )

        current = await crud.subscription.get_current_for_tenant(tx.db, tenant_id=tx.tenant.id)
        if current is not None:
            log.warning(
                f"Tenant already has subscription {current.id}; not adopting {data.id}"
            )
            return Outcome.SKIPPED

        plan_id = await self._resolve_plan(ctx, data)
        if not plan_id:
            log.warning(f"Cannot determine the plan of subscription {data.id}")
            return Outcome.SKIPPED

        values = _provider_update(data)
        values.pop("canceled_at", None)
        values.setdefault("billing_period", schemas.BillingPeriod.MONTHLY)
        await tx.create_subscription(
            schemas.SubscriptionCreate(
                tenant_id=tx.tenant.id,
                status=proposed,
                plan_id=plan_id,
                last_event_at=ctx.event.created,
                **values,
            ),
            actor=schemas.Actor.PROVIDER,
            event_id=ctx.event.id,
        )
        return Outcome.PROCESSED

    async def _handle_subscription_updated(self, ctx: EventContext) -> Outcome:
        """Mirror provider subscription state."""
        data: schemas.SubscriptionData = ctx.event.data
        proposed = map_provider_status(data.status)

        subscription = await ctx.tx.use_external_subscription(data.id)
        if subscription is None:
            ctx.log.info(f"No local subscription for {data.id}")
            return Outcome.SKIPPED
        return await self._apply_provider_state(ctx, Trigger.SUBSCRIPTION_UPDATED, data, proposed)

    async def _apply_provider_state(
        self,
        ctx: EventContext,
        trigger: Trigger,
        data: schemas.SubscriptionData,
        proposed: schemas.SubscriptionStatus,
    ) -> Outcome:
        tx = ctx.tx
        if tx.is_stale(ctx.event.created):
            ctx.log.info(
                f"Skipping {ctx.event.id}: older than the last applied event for {data.id}"
            )
            return Outcome.SKIPPED

        values = _provider_update(data)
        if proposed == schemas.SubscriptionStatus.CANCELED:
            action = schemas.HistoryAction.CANCELED
            values.setdefault("canceled_at", ctx.event.created)
            values["ended_at"] = from_timestamp(data.ended_at) or ctx.event.created
        elif data.cancel_at_period_end and not tx.subscription.cancel_at_period_end:
            action = schemas.HistoryAction.CANCEL_SCHEDULED
        else:
            action = schemas.HistoryAction.UPDATED

        decision = await tx.transition(
            trigger,
            action=action,
            proposed=proposed,
            update=schemas.SubscriptionUpdate(**values),
            actor=schemas.Actor.PROVIDER,
            event_id=ctx.event.id,
            event_created=ctx.event.created,
            metadata={"provider_status": data.status},
        )
        if not decision.allowed:
            return Outcome.SKIPPED

        if decision.previous_status == schemas.SubscriptionStatus.INCOMPLETE and (
            decision.new_status
            in (schemas.SubscriptionStatus.TRIAL, schemas.SubscriptionStatus.ACTIVE)
        ):
            ctx.notify(NotificationKind.WELCOME, plan_id=tx.subscription.plan_id)
        elif decision.new_status == schemas.SubscriptionStatus.CANCELED:
            ctx.notify(NotificationKind.SUBSCRIPTION_CANCELED)
        return Outcome.PROCESSED

    async def _handle_subscription_deleted(self, ctx: EventContext) -> Outcome:
        """Cancel the subscription; the provider no longer bills it.

        Deletion is final at the provider, so it applies regardless of event order.
        The period bounds stay as they were.
        """
        data: schemas.SubscriptionData = ctx.event.data
        tx = ctx.tx

        subscription = await tx.use_external_subscription(data.id)
        if subscription is None:
            ctx.log.info(f"No local subscription for deleted {data.id}")
            return Outcome.SKIPPED

        decision = await tx.transition(
            Trigger.SUBSCRIPTION_DELETED,
            action=schemas.HistoryAction.CANCELED,
            update=schemas.SubscriptionUpdate(
                canceled_at=from_timestamp(data.canceled_at) or ctx.event.created,
                ended_at=from_timestamp(data.ended_at) or ctx.event.created,
                cancel_at_period_end=False,
            ),
            actor=schemas.Actor.PROVIDER,
            event_id=ctx.event.id,
            event_created=ctx.event.created,
        )
        if not decision.allowed:
            return Outcome.SKIPPED

        ctx.notify(
            NotificationKind.SUBSCRIPTION_CANCELED,
            access_until=(
                tx.tenant.access_until.date().isoformat() if tx.tenant.access_until else None
            ),
        )
        return Outcome.PROCESSED

    async def _handle_trial_will_end(self, ctx: EventContext) -> Outcome:
        """Note the provider's trial-ending heads-up; reminders are sent by the sweep."""
        data: schemas.SubscriptionData = ctx.event.data
        tx = ctx.tx

        subscription = await tx.use_external_subscription(data.id)
        if subscription is None:
            return Outcome.SKIPPED

        trial_end = from_timestamp(data.trial_end)
        await tx.append_history(
            schemas.HistoryAction.TRIAL_ENDING,
            previous_status=tx.status,
            new_status=tx.status,
            actor=schemas.Actor.PROVIDER,
            event_id=ctx.event.id,
            metadata={"trial_end": trial_end.isoformat() if trial_end else None},
        )
        return Outcome.PROCESSED

    async def _subscription_for_invoice(
        self, ctx: EventContext, invoice: schemas.InvoiceData
    ) -> bool:
        if invoice.subscription:
            return await ctx.tx.use_external_subscription(invoice.subscription) is not None
        return ctx.tx.subscription is not None

    async def _handle_payment_succeeded(self, ctx: EventContext) -> Outcome:
        """Record the payment; a paid trial or past-due subscription becomes active."""
        invoice: schemas.InvoiceData = ctx.event.data
        tx, log = ctx.tx, ctx.log

        if not await self._subscription_for_invoice(ctx, invoice):
            log.info(f"No local subscription for invoice {invoice.id}")
            return Outcome.SKIPPED

        if invoice.id and await crud.payment.get_by_invoice(
            tx.db, external_invoice_id=invoice.id, status=schemas.PaymentStatus.SUCCEEDED
        ):
            log.info(f"Invoice {invoice.id} payment already recorded")
            return Outcome.SKIPPED

        previous_status = tx.status
        metadata = {"invoice_id": invoice.id, "billing_reason": invoice.billing_reason}

        # The $0 invoice opening a trial is not a conversion
        if previous_status == schemas.SubscriptionStatus.TRIAL and invoice.amount_paid == 0:
            await self._record_payment(ctx, invoice, schemas.PaymentStatus.SUCCEEDED)
            await tx.append_history(
                schemas.HistoryAction.PAYMENT_SUCCEEDED,
                previous_status=previous_status,
                new_status=previous_status,
                amount=0,
                currency=invoice.currency,
                actor=schemas.Actor.PROVIDER,
                event_id=ctx.event.id,
                metadata=metadata,
            )
            return Outcome.PROCESSED

        decision = await tx.transition(
            Trigger.PAYMENT_SUCCEEDED,
            action=schemas.HistoryAction.PAYMENT_SUCCEEDED,
            actor=schemas.Actor.PROVIDER,
            event_id=ctx.event.id,
            metadata={**metadata, "amount_paid": invoice.amount_paid},
        )
        if not decision.allowed:
            return Outcome.SKIPPED

        await self._record_payment(ctx, invoice, schemas.PaymentStatus.SUCCEEDED)
        if previous_status == schemas.SubscriptionStatus.TRIAL:
            await tx.append_history(
                schemas.HistoryAction.TRIAL_CONVERTED,
                previous_status=previous_status,
                new_status=decision.new_status,
                new_plan_id=tx.subscription.plan_id,
                amount=invoice.amount_paid,
                currency=invoice.currency,
                actor=schemas.Actor.PROVIDER,
                event_id=ctx.event.id,
                metadata={"converted_automatically": False, "invoice_id": invoice.id},
            )

        ctx.notify(
            NotificationKind.PAYMENT_SUCCEEDED,
            amount=invoice.amount_paid,
            currency=invoice.currency,
        )
        return Outcome.PROCESSED

    async def _handle_payment_failed(self, ctx: EventContext) -> Outcome:
        """Move an active or trialing subscription to past_due."""
        invoice: schemas.InvoiceData = ctx.event.data
        tx, log = ctx.tx, ctx.log

        if not await self._subscription_for_invoice(ctx, invoice):
            log.info(f"No local subscription for invoice {invoice.id}")
            return Outcome.SKIPPED

        decision = await tx.transition(
            Trigger.PAYMENT_FAILED,
            action=schemas.HistoryAction.PAYMENT_FAILED,
            actor=schemas.Actor.PROVIDER,
            event_id=ctx.event.id,
            metadata={
                "invoice_id": invoice.id,
                "amount_due": invoice.amount_due,
                "attempt_count": invoice.attempt_count,
                "next_payment_attempt": invoice.next_payment_attempt,
            },
        )
        if not decision.allowed:
            return Outcome.SKIPPED

        if invoice.id and not await crud.payment.get_by_invoice(
            tx.db, external_invoice_id=invoice.id, status=schemas.PaymentStatus.FAILED
        ):
            await self._record_payment(ctx, invoice, schemas.PaymentStatus.FAILED)

        ctx.notify(
            NotificationKind.PAYMENT_FAILED,
            amount=invoice.amount_due,
            currency=invoice.currency,
        )
        return Outcome.PROCESSED

    async def _handle_invoice_upcoming(self, ctx: EventContext) -> Outcome:
        """Note an upcoming renewal in the ledger."""
        invoice: schemas.InvoiceData = ctx.event.data
        tx = ctx.tx

        if not await self._subscription_for_invoice(ctx, invoice):
            return Outcome.SKIPPED

        await tx.append_history(
            schemas.HistoryAction.RENEWAL_UPCOMING,
            previous_status=tx.status,
            new_status=tx.status,
            amount=invoice.amount_due,
            currency=invoice.currency,
            actor=schemas.Actor.PROVIDER,
            event_id=ctx.event.id,
        )
        return Outcome.PROCESSED

    async def _record_payment(
        self,
        ctx: EventContext,
        invoice: schemas.InvoiceData,
        status: schemas.PaymentStatus,
    ) -> None:
        if status == schemas.PaymentStatus.SUCCEEDED:
            amount = invoice.amount_paid
        else:
            amount = invoice.amount_due
        await ctx.tx.record_payment(
            schemas.PaymentCreate(
                tenant_id=ctx.tx.tenant.id,
                subscription_id=ctx.tx.subscription.id,
                external_invoice_id=invoice.id,
                amount=amount,
                currency=invoice.currency,
                status=status,
                paid_at=ctx.event.created,
                event_id=ctx.event.id,
            )
        )


event_dispatcher = EventDispatcher()
