"""Per-tenant atomic access to the subscription aggregate.

Every change to a tenant's subscription goes through ``SubscriptionStateStore.transaction``:

```python
async with state_store.transaction(db, tenant_id) as tx:
    decision = await tx.transition(
        Trigger.PAYMENT_FAILED, action=schemas.HistoryAction.PAYMENT_FAILED, ...
    )
    await tx.mark_processed(event, schemas.DispatchOutcome.PROCESSED)
```

Inside the block the tenant and subscription rows are locked, the subscription
change, the mirrored tenant billing status, the ledger entries and the idempotency
record share one unit of work, and concurrent callers for the same tenant in this
process queue on an ``asyncio.Lock``. Callers for different tenants never contend.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Optional
from uuid import UUID
from weakref import WeakValueDictionary

from sqlalchemy.ext.asyncio import AsyncSession

from billflow import crud, schemas
from billflow.billing.audit_ledger import AuditLedger, audit_ledger
from billflow.billing.idempotency import IdempotencyGuard, idempotency_guard
from billflow.billing.state_machine import ORDERED_TRIGGERS, TransitionDecision, Trigger, decide
from billflow.core.exceptions import NotFoundException
from billflow.core.logging import ContextualLogger, logger
from billflow.db.unit_of_work import UnitOfWork
from billflow.models import HistoryEntry, Payment, Subscription, Tenant


class TenantLocks:
    """In-process mutual exclusion keyed by tenant.

    Locks are dropped once nobody holds or waits on them.
    """

    def __init__(self) -> None:
        """Initialize an empty lock registry."""
        self._locks: "WeakValueDictionary[UUID, asyncio.Lock]" = WeakValueDictionary()

    def get(self, tenant_id: UUID) -> asyncio.Lock:
        """Get (or create) the lock of a tenant."""
        lock = self._locks.get(tenant_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[tenant_id] = lock
        return lock


def _status(value: Optional[str]) -> Optional[schemas.SubscriptionStatus]:
    return schemas.SubscriptionStatus(value) if value is not None else None


class TenantTransaction:
    """Operations on one tenant's billing state within a single unit of work."""

    def __init__(
        self,
        db: AsyncSession,
        uow: UnitOfWork,
        tenant: Tenant,
        subscription: Optional[Subscription],
        ledger: AuditLedger,
        guard: IdempotencyGuard,
        log: ContextualLogger,
    ) -> None:
        """Initialize the transaction around an already locked tenant row."""
        self.db = db
        self.uow = uow
        self.tenant = tenant
        self.subscription = subscription
        self.ledger = ledger
        self.guard = guard
        self.log = log

    @property
    def status(self) -> Optional[schemas.SubscriptionStatus]:
        """Status of the subscription in scope, None if there is none."""
        return _status(self.subscription.status) if self.subscription else None

    async def use_external_subscription(
        self, external_subscription_id: str
    ) -> Optional[Subscription]:
        """Put the subscription with this provider ID in scope, locking its row.

        Falls back to the tenant's current subscription when no row carries the ID yet
        and the current one is not linked to another provider subscription (the
        provider confirmed a checkout we have only seen as ``incomplete``).
        """
        subscription = await crud.subscription.get_by_external_id(
            self.db, external_subscription_id=external_subscription_id, for_update=True
        )
        if subscription is not None:
            if subscription.tenant_id != self.tenant.id:
                self.log.warning(
                    f"Subscription {external_subscription_id} belongs to another tenant"
                )
                self.subscription = None
                return None
            self.subscription = subscription
            return subscription

        current = self.subscription
        if current is not None and current.external_subscription_id not in (
            None,
            external_subscription_id,
        ):
            self.subscription = None
        return self.subscription

    def is_stale(self, event_created: Optional[datetime]) -> bool:
        """Whether a provider event predates the last one applied to the subscription."""
        if self.subscription is None or event_created is None:
            return False
        last = self.subscription.last_event_at
        return last is not None and event_created < last

    async def create_subscription(
        self,
        obj_in: schemas.SubscriptionCreate,
        *,
        action: schemas.HistoryAction = schemas.HistoryAction.CREATED,
        actor: schemas.Actor = schemas.Actor.SYSTEM,
        event_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Subscription:
        """Create a subscription for the tenant and mirror it onto the tenant row."""
        subscription = await crud.subscription.create(self.db, obj_in=obj_in, uow=self.uow)
        self.subscription = subscription
        await self._mirror_tenant(subscription)
        await self.append_history(
            action,
            previous_status=None,
            new_status=_status(subscription.status),
            new_plan_id=subscription.plan_id,
            amount=subscription.amount,
            currency=subscription.currency,
            actor=actor,
            event_id=event_id,
            metadata=metadata,
        )
        return subscription

    async def transition(
        self,
        trigger: Trigger,
        *,
        action: Optional[schemas.HistoryAction],
        proposed: Optional[schemas.SubscriptionStatus] = None,
        update: Optional[schemas.SubscriptionUpdate] = None,
        actor: schemas.Actor = schemas.Actor.SYSTEM,
        event_id: Optional[str] = None,
        event_created: Optional[datetime] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> TransitionDecision:
        """Read the current status, validate the edge, and write the result.

        A disallowed decision leaves everything untouched and is returned as-is; the
        caller decides whether that is a rejection or an acknowledged no-op.

        Args:
            trigger: What happened.
            action: History action to append; None appends nothing.
            proposed: Provider-reported status, for triggers that mirror it.
            update: Further fields to merge along with the status.
            actor: Who caused the transition.
            event_id: Provider event ID, recorded on the history entry.
            event_created: Provider event timestamp; advances the ordering watermark
                for subscription lifecycle triggers only.
            metadata: Extra history entry metadata.

        Returns:
            TransitionDecision: The evaluated decision.
        """
        previous_status = self.status
        decision = decide(trigger, previous_status, proposed)
        if not decision.allowed:
            self.log.info(f"Transition {trigger.value} not applied: {decision.reason}")
            return decision

        subscription = self.subscription
        values = update.model_dump(exclude_unset=True) if update is not None else {}
        values["status"] = decision.new_status
        if event_created is not None and trigger in ORDERED_TRIGGERS:
            values["last_event_at"] = event_created
        merged = schemas.SubscriptionUpdate(**values)

        previous_plan_id = subscription.plan_id
        await crud.subscription.update(self.db, db_obj=subscription, obj_in=merged, uow=self.uow)
        await self._mirror_tenant(subscription)

        if action is not None:
            await self.append_history(
                action,
                previous_status=previous_status,
                new_status=decision.new_status,
                previous_plan_id=previous_plan_id,
                new_plan_id=subscription.plan_id,
                amount=subscription.amount,
                currency=subscription.currency,
                actor=actor,
                event_id=event_id,
                metadata={"trigger": trigger.value, **(metadata or {})},
            )

        prev = previous_status.value if previous_status else "none"
        self.log.info(
            f"Subscription {subscription.id} {prev} -> {decision.new_status.value} "
            f"({trigger.value})"
        )
        return decision

    async def record_payment(self, obj_in: schemas.PaymentCreate) -> Payment:
        """Record an immutable payment."""
        return await crud.payment.create(self.db, obj_in=obj_in, uow=self.uow)

    async def append_history(
        self,
        action: schemas.HistoryAction,
        *,
        previous_status: Optional[schemas.SubscriptionStatus] = None,
        new_status: Optional[schemas.SubscriptionStatus] = None,
        previous_plan_id: Optional[str] = None,
        new_plan_id: Optional[str] = None,
        amount: Optional[int] = None,
        currency: Optional[str] = None,
        actor: schemas.Actor = schemas.Actor.SYSTEM,
        event_id: Optional[str] = None,
        dedup_key: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> HistoryEntry:
        """Append a ledger entry for this tenant in the current unit of work."""
        entry = schemas.HistoryEntryCreate(
            tenant_id=self.tenant.id,
            subscription_id=self.subscription.id if self.subscription else None,
            action=action,
            previous_status=previous_status,
            new_status=new_status,
            previous_plan_id=previous_plan_id,
            new_plan_id=new_plan_id,
            amount=amount,
            currency=currency,
            event_id=event_id,
            dedup_key=dedup_key,
            entry_metadata=metadata or {},
            actor=actor,
        )
        return await self.ledger.append(self.db, entry, uow=self.uow)

    async def update_tenant(self, obj_in: schemas.TenantBillingUpdate) -> Tenant:
        """Apply a partial billing update to the tenant row."""
        return await crud.tenant.update_billing_status(
            self.db, db_obj=self.tenant, obj_in=obj_in, uow=self.uow
        )

    async def mark_processed(
        self, event: schemas.ProviderEvent, outcome: schemas.DispatchOutcome
    ) -> None:
        """Record the event as applied, committing with everything else in the block."""
        await self.guard.record(self.db, event, outcome, tenant_id=self.tenant.id, uow=self.uow)

    async def _mirror_tenant(self, subscription: Subscription) -> None:
        """Copy the subscription's billing state onto the tenant row.

        Only the tenant's current subscription is mirrored; late events for a
        subscription the tenant has since replaced leave the tenant untouched.
        """
        if (
            self.tenant.subscription_id is not None
            and self.tenant.subscription_id != subscription.id
            and subscription.status == schemas.SubscriptionStatus.CANCELED.value
        ):
            return

        status = schemas.SubscriptionStatus(subscription.status)
        values: dict[str, Any] = {
            "subscription_status": status,
            "billing_period": schemas.BillingPeriod(subscription.billing_period),
            "trial_end": (
                subscription.trial_end if status == schemas.SubscriptionStatus.TRIAL else None
            ),
            "subscription_id": subscription.id,
            "external_subscription_id": subscription.external_subscription_id,
            "cancel_at_period_end": subscription.cancel_at_period_end,
            "access_until": _access_until(subscription),
        }
        if status == schemas.SubscriptionStatus.INCOMPLETE:
            values["pending_plan_id"] = subscription.plan_id
        else:
            values["plan_id"] = subscription.plan_id
            values["pending_plan_id"] = None
        if subscription.external_customer_id:
            values["stripe_customer_id"] = subscription.external_customer_id

        await self.update_tenant(schemas.TenantBillingUpdate(**values))


def _access_until(subscription: Subscription) -> Optional[datetime]:
    """Until when the tenant keeps access under this subscription."""
    status = subscription.status
    if status == schemas.SubscriptionStatus.CANCELED.value:
        return subscription.ended_at or subscription.canceled_at
    if status == schemas.SubscriptionStatus.TRIAL.value and not subscription.cancel_at_period_end:
        return subscription.trial_end or subscription.current_period_end
    return subscription.current_period_end


class SubscriptionStateStore:
    """Owner of the subscription aggregate and the tenant billing status."""

    def __init__(
        self,
        locks: Optional[TenantLocks] = None,
        ledger: Optional[AuditLedger] = None,
        guard: Optional[IdempotencyGuard] = None,
    ) -> None:
        """Initialize the store.

        Args:
            locks: Per-tenant lock registry, shared by every caller in the process.
            ledger: Audit ledger used for history entries.
            guard: Idempotency guard used for processed events.
        """
        self.locks = locks or TenantLocks()
        self.ledger = ledger or audit_ledger
        self.guard = guard or idempotency_guard

    @asynccontextmanager
    async def transaction(
        self,
        db: AsyncSession,
        tenant_id: UUID,
        log: Optional[ContextualLogger] = None,
    ) -> AsyncIterator[TenantTransaction]:
        """Open an atomic, tenant-serialized section.

        Commits when the block exits cleanly and rolls back when it raises.

        Raises:
            NotFoundException: If the tenant does not exist.
            ConcurrentUpdateError: If another writer changed the subscription first.
        """
        log = log or logger.with_context(tenant_id=str(tenant_id))
        async with self.locks.get(tenant_id):
            async with UnitOfWork(db) as uow:
                tenant = await crud.tenant.get_for_update(db, tenant_id=tenant_id)
                if tenant is None:
                    raise NotFoundException(f"Tenant {tenant_id} not found")
                subscription = await crud.subscription.get_current_for_tenant(
                    db, tenant_id=tenant_id, for_update=True
                )
                yield TenantTransaction(
                    db, uow, tenant, subscription, self.ledger, self.guard, log
                )


state_store = SubscriptionStateStore()
