"""Reconciliation sweep.

Periodically walks tenants whose billing state depends on the clock: trials
approaching their end get reminders, trials past their end are converted when the
provider webhook never arrived, and subscriptions flagged to cancel at period end
are finalized once the period is over.
"""

import asyncio
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, Iterable, Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billflow import crud, schemas
from billflow.billing.audit_ledger import AuditLedger, audit_ledger
from billflow.billing.proration import days_until
from billflow.billing.state_machine import Trigger
from billflow.billing.state_store import (
    SubscriptionStateStore,
    TenantTransaction,
    state_store,
)
from billflow.core.config import settings
from billflow.core.datetime_utils import utc_now_naive
from billflow.core.logging import ContextualLogger, LoggerConfigurator
from billflow.db.session import AsyncSessionLocal
from billflow.integrations.notifier import NotificationKind, Notifier, notifier

REMINDER_OFFSETS = frozenset({7, 3, 1, 0})
REMINDER_DEDUP_WINDOW = timedelta(hours=24)

logger = LoggerConfigurator.configure_logger(
    __name__, dimensions={"component": "reconciliation_sweep"}
)


class _TenantOutcome(str, Enum):
    NOTHING = "nothing"
    REMINDED = "reminded"
    CONVERTED = "converted"
    FINALIZED = "finalized"
    SKIPPED = "skipped"
    FAILED = "failed"


def reminder_dedup_key(tenant_id: UUID, offset: int, now: datetime) -> str:
    """Key allowing one reminder per tenant, offset and day."""
    return f"trial_reminder:{tenant_id}:{offset}:{now.date().isoformat()}"


class ReconciliationSweep:
    """One pass over clock-driven billing state.

    Tenants are processed independently, each in its own session and under its own
    tenant lock, at most ``max_concurrency`` at a time. A failure for one tenant is
    logged and counted and never stops the pass.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        store: Optional[SubscriptionStateStore] = None,
        sender: Optional[Notifier] = None,
        ledger: Optional[AuditLedger] = None,
        max_concurrency: Optional[int] = None,
    ):
        """Initialize the sweep.

        Args:
            session_factory: Creates one session per tenant; defaults to AsyncSessionLocal.
            store: State store used for every change.
            sender: Notifier used for trial reminders.
            ledger: Audit ledger consulted for reminder dedup.
            max_concurrency: Tenants processed at once; defaults to SWEEP_MAX_CONCURRENCY.
        """
        self.session_factory = session_factory or AsyncSessionLocal
        self.store = store or state_store
        self.notifier = sender or notifier
        self.ledger = ledger or audit_ledger
        self.max_concurrency = max_concurrency or settings.SWEEP_MAX_CONCURRENCY

    async def run(self, now: Optional[datetime] = None) -> schemas.ReconciliationResult:
        """Run one pass.

        Args:
            now: Reference time, naive UTC; defaults to the current time.

        Returns:
            schemas.ReconciliationResult: What the pass did.
        """
        now = now or utc_now_naive()
        async with self.session_factory() as db:
            due = await crud.subscription.get_due_for_period_end_cancel(db, now=now)
            due_tenants = list(dict.fromkeys(subscription.tenant_id for subscription in due))
            trial_tenants = [tenant.id for tenant in await crud.tenant.get_in_trial(db)]

        logger.info(
            f"Sweep started: {len(trial_tenants)} trial tenants, "
            f"{len(due_tenants)} subscriptions past a scheduled cancellation"
        )
        semaphore = asyncio.Semaphore(self.max_concurrency)

        # Finalize first so a trial canceled at period end is never converted
        outcomes = await self._for_each(semaphore, due_tenants, self._finalize_period_end, now)
        outcomes += await self._for_each(semaphore, trial_tenants, self._reconcile_trial, now)

        result = schemas.ReconciliationResult(
            tenants_scanned=len(set(due_tenants) | set(trial_tenants)),
            reminders_sent=outcomes.count(_TenantOutcome.REMINDED),
            trials_converted=outcomes.count(_TenantOutcome.CONVERTED),
            cancellations_finalized=outcomes.count(_TenantOutcome.FINALIZED),
            skipped=outcomes.count(_TenantOutcome.SKIPPED),
            failed=outcomes.count(_TenantOutcome.FAILED),
        )
        logger.info(f"Sweep finished: {result.model_dump()}")
        return result

    async def _for_each(
        self,
        semaphore: asyncio.Semaphore,
        tenant_ids: Iterable[UUID],
        step: Callable[[AsyncSession, UUID, datetime, ContextualLogger], Awaitable[_TenantOutcome]],
        now: datetime,
    ) -> list[_TenantOutcome]:
        async def _guarded(tenant_id: UUID) -> _TenantOutcome:
            log = logger.with_context(tenant_id=str(tenant_id))
            async with semaphore:
                try:
                    async with self.session_factory() as db:
                        return await step(db, tenant_id, now, log)
                except Exception as e:
                    log.error(f"Sweep failed for tenant {tenant_id}: {e}", exc_info=True)
                    return _TenantOutcome.FAILED

        return list(await asyncio.gather(*(_guarded(tenant_id) for tenant_id in tenant_ids)))

    # Trials

    async def _reconcile_trial(
        self, db: AsyncSession, tenant_id: UUID, now: datetime, log: ContextualLogger
    ) -> _TenantOutcome:
        async with self.store.transaction(db, tenant_id, log) as tx:
            tenant = tx.tenant
            trial_end = tenant.trial_end
            if tenant.subscription_status != schemas.SubscriptionStatus.TRIAL.value:
                return _TenantOutcome.NOTHING
            if trial_end is None:
                return _TenantOutcome.NOTHING
            if trial_end < now:
                return await self._convert_expired_trial(tx, log)

            days_left = days_until(trial_end, now)
            if days_left not in REMINDER_OFFSETS:
                return _TenantOutcome.NOTHING
            recent = await self.ledger.find_recent(
                tx.db,
                tenant_id,
                schemas.HistoryAction.TRIAL_REMINDER,
                REMINDER_DEDUP_WINDOW,
                now=now,
            )
            if any((entry.entry_metadata or {}).get("offset") == days_left for entry in recent):
                log.debug(f"Trial reminder for offset {days_left} already sent")
                return _TenantOutcome.SKIPPED
            payload = {
                "email": tenant.email,
                "days_left": days_left,
                "plan_id": tenant.plan_id,
                "trial_end": trial_end.date().isoformat(),
            }

        # The tenant lock is released before the network call
        return await self._send_reminder(db, tenant_id, payload, trial_end, now, log)

    async def _send_reminder(
        self,
        db: AsyncSession,
        tenant_id: UUID,
        payload: dict,
        trial_end: datetime,
        now: datetime,
        log: ContextualLogger,
    ) -> _TenantOutcome:
        """Send a due reminder, then record it.

        Nothing is recorded for a reminder that was not sent, so the next pass retries
        it. A reminder whose record fails to commit is sent again by the next pass.
        """
        days_left = payload["days_left"]
        sent = await self.notifier.send(NotificationKind.TRIAL_REMINDER, payload)
        if not sent:
            log.info("Trial reminder not sent, nothing recorded")
            return _TenantOutcome.SKIPPED

        try:
            async with self.store.transaction(db, tenant_id, log) as tx:
                await tx.append_history(
                    schemas.HistoryAction.TRIAL_REMINDER,
                    previous_status=schemas.SubscriptionStatus.TRIAL,
                    new_status=schemas.SubscriptionStatus.TRIAL,
                    actor=schemas.Actor.SWEEP,
                    dedup_key=reminder_dedup_key(tenant_id, days_left, now),
                    metadata={"offset": days_left, "trial_end": trial_end.isoformat()},
                )
        except IntegrityError as e:
            if "history_entry" not in str(e.orig):
                raise
            log.warning(f"Trial reminder for offset {days_left} also sent by a concurrent sweep")

        log.info(f"Sent trial reminder, {days_left} days left")
        return _TenantOutcome.REMINDED

    async def _convert_expired_trial(
        self, tx: TenantTransaction, log: ContextualLogger
    ) -> _TenantOutcome:
        """Self-heal a trial the provider should already have converted.

        A trial with no provider subscription was never checked out and is left for
        investigation rather than granted a paid status.
        """
        subscription = tx.subscription
        if subscription is None or not subscription.external_subscription_id:
            log.warning("Trial expired without a provider subscription, leaving it for review")
            return _TenantOutcome.SKIPPED
        if subscription.cancel_at_period_end:
            return _TenantOutcome.NOTHING

        decision = await tx.transition(
            Trigger.TRIAL_EXPIRED,
            action=schemas.HistoryAction.TRIAL_CONVERTED,
            actor=schemas.Actor.SWEEP,
            metadata={"converted_automatically": True},
        )
        if not decision.allowed:
            return _TenantOutcome.SKIPPED
        return _TenantOutcome.CONVERTED

    # Scheduled cancellations

    async def _finalize_period_end(
        self, db: AsyncSession, tenant_id: UUID, now: datetime, log: ContextualLogger
    ) -> _TenantOutcome:
        async with self.store.transaction(db, tenant_id, log) as tx:
            subscription = tx.subscription
            if (
                subscription is None
                or not subscription.cancel_at_period_end
                or subscription.current_period_end is None
                or subscription.current_period_end > now
            ):
                return _TenantOutcome.NOTHING

            decision = await tx.transition(
                Trigger.PERIOD_END_REACHED,
                action=schemas.HistoryAction.CANCELED,
                update=schemas.SubscriptionUpdate(
                    canceled_at=subscription.canceled_at or now,
                    ended_at=subscription.current_period_end,
                ),
                actor=schemas.Actor.SWEEP,
            )
            if not decision.allowed:
                return _TenantOutcome.SKIPPED
            return _TenantOutcome.FINALIZED


class ReconciliationScheduler:
    """Runs the sweep on a fixed interval.

    ``stop`` is cooperative: no new pass starts, and a pass in flight completes.
    """

    def __init__(
        self,
        sweep: Optional[ReconciliationSweep] = None,
        interval: Optional[float] = None,
    ):
        """Initialize the scheduler."""
        self.sweep = sweep or reconciliation_sweep
        self.interval = interval or settings.RECONCILIATION_INTERVAL_SECONDS
        self.running = False
        self.task: Optional[asyncio.Task] = None
        self._wake: Optional[asyncio.Event] = None

    async def start(self) -> None:
        """Start the scheduler."""
        if self.running:
            logger.warning("Reconciliation scheduler is already running")
            return

        self.running = True
        self._wake = asyncio.Event()
        self.task = asyncio.create_task(self._scheduler_loop())
        logger.info(f"Reconciliation scheduler started, interval {self.interval}s")

    async def stop(self) -> None:
        """Stop the scheduler, letting a pass in flight finish."""
        if not self.running:
            logger.warning("Reconciliation scheduler is not running")
            return

        self.running = False
        if self._wake is not None:
            self._wake.set()
        if self.task:
            await self.task
            self.task = None
        logger.info("Reconciliation scheduler stopped")

    async def _scheduler_loop(self) -> None:
        """Main scheduler loop."""
        while self.running:
            try:
                await self.sweep.run()
            except Exception as e:
                logger.error(f"Error in reconciliation scheduler loop: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass


reconciliation_sweep = ReconciliationSweep()
reconciliation_scheduler = ReconciliationScheduler()
