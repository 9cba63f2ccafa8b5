"""Unit tests for the idempotency guard and the audit ledger."""

from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from billflow import crud, schemas
from billflow.billing.audit_ledger import AuditLedger
from billflow.billing.idempotency import IdempotencyGuard
from billflow.core.datetime_utils import utc_now_naive
from billflow.core.exceptions import ImmutableRecordError
from billflow.db.unit_of_work import UnitOfWork
from tests.helpers.stripe_events import invoice_object, make_event


@pytest.fixture
def guard():
    """Create an idempotency guard."""
    return IdempotencyGuard()


@pytest.fixture
def event():
    """Create a payment failure event."""
    return make_event("invoice.payment_failed", invoice_object(), event_id="evt_guarded")


class TestIdempotencyGuard:
    """Tests for IdempotencyGuard."""

    async def test_record_marks_event_processed(self, db, guard, event):
        """Test that a recorded event is reported as processed."""
        assert not await guard.is_processed(db, event.id)

        record = await guard.record(db, event, schemas.DispatchOutcome.PROCESSED)

        assert await guard.is_processed(db, event.id)
        assert record.outcome == "processed"
        assert record.event_type == "invoice.payment_failed"

    async def test_second_record_is_a_duplicate(self, db, guard, event):
        """Test that the unique event ID settles a race between two workers."""
        await guard.record(db, event, schemas.DispatchOutcome.PROCESSED)

        with pytest.raises(IntegrityError) as exc_info:
            await guard.record(db, event, schemas.DispatchOutcome.SKIPPED)
        await db.rollback()

        assert guard.is_duplicate(exc_info.value)

    async def test_record_rolls_back_with_its_unit_of_work(self, db, guard, event):
        """Test that a failed transaction leaves the event unprocessed."""
        with pytest.raises(RuntimeError):
            async with UnitOfWork(db) as uow:
                await guard.record(db, event, schemas.DispatchOutcome.PROCESSED, uow=uow)
                raise RuntimeError("handler failed")

        assert not await guard.is_processed(db, event.id)

    def test_other_integrity_errors_are_not_duplicates(self, guard):
        """Test that only the processed-event key counts as a duplicate."""
        error = IntegrityError(
            "INSERT", {}, Exception("UNIQUE constraint failed: history_entry.dedup_key")
        )
        assert not guard.is_duplicate(error)


class TestAuditLedger:
    """Tests for AuditLedger."""

    async def test_find_recent_filters_action_and_window(self, db, tenant_factory):
        """Test that only entries of the action within the window are returned."""
        ledger = AuditLedger()
        tenant = await tenant_factory()
        await ledger.append(
            db,
            schemas.HistoryEntryCreate(
                tenant_id=tenant.id,
                action=schemas.HistoryAction.TRIAL_REMINDER,
                entry_metadata={"offset": 3},
            ),
        )
        await ledger.append(
            db,
            schemas.HistoryEntryCreate(
                tenant_id=tenant.id, action=schemas.HistoryAction.PAYMENT_FAILED
            ),
        )

        recent = await ledger.find_recent(
            db, tenant.id, schemas.HistoryAction.TRIAL_REMINDER, timedelta(hours=24)
        )
        assert [entry.entry_metadata for entry in recent] == [{"offset": 3}]

        later = await ledger.find_recent(
            db,
            tenant.id,
            schemas.HistoryAction.TRIAL_REMINDER,
            timedelta(hours=24),
            now=utc_now_naive() + timedelta(days=2),
        )
        assert later == []

        assert len(await ledger.recent_history(db, tenant.id)) == 2

    async def test_entries_are_immutable(self, db, tenant_factory):
        """Test that history entries cannot be updated."""
        tenant = await tenant_factory()
        entry = await AuditLedger().append(
            db,
            schemas.HistoryEntryCreate(tenant_id=tenant.id, action=schemas.HistoryAction.UPDATED),
        )

        with pytest.raises(ImmutableRecordError):
            await crud.history_entry.update(db, db_obj=entry, obj_in={"action": "canceled"})
