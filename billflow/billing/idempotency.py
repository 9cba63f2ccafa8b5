"""Idempotency guard for provider webhook events."""

from typing import Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from billflow import crud, schemas
from billflow.core.datetime_utils import utc_now_naive
from billflow.db.unit_of_work import UnitOfWork
from billflow.models import ProcessedEvent


class IdempotencyGuard:
    """Tracks which provider event IDs already produced their effect.

    The record is written in the same unit of work as the mutation it guards, so a
    failed transaction leaves the event unprocessed and a retry starts clean. The
    unique constraint on ``event_id`` settles two workers racing on the same event.
    """

    async def is_processed(self, db: AsyncSession, event_id: str) -> bool:
        """Whether an event ID has already been applied."""
        record = await crud.processed_event.get_by_event_id(db, event_id=event_id)
        return record is not None

    async def record(
        self,
        db: AsyncSession,
        event: schemas.ProviderEvent,
        outcome: schemas.DispatchOutcome,
        tenant_id: Optional[UUID] = None,
        uow: Optional[UnitOfWork] = None,
    ) -> ProcessedEvent:
        """Mark an event as applied with the given outcome."""
        return await crud.processed_event.create(
            db,
            obj_in=schemas.ProcessedEventCreate(
                event_id=event.id,
                event_type=event.type.value,
                tenant_id=tenant_id,
                outcome=outcome,
                processed_at=utc_now_naive(),
            ),
            uow=uow,
        )

    @staticmethod
    def is_duplicate(exc: IntegrityError) -> bool:
        """Whether an integrity error is the processed-event unique key firing."""
        message = str(exc.orig) if exc.orig is not None else str(exc)
        return "processed_event" in message


idempotency_guard = IdempotencyGuard()
