"""Append-only audit ledger of billing transitions."""

from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from billflow import crud, schemas
from billflow.core.datetime_utils import utc_now_naive
from billflow.db.unit_of_work import UnitOfWork
from billflow.models import HistoryEntry


class AuditLedger:
    """Writes and reads history entries.

    Entries are only ever appended. They are the record of what happened to a
    tenant's billing (and whether a reminder already went out), never the source of
    the current status, which lives on the tenant and subscription rows.
    """

    async def append(
        self,
        db: AsyncSession,
        entry: schemas.HistoryEntryCreate,
        uow: Optional[UnitOfWork] = None,
    ) -> HistoryEntry:
        """Append an entry, inside the caller's unit of work when one is given."""
        return await crud.history_entry.create(db, obj_in=entry, uow=uow)

    async def find_recent(
        self,
        db: AsyncSession,
        tenant_id: UUID,
        action: schemas.HistoryAction,
        window: timedelta,
        now: Optional[datetime] = None,
    ) -> list[HistoryEntry]:
        """Entries of ``action`` for a tenant created within ``window`` before ``now``."""
        since = (now or utc_now_naive()) - window
        return await crud.history_entry.get_recent(
            db, tenant_id=tenant_id, action=action, since=since, limit=100
        )

    async def recent_history(
        self, db: AsyncSession, tenant_id: UUID, limit: int = 10
    ) -> list[HistoryEntry]:
        """A tenant's newest entries, for status views."""
        return await crud.history_entry.get_recent(db, tenant_id=tenant_id, limit=limit)


audit_ledger = AuditLedger()
