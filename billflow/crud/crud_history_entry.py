"""CRUD operations for audit ledger history entries."""

from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billflow import schemas
from billflow.crud._base import CRUDBase
from billflow.models import HistoryEntry


class CRUDHistoryEntry(
    CRUDBase[HistoryEntry, schemas.HistoryEntryCreate, schemas.HistoryEntryCreate]
):
    """CRUD operations for history entries. Entries are append-only."""

    async def get_recent(
        self,
        db: AsyncSession,
        *,
        tenant_id: UUID,
        action: Optional[schemas.HistoryAction] = None,
        since: Optional[datetime] = None,
        limit: int = 10,
    ) -> list[HistoryEntry]:
        """Get a tenant's newest history entries.

        Args:
            db: Database session
            tenant_id: Tenant ID
            action: Only entries with this action
            since: Only entries created at or after this time (naive UTC)
            limit: Maximum number of entries

        Returns:
            Entries, newest first
        """
        query = select(HistoryEntry).where(HistoryEntry.tenant_id == tenant_id)
        if action is not None:
            query = query.where(HistoryEntry.action == action.value)
        if since is not None:
            query = query.where(HistoryEntry.created_at >= since)
        query = query.order_by(HistoryEntry.created_at.desc()).limit(limit)
        result = await db.execute(query)
        return list(result.scalars().all())

    async def get_by_event(self, db: AsyncSession, *, event_id: str) -> list[HistoryEntry]:
        """Get the entries a provider event produced."""
        query = (
            select(HistoryEntry)
            .where(HistoryEntry.event_id == event_id)
            .order_by(HistoryEntry.created_at.asc())
        )
        result = await db.execute(query)
        return list(result.scalars().all())


history_entry = CRUDHistoryEntry(HistoryEntry, immutable=True)
