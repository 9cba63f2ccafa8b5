"""CRUD operations for processed provider events."""

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billflow import schemas
from billflow.crud._base import CRUDBase
from billflow.models import ProcessedEvent


class CRUDProcessedEvent(
    CRUDBase[ProcessedEvent, schemas.ProcessedEventCreate, schemas.ProcessedEventCreate]
):
    """CRUD operations for processed events."""

    async def get_by_event_id(
        self, db: AsyncSession, *, event_id: str
    ) -> Optional[ProcessedEvent]:
        """Get the processed-event record of a provider event ID."""
        query = select(ProcessedEvent).where(ProcessedEvent.event_id == event_id)
        result = await db.execute(query)
        return result.scalar_one_or_none()


processed_event = CRUDProcessedEvent(ProcessedEvent, immutable=True)
