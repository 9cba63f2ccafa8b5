"""Processed event schemas."""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel

from billflow.schemas.events import DispatchOutcome


class ProcessedEventCreate(BaseModel):
    """Marks a provider event as applied."""

    event_id: str
    event_type: str
    tenant_id: Optional[UUID] = None
    outcome: DispatchOutcome
    processed_at: datetime
