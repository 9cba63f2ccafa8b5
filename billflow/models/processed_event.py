"""Processed provider event model backing the idempotency guard."""

from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from billflow.models._base import Base


class ProcessedEvent(Base):
    """Marks a provider event ID as already applied."""

    __tablename__ = "processed_event"

    event_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    tenant_id: Mapped[Optional[UUID]] = mapped_column(nullable=True)
    outcome: Mapped[str] = mapped_column(String(50), nullable=False)
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
