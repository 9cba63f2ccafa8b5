"""History entry model for the billing audit ledger."""

from typing import Optional
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from billflow.models._base import TenantBase


class HistoryEntry(TenantBase):
    """Append-only record of a billing transition or notable billing event."""

    __tablename__ = "history_entry"

    subscription_id: Mapped[Optional[UUID]] = mapped_column(
        ForeignKey("subscription.id", ondelete="SET NULL"), nullable=True
    )

    action: Mapped[str] = mapped_column(String(50), nullable=False)
    previous_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    new_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    previous_plan_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    new_plan_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    amount: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(3), nullable=True)

    event_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    # e.g. trial_reminder:<tenant>:<offset>:<date>
    dedup_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, unique=True)
    entry_metadata: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    actor: Mapped[str] = mapped_column(String(20), default="system", nullable=False)

    __table_args__ = (
        Index("idx_history_entry_tenant_action", "tenant_id", "action", "created_at"),
    )
