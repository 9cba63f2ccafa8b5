"""Payment model."""

from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from billflow.models._base import TenantBase


class Payment(TenantBase):
    """One provider invoice outcome. Immutable once written."""

    __tablename__ = "payment"

    subscription_id: Mapped[UUID] = mapped_column(
        ForeignKey("subscription.id", ondelete="CASCADE"), nullable=False, index=True
    )
    external_invoice_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    paid_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    event_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # An invoice can fail and later succeed, but each outcome is recorded once
    __table_args__ = (
        UniqueConstraint("external_invoice_id", "status", name="uq_payment_invoice_status"),
    )
