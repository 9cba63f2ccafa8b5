"""Subscription model."""

from datetime import datetime
from typing import TYPE_CHECKING, Optional

from sqlalchemy import Boolean, CheckConstraint, DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billflow.models._base import TenantBase

if TYPE_CHECKING:
    from billflow.models.tenant import Tenant


class Subscription(TenantBase):
    """One tenant-plan commitment.

    Never deleted: a subscription ends in the terminal ``canceled`` status. The
    ``version`` column is checked on every UPDATE, so two writers racing on the
    same row cannot both commit.
    """

    __tablename__ = "subscription"

    external_subscription_id: Mapped[Optional[str]] = mapped_column(
        String, nullable=True, unique=True
    )
    external_customer_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    checkout_session_id: Mapped[Optional[str]] = mapped_column(String, nullable=True, index=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False)
    plan_id: Mapped[str] = mapped_column(String(50), nullable=False)
    billing_period: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, default=0, nullable=False)  # minor units
    currency: Mapped[str] = mapped_column(String(3), default="usd", nullable=False)

    current_period_start: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=False), nullable=True
    )
    current_period_end: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=False), nullable=True
    )
    trial_start: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    trial_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)

    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    canceled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    # Provider-side creation time of the last applied provider-authoritative event
    last_event_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=False), nullable=True
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    tenant: Mapped["Tenant"] = relationship("Tenant", back_populates="subscriptions", lazy="noload")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_subscription_amount_non_negative"),
        Index("idx_subscription_tenant_status", "tenant_id", "status"),
    )
