"""Tenant model with its denormalized billing status."""

from datetime import datetime
from typing import TYPE_CHECKING, Optional
from uuid import UUID

from sqlalchemy import Boolean, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billflow.models._base import Base

if TYPE_CHECKING:
    from billflow.models.subscription import Subscription


class Tenant(Base):
    """Tenant record.

    The billing columns mirror the tenant's most recent subscription transition and
    are written in the same transaction as that transition, so reads never have to
    derive status from the history log.
    """

    __tablename__ = "tenant"

    name: Mapped[str] = mapped_column(String, nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    stripe_customer_id: Mapped[Optional[str]] = mapped_column(
        String, nullable=True, unique=True, index=True
    )

    # None until the tenant opens a first checkout
    subscription_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    plan_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    pending_plan_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    billing_period: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    trial_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    subscription_id: Mapped[Optional[UUID]] = mapped_column(nullable=True)
    external_subscription_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    access_until: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=False), nullable=True
    )

    subscriptions: Mapped[list["Subscription"]] = relationship(
        "Subscription", back_populates="tenant", lazy="noload"
    )
