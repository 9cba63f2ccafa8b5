"""Subscription schemas."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field, model_validator


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle status."""

    INCOMPLETE = "incomplete"
    TRIAL = "trial"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class BillingPeriod(str, Enum):
    """Billing interval of a plan price."""

    MONTHLY = "monthly"
    ANNUAL = "annual"


class SubscriptionBase(BaseModel):
    """Subscription base schema."""

    plan_id: str = Field(..., description="Plan identifier")
    billing_period: BillingPeriod = Field(..., description="Billing interval")
    amount: int = Field(0, ge=0, description="Price per period in minor currency units")
    currency: str = Field("usd", min_length=3, max_length=3, description="ISO currency code")


class SubscriptionCreate(SubscriptionBase):
    """Subscription creation schema."""

    tenant_id: UUID
    status: SubscriptionStatus = SubscriptionStatus.INCOMPLETE
    external_subscription_id: Optional[str] = None
    external_customer_id: Optional[str] = None
    checkout_session_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    last_event_at: Optional[datetime] = None


_REQUIRED_ON_MERGE = ("status", "plan_id", "billing_period", "amount", "currency")


class SubscriptionUpdate(BaseModel):
    """Explicit partial update of a subscription.

    Only fields that were set are merged (``exclude_unset``). Columns that may not be
    null cannot be cleared through an update.
    """

    status: Optional[SubscriptionStatus] = None
    plan_id: Optional[str] = None
    billing_period: Optional[BillingPeriod] = None
    amount: Optional[int] = Field(None, ge=0)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    external_subscription_id: Optional[str] = None
    external_customer_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    cancel_at_period_end: Optional[bool] = None
    canceled_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    last_event_at: Optional[datetime] = None

    @model_validator(mode="after")
    def reject_clearing_required_fields(self) -> "SubscriptionUpdate":
        """Disallow explicit None for non-nullable columns."""
        for name in _REQUIRED_ON_MERGE:
            if name in self.model_fields_set and getattr(self, name) is None:
                raise ValueError(f"{name} cannot be cleared")
        if (
            self.current_period_start is not None
            and self.current_period_end is not None
            and self.current_period_end < self.current_period_start
        ):
            raise ValueError("current_period_end must not precede current_period_start")
        return self


class Subscription(SubscriptionBase):
    """Subscription as stored."""

    id: UUID
    tenant_id: UUID
    status: SubscriptionStatus
    external_subscription_id: Optional[str] = None
    external_customer_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    created_at: datetime
    modified_at: datetime

    model_config = {"from_attributes": True}
