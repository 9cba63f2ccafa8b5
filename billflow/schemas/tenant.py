"""Tenant schemas."""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from billflow.schemas.subscription import BillingPeriod, SubscriptionStatus


class TenantCreate(BaseModel):
    """Tenant creation schema."""

    name: str = Field(..., min_length=1)
    email: Optional[str] = None
    stripe_customer_id: Optional[str] = None


class TenantBillingUpdate(BaseModel):
    """Explicit partial update of a tenant's billing status.

    Fields left unset are not touched; fields explicitly set to None are cleared.
    """

    subscription_status: Optional[SubscriptionStatus] = None
    plan_id: Optional[str] = None
    pending_plan_id: Optional[str] = None
    billing_period: Optional[BillingPeriod] = None
    trial_end: Optional[datetime] = None
    subscription_id: Optional[UUID] = None
    external_subscription_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    cancel_at_period_end: Optional[bool] = None
    access_until: Optional[datetime] = None


class Tenant(BaseModel):
    """Tenant with its billing status."""

    id: UUID
    name: str
    email: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    subscription_status: Optional[SubscriptionStatus] = None
    plan_id: Optional[str] = None
    pending_plan_id: Optional[str] = None
    billing_period: Optional[BillingPeriod] = None
    trial_end: Optional[datetime] = None
    subscription_id: Optional[UUID] = None
    external_subscription_id: Optional[str] = None
    cancel_at_period_end: bool = False
    access_until: Optional[datetime] = None

    model_config = {"from_attributes": True}
