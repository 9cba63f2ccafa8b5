"""Price schemas."""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from billflow.schemas.subscription import BillingPeriod


class PriceCreate(BaseModel):
    """Price creation schema."""

    external_price_id: str
    plan_id: str
    billing_period: BillingPeriod
    amount: int = Field(..., ge=0)
    currency: str = "usd"
    is_active: bool = True


class PriceUpdate(BaseModel):
    """Price update schema."""

    plan_id: Optional[str] = None
    billing_period: Optional[BillingPeriod] = None
    amount: Optional[int] = Field(None, ge=0)
    currency: Optional[str] = None
    is_active: Optional[bool] = None


class Price(PriceCreate):
    """Price as stored."""

    id: UUID
    modified_at: datetime

    model_config = {"from_attributes": True}
