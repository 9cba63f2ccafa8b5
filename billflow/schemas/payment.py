"""Payment schemas."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field


class PaymentStatus(str, Enum):
    """Payment outcome."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PaymentCreate(BaseModel):
    """Payment creation schema. Payments have no update schema."""

    tenant_id: UUID
    subscription_id: UUID
    external_invoice_id: Optional[str] = None
    amount: int = Field(..., ge=0)
    currency: str = Field(..., min_length=3, max_length=3)
    status: PaymentStatus
    paid_at: datetime
    event_id: Optional[str] = None


class Payment(PaymentCreate):
    """Payment as stored."""

    id: UUID
    created_at: datetime

    model_config = {"from_attributes": True}
