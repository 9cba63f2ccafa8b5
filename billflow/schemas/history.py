"""Audit ledger schemas."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from billflow.schemas.subscription import SubscriptionStatus


class HistoryAction(str, Enum):
    """What a history entry records."""

    CREATED = "created"
    UPDATED = "updated"
    CANCELED = "canceled"
    CANCEL_SCHEDULED = "cancel_scheduled"
    TRIAL_STARTED = "trial_started"
    TRIAL_REMINDER = "trial_reminder"
    TRIAL_CONVERTED = "trial_converted"
    TRIAL_EXTENDED = "trial_extended"
    TRIAL_ENDING = "trial_ending"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    RENEWAL_UPCOMING = "renewal_upcoming"


class Actor(str, Enum):
    """Who caused a history entry."""

    USER = "user"
    PROVIDER = "provider"
    SWEEP = "sweep"
    SYSTEM = "system"


class HistoryEntryCreate(BaseModel):
    """History entry creation schema. Entries are never updated."""

    tenant_id: UUID
    subscription_id: Optional[UUID] = None
    action: HistoryAction
    previous_status: Optional[SubscriptionStatus] = None
    new_status: Optional[SubscriptionStatus] = None
    previous_plan_id: Optional[str] = None
    new_plan_id: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    event_id: Optional[str] = None
    dedup_key: Optional[str] = None
    entry_metadata: dict[str, Any] = Field(default_factory=dict)
    actor: Actor = Actor.SYSTEM


class HistoryEntry(HistoryEntryCreate):
    """History entry as stored."""

    id: UUID
    created_at: datetime

    model_config = {"from_attributes": True}
