"""Request and response schemas of the billing API.

Bodies are exchanged in camelCase; snake_case input is accepted too.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from billflow.schemas.history import HistoryEntry
from billflow.schemas.subscription import BillingPeriod, SubscriptionStatus


class CamelModel(BaseModel):
    """Base model serialized with camelCase aliases."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CheckoutRequest(CamelModel):
    """Start a checkout for a plan price."""

    price_id: str = Field(..., min_length=1, description="Provider price ID")
    plan_id: str = Field(..., min_length=1, description="Plan identifier")
    billing_period: BillingPeriod = Field(..., description="Billing interval")


class CheckoutSessionResponse(CamelModel):
    """Hosted checkout session to redirect the user to."""

    session_url: str = Field(..., description="URL of the hosted checkout page")
    session_id: str = Field(..., description="Provider checkout session ID")
    trial_days: int = Field(..., description="Trial length granted with this checkout")


class CancellationType(str, Enum):
    """How a subscription is canceled."""

    IMMEDIATE = "immediate"
    AT_PERIOD_END = "at_period_end"


class CancelRequest(CamelModel):
    """Cancel the tenant's subscription."""

    immediately: bool = Field(False, description="Cancel now instead of at period end")
    reason: Optional[str] = Field(None, max_length=500)
    feedback: Optional[str] = Field(None, max_length=2000)


class CancellationSummary(CamelModel):
    """Result of a cancellation."""

    cancellation_type: CancellationType
    canceled: bool = Field(..., description="Whether the subscription is canceled now")
    cancel_at_period_end: bool
    current_period_end: Optional[datetime] = None
    refund_amount: int = Field(0, ge=0, description="Refund in minor currency units")
    refund_currency: str = "usd"
    access_until: Optional[datetime] = None


class Recommendation(CamelModel):
    """Suggested cancellation type for a confirmation UI."""

    suggested: CancellationType
    reasons: list[str] = Field(default_factory=list)


class CancellationPreview(CancellationSummary):
    """Projected cancellation result, computed without side effects."""

    current_status: SubscriptionStatus
    billing_period: BillingPeriod
    days_until_period_end: int
    recommendation: Recommendation


class TrialStatus(CamelModel):
    """Trial view of a tenant."""

    is_in_trial: bool
    days_left: int = 0
    trial_end: Optional[datetime] = None
    has_trial_ended: bool = False
    needs_payment_method: bool = False
    can_extend_trial: bool = False
    conversion_ready: bool = False


class TrialExtendRequest(CamelModel):
    """Extend a running trial."""

    days: int = Field(7, ge=1, le=30)


class SubscriptionStatusView(CamelModel):
    """Read model of a tenant's billing status."""

    status: Optional[SubscriptionStatus] = None
    plan_id: Optional[str] = None
    pending_plan_id: Optional[str] = None
    billing_period: Optional[BillingPeriod] = None
    is_active: bool = False
    is_canceled: bool = False
    is_past_due: bool = False
    cancel_at_period_end: bool = False
    current_period_end: Optional[datetime] = None
    access_until: Optional[datetime] = None
    trial: TrialStatus
    history: list[HistoryEntry] = Field(default_factory=list)


class ReconciliationResult(CamelModel):
    """Counts of one reconciliation sweep."""

    tenants_scanned: int = 0
    reminders_sent: int = 0
    trials_converted: int = 0
    cancellations_finalized: int = 0
    skipped: int = 0
    failed: int = 0


class CatalogPrice(CamelModel):
    """An active plan price offered at checkout."""

    price_id: str = Field(..., description="Provider price ID to pass to checkout")
    plan_id: str
    billing_period: BillingPeriod
    amount: int = Field(..., description="Price in minor currency units")
    currency: str


class CheckoutSubscription(CamelModel):
    """Local subscription created by a checkout."""

    status: SubscriptionStatus
    plan_id: str
    billing_period: BillingPeriod
    amount: int
    currency: str
    trial_end: Optional[datetime] = None
    current_period_end: Optional[datetime] = None


class CheckoutVerification(CamelModel):
    """State of a checkout session as the provider and billflow see it.

    ``subscription.status`` stays ``incomplete`` until the provider's webhook has
    been applied, even when the session itself is already complete.
    """

    session_id: str
    session_status: Optional[str] = None
    payment_status: Optional[str] = None
    customer_email: Optional[str] = None
    subscription: CheckoutSubscription


class PriceSyncResult(CamelModel):
    """Counts of one price catalog sync."""

    created: int = 0
    updated: int = 0
    deactivated: int = 0


class MessageResponse(BaseModel):
    """Generic message response."""

    message: str
