"""Typed provider (Stripe) webhook events.

Each handled event type maps to one ``data.object`` variant. The envelope is
validated at the webhook boundary, so handlers never touch raw payload dicts.
"""

from datetime import datetime
from enum import Enum
from typing import Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from billflow.core.datetime_utils import from_timestamp


class ProviderEventType(str, Enum):
    """Provider event types with a handler."""

    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    SUBSCRIPTION_TRIAL_WILL_END = "customer.subscription.trial_will_end"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    INVOICE_UPCOMING = "invoice.upcoming"


class DispatchOutcome(str, Enum):
    """Result of handing one event to the dispatcher. All outcomes are acknowledged."""

    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    SKIPPED = "skipped"
    IGNORED = "ignored"
    REJECTED = "rejected"


def _tenant_id_from_metadata(metadata: dict[str, str]) -> Optional[UUID]:
    raw = metadata.get("tenant_id")
    if not raw:
        return None
    try:
        return UUID(raw)
    except ValueError:
        return None


class _ProviderObject(BaseModel):
    model_config = ConfigDict(extra="ignore")


class _Recurring(_ProviderObject):
    interval: Optional[str] = None


class _ItemPrice(_ProviderObject):
    id: Optional[str] = None
    unit_amount: Optional[int] = None
    currency: Optional[str] = None
    recurring: Optional[_Recurring] = None


class _SubscriptionItem(_ProviderObject):
    price: Optional[_ItemPrice] = None
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None


class _SubscriptionItems(_ProviderObject):
    data: list[_SubscriptionItem] = Field(default_factory=list)


class SubscriptionData(_ProviderObject):
    """``customer.subscription.*`` payload."""

    id: str
    customer: Optional[str] = None
    status: str
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    trial_start: Optional[int] = None
    trial_end: Optional[int] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[int] = None
    ended_at: Optional[int] = None
    metadata: dict[str, str] = Field(default_factory=dict)
    items: Optional[_SubscriptionItems] = None

    @property
    def tenant_id(self) -> Optional[UUID]:
        """Tenant ID stamped into the subscription metadata at checkout."""
        return _tenant_id_from_metadata(self.metadata)

    @property
    def first_item(self) -> Optional[_SubscriptionItem]:
        if self.items and self.items.data:
            return self.items.data[0]
        return None

    @property
    def period_start(self) -> Optional[datetime]:
        """Current period start, read from the item on newer API versions."""
        item = self.first_item
        ts = self.current_period_start or (item.current_period_start if item else None)
        return from_timestamp(ts)

    @property
    def period_end(self) -> Optional[datetime]:
        """Current period end, read from the item on newer API versions."""
        item = self.first_item
        ts = self.current_period_end or (item.current_period_end if item else None)
        return from_timestamp(ts)

    @property
    def amount(self) -> Optional[int]:
        """Unit amount of the subscribed price."""
        item = self.first_item
        if item and item.price:
            return item.price.unit_amount
        return None

    @property
    def currency(self) -> Optional[str]:
        """Currency of the subscribed price."""
        item = self.first_item
        if item and item.price:
            return item.price.currency
        return None

    @property
    def interval(self) -> Optional[str]:
        """Recurring interval of the subscribed price (``month``/``year``)."""
        item = self.first_item
        if item and item.price and item.price.recurring:
            return item.price.recurring.interval
        return None


class _CustomerDetails(_ProviderObject):
    email: Optional[str] = None


class CheckoutSessionData(_ProviderObject):
    """``checkout.session`` object, as delivered with ``checkout.session.completed``."""

    id: str
    customer: Optional[str] = None
    subscription: Optional[str] = None
    client_reference_id: Optional[str] = None
    mode: Optional[str] = None
    status: Optional[str] = None
    payment_status: Optional[str] = None
    customer_email: Optional[str] = None
    customer_details: Optional[_CustomerDetails] = None
    metadata: dict[str, str] = Field(default_factory=dict)

    @property
    def tenant_id(self) -> Optional[UUID]:
        """Tenant ID from metadata, falling back to the client reference."""
        tenant_id = _tenant_id_from_metadata(self.metadata)
        if tenant_id is None and self.client_reference_id:
            tenant_id = _tenant_id_from_metadata({"tenant_id": self.client_reference_id})
        return tenant_id

    @property
    def email(self) -> Optional[str]:
        """Email the customer entered at checkout."""
        if self.customer_details and self.customer_details.email:
            return self.customer_details.email
        return self.customer_email


class InvoiceData(_ProviderObject):
    """``invoice.*`` payload."""

    id: Optional[str] = None
    customer: Optional[str] = None
    subscription: Optional[str] = None
    amount_paid: int = 0
    amount_due: int = 0
    currency: str = "usd"
    billing_reason: Optional[str] = None
    attempt_count: int = 0
    next_payment_attempt: Optional[int] = None
    metadata: dict[str, str] = Field(default_factory=dict)

    @field_validator("subscription", mode="before")
    def unwrap_expanded_subscription(cls, v):
        """Accept an expanded subscription object as well as its ID."""
        if isinstance(v, dict):
            return v.get("id")
        return v

    @property
    def tenant_id(self) -> Optional[UUID]:
        """Tenant ID from invoice metadata, if any."""
        return _tenant_id_from_metadata(self.metadata)


EventData = Union[CheckoutSessionData, SubscriptionData, InvoiceData]


EVENT_DATA_MODELS: dict[ProviderEventType, type[_ProviderObject]] = {
    ProviderEventType.CHECKOUT_SESSION_COMPLETED: CheckoutSessionData,
    ProviderEventType.SUBSCRIPTION_CREATED: SubscriptionData,
    ProviderEventType.SUBSCRIPTION_UPDATED: SubscriptionData,
    ProviderEventType.SUBSCRIPTION_DELETED: SubscriptionData,
    ProviderEventType.SUBSCRIPTION_TRIAL_WILL_END: SubscriptionData,
    ProviderEventType.INVOICE_PAYMENT_SUCCEEDED: InvoiceData,
    ProviderEventType.INVOICE_PAYMENT_FAILED: InvoiceData,
    ProviderEventType.INVOICE_UPCOMING: InvoiceData,
}


class ProviderEvent(BaseModel):
    """A verified, typed provider event."""

    id: str
    type: ProviderEventType
    created: datetime
    data: EventData
    livemode: bool = False

    @field_validator("created", mode="before")
    def parse_unix_timestamp(cls, v):
        """Provider timestamps are unix seconds."""
        if isinstance(v, (int, float)):
            return from_timestamp(v)
        return v
