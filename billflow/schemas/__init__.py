# flake8: noqa: F401
"""Schemas for the application."""

from .billing import (
    CancellationPreview,
    CancellationSummary,
    CancellationType,
    CancelRequest,
    CatalogPrice,
    CheckoutRequest,
    CheckoutSessionResponse,
    CheckoutSubscription,
    CheckoutVerification,
    MessageResponse,
    PriceSyncResult,
    Recommendation,
    ReconciliationResult,
    SubscriptionStatusView,
    TrialExtendRequest,
    TrialStatus,
)
from .events import (
    CheckoutSessionData,
    DispatchOutcome,
    InvoiceData,
    ProviderEvent,
    ProviderEventType,
    SubscriptionData,
)
from .history import Actor, HistoryAction, HistoryEntry, HistoryEntryCreate
from .payment import Payment, PaymentCreate, PaymentStatus
from .price import Price, PriceCreate, PriceUpdate
from .processed_event import ProcessedEventCreate
from .subscription import (
    BillingPeriod,
    Subscription,
    SubscriptionCreate,
    SubscriptionStatus,
    SubscriptionUpdate,
)
from .tenant import Tenant, TenantBillingUpdate, TenantCreate
