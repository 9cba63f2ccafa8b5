"""Models for the application."""

from .history_entry import HistoryEntry
from .payment import Payment
from .price import Price
from .processed_event import ProcessedEvent
from .subscription import Subscription
from .tenant import Tenant

__all__ = [
    "HistoryEntry",
    "Payment",
    "Price",
    "ProcessedEvent",
    "Subscription",
    "Tenant",
]
