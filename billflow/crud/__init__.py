"""CRUD singletons, one per model."""

from .crud_history_entry import history_entry
from .crud_payment import payment
from .crud_price import price
from .crud_processed_event import processed_event
from .crud_subscription import subscription
from .crud_tenant import tenant

__all__ = [
    "history_entry",
    "payment",
    "price",
    "processed_event",
    "subscription",
    "tenant",
]
