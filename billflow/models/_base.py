"""Base models for the application."""

import uuid

from sqlalchemy import UUID, Column, DateTime, ForeignKey
from sqlalchemy.ext.declarative import declared_attr
from sqlalchemy.orm import DeclarativeBase

from billflow.core.datetime_utils import utc_now_naive


class Base(DeclarativeBase):
    """Base class for all models."""

    id = Column(UUID, primary_key=True, default=uuid.uuid4, nullable=False)
    created_at = Column(DateTime, default=utc_now_naive, nullable=False)
    modified_at = Column(DateTime, default=utc_now_naive, onupdate=utc_now_naive, nullable=False)


class TenantBase(Base):
    """Base class for tenant-scoped tables."""

    __abstract__ = True

    @declared_attr
    def tenant_id(cls):
        """Tenant ID column."""
        return Column(UUID, ForeignKey("tenant.id", ondelete="CASCADE"), nullable=False, index=True)
