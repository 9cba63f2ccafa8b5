"""Price model."""

from sqlalchemy import Boolean, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from billflow.models._base import Base


class Price(Base):
    """A purchasable plan price mirrored from the provider catalog."""

    __tablename__ = "price"

    external_price_id: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    plan_id: Mapped[str] = mapped_column(String(50), nullable=False)
    billing_period: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="usd", nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (Index("idx_price_plan_period", "plan_id", "billing_period"),)
