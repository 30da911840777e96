from datetime import datetime
from decimal import Decimal

from sqlalchemy import String, DateTime, Integer, Numeric, Boolean, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, validates

from core.db import Base, utcnow


class DeliveryCharge(Base):
    __tablename__ = "delivery_charges"
    __table_args__ = (UniqueConstraint("state", "city", name="uq_delivery_state_city"),)

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    city: Mapped[str] = mapped_column(String(120), index=True)
    state: Mapped[str] = mapped_column(String(120), index=True)
    charge: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    minimum_order_value: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    free_delivery_threshold: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)  # 0 = never free
    estimated_days: Mapped[int] = mapped_column(Integer, default=3)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    @validates("city", "state")
    def _lowercase_location(self, key, value: str) -> str:
        return value.strip().lower()
