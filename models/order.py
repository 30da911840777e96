import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import String, DateTime, ForeignKey, Numeric, Boolean, Text, JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.db import Base, utcnow


class OrderStatus(str, enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class PaymentMethod(str, enum.Enum):
    COD = "COD"
    RAZORPAY = "RAZORPAY"


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    order_number: Mapped[str] = mapped_column(String(40), unique=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), index=True)
    shipping_address: Mapped[dict] = mapped_column(JSON)
    currency: Mapped[str] = mapped_column(String(3), default="INR")

    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    delivery_charge: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    discount_on_delivery: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    # Snapshot of the coupon as applied: coupon_id, code, type, value, discount_amount, discount_on_delivery
    coupon_used: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    status: Mapped[str] = mapped_column(String(20), default=OrderStatus.PENDING.value, index=True)
    payment_method: Mapped[str] = mapped_column(String(20), default=PaymentMethod.COD.value)
    payment_status: Mapped[str] = mapped_column(String(20), default=PaymentStatus.PENDING.value, index=True)
    gateway_order_id: Mapped[str | None] = mapped_column(String(100), unique=True, nullable=True, index=True)
    gateway_payment_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    gateway_signature: Mapped[str | None] = mapped_column(String(256), nullable=True)
    payment_failure_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    refund_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # True while this order's stock reservations and coupon usage are applied
    inventory_committed: Mapped[bool] = mapped_column(Boolean, default=False)

    tracking_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    paid_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    shipped_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    user = relationship("User")
    items = relationship(
        "OrderItem",
        cascade="all, delete-orphan",
        back_populates="order",
        order_by="OrderItem.id",
    )

    def stamp(self, field: str, when: datetime | None = None) -> None:
        """Set a lifecycle timestamp unless it was already recorded."""
        if getattr(self, field) is None:
            setattr(self, field, when or utcnow())

    @property
    def final_delivery_charge(self) -> Decimal:
        return max(Decimal("0"), (self.delivery_charge or 0) - (self.discount_on_delivery or 0))

    @property
    def total_savings(self) -> Decimal:
        return (self.discount_amount or 0) + (self.discount_on_delivery or 0)
