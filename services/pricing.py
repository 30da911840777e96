"""Cart validation and order totals.

``calculate_order`` never writes: it returns the priced snapshot plus the
stock decrements the order lifecycle applies once the order is confirmed.
"""
from dataclasses import dataclass, field, asdict
from decimal import Decimal
from typing import Any, Sequence

from sqlalchemy.orm import Session

from core.errors import ValidationError, NotFoundError
from core.money import round_money, to_decimal
from models.coupon import DiscountType
from models.product import Product
from services import coupons as coupon_service
from services.delivery import resolve_delivery_charge
from services.stock import StockDecrement

ZERO = Decimal("0")


@dataclass(frozen=True)
class LineSnapshot:
    product_id: int
    name: str
    image: str
    size: str
    color: str
    quantity: int
    unit_price: Decimal
    line_total: Decimal


@dataclass(frozen=True)
class CouponSnapshot:
    coupon_id: int
    code: str
    type: str
    value: Decimal
    discount_amount: Decimal
    discount_on_delivery: Decimal

    def as_json(self) -> dict:
        data = asdict(self)
        for key in ("value", "discount_amount", "discount_on_delivery"):
            data[key] = str(data[key])
        return data


@dataclass
class OrderCalculation:
    items: list[LineSnapshot]
    subtotal: Decimal
    delivery_charge: Decimal
    discount_amount: Decimal = ZERO
    discount_on_delivery: Decimal = ZERO
    total_amount: Decimal = ZERO
    coupon: CouponSnapshot | None = None
    stock_plan: list[StockDecrement] = field(default_factory=list)

    @property
    def savings(self) -> Decimal:
        return self.discount_amount + self.discount_on_delivery


def _field(item: Any, name: str):
    if isinstance(item, dict):
        return item.get(name)
    return getattr(item, name, None)


def order_total(subtotal: Decimal, discount: Decimal, delivery: Decimal, discount_on_delivery: Decimal) -> Decimal:
    return round_money(max(ZERO, subtotal - discount + delivery - discount_on_delivery))


def _require_finite(label: str, value: Decimal) -> Decimal:
    if not value.is_finite():
        raise ValidationError(f"Invalid {label} amount")
    return value


def _price_line(db: Session, item: Any, requested: dict[int, int]) -> LineSnapshot:
    product_id = _field(item, "product_id")
    quantity = _field(item, "quantity")
    size = _field(item, "size")
    color = _field(item, "color")

    if not product_id or quantity is None or int(quantity) <= 0:
        raise ValidationError(
            "Invalid item data provided. Missing product ID or quantity, or quantity is invalid."
        )
    if size is None or str(size).strip() == "" or not color:
        raise ValidationError("Invalid item data provided. Missing size or color for a product.")
    quantity = int(quantity)
    size, color = str(size).strip(), str(color).strip()

    product = db.get(Product, product_id)
    if product is None:
        raise NotFoundError(f"Product with ID {product_id} not found.")
    if not product.has_variants:
        raise ValidationError(
            f"Product {product.name} has no valid stock configuration. Stock variants are required."
        )
    variant = product.find_variant(size, color)
    if variant is None:
        raise ValidationError(
            f"Product {product.name} does not have a variant with Size: {size}, Color: {color}."
        )
    # the same variant may appear on several cart lines
    wanted = requested.get(variant.id, 0) + quantity
    if variant.stock < wanted:
        raise ValidationError(
            f"Insufficient stock for {product.name} (Size: {size}, Color: {color}). "
            f"Available: {variant.stock}, Requested: {wanted}"
        )
    requested[variant.id] = wanted

    unit_price = round_money(to_decimal(product.price))
    return LineSnapshot(
        product_id=product.id,
        name=product.name,
        image=product.main_image,
        size=size,
        color=color,
        quantity=quantity,
        unit_price=unit_price,
        line_total=round_money(unit_price * quantity),
    )


def calculate_order(
    db: Session,
    items: Sequence[Any],
    shipping_address: Any,
    coupon_code: str | None,
    user_id: int,
) -> OrderCalculation:
    if not items:
        raise ValidationError("Order must contain at least one item.")

    requested: dict[int, int] = {}
    lines = [_price_line(db, item, requested) for item in items]
    subtotal = round_money(_require_finite("subtotal", sum((line.line_total for line in lines), ZERO)))

    delivery_charge = resolve_delivery_charge(
        db, _field(shipping_address, "city"), _field(shipping_address, "state"), subtotal
    )
    delivery_charge = round_money(_require_finite("delivery charge", delivery_charge))

    discount = ZERO
    discount_on_delivery = ZERO
    snapshot = None
    if coupon_code:
        coupon = coupon_service.find_coupon(db, coupon_code)
        used = coupon_service.user_usage_count(db, coupon.id, user_id) if coupon else 0
        evaluation = coupon_service.evaluate(coupon, subtotal, delivery_charge, used, code=coupon_code)
        discount = _require_finite("discount", evaluation.discount)
        discount_on_delivery = _require_finite("delivery discount", evaluation.discount_on_delivery)
        snapshot = CouponSnapshot(
            coupon_id=coupon.id,
            code=coupon.code,
            type=coupon.discount_type,
            value=delivery_charge if coupon.discount_type == DiscountType.FREE_SHIPPING.value else round_money(coupon.value),
            discount_amount=discount,
            discount_on_delivery=discount_on_delivery,
        )

    total = _require_finite("total", order_total(subtotal, discount, delivery_charge, discount_on_delivery))

    return OrderCalculation(
        items=lines,
        subtotal=subtotal,
        delivery_charge=delivery_charge,
        discount_amount=discount,
        discount_on_delivery=discount_on_delivery,
        total_amount=total,
        coupon=snapshot,
        stock_plan=[StockDecrement(line.product_id, line.size, line.color, line.quantity) for line in lines],
    )
