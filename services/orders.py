"""Order lifecycle: placement, payment confirmation, cancellation, admin updates
and the abandoned-order sweep.

Stock reservations and coupon usage are applied at most once per order and
tracked by ``Order.inventory_committed``; every transition that could race
(webhook vs. client confirmation, sweep vs. late payment) is written as a
conditional UPDATE on the order row.
"""
import json
import logging
import math
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from sqlalchemy import update, func, or_
from sqlalchemy.orm import Session

from core.config import settings
from core.db import utcnow
from core.errors import (
    AuthorizationError,
    ConflictError,
    CouponRejected,
    GatewayError,
    InsufficientStockError,
    NotFoundError,
    SignatureError,
    ValidationError,
)
from core.money import to_decimal, to_minor_units
from models.order import Order, OrderStatus, PaymentMethod, PaymentStatus
from models.order_item import OrderItem
from models.user import User
from services import coupons as coupon_service
from services import razorpay
from services import settings_store
from services import stock
from services.pricing import OrderCalculation, calculate_order
from services.razorpay import GatewayResult

logger = logging.getLogger(__name__)

CANCELLABLE = (OrderStatus.PENDING.value, OrderStatus.CONFIRMED.value)
FULFILMENT_ORDER = [
    OrderStatus.PENDING.value,
    OrderStatus.CONFIRMED.value,
    OrderStatus.PROCESSING.value,
    OrderStatus.SHIPPED.value,
    OrderStatus.DELIVERED.value,
]
STATUS_TIMESTAMPS = {
    OrderStatus.CONFIRMED.value: "confirmed_at",
    OrderStatus.SHIPPED.value: "shipped_at",
    OrderStatus.DELIVERED.value: "delivered_at",
    OrderStatus.CANCELLED.value: "cancelled_at",
}
ADMIN_TARGETS = {
    OrderStatus.CONFIRMED.value,
    OrderStatus.PROCESSING.value,
    OrderStatus.SHIPPED.value,
    OrderStatus.DELIVERED.value,
    OrderStatus.CANCELLED.value,
    PaymentStatus.REFUNDED.value,
}
TIMEOUT_REASON = "Payment timeout"


@dataclass
class PlacedOrder:
    order: Order
    calculation: OrderCalculation
    intent: GatewayResult | None = None


def _field(data: Any, name: str, default=None):
    if isinstance(data, dict):
        return data.get(name, default)
    return getattr(data, name, default)


def _as_dict(value: Any) -> dict:
    if hasattr(value, "model_dump"):
        return value.model_dump()
    return dict(value)


def generate_order_number(db: Session, attempts: int = 5) -> str:
    for _ in range(attempts):
        candidate = f"ORD{utcnow():%Y%m%d%H%M%S}{secrets.token_hex(3).upper()}"
        if db.query(Order.id).filter(Order.order_number == candidate).first() is None:
            return candidate
    raise ConflictError("Could not allocate an order number, please retry.")


def _stock_plan(order: Order) -> list[stock.StockDecrement]:
    return [stock.StockDecrement(i.product_id, i.size, i.color, i.quantity) for i in order.items]


def _commit_reservations(db: Session, order: Order) -> None:
    if order.inventory_committed:
        return
    stock.reserve_all(db, _stock_plan(order))
    if order.coupon_used:
        coupon_service.record_usage(db, order.coupon_used["coupon_id"], order.user_id)
    order.inventory_committed = True


def _release_reservations(db: Session, order: Order) -> None:
    if not order.inventory_committed:
        return
    stock.release_all(db, _stock_plan(order))
    if order.coupon_used:
        coupon_service.release_usage(db, order.coupon_used["coupon_id"], order.user_id)
    order.inventory_committed = False


def _lock_order(db: Session, order_id: int) -> Order:
    order = (
        db.query(Order)
        .filter(Order.id == order_id)
        .populate_existing()
        .with_for_update()
        .one_or_none()
    )
    if order is None:
        raise NotFoundError("Order not found.")
    return order


def _order_by_gateway_id(db: Session, gateway_order_id: str | None) -> Order:
    if not gateway_order_id:
        raise NotFoundError("Order not found for payment verification.")
    order = (
        db.query(Order)
        .filter(Order.gateway_order_id == gateway_order_id)
        .populate_existing()
        .with_for_update()
        .one_or_none()
    )
    if order is None:
        logger.error("No order found for gateway order %s", gateway_order_id)
        raise NotFoundError("Order not found for payment verification.")
    return order


def _build_order(db: Session, user: User, data: Any, method: PaymentMethod, calc: OrderCalculation) -> Order:
    order = Order(
        order_number=generate_order_number(db),
        user_id=user.id,
        shipping_address=_as_dict(_field(data, "shipping_address")),
        currency=settings.PAYMENT_CURRENCY,
        subtotal=calc.subtotal,
        delivery_charge=calc.delivery_charge,
        discount_amount=calc.discount_amount,
        discount_on_delivery=calc.discount_on_delivery,
        total_amount=calc.total_amount,
        coupon_used=calc.coupon.as_json() if calc.coupon else None,
        status=OrderStatus.PENDING.value,
        payment_method=method.value,
        payment_status=PaymentStatus.PENDING.value,
        inventory_committed=False,
    )
    order.items = [
        OrderItem(
            product_id=line.product_id,
            name=line.name,
            image=line.image,
            size=line.size,
            color=line.color,
            quantity=line.quantity,
            unit_price=line.unit_price,
            total=line.line_total,
        )
        for line in calc.items
    ]
    db.add(order)
    return order


def _payment_method(value: str | None) -> PaymentMethod:
    try:
        return PaymentMethod((value or "").upper())
    except ValueError:
        raise ValidationError(f"Unsupported payment method: {value}")


def place_order(db: Session, user: User, data: Any) -> PlacedOrder:
    """Price the cart and create the order.

    Cash on delivery orders are confirmed immediately and reserve stock and
    coupon usage in the same transaction.  Razorpay orders are stored PENDING
    with nothing reserved and get a gateway intent; reservations happen in
    ``confirm_payment``.
    """
    method = _payment_method(_field(data, "payment_method"))
    if method is PaymentMethod.COD and not settings_store.is_cod_enabled(db):
        raise ValidationError("Cash on delivery is currently unavailable.")

    calculation = calculate_order(
        db,
        _field(data, "items") or [],
        _field(data, "shipping_address"),
        _field(data, "coupon_code"),
        user.id,
    )

    try:
        order = _build_order(db, user, data, method, calculation)
        if method is PaymentMethod.COD:
            order.status = OrderStatus.CONFIRMED.value
            order.stamp("confirmed_at")
            db.flush()
            _commit_reservations(db, order)
            db.commit()
            logger.info("COD order %s placed by user %s", order.order_number, user.id)
            return PlacedOrder(order=order, calculation=calculation)

        if calculation.total_amount <= 0:
            raise ValidationError("Invalid order amount for online payment")
        db.flush()
        intent = razorpay.create_intent(to_minor_units(calculation.total_amount), order.order_number, user.email)
        if not intent.success:
            raise GatewayError(f"Failed to initiate online payment: {intent.error}")
        order.gateway_order_id = intent["intent_id"]
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("Order %s awaiting payment (gateway order %s)", order.order_number, order.gateway_order_id)
    return PlacedOrder(order=order, calculation=calculation, intent=intent)


def confirm_payment(
    db: Session,
    gateway_order_id: str,
    gateway_payment_id: str,
    signature: str,
    user: User | None = None,
) -> Order:
    """Client-side confirmation after checkout; safe to call repeatedly."""
    order = _order_by_gateway_id(db, gateway_order_id)
    if user is not None and not user.is_admin and order.user_id != user.id:
        raise AuthorizationError("You do not have permission to confirm this order.")

    if not razorpay.verify_signature(gateway_order_id, gateway_payment_id, signature):
        logger.warning("Invalid payment signature for order %s", order.order_number)
        if order.payment_status != PaymentStatus.PAID.value:
            order.payment_status = PaymentStatus.FAILED.value
            order.payment_failure_reason = "Invalid payment signature"
            db.commit()
        raise SignatureError("Invalid payment signature.")

    return _mark_paid(db, order, gateway_payment_id, signature)


def _mark_paid(db: Session, order: Order, payment_id: str, signature: str | None) -> Order:
    if order.payment_status in (PaymentStatus.PAID.value, PaymentStatus.REFUNDED.value):
        logger.info("Order %s payment already recorded, skipping", order.order_number)
        return order
    if order.status == OrderStatus.CANCELLED.value:
        if _void_payment(db, order, payment_id, "Payment received for a cancelled order"):
            raise ConflictError("Order was cancelled before the payment completed; the payment has been refunded.")
        raise ConflictError("Order was cancelled before the payment completed; please contact support for a refund.")
    if order.inventory_committed and order.status != OrderStatus.PENDING.value:
        return _record_payment(db, order, payment_id, signature)

    now = utcnow()
    claim = db.execute(
        update(Order)
        .where(
            Order.id == order.id,
            Order.status == OrderStatus.PENDING.value,
            Order.payment_status.in_([PaymentStatus.PENDING.value, PaymentStatus.FAILED.value]),
            Order.inventory_committed.is_(False),
        )
        .values(
            payment_status=PaymentStatus.PAID.value,
            status=OrderStatus.CONFIRMED.value,
            gateway_payment_id=payment_id,
            gateway_signature=signature,
            payment_failure_reason=None,
            paid_at=func.coalesce(Order.paid_at, now),
            confirmed_at=func.coalesce(Order.confirmed_at, now),
        )
        .execution_options(synchronize_session="fetch")
    )
    if claim.rowcount != 1:
        db.rollback()
        db.refresh(order)
        if order.payment_status == PaymentStatus.PAID.value:
            return order
        raise ConflictError("Order is no longer awaiting payment.")

    try:
        _commit_reservations(db, order)
        db.commit()
    except (InsufficientStockError, CouponRejected, NotFoundError) as exc:
        db.rollback()
        db.refresh(order)
        logger.error("Order %s paid but cannot be fulfilled: %s", order.order_number, exc)
        if _void_payment(db, order, payment_id, "Order could not be fulfilled"):
            raise ValidationError(f"{exc.message} The order has been cancelled and the payment refunded.")
        raise ValidationError(f"{exc.message} The order has been cancelled; please contact support for a refund.")
    except Exception:
        db.rollback()
        raise

    db.refresh(order)
    logger.info("Order %s payment confirmed (%s)", order.order_number, payment_id)
    return order


def _record_payment(db: Session, order: Order, payment_id: str, signature: str | None) -> Order:
    """Record a payment for an order an admin already moved forward; its stock is already held."""
    claim = db.execute(
        update(Order)
        .where(
            Order.id == order.id,
            Order.status != OrderStatus.CANCELLED.value,
            Order.payment_status.in_([PaymentStatus.PENDING.value, PaymentStatus.FAILED.value]),
            Order.inventory_committed.is_(True),
        )
        .values(
            payment_status=PaymentStatus.PAID.value,
            gateway_payment_id=payment_id,
            gateway_signature=signature,
            payment_failure_reason=None,
            paid_at=func.coalesce(Order.paid_at, utcnow()),
        )
        .execution_options(synchronize_session="fetch")
    )
    db.commit()
    db.refresh(order)
    if claim.rowcount != 1 and order.payment_status != PaymentStatus.PAID.value:
        raise ConflictError("Order is no longer awaiting payment.")
    logger.info("Order %s payment recorded after manual confirmation (%s)", order.order_number, payment_id)
    return order


def _void_payment(db: Session, order: Order, payment_id: str, reason: str) -> bool:
    """Refund a captured payment for an order that will not ship; returns whether the refund went through."""
    order.gateway_payment_id = payment_id
    order.status = OrderStatus.CANCELLED.value
    order.stamp("cancelled_at")
    result = razorpay.refund(payment_id, order.total_amount, reason)
    if result.success:
        order.payment_status = PaymentStatus.REFUNDED.value
        order.refund_id = result.get("refund_id")
        order.payment_failure_reason = reason
    else:
        logger.error("Automatic refund for order %s failed: %s", order.order_number, result.error)
        order.payment_status = PaymentStatus.PAID.value
        order.payment_failure_reason = f"{reason}; refund failed: {result.error}"
    db.commit()
    return result.success


def confirm_webhook_payment(db: Session, raw_body: bytes, signature: str | None) -> str:
    """Process a Razorpay webhook; returns the event name."""
    if not razorpay.verify_webhook_signature(raw_body, signature):
        raise SignatureError("Invalid webhook signature.")
    try:
        event = json.loads(raw_body)
    except ValueError:
        raise ValidationError("Malformed webhook payload.")

    name = event.get("event", "")
    payment = event.get("payload", {}).get("payment", {}).get("entity", {})
    gateway_order_id = payment.get("order_id")
    payment_id = payment.get("id")

    if name not in ("payment.captured", "order.paid", "payment.failed"):
        logger.info("Ignoring webhook event %s", name)
        return name
    if not gateway_order_id:
        logger.info("Ignoring webhook event %s for payment %s with no gateway order", name, payment_id)
        return name
    try:
        order = _order_by_gateway_id(db, gateway_order_id)
    except NotFoundError:
        # orders created outside this store share the account's webhook
        logger.warning("Ignoring webhook event %s for unknown gateway order %s", name, gateway_order_id)
        return name

    if name in ("payment.captured", "order.paid"):
        _mark_paid(db, order, payment_id, None)
    else:
        if order.status == OrderStatus.PENDING.value and order.payment_status == PaymentStatus.PENDING.value:
            order.payment_status = PaymentStatus.FAILED.value
            order.payment_failure_reason = payment.get("error_description") or "Payment failed"
            db.commit()
            logger.info("Order %s payment failed: %s", order.order_number, order.payment_failure_reason)
    return name


def _cancel(db: Session, order: Order, reason: str, allowed: tuple[str, ...]) -> Order:
    """Cancel, refund if paid and restock.

    The order row is claimed first but nothing is committed until the refund
    succeeds; a failed refund rolls everything back so the order stays paid
    and in its previous status.
    """
    claim = db.execute(
        update(Order)
        .where(Order.id == order.id, Order.status.in_(allowed))
        .values(status=OrderStatus.CANCELLED.value, cancelled_at=func.coalesce(Order.cancelled_at, utcnow()))
        .execution_options(synchronize_session="fetch")
    )
    if claim.rowcount != 1:
        db.rollback()
        raise ConflictError("Order cannot be cancelled. It is already being processed or delivered.")

    try:
        if order.payment_status == PaymentStatus.PAID.value and order.gateway_payment_id:
            logger.info("Refunding order %s (payment %s)", order.order_number, order.gateway_payment_id)
            result = razorpay.refund(order.gateway_payment_id, order.total_amount, reason)
            if not result.success:
                raise GatewayError(
                    f"Refund failed: {result.error}. The order has not been cancelled, please try again or contact support."
                )
            order.payment_status = PaymentStatus.REFUNDED.value
            order.refund_id = result.get("refund_id")
        elif order.payment_status == PaymentStatus.PENDING.value:
            order.payment_status = PaymentStatus.FAILED.value
            order.payment_failure_reason = reason
        _release_reservations(db, order)
        db.commit()
    except Exception:
        db.rollback()
        db.refresh(order)
        raise

    db.refresh(order)
    logger.info("Order %s cancelled: %s", order.order_number, reason)
    return order


def cancel_order(db: Session, order_id: int, user: User) -> Order:
    order = _lock_order(db, order_id)
    if not user.is_admin and order.user_id != user.id:
        raise AuthorizationError("You do not have permission to cancel this order.")
    if order.status not in CANCELLABLE:
        raise ConflictError("Order cannot be cancelled. It is already being processed or delivered.")
    reason = "Order cancelled by admin" if user.is_admin and order.user_id != user.id else "Order cancelled by user"
    return _cancel(db, order, reason, CANCELLABLE)


def update_order_status(
    db: Session,
    order_id: int,
    status: str,
    tracking_number: str | None = None,
    notes: str | None = None,
) -> Order:
    target = (status or "").upper()
    if target not in ADMIN_TARGETS:
        raise ValidationError(f"Invalid order status: {status}")

    order = _lock_order(db, order_id)
    if target == OrderStatus.CANCELLED.value and order.status == OrderStatus.DELIVERED.value:
        raise ConflictError("Delivered orders cannot be cancelled; mark the payment refunded instead.")
    if target in FULFILMENT_ORDER:
        if order.status == OrderStatus.CANCELLED.value:
            raise ConflictError(f"Cancelled orders cannot be moved to {target}.")
        if FULFILMENT_ORDER.index(target) < FULFILMENT_ORDER.index(order.status):
            raise ConflictError(f"Cannot move order from {order.status} back to {target}.")

    if tracking_number:
        order.tracking_number = tracking_number
    if notes:
        order.notes = notes

    if target == PaymentStatus.REFUNDED.value:
        order.payment_status = PaymentStatus.REFUNDED.value
        db.commit()
        return order

    if target == OrderStatus.CANCELLED.value:
        if order.status == OrderStatus.CANCELLED.value:
            db.commit()
            return order
        allowed = tuple(FULFILMENT_ORDER[:-1])
        return _cancel(db, order, "Order cancelled by admin", allowed)

    try:
        # an unpaid order confirmed by hand still takes its stock
        _commit_reservations(db, order)
        order.status = target
        if target in STATUS_TIMESTAMPS:
            order.stamp(STATUS_TIMESTAMPS[target])
        db.commit()
    except Exception:
        db.rollback()
        db.refresh(order)
        raise
    logger.info("Order %s moved to %s", order.order_number, target)
    return order


def cancel_abandoned_orders(db: Session, max_age_minutes: int | None = None, now=None) -> int:
    """Fail unpaid Razorpay orders older than the cutoff; returns how many were cancelled."""
    if max_age_minutes is None:
        max_age_minutes = settings.ABANDONED_ORDER_MAX_AGE_MINUTES
    now = now or utcnow()
    cutoff = now - timedelta(minutes=max_age_minutes)
    stale = (
        db.query(Order.id, Order.order_number)
        .filter(
            Order.created_at < cutoff,
            Order.payment_method == PaymentMethod.RAZORPAY.value,
            Order.payment_status == PaymentStatus.PENDING.value,
            Order.status == OrderStatus.PENDING.value,
        )
        .all()
    )

    cleaned = 0
    for order_id, order_number in stale:
        try:
            result = db.execute(
                update(Order)
                .where(
                    Order.id == order_id,
                    Order.status == OrderStatus.PENDING.value,
                    Order.payment_status == PaymentStatus.PENDING.value,
                    Order.inventory_committed.is_(False),
                )
                .values(
                    status=OrderStatus.CANCELLED.value,
                    payment_status=PaymentStatus.FAILED.value,
                    payment_failure_reason=TIMEOUT_REASON,
                    cancelled_at=func.coalesce(Order.cancelled_at, now),
                )
                .execution_options(synchronize_session="fetch")
            )
            db.commit()
        except Exception:
            db.rollback()
            logger.exception("Error cleaning up abandoned order %s", order_number)
            continue
        if result.rowcount == 1:
            cleaned += 1
            logger.info("Cancelled abandoned order %s", order_number)
    return cleaned


def _identifier_filter(identifier: str | int):
    identifier = str(identifier)
    if identifier.isdigit():
        return or_(Order.id == int(identifier), Order.order_number == identifier)
    return Order.order_number == identifier


def get_order(db: Session, identifier: str | int, user: User | None = None) -> Order:
    query = db.query(Order).filter(_identifier_filter(identifier))
    if user is not None and not user.is_admin:
        query = query.filter(Order.user_id == user.id)
    order = query.first()
    if order is None:
        raise NotFoundError("Order not found")
    return order


def list_orders(
    db: Session,
    user_id: int | None = None,
    status: str | None = None,
    search: str | None = None,
    page: int = 1,
    limit: int = 10,
) -> dict:
    page = max(page, 1)
    limit = max(min(limit, 100), 1)
    query = db.query(Order)
    if user_id is not None:
        query = query.filter(Order.user_id == user_id)
    if status:
        query = query.filter(Order.status == status.upper())
    if search:
        pattern = f"%{search}%"
        query = query.filter(
            or_(
                Order.order_number.ilike(pattern),
                Order.shipping_address["full_name"].as_string().ilike(pattern),
                Order.shipping_address["phone"].as_string().ilike(pattern),
            )
        )
    total = query.count()
    orders = query.order_by(Order.created_at.desc(), Order.id.desc()).offset((page - 1) * limit).limit(limit).all()
    return {
        "orders": orders,
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": math.ceil(total / limit) if total else 0,
        "has_next_page": page * limit < total,
        "has_prev_page": page > 1,
    }


def order_stats(db: Session) -> list[dict]:
    rows = (
        db.query(Order.status, func.count(Order.id), func.coalesce(func.sum(Order.total_amount), 0))
        .group_by(Order.status)
        .all()
    )
    return [
        {"status": status, "count": count, "total_amount": to_decimal(total)}
        for status, count, total in rows
    ]
