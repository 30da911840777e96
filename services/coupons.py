"""Coupon evaluation and usage accounting.

``evaluate`` is pure: it looks only at the coupon row, the order amounts and
how often the user already used the coupon.  Usage counters are touched only
by ``record_usage`` / ``release_usage``, which the order lifecycle calls
inside its own transaction.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import update, func, or_
from sqlalchemy.orm import Session

from core.db import utcnow
from core.errors import ConflictError, CouponRejected, NotFoundError, ValidationError
from core.money import round_money, to_decimal
from models.coupon import Coupon, CouponUsage, DiscountType
from models.order import Order, OrderStatus

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
BULK_OPERATIONS = ("activate", "deactivate", "delete")
ANALYTICS_PERIODS = {"7d": 7, "30d": 30, "90d": 90}
REQUIRED_FIELDS = (
    "code",
    "name",
    "discount_type",
    "value",
    "minimum_order_amount",
    "valid_from",
    "valid_until",
    "is_active",
    "is_public",
)


@dataclass(frozen=True)
class PercentageOff:
    percent: Decimal
    cap: Decimal | None = None


@dataclass(frozen=True)
class FixedAmountOff:
    amount: Decimal


@dataclass(frozen=True)
class FreeShipping:
    pass


DiscountRule = PercentageOff | FixedAmountOff | FreeShipping


@dataclass(frozen=True)
class CouponEvaluation:
    discount: Decimal
    discount_on_delivery: Decimal


def discount_rule(coupon: Coupon) -> DiscountRule:
    kind = DiscountType(coupon.discount_type)
    if kind is DiscountType.PERCENTAGE:
        cap = coupon.maximum_discount_amount
        return PercentageOff(percent=to_decimal(coupon.value), cap=to_decimal(cap) if cap else None)
    if kind is DiscountType.FIXED_AMOUNT:
        return FixedAmountOff(amount=to_decimal(coupon.value))
    return FreeShipping()


def apply_rule(rule: DiscountRule, order_amount: Decimal, delivery_charge: Decimal) -> CouponEvaluation:
    if isinstance(rule, PercentageOff):
        discount = order_amount * rule.percent / 100
        if rule.cap is not None:
            discount = min(discount, rule.cap)
        return CouponEvaluation(round_money(min(discount, order_amount)), round_money(ZERO))
    if isinstance(rule, FixedAmountOff):
        return CouponEvaluation(round_money(min(rule.amount, order_amount)), round_money(ZERO))
    if isinstance(rule, FreeShipping):
        return CouponEvaluation(round_money(ZERO), round_money(delivery_charge))
    raise TypeError(f"Unknown discount rule: {rule!r}")


def check_eligibility(
    coupon: Coupon,
    order_amount: Decimal,
    user_usage_count: int,
    now: datetime,
) -> None:
    """Raise ``CouponRejected`` naming the first constraint the order breaks."""
    code = coupon.code
    if not coupon.is_active:
        raise CouponRejected(code, f'Coupon "{code}" is not active.')
    if coupon.valid_from and now < coupon.valid_from:
        raise CouponRejected(code, f'Coupon "{code}" is not valid yet.')
    if coupon.valid_until and now > coupon.valid_until:
        raise CouponRejected(code, f'Coupon "{code}" has expired.')
    minimum = to_decimal(coupon.minimum_order_amount)
    if minimum and order_amount < minimum:
        raise CouponRejected(code, f'Coupon "{code}" requires a minimum purchase of {round_money(minimum)}.')
    if coupon.usage_limit is not None and (coupon.usage_count or 0) >= coupon.usage_limit:
        raise CouponRejected(code, f'Coupon "{code}" has reached its maximum usage limit.')
    if coupon.user_usage_limit is not None and user_usage_count >= coupon.user_usage_limit:
        raise CouponRejected(code, f'You have already used coupon "{code}" the maximum number of times.')


def evaluate(
    coupon: Coupon | None,
    order_amount,
    delivery_charge,
    user_usage_count: int = 0,
    now: datetime | None = None,
    code: str | None = None,
) -> CouponEvaluation:
    if coupon is None:
        raise CouponRejected(code or "", f"Invalid coupon code: {code}")
    order_amount = to_decimal(order_amount)
    delivery_charge = to_decimal(delivery_charge)
    check_eligibility(coupon, order_amount, user_usage_count, now or utcnow())
    return apply_rule(discount_rule(coupon), order_amount, delivery_charge)


def find_coupon(db: Session, code: str) -> Coupon | None:
    return db.query(Coupon).filter(Coupon.code == code.strip().upper()).one_or_none()


def user_usage_count(db: Session, coupon_id: int, user_id: int) -> int:
    usage = (
        db.query(CouponUsage)
        .filter(CouponUsage.coupon_id == coupon_id, CouponUsage.user_id == user_id)
        .one_or_none()
    )
    return usage.usage_count if usage else 0


def record_usage(db: Session, coupon_id: int, user_id: int) -> None:
    """Count one use of the coupon for ``user_id``; both limits are re-checked in SQL."""
    coupon = db.get(Coupon, coupon_id)
    if coupon is None:
        raise CouponRejected("", "Coupon no longer exists.")

    result = db.execute(
        update(Coupon)
        .where(
            Coupon.id == coupon_id,
            or_(Coupon.usage_limit.is_(None), Coupon.usage_count < Coupon.usage_limit),
        )
        .values(usage_count=Coupon.usage_count + 1)
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount != 1:
        raise CouponRejected(coupon.code, f'Coupon "{coupon.code}" has reached its maximum usage limit.')

    conditions = [CouponUsage.coupon_id == coupon_id, CouponUsage.user_id == user_id]
    if coupon.user_usage_limit is not None:
        conditions.append(CouponUsage.usage_count < coupon.user_usage_limit)
    result = db.execute(
        update(CouponUsage)
        .where(*conditions)
        .values(usage_count=CouponUsage.usage_count + 1, last_used_at=utcnow())
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount == 0:
        existing = (
            db.query(CouponUsage.id)
            .filter(CouponUsage.coupon_id == coupon_id, CouponUsage.user_id == user_id)
            .first()
        )
        if existing is not None:
            raise CouponRejected(
                coupon.code, f'You have already used coupon "{coupon.code}" the maximum number of times.'
            )
        db.add(CouponUsage(coupon_id=coupon_id, user_id=user_id, usage_count=1, last_used_at=utcnow()))
    db.flush()
    logger.info("Coupon %s usage recorded for user %s", coupon.code, user_id)


def release_usage(db: Session, coupon_id: int, user_id: int) -> None:
    """Undo one use; global and per-user counters move together in the caller's transaction."""
    db.execute(
        update(Coupon)
        .where(Coupon.id == coupon_id, Coupon.usage_count > 0)
        .values(usage_count=Coupon.usage_count - 1)
        .execution_options(synchronize_session="fetch")
    )
    db.execute(
        update(CouponUsage)
        .where(CouponUsage.coupon_id == coupon_id, CouponUsage.user_id == user_id, CouponUsage.usage_count > 0)
        .values(usage_count=CouponUsage.usage_count - 1)
        .execution_options(synchronize_session="fetch")
    )
    db.flush()
    logger.info("Coupon %s usage released for user %s", coupon_id, user_id)


def _naive_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _discount_type(value: str) -> DiscountType:
    try:
        return DiscountType(value.upper())
    except ValueError:
        raise ValidationError(f"Invalid discount type: {value}")


def _check_terms(kind: DiscountType, value, valid_from: datetime, valid_until: datetime) -> None:
    if kind is DiscountType.PERCENTAGE and not (0 < value <= 100):
        raise ValidationError("Percentage value must be between 0 and 100")
    if kind is DiscountType.FIXED_AMOUNT and value <= 0:
        raise ValidationError("Fixed discount value must be greater than 0")
    if valid_until <= valid_from:
        raise ValidationError("Valid until date must be after valid from date")


def create_coupon(db: Session, data, created_by: int | None = None) -> Coupon:
    kind = _discount_type(data.discount_type)
    valid_from = _naive_utc(data.valid_from) or utcnow()
    valid_until = _naive_utc(data.valid_until)
    _check_terms(kind, data.value, valid_from, valid_until)
    if find_coupon(db, data.code) is not None:
        raise ConflictError("Coupon code already exists")

    coupon = Coupon(
        code=data.code,
        name=data.name,
        description=data.description,
        discount_type=kind.value,
        value=0 if kind is DiscountType.FREE_SHIPPING else data.value,
        minimum_order_amount=data.minimum_order_amount,
        maximum_discount_amount=data.maximum_discount_amount,
        usage_limit=data.usage_limit,
        user_usage_limit=data.user_usage_limit,
        valid_from=valid_from,
        valid_until=valid_until,
        is_public=data.is_public,
        created_by=created_by,
    )
    db.add(coupon)
    db.commit()
    db.refresh(coupon)
    logger.info("Coupon %s created", coupon.code)
    return coupon


def public_coupons(db: Session, now: datetime | None = None) -> list[Coupon]:
    """Active public coupons inside their validity window that still have uses left."""
    now = now or utcnow()
    return (
        db.query(Coupon)
        .filter(
            Coupon.is_active.is_(True),
            Coupon.is_public.is_(True),
            Coupon.valid_from <= now,
            Coupon.valid_until >= now,
            or_(Coupon.usage_limit.is_(None), Coupon.usage_count < Coupon.usage_limit),
        )
        .order_by(Coupon.created_at.desc())
        .all()
    )


def get_coupon(db: Session, coupon_id: int) -> Coupon:
    coupon = db.get(Coupon, coupon_id)
    if coupon is None:
        raise NotFoundError("Coupon not found")
    return coupon


def update_coupon(db: Session, coupon_id: int, data) -> Coupon:
    coupon = get_coupon(db, coupon_id)
    # None clears optional limits but never a required column
    changes = {
        key: value
        for key, value in data.model_dump(exclude_unset=True).items()
        if value is not None or key not in REQUIRED_FIELDS
    }

    if changes.get("code") and changes["code"].strip().upper() != coupon.code:
        existing = find_coupon(db, changes["code"])
        if existing is not None and existing.id != coupon.id:
            raise ConflictError("Coupon code already exists")
    kind = _discount_type(changes.get("discount_type") or coupon.discount_type)
    changes["discount_type"] = kind.value
    if kind is DiscountType.FREE_SHIPPING:
        changes["value"] = 0
    for key in ("valid_from", "valid_until"):
        if changes.get(key) is not None:
            changes[key] = _naive_utc(changes[key])
    _check_terms(
        kind,
        changes.get("value", coupon.value),
        changes.get("valid_from") or coupon.valid_from,
        changes.get("valid_until") or coupon.valid_until,
    )

    for key, value in changes.items():
        setattr(coupon, key, value)
    db.commit()
    db.refresh(coupon)
    logger.info("Coupon %s updated: %s", coupon.code, ", ".join(sorted(changes)))
    return coupon


def toggle_coupon(db: Session, coupon_id: int) -> Coupon:
    coupon = get_coupon(db, coupon_id)
    coupon.is_active = not coupon.is_active
    db.commit()
    db.refresh(coupon)
    logger.info("Coupon %s %s", coupon.code, "activated" if coupon.is_active else "deactivated")
    return coupon


def _order_coupon_id():
    return Order.coupon_used["coupon_id"].as_integer()


def _in_use(db: Session, coupon: Coupon) -> bool:
    if coupon.usage_count:
        return True
    # pending online orders record their usage only once paid
    awaiting = (
        db.query(Order.id)
        .filter(_order_coupon_id() == coupon.id, Order.status == OrderStatus.PENDING.value)
        .first()
    )
    return awaiting is not None


def delete_coupon(db: Session, coupon_id: int) -> None:
    coupon = get_coupon(db, coupon_id)
    if _in_use(db, coupon):
        raise ValidationError("Cannot delete coupon that has been used. Consider deactivating it instead.")
    db.delete(coupon)
    db.commit()
    logger.info("Coupon %s deleted", coupon.code)


def bulk_update(db: Session, operation: str, coupon_ids: list[int]) -> int:
    """Activate, deactivate or delete several coupons; used coupons are never deleted."""
    operation = (operation or "").lower()
    if operation not in BULK_OPERATIONS:
        raise ValidationError("Invalid operation")
    if not coupon_ids:
        return 0

    if operation == "delete":
        deleted = 0
        for coupon in db.query(Coupon).filter(Coupon.id.in_(coupon_ids)).all():
            if not _in_use(db, coupon):
                db.delete(coupon)
                deleted += 1
        db.commit()
        logger.info("Bulk delete removed %s of %s coupons", deleted, len(coupon_ids))
        return deleted

    result = db.execute(
        update(Coupon)
        .where(Coupon.id.in_(coupon_ids))
        .values(is_active=operation == "activate")
        .execution_options(synchronize_session="fetch")
    )
    db.commit()
    logger.info("Bulk %s touched %s coupons", operation, result.rowcount)
    return result.rowcount


def _order_totals(db: Session, *criteria):
    coupon_id = _order_coupon_id()
    return (
        db.query(
            coupon_id.label("coupon_id"),
            func.count(Order.id).label("orders"),
            func.coalesce(func.sum(Order.discount_amount + Order.discount_on_delivery), 0).label("discount"),
            func.coalesce(func.sum(Order.total_amount), 0).label("order_value"),
        )
        .filter(coupon_id.isnot(None), Order.inventory_committed.is_(True), *criteria)
        .group_by(coupon_id)
    )


def _average(total: Decimal, count: int) -> Decimal:
    return round_money(total / count) if count else ZERO


def usage_stats(db: Session, coupon: Coupon) -> dict:
    """Redemption figures for one coupon, counted over orders that currently hold a use."""
    row = _order_totals(db, _order_coupon_id() == coupon.id).one_or_none()
    orders = row.orders if row else 0
    discount = round_money(to_decimal(row.discount)) if row else ZERO
    users, redemptions = (
        db.query(func.count(CouponUsage.id), func.coalesce(func.sum(CouponUsage.usage_count), 0))
        .filter(CouponUsage.coupon_id == coupon.id, CouponUsage.usage_count > 0)
        .one()
    )
    return {
        "usage_count": coupon.usage_count,
        "remaining_usage": coupon.remaining_usage,
        "unique_users": users,
        "user_redemptions": int(redemptions),
        "total_orders": orders,
        "total_discount": discount,
        "average_discount": _average(discount, orders),
    }


def analytics(db: Session, period: str = "30d", now: datetime | None = None, limit: int = 10) -> list[dict]:
    """Most used coupons over the last 7, 30 or 90 days."""
    days = ANALYTICS_PERIODS.get(period, ANALYTICS_PERIODS["30d"])
    since = (now or utcnow()) - timedelta(days=days)
    rows = (
        _order_totals(db, Order.created_at >= since)
        .order_by(func.count(Order.id).desc())
        .limit(limit)
        .all()
    )
    coupons = {c.id: c for c in db.query(Coupon).filter(Coupon.id.in_([r.coupon_id for r in rows])).all()}
    report = []
    for row in rows:
        coupon = coupons.get(row.coupon_id)
        if coupon is None:
            continue
        discount = round_money(to_decimal(row.discount))
        report.append(
            {
                "coupon_id": coupon.id,
                "code": coupon.code,
                "name": coupon.name,
                "total_usage": row.orders,
                "total_discount": discount,
                "average_discount": _average(discount, row.orders),
                "total_order_value": round_money(to_decimal(row.order_value)),
            }
        )
    return report
