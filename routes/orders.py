from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import Optional

from core.db import get_db
from models.user import User
from routes.auth import get_current_user
from schemas.order import (
    ApplyCouponRequest,
    CalculationOut,
    CodStatus,
    OrderCreate,
    OrderListOut,
    OrderOut,
    OrderPlacedOut,
    PaymentConfirmRequest,
)
from services import orders as order_service
from services import settings_store
from services.pricing import OrderCalculation, calculate_order

router = APIRouter(prefix="/orders", tags=["orders"])


def calculation_out(calc: OrderCalculation) -> CalculationOut:
    return CalculationOut(
        subtotal=calc.subtotal,
        delivery_charge=calc.delivery_charge,
        discount_amount=calc.discount_amount,
        discount_on_delivery=calc.discount_on_delivery,
        total_amount=calc.total_amount,
        savings=calc.savings,
        coupon=calc.coupon.as_json() if calc.coupon else None,
    )


@router.post("/", response_model=OrderPlacedOut, status_code=201)
def place_order(data: OrderCreate, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    placed = order_service.place_order(db, current_user, data)
    if placed.intent is None:
        message = "Order placed successfully"
    else:
        message = "Order created, complete the payment to confirm it"
    return OrderPlacedOut(
        message=message,
        order=OrderOut.model_validate(placed.order),
        calculation=calculation_out(placed.calculation),
        payment=placed.intent.data if placed.intent else None,
    )


@router.post("/verify-payment", response_model=OrderOut)
def verify_payment(
    data: PaymentConfirmRequest, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    order = order_service.confirm_payment(
        db,
        data.razorpay_order_id,
        data.razorpay_payment_id,
        data.razorpay_signature,
        user=current_user,
    )
    return order


@router.post("/apply-coupon", response_model=CalculationOut)
def apply_coupon(data: ApplyCouponRequest, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    calc = calculate_order(db, data.items, data.shipping_address, data.coupon_code, current_user.id)
    return calculation_out(calc)


@router.get("/", response_model=OrderListOut)
def list_my_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[str] = None,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return order_service.list_orders(db, user_id=current_user.id, status=status, page=page, limit=limit)


@router.get("/cod-status", response_model=CodStatus)
def cod_status(db: Session = Depends(get_db)):
    return CodStatus(cod_enabled=settings_store.is_cod_enabled(db))


@router.get("/{identifier}", response_model=OrderOut)
def get_my_order(identifier: str, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return order_service.get_order(db, identifier, user=current_user)


@router.post("/{order_id}/cancel", response_model=OrderOut)
def cancel_order(order_id: int, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return order_service.cancel_order(db, order_id, current_user)
