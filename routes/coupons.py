from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import List

from core.db import get_db
from core.money import round_money
from models.coupon import Coupon
from models.user import User
from routes.auth import get_current_user, require_admin
from schemas.coupon import (
    BulkCouponOut,
    BulkCouponRequest,
    CouponAnalyticsRow,
    CouponCreate,
    CouponDetailOut,
    CouponOut,
    CouponUpdate,
    CouponValidateOut,
    CouponValidateRequest,
    PublicCouponOut,
)
from services import coupons as coupon_service

router = APIRouter(prefix="/coupons", tags=["coupons"])


@router.post("/", response_model=CouponOut, status_code=201)
def create_coupon(data: CouponCreate, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    return coupon_service.create_coupon(db, data, created_by=admin.id)


@router.get("/", response_model=List[CouponOut])
def list_coupons(admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    return db.query(Coupon).order_by(Coupon.created_at.desc()).all()


@router.get("/public", response_model=List[PublicCouponOut])
def list_public_coupons(db: Session = Depends(get_db)):
    return coupon_service.public_coupons(db)


@router.get("/analytics", response_model=List[CouponAnalyticsRow])
def coupon_analytics(period: str = "30d", admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    return coupon_service.analytics(db, period)


@router.post("/bulk", response_model=BulkCouponOut)
def bulk_coupons(data: BulkCouponRequest, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    count = coupon_service.bulk_update(db, data.operation, data.coupon_ids)
    return BulkCouponOut(message=f"Bulk {data.operation.lower()} completed successfully", modified_count=count)


@router.get("/{coupon_id}", response_model=CouponDetailOut)
def get_coupon(coupon_id: int, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    coupon = coupon_service.get_coupon(db, coupon_id)
    return CouponDetailOut(
        coupon=CouponOut.model_validate(coupon),
        usage_stats=coupon_service.usage_stats(db, coupon),
    )


@router.put("/{coupon_id}", response_model=CouponOut)
def update_coupon(
    coupon_id: int,
    data: CouponUpdate,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return coupon_service.update_coupon(db, coupon_id, data)


@router.delete("/{coupon_id}")
def delete_coupon(coupon_id: int, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    coupon_service.delete_coupon(db, coupon_id)
    return {"message": "Coupon deleted successfully"}


@router.patch("/{coupon_id}/toggle", response_model=CouponOut)
def toggle_coupon(coupon_id: int, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    return coupon_service.toggle_coupon(db, coupon_id)


@router.post("/{code}/validate", response_model=CouponValidateOut)
def validate_coupon(
    code: str,
    data: CouponValidateRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    coupon = coupon_service.find_coupon(db, code)
    used = coupon_service.user_usage_count(db, coupon.id, current_user.id) if coupon else 0
    result = coupon_service.evaluate(coupon, data.order_amount, data.delivery_charge, used, code=code)
    final = round_money(data.order_amount) - result.discount
    return CouponValidateOut(
        code=coupon.code,
        discount_type=coupon.discount_type,
        discount_amount=result.discount,
        discount_on_delivery=result.discount_on_delivery,
        final_amount=max(final, 0),
    )
