from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import Optional

from core.db import get_db
from models.user import User
from routes.auth import require_admin
from schemas.order import AdminOrderListOut, CodStatus, OrderOut, OrderStatusUpdate
from services import orders as order_service
from services import settings_store

router = APIRouter(prefix="/admin/orders", tags=["admin"])


@router.get("/", response_model=AdminOrderListOut)
def list_all_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[str] = None,
    search: Optional[str] = None,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    result = order_service.list_orders(db, status=status, search=search, page=page, limit=limit)
    result["stats"] = order_service.order_stats(db)
    return result


@router.put("/cod", response_model=CodStatus)
def set_cod(data: CodStatus, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    settings_store.set_value(
        db,
        settings_store.COD_ENABLED,
        data.cod_enabled,
        description="Enable or disable Cash on Delivery",
        category="PAYMENT",
    )
    db.commit()
    return CodStatus(cod_enabled=settings_store.is_cod_enabled(db))


@router.get("/{identifier}", response_model=OrderOut)
def get_any_order(identifier: str, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    return order_service.get_order(db, identifier)


@router.put("/{order_id}/status", response_model=OrderOut)
def update_status(
    order_id: int, data: OrderStatusUpdate, admin: User = Depends(require_admin), db: Session = Depends(get_db)
):
    return order_service.update_order_status(db, order_id, data.status, data.tracking_number, data.notes)
