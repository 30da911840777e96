from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import List

from core.db import get_db
from models.delivery_charge import DeliveryCharge
from models.user import User
from routes.auth import require_admin
from schemas.delivery import DeliveryChargeCreate, DeliveryChargeOut, DeliveryChargeUpdate, DeliveryLocation
from services import delivery as delivery_service

router = APIRouter(prefix="/delivery-charges", tags=["delivery"])


@router.post("/", response_model=DeliveryChargeOut, status_code=201)
def create_delivery_charge(
    data: DeliveryChargeCreate, admin: User = Depends(require_admin), db: Session = Depends(get_db)
):
    return delivery_service.create_delivery_charge(db, data)


@router.get("/", response_model=List[DeliveryChargeOut])
def list_delivery_charges(admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    return db.query(DeliveryCharge).order_by(DeliveryCharge.state, DeliveryCharge.city).all()


@router.get("/locations", response_model=List[DeliveryLocation])
def list_locations(admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    return delivery_service.delivery_locations(db)


@router.put("/{charge_id}", response_model=DeliveryChargeOut)
def update_delivery_charge(
    charge_id: int,
    data: DeliveryChargeUpdate,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return delivery_service.update_delivery_charge(db, charge_id, data)


@router.delete("/{charge_id}")
def delete_delivery_charge(charge_id: int, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    delivery_service.delete_delivery_charge(db, charge_id)
    return {"message": "Delivery charge deleted successfully"}
