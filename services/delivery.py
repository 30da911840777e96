import logging
from decimal import Decimal

from sqlalchemy.orm import Session

from core.config import settings
from core.errors import NotFoundError, ValidationError
from core.money import to_decimal
from models.delivery_charge import DeliveryCharge
from services import settings_store

logger = logging.getLogger(__name__)


def default_delivery_charge(db: Session) -> Decimal:
    return to_decimal(
        settings_store.get_value(db, settings_store.DEFAULT_DELIVERY_CHARGE, settings.DEFAULT_DELIVERY_CHARGE)
    )


def find_charge(db: Session, city: str | None, state: str | None) -> DeliveryCharge | None:
    if not city or not state:
        return None
    return (
        db.query(DeliveryCharge)
        .filter(
            DeliveryCharge.city == city.strip().lower(),
            DeliveryCharge.state == state.strip().lower(),
            DeliveryCharge.is_active.is_(True),
        )
        .one_or_none()
    )


def resolve_delivery_charge(db: Session, city: str | None, state: str | None, subtotal) -> Decimal:
    entry = find_charge(db, city, state)
    if entry is None:
        return default_delivery_charge(db)
    threshold = to_decimal(entry.free_delivery_threshold)
    if threshold > 0 and to_decimal(subtotal) >= threshold:
        return Decimal("0")
    return to_decimal(entry.charge)


def _location_taken(db: Session, city: str, state: str, exclude_id: int | None = None) -> bool:
    query = db.query(DeliveryCharge.id).filter(
        DeliveryCharge.city == city.strip().lower(),
        DeliveryCharge.state == state.strip().lower(),
    )
    if exclude_id is not None:
        query = query.filter(DeliveryCharge.id != exclude_id)
    return query.first() is not None


def get_delivery_charge(db: Session, charge_id: int) -> DeliveryCharge:
    entry = db.get(DeliveryCharge, charge_id)
    if entry is None:
        raise NotFoundError("Delivery charge not found")
    return entry


def create_delivery_charge(db: Session, data) -> DeliveryCharge:
    if _location_taken(db, data.city, data.state):
        raise ValidationError("Delivery charge for this location already exists")
    entry = DeliveryCharge(**data.model_dump())
    db.add(entry)
    db.commit()
    db.refresh(entry)
    logger.info("Delivery charge added for %s, %s", entry.city, entry.state)
    return entry


def update_delivery_charge(db: Session, charge_id: int, data) -> DeliveryCharge:
    entry = get_delivery_charge(db, charge_id)
    changes = {key: value for key, value in data.model_dump(exclude_unset=True).items() if value is not None}
    city = changes.get("city", entry.city)
    state = changes.get("state", entry.state)
    if _location_taken(db, city, state, exclude_id=entry.id):
        raise ValidationError("Delivery charge already exists for this state and city combination")
    for key, value in changes.items():
        setattr(entry, key, value)
    db.commit()
    db.refresh(entry)
    logger.info("Delivery charge %s updated", entry.id)
    return entry


def delete_delivery_charge(db: Session, charge_id: int) -> None:
    entry = get_delivery_charge(db, charge_id)
    db.delete(entry)
    db.commit()
    logger.info("Delivery charge for %s, %s deleted", entry.city, entry.state)


def delivery_locations(db: Session) -> list[dict]:
    """States with their configured cities, both sorted."""
    locations: dict[str, set[str]] = {}
    for city, state in db.query(DeliveryCharge.city, DeliveryCharge.state).all():
        locations.setdefault(state, set()).add(city)
    return [{"state": state, "cities": sorted(cities)} for state, cities in sorted(locations.items())]
