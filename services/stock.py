"""Per-variant stock counters.

Every change is a single conditional UPDATE so two checkouts racing for the
last unit cannot both win; ``total_stock`` on the product is recomputed from
the variant rows in the same transaction.
"""
import logging
from dataclasses import dataclass

from sqlalchemy import update, select, func
from sqlalchemy.orm import Session

from core.errors import InsufficientStockError, NotFoundError
from models.product import Product, ProductVariant

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StockDecrement:
    product_id: int
    size: str
    color: str
    quantity: int


def _variant_for(db: Session, product_id: int, size, color) -> tuple[Product, ProductVariant]:
    product = db.get(Product, product_id)
    if product is None:
        raise NotFoundError("Product not found.")
    variant = product.find_variant(size, color)
    if variant is None:
        raise NotFoundError(f"Product {product.name} does not have a variant with Size: {size}, Color: {color}.")
    return product, variant


def _refresh_total(db: Session, product: Product) -> None:
    total = (
        select(func.coalesce(func.sum(ProductVariant.stock), 0))
        .where(ProductVariant.product_id == product.id)
        .scalar_subquery()
    )
    db.execute(
        update(Product)
        .where(Product.id == product.id)
        .values(total_stock=total)
        .execution_options(synchronize_session=False)
    )
    db.flush()
    db.refresh(product)


def reserve(db: Session, product_id: int, size, color, quantity: int) -> None:
    """Take ``quantity`` units from a variant, or raise if fewer are left."""
    product, variant = _variant_for(db, product_id, size, color)
    result = db.execute(
        update(ProductVariant)
        .where(ProductVariant.id == variant.id, ProductVariant.stock >= quantity)
        .values(stock=ProductVariant.stock - quantity)
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount != 1:
        db.refresh(variant)
        raise InsufficientStockError(
            f"Insufficient stock for {product.name} (Size: {size}, Color: {color}). "
            f"Available: {variant.stock}, Requested: {quantity}"
        )
    _refresh_total(db, product)
    logger.info("Reserved %s x %s (Size: %s, Color: %s)", quantity, product.name, size, color)


def release(db: Session, product_id: int, size, color, quantity: int) -> bool:
    """Put units back; returns False when the product or variant has since been removed."""
    try:
        product, variant = _variant_for(db, product_id, size, color)
    except NotFoundError:
        logger.warning("Variant for product %s (Size: %s, Color: %s) not found while restocking", product_id, size, color)
        return False
    db.execute(
        update(ProductVariant)
        .where(ProductVariant.id == variant.id)
        .values(stock=ProductVariant.stock + quantity)
        .execution_options(synchronize_session="fetch")
    )
    _refresh_total(db, product)
    logger.info("Restocked %s x %s (Size: %s, Color: %s)", quantity, product.name, size, color)
    return True


def reserve_all(db: Session, plan: list[StockDecrement]) -> None:
    for line in plan:
        reserve(db, line.product_id, line.size, line.color, line.quantity)


def release_all(db: Session, plan: list[StockDecrement]) -> None:
    for line in plan:
        release(db, line.product_id, line.size, line.color, line.quantity)
