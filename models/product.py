import re
from datetime import datetime
from decimal import Decimal, InvalidOperation

from sqlalchemy import String, DateTime, ForeignKey, Integer, Numeric, Boolean, Text, UniqueConstraint, event
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.db import Base, utcnow


def slugify(value: str) -> str:
    value = re.sub(r"[^a-z0-9]+", "-", value.strip().lower())
    return value.strip("-")


def normalize_size(size) -> str:
    """Numeric sizes compare by value ("9" == "9.0"); anything else by upper-cased text."""
    text = str(size).strip()
    try:
        number = Decimal(text)
    except InvalidOperation:
        return text.upper()
    if not number.is_finite():
        return text.upper()
    normalized = number.normalize()
    # normalize() turns 10 into 1E+1
    return format(normalized, "f")


def normalize_color(color) -> str:
    return str(color).strip().lower()


class Product(Base):
    __tablename__ = "products"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(200), index=True)
    slug: Mapped[str] = mapped_column(String(220), unique=True, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    main_image: Mapped[str] = mapped_column(String(500), default="placeholder.jpg")
    total_stock: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    variants = relationship(
        "ProductVariant",
        back_populates="product",
        cascade="all, delete-orphan",
        order_by="ProductVariant.id",
    )

    @property
    def has_variants(self) -> bool:
        return bool(self.variants)

    def find_variant(self, size, color) -> "ProductVariant | None":
        size_key, color_key = normalize_size(size), normalize_color(color)
        for variant in self.variants:
            if normalize_size(variant.size) == size_key and normalize_color(variant.color) == color_key:
                return variant
        return None

    def stock_for(self, size, color) -> int:
        variant = self.find_variant(size, color)
        return variant.stock if variant else 0

    def set_stock(self, size, color, new_stock: int) -> bool:
        variant = self.find_variant(size, color)
        if variant is None:
            return False
        variant.stock = new_stock
        self.recompute_total_stock()
        return True

    def recompute_total_stock(self) -> int:
        self.total_stock = sum(v.stock or 0 for v in self.variants)
        return self.total_stock


class ProductVariant(Base):
    __tablename__ = "product_variants"
    __table_args__ = (UniqueConstraint("product_id", "size", "color", name="uq_variant_size_color"),)

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id", ondelete="CASCADE"), index=True)
    size: Mapped[str] = mapped_column(String(20))
    color: Mapped[str] = mapped_column(String(50))
    stock: Mapped[int] = mapped_column(Integer, default=0)
    sku: Mapped[str | None] = mapped_column(String(300), unique=True, nullable=True)

    product = relationship("Product", back_populates="variants")


@event.listens_for(Product, "before_insert")
@event.listens_for(Product, "before_update")
def _fill_slug_and_total(mapper, connection, product: Product):
    if not product.slug:
        product.slug = slugify(product.name)
    product.recompute_total_stock()


@event.listens_for(ProductVariant, "before_insert")
def _fill_sku(mapper, connection, variant: ProductVariant):
    if not variant.sku and variant.product is not None:
        variant.sku = f"{variant.product.slug}-{normalize_size(variant.size).lower()}-{slugify(variant.color)}"
