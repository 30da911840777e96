from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from core.db import get_db
from models.product import Product, ProductVariant, normalize_color, normalize_size, slugify
from models.user import User
from routes.auth import require_admin
from schemas.product import ProductCreate, ProductOut, StockUpdate

router = APIRouter(prefix="/products", tags=["products"])


@router.post("/", response_model=ProductOut, status_code=201)
def create_product(data: ProductCreate, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    slug = data.slug or slugify(data.name)
    existing = db.query(Product).filter(Product.slug == slug).one_or_none()
    if existing:
        raise HTTPException(status_code=400, detail="Slug already exists")

    product = Product(
        name=data.name,
        slug=slug,
        description=data.description,
        price=data.price,
        is_active=True,
    )
    if data.main_image:
        product.main_image = data.main_image
    seen = set()
    for v in data.variants:
        key = (normalize_size(v.size), normalize_color(v.color))
        if key in seen:
            raise HTTPException(status_code=400, detail=f"Duplicate variant Size: {v.size}, Color: {v.color}")
        seen.add(key)
        product.variants.append(ProductVariant(size=v.size.strip(), color=v.color.strip(), stock=v.stock))
    db.add(product)
    db.commit()
    db.refresh(product)
    return product


@router.get("/{product_id}", response_model=ProductOut)
def get_product(product_id: int, db: Session = Depends(get_db)):
    product = db.get(Product, product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


@router.put("/{product_id}/stock", response_model=ProductOut)
def set_variant_stock(
    product_id: int, data: StockUpdate, admin: User = Depends(require_admin), db: Session = Depends(get_db)
):
    product = db.get(Product, product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    if not product.set_stock(data.size, data.color, data.stock):
        raise HTTPException(
            status_code=404,
            detail=f"Product {product.name} does not have a variant with Size: {data.size}, Color: {data.color}.",
        )
    db.commit()
    db.refresh(product)
    return product
