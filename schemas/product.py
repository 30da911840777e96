from pydantic import BaseModel, Field
from typing import List, Optional


class VariantIn(BaseModel):
    size: str = Field(min_length=1, max_length=20)
    color: str = Field(min_length=1, max_length=50)
    stock: int = Field(default=0, ge=0)


class ProductCreate(BaseModel):
    name: str
    slug: Optional[str] = None
    price: float = Field(ge=0)
    description: Optional[str] = None
    main_image: Optional[str] = None
    variants: List[VariantIn] = []


class StockUpdate(BaseModel):
    size: str
    color: str
    stock: int = Field(ge=0)


class VariantOut(BaseModel):
    id: int
    size: str
    color: str
    stock: int
    sku: Optional[str] = None

    class Config:
        from_attributes = True


class ProductOut(BaseModel):
    id: int
    name: str
    slug: str
    price: float
    description: Optional[str] = None
    main_image: str
    total_stock: int
    is_active: bool
    variants: List[VariantOut]

    class Config:
        from_attributes = True
