from pydantic import BaseModel, Field
from typing import List, Optional


class DeliveryChargeCreate(BaseModel):
    city: str = Field(min_length=1, max_length=120)
    state: str = Field(min_length=1, max_length=120)
    charge: float = Field(ge=0)
    minimum_order_value: float = Field(default=0, ge=0)
    free_delivery_threshold: float = Field(default=0, ge=0)
    estimated_days: int = Field(default=3, ge=1)


class DeliveryChargeOut(BaseModel):
    id: int
    city: str
    state: str
    charge: float
    minimum_order_value: float
    free_delivery_threshold: float
    estimated_days: int
    is_active: bool

    class Config:
        from_attributes = True


class DeliveryChargeUpdate(BaseModel):
    city: Optional[str] = Field(default=None, min_length=1, max_length=120)
    state: Optional[str] = Field(default=None, min_length=1, max_length=120)
    charge: Optional[float] = Field(default=None, ge=0)
    minimum_order_value: Optional[float] = Field(default=None, ge=0)
    free_delivery_threshold: Optional[float] = Field(default=None, ge=0)
    estimated_days: Optional[int] = Field(default=None, ge=1)
    is_active: Optional[bool] = None


class DeliveryLocation(BaseModel):
    state: str
    cities: List[str]
