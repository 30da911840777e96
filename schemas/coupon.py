from datetime import datetime
from pydantic import BaseModel, Field
from typing import List, Optional


class CouponCreate(BaseModel):
    code: str = Field(min_length=3, max_length=20)
    name: str = Field(min_length=1, max_length=150)
    description: Optional[str] = None
    discount_type: str
    value: float = Field(default=0, ge=0)
    minimum_order_amount: float = Field(default=0, ge=0)
    maximum_discount_amount: Optional[float] = Field(default=None, ge=0)
    usage_limit: Optional[int] = Field(default=None, ge=1)
    user_usage_limit: Optional[int] = Field(default=1, ge=1)
    valid_from: Optional[datetime] = None
    valid_until: datetime
    is_public: bool = True


class CouponOut(BaseModel):
    id: int
    code: str
    name: str
    description: Optional[str] = None
    discount_type: str
    value: float
    minimum_order_amount: float
    maximum_discount_amount: Optional[float] = None
    usage_limit: Optional[int] = None
    usage_count: int
    user_usage_limit: Optional[int] = None
    valid_from: datetime
    valid_until: datetime
    is_active: bool
    is_public: bool

    class Config:
        from_attributes = True


class PublicCouponOut(BaseModel):
    code: str
    name: str
    description: Optional[str] = None
    discount_type: str
    value: float
    minimum_order_amount: float
    maximum_discount_amount: Optional[float] = None
    valid_until: datetime

    class Config:
        from_attributes = True


class CouponValidateRequest(BaseModel):
    order_amount: float = Field(ge=0)
    delivery_charge: float = Field(default=0, ge=0)


class CouponValidateOut(BaseModel):
    code: str
    discount_type: str
    discount_amount: float
    discount_on_delivery: float
    final_amount: float


class CouponUpdate(BaseModel):
    code: Optional[str] = Field(default=None, min_length=3, max_length=20)
    name: Optional[str] = Field(default=None, min_length=1, max_length=150)
    description: Optional[str] = None
    discount_type: Optional[str] = None
    value: Optional[float] = Field(default=None, ge=0)
    minimum_order_amount: Optional[float] = Field(default=None, ge=0)
    maximum_discount_amount: Optional[float] = Field(default=None, ge=0)
    usage_limit: Optional[int] = Field(default=None, ge=1)
    user_usage_limit: Optional[int] = Field(default=None, ge=1)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    is_active: Optional[bool] = None
    is_public: Optional[bool] = None


class CouponUsageStats(BaseModel):
    usage_count: int
    remaining_usage: Optional[int] = None
    unique_users: int
    user_redemptions: int
    total_orders: int
    total_discount: float
    average_discount: float


class CouponDetailOut(BaseModel):
    coupon: CouponOut
    usage_stats: CouponUsageStats


class BulkCouponRequest(BaseModel):
    operation: str
    coupon_ids: List[int]


class BulkCouponOut(BaseModel):
    message: str
    modified_count: int


class CouponAnalyticsRow(BaseModel):
    coupon_id: int
    code: str
    name: str
    total_usage: int
    total_discount: float
    average_discount: float
    total_order_value: float
