from datetime import datetime
from pydantic import BaseModel, EmailStr
from typing import List, Optional


class OrderItemIn(BaseModel):
    product_id: Optional[int] = None
    quantity: Optional[int] = None
    size: Optional[str] = None
    color: Optional[str] = None


class ShippingAddress(BaseModel):
    full_name: str
    phone: str
    email: EmailStr
    address: str
    city: str
    state: str
    pincode: str
    country: str = "India"


class OrderCreate(BaseModel):
    items: List[OrderItemIn]
    shipping_address: ShippingAddress
    payment_method: str = "COD"
    coupon_code: Optional[str] = None


class ApplyCouponRequest(BaseModel):
    coupon_code: str
    items: List[OrderItemIn]
    shipping_address: ShippingAddress


class PaymentConfirmRequest(BaseModel):
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str


class OrderStatusUpdate(BaseModel):
    status: str
    tracking_number: Optional[str] = None
    notes: Optional[str] = None


class CouponUsedOut(BaseModel):
    coupon_id: int
    code: str
    type: str
    value: float
    discount_amount: float
    discount_on_delivery: float = 0


class OrderItemOut(BaseModel):
    id: int
    product_id: int
    name: str
    image: str
    size: str
    color: str
    quantity: int
    unit_price: float
    total: float

    class Config:
        from_attributes = True


class OrderOut(BaseModel):
    id: int
    order_number: str
    user_id: int
    currency: str
    status: str
    payment_method: str
    payment_status: str
    payment_failure_reason: Optional[str] = None
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    shipping_address: ShippingAddress
    subtotal: float
    delivery_charge: float
    discount_amount: float
    discount_on_delivery: float
    total_amount: float
    coupon_used: Optional[CouponUsedOut] = None
    tracking_number: Optional[str] = None
    notes: Optional[str] = None
    items: List[OrderItemOut]
    paid_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class CalculationOut(BaseModel):
    subtotal: float
    delivery_charge: float
    discount_amount: float
    discount_on_delivery: float
    total_amount: float
    savings: float
    coupon: Optional[CouponUsedOut] = None


class PaymentIntentOut(BaseModel):
    intent_id: str
    amount: int
    currency: str
    key: str


class OrderPlacedOut(BaseModel):
    message: str
    order: OrderOut
    calculation: CalculationOut
    payment: Optional[PaymentIntentOut] = None


class OrderListOut(BaseModel):
    orders: List[OrderOut]
    total: int
    page: int
    limit: int
    total_pages: int
    has_next_page: bool
    has_prev_page: bool


class StatusStat(BaseModel):
    status: str
    count: int
    total_amount: float


class AdminOrderListOut(OrderListOut):
    stats: List[StatusStat]


class CodStatus(BaseModel):
    cod_enabled: bool
