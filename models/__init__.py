# Import models so that SQLAlchemy metadata includes them on app startup
from .user import User  # noqa: F401
from .product import Product, ProductVariant  # noqa: F401
from .coupon import Coupon, CouponUsage  # noqa: F401
from .delivery_charge import DeliveryCharge  # noqa: F401
from .setting import Setting  # noqa: F401
from .order import Order  # noqa: F401
from .order_item import OrderItem  # noqa: F401
