from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from main import app
from core.db import Base, get_db, utcnow
from core import config as core_config
from models.user import User
from models.product import Product, ProductVariant
from models.coupon import Coupon
from security.password import hash_password
from security import jwt as jwt_utils
from services import razorpay
from services.razorpay import GatewayResult


@pytest.fixture(scope="session", autouse=True)
def test_settings():
    core_config.settings.JWT_SECRET = "test-secret"
    core_config.settings.REFRESH_SECRET = "test-refresh"
    core_config.settings.RAZORPAY_KEY_ID = "rzp_test_key"
    core_config.settings.RAZORPAY_KEY_SECRET = "test-key-secret"
    core_config.settings.RAZORPAY_WEBHOOK_SECRET = "test-webhook-secret"
    core_config.settings.DEFAULT_DELIVERY_CHARGE = "50"
    core_config.settings.TESTING = True
    yield


@pytest.fixture()
def db():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    Base.metadata.create_all(bind=engine)

    session = TestingSessionLocal()

    def _get_db():
        try:
            yield session
        finally:
            pass

    app.dependency_overrides[get_db] = _get_db
    try:
        yield session
    finally:
        session.close()
        app.dependency_overrides.clear()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def client(db):
    with TestClient(app) as c:
        yield c


class FakeGateway:
    """Stands in for the Razorpay adapter's network calls."""

    def __init__(self):
        self.intents = []
        self.refunds = []
        self.intent_error = None
        self.refund_error = None

    def create_intent(self, amount_minor, receipt, payer_email):
        if self.intent_error:
            return GatewayResult(False, error=self.intent_error)
        intent_id = f"order_test{len(self.intents) + 1}"
        self.intents.append({"intent_id": intent_id, "amount": amount_minor, "receipt": receipt, "email": payer_email})
        return GatewayResult(
            True,
            data={"intent_id": intent_id, "amount": amount_minor, "currency": "INR", "key": "rzp_test_key"},
        )

    def refund(self, payment_id, amount, reason="Order cancelled"):
        if self.refund_error:
            return GatewayResult(False, error=self.refund_error)
        refund_id = f"rfnd_test{len(self.refunds) + 1}"
        self.refunds.append({"payment_id": payment_id, "amount": amount, "reason": reason})
        return GatewayResult(True, data={"refund_id": refund_id, "status": "processed"})


@pytest.fixture()
def gateway(monkeypatch):
    fake = FakeGateway()
    monkeypatch.setattr(razorpay, "create_intent", fake.create_intent)
    monkeypatch.setattr(razorpay, "refund", fake.refund)
    return fake


def _make_user(db, email, is_admin=False, first_name="Test"):
    user = User(
        first_name=first_name,
        last_name="User",
        email=email,
        password_hash=hash_password("testpass123"),
        is_admin=is_admin,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def test_user(db):
    return _make_user(db, "test@example.com")


@pytest.fixture
def other_user(db):
    return _make_user(db, "other@example.com", first_name="Other")


@pytest.fixture
def admin_user(db):
    return _make_user(db, "admin@example.com", is_admin=True, first_name="Admin")


@pytest.fixture
def auth_headers(test_user):
    return {"Authorization": f"Bearer {jwt_utils.create_access_token(str(test_user.id))}"}


@pytest.fixture
def other_headers(other_user):
    return {"Authorization": f"Bearer {jwt_utils.create_access_token(str(other_user.id))}"}


@pytest.fixture
def admin_headers(admin_user):
    return {"Authorization": f"Bearer {jwt_utils.create_access_token(str(admin_user.id))}"}


@pytest.fixture
def product(db):
    """A shoe priced 1000 with two variants: 9/Black (5 left) and 10/White (2 left)."""
    p = Product(name="Trail Runner", price=1000, description="Lightweight trail shoe")
    p.variants = [
        ProductVariant(size="9", color="Black", stock=5),
        ProductVariant(size="10", color="White", stock=2),
    ]
    db.add(p)
    db.commit()
    db.refresh(p)
    return p


@pytest.fixture
def make_coupon(db):
    def _make(code="SAVE10", discount_type="PERCENTAGE", value=10, **kwargs):
        now = utcnow()
        coupon = Coupon(
            code=code,
            name=kwargs.pop("name", code.title()),
            discount_type=discount_type,
            value=value,
            valid_from=kwargs.pop("valid_from", now - timedelta(days=1)),
            valid_until=kwargs.pop("valid_until", now + timedelta(days=30)),
            **kwargs,
        )
        db.add(coupon)
        db.commit()
        db.refresh(coupon)
        return coupon

    return _make


@pytest.fixture
def shipping_address():
    return {
        "full_name": "Asha Rao",
        "phone": "9876543210",
        "email": "asha@example.com",
        "address": "12 MG Road",
        "city": "Pune",
        "state": "Maharashtra",
        "pincode": "411001",
        "country": "India",
    }


@pytest.fixture
def order_data(shipping_address):
    def _data(quantity=2, size="9", color="Black", payment_method="COD", coupon_code=None, product_id=1):
        return {
            "items": [{"product_id": product_id, "quantity": quantity, "size": size, "color": color}],
            "shipping_address": shipping_address,
            "payment_method": payment_method,
            "coupon_code": coupon_code,
        }

    return _data
