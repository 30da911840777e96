import hashlib
import hmac
import json
from decimal import Decimal

import pytest

from core.errors import (
    AuthorizationError,
    ConflictError,
    GatewayError,
    NotFoundError,
    SignatureError,
    ValidationError,
)
from models.coupon import CouponUsage
from models.order import Order
from services import orders as order_service
from services import razorpay
from services import settings_store


def _stock(db, product, size="9", color="Black"):
    db.refresh(product)
    return product.stock_for(size, color)


def _usage(db, coupon_id, user_id):
    row = db.query(CouponUsage).filter_by(coupon_id=coupon_id, user_id=user_id).one_or_none()
    return row.usage_count if row else 0


@pytest.fixture
def online_order(db, gateway, test_user, product, order_data):
    placed = order_service.place_order(db, test_user, order_data(product_id=product.id, payment_method="RAZORPAY"))
    return placed.order


class TestPlaceOrder:
    def test_cod_reserves_immediately(self, db, test_user, product, order_data, make_coupon):
        coupon = make_coupon("SAVE10")
        placed = order_service.place_order(
            db, test_user, order_data(product_id=product.id, coupon_code="SAVE10")
        )
        order = placed.order

        assert placed.intent is None
        assert order.status == "CONFIRMED"
        assert order.payment_status == "PENDING"
        assert order.confirmed_at is not None
        assert order.inventory_committed is True
        assert order.total_amount == Decimal("1850.00")
        assert order.order_number.startswith("ORD")
        assert order.coupon_used["code"] == "SAVE10"
        assert order.items[0].name == "Trail Runner"
        assert _stock(db, product) == 3
        db.refresh(coupon)
        assert coupon.usage_count == 1
        assert _usage(db, coupon.id, test_user.id) == 1

    def test_cod_disabled(self, db, test_user, product, order_data):
        settings_store.set_value(db, settings_store.COD_ENABLED, False)
        db.commit()
        with pytest.raises(ValidationError, match="Cash on delivery"):
            order_service.place_order(db, test_user, order_data(product_id=product.id))
        assert db.query(Order).count() == 0

    def test_online_order_has_no_side_effects(self, db, gateway, test_user, product, order_data, make_coupon):
        coupon = make_coupon("SAVE10")
        placed = order_service.place_order(
            db, test_user, order_data(product_id=product.id, payment_method="RAZORPAY", coupon_code="SAVE10")
        )

        assert placed.order.status == "PENDING"
        assert placed.order.payment_status == "PENDING"
        assert placed.order.inventory_committed is False
        assert placed.order.gateway_order_id == "order_test1"
        assert gateway.intents[0]["amount"] == 185000
        assert gateway.intents[0]["receipt"] == placed.order.order_number
        assert _stock(db, product) == 5
        db.refresh(coupon)
        assert coupon.usage_count == 0

    def test_intent_failure_persists_nothing(self, db, gateway, test_user, product, order_data):
        gateway.intent_error = "Authentication failed"
        with pytest.raises(GatewayError, match="Authentication failed"):
            order_service.place_order(db, test_user, order_data(product_id=product.id, payment_method="RAZORPAY"))
        assert db.query(Order).count() == 0

    def test_unknown_payment_method(self, db, test_user, product, order_data):
        with pytest.raises(ValidationError, match="Unsupported payment method"):
            order_service.place_order(db, test_user, order_data(product_id=product.id, payment_method="CHEQUE"))

    def test_validation_failure_mutates_nothing(self, db, test_user, product, order_data):
        with pytest.raises(ValidationError):
            order_service.place_order(db, test_user, order_data(product_id=product.id, quantity=6))
        assert db.query(Order).count() == 0
        assert _stock(db, product) == 5


class TestConfirmPayment:
    def test_confirm_applies_reservations_once(self, db, gateway, test_user, product, order_data, make_coupon):
        coupon = make_coupon("SAVE10")
        order = order_service.place_order(
            db, test_user, order_data(product_id=product.id, payment_method="RAZORPAY", coupon_code="SAVE10")
        ).order
        signature = razorpay.sign_payment(order.gateway_order_id, "pay_1")

        first = order_service.confirm_payment(db, order.gateway_order_id, "pay_1", signature, user=test_user)
        paid_at = first.paid_at
        second = order_service.confirm_payment(db, order.gateway_order_id, "pay_1", signature, user=test_user)

        assert second.status == "CONFIRMED"
        assert second.payment_status == "PAID"
        assert second.paid_at == paid_at
        assert second.gateway_payment_id == "pay_1"
        assert _stock(db, product) == 3
        db.refresh(coupon)
        assert coupon.usage_count == 1
        assert _usage(db, coupon.id, test_user.id) == 1

    def test_payment_after_manual_confirmation_is_recorded(self, db, gateway, online_order, test_user, product):
        order_service.update_order_status(db, online_order.id, "CONFIRMED")
        signature = razorpay.sign_payment(online_order.gateway_order_id, "pay_2")

        order = order_service.confirm_payment(db, online_order.gateway_order_id, "pay_2", signature, user=test_user)
        again = order_service.confirm_payment(db, online_order.gateway_order_id, "pay_2", signature, user=test_user)

        assert order.status == "CONFIRMED"
        assert again.payment_status == "PAID"
        assert again.gateway_payment_id == "pay_2"
        assert again.paid_at is not None
        assert _stock(db, product) == 3
        assert gateway.refunds == []

    def test_wrong_secret_marks_failed(self, db, online_order, test_user, product):
        bad = hmac.new(b"wrong-secret", f"{online_order.gateway_order_id}|pay_1".encode(), hashlib.sha256).hexdigest()

        with pytest.raises(SignatureError):
            order_service.confirm_payment(db, online_order.gateway_order_id, "pay_1", bad, user=test_user)

        db.refresh(online_order)
        assert online_order.payment_status == "FAILED"
        assert online_order.status == "PENDING"
        assert online_order.payment_failure_reason == "Invalid payment signature"
        assert _stock(db, product) == 5

    def test_retry_after_failed_signature(self, db, online_order, test_user, product):
        with pytest.raises(SignatureError):
            order_service.confirm_payment(db, online_order.gateway_order_id, "pay_1", "deadbeef", user=test_user)

        good = razorpay.sign_payment(online_order.gateway_order_id, "pay_2")
        order = order_service.confirm_payment(db, online_order.gateway_order_id, "pay_2", good, user=test_user)
        assert order.payment_status == "PAID"
        assert order.payment_failure_reason is None
        assert _stock(db, product) == 3

    def test_other_user_cannot_confirm(self, db, online_order, other_user):
        signature = razorpay.sign_payment(online_order.gateway_order_id, "pay_1")
        with pytest.raises(AuthorizationError):
            order_service.confirm_payment(db, online_order.gateway_order_id, "pay_1", signature, user=other_user)

    def test_sold_out_while_paying_refunds(self, db, gateway, online_order, test_user, product):
        product.set_stock("9", "Black", 1)
        db.commit()
        signature = razorpay.sign_payment(online_order.gateway_order_id, "pay_1")

        with pytest.raises(ValidationError, match="refunded"):
            order_service.confirm_payment(db, online_order.gateway_order_id, "pay_1", signature, user=test_user)

        db.refresh(online_order)
        assert online_order.status == "CANCELLED"
        assert online_order.payment_status == "REFUNDED"
        assert online_order.inventory_committed is False
        assert gateway.refunds[0]["payment_id"] == "pay_1"
        assert _stock(db, product) == 1

    def test_payment_after_reap_is_refunded(self, db, gateway, online_order, test_user):
        online_order.status = "CANCELLED"
        online_order.payment_status = "FAILED"
        db.commit()
        signature = razorpay.sign_payment(online_order.gateway_order_id, "pay_1")

        with pytest.raises(ConflictError):
            order_service.confirm_payment(db, online_order.gateway_order_id, "pay_1", signature, user=test_user)
        db.refresh(online_order)
        assert online_order.payment_status == "REFUNDED"
        assert len(gateway.refunds) == 1


class TestWebhook:
    def _send(self, db, event, entity):
        body = json.dumps({"event": event, "payload": {"payment": {"entity": entity}}}).encode()
        signature = hmac.new(b"test-webhook-secret", body, hashlib.sha256).hexdigest()
        return order_service.confirm_webhook_payment(db, body, signature)

    def _post(self, db, event, order, payment_id="pay_w1", **entity):
        return self._send(db, event, {"id": payment_id, "order_id": order.gateway_order_id, **entity})

    def test_event_without_gateway_order_is_ignored(self, db, test_user, product, order_data):
        first = order_service.place_order(db, test_user, order_data(product_id=product.id)).order
        second = order_service.place_order(db, test_user, order_data(product_id=product.id)).order

        assert self._send(db, "payment.captured", {"id": "pay_link1"}) == "payment.captured"
        assert self._send(db, "payment.failed", {"id": "pay_link2"}) == "payment.failed"

        for order in (first, second):
            db.refresh(order)
            assert order.payment_status == "PENDING"
            assert order.gateway_payment_id is None

    def test_event_for_unknown_gateway_order_is_ignored(self, db, gateway, online_order, product):
        event = self._send(db, "payment.captured", {"id": "pay_other", "order_id": "order_elsewhere"})

        assert event == "payment.captured"
        db.refresh(online_order)
        assert online_order.payment_status == "PENDING"
        assert _stock(db, product) == 5
        assert gateway.refunds == []

    def test_empty_gateway_order_id_is_not_found(self, db, test_user, product, order_data):
        order_service.place_order(db, test_user, order_data(product_id=product.id))
        with pytest.raises(NotFoundError):
            order_service.confirm_payment(db, "", "pay_x", "sig")

    def test_captured_then_client_confirmation(self, db, online_order, test_user, product):
        assert self._post(db, "payment.captured", online_order) == "payment.captured"
        signature = razorpay.sign_payment(online_order.gateway_order_id, "pay_w1")
        order = order_service.confirm_payment(db, online_order.gateway_order_id, "pay_w1", signature, user=test_user)

        assert order.payment_status == "PAID"
        assert _stock(db, product) == 3

    def test_captured_after_manual_confirmation(self, db, gateway, online_order, product):
        order_service.update_order_status(db, online_order.id, "PROCESSING")
        self._post(db, "payment.captured", online_order, payment_id="pay_late")

        db.refresh(online_order)
        assert online_order.status == "PROCESSING"
        assert online_order.payment_status == "PAID"
        assert online_order.gateway_payment_id == "pay_late"
        assert _stock(db, product) == 3
        assert gateway.refunds == []

    def test_failed_event_records_reason(self, db, online_order):
        self._post(db, "payment.failed", online_order, error_description="Card declined")
        db.refresh(online_order)
        assert online_order.payment_status == "FAILED"
        assert online_order.payment_failure_reason == "Card declined"

    def test_bad_webhook_signature(self, db, online_order):
        with pytest.raises(SignatureError):
            order_service.confirm_webhook_payment(db, b'{"event": "order.paid"}', "nope")


class TestCancelOrder:
    def test_cancel_cod_restores_stock_and_coupon(self, db, test_user, product, order_data, make_coupon):
        coupon = make_coupon("SAVE10")
        order = order_service.place_order(
            db, test_user, order_data(product_id=product.id, coupon_code="SAVE10")
        ).order
        assert _stock(db, product) == 3

        cancelled = order_service.cancel_order(db, order.id, test_user)

        assert cancelled.status == "CANCELLED"
        assert cancelled.payment_status == "FAILED"
        assert cancelled.cancelled_at is not None
        assert cancelled.inventory_committed is False
        assert _stock(db, product) == 5
        db.refresh(coupon)
        assert coupon.usage_count == 0
        assert _usage(db, coupon.id, test_user.id) == 0

    def test_cancel_paid_order_refunds(self, db, gateway, online_order, test_user, product):
        signature = razorpay.sign_payment(online_order.gateway_order_id, "pay_1")
        order_service.confirm_payment(db, online_order.gateway_order_id, "pay_1", signature, user=test_user)

        cancelled = order_service.cancel_order(db, online_order.id, test_user)

        assert cancelled.payment_status == "REFUNDED"
        assert cancelled.refund_id == "rfnd_test1"
        assert gateway.refunds[0]["amount"] == Decimal("2050.00")
        assert _stock(db, product) == 5

    def test_refund_failure_leaves_order_untouched(self, db, gateway, online_order, test_user, product):
        signature = razorpay.sign_payment(online_order.gateway_order_id, "pay_1")
        order_service.confirm_payment(db, online_order.gateway_order_id, "pay_1", signature, user=test_user)
        gateway.refund_error = "Gateway timeout"

        with pytest.raises(GatewayError, match="Gateway timeout"):
            order_service.cancel_order(db, online_order.id, test_user)

        db.refresh(online_order)
        assert online_order.status == "CONFIRMED"
        assert online_order.payment_status == "PAID"
        assert online_order.cancelled_at is None
        assert _stock(db, product) == 3

    def test_unpaid_online_order_cancel(self, db, online_order, test_user, product):
        cancelled = order_service.cancel_order(db, online_order.id, test_user)
        assert cancelled.status == "CANCELLED"
        assert _stock(db, product) == 5

    def test_not_owner(self, db, online_order, other_user):
        with pytest.raises(AuthorizationError):
            order_service.cancel_order(db, online_order.id, other_user)

    def test_admin_may_cancel(self, db, online_order, admin_user):
        assert order_service.cancel_order(db, online_order.id, admin_user).status == "CANCELLED"

    def test_shipped_cannot_be_cancelled(self, db, test_user, product, order_data):
        order = order_service.place_order(db, test_user, order_data(product_id=product.id)).order
        order_service.update_order_status(db, order.id, "SHIPPED")
        with pytest.raises(ConflictError):
            order_service.cancel_order(db, order.id, test_user)


class TestAdminStatusUpdate:
    def test_forward_moves_stamp_timestamps(self, db, test_user, product, order_data):
        order = order_service.place_order(db, test_user, order_data(product_id=product.id)).order

        order = order_service.update_order_status(db, order.id, "shipped", tracking_number="TRK123")
        assert order.status == "SHIPPED"
        assert order.shipped_at is not None
        assert order.tracking_number == "TRK123"

        order = order_service.update_order_status(db, order.id, "DELIVERED", notes="Left at door")
        assert order.delivered_at is not None
        assert order.notes == "Left at door"

    def test_backwards_rejected(self, db, test_user, product, order_data):
        order = order_service.place_order(db, test_user, order_data(product_id=product.id)).order
        order_service.update_order_status(db, order.id, "PROCESSING")
        with pytest.raises(ConflictError):
            order_service.update_order_status(db, order.id, "CONFIRMED")

    def test_invalid_status(self, db, test_user, product, order_data):
        order = order_service.place_order(db, test_user, order_data(product_id=product.id)).order
        with pytest.raises(ValidationError):
            order_service.update_order_status(db, order.id, "LOST")

    def test_admin_cancel_restocks(self, db, test_user, product, order_data):
        order = order_service.place_order(db, test_user, order_data(product_id=product.id)).order
        order_service.update_order_status(db, order.id, "PROCESSING")

        order = order_service.update_order_status(db, order.id, "CANCELLED")
        assert order.status == "CANCELLED"
        assert _stock(db, product) == 5

        # cancelling twice is a no-op
        order = order_service.update_order_status(db, order.id, "CANCELLED")
        assert _stock(db, product) == 5

    def test_refunded_only_touches_payment(self, db, test_user, product, order_data):
        order = order_service.place_order(db, test_user, order_data(product_id=product.id)).order
        order = order_service.update_order_status(db, order.id, "REFUNDED")
        assert order.payment_status == "REFUNDED"
        assert order.status == "CONFIRMED"

    def test_manual_confirm_of_unpaid_online_order_reserves(self, db, online_order, product):
        order = order_service.update_order_status(db, online_order.id, "CONFIRMED")
        assert order.inventory_committed is True
        assert _stock(db, product) == 3


class TestReads:
    def test_get_order_by_number_and_owner(self, db, online_order, test_user, other_user):
        assert order_service.get_order(db, online_order.order_number, user=test_user).id == online_order.id
        assert order_service.get_order(db, str(online_order.id), user=test_user).id == online_order.id
        with pytest.raises(NotFoundError):
            order_service.get_order(db, online_order.order_number, user=other_user)

    def test_list_and_stats(self, db, test_user, product, order_data, gateway):
        order_service.place_order(db, test_user, order_data(product_id=product.id, quantity=1))
        order_service.place_order(db, test_user, order_data(product_id=product.id, quantity=1, payment_method="RAZORPAY"))

        page = order_service.list_orders(db, user_id=test_user.id, limit=1)
        assert page["total"] == 2
        assert page["total_pages"] == 2
        assert page["has_next_page"] is True
        assert len(page["orders"]) == 1

        confirmed = order_service.list_orders(db, status="confirmed")
        assert confirmed["total"] == 1

        found = order_service.list_orders(db, search="Asha")
        assert found["total"] == 2

        stats = {s["status"]: s["count"] for s in order_service.order_stats(db)}
        assert stats == {"CONFIRMED": 1, "PENDING": 1}
