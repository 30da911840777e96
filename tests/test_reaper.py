from contextlib import contextmanager
from datetime import timedelta

import pytest

from core.db import utcnow
from models.order import Order
from services import orders as order_service
from tasks import order_tasks


@pytest.fixture
def stale_order(db, gateway, test_user, product, order_data):
    order = order_service.place_order(db, test_user, order_data(product_id=product.id, payment_method="RAZORPAY")).order
    order.created_at = utcnow() - timedelta(minutes=45)
    db.commit()
    return order


class TestAbandonedOrderSweep:
    def test_stale_online_order_is_cancelled(self, db, stale_order, product):
        assert order_service.cancel_abandoned_orders(db, max_age_minutes=30) == 1

        db.refresh(stale_order)
        assert stale_order.status == "CANCELLED"
        assert stale_order.payment_status == "FAILED"
        assert stale_order.payment_failure_reason == "Payment timeout"
        assert stale_order.cancelled_at is not None
        db.refresh(product)
        assert product.stock_for("9", "Black") == 5

    def test_fresh_and_cod_orders_are_kept(self, db, gateway, test_user, product, order_data):
        fresh = order_service.place_order(
            db, test_user, order_data(product_id=product.id, quantity=1, payment_method="RAZORPAY")
        ).order
        cod = order_service.place_order(db, test_user, order_data(product_id=product.id, quantity=1)).order
        cod.created_at = utcnow() - timedelta(hours=2)
        db.commit()

        assert order_service.cancel_abandoned_orders(db, max_age_minutes=30) == 0
        db.refresh(fresh)
        db.refresh(cod)
        assert fresh.status == "PENDING"
        assert cod.status == "CONFIRMED"

    def test_paid_order_is_not_reaped(self, db, stale_order, test_user):
        from services import razorpay

        signature = razorpay.sign_payment(stale_order.gateway_order_id, "pay_1")
        order_service.confirm_payment(db, stale_order.gateway_order_id, "pay_1", signature, user=test_user)

        assert order_service.cancel_abandoned_orders(db, max_age_minutes=30) == 0

    def test_sweep_is_repeatable(self, db, stale_order):
        assert order_service.cancel_abandoned_orders(db, max_age_minutes=30) == 1
        assert order_service.cancel_abandoned_orders(db, max_age_minutes=30) == 0

    def test_failure_on_one_order_does_not_stop_sweep(self, db, gateway, test_user, product, order_data, monkeypatch):
        orders = []
        for _ in range(2):
            o = order_service.place_order(
                db, test_user, order_data(product_id=product.id, quantity=1, payment_method="RAZORPAY")
            ).order
            o.created_at = utcnow() - timedelta(hours=1)
            orders.append(o)
        db.commit()

        real_execute = db.execute
        calls = {"n": 0}

        def flaky_execute(statement, *args, **kwargs):
            if getattr(statement, "is_update", False) and calls["n"] == 0:
                calls["n"] += 1
                raise RuntimeError("database hiccup")
            return real_execute(statement, *args, **kwargs)

        monkeypatch.setattr(db, "execute", flaky_execute)
        assert order_service.cancel_abandoned_orders(db, max_age_minutes=30) == 1
        monkeypatch.setattr(db, "execute", real_execute)

        statuses = sorted(db.query(Order.status).all())
        assert statuses == [("CANCELLED",), ("PENDING",)]


class TestSweepTask:
    def test_task_runs_sweep_in_its_own_session(self, db, stale_order, monkeypatch):
        @contextmanager
        def _session():
            yield db
            db.commit()

        monkeypatch.setattr(order_tasks, "db_session", _session)
        result = order_tasks.cancel_abandoned_orders_task.run(30)

        assert result == {"status": "ok", "cancelled": 1}
        db.refresh(stale_order)
        assert stale_order.status == "CANCELLED"
