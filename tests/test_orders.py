"""Tests for the order ledger: reservation, cancellation and status changes."""

import random
import re
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime

import pytest
from bson import ObjectId

import orders
from catalog import delete_product
from errors import (
    InsufficientStockError,
    InvalidSizeError,
    InvalidStateTransitionError,
    OrderNotFoundError,
    ProductInactiveError,
    ProductNotFoundError,
    ValidationFailedError,
)
from schemas import PaymentUpdate, StatusUpdate

from .conftest import make_order_request, make_product, stock_of


class TestCreateOrder:
    def test_cash_on_delivery_scenario(self, store):
        p1 = make_product(store, price=500, stock=10, sizes=["M"])

        order = orders.create_order(store, make_order_request([(p1, "M", 2)], shipping_cost=50))

        assert order["total_amount"] == 1050
        assert order["order_status"] == "pending"
        assert order["payment_status"] == "pending"
        assert order["payment_method"] == "cod"
        assert order["items"][0]["subtotal"] == 1000
        assert order["items"][0]["price"] == 500
        assert order["items"][0]["product_id"] == p1
        assert order["total_items"] == 2
        assert stock_of(store, p1) == 8

    def test_order_number_and_history(self, store):
        p1 = make_product(store)

        order = orders.create_order(store, make_order_request([(p1, "S", 1)]), actor="checkout")

        assert re.match(r"^ORD-\d{8}-[A-Z0-9]{6}$", order["order_number"])
        assert len(order["status_history"]) == 1
        assert order["status_history"][0]["status"] == "pending"
        assert order["status_history"][0]["updated_by"] == "checkout"
        assert order["email"] == "asha@example.com"
        assert order["full_address"] == "12 MG Road, Bengaluru, KA 560001, India"

    def test_total_is_sum_of_subtotals_plus_shipping_minus_discount(self, store):
        p1 = make_product(store, price=999, discount=15)
        p2 = make_product(store, name="Joggers", price=1249.5, sizes=["L", "XL"])

        order = orders.create_order(
            store,
            make_order_request([(p1, "M", 3), (p2, "XL", 2)], shipping_cost=79, discount=120),
        )

        subtotals = [item["subtotal"] for item in order["items"]]
        assert order["total_amount"] == round(sum(subtotals) + 79 - 120, 2)

    def test_price_comes_from_catalog_after_discount(self, store):
        p1 = make_product(store, price=1000, discount=10)

        order = orders.create_order(store, make_order_request([(p1, "M", 1)]))

        assert order["items"][0]["price"] == 900
        assert order["items"][0]["product_name"] == "Classic Tee"
        assert order["items"][0]["product_image"] == "https://cdn.example.com/tee.jpg"

    def test_insufficient_stock_rejected_without_changes(self, store):
        p1 = make_product(store, stock=2)

        with pytest.raises(InsufficientStockError):
            orders.create_order(store, make_order_request([(p1, "M", 3)]))

        assert stock_of(store, p1) == 2
        assert store.orders.count_documents({}) == 0

    def test_one_invalid_line_leaves_all_stock_unchanged(self, store):
        p1 = make_product(store, stock=5)
        p2 = make_product(store, name="Cap", category="Accessories", sizes=["M"], stock=5)

        with pytest.raises(InvalidSizeError):
            orders.create_order(store, make_order_request([(p1, "M", 2), (p2, "XXL", 1)]))

        assert stock_of(store, p1) == 5
        assert stock_of(store, p2) == 5
        assert store.orders.count_documents({}) == 0

    def test_repeated_product_cannot_overdraw(self, store):
        # each line fits on its own; together they exceed the stock
        p1 = make_product(store, stock=3)

        with pytest.raises(InsufficientStockError):
            orders.create_order(store, make_order_request([(p1, "M", 2), (p1, "L", 2)]))

        assert stock_of(store, p1) == 3
        assert store.orders.count_documents({}) == 0

    def test_inactive_product_rejected(self, store):
        p1 = make_product(store, is_active=False)

        with pytest.raises(ProductInactiveError):
            orders.create_order(store, make_order_request([(p1, "M", 1)]))

    def test_missing_product_rejected(self, store):
        with pytest.raises(ProductNotFoundError):
            orders.create_order(store, make_order_request([(str(ObjectId()), "M", 1)]))

    def test_malformed_product_id_rejected(self, store):
        with pytest.raises(ValidationFailedError):
            orders.create_order(store, make_order_request([("not-an-id", "M", 1)]))

    def test_discount_larger_than_order_rejected(self, store):
        p1 = make_product(store, price=100, stock=4)

        with pytest.raises(ValidationFailedError):
            orders.create_order(store, make_order_request([(p1, "M", 1)], discount=500))

        assert stock_of(store, p1) == 4

    def test_online_payment_starts_pending(self, store):
        p1 = make_product(store)

        order = orders.create_order(store, make_order_request([(p1, "M", 1)], payment_method="upi"))

        assert order["payment_status"] == "pending"
        assert order["gateway_order_id"] is None

    def test_client_cannot_choose_gateway_order(self, store):
        p1 = make_product(store)

        order = orders.create_order(
            store, make_order_request([(p1, "M", 1)], payment_method="upi", gateway_order_id="order_abc")
        )

        assert order["gateway_order_id"] is None

    def test_snapshot_survives_product_edit_and_delete(self, store):
        p1 = make_product(store, price=500)
        order = orders.create_order(store, make_order_request([(p1, "M", 1)]))

        store.products.update_one({"_id": ObjectId(p1)}, {"$set": {"price": 900, "name": "Renamed"}})
        delete_product(store, p1)

        again = orders.get_order(store, order["id"])
        assert again["items"][0]["price"] == 500
        assert again["items"][0]["product_name"] == "Classic Tee"

    def test_duplicate_order_number_is_retried(self, store, monkeypatch):
        store.orders.create_index("order_number", unique=True)
        store.orders.insert_one({"order_number": "ORD-20260101-AAAAAA"})
        numbers = iter(["ORD-20260101-AAAAAA", "ORD-20260101-BBBBBB"])
        monkeypatch.setattr(orders, "generate_order_number", lambda now=None, rng=None: next(numbers))
        p1 = make_product(store, stock=5)

        order = orders.create_order(store, make_order_request([(p1, "M", 2)]))

        assert order["order_number"] == "ORD-20260101-BBBBBB"
        # the failed first attempt gave its reservation back
        assert stock_of(store, p1) == 3


class TestConcurrentCheckout:
    def test_last_unit_sold_once(self, store):
        p1 = make_product(store, stock=1)
        barrier = threading.Barrier(2)

        def checkout():
            barrier.wait()
            try:
                orders.create_order(store, make_order_request([(p1, "M", 1)]))
                return "ok"
            except InsufficientStockError:
                return "insufficient"

        with ThreadPoolExecutor(max_workers=2) as pool:
            results = list(pool.map(lambda _: checkout(), range(2)))

        assert sorted(results) == ["insufficient", "ok"]
        assert stock_of(store, p1) == 0
        assert store.orders.count_documents({}) == 1

    def test_sequential_checkout_sees_drained_stock(self, store):
        p1 = make_product(store, stock=1)
        orders.create_order(store, make_order_request([(p1, "M", 1)]))

        with pytest.raises(InsufficientStockError) as exc_info:
            orders.create_order(store, make_order_request([(p1, "M", 1)]))

        assert exc_info.value.available == 0
        assert stock_of(store, p1) == 0


class TestCancelOrder:
    def test_cancel_pending_restores_stock(self, store):
        p1 = make_product(store, stock=10)
        p2 = make_product(store, name="Hoodie", stock=4)
        order = orders.create_order(store, make_order_request([(p1, "M", 3), (p2, "L", 4)]))
        assert stock_of(store, p1) == 7
        assert stock_of(store, p2) == 0

        cancelled = orders.cancel_order(store, order["id"], "Customer request", actor="admin-1")

        assert cancelled["order_status"] == "cancelled"
        assert cancelled["cancel_reason"] == "Customer request"
        assert cancelled["cancelled_at"] is not None
        assert cancelled["status_history"][-1]["status"] == "cancelled"
        assert cancelled["status_history"][-1]["updated_by"] == "admin-1"
        assert stock_of(store, p1) == 10
        assert stock_of(store, p2) == 4

    def test_cancel_processing_restores_stock(self, store):
        p1 = make_product(store, stock=6)
        order = orders.create_order(store, make_order_request([(p1, "M", 2)]))
        orders.update_order_status(store, order["id"], StatusUpdate(order_status="processing"))

        orders.cancel_order(store, order["id"])

        assert stock_of(store, p1) == 6

    def test_default_reason(self, store):
        p1 = make_product(store)
        order = orders.create_order(store, make_order_request([(p1, "M", 1)]))

        cancelled = orders.cancel_order(store, order["id"])

        assert cancelled["cancel_reason"] == "Cancelled by admin"

    def test_cancel_delivered_rejected(self, store):
        p1 = make_product(store, stock=5)
        order = orders.create_order(store, make_order_request([(p1, "M", 1)]))
        orders.update_order_status(store, order["id"], StatusUpdate(order_status="delivered"))

        with pytest.raises(InvalidStateTransitionError, match="delivered"):
            orders.cancel_order(store, order["id"])

        assert stock_of(store, p1) == 4

    def test_cancel_twice_does_not_double_credit(self, store):
        p1 = make_product(store, stock=5)
        order = orders.create_order(store, make_order_request([(p1, "M", 2)]))
        orders.cancel_order(store, order["id"])

        with pytest.raises(InvalidStateTransitionError, match="already cancelled"):
            orders.cancel_order(store, order["id"])

        assert stock_of(store, p1) == 5

    def test_cancel_shipped_rejected(self, store):
        p1 = make_product(store, stock=5)
        order = orders.create_order(store, make_order_request([(p1, "M", 1)]))
        orders.update_order_status(store, order["id"], StatusUpdate(order_status="shipped"))

        with pytest.raises(InvalidStateTransitionError):
            orders.cancel_order(store, order["id"])

        assert stock_of(store, p1) == 4

    def test_cancel_with_deleted_product(self, store):
        p1 = make_product(store, stock=5)
        p2 = make_product(store, name="Socks", stock=5)
        order = orders.create_order(store, make_order_request([(p1, "M", 1), (p2, "M", 2)]))
        delete_product(store, p1)

        cancelled = orders.cancel_order(store, order["id"])

        assert cancelled["order_status"] == "cancelled"
        assert stock_of(store, p2) == 5

    def test_cancel_unknown_order(self, store):
        with pytest.raises(OrderNotFoundError):
            orders.cancel_order(store, str(ObjectId()))


class TestStatusMachine:
    @pytest.mark.parametrize("current,target,allowed", [
        ("pending", "confirmed", True),
        ("pending", "delivered", True),
        ("confirmed", "processing", True),
        ("processing", "shipped", True),
        ("shipped", "delivered", True),
        ("shipped", "cancelled", False),
        ("shipped", "processing", False),
        ("confirmed", "pending", False),
        ("delivered", "shipped", False),
        ("delivered", "cancelled", False),
        ("cancelled", "pending", False),
    ])
    def test_transition_table(self, current, target, allowed):
        assert orders.can_transition(current, target) is allowed

    def test_cancellable_states(self):
        assert orders.CANCELLABLE == ("pending", "confirmed", "processing")

    def test_forward_path_records_history(self, store):
        p1 = make_product(store)
        order = orders.create_order(store, make_order_request([(p1, "M", 1)]))

        for status in ("confirmed", "processing", "shipped", "delivered"):
            order = orders.update_order_status(store, order["id"], StatusUpdate(order_status=status, note=status),
                                               actor="admin-7")

        assert order["order_status"] == "delivered"
        assert order["delivered_at"] is not None
        assert [h["status"] for h in order["status_history"]] == [
            "pending", "confirmed", "processing", "shipped", "delivered",
        ]
        assert order["status_history"][-1]["updated_by"] == "admin-7"

    def test_backwards_move_rejected(self, store):
        p1 = make_product(store)
        order = orders.create_order(store, make_order_request([(p1, "M", 1)]))
        orders.update_order_status(store, order["id"], StatusUpdate(order_status="shipped"))

        with pytest.raises(InvalidStateTransitionError):
            orders.update_order_status(store, order["id"], StatusUpdate(order_status="processing"))

        assert orders.get_order(store, order["id"])["order_status"] == "shipped"

    def test_same_status_rejected(self, store):
        p1 = make_product(store)
        order = orders.create_order(store, make_order_request([(p1, "M", 1)]))

        with pytest.raises(InvalidStateTransitionError):
            orders.update_order_status(store, order["id"], StatusUpdate(order_status="pending"))

    def test_cancelled_target_restores_stock(self, store):
        p1 = make_product(store, stock=5)
        order = orders.create_order(store, make_order_request([(p1, "M", 3)]))

        updated = orders.update_order_status(store, order["id"],
                                             StatusUpdate(order_status="cancelled", note="Out of area"))

        assert updated["order_status"] == "cancelled"
        assert updated["cancel_reason"] == "Out of area"
        assert stock_of(store, p1) == 5

    def test_tracking_number_only(self, store):
        p1 = make_product(store)
        order = orders.create_order(store, make_order_request([(p1, "M", 1)]))

        updated = orders.update_order_status(store, order["id"], StatusUpdate(tracking_number="TRK123"))

        assert updated["tracking_number"] == "TRK123"
        assert updated["order_status"] == "pending"
        assert len(updated["status_history"]) == 1

    def test_empty_update_rejected(self, store):
        p1 = make_product(store)
        order = orders.create_order(store, make_order_request([(p1, "M", 1)]))

        with pytest.raises(ValidationFailedError):
            orders.update_order_status(store, order["id"], StatusUpdate())

    def test_payment_status_update(self, store):
        p1 = make_product(store)
        order = orders.create_order(store, make_order_request([(p1, "M", 1)]))

        updated = orders.update_payment_status(store, order["id"],
                                               PaymentUpdate(payment_status="refunded", payment_id="pay_1"))

        assert updated["payment_status"] == "refunded"
        assert updated["payment_id"] == "pay_1"


class TestFactories:
    def test_order_number_format(self):
        number = orders.generate_order_number(datetime(2026, 3, 9, 14, 0), random.Random(7))

        assert number.startswith("ORD-20260309-")
        assert re.match(r"^[A-Z0-9]{6}$", number.split("-")[2])

    def test_order_number_deterministic_with_seed(self):
        now = datetime(2026, 3, 9)
        assert orders.generate_order_number(now, random.Random(1)) == orders.generate_order_number(
            now, random.Random(1)
        )

    def test_compute_total(self):
        assert orders.compute_total([1000.0], 50, 0) == 1050
        assert orders.compute_total([10.1, 20.2], 0, 0.3) == 30.0


class TestQueries:
    def test_get_by_number(self, store):
        p1 = make_product(store)
        order = orders.create_order(store, make_order_request([(p1, "M", 1)]))

        found = orders.get_order_by_number(store, order["order_number"])

        assert found["id"] == order["id"]

    def test_get_by_unknown_number(self, store):
        with pytest.raises(OrderNotFoundError):
            orders.get_order_by_number(store, "ORD-19990101-ZZZZZZ")

    def test_list_filters_and_search(self, store):
        p1 = make_product(store, stock=50)
        first = orders.create_order(store, make_order_request([(p1, "M", 1)]))
        orders.create_order(store, make_order_request([(p1, "M", 1)], customer_name="Vikram Shah",
                                                      email="vikram@example.com"))
        orders.cancel_order(store, first["id"])

        everything = orders.list_orders(store)
        cancelled = orders.list_orders(store, order_status="cancelled")
        searched = orders.list_orders(store, search="vikram")

        assert everything["total"] == 2
        assert cancelled["total"] == 1
        assert cancelled["orders"][0]["id"] == first["id"]
        assert searched["total"] == 1
        assert searched["orders"][0]["customer_name"] == "Vikram Shah"

    def test_list_pagination(self, store):
        p1 = make_product(store, stock=50)
        for _ in range(5):
            orders.create_order(store, make_order_request([(p1, "M", 1)]))

        page = orders.list_orders(store, page=2, limit=2)

        assert page["count"] == 2
        assert page["total"] == 5
        assert page["pages"] == 3
        assert page["page"] == 2

    def test_stats(self, store):
        p1 = make_product(store, price=100, stock=50)
        a = orders.create_order(store, make_order_request([(p1, "M", 1)]))
        b = orders.create_order(store, make_order_request([(p1, "M", 3)]))
        orders.update_payment_status(store, b["id"], PaymentUpdate(payment_status="paid"))
        orders.cancel_order(store, a["id"])

        stats = orders.order_stats(store)

        assert stats["total_orders"] == 2
        assert stats["total_revenue"] == 300
        assert stats["orders_by_status"] == {"cancelled": 1, "pending": 1}
        assert stats["orders_by_payment_status"] == {"pending": 1, "paid": 1}
        assert stats["average_order_value"] == 200
        assert len(stats["recent_orders"]) == 2
