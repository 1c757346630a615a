"""Pytest fixtures for the store tests."""

import mongomock
from bson import ObjectId
import pytest

from catalog import create_product
from database import Store
from schemas import Address, CartLine, OrderCreate, Product


@pytest.fixture
def store():
    """A store on an in-memory MongoDB, using compensating writes instead of transactions."""
    client = mongomock.MongoClient()
    return Store(client, "veluno_test", use_transactions=False)


def make_product(store: Store, **overrides) -> str:
    """Insert a product and return its id."""
    data = {
        "name": "Classic Tee",
        "description": "Heavyweight cotton tee",
        "price": 500.0,
        "category": "Men",
        "sizes": ["S", "M", "L"],
        "stock": 10,
        "images": ["https://cdn.example.com/tee.jpg"],
    }
    data.update(overrides)
    return create_product(store, Product(**data))


def make_order_request(lines, **overrides) -> OrderCreate:
    """Build a checkout request; ``lines`` are (product_id, size, quantity) tuples."""
    data = {
        "customer_name": "Asha Rao",
        "email": "Asha@Example.com",
        "phone": "98765 43210",
        "address": Address(street="12 MG Road", city="Bengaluru", state="KA", postal_code="560001"),
        "items": [CartLine(product_id=pid, size=size, quantity=qty) for pid, size, qty in lines],
    }
    data.update(overrides)
    return OrderCreate(**data)


def stock_of(store: Store, product_id: str) -> int:
    return store.products.find_one({"_id": ObjectId(product_id)})["stock"]


class FakeGateway:
    """In-memory stand-in for the Razorpay client."""

    def __init__(self, order_id: str = "order_Gw123"):
        self.order_id = order_id
        self.created = []
        self.refunds = []

    def create_order(self, amount, currency, receipt, notes):
        self.created.append({"amount": amount, "currency": currency, "receipt": receipt, "notes": notes})
        return {"id": self.order_id, "amount": amount, "currency": currency, "receipt": receipt, "status": "created"}

    def fetch_payment(self, payment_id):
        return {
            "id": payment_id,
            "amount": 52900,
            "currency": "INR",
            "status": "captured",
            "method": "card",
            "email": "asha@example.com",
            "contact": "+919876543210",
            "created_at": 1700000000,
            "card": {"last4": "1111", "network": "Visa"},
        }

    def refund(self, payment_id, amount=None, notes=None):
        self.refunds.append({"payment_id": payment_id, "amount": amount, "notes": notes})
        return {"id": "rfnd_1", "amount": amount if amount is not None else 50000, "status": "processed",
                "payment_id": payment_id}
