"""
Qikink fulfillment integration: product sync, order hand-off and shipment webhooks.

The access token lives in a :class:`TokenProvider` owned by the caller, so a
sync run (or a test) decides its own token lifetime instead of sharing a
process-wide cache.
"""
import argparse
import logging
import sys
import time
from typing import Any, Callable, Dict, List, Optional

import httpx
from pydantic import ValidationError
from pymongo import MongoClient
from pymongo.errors import PyMongoError

from catalog import generate_sku
from database import Store, to_object_id, utcnow
from errors import (
    InvalidStateTransitionError,
    OrderNotFoundError,
    StoreError,
    UpstreamFailureError,
    ValidationFailedError,
)
from orders import CANCELLABLE, cancel_order, get_order, update_order_status
from schemas import SIZES, OrderStatus, PaymentStatus, Product, StatusUpdate
from settings import configure_logging, get_settings

logger = logging.getLogger(__name__)

DEFAULT_SIZES = ["S", "M", "L", "XL"]
DEFAULT_STOCK = 100
FULFILLMENT_ACTOR = "qikink"
SYNCED_FIELDS = {"name", "description", "price", "category", "images", "sizes", "colors"}


class TokenProvider:
    """Fetches an access token and refreshes it shortly before it expires."""

    def __init__(self, http: httpx.Client, client_id: str, client_secret: str,
                 token_path: str = "/api/token", leeway: float = 60.0,
                 clock: Callable[[], float] = time.monotonic):
        self.http = http
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_path = token_path
        self.leeway = leeway
        self.clock = clock
        self._token: Optional[str] = None
        self._expires_at = 0.0

    def token(self) -> str:
        if self._token is None or self.clock() >= self._expires_at - self.leeway:
            self._refresh()
        return self._token

    def invalidate(self) -> None:
        self._token = None

    def _refresh(self) -> None:
        response = self.http.post(self.token_path, data={
            "ClientId": self.client_id,
            "client_secret": self.client_secret,
        })
        response.raise_for_status()
        body = response.json()
        self._token = body["Accesstoken"]
        self._expires_at = self.clock() + float(body.get("expires_in", 3600))
        logger.debug("Fulfillment token refreshed")


class FulfillmentClient:
    def __init__(self, http: httpx.Client, tokens: TokenProvider):
        self.http = http
        self.tokens = tokens

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = self.http.request(method, path, headers=self._auth(), **kwargs)
            if response.status_code == 401:
                self.tokens.invalidate()
                response = self.http.request(method, path, headers=self._auth(), **kwargs)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("Qikink %s %s failed: %s", method, path, exc)
            raise UpstreamFailureError("Fulfillment API", type(exc).__name__) from exc
        return response

    def _auth(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.tokens.token()}"}

    def fetch_products(self) -> List[Dict[str, Any]]:
        body = self._request("GET", "/api/v2/products").json()
        if isinstance(body, list):
            return body
        return body.get("data") or []

    def create_order(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", "/api/v2/orders", json=payload).json()


def category_from_tags(tags) -> str:
    if not tags:
        return "Men"
    text = " ".join(tags) if isinstance(tags, list) else str(tags)
    text = text.lower()
    if "women" in text:
        return "Women"
    if "kid" in text:
        return "Kids"
    if "shoe" in text or "footwear" in text:
        return "Footwear"
    if "cap" in text or "bag" in text or "accessor" in text:
        return "Accessories"
    return "Men"


def _tag_list(tags) -> List[str]:
    if not tags:
        return []
    if isinstance(tags, list):
        return [str(t) for t in tags]
    return [t.strip() for t in str(tags).split(",") if t.strip()]


def _price(value) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def remote_product(remote: Dict[str, Any]) -> Product:
    """Map a Qikink product onto the catalog model; raises ``ValidationError`` for unusable rows."""
    variants = remote.get("variants") or []
    sizes = [v["size"] for v in variants if v.get("size") in SIZES]
    colors = [v["color"] for v in variants if v.get("color")]
    return Product(
        name=remote.get("name") or f"Product {remote['id']}",
        description=remote.get("description") or "Premium quality product from Veluno",
        price=_price(remote.get("price")),
        category=category_from_tags(remote.get("tags")),
        images=remote.get("images") or [],
        sizes=list(dict.fromkeys(sizes)) or DEFAULT_SIZES,
        colors=list(dict.fromkeys(colors)),
        stock=int(remote.get("stock") or DEFAULT_STOCK),
        tags=_tag_list(remote.get("tags")),
        qikink_product_id=str(remote["id"]),
    )


def sync_products(store: Store, client: FulfillmentClient) -> Dict[str, Any]:
    """Upsert remote products keyed by ``qikink_product_id``.

    Catalog fields follow the remote product. Stock, SKU and the merchandising
    flags (``is_active``, ``is_featured``, ``discount``) are only written when a
    product is first inserted; after that they belong to the store.
    Rows without an id or failing product validation are skipped.
    """
    synced = 0
    skipped = 0
    for remote in client.fetch_products():
        if remote.get("id") is None:
            skipped += 1
            continue
        try:
            product = remote_product(remote)
        except ValidationError as exc:
            logger.warning("Skipping Qikink product %s: %d invalid field(s)", remote.get("id"),
                           exc.error_count())
            skipped += 1
            continue
        now = utcnow()
        fields = product.model_dump(include=SYNCED_FIELDS)
        fields["updated_at"] = now
        store.products.update_one(
            {"qikink_product_id": product.qikink_product_id},
            {
                "$set": fields,
                "$setOnInsert": {
                    "stock": product.stock,
                    "sku": generate_sku(product.category),
                    "is_active": True,
                    "is_featured": False,
                    "discount": 0,
                    "tags": product.tags,
                    "created_at": now,
                },
            },
            upsert=True,
        )
        synced += 1
    logger.info("Synced %d products from Qikink (%d skipped)", synced, skipped)
    return {"success": True, "count": synced, "skipped": skipped}


# -----------------
# Order fulfillment
# -----------------

def fulfillment_payload(order: Dict[str, Any], external_ids: Dict[Any, str]) -> Dict[str, Any]:
    address = order["address"]
    return {
        "order_id": order["order_number"],
        "customer": {
            "name": order["customer_name"],
            "email": order["email"],
            "phone": order["phone"],
            "address": {
                "line1": address["street"],
                "city": address["city"],
                "state": address["state"],
                "pincode": address["postal_code"],
                "country": address.get("country") or "India",
            },
        },
        "items": [
            {
                "product_id": external_ids[item["product_id"]],
                "quantity": item["quantity"],
                "size": item["size"],
                "color": item.get("color") or None,
            }
            for item in order["items"]
        ],
    }


def push_order(store: Store, client: FulfillmentClient, order_id: str) -> Dict[str, Any]:
    """Send an order to Qikink for printing and shipping and record its reference."""
    oid = to_object_id(order_id, "order id")
    order = store.orders.find_one({"_id": oid})
    if not order:
        raise OrderNotFoundError(order_id)
    if order.get("fulfillment_ref"):
        raise ValidationFailedError("Order was already sent for fulfillment")
    current = order["order_status"]
    if current not in CANCELLABLE:
        raise InvalidStateTransitionError(current, OrderStatus.PROCESSING.value,
                                          f"Cannot send an order that is {current} for fulfillment")
    if order["payment_method"] != "cod" and order["payment_status"] != PaymentStatus.PAID.value:
        raise ValidationFailedError("Order is not paid yet")

    product_ids = [item["product_id"] for item in order["items"]]
    external_ids = {
        p["_id"]: p["qikink_product_id"]
        for p in store.products.find({"_id": {"$in": product_ids}}, {"qikink_product_id": 1})
        if p.get("qikink_product_id")
    }
    missing = [item["product_name"] for item in order["items"] if item["product_id"] not in external_ids]
    if missing:
        raise ValidationFailedError(f"Not fulfilled by Qikink: {', '.join(missing)}")

    response = client.create_order(fulfillment_payload(order, external_ids))
    ref = str(response.get("order_id") or response.get("id") or order["order_number"])
    result = store.orders.update_one(
        {"_id": oid, "fulfillment_ref": None},
        {"$set": {"fulfillment_ref": ref, "updated_at": utcnow()}},
    )
    if result.modified_count == 0:
        logger.warning("Order %s was sent for fulfillment twice", order["order_number"])
    logger.info("Order %s sent to Qikink as %s", order["order_number"], ref)
    return get_order(store, order_id)


_FULFILLMENT_EVENTS = {
    "order.shipped": OrderStatus.SHIPPED.value,
    "order.delivered": OrderStatus.DELIVERED.value,
    "order.cancelled": OrderStatus.CANCELLED.value,
}


def handle_fulfillment_event(store: Store, event: Dict[str, Any]) -> Dict[str, Any]:
    """Drive the order status machine from a fulfillment webhook.

    A redelivered event for a status the order already has is acknowledged
    without another transition.
    """
    name = event.get("event")
    status = _FULFILLMENT_EVENTS.get(name)
    if status is None:
        logger.info("Unhandled fulfillment event: %s", name)
        return {"event": name, "handled": False}
    order_number = event.get("order_id")
    if not order_number:
        raise ValidationFailedError("Fulfillment event has no order id")
    order = store.orders.find_one({"order_number": order_number},
                                  {"_id": 1, "order_status": 1, "tracking_number": 1})
    if not order:
        raise OrderNotFoundError(order_number)
    order_id = str(order["_id"])
    tracking = event.get("tracking_number")

    if order["order_status"] == status:
        if tracking and tracking != order.get("tracking_number"):
            update_order_status(store, order_id, StatusUpdate(tracking_number=tracking), actor=FULFILLMENT_ACTOR)
        logger.info("Fulfillment event %s for %s already applied", name, order_number)
        return {"event": name, "handled": True, "duplicate": True}

    if status == OrderStatus.CANCELLED.value:
        reason = event.get("reason") or "Cancelled by fulfillment partner"
        cancel_order(store, order_id, reason, actor=FULFILLMENT_ACTOR)
    else:
        update = StatusUpdate(order_status=status, tracking_number=tracking, note=f"Fulfillment: {name}")
        update_order_status(store, order_id, update, actor=FULFILLMENT_ACTOR)
    return {"event": name, "handled": True, "duplicate": False}


def main(argv=None) -> int:
    """Run one product sync; schedule it daily (e.g. cron ``0 2 * * *``)."""
    parser = argparse.ArgumentParser(prog="veluno-sync", description="Sync products from Qikink")
    parser.add_argument("--log-level", default=None)
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(args.log_level or settings.log_level)
    store = Store(MongoClient(settings.database_url), settings.database_name, settings.use_transactions)
    with httpx.Client(base_url=settings.qikink_api_url, timeout=30.0) as http:
        tokens = TokenProvider(http, settings.qikink_client_id, settings.qikink_client_secret)
        try:
            result = sync_products(store, FulfillmentClient(http, tokens))
        except (PyMongoError, StoreError) as exc:
            logger.error("Product sync failed: %s", exc)
            return 1
    print(f"Synced {result['count']} products")
    return 0


if __name__ == "__main__":
    sys.exit(main())
