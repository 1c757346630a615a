"""
Order ledger: checkout with stock reservation, cancellation with stock release,
the order status state machine and the admin read side.

Stock is only ever changed with conditional ``$inc`` updates whose filter
carries the precondition (``stock >= qty`` when reserving), so two checkouts
racing for the last unit cannot both win.
"""
import logging
import random
import re
import string
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId
from pymongo import DESCENDING

from catalog import effective_price
from database import Store, UnitOfWork, to_object_id, to_public, utcnow
from errors import (
    InsufficientStockError,
    InvalidSizeError,
    InvalidStateTransitionError,
    OrderNotFoundError,
    ProductInactiveError,
    ProductNotFoundError,
    ValidationFailedError,
)
from schemas import (
    CartLine,
    Order,
    OrderCreate,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    PaymentUpdate,
    StatusHistoryEntry,
    StatusUpdate,
)

logger = logging.getLogger(__name__)

ORDER_NUMBER_ALPHABET = string.ascii_uppercase + string.digits
DEFAULT_CANCEL_REASON = "Cancelled by admin"

# Forward-only; skipping ahead is allowed. Cancellation goes through cancel_order.
ALLOWED_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.PROCESSING, OrderStatus.SHIPPED,
                          OrderStatus.DELIVERED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.DELIVERED,
                            OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.DELIVERED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
}

CANCELLABLE = tuple(s.value for s, targets in ALLOWED_TRANSITIONS.items() if OrderStatus.CANCELLED in targets)


def can_transition(current, target) -> bool:
    return OrderStatus(target) in ALLOWED_TRANSITIONS[OrderStatus(current)]


def generate_order_number(now: Optional[datetime] = None, rng: Optional[random.Random] = None) -> str:
    rng = rng or random.SystemRandom()
    now = now or utcnow()
    suffix = "".join(rng.choice(ORDER_NUMBER_ALPHABET) for _ in range(6))
    return f"ORD-{now:%Y%m%d}-{suffix}"


def compute_total(subtotals: Iterable[float], shipping_cost: float = 0, discount: float = 0) -> float:
    return round(sum(subtotals) + shipping_cost - discount, 2)


def present(order: Dict[str, Any]) -> Dict[str, Any]:
    out = to_public(order)
    out["total_items"] = sum(i["quantity"] for i in out.get("items", []))
    addr = out.get("address")
    if addr:
        out["full_address"] = (
            f"{addr['street']}, {addr['city']}, {addr['state']} {addr['postal_code']}, {addr['country']}"
        )
    return out


def _history_entry(status: str, actor: Optional[str], note: str, when: datetime) -> Dict[str, Any]:
    return StatusHistoryEntry(status=status, timestamp=when, updated_by=actor, note=note).model_dump()


# -----------------
# Checkout
# -----------------

def _check_line(product: Optional[Dict[str, Any]], line: CartLine) -> None:
    if not product:
        raise ProductNotFoundError(line.product_id)
    if not product.get("is_active", True):
        raise ProductInactiveError(product["name"])
    if line.size not in product.get("sizes", []):
        raise InvalidSizeError(line.size, product["name"])
    if product.get("stock", 0) < line.quantity:
        raise InsufficientStockError(product["name"], product.get("stock", 0), line.quantity)


def _reserve(store: Store, uow: UnitOfWork, product_id: ObjectId, name: str, quantity: int) -> None:
    result = store.products.update_one(
        {"_id": product_id, "is_active": True, "stock": {"$gte": quantity}},
        {"$inc": {"stock": -quantity}, "$set": {"updated_at": utcnow()}},
        session=uow.session,
    )
    if result.modified_count == 0:
        fresh = store.products.find_one({"_id": product_id}, session=uow.session) or {}
        raise InsufficientStockError(name, fresh.get("stock", 0), quantity)
    uow.compensate(lambda: store.products.update_one({"_id": product_id}, {"$inc": {"stock": quantity}}))


def create_order(store: Store, request: OrderCreate, actor: Optional[str] = None) -> Dict[str, Any]:
    """Validate the cart, reserve stock and insert the order as one unit of work.

    Prices come from the catalog at the moment of checkout. Any invalid line
    aborts the whole order and leaves every product's stock untouched.
    """
    product_ids = [to_object_id(line.product_id, "product id") for line in request.items]

    def work(uow: UnitOfWork) -> Dict[str, Any]:
        items: List[OrderItem] = []
        for pid, line in zip(product_ids, request.items):
            product = store.products.find_one({"_id": pid}, session=uow.session)
            _check_line(product, line)
            price = effective_price(product)
            images = product.get("images") or [""]
            items.append(OrderItem(
                product_id=str(pid),
                product_name=product["name"],
                product_image=images[0],
                size=line.size,
                color=line.color or "",
                quantity=line.quantity,
                price=price,
                subtotal=round(price * line.quantity, 2),
            ))

        total = compute_total((i.subtotal for i in items), request.shipping_cost, request.discount)
        if total < 0:
            raise ValidationFailedError("Discount cannot exceed the order value")

        for pid, item in zip(product_ids, items):
            _reserve(store, uow, pid, item.product_name, item.quantity)

        now = utcnow()
        order = Order(
            order_number=generate_order_number(now),
            customer_name=request.customer_name,
            email=request.email,
            phone=request.phone,
            address=request.address,
            items=items,
            total_amount=total,
            shipping_cost=request.shipping_cost,
            discount=request.discount,
            payment_status=PaymentStatus.PENDING.value,
            order_status=OrderStatus.PENDING.value,
            payment_method=request.payment_method,
            notes=request.notes,
            status_history=[_history_entry(OrderStatus.PENDING.value, actor, "Order placed", now)],
        )
        doc = order.model_dump()
        for pid, item in zip(product_ids, doc["items"]):
            item["product_id"] = pid
        doc["created_at"] = now
        doc["updated_at"] = now
        doc["_id"] = store.orders.insert_one(doc, session=uow.session).inserted_id
        return doc

    doc = store.run(work)
    logger.info("Order %s created: %d line(s), total %.2f", doc["order_number"], len(doc["items"]),
                doc["total_amount"])
    return present(doc)


# -----------------
# Cancellation
# -----------------

def _cancel_refusal(current: str) -> str:
    if current == OrderStatus.DELIVERED.value:
        return "Cannot cancel a delivered order"
    if current == OrderStatus.CANCELLED.value:
        return "Order is already cancelled"
    return f"Cannot cancel an order that is {current}"


def _release(store: Store, uow: UnitOfWork, product_id: ObjectId, quantity: int) -> None:
    result = store.products.update_one(
        {"_id": product_id},
        {"$inc": {"stock": quantity}, "$set": {"updated_at": utcnow()}},
        session=uow.session,
    )
    if result.matched_count == 0:
        logger.warning("Product %s no longer exists; %d unit(s) not restored", product_id, quantity)
        return
    uow.compensate(lambda: store.products.update_one({"_id": product_id}, {"$inc": {"stock": -quantity}}))


def cancel_order(store: Store, order_id: str, reason: Optional[str] = None,
                 actor: Optional[str] = None) -> Dict[str, Any]:
    """Cancel the order and put every line's quantity back on its product.

    The status flip is conditional on the status read, so a second cancel can
    never credit stock twice.
    """
    oid = to_object_id(order_id, "order id")
    reason = reason or DEFAULT_CANCEL_REASON

    def work(uow: UnitOfWork) -> Dict[str, Any]:
        order = store.orders.find_one({"_id": oid}, session=uow.session)
        if not order:
            raise OrderNotFoundError(order_id)
        current = order["order_status"]
        if current not in CANCELLABLE:
            raise InvalidStateTransitionError(current, OrderStatus.CANCELLED.value, _cancel_refusal(current))

        now = utcnow()
        result = store.orders.update_one(
            {"_id": oid, "order_status": current},
            {
                "$set": {
                    "order_status": OrderStatus.CANCELLED.value,
                    "cancelled_at": now,
                    "cancel_reason": reason,
                    "updated_at": now,
                },
                "$push": {"status_history": _history_entry(OrderStatus.CANCELLED.value, actor, reason, now)},
            },
            session=uow.session,
        )
        if result.modified_count == 0:
            raise InvalidStateTransitionError(current, OrderStatus.CANCELLED.value,
                                              "Order status changed concurrently")
        uow.compensate(lambda: store.orders.update_one(
            {"_id": oid},
            {
                "$set": {"order_status": current, "cancelled_at": order.get("cancelled_at"),
                         "cancel_reason": order.get("cancel_reason"), "updated_at": order.get("updated_at")},
                "$pop": {"status_history": 1},
            },
        ))

        for item in order["items"]:
            _release(store, uow, item["product_id"], item["quantity"])

        return store.orders.find_one({"_id": oid}, session=uow.session)

    doc = store.run(work)
    logger.info("Order %s cancelled, stock restored (%s)", doc["order_number"], reason)
    return present(doc)


# -----------------
# Admin transitions
# -----------------

def _load(store: Store, order_id: str) -> Dict[str, Any]:
    order = store.orders.find_one({"_id": to_object_id(order_id, "order id")})
    if not order:
        raise OrderNotFoundError(order_id)
    return order


def update_order_status(store: Store, order_id: str, update: StatusUpdate,
                        actor: Optional[str] = None) -> Dict[str, Any]:
    if update.order_status is None and not update.tracking_number:
        raise ValidationFailedError("Provide an order status or a tracking number")

    target = OrderStatus(update.order_status) if update.order_status is not None else None
    if target is OrderStatus.CANCELLED:
        cancel_order(store, order_id, update.note, actor)
        if update.tracking_number:
            return update_order_status(store, order_id, StatusUpdate(tracking_number=update.tracking_number))
        return present(_load(store, order_id))

    order = _load(store, order_id)
    now = utcnow()
    sets: Dict[str, Any] = {"updated_at": now}
    if update.tracking_number:
        sets["tracking_number"] = update.tracking_number

    if target is None:
        store.orders.update_one({"_id": order["_id"]}, {"$set": sets})
        return present(_load(store, order_id))

    current = order["order_status"]
    if not can_transition(current, target):
        raise InvalidStateTransitionError(current, target.value)
    sets["order_status"] = target.value
    if target is OrderStatus.DELIVERED and not order.get("delivered_at"):
        sets["delivered_at"] = now

    result = store.orders.update_one(
        {"_id": order["_id"], "order_status": current},
        {"$set": sets, "$push": {"status_history": _history_entry(target.value, actor, update.note or "", now)}},
    )
    if result.modified_count == 0:
        raise InvalidStateTransitionError(current, target.value, "Order status changed concurrently, reload and retry")
    logger.info("Order %s: %s -> %s", order["order_number"], current, target.value)
    return present(_load(store, order_id))


def update_payment_status(store: Store, order_id: str, update: PaymentUpdate) -> Dict[str, Any]:
    sets: Dict[str, Any] = {}
    if update.payment_status is not None:
        sets["payment_status"] = PaymentStatus(update.payment_status).value
    if update.payment_id:
        sets["payment_id"] = update.payment_id
    if not sets:
        raise ValidationFailedError("Provide a payment status or a payment id")
    sets["updated_at"] = utcnow()
    result = store.orders.update_one({"_id": to_object_id(order_id, "order id")}, {"$set": sets})
    if result.matched_count == 0:
        raise OrderNotFoundError(order_id)
    logger.info("Order %s payment updated: %s", order_id, sets.get("payment_status", "unchanged"))
    return present(_load(store, order_id))


# -----------------
# Read side
# -----------------

def get_order(store: Store, order_id: str) -> Dict[str, Any]:
    return present(_load(store, order_id))


def get_order_by_number(store: Store, order_number: str) -> Dict[str, Any]:
    order = store.orders.find_one({"order_number": order_number})
    if not order:
        raise OrderNotFoundError(order_number)
    return present(order)


def _naive_utc(value: datetime) -> datetime:
    # stored dates are naive UTC
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def list_orders(store: Store, order_status: Optional[str] = None, payment_status: Optional[str] = None,
                search: Optional[str] = None, start_date: Optional[datetime] = None,
                end_date: Optional[datetime] = None, page: int = 1, limit: int = 20) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    if order_status:
        query["order_status"] = order_status
    if payment_status:
        query["payment_status"] = payment_status
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        query["$or"] = [{"order_number": pattern}, {"customer_name": pattern},
                        {"email": pattern}, {"phone": pattern}]
    if start_date or end_date:
        created: Dict[str, datetime] = {}
        if start_date:
            created["$gte"] = _naive_utc(start_date)
        if end_date:
            created["$lte"] = _naive_utc(end_date)
        query["created_at"] = created

    page = max(page, 1)
    limit = max(min(limit, 100), 1)
    total = store.orders.count_documents(query)
    cursor = (store.orders.find(query)
              .sort("created_at", DESCENDING)
              .skip((page - 1) * limit)
              .limit(limit))
    orders = [present(o) for o in cursor]
    return {
        "count": len(orders),
        "total": total,
        "page": page,
        "pages": -(-total // limit),
        "orders": orders,
    }


def _group_counts(store: Store, field: str) -> Dict[str, int]:
    rows = store.orders.aggregate([{"$group": {"_id": f"${field}", "count": {"$sum": 1}}}])
    return {row["_id"]: row["count"] for row in rows}


def order_stats(store: Store) -> Dict[str, Any]:
    revenue = list(store.orders.aggregate([
        {"$match": {"payment_status": PaymentStatus.PAID.value}},
        {"$group": {"_id": None, "total": {"$sum": "$total_amount"}}},
    ]))
    average = list(store.orders.aggregate([
        {"$group": {"_id": None, "avg_value": {"$avg": "$total_amount"}}},
    ]))
    recent = store.orders.find(
        {},
        {"order_number": 1, "customer_name": 1, "total_amount": 1, "order_status": 1, "created_at": 1},
    ).sort("created_at", DESCENDING).limit(10)
    return {
        "total_orders": store.orders.count_documents({}),
        "total_revenue": revenue[0]["total"] if revenue else 0,
        "orders_by_status": _group_counts(store, "order_status"),
        "orders_by_payment_status": _group_counts(store, "payment_status"),
        "recent_orders": [to_public(o) for o in recent],
        "average_order_value": round(average[0]["avg_value"], 2) if average else 0,
    }
