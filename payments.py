"""
Razorpay payments: gateway orders, payment confirmation, refunds and webhooks.

Confirmation and webhooks authenticate the gateway the same way: recompute an
HMAC-SHA256 over the signed message with a server-held secret and compare it in
constant time with the signature that came in. A gateway order is always
created by this service from the stored order total, so a verified signature
for that gateway order proves payment of that order and no other.
"""
import hashlib
import hmac
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

import httpx
from pymongo import ReturnDocument

from database import Store, to_object_id, utcnow
from errors import (
    NotFoundError,
    OrderNotFoundError,
    SignatureMismatchError,
    UpstreamFailureError,
    ValidationFailedError,
)
from orders import present
from schemas import GatewayOrderRequest, OrderStatus, PaymentStatus, PaymentVerification, RefundRequest

logger = logging.getLogger(__name__)


def compute_signature(secret: str, message: Union[str, bytes]) -> str:
    if isinstance(message, str):
        message = message.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def signature_matches(secret: str, message: Union[str, bytes], signature: Optional[str]) -> bool:
    if not secret or not signature:
        return False
    expected = compute_signature(secret, message)
    return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))


def to_paise(amount: float) -> int:
    return int(round(float(amount) * 100))


def from_paise(amount: Optional[int]) -> float:
    return round((amount or 0) / 100, 2)


# -----------------
# Gateway client
# -----------------

class RazorpayClient:
    """Minimal Razorpay REST client. Authentication lives on the ``httpx.Client``."""

    def __init__(self, http: httpx.Client):
        self.http = http

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            response = self.http.request(method, path, **kwargs)
            if response.status_code == 404:
                raise NotFoundError(f"Payment gateway has no record at {path}")
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("Razorpay %s %s failed: %s", method, path, exc)
            raise UpstreamFailureError("Payment gateway", type(exc).__name__) from exc
        return response.json()

    def create_order(self, amount: int, currency: str, receipt: str, notes: Dict[str, str]) -> Dict[str, Any]:
        return self._request("POST", "/v1/orders", json={
            "amount": amount,
            "currency": currency,
            "receipt": receipt,
            "notes": notes,
        })

    def fetch_payment(self, payment_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/v1/payments/{payment_id}")

    def refund(self, payment_id: str, amount: Optional[int] = None,
               notes: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        body: Dict[str, Any] = {"notes": notes or {}}
        if amount is not None:
            body["amount"] = amount
        return self._request("POST", f"/v1/payments/{payment_id}/refund", json=body)


# -----------------
# Operations
# -----------------

def create_gateway_order(store: Store, gateway, request: GatewayOrderRequest) -> Dict[str, Any]:
    """Open a gateway order for the stored order total and remember its id on the order."""
    oid = to_object_id(request.order_id, "order id")
    order = store.orders.find_one({"_id": oid})
    if not order:
        raise OrderNotFoundError(request.order_id)
    if order["payment_method"] == "cod":
        raise ValidationFailedError("Cash on delivery orders are not paid online")
    if order["order_status"] == OrderStatus.CANCELLED.value:
        raise ValidationFailedError("Order is cancelled")
    if order["payment_status"] not in (PaymentStatus.PENDING.value, PaymentStatus.FAILED.value):
        raise ValidationFailedError(f"Order payment is already {order['payment_status']}")
    amount = to_paise(order["total_amount"])
    if amount <= 0:
        raise ValidationFailedError("Please provide a valid amount")

    remote = gateway.create_order(
        amount=amount,
        currency=request.currency,
        receipt=order["order_number"],
        notes={**request.notes, "order_number": order["order_number"]},
    )
    result = store.orders.update_one(
        {"_id": oid, "payment_status": order["payment_status"]},
        {"$set": {"gateway_order_id": remote["id"], "updated_at": utcnow()}},
    )
    if result.modified_count == 0:
        raise ValidationFailedError("Order payment changed concurrently, reload and retry")
    logger.info("Gateway order %s opened for %s (%d paise)", remote["id"], order["order_number"], amount)
    return {
        "id": remote["id"],
        "amount": from_paise(remote.get("amount", amount)),
        "currency": remote.get("currency", request.currency),
        "receipt": remote.get("receipt", order["order_number"]),
        "status": remote.get("status"),
    }


def verify_payment(store: Store, secret: str, payload: PaymentVerification) -> Dict[str, Any]:
    """Mark the order paid if the checkout signature is genuine.

    The signed message is ``"{razorpay_order_id}|{razorpay_payment_id}"``. The
    order must carry that gateway order id; on any mismatch nothing is written.
    """
    message = f"{payload.razorpay_order_id}|{payload.razorpay_payment_id}"
    if not signature_matches(secret, message, payload.razorpay_signature):
        logger.warning("Payment signature rejected for gateway order %s", payload.razorpay_order_id)
        raise SignatureMismatchError()

    if payload.order_id:
        target = store.orders.find_one({"_id": to_object_id(payload.order_id, "order id")})
    else:
        target = store.orders.find_one({"gateway_order_id": payload.razorpay_order_id})
    if not target:
        raise OrderNotFoundError(payload.order_id or payload.razorpay_order_id)
    if target.get("gateway_order_id") != payload.razorpay_order_id:
        logger.warning("Payment for gateway order %s presented for order %s",
                       payload.razorpay_order_id, target["order_number"])
        raise ValidationFailedError("Payment does not belong to this order")
    if target["payment_status"] == PaymentStatus.REFUNDED.value:
        raise ValidationFailedError("Order payment was already refunded")

    order = store.orders.find_one_and_update(
        {
            "_id": target["_id"],
            "gateway_order_id": payload.razorpay_order_id,
            "payment_status": {"$ne": PaymentStatus.REFUNDED.value},
        },
        {"$set": {
            "payment_status": PaymentStatus.PAID.value,
            "payment_id": payload.razorpay_payment_id,
            "updated_at": utcnow(),
        }},
        return_document=ReturnDocument.AFTER,
    )
    if not order:
        raise ValidationFailedError("Order payment changed concurrently, reload and retry")
    logger.info("Payment %s verified for order %s", payload.razorpay_payment_id, order["order_number"])
    return present(order)


def get_payment_details(gateway, payment_id: str) -> Dict[str, Any]:
    """Gateway view of a payment, limited to non-sensitive fields."""
    payment = gateway.fetch_payment(payment_id)
    created = payment.get("created_at")
    return {
        "id": payment.get("id"),
        "amount": from_paise(payment.get("amount")),
        "currency": payment.get("currency"),
        "status": payment.get("status"),
        "method": payment.get("method"),
        "email": payment.get("email"),
        "contact": payment.get("contact"),
        "created_at": datetime.fromtimestamp(created, timezone.utc) if created else None,
    }


def refund_payment(store: Store, gateway, request: RefundRequest) -> Dict[str, Any]:
    order = store.orders.find_one({"payment_id": request.payment_id})
    if not order:
        raise OrderNotFoundError(request.payment_id)
    if order["payment_status"] != PaymentStatus.PAID.value:
        raise ValidationFailedError(f"Only paid orders can be refunded (payment is {order['payment_status']})")
    if request.amount is not None and request.amount > order["total_amount"]:
        raise ValidationFailedError("Refund amount exceeds the amount paid")

    amount = to_paise(request.amount) if request.amount is not None else None
    refund = gateway.refund(request.payment_id, amount=amount, notes=request.notes)
    updated = store.orders.find_one_and_update(
        {"_id": order["_id"], "payment_status": PaymentStatus.PAID.value},
        {"$set": {"payment_status": PaymentStatus.REFUNDED.value, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        updated = store.orders.find_one({"_id": order["_id"]})
    logger.info("Refund %s issued for order %s", refund.get("id"), order["order_number"])
    return {
        "refund": {
            "id": refund.get("id"),
            "amount": from_paise(refund.get("amount")),
            "status": refund.get("status"),
            "payment_id": refund.get("payment_id", request.payment_id),
        },
        "order": present(updated),
    }


# -----------------
# Webhooks
# -----------------

def verify_webhook(secret: str, raw_body: bytes, signature: Optional[str]) -> Dict[str, Any]:
    """Authenticate a webhook body and return it parsed."""
    if not signature_matches(secret, raw_body, signature):
        logger.warning("Webhook signature rejected")
        raise SignatureMismatchError("Webhook verification failed")
    try:
        return json.loads(raw_body)
    except ValueError as exc:
        raise ValidationFailedError("Webhook body is not valid JSON") from exc


def handle_payment_event(store: Store, event: Dict[str, Any]) -> Dict[str, Any]:
    """Apply an authenticated gateway event to the matching order.

    A capture never revives a refunded order, and a failed attempt never
    downgrades an order that is already paid or refunded.
    """
    name = event.get("event")
    entity = (((event.get("payload") or {}).get("payment") or {}).get("entity")) or {}
    payment_id = entity.get("id")

    if name not in ("payment.captured", "payment.failed"):
        if name == "payment.authorized":
            logger.info("Payment authorized: %s", payment_id)
        else:
            logger.info("Unhandled webhook event: %s", name)
        return {"event": name, "handled": False, "matched": 0}

    if not payment_id:
        raise ValidationFailedError("Webhook payload has no payment entity")
    matchers = [{"payment_id": payment_id}]
    if entity.get("order_id"):
        matchers.append({"gateway_order_id": entity["order_id"]})

    now = utcnow()
    if name == "payment.captured":
        query = {"$or": matchers, "payment_status": {"$ne": PaymentStatus.REFUNDED.value}}
        sets = {"payment_status": PaymentStatus.PAID.value, "payment_id": payment_id, "updated_at": now}
    else:
        settled = [PaymentStatus.PAID.value, PaymentStatus.REFUNDED.value]
        query = {"$or": matchers, "payment_status": {"$nin": settled}}
        sets = {"payment_status": PaymentStatus.FAILED.value, "updated_at": now}
    result = store.orders.update_one(query, {"$set": sets})
    logger.info("Webhook %s for payment %s matched %d order(s)", name, payment_id, result.matched_count)
    return {"event": name, "handled": True, "matched": result.matched_count}
