import logging
from datetime import datetime
from typing import Iterator, Optional

import httpx
import uvicorn
from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError

import catalog
import categories
import orders
import payments
from database import Store, get_store, utcnow
from errors import (
    InsufficientStockError,
    InvalidSizeError,
    InvalidStateTransitionError,
    NotFoundError,
    ProductInactiveError,
    SignatureMismatchError,
    StoreError,
    TransientStoreFailureError,
    UpstreamFailureError,
    ValidationFailedError,
)
from fulfillment import FulfillmentClient, TokenProvider, handle_fulfillment_event, push_order, sync_products
from schemas import (
    BulkDeleteRequest,
    CancelRequest,
    Category,
    CategoryName,
    CategoryUpdate,
    GatewayOrderRequest,
    OrderCreate,
    OrderStatus,
    PaymentStatus,
    PaymentUpdate,
    PaymentVerification,
    Product,
    ProductUpdate,
    RefundRequest,
    RestockRequest,
    Size,
    StatusUpdate,
)
from settings import Settings, configure_logging, get_settings

logger = logging.getLogger(__name__)

configure_logging(get_settings().log_level)

app = FastAPI(title="Veluno Store API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# -----------------
# Error mapping
# -----------------

ERROR_STATUS_CODES: dict[type, int] = {
    NotFoundError: 404,
    ValidationFailedError: 400,
    InsufficientStockError: 409,
    InvalidSizeError: 400,
    ProductInactiveError: 409,
    InvalidStateTransitionError: 409,
    SignatureMismatchError: 400,
    TransientStoreFailureError: 503,
    UpstreamFailureError: 502,
}


def _status_for(exc: StoreError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS_CODES:
            return ERROR_STATUS_CODES[cls]
    return 500


def _error(status_code: int, detail: str, error_type: str, kind: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"detail": detail, "error_type": error_type, "kind": kind},
    )


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
    return _error(_status_for(exc), str(exc), type(exc).__name__, exc.kind)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    messages = []
    for err in exc.errors():
        where = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        messages.append(f"{where}: {err.get('msg')}" if where else err.get("msg", "invalid"))
    return _error(400, "; ".join(messages), "ValidationFailedError", ValidationFailedError.kind)


@app.exception_handler(PyMongoError)
async def store_unavailable_handler(request: Request, exc: PyMongoError) -> JSONResponse:
    logger.error("Data store failure on %s: %s", request.url.path, exc)
    return _error(503, "Data store unavailable, retry later", "TransientStoreFailureError",
                  TransientStoreFailureError.kind)


# -----------------
# Health
# -----------------

@app.get("/")
def root():
    return {
        "message": "Welcome to Veluno E-commerce API",
        "version": "1.0.0",
        "endpoints": {
            "health": "/api/health",
            "products": "/api/products",
            "categories": "/api/categories",
            "orders": "/api/orders",
        },
    }


@app.get("/api/health")
def health(store: Store = Depends(get_store)):
    response = {"status": "ok", "database": "Not Connected", "timestamp": utcnow().isoformat()}
    try:
        store.ping()
        response["database"] = "Connected"
    except PyMongoError as e:
        response["status"] = "degraded"
        response["database"] = f"Error: {str(e)[:50]}"
    return response


# -----------------
# Catalog
# -----------------

@app.get("/api/products")
def list_products(
    q: Optional[str] = None,
    category: Optional[CategoryName] = None,
    size: Optional[Size] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    featured: Optional[bool] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    store: Store = Depends(get_store),
):
    return catalog.list_products(store, q=q, category=category, size=size, min_price=min_price,
                                 max_price=max_price, featured=featured, page=page, limit=limit)


@app.get("/api/products/{product_id}")
def get_product(product_id: str, store: Store = Depends(get_store)):
    return catalog.get_product(store, product_id)


@app.get("/api/categories")
def list_categories(store: Store = Depends(get_store)):
    return {"success": True, "categories": categories.list_categories(store)}


@app.get("/api/categories/{identifier}")
def get_category(identifier: str, store: Store = Depends(get_store)):
    return {"success": True, "category": categories.get_category(store, identifier)}


# -----------------
# Admin: products
# -----------------

@app.get("/api/admin/products")
def admin_list_products(
    q: Optional[str] = None,
    category: Optional[CategoryName] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    store: Store = Depends(get_store),
):
    return catalog.list_products(store, q=q, category=category, page=page, limit=limit, include_inactive=True)


@app.get("/api/admin/products/stats")
def admin_product_stats(store: Store = Depends(get_store)):
    return {"success": True, "stats": catalog.product_stats(store)}


@app.post("/api/admin/products/bulk-delete")
def admin_bulk_delete_products(payload: BulkDeleteRequest, store: Store = Depends(get_store)):
    deleted = catalog.bulk_delete_products(store, payload.product_ids)
    return {"success": True, "message": f"{deleted} products deleted successfully", "deleted": deleted}


@app.post("/api/admin/products", status_code=201)
def admin_create_product(payload: Product, store: Store = Depends(get_store)):
    new_id = catalog.create_product(store, payload)
    return catalog.get_product(store, new_id)


@app.patch("/api/admin/products/{product_id}")
def admin_update_product(product_id: str, payload: ProductUpdate, store: Store = Depends(get_store)):
    return catalog.update_product(store, product_id, payload)


@app.patch("/api/admin/products/{product_id}/toggle-active")
def admin_toggle_active(product_id: str, store: Store = Depends(get_store)):
    return catalog.toggle_product_active(store, product_id)


@app.patch("/api/admin/products/{product_id}/toggle-featured")
def admin_toggle_featured(product_id: str, store: Store = Depends(get_store)):
    return catalog.toggle_product_featured(store, product_id)


@app.post("/api/admin/products/{product_id}/restock")
def admin_restock_product(product_id: str, payload: RestockRequest, store: Store = Depends(get_store)):
    return catalog.restock_product(store, product_id, payload.quantity)


@app.delete("/api/admin/products/{product_id}")
def admin_delete_product(product_id: str, store: Store = Depends(get_store)):
    catalog.delete_product(store, product_id)
    return {"deleted": True}


# -----------------
# Admin: categories
# -----------------

@app.post("/api/admin/categories", status_code=201)
def admin_create_category(payload: Category, store: Store = Depends(get_store)):
    return {"success": True, "category": categories.create_category(store, payload)}


@app.patch("/api/admin/categories/{category_id}")
def admin_update_category(category_id: str, payload: CategoryUpdate, store: Store = Depends(get_store)):
    return {"success": True, "category": categories.update_category(store, category_id, payload)}


@app.delete("/api/admin/categories/{category_id}")
def admin_delete_category(category_id: str, store: Store = Depends(get_store)):
    categories.delete_category(store, category_id)
    return {"success": True, "message": "Category deleted successfully"}


# -----------------
# Checkout / Orders
# -----------------

@app.post("/api/orders", status_code=201)
def create_order(payload: OrderCreate, store: Store = Depends(get_store)):
    order = orders.create_order(store, payload)
    return {"success": True, "message": "Order created successfully", "order": order}


@app.get("/api/orders/track/{order_number}")
def track_order(order_number: str, store: Store = Depends(get_store)):
    return {"success": True, "order": orders.get_order_by_number(store, order_number)}


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, store: Store = Depends(get_store)):
    return {"success": True, "order": orders.get_order(store, order_id)}


# -----------------
# Admin: orders
# -----------------

@app.get("/api/admin/orders")
def admin_list_orders(
    order_status: Optional[OrderStatus] = None,
    payment_status: Optional[PaymentStatus] = None,
    search: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    store: Store = Depends(get_store),
):
    result = orders.list_orders(
        store,
        order_status=order_status.value if order_status else None,
        payment_status=payment_status.value if payment_status else None,
        search=search,
        start_date=start_date,
        end_date=end_date,
        page=page,
        limit=limit,
    )
    return {"success": True, **result}


@app.get("/api/admin/orders/stats")
def admin_order_stats(store: Store = Depends(get_store)):
    return {"success": True, "stats": orders.order_stats(store)}


@app.patch("/api/admin/orders/{order_id}/status")
def admin_update_status(order_id: str, payload: StatusUpdate, store: Store = Depends(get_store),
                        x_admin_id: Optional[str] = Header(None)):
    order = orders.update_order_status(store, order_id, payload, actor=x_admin_id or "admin")
    return {"success": True, "message": "Order status updated successfully", "order": order}


@app.patch("/api/admin/orders/{order_id}/payment")
def admin_update_payment(order_id: str, payload: PaymentUpdate, store: Store = Depends(get_store)):
    order = orders.update_payment_status(store, order_id, payload)
    return {"success": True, "message": "Payment status updated successfully", "order": order}


@app.patch("/api/admin/orders/{order_id}/cancel")
def admin_cancel_order(order_id: str, payload: CancelRequest, store: Store = Depends(get_store),
                       x_admin_id: Optional[str] = Header(None)):
    order = orders.cancel_order(store, order_id, payload.cancel_reason, actor=x_admin_id or "admin")
    return {"success": True, "message": "Order cancelled successfully and stock restored", "order": order}


# -----------------
# Payments
# -----------------

def get_gateway_client(settings: Settings = Depends(get_settings)) -> Iterator[payments.RazorpayClient]:
    auth = (settings.razorpay_key_id, settings.razorpay_key_secret)
    with httpx.Client(base_url=settings.razorpay_api_url, auth=auth, timeout=30.0) as http:
        yield payments.RazorpayClient(http)


@app.post("/api/payment/create-order", status_code=201)
def create_payment_order(payload: GatewayOrderRequest, store: Store = Depends(get_store),
                         gateway: payments.RazorpayClient = Depends(get_gateway_client),
                         settings: Settings = Depends(get_settings)):
    order = payments.create_gateway_order(store, gateway, payload)
    return {"success": True, "order": order, "key_id": settings.razorpay_key_id}


@app.post("/api/payment/verify")
def verify_payment(payload: PaymentVerification, store: Store = Depends(get_store),
                   settings: Settings = Depends(get_settings)):
    order = payments.verify_payment(store, settings.razorpay_key_secret, payload)
    return {
        "success": True,
        "message": "Payment verified successfully",
        "verified": True,
        "payment_id": payload.razorpay_payment_id,
        "order": order,
    }


@app.post("/api/payment/webhook")
async def payment_webhook(request: Request, store: Store = Depends(get_store),
                          settings: Settings = Depends(get_settings),
                          x_razorpay_signature: Optional[str] = Header(None)):
    raw = await request.body()
    event = payments.verify_webhook(settings.razorpay_webhook_secret, raw, x_razorpay_signature)
    result = await run_in_threadpool(payments.handle_payment_event, store, event)
    return {"success": True, "message": "Webhook processed", **result}


@app.post("/api/payment/refund")
def refund_payment(payload: RefundRequest, store: Store = Depends(get_store),
                   gateway: payments.RazorpayClient = Depends(get_gateway_client)):
    result = payments.refund_payment(store, gateway, payload)
    return {"success": True, "message": "Refund processed successfully", **result}


@app.get("/api/payment/{payment_id}")
def get_payment(payment_id: str, gateway: payments.RazorpayClient = Depends(get_gateway_client)):
    return {"success": True, "payment": payments.get_payment_details(gateway, payment_id)}


# -----------------
# Fulfillment (Qikink)
# -----------------

def get_fulfillment_client(settings: Settings = Depends(get_settings)) -> Iterator[FulfillmentClient]:
    with httpx.Client(base_url=settings.qikink_api_url, timeout=30.0) as http:
        tokens = TokenProvider(http, settings.qikink_client_id, settings.qikink_client_secret)
        yield FulfillmentClient(http, tokens)


@app.post("/api/qikink/sync-products")
def qikink_sync_products(store: Store = Depends(get_store),
                         client: FulfillmentClient = Depends(get_fulfillment_client)):
    return sync_products(store, client)


@app.post("/api/admin/orders/{order_id}/fulfill")
def admin_fulfill_order(order_id: str, store: Store = Depends(get_store),
                        client: FulfillmentClient = Depends(get_fulfillment_client)):
    order = push_order(store, client, order_id)
    return {"success": True, "message": "Order sent for fulfillment", "order": order}


@app.post("/api/qikink/webhook")
def qikink_webhook(event: dict, store: Store = Depends(get_store)):
    return {"success": True, **handle_fulfillment_event(store, event)}


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=get_settings().port)
