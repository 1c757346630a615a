"""Product catalog: creation with generated SKUs, queries, edits, restocking and admin stats."""
import logging
import random
import re
import string
import time
from typing import Any, Dict, List, Optional

from pymongo import DESCENDING, ReturnDocument

from database import Store, create_document, to_object_id, to_public, utcnow
from errors import ProductNotFoundError, ValidationFailedError
from schemas import Product, ProductUpdate

logger = logging.getLogger(__name__)

_BASE36 = string.digits + string.ascii_uppercase
LOW_STOCK_THRESHOLD = 10


def _base36(n: int) -> str:
    if n == 0:
        return "0"
    out = []
    while n:
        n, r = divmod(n, 36)
        out.append(_BASE36[r])
    return "".join(reversed(out))


def generate_sku(category: str, now_ms: Optional[int] = None, rng: Optional[random.Random] = None) -> str:
    """SKU shaped ``CAT-<base36 ms timestamp>-<4 random>``, e.g. ``MEN-LZ3K9Q0A-X7PD``."""
    rng = rng or random
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    suffix = "".join(rng.choice(_BASE36) for _ in range(4))
    return f"{category[:3].upper()}-{_base36(now_ms)}-{suffix}"


def effective_price(product: Dict[str, Any]) -> float:
    price = float(product["price"])
    discount = float(product.get("discount") or 0)
    if discount > 0:
        price = price - price * discount / 100
    return round(price, 2)


def stock_status(stock: int) -> str:
    if stock == 0:
        return "Out of Stock"
    if stock < LOW_STOCK_THRESHOLD:
        return "Low Stock"
    return "In Stock"


def present(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Public view of a product with the derived fields clients display."""
    out = to_public(doc)
    out["final_price"] = effective_price(doc)
    out["stock_status"] = stock_status(int(doc.get("stock", 0)))
    return out


def create_product(store: Store, product: Product) -> str:
    # unset optional keys stay absent so the sparse unique indexes skip them
    doc = product.model_dump(exclude_none=True)
    if not doc.get("sku"):
        doc["sku"] = generate_sku(product.category)
    product_id = create_document(store, "product", doc)
    logger.info("Created product %s (%s)", product_id, doc["sku"])
    return product_id


def get_product(store: Store, product_id: str) -> Dict[str, Any]:
    doc = store.products.find_one({"_id": to_object_id(product_id, "product id")})
    if not doc:
        raise ProductNotFoundError(product_id)
    return present(doc)


def list_products(store: Store, q: Optional[str] = None, category: Optional[str] = None,
                  size: Optional[str] = None, min_price: Optional[float] = None,
                  max_price: Optional[float] = None, featured: Optional[bool] = None,
                  page: int = 1, limit: int = 20, include_inactive: bool = False) -> Dict[str, Any]:
    query: Dict[str, Any] = {} if include_inactive else {"is_active": True}
    if q:
        pattern = {"$regex": re.escape(q), "$options": "i"}
        query["$or"] = [{"name": pattern}, {"description": pattern}]
    if category:
        query["category"] = category
    if size:
        query["sizes"] = size
    if featured is not None:
        query["is_featured"] = featured
    price_filter: Dict[str, float] = {}
    if min_price is not None:
        price_filter["$gte"] = float(min_price)
    if max_price is not None:
        price_filter["$lte"] = float(max_price)
    if price_filter:
        query["price"] = price_filter

    page = max(page, 1)
    limit = max(min(limit, 100), 1)
    total = store.products.count_documents(query)
    cursor = (store.products.find(query)
              .sort("created_at", DESCENDING)
              .skip((page - 1) * limit)
              .limit(limit))
    products = [present(d) for d in cursor]
    return {
        "count": len(products),
        "total": total,
        "page": page,
        "pages": -(-total // limit),
        "products": products,
    }


def update_product(store: Store, product_id: str, changes: ProductUpdate) -> Dict[str, Any]:
    fields = changes.model_dump(exclude_unset=True)
    if not fields:
        raise ValidationFailedError("No fields to update")
    fields["updated_at"] = utcnow()
    result = store.products.update_one({"_id": to_object_id(product_id, "product id")}, {"$set": fields})
    if result.matched_count == 0:
        raise ProductNotFoundError(product_id)
    return get_product(store, product_id)


def restock_product(store: Store, product_id: str, quantity: int) -> Dict[str, Any]:
    if quantity < 1:
        raise ValidationFailedError("Restock quantity must be at least 1")
    result = store.products.update_one(
        {"_id": to_object_id(product_id, "product id")},
        {"$inc": {"stock": quantity}, "$set": {"updated_at": utcnow()}},
    )
    if result.matched_count == 0:
        raise ProductNotFoundError(product_id)
    logger.info("Restocked product %s by %d", product_id, quantity)
    return get_product(store, product_id)


def delete_product(store: Store, product_id: str) -> None:
    # Order items keep their own snapshot, so history survives the delete.
    result = store.products.delete_one({"_id": to_object_id(product_id, "product id")})
    if result.deleted_count == 0:
        raise ProductNotFoundError(product_id)
    logger.info("Deleted product %s", product_id)


def _toggle(store: Store, product_id: str, field: str) -> Dict[str, Any]:
    oid = to_object_id(product_id, "product id")
    current = store.products.find_one({"_id": oid}, {field: 1})
    if not current:
        raise ProductNotFoundError(product_id)
    value = bool(current.get(field))
    doc = store.products.find_one_and_update(
        {"_id": oid, field: current.get(field)},
        {"$set": {field: not value, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not doc:
        raise ValidationFailedError("Product changed concurrently, reload and retry")
    logger.info("Product %s %s -> %s", product_id, field, not value)
    return present(doc)


def toggle_product_active(store: Store, product_id: str) -> Dict[str, Any]:
    return _toggle(store, product_id, "is_active")


def toggle_product_featured(store: Store, product_id: str) -> Dict[str, Any]:
    return _toggle(store, product_id, "is_featured")


def bulk_delete_products(store: Store, product_ids: List[str]) -> int:
    if not product_ids:
        raise ValidationFailedError("Please provide product IDs to delete")
    oids = [to_object_id(pid, "product id") for pid in product_ids]
    result = store.products.delete_many({"_id": {"$in": oids}})
    logger.info("Bulk deleted %d of %d products", result.deleted_count, len(oids))
    return result.deleted_count


def product_stats(store: Store) -> Dict[str, Any]:
    """Inventory dashboard figures across every product, active or not."""
    categories = store.products.aggregate([
        {"$group": {"_id": "$category", "count": {"$sum": 1}}},
        {"$sort": {"count": -1}},
    ])
    totals = list(store.products.aggregate([
        {"$group": {
            "_id": None,
            "avg_price": {"$avg": "$price"},
            "inventory_value": {"$sum": {"$multiply": ["$price", "$stock"]}},
        }},
    ]))
    return {
        "total_products": store.products.count_documents({}),
        "active_products": store.products.count_documents({"is_active": True}),
        "featured_products": store.products.count_documents({"is_featured": True}),
        "out_of_stock": store.products.count_documents({"stock": 0}),
        "low_stock": store.products.count_documents({"stock": {"$gt": 0, "$lt": LOW_STOCK_THRESHOLD}}),
        "category_breakdown": {row["_id"]: row["count"] for row in categories},
        "average_price": round(totals[0]["avg_price"], 2) if totals else 0,
        "total_inventory_value": round(totals[0]["inventory_value"], 2) if totals else 0,
    }
