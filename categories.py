"""Storefront categories: slugged navigation entries with an optional parent."""
import logging
import re
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import Store, create_document, to_object_id, to_public, utcnow
from errors import NotFoundError, ValidationFailedError
from schemas import Category, CategoryUpdate

logger = logging.getLogger(__name__)


def slugify(name: str) -> str:
    """``"Men's Tees & Tanks"`` -> ``"men-s-tees-tanks"``."""
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")


def _not_found(identifier: str) -> NotFoundError:
    return NotFoundError(f"Category not found: {identifier}")


def _with_parent(store: Store, doc: Dict[str, Any]) -> Dict[str, Any]:
    out = to_public(doc)
    parent_id = doc.get("parent_id")
    if parent_id:
        parent = store.categories.find_one({"_id": parent_id}, {"name": 1, "slug": 1})
        out["parent"] = to_public(parent)
    else:
        out["parent"] = None
    return out


def _parent_ref(store: Store, parent_id: Optional[str], own_id: Optional[ObjectId] = None) -> Optional[ObjectId]:
    if not parent_id:
        return None
    oid = to_object_id(parent_id, "parent id")
    if own_id is not None and oid == own_id:
        raise ValidationFailedError("A category cannot be its own parent")
    if store.categories.find_one({"_id": oid}, {"_id": 1}) is None:
        raise _not_found(parent_id)
    return oid


def create_category(store: Store, category: Category) -> Dict[str, Any]:
    doc = category.model_dump()
    doc["slug"] = category.slug or slugify(category.name)
    if not doc["slug"]:
        raise ValidationFailedError("Category name must contain letters or digits")
    if store.categories.find_one({"slug": doc["slug"]}, {"_id": 1}):
        raise ValidationFailedError(f"Category slug already exists: {doc['slug']}")
    doc["parent_id"] = _parent_ref(store, category.parent_id)
    try:
        new_id = create_document(store, "category", doc)
    except DuplicateKeyError as exc:
        raise ValidationFailedError(f"Category slug already exists: {doc['slug']}") from exc
    logger.info("Created category %s (%s)", new_id, doc["slug"])
    return get_category(store, new_id)


def list_categories(store: Store) -> List[Dict[str, Any]]:
    cursor = store.categories.find({"is_active": True}).sort([("sort_order", ASCENDING), ("name", ASCENDING)])
    return [_with_parent(store, doc) for doc in cursor]


def get_category(store: Store, identifier: str) -> Dict[str, Any]:
    """Look a category up by id, falling back to its slug."""
    doc = None
    if ObjectId.is_valid(identifier):
        doc = store.categories.find_one({"_id": ObjectId(identifier)})
    if doc is None:
        doc = store.categories.find_one({"slug": identifier})
    if doc is None:
        raise _not_found(identifier)
    return _with_parent(store, doc)


def update_category(store: Store, category_id: str, changes: CategoryUpdate) -> Dict[str, Any]:
    oid = to_object_id(category_id, "category id")
    fields = changes.model_dump(exclude_unset=True)
    if not fields:
        raise ValidationFailedError("No fields to update")
    if "parent_id" in fields:
        fields["parent_id"] = _parent_ref(store, fields["parent_id"], own_id=oid)
    fields["updated_at"] = utcnow()
    doc = store.categories.find_one_and_update(
        {"_id": oid}, {"$set": fields}, return_document=ReturnDocument.AFTER
    )
    if not doc:
        raise _not_found(category_id)
    return _with_parent(store, doc)


def delete_category(store: Store, category_id: str) -> None:
    oid = to_object_id(category_id, "category id")
    if store.categories.find_one({"parent_id": oid}, {"_id": 1}):
        raise ValidationFailedError("Category has subcategories, move or delete them first")
    result = store.categories.delete_one({"_id": oid})
    if result.deleted_count == 0:
        raise _not_found(category_id)
    logger.info("Deleted category %s", category_id)
