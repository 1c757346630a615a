"""
MongoDB access: connection handle, unit of work and document helpers.

Collections are named after the lowercased schema class (``product``, ``order``).
All order-path writes go through :meth:`Store.run`, which gives the caller one
all-or-nothing unit of work:

* with transactions enabled (replica set / Atlas) the work runs inside a client
  session transaction and any exception aborts it;
* on standalone servers the work registers compensating writes that are
  replayed in reverse order if it fails.
"""
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, TypeVar

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.errors import DuplicateKeyError, PyMongoError
from pydantic import BaseModel

from errors import TransientStoreFailureError, ValidationFailedError
from settings import get_settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_ATTEMPTS = 3


def utcnow() -> datetime:
    # BSON dates carry millisecond precision
    now = datetime.now(timezone.utc).replace(tzinfo=None)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


def to_object_id(value: str, what: str = "id") -> ObjectId:
    if not ObjectId.is_valid(value):
        raise ValidationFailedError(f"Invalid {what}: {value}")
    return ObjectId(value)


def to_public(doc: Optional[Dict[str, Any]]):
    """Return a JSON-friendly copy: ``_id`` becomes ``id`` and ObjectIds become strings."""
    if doc is None:
        return doc
    out = _stringify(dict(doc))
    if "_id" in out:
        out["id"] = out.pop("_id")
    return out


def _stringify(value):
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        return {k: _stringify(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_stringify(v) for v in value]
    return value


class UnitOfWork:
    """Session handle plus an undo log for servers without transactions."""

    def __init__(self, session=None):
        self.session = session
        self._undo: List[Callable[[], Any]] = []

    @property
    def transactional(self) -> bool:
        return self.session is not None

    def compensate(self, fn: Callable[[], Any]) -> None:
        # Inside a transaction the server rolls everything back on abort.
        if not self.transactional:
            self._undo.append(fn)

    def rollback(self) -> None:
        while self._undo:
            fn = self._undo.pop()
            try:
                fn()
            except PyMongoError:
                logger.exception("Compensating write failed; manual repair may be needed")


class Store:
    def __init__(self, client: MongoClient, name: str, use_transactions: bool = True):
        self.client = client
        self.db = client[name]
        self.use_transactions = use_transactions
        self._indexed = False

    @property
    def products(self):
        return self.db["product"]

    @property
    def orders(self):
        return self.db["order"]

    @property
    def categories(self):
        return self.db["category"]

    def ensure_indexes(self) -> None:
        self.orders.create_index("order_number", unique=True)
        self.orders.create_index("email")
        self.orders.create_index("phone")
        self.orders.create_index("order_status")
        self.orders.create_index("payment_status")
        self.orders.create_index([("created_at", DESCENDING)])
        self.products.create_index("sku", unique=True, sparse=True)
        self.products.create_index("qikink_product_id", unique=True, sparse=True)
        self.products.create_index([("category", ASCENDING), ("is_active", ASCENDING)])
        self.products.create_index("price")
        self.categories.create_index("slug", unique=True)
        self.categories.create_index([("sort_order", ASCENDING), ("name", ASCENDING)])

    def ensure_indexes_once(self) -> bool:
        """Create indexes unless already done; a failure is logged and retried on the next call."""
        if self._indexed:
            return True
        try:
            self.ensure_indexes()
        except PyMongoError as exc:
            logger.warning("Index creation failed, will retry: %s", exc)
            return False
        self._indexed = True
        return True

    def run(self, work: Callable[[UnitOfWork], T]) -> T:
        """Execute ``work`` as one unit of work.

        Transaction write conflicts and unknown commit results are retried by
        pymongo's ``with_transaction``. Duplicate generated keys are retried
        here. Any other store failure is reported as
        :class:`TransientStoreFailureError`; business errors raised by
        ``work`` propagate untouched.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return self._run_once(work)
            except DuplicateKeyError as exc:
                if attempt < MAX_ATTEMPTS:
                    logger.warning("Duplicate key on attempt %d, retrying: %s", attempt, exc)
                    continue
                raise TransientStoreFailureError("Could not allocate a unique key, retry the request") from exc
            except PyMongoError as exc:
                if exc.has_error_label("UnknownTransactionCommitResult"):
                    logger.error("Commit outcome unknown: %s", exc)
                    raise TransientStoreFailureError(
                        "Data store did not confirm the commit, check the result before retrying"
                    ) from exc
                logger.error("Data store failure: %s", exc)
                raise TransientStoreFailureError("Data store unavailable, nothing was committed") from exc

    def _run_once(self, work: Callable[[UnitOfWork], T]) -> T:
        if self.use_transactions:
            with self.client.start_session() as session:
                return session.with_transaction(lambda s: work(UnitOfWork(s)))
        uow = UnitOfWork()
        try:
            return work(uow)
        except Exception:
            uow.rollback()
            raise

    def ping(self) -> bool:
        self.client.admin.command("ping")
        return True


def create_document(store: Store, collection_name: str, data, session=None) -> str:
    """Insert a pydantic model or dict with timestamps and return the new id."""
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = store.db[collection_name].insert_one(doc, session=session)
    return str(result.inserted_id)


def get_documents(store: Store, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  limit: Optional[int] = None, skip: int = 0, sort=None) -> List[Dict[str, Any]]:
    cursor = store.db[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


_store: Optional[Store] = None
_store_lock = threading.Lock()


def get_store() -> Store:
    """FastAPI dependency returning the process-wide store."""
    global _store
    if _store is None:
        with _store_lock:
            if _store is None:
                settings = get_settings()
                client = MongoClient(settings.database_url)
                _store = Store(client, settings.database_name, settings.use_transactions)
    _store.ensure_indexes_once()
    return _store
