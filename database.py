"""
MongoDB access for the study hub.

`db` is a pymongo Database when DATABASE_URL and DATABASE_NAME are set, otherwise
None. `MongoGateway` wraps a Database with the operations the store needs and
pushes a fresh snapshot of a collection to its subscribers after every write.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from bson import ObjectId
from pymongo import MongoClient
from pymongo.database import Database
from pymongo.errors import OperationFailure, PyMongoError

from config import DATABASE_URL, DATABASE_NAME
from errors import ForbiddenError, GatewayError, NotFoundError

logger = logging.getLogger(__name__)

_client: Optional[MongoClient] = None
db: Optional[Database] = None

if DATABASE_URL and DATABASE_NAME:
    _client = MongoClient(DATABASE_URL)
    db = _client[DATABASE_NAME]

_NAMES = {"materials": "Material", "subjects": "Subject", "users": "User", "reports": "Report"}

Snapshot = List[Dict[str, Any]]


def _key(doc_id: Any):
    if isinstance(doc_id, str) and ObjectId.is_valid(doc_id):
        return ObjectId(doc_id)
    return doc_id


def clean(doc: Dict[str, Any]) -> Dict[str, Any]:
    if not doc:
        return doc
    doc["id"] = str(doc.pop("_id"))
    return doc


def _gateway_error(error: PyMongoError) -> GatewayError:
    # 13 = Unauthorized, 8000 = AtlasError (Atlas reports denied actions with it)
    if isinstance(error, OperationFailure) and error.code in (13, 8000):
        return ForbiddenError(str(error))
    return GatewayError(str(error))


def _not_found(collection: str) -> NotFoundError:
    return NotFoundError(f"{_NAMES.get(collection, 'Document')} not found")


class Subscription:
    """Live view of one collection. Call unsubscribe() to stop deliveries."""

    def __init__(self, gateway: "MongoGateway", collection: str,
                 on_snapshot: Callable[[Snapshot], None],
                 on_error: Optional[Callable[[Exception], None]] = None):
        self.gateway = gateway
        self.collection = collection
        self.on_snapshot = on_snapshot
        self.on_error = on_error
        self.active = True

    def unsubscribe(self):
        self.active = False
        self.gateway._drop(self)


class MongoGateway:
    def __init__(self, database: Database):
        self.db = database
        self._subscriptions: Dict[str, List[Subscription]] = {}

    # ----------------------
    # Subscriptions
    # ----------------------

    def subscribe(self, collection: str, on_snapshot: Callable[[Snapshot], None],
                  on_error: Optional[Callable[[Exception], None]] = None) -> Subscription:
        """Register a listener and deliver the current snapshot to it straight away."""
        sub = Subscription(self, collection, on_snapshot, on_error)
        self._subscriptions.setdefault(collection, []).append(sub)
        self._deliver(collection, [sub])
        return sub

    def publish(self, collection: str):
        subs = list(self._subscriptions.get(collection, []))
        if subs:
            self._deliver(collection, subs)

    def _drop(self, sub: Subscription):
        try:
            self._subscriptions.get(sub.collection, []).remove(sub)
        except ValueError:
            pass

    def _deliver(self, collection: str, subs: List[Subscription]):
        try:
            snapshot = [clean(d) for d in self.db[collection].find()]
        except PyMongoError as e:
            logger.error("Error listening to %s: %s", collection, e)
            for sub in subs:
                if sub.active and sub.on_error is not None:
                    sub.on_error(_gateway_error(e))
            return
        for sub in subs:
            if sub.active:
                sub.on_snapshot([dict(d) for d in snapshot])

    # ----------------------
    # Reads
    # ----------------------

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        try:
            doc = self.db[collection].find_one({"_id": _key(doc_id)})
        except PyMongoError as e:
            raise _gateway_error(e) from e
        return clean(doc) if doc else None

    def find(self, collection: str, filters: Dict[str, Any],
             sort: Optional[Sequence[Tuple[str, int]]] = None,
             limit: Optional[int] = None) -> Snapshot:
        """Equality query over a collection."""
        try:
            cursor = self.db[collection].find(filters)
            if sort:
                cursor = cursor.sort(list(sort))
            if limit:
                cursor = cursor.limit(limit)
            return [clean(d) for d in cursor]
        except PyMongoError as e:
            raise _gateway_error(e) from e

    # ----------------------
    # Writes
    # ----------------------

    def insert(self, collection: str, data: Dict[str, Any], doc_id: Optional[str] = None) -> str:
        """Insert a document, stamping created_at/updated_at with server time."""
        now = datetime.now(timezone.utc)
        doc = dict(data)
        doc["created_at"] = now
        doc["updated_at"] = now
        if doc_id is not None:
            doc["_id"] = _key(doc_id)
        try:
            result = self.db[collection].insert_one(doc)
        except PyMongoError as e:
            raise _gateway_error(e) from e
        self.publish(collection)
        return str(result.inserted_id)

    def update(self, collection: str, doc_id: str, fields: Dict[str, Any]):
        changes = dict(fields)
        changes["updated_at"] = datetime.now(timezone.utc)
        try:
            result = self.db[collection].update_one({"_id": _key(doc_id)}, {"$set": changes})
        except PyMongoError as e:
            raise _gateway_error(e) from e
        if result.matched_count == 0:
            raise _not_found(collection)
        self.publish(collection)

    def increment(self, collection: str, doc_id: str, field: str, amount: int = 1):
        """Atomic $inc, so concurrent increments from different sessions all land."""
        try:
            result = self.db[collection].update_one({"_id": _key(doc_id)}, {"$inc": {field: amount}})
        except PyMongoError as e:
            raise _gateway_error(e) from e
        if result.matched_count == 0:
            raise _not_found(collection)
        self.publish(collection)

    def delete(self, collection: str, doc_id: str):
        try:
            result = self.db[collection].delete_one({"_id": _key(doc_id)})
        except PyMongoError as e:
            raise _gateway_error(e) from e
        if result.deleted_count == 0:
            raise _not_found(collection)
        self.publish(collection)

    def update_all(self, collection: str, fields: Dict[str, Any]) -> int:
        """Batch write the same fields onto every document of a collection."""
        changes = dict(fields)
        changes["updated_at"] = datetime.now(timezone.utc)
        try:
            result = self.db[collection].update_many({}, {"$set": changes})
        except PyMongoError as e:
            raise _gateway_error(e) from e
        self.publish(collection)
        return result.modified_count

    def collection_names(self) -> List[str]:
        try:
            return self.db.list_collection_names()
        except PyMongoError as e:
            raise _gateway_error(e) from e
