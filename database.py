"""
MongoDB access for the Study Tracker.

Documents leave the store as plain dicts with a string `id` instead of the
ObjectId `_id`. Every write goes through the store so that the collection
cache can be invalidated and the change published to subscribers.
"""

import copy
import threading
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError

from config import settings
from exceptions import BackendUnavailableError, InvalidIdError, NotFoundError
from logging_config import logger
from realtime import ChangeFeed, feed as default_feed

# Human readable names for NotFoundError messages
ENTITY_NAMES = {
    "subjects": "Subject",
    "study_nodes": "Study node",
    "resources": "Resource",
    "assignments": "Assignment",
    "tests": "Test",
    "test_questions": "Question",
    "test_submissions": "Submission",
    "doubts": "Doubt",
    "doubt_replies": "Reply",
    "users": "User",
}


def oid(s: str) -> ObjectId:
    try:
        return ObjectId(s)
    except (InvalidId, TypeError):
        raise InvalidIdError(str(s))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value):
    # BSON drops tzinfo unless the client is tz_aware
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _out(doc: Optional[dict]) -> Optional[dict]:
    if doc is None:
        return None
    doc = dict(doc)
    doc["id"] = str(doc.pop("_id"))
    return {k: _as_utc(v) for k, v in doc.items()}


def _query(filters: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Translate an `id` filter (plain or {"$in": [...]}) to `_id` ObjectIds."""
    q = dict(filters or {})
    if "id" in q:
        value = q.pop("id")
        if isinstance(value, dict) and "$in" in value:
            q["_id"] = {"$in": [oid(v) for v in value["$in"]]}
        else:
            q["_id"] = oid(value)
    return q


class Store:
    """Query and mutation boundary over a pymongo Database."""

    def __init__(self, db, feed: Optional[ChangeFeed] = None, cache_enabled: bool = True):
        self.db = db
        self.feed = feed if feed is not None else default_feed
        self.cache_enabled = cache_enabled
        self._cache: Dict[str, Dict[Tuple, List[dict]]] = {}
        self._generations: Dict[str, int] = defaultdict(int)
        self._cache_lock = threading.Lock()

    # -----------------------------
    # Cache
    # -----------------------------
    def invalidate(self, collection: str):
        with self._cache_lock:
            self._generations[collection] += 1
            self._cache.pop(collection, None)

    def _changed(self, collection: str, event: str, record: Optional[dict]):
        self.invalidate(collection)
        if record is not None and self.feed is not None:
            self.feed.publish(collection, event, record)

    # -----------------------------
    # Queries
    # -----------------------------
    def get_documents(
        self,
        collection: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[dict]:
        key = (repr(sorted((filters or {}).items())), order_by, descending, limit)
        generation = None
        if self.cache_enabled:
            with self._cache_lock:
                hit = self._cache.get(collection, {}).get(key)
                generation = self._generations[collection]
            if hit is not None:
                return copy.deepcopy(hit)

        cursor = self.db[collection].find(_query(filters))
        direction = DESCENDING if descending else ASCENDING
        if order_by:
            cursor = cursor.sort([(order_by, direction), ("_id", direction)])
        else:
            cursor = cursor.sort("_id", ASCENDING)
        if limit:
            cursor = cursor.limit(limit)
        docs = [_out(d) for d in cursor]

        if self.cache_enabled:
            with self._cache_lock:
                # skipped when a write landed while the query ran
                if self._generations[collection] == generation:
                    self._cache.setdefault(collection, {})[key] = copy.deepcopy(docs)
        return docs

    def find_document(self, collection: str, filters: Dict[str, Any]) -> Optional[dict]:
        return _out(self.db[collection].find_one(_query(filters)))

    def get_document(self, collection: str, doc_id: str) -> dict:
        doc = self.find_document(collection, {"id": doc_id})
        if doc is None:
            raise NotFoundError(ENTITY_NAMES.get(collection, collection), doc_id)
        return doc

    def count_documents(self, collection: str, filters: Optional[Dict[str, Any]] = None) -> int:
        return self.db[collection].count_documents(_query(filters))

    # -----------------------------
    # Mutations
    # -----------------------------
    def create_document(self, collection: str, data: Dict[str, Any]) -> dict:
        now = utcnow()
        record = {**data, "created_at": now, "updated_at": now}
        result = self.db[collection].insert_one(record)
        record["_id"] = result.inserted_id
        doc = _out(record)
        self._changed(collection, "INSERT", doc)
        return doc

    def create_documents(self, collection: str, items: Iterable[Dict[str, Any]]) -> List[dict]:
        return [self.create_document(collection, item) for item in items]

    def update_document(self, collection: str, doc_id: str, changes: Dict[str, Any]) -> dict:
        updated = self.db[collection].find_one_and_update(
            {"_id": oid(doc_id)},
            {"$set": {**changes, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise NotFoundError(ENTITY_NAMES.get(collection, collection), doc_id)
        doc = _out(updated)
        self._changed(collection, "UPDATE", doc)
        return doc

    def upsert_document(
        self,
        collection: str,
        keys: Dict[str, Any],
        data: Dict[str, Any],
        guard: Optional[Dict[str, Any]] = None,
    ) -> Optional[dict]:
        """Insert or update the single document identified by `keys`.

        With `guard`, only a document also matching the guard is updated. A
        document that exists but fails the guard is left untouched and None is
        returned; this relies on the unique index over `keys`.
        """
        now = utcnow()
        try:
            updated = self.db[collection].find_one_and_update(
                {**keys, **(guard or {})},
                {"$set": {**data, "updated_at": now}, "$setOnInsert": {"created_at": now}},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            logger.info(f"Upsert on {collection} blocked by guard for {keys}")
            return None
        doc = _out(updated)
        self._changed(collection, "UPDATE", doc)
        return doc

    def delete_document(self, collection: str, doc_id: str) -> dict:
        deleted = self.db[collection].find_one_and_delete({"_id": oid(doc_id)})
        if deleted is None:
            raise NotFoundError(ENTITY_NAMES.get(collection, collection), doc_id)
        doc = _out(deleted)
        self._changed(collection, "DELETE", doc)
        return doc

    def delete_documents(self, collection: str, filters: Dict[str, Any]) -> int:
        result = self.db[collection].delete_many(_query(filters))
        if result.deleted_count:
            self._changed(collection, "DELETE", None)
        return result.deleted_count

    # -----------------------------
    # Setup
    # -----------------------------
    def ensure_indexes(self):
        self.db["users"].create_index("email", unique=True)
        self.db["profiles"].create_index("user_id", unique=True)
        self.db["user_roles"].create_index("user_id", unique=True)
        self.db["sessions"].create_index("token", unique=True)
        self.db["study_nodes"].create_index([("subject_id", ASCENDING), ("sort_order", ASCENDING)])
        self.db["node_progress"].create_index([("node_id", ASCENDING), ("user_id", ASCENDING)], unique=True)
        self.db["assignment_completions"].create_index(
            [("assignment_id", ASCENDING), ("student_id", ASCENDING)], unique=True
        )
        self.db["test_submissions"].create_index([("test_id", ASCENDING), ("student_id", ASCENDING)], unique=True)
        self.db["doubts"].create_index([("created_at", DESCENDING)])
        self.db["doubt_replies"].create_index([("doubt_id", ASCENDING), ("created_at", ASCENDING)])


def _connect() -> Optional[Store]:
    if not settings.database_configured:
        logger.warning("DATABASE_URL / DATABASE_NAME not set; running without a database")
        return None
    client = MongoClient(settings.DATABASE_URL, tz_aware=True)
    return Store(client[settings.DATABASE_NAME], cache_enabled=settings.QUERY_CACHE_ENABLED)


store: Optional[Store] = _connect()
db = store.db if store is not None else None


def get_store() -> Store:
    """FastAPI dependency for the configured store"""
    if store is None:
        raise BackendUnavailableError()
    return store
