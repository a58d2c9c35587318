"""
Database Helper Functions

MongoDB access for the API. Routes and services work against a DocumentStore,
so the same logic runs on the pymongo-backed store in production and on any
other store exposing these operations.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database
from pymongo.errors import PyMongoError

import config
from errors import NotFoundError, PersistenceError

logger = logging.getLogger(__name__)

_client = None
db = None

if config.DATABASE_URL and config.DATABASE_NAME:
    _client = MongoClient(config.DATABASE_URL, tz_aware=True)
    db = _client[config.DATABASE_NAME]

SortSpec = Sequence[Tuple[str, int]]


def to_object_id(value: Any) -> Optional[ObjectId]:
    """Parse an identifier, returning None when it is not a valid ObjectId."""
    if isinstance(value, ObjectId):
        return value
    if value is None:
        return None
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


class DocumentStore(Protocol):
    def get(self, collection: str, doc_id: Any) -> Optional[Dict[str, Any]]: ...

    def find_one(self, collection: str, filter_dict: Dict[str, Any]) -> Optional[Dict[str, Any]]: ...

    def find(
        self,
        collection: str,
        filter_dict: Optional[Dict[str, Any]] = None,
        skip: int = 0,
        limit: int = 0,
        sort: Optional[SortSpec] = None,
    ) -> List[Dict[str, Any]]: ...

    def count(self, collection: str, filter_dict: Optional[Dict[str, Any]] = None) -> int: ...

    def insert(self, collection: str, document: Dict[str, Any]) -> Any: ...

    def update_fields(self, collection: str, doc_id: Any, fields: Dict[str, Any]) -> None: ...

    def update_many(self, collection: str, filter_dict: Dict[str, Any], fields: Dict[str, Any]) -> int: ...

    def pull(self, collection: str, filter_dict: Dict[str, Any], field: str, value: Any) -> int: ...

    def upsert_fields(
        self,
        collection: str,
        filter_dict: Dict[str, Any],
        fields: Dict[str, Any],
        on_insert: Optional[Dict[str, Any]] = None,
    ) -> None: ...

    def delete(self, collection: str, doc_id: Any) -> bool: ...


@contextmanager
def _driver_errors(action: str):
    try:
        yield
    except PyMongoError as exc:
        logger.error("MongoDB %s failed: %s", action, exc, exc_info=True)
        raise PersistenceError(f"Database error during {action}") from exc


class MongoDocumentStore:
    """DocumentStore over a pymongo database. Driver errors surface as PersistenceError."""

    def __init__(self, database: Optional[Database]):
        self._db = database

    def _collection(self, name: str):
        if self._db is None:
            raise PersistenceError("Database not available. Check DATABASE_URL and DATABASE_NAME.")
        return self._db[name]

    def get(self, collection: str, doc_id: Any) -> Optional[Dict[str, Any]]:
        obj_id = to_object_id(doc_id)
        if obj_id is None:
            return None
        return self.find_one(collection, {"_id": obj_id})

    def find_one(self, collection: str, filter_dict: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        with _driver_errors(f"find_one on {collection}"):
            return self._collection(collection).find_one(filter_dict)

    def find(
        self,
        collection: str,
        filter_dict: Optional[Dict[str, Any]] = None,
        skip: int = 0,
        limit: int = 0,
        sort: Optional[SortSpec] = None,
    ) -> List[Dict[str, Any]]:
        with _driver_errors(f"find on {collection}"):
            cursor = self._collection(collection).find(filter_dict or {})
            if sort:
                cursor = cursor.sort(list(sort))
            if skip:
                cursor = cursor.skip(skip)
            if limit:
                cursor = cursor.limit(limit)
            return list(cursor)

    def count(self, collection: str, filter_dict: Optional[Dict[str, Any]] = None) -> int:
        with _driver_errors(f"count on {collection}"):
            return self._collection(collection).count_documents(filter_dict or {})

    def insert(self, collection: str, document: Dict[str, Any]) -> ObjectId:
        with _driver_errors(f"insert into {collection}"):
            result = self._collection(collection).insert_one(dict(document))
        return result.inserted_id

    def update_fields(self, collection: str, doc_id: Any, fields: Dict[str, Any]) -> None:
        obj_id = to_object_id(doc_id)
        if obj_id is None:
            raise NotFoundError(f"No {collection} document with id {doc_id}")
        with _driver_errors(f"update on {collection}"):
            result = self._collection(collection).update_one({"_id": obj_id}, {"$set": fields})
        if result.matched_count == 0:
            raise NotFoundError(f"No {collection} document with id {doc_id}")

    def update_many(self, collection: str, filter_dict: Dict[str, Any], fields: Dict[str, Any]) -> int:
        with _driver_errors(f"update_many on {collection}"):
            result = self._collection(collection).update_many(filter_dict, {"$set": fields})
        return result.modified_count

    def pull(self, collection: str, filter_dict: Dict[str, Any], field: str, value: Any) -> int:
        """Remove every occurrence of ``value`` from the array ``field`` of matching documents."""
        with _driver_errors(f"pull on {collection}"):
            result = self._collection(collection).update_many(filter_dict, {"$pull": {field: value}})
        return result.modified_count

    def upsert_fields(
        self,
        collection: str,
        filter_dict: Dict[str, Any],
        fields: Dict[str, Any],
        on_insert: Optional[Dict[str, Any]] = None,
    ) -> None:
        update: Dict[str, Any] = {"$set": fields}
        if on_insert:
            update["$setOnInsert"] = on_insert
        with _driver_errors(f"upsert on {collection}"):
            self._collection(collection).update_one(filter_dict, update, upsert=True)

    def delete(self, collection: str, doc_id: Any) -> bool:
        obj_id = to_object_id(doc_id)
        if obj_id is None:
            return False
        with _driver_errors(f"delete on {collection}"):
            result = self._collection(collection).delete_one({"_id": obj_id})
        return result.deleted_count > 0


def ensure_indexes(database: Database) -> None:
    """Create the secondary indexes the API queries rely on."""
    database["subscription"].create_index([("user_id", ASCENDING), ("status", ASCENDING)])
    database["subscription"].create_index("current_period_end")
    database["subscription"].create_index("subscription_id")
    # transaction_id stays non-unique: a redelivered checkout event is recorded again
    database["payment"].create_index([("user_id", ASCENDING), ("timestamp", DESCENDING)])
    database["payment"].create_index("transaction_id")
    database["video"].create_index("course_id")
    database["watch_history"].create_index([("user_id", ASCENDING), ("video_id", ASCENDING)], unique=True)
    database["regional_pricing"].create_index("region_code", unique=True)
    logger.info("MongoDB indexes ensured on %s", database.name)


def get_store() -> DocumentStore:
    """FastAPI dependency returning the shared store."""
    return MongoDocumentStore(db)
