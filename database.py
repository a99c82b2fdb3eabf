"""
MongoDB access for cartflow.

The client is created lazily from DATABASE_URL / DATABASE_NAME. Route handlers receive the
database through the `get_db` dependency, services receive it through their constructor.
"""
import math
import os
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.database import Database

from errors import InvalidIdError

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "cartflow")

logger = logging.getLogger("cartflow.database")

_client: Optional[MongoClient] = None


def get_client() -> MongoClient:
    global _client
    if _client is None:
        _client = MongoClient(DATABASE_URL, tz_aware=True, serverSelectionTimeoutMS=5000)
    return _client


def get_db() -> Database:
    return get_client()[DATABASE_NAME]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_object_id(value: Union[str, ObjectId]) -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise InvalidIdError(value)


def create_document(db: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert one document stamped with created_at/updated_at and return its id as a string."""
    doc = data.model_dump(mode="json") if isinstance(data, BaseModel) else dict(data)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    inserted_id = db[collection_name].insert_one(doc).inserted_id
    return str(inserted_id)


def get_documents(db: Database, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  limit: Optional[int] = None, sort: Optional[List] = None) -> List[Dict[str, Any]]:
    cursor = db[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def to_str_id(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Return a JSON-friendly copy: `_id` becomes `id` and nested ObjectIds become strings."""
    if doc is None:
        return None
    out: Dict[str, Any] = {}
    for k, v in doc.items():
        key = "id" if k == "_id" else k
        out[key] = _stringify(v)
    return out


def _stringify(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        return to_str_id(value)
    if isinstance(value, list):
        return [_stringify(v) for v in value]
    return value


def counter_value(db: Database, key: str) -> Optional[int]:
    doc = db["counter"].find_one({"_id": key})
    return None if doc is None else int(doc.get("seq", 0))


def next_sequence(db: Database, key: str, floor: int = 0) -> int:
    """Atomically increment the named counter and return the new value.

    `floor` raises the stored value before incrementing, so a counter created over
    pre-existing data continues after its highest value.
    """
    counters = db["counter"]
    if floor:
        counters.update_one({"_id": key}, {"$max": {"seq": floor}}, upsert=True)
    doc = counters.find_one_and_update(
        {"_id": key},
        {"$inc": {"seq": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return int(doc["seq"])


def ensure_indexes(db: Database) -> None:
    db["user"].create_index("email", unique=True)
    db["product"].create_index("code", unique=True)
    db["product"].create_index("status")
    db["product"].create_index("category")
    db["cart"].create_index("user_id", unique=True)
    db["address"].create_index([("user_id", ASCENDING), ("is_default", DESCENDING)])
    db["order"].create_index("order_number", unique=True)
    db["order"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    db["order"].create_index("status")
    db["order"].create_index("payment_status")
    logger.info("Indexes ensured on %s", db.name)


def paginate(db: Database, collection_name: str, query: Dict[str, Any], page: int = 1, limit: int = 10,
             sort: Optional[List] = None) -> Tuple[List[Dict[str, Any]], Dict[str, int]]:
    collection = db[collection_name]
    cursor = collection.find(query)
    if sort:
        cursor = cursor.sort(sort)
    docs = list(cursor.skip((page - 1) * limit).limit(limit))
    total = collection.count_documents(query)
    meta = {
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": math.ceil(total / limit) if limit else 0,
    }
    return docs, meta
