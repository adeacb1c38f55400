"""
MongoDB access helpers.

Collections are named after the lowercase schema name (Product -> "product").
Every document keeps its own ``_id`` as an ObjectId; references between
documents (``user_id``, ``product_id``...) are stored as strings.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError

import config
from errors import NotFound

logger = logging.getLogger(__name__)


client = MongoClient(config.DATABASE_URL)
db = client[config.DATABASE_NAME]


def now_utc() -> datetime:
    # Naive UTC, which is what pymongo hands back on reads
    return datetime.now(timezone.utc).replace(tzinfo=None)


def money(amount: float) -> float:
    return round(float(amount) + 0.0, 2)


def naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def to_object_id(value: Union[str, ObjectId], what: str = "Resource") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    if not ObjectId.is_valid(value):
        raise NotFound(f"{what} not found")
    return ObjectId(value)


def public(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Return a JSON-friendly copy of ``doc`` with ``_id`` exposed as ``id``."""
    if doc is None:
        return None
    out = dict(doc)
    if "_id" in out:
        out["id"] = str(out.pop("_id"))
    return out


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    now = now_utc()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = db[collection_name].insert_one(doc)
    return str(result.inserted_id)


def paginate(collection_name: str, query: Dict[str, Any], page: int = 1, limit: int = 10,
             sort: Optional[List] = None) -> Dict[str, Any]:
    page = max(1, page)
    limit = max(1, limit)
    total = db[collection_name].count_documents(query)
    cursor = db[collection_name].find(query)
    if sort:
        cursor = cursor.sort(sort)
    cursor = cursor.skip((page - 1) * limit).limit(limit)
    items = [public(doc) for doc in cursor]
    return {
        "items": items,
        "count": len(items),
        "total": total,
        "page": page,
        "pages": (total + limit - 1) // limit,
    }


def get_next_sequence(seq_name: str) -> int:
    try:
        doc = _bump(seq_name)
    except DuplicateKeyError:
        # Two first-time upserts raced; the counter exists now
        doc = _bump(seq_name)
    return int(doc["value"])


def _bump(seq_name: str) -> Dict[str, Any]:
    return db["counters"].find_one_and_update(
        {"_id": seq_name},
        {"$inc": {"value": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )


def ensure_indexes() -> None:
    db["coupon"].create_index([("code", ASCENDING)], unique=True)
    db["order"].create_index([("order_number", ASCENDING)], unique=True)
    db["order"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    db["cart"].create_index([("user_id", ASCENDING)], unique=True)
    db["product"].create_index([("slug", ASCENDING)], unique=True)
    db["inventory_log"].create_index([("product_id", ASCENDING), ("created_at", DESCENDING)])
    db["wishlist"].create_index([("user_id", ASCENDING)], unique=True)
    db["review"].create_index([("product_id", ASCENDING), ("user_id", ASCENDING)], unique=True)
    db["discount"].create_index([("is_active", ASCENDING), ("start_date", ASCENDING), ("end_date", ASCENDING)])
    logger.info("Indexes ensured on %s", db.name)
