"""
Database helpers

Owns the MongoDB client and the small set of helpers every router uses:
``create_document`` for plain inserts,
``serialize`` to turn a stored document into JSON, and ``transaction`` for
the multi-document order flows.
"""

import logging
import math
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from config import settings
from errors import ServiceUnavailable, ValidationFailed

logger = logging.getLogger(__name__)

_client = None
db = None

if settings.database_url and settings.database_name:
    _client = MongoClient(settings.database_url)
    db = _client[settings.database_name]


def get_db() -> Database:
    if db is None:
        raise ServiceUnavailable("Database not available")
    return db


def utcnow() -> datetime:
    # naive UTC, matching what pymongo hands back on reads
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(ObjectId())


def to_object_id(value: str, what: str = "resource") -> ObjectId:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise ValidationFailed(f"Invalid {what} id", code="INVALID_ID")


def create_document(collection_name: str, data: Union[BaseModel, dict], session=None) -> str:
    """Insert a single document and return its id as a string."""
    database = get_db()
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = data.copy()
    now = utcnow()
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now
    result = database[collection_name].insert_one(data_dict, session=session)
    return str(result.inserted_id)


def serialize(doc: Optional[dict], exclude: tuple = ()) -> Optional[dict]:
    if not doc:
        return None
    out = {k: v for k, v in doc.items() if k not in exclude}
    if "_id" in out:
        out["id"] = str(out.pop("_id"))
    return out


def paginate(page: int, limit: int, total: int) -> dict:
    total_pages = math.ceil(total / limit) if limit else 0
    return {
        "currentPage": page,
        "totalPages": total_pages,
        "total": total,
        "hasNextPage": page < total_pages,
        "hasPrevPage": page > 1,
    }


@contextmanager
def transaction():
    """Yield a session bound to a multi-document transaction.

    Yields ``None`` unless USE_TRANSACTIONS is set; callers pass the value
    straight through as ``session=`` and keep their own compensation logic.
    """
    if not settings.use_transactions:
        yield None
        return
    client = get_db().client
    with client.start_session() as session:
        with session.start_transaction():
            yield session


def ensure_indexes(database: Database) -> None:
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["category"].create_index([("name", ASCENDING)], unique=True)
    database["category"].create_index([("parent_id", ASCENDING)])
    database["product"].create_index([("slug", ASCENDING)])
    database["product"].create_index([("category_id", ASCENDING)])
    database["cart"].create_index([("user_id", ASCENDING)], unique=True)
    database["wishlist"].create_index([("user_id", ASCENDING)], unique=True)
    database["order"].create_index([("order_number", ASCENDING)], unique=True)
    database["order"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    database["order"].create_index([("payment_intent_id", ASCENDING)])
    database["webhook_event"].create_index([("event_id", ASCENDING)], unique=True)
    logger.info("Database indexes ensured")
