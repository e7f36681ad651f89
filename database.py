"""
MongoDB access helpers.

Each document model in schemas.py is stored in the collection named after the
lowercased class name (User -> "user"). Documents get ``created_at`` and
``updated_at`` stamps when written through ``create_document``.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import Request
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from errors import BadRequestError

log = logging.getLogger(__name__)


def connect(database_url: str, database_name: str) -> Database:
    client = MongoClient(database_url, tz_aware=True, serverSelectionTimeoutMS=5000)
    return client[database_name]


def get_db(request: Request) -> Database:
    return request.app.state.db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Mongo hands back naive UTC datetimes unless the client is tz aware."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def mongo_time(value: datetime) -> datetime:
    """Naive UTC, the form dates are stored in. Used for range filters."""
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def oid(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise BadRequestError(f"Invalid id: {id_str}")


def serialize(doc: Optional[dict]) -> Optional[dict]:
    if not doc:
        return None
    doc["id"] = str(doc.pop("_id"))
    return doc


def create_document(db: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    if isinstance(data, BaseModel):
        # computed fields are derived on read, never stored
        exclude = {"id", *type(data).model_computed_fields}
        data = data.model_dump(exclude_none=True, exclude=exclude)
    else:
        data = dict(data)
    now = utcnow()
    data.setdefault("created_at", now)
    data["updated_at"] = now
    result = db[collection_name].insert_one(data)
    return str(result.inserted_id)


def get_documents(
    db: Database,
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    limit: Optional[int] = None,
    sort: Optional[list] = None,
) -> List[dict]:
    cursor = db[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes(db: Database) -> None:
    db["user"].create_index("email", unique=True)
    db["user"].create_index([("created_at", DESCENDING)])
    db["product"].create_index("product_code", unique=True)
    db["product"].create_index([("category", ASCENDING), ("available", ASCENDING)])
    db["category"].create_index("title", unique=True)
    db["category"].create_index("slug", unique=True)
    db["cart"].create_index("user_id", unique=True)
    db["order"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    db["transaction"].create_index("authority", unique=True, sparse=True)
    db["transaction"].create_index("ref_id", unique=True, sparse=True)
    db["transaction"].create_index([("status", ASCENDING), ("created_at", DESCENDING)])
    db["verification_code"].create_index("phone", unique=True)
    log.info("MongoDB indexes ensured on %s", db.name)
