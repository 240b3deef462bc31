"""
MongoDB access helpers.

The client is created once from DATABASE_URL / DATABASE_NAME. Route handlers
receive the database through the ``get_db`` dependency so tests can swap it.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient

from config import get_settings
from errors import ValidationError

logger = logging.getLogger(__name__)

_settings = get_settings()

client: Optional[MongoClient] = None
db = None

if _settings.database_url and _settings.database_name:
    client = MongoClient(_settings.database_url, tz_aware=True)
    db = client[_settings.database_name]


def get_db():
    if db is None:
        raise HTTPException(status_code=500, detail="Database not available")
    return db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_bson_datetime(value: datetime) -> datetime:
    """Naive UTC, the form stored dates come back in without tz_aware."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def create_document(database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    now = utcnow()
    data_dict["created_at"] = now
    data_dict["updated_at"] = now
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


NEWEST_FIRST = [("created_at", -1)]


def get_documents(
    database,
    collection_name: str,
    filter_dict: Optional[dict] = None,
    limit: Optional[int] = None,
    sort: Optional[list] = None,
) -> List[dict]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def oid(s: str) -> ObjectId:
    if not ObjectId.is_valid(s):
        raise ValidationError("Invalid id")
    return ObjectId(s)


def serialize_doc(doc: Optional[Dict[str, Any]]):
    if doc is None:
        return None
    out = {}
    for k, v in doc.items():
        if k == "_id":
            out["id"] = str(v)
        else:
            out[k] = _serialize_value(v)
    return out


def _serialize_value(v):
    if isinstance(v, ObjectId):
        return str(v)
    if isinstance(v, datetime):
        return v.isoformat()
    if isinstance(v, dict):
        return serialize_doc(v)
    if isinstance(v, list):
        return [_serialize_value(i) for i in v]
    return v


@contextmanager
def transaction(database, enabled: bool = True):
    """Yield a session with an open transaction, or None when disabled.

    The transaction commits when the block exits normally and aborts when it
    raises. Standalone servers do not support transactions; set
    MONGO_TRANSACTIONS=false for those.
    """
    if not enabled:
        yield None
        return
    with database.client.start_session() as session:
        with session.start_transaction():
            yield session


def ensure_indexes(database) -> None:
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["order"].create_index([("order_number", ASCENDING)], unique=True)
    database["payment"].create_index([("gateway_charge_id", ASCENDING)])
    logger.info("Indexes ensured on database %s", database.name)
