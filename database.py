"""
MongoDB access for the Your Spell Caster API.

The connection is opened once at import time from MONGODB_URI. Tests swap the
database with init_db(). Everything else reads the live handle through
collection() so the swap is seen everywhere.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson.objectid import ObjectId
from pydantic import BaseModel
from pymongo import MongoClient

import config
from errors import InternalError

logger = logging.getLogger(__name__)

db = None

if config.MONGODB_URI:
    try:
        _client = MongoClient(config.MONGODB_URI, serverSelectionTimeoutMS=5000)
        db = _client[config.DATABASE_NAME]
    except Exception as e:
        logger.error("Could not create MongoDB client: %s", e)
        db = None


def init_db(database) -> None:
    global db
    db = database


def get_db():
    return db


def collection(name: str):
    if db is None:
        raise InternalError("Database not configured")
    return db[name]


def utcnow() -> datetime:
    # Stored naive; MongoDB treats naive datetimes as UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document, stamping created_at/updated_at. Returns the new id as a string."""
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = collection(collection_name).insert_one(doc)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    cursor = collection(collection_name).find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def parse_object_id(value: Any) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except Exception:
        return None


_CAMEL_RE = re.compile(r"_([a-z0-9])")


def camelize(key: str) -> str:
    if key.startswith("_"):
        return key
    return _CAMEL_RE.sub(lambda m: m.group(1).upper(), key)


def _public_value(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        return {camelize(k): _public_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_public_value(v) for v in value]
    return value


def to_public(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Render a stored document for the API: _id becomes id, keys become camelCase."""
    if doc is None:
        return None
    out = {}
    for key, value in doc.items():
        if key == "_id":
            out["id"] = str(value)
        elif key == "password_hash":
            continue
        else:
            out[camelize(key)] = _public_value(value)
    return out
