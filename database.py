"""
Database access for Gaon Bazaar.

A single MongoDB database handle is built from the environment at import time.
Route handlers reach it through the ``get_db`` dependency so tests can swap in
an in-memory database.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from dotenv import load_dotenv
from pydantic import BaseModel
from pymongo import MongoClient
from pymongo.database import Database

from errors import BackendUnavailable, NotFound

load_dotenv()

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "gaon_bazaar")

_client: Optional[MongoClient] = None
db: Optional[Database] = None

if DATABASE_URL:
    _client = MongoClient(DATABASE_URL)
    db = _client[DATABASE_NAME]
else:
    logger.warning("DATABASE_URL not set; database is unavailable")


def get_db() -> Database:
    if db is None:
        raise BackendUnavailable("Database not available. Check DATABASE_URL.")
    return db


def server_timestamp() -> datetime:
    # BSON dates carry millisecond precision
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


def to_object_id(value: str, what: str = "Record") -> ObjectId:
    if not ObjectId.is_valid(value):
        raise NotFound(f"{what} not found")
    return ObjectId(value)


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Return a copy of a stored document with ``_id`` exposed as a string ``id``."""
    if doc is None:
        return None
    out = dict(doc)
    out["id"] = str(out.pop("_id"))
    return out


def create_document(database: Database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document, stamping createdAt/updatedAt, and return its id."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump(by_alias=True, mode="json", exclude_none=True)
    else:
        data_dict = data.copy()

    now = server_timestamp()
    data_dict.setdefault("createdAt", now)
    data_dict.setdefault("updatedAt", now)

    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(
    database: Database,
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    sort: Optional[List[tuple]] = None,
    limit: Optional[int] = None,
) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return [serialize(d) for d in cursor]
