"""
MongoDB access for the Live Auction API.

The client is created from DATABASE_URL / DATABASE_NAME at import time. pymongo
connects lazily, so importing this module never blocks. When the variables are
missing `db` stays None and `get_db` answers 503.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

client: Optional[MongoClient] = None
db: Optional[Database] = None

if DATABASE_URL and DATABASE_NAME:
    client = MongoClient(DATABASE_URL, tz_aware=True)
    db = client[DATABASE_NAME]
else:
    logger.warning("DATABASE_URL or DATABASE_NAME not set, database is unavailable")


def get_db() -> Database:
    """FastAPI dependency yielding the configured database"""
    if db is None:
        raise HTTPException(status_code=503, detail="Database not configured")
    return db


def parse_object_id(value: str) -> ObjectId:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise HTTPException(status_code=400, detail="Invalid auction id")


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]], database: Optional[Database] = None) -> str:
    """Insert a document, stamping created_at/updated_at, and return its id"""
    database = database if database is not None else get_db()
    doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    now = datetime.now(timezone.utc)
    doc.setdefault("created_at", now)
    doc.setdefault("updated_at", now)
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    limit: Optional[int] = None,
    database: Optional[Database] = None,
    skip: int = 0,
    sort: Optional[List[tuple]] = None,
) -> List[Dict[str, Any]]:
    database = database if database is not None else get_db()
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes(database: Database) -> None:
    database["bid"].create_index([("auction_id", ASCENDING), ("amount", DESCENDING)])
    database["bid"].create_index([("bidder_id", ASCENDING), ("created_at", DESCENDING)])
    database["auction"].create_index([("seller_id", ASCENDING)])
    database["auction"].create_index([("status", ASCENDING), ("end_time", ASCENDING)])
