"""
Database Helpers

MongoDB connection plus a couple of small helpers shared by the routes.
The connection is configured through DATABASE_URL and DATABASE_NAME. When
DATABASE_URL is not set, `db` is None and the API reports the database as
unavailable.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Optional, Union

from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "storefront")

_client: Optional[MongoClient] = None
db = None

if DATABASE_URL:
    _client = MongoClient(DATABASE_URL, serverSelectionTimeoutMS=5000)
    db = _client[DATABASE_NAME]


def create_document(collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document with created_at/updated_at stamps and return its id"""
    if db is None:
        raise RuntimeError("Database not available")
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    now = datetime.now(timezone.utc)
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now
    result = db[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def ensure_indexes() -> None:
    """Create the unique and lookup indexes the API relies on."""
    if db is None:
        logger.warning("Skipping index creation: database not configured")
        return
    db["user"].create_index("email", unique=True)
    db["user"].create_index("username", unique=True)
    db["product"].create_index([("category", ASCENDING), ("price", ASCENDING)])
    db["product"].create_index("brand")
    db["product"].create_index([("created_at", DESCENDING)])
    db["cart"].create_index("user_id", unique=True)
    db["order"].create_index("order_number", unique=True)
    db["order"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    db["review"].create_index([("product_id", ASCENDING), ("user_id", ASCENDING)], unique=True)
    db["review"].create_index([("product_id", ASCENDING), ("created_at", DESCENDING)])
    logger.info("Indexes ensured on %s", db.name)
