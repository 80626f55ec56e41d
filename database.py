"""
Database helpers

MongoDB connection and small document helpers shared by the API and the
recommendation service. The connection is configured from the environment:
- DATABASE_URL  -> MongoDB connection string
- DATABASE_NAME -> database to use

When either is missing `db` stays None and callers report the database as
unavailable.
"""

import os
from datetime import datetime, timezone
from typing import Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient, ReturnDocument

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")


def now():
    return datetime.now(timezone.utc)


def to_object_id(value) -> Optional[ObjectId]:
    """Parse a stringified id, returning None when it is not a valid ObjectId."""
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return None


def serialize(doc: Optional[dict]) -> Optional[dict]:
    if doc is None:
        return None
    out = dict(doc)
    if "_id" in out:
        out["_id"] = str(out["_id"])
    return out


def create_document(database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    payload = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    stamp = now()
    payload["created_at"] = stamp
    payload["updated_at"] = stamp
    result = database[collection_name].insert_one(payload)
    return str(result.inserted_id)


def get_documents(database, collection_name: str, filter_dict: Optional[dict] = None,
                  sort=None, skip: int = 0, limit: int = 0):
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return [serialize(d) for d in cursor]


def upsert_document(database, collection_name: str, key: dict, data: dict) -> dict:
    """Create the document matching `key` or fully replace the given fields.

    Runs as one find_one_and_update so the write is all-or-nothing.
    """
    stamp = now()
    fields = dict(data)
    fields["updated_at"] = stamp
    return database[collection_name].find_one_and_update(
        key,
        {"$set": fields, "$setOnInsert": {"created_at": stamp}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )


def ensure_indexes(database):
    database["watchlistitem"].create_index(
        [("user_id", ASCENDING), ("movie_id", ASCENDING)], unique=True
    )
    database["review"].create_index(
        [("user_id", ASCENDING), ("movie_id", ASCENDING)], unique=True
    )
    database["userpreferences"].create_index("user_id", unique=True)


client = None
db = None
if DATABASE_URL and DATABASE_NAME:
    client = MongoClient(DATABASE_URL)
    db = client[DATABASE_NAME]
