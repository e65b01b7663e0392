"""
Database connection helpers

The MongoDB database is configured through DATABASE_URL and DATABASE_NAME.
When either is missing `db` stays None and the API reports the database as
unavailable on /test.
"""
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import MongoClient

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

db = None
if DATABASE_URL and DATABASE_NAME:
    client = MongoClient(DATABASE_URL)
    db = client[DATABASE_NAME]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_obj_id(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise InvalidId(f"Invalid id: {id_str!r}")


def create_document(database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document stamped with created_at/updated_at and return its id."""
    if database is None:
        raise Exception("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")

    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = data.copy()

    now = utcnow()
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now

    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(database, collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None) -> List[dict]:
    if database is None:
        raise Exception("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")

    cursor = database[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    d = {**doc}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    # Convert datetimes to isoformat for JSON
    for k, v in list(d.items()):
        if isinstance(v, datetime):
            if v.tzinfo is None:
                v = v.replace(tzinfo=timezone.utc)
            d[k] = v.isoformat()
    return d
