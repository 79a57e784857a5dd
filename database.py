"""
Database helpers for the storefront API

Connects to MongoDB using DATABASE_URL / DATABASE_NAME. When either is
missing, ``db`` stays None and the helpers raise on use.
"""
import os
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from dotenv import load_dotenv
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import MongoClient

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

client: Optional[MongoClient] = None
db = None

if DATABASE_URL and DATABASE_NAME:
    client = MongoClient(DATABASE_URL)
    db = client[DATABASE_NAME]


def _require_db():
    if db is None:
        raise Exception("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")
    return db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """pymongo hands back naive UTC datetimes; make them comparable with utcnow()."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def create_document(collection_name: str, data: Union[BaseModel, dict], session=None) -> str:
    """Insert a document with timestamps and return its id as a string"""
    database = _require_db()
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = data.copy()
    now = utcnow()
    data_dict["created_at"] = now
    data_dict["updated_at"] = now
    result = database[collection_name].insert_one(data_dict, session=session)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    database = _require_db()
    cursor = database[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes():
    """Uniqueness rules the handlers rely on"""
    database = _require_db()
    database["user"].create_index("email", unique=True)
    database["cart"].create_index("user_id", unique=True)
    database["favourite"].create_index("user_id", unique=True)
    database["order"].create_index("order_number", unique=True)
    database["order"].create_index("user_id")
    database["purchaseinvoice"].create_index("invoice_number", unique=True)
    database["review"].create_index([("user_id", 1), ("product_id", 1)], unique=True)


@contextmanager
def transaction():
    """
    Run a block of writes as one multi-document transaction.

    Yields the pymongo session to pass to every read and write. Leaving the
    block normally commits; any exception aborts and is re-raised.
    Requires a replica set or sharded deployment.
    """
    if client is None:
        raise Exception("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")
    with client.start_session() as session:
        with session.start_transaction():
            yield session


def to_object_id(value: str, label: str = "Resource") -> ObjectId:
    if not ObjectId.is_valid(value):
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return ObjectId(value)


def find_by_id(collection_name: str, value: str, label: str, projection: Optional[dict] = None, session=None) -> Dict[str, Any]:
    """Fetch one document by id or raise a 404 naming the resource"""
    doc = _require_db()[collection_name].find_one({"_id": to_object_id(value, label)}, projection, session=session)
    if not doc:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return doc


def serialize_doc(doc: Dict[str, Any]):
    if not doc:
        return doc
    doc["id"] = str(doc.pop("_id"))
    # Convert datetime
    for k, v in list(doc.items()):
        if isinstance(v, datetime):
            doc[k] = v.isoformat()
    return doc


def populate(collection_name: str, ref_id: Optional[str], fields: List[str]) -> Optional[Dict[str, Any]]:
    """Resolve a stored reference into a small sub-document with the given fields"""
    if not ref_id or not ObjectId.is_valid(ref_id):
        return None
    doc = _require_db()[collection_name].find_one({"_id": ObjectId(ref_id)}, {f: 1 for f in fields})
    return serialize_doc(doc) if doc else None
