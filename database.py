"""
MongoDB access for the parcel API.

The client is created once at startup and kept on ``app.state``; handlers get
the database handle through the ``get_db`` dependency so tests can swap in an
in-memory database.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from fastapi import HTTPException, Request
from pydantic import BaseModel
from pymongo import DESCENDING, MongoClient
from pymongo.database import Database

logger = logging.getLogger(__name__)

USERS = "users"
PARCELS = "parcels"
RIDERS = "riders"
PAYMENTS = "payments"
TRACKING = "tracking"


def connect(url: str, name: str) -> tuple[MongoClient, Database]:
    client = MongoClient(url)
    logger.info("MongoDB client created for database %s", name)
    return client, client[name]


def ensure_indexes(db: Database) -> None:
    db[USERS].create_index("email", unique=True)
    db[PAYMENTS].create_index("transactionId", unique=True)
    db[PARCELS].create_index([("created_by", 1), ("createdAt", DESCENDING)])
    db[TRACKING].create_index("parcel_id")


def get_db(request: Request) -> Database:
    return request.app.state.db


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def parse_object_id(value: str) -> ObjectId:
    """Turn a path/body id into an ObjectId, 400 when it is malformed."""
    if not ObjectId.is_valid(value):
        raise HTTPException(status_code=400, detail="Invalid ID")
    return ObjectId(value)


def serialize(doc: Dict[str, Any]) -> Dict[str, Any]:
    out = {}
    for key, value in doc.items():
        if key == "_id":
            out["id"] = str(value)
        elif isinstance(value, ObjectId):
            out[key] = str(value)
        else:
            out[key] = value
    return out


def create_document(db: Database, collection: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    if isinstance(data, BaseModel):
        data = data.model_dump(exclude_none=True)
    result = db[collection].insert_one(dict(data))
    return str(result.inserted_id)


def get_documents(
    db: Database,
    collection: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    sort_field: Optional[str] = "createdAt",
    limit: int = 0,
) -> List[Dict[str, Any]]:
    """Newest-first listing; ``None`` values in the filter are treated as absent."""
    flt = {k: v for k, v in (filter_dict or {}).items() if v is not None}
    cursor = db[collection].find(flt)
    if sort_field:
        cursor = cursor.sort(sort_field, DESCENDING)
    if limit:
        cursor = cursor.limit(limit)
    return [serialize(d) for d in cursor]


def get_document_by_id(db: Database, collection: str, doc_id: str, label: str = "Document") -> Dict[str, Any]:
    doc = db[collection].find_one({"_id": parse_object_id(doc_id)})
    if not doc:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return doc


def delete_document_by_id(db: Database, collection: str, doc_id: str, label: str = "Document") -> None:
    res = db[collection].delete_one({"_id": parse_object_id(doc_id)})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail=f"{label} not found")


def write_result(res) -> Dict[str, int]:
    return {"matchedCount": res.matched_count, "modifiedCount": res.modified_count}
