"""
Database Helper Functions

MongoDB connection and small helpers shared by the API components.
The module-level `db` is None until DATABASE_URL and DATABASE_NAME are set.
"""
import math
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from bson import ObjectId
from bson.errors import InvalidId
from dotenv import load_dotenv
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from errors import Internal, Invalid

load_dotenv()


_client = None
db = None

database_url = os.getenv("DATABASE_URL")
database_name = os.getenv("DATABASE_NAME")

if database_url and database_name:
    _client = MongoClient(database_url, serverSelectionTimeoutMS=5000)
    db = _client[database_name]

NEWEST_FIRST = [("created_at", DESCENDING)]


def get_db() -> Database:
    """FastAPI dependency returning the configured database."""
    if db is None:
        raise Internal("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")
    return db


def ensure_indexes(database: Database) -> None:
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["adoption"].create_index(
        [("pet_id", ASCENDING), ("requester_email", ASCENDING)], unique=True
    )
    database["pet"].create_index([("adopted", ASCENDING), ("created_at", DESCENDING)])
    database["donation"].create_index([("status", ASCENDING), ("created_at", DESCENDING)])
    database["payment"].create_index([("campaign_id", ASCENDING), ("paid_at", DESCENDING)])


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def oid(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise Invalid("Invalid id format")


def to_public(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    d = {**doc}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


def create_document(database: Database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a single document, stamping created_at/updated_at when absent."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = data.copy()
    stamp = now_utc()
    if not data_dict.get("created_at"):
        data_dict["created_at"] = stamp
    data_dict.setdefault("updated_at", stamp)
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(database: Database, collection_name: str, filter_dict: dict = None,
                  sort: list = None, limit: int = None) -> List[dict]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return [to_public(d) for d in cursor]


def paginate(database: Database, collection_name: str, filter_dict: dict,
             page: int, limit: int, sort: list = None) -> Tuple[List[dict], int]:
    """Return one page of documents and the total number matching the filter."""
    if page < 1 or limit < 1:
        raise Invalid("page and limit must be positive integers")
    total = database[collection_name].count_documents(filter_dict)
    cursor = (
        database[collection_name]
        .find(filter_dict)
        .sort(sort or NEWEST_FIRST)
        .skip((page - 1) * limit)
        .limit(limit)
    )
    return [to_public(d) for d in cursor], total


def page_envelope(key: str, items: List[dict], total: int, page: int, limit: int) -> Dict[str, Any]:
    return {
        key: items,
        "currentPage": page,
        "totalPages": math.ceil(total / limit) if limit else 0,
        "totalCount": total,
        "hasMore": page * limit < total,
    }
