"""
MongoDB access for the storefront.

The connection is configured through DATABASE_URL and DATABASE_NAME. Helpers
take the database handle explicitly so the API can inject a different one.
"""
import os
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from dotenv import load_dotenv
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient

from errors import NotFound

load_dotenv()

logger = logging.getLogger(__name__)

_client = None
db = None

database_url = os.getenv("DATABASE_URL")
database_name = os.getenv("DATABASE_NAME")

if database_url and database_name:
    _client = MongoClient(database_url)
    db = _client[database_name]


def object_id(value: Union[str, ObjectId], label: str = "Document") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    if not ObjectId.is_valid(value):
        raise NotFound(f"{label} not found")
    return ObjectId(value)


def serialize(doc: Optional[dict]) -> Optional[dict]:
    if not doc:
        return doc
    doc = dict(doc)
    _id = doc.pop("_id", None)
    if _id is not None:
        doc["id"] = str(_id)
    return doc


def create_document(conn, collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document, stamping created_at/updated_at. Returns the new id."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump(mode="json")
    else:
        data_dict = data.copy()
    now = datetime.now(timezone.utc)
    data_dict["created_at"] = now
    data_dict["updated_at"] = now
    result = conn[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(conn, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  limit: Optional[int] = None, sort: Optional[List] = None) -> List[dict]:
    cursor = conn[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def find_by_id(conn, collection_name: str, doc_id, label: str = "Document",
               extra: Optional[Dict[str, Any]] = None) -> dict:
    filt = {"_id": object_id(doc_id, label)}
    if extra:
        filt.update(extra)
    doc = conn[collection_name].find_one(filt)
    if not doc:
        raise NotFound(f"{label} not found")
    return doc


def update_document(conn, collection_name: str, doc_id, fields: Dict[str, Any],
                    label: str = "Document") -> dict:
    oid = object_id(doc_id, label)
    fields = dict(fields)
    fields["updated_at"] = datetime.now(timezone.utc)
    result = conn[collection_name].update_one({"_id": oid}, {"$set": fields})
    if result.matched_count == 0:
        raise NotFound(f"{label} not found")
    return conn[collection_name].find_one({"_id": oid})


def ensure_indexes(conn) -> None:
    conn["users"].create_index("email", unique=True)
    conn["coupons"].create_index("code", unique=True)
    # at most one active sale per (product, variation)
    conn["product_sales"].create_index(
        [("product_id", ASCENDING), ("variation_id", ASCENDING)],
        unique=True,
        partialFilterExpression={"active": True},
        name="one_active_sale",
    )
    conn["cart_items"].create_index(
        [("user_id", ASCENDING), ("product_id", ASCENDING), ("variation_id", ASCENDING)],
        unique=True,
    )
    conn["wishlist_items"].create_index([("user_id", ASCENDING), ("product_id", ASCENDING)], unique=True)
    logger.info("MongoDB indexes ensured")
