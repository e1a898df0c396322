"""
Shipping addresses and the admin customer list.

A user has at most one default address: setting one clears the flag on all of
the user's other addresses first. The first address a user saves becomes the
default.
"""
import logging
from typing import Any, Dict, List

from database import create_document, find_by_id, object_id, serialize
from errors import NotFound
from schemas import Address, ShippingAddress

logger = logging.getLogger(__name__)


def list_addresses(db, user_id: str) -> List[dict]:
    cursor = db["shipping_addresses"].find({"user_id": user_id}).sort([("is_default", -1), ("created_at", 1)])
    return [serialize(a) for a in cursor]


def _clear_default(db, user_id: str) -> None:
    db["shipping_addresses"].update_many({"user_id": user_id}, {"$set": {"is_default": False}})


def add_address(db, user_id: str, address: Address, is_default: bool = False) -> dict:
    first = db["shipping_addresses"].count_documents({"user_id": user_id}) == 0
    if is_default or first:
        _clear_default(db, user_id)
    doc = ShippingAddress(**address.model_dump(), user_id=user_id, is_default=is_default or first)
    address_id = create_document(db, "shipping_addresses", doc)
    return serialize(db["shipping_addresses"].find_one({"_id": object_id(address_id)}))


def update_address(db, user_id: str, address_id: str, address: Address) -> dict:
    find_by_id(db, "shipping_addresses", address_id, "Address", {"user_id": user_id})
    db["shipping_addresses"].update_one(
        {"_id": object_id(address_id), "user_id": user_id},
        {"$set": address.model_dump()},
    )
    return serialize(db["shipping_addresses"].find_one({"_id": object_id(address_id)}))


def set_default_address(db, user_id: str, address_id: str) -> dict:
    find_by_id(db, "shipping_addresses", address_id, "Address", {"user_id": user_id})
    _clear_default(db, user_id)
    db["shipping_addresses"].update_one(
        {"_id": object_id(address_id), "user_id": user_id},
        {"$set": {"is_default": True}},
    )
    logger.info(f"User {user_id} default address set to {address_id}")
    return serialize(db["shipping_addresses"].find_one({"_id": object_id(address_id)}))


def delete_address(db, user_id: str, address_id: str) -> None:
    result = db["shipping_addresses"].delete_one({"_id": object_id(address_id, "Address"), "user_id": user_id})
    if result.deleted_count == 0:
        raise NotFound("Address not found")


def public_user(user: Dict[str, Any]) -> dict:
    return {
        "id": str(user["_id"]),
        "name": user.get("name"),
        "email": user.get("email"),
        "phone_number": user.get("phone_number"),
        "is_admin": user.get("is_admin", False),
        "created_at": user.get("created_at"),
    }


def list_customers(db) -> List[dict]:
    counts = {}
    for order in db["orders"].find({}, {"user_id": 1}):
        counts[order["user_id"]] = counts.get(order["user_id"], 0) + 1
    customers = []
    for user in db["users"].find().sort("created_at", -1):
        row = public_user(user)
        row["order_count"] = counts.get(row["id"], 0)
        customers.append(row)
    return customers
