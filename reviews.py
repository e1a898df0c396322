"""
Product reviews.

A shopper may review a product only from one of their own delivered orders that
contains it, and only once per product.
"""
import logging
from typing import List

from pydantic import BaseModel, Field

from database import create_document, find_by_id, object_id, serialize
from errors import Conflict, InvalidInput, NotFound
from orders import REVIEWABLE_STATUSES
from schemas import Review

logger = logging.getLogger(__name__)


class ReviewIn(BaseModel):
    product_id: str
    rating: int = Field(..., ge=1, le=5)
    text: str = Field(..., min_length=1)


def submit_review(db, user: dict, order_id: str, payload: ReviewIn) -> dict:
    uid = str(user["_id"])
    order = db["orders"].find_one({"_id": object_id(order_id, "Order"), "user_id": uid})
    if not order:
        raise NotFound("Order not found")
    if order.get("status") not in REVIEWABLE_STATUSES:
        raise InvalidInput("You can only review products from your completed orders")
    if not any(it.get("product_id") == payload.product_id for it in order.get("order_items", [])):
        raise InvalidInput("You can only review products you have purchased")
    if db["reviews"].find_one({"user_id": uid, "product_id": payload.product_id}):
        raise Conflict("You have already reviewed this product")

    review = Review(
        product_id=payload.product_id,
        user_id=uid,
        order_id=order_id,
        username=user.get("name"),
        rating=payload.rating,
        text=payload.text,
    )
    review_id = create_document(db, "reviews", review)
    _refresh_rating(db, payload.product_id)
    logger.info(f"Review {review_id} added for product {payload.product_id}")
    return serialize(db["reviews"].find_one({"_id": object_id(review_id)}))


def _refresh_rating(db, product_id: str) -> None:
    ratings = [r.get("rating", 0) for r in db["reviews"].find({"product_id": product_id})]
    if not ratings:
        return
    avg = round(sum(ratings) / len(ratings), 2)
    db["products"].update_one({"_id": object_id(product_id, "Product")}, {"$set": {"average_rating": avg}})


def list_reviews(db, product_id: str) -> List[dict]:
    find_by_id(db, "products", product_id, "Product")
    cursor = db["reviews"].find({"product_id": product_id}).sort("created_at", -1)
    return [serialize(r) for r in cursor]


def user_reviews(db, user_id: str) -> List[dict]:
    return [serialize(r) for r in db["reviews"].find({"user_id": user_id}).sort("created_at", -1)]
