"""
Coupon validation and discounts.

Checks run in a fixed order: unknown code, inactive, expired, minimum purchase.
A coupon whose expiry_date is today is still valid. Discounts never exceed the
subtotal they apply to.
"""
import logging
from datetime import date
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ValidationError

from database import create_document, find_by_id, object_id, serialize, update_document
from errors import Conflict, InvalidInput, NotFound
from pricing import as_date, money, today
from schemas import Coupon, DiscountType

logger = logging.getLogger(__name__)


class CouponCheck(BaseModel):
    valid: bool
    message: str
    code: Optional[str] = None
    discount_type: Optional[DiscountType] = None
    discount_value: Optional[float] = None
    discount: float = 0.0


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def compute_discount(discount_type: str, value: float, subtotal: float) -> float:
    if subtotal <= 0:
        return 0.0
    if discount_type == "percentage":
        amount = subtotal * float(value) / 100
    else:
        amount = float(value)
    return min(amount, subtotal)


def check_coupon(coupon: Optional[dict], subtotal: Optional[float] = None,
                 as_of: Optional[date] = None) -> CouponCheck:
    if not coupon:
        return CouponCheck(valid=False, message="Invalid coupon code")
    if not coupon.get("is_active"):
        return CouponCheck(valid=False, message="This coupon is inactive")

    as_of = as_of or today()
    expiry = coupon.get("expiry_date")
    if expiry and as_date(expiry) < as_of:
        return CouponCheck(valid=False, message="This coupon has expired")

    minimum = coupon.get("minimum_purchase")
    if subtotal is not None and minimum and subtotal < minimum:
        return CouponCheck(
            valid=False,
            message=f"This coupon requires a minimum purchase of ${minimum:.2f}",
        )

    discount = 0.0
    if subtotal is not None:
        discount = compute_discount(coupon["discount_type"], coupon["discount_value"], subtotal)
    return CouponCheck(
        valid=True,
        message="Coupon applied successfully",
        code=coupon["code"],
        discount_type=coupon["discount_type"],
        discount_value=coupon["discount_value"],
        discount=money(discount),
    )


def validate_coupon(db, code: str, subtotal: Optional[float] = None,
                    as_of: Optional[date] = None) -> CouponCheck:
    coupon = db["coupons"].find_one({"code": normalize_code(code)})
    result = check_coupon(coupon, subtotal, as_of)
    if not result.valid:
        logger.info(f"Coupon {normalize_code(code)!r} rejected: {result.message}")
    return result


# Admin

def _check_value(discount_type: str, value: float) -> None:
    if discount_type == "percentage" and not 0 < value <= 100:
        raise InvalidInput("Percentage discount must be between 0 and 100")


def list_coupons(db) -> List[dict]:
    return [serialize(c) for c in db["coupons"].find().sort("created_at", -1)]


def create_coupon(db, coupon: Coupon) -> dict:
    coupon = coupon.model_copy(update={"code": normalize_code(coupon.code)})
    if not coupon.code:
        raise InvalidInput("Coupon code is required")
    _check_value(coupon.discount_type, coupon.discount_value)
    if db["coupons"].find_one({"code": coupon.code}):
        raise Conflict(f'Coupon code "{coupon.code}" already exists.')
    coupon_id = create_document(db, "coupons", coupon)
    logger.info(f"Coupon {coupon.code} created")
    return serialize(db["coupons"].find_one({"_id": object_id(coupon_id)}))


def update_coupon(db, coupon_id: str, fields: Dict[str, Any]) -> dict:
    current = find_by_id(db, "coupons", coupon_id, "Coupon")
    try:
        merged = Coupon(**{**current, **fields})
    except ValidationError as exc:
        raise InvalidInput.from_validation(exc) from exc
    merged = merged.model_copy(update={"code": normalize_code(merged.code)})
    _check_value(merged.discount_type, merged.discount_value)
    clash = db["coupons"].find_one({"code": merged.code, "_id": {"$ne": current["_id"]}})
    if clash:
        raise Conflict(f'Coupon code "{merged.code}" already exists.')
    doc = update_document(db, "coupons", coupon_id, merged.model_dump(mode="json"), "Coupon")
    return serialize(doc)


def set_coupon_active(db, coupon_id: str, is_active: bool) -> dict:
    return serialize(update_document(db, "coupons", coupon_id, {"is_active": is_active}, "Coupon"))


def delete_coupon(db, coupon_id: str) -> None:
    result = db["coupons"].delete_one({"_id": object_id(coupon_id, "Coupon")})
    if result.deleted_count == 0:
        raise NotFound("Coupon not found")
