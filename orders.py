"""
Checkout, order status and sales reporting.

Status changes go through set_order_status. It is permissive by default (any
status may follow any other); pass a transition table to restrict it.
"""
import os
import logging
from collections import defaultdict
from datetime import date, datetime, timezone
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from cart import Cart
from coupons import validate_coupon
from database import create_document, find_by_id, get_documents, object_id, serialize
from errors import InvalidInput, NotFound
from pricing import money
from schemas import Address, Order, OrderItem, PaymentMethod

logger = logging.getLogger(__name__)

ORDER_STATUSES = ("pending", "processing", "shipped", "delivered", "cancelled", "returned")
REVIEWABLE_STATUSES = ("delivered",)

FREE_SHIPPING_THRESHOLD = float(os.getenv("FREE_SHIPPING_THRESHOLD", "100"))
STANDARD_SHIPPING_FEE = float(os.getenv("STANDARD_SHIPPING_FEE", "7.99"))
EXPRESS_SHIPPING_FEE = float(os.getenv("EXPRESS_SHIPPING_FEE", "15.99"))
GIFT_WRAPPING_FEE = float(os.getenv("GIFT_WRAPPING_FEE", "5.99"))


class CardDetails(BaseModel):
    card_number: str
    card_name: str
    expiry_date: str = Field(..., description="MM/YY")
    cvv: str


class CheckoutRequest(BaseModel):
    address_id: str
    payment_method: PaymentMethod = "credit_card"
    card: Optional[CardDetails] = None
    coupon_code: Optional[str] = None
    delivery_date: Optional[date] = None
    delivery_time: Optional[str] = None
    gift_wrapping: bool = False
    gift_note: Optional[str] = None
    special_instructions: Optional[str] = None
    express_shipping: bool = False


def shipping_fee(subtotal: float, express: bool = False) -> float:
    if express:
        return EXPRESS_SHIPPING_FEE
    return 0.0 if subtotal > FREE_SHIPPING_THRESHOLD else STANDARD_SHIPPING_FEE


def order_total(subtotal: float, shipping: float = 0.0, gift_wrapping: float = 0.0,
                discount: float = 0.0) -> float:
    return money(max(0.0, subtotal + shipping + gift_wrapping - discount))


def _check_card(card: Optional[CardDetails]) -> None:
    if card is None:
        raise InvalidInput("Card details are required for credit card payments")
    digits = card.card_number.replace(" ", "")
    if len(digits) < 16 or not digits.isdigit():
        raise InvalidInput("Please enter a valid card number")
    if not card.card_name.strip():
        raise InvalidInput("Please enter the cardholder name")
    if len(card.expiry_date) < 5:
        raise InvalidInput("Please enter a valid expiry date")
    if len(card.cvv) < 3 or not card.cvv.isdigit():
        raise InvalidInput("Please enter a valid CVV code")


def _reserve_stock(db, items) -> List[tuple]:
    """Take each variation line's quantity off stock; all or nothing."""
    reserved = []
    for item in items:
        if not item.variation_id:
            continue
        vid = object_id(item.variation_id, "Variation")
        result = db["product_variations"].update_one(
            {"_id": vid, "stock": {"$gte": item.quantity}},
            {"$inc": {"stock": -item.quantity}},
        )
        if result.modified_count == 0:
            _release_stock(db, reserved)
            label = f"{item.name} ({item.variation_name})" if item.variation_name else item.name
            raise InvalidInput(f"Not enough stock for {label}")
        reserved.append((vid, item.quantity))
    return reserved


def _release_stock(db, reserved: List[tuple]) -> None:
    for vid, quantity in reserved:
        db["product_variations"].update_one({"_id": vid}, {"$inc": {"stock": quantity}})


def place_order(db, user: dict, cart: Cart, request: CheckoutRequest,
                as_of: Optional[date] = None) -> dict:
    """Turn the shopper's cart into an order and empty the cart."""
    uid = str(user["_id"])
    if not cart.items:
        raise InvalidInput("Cart is empty")
    address = db["shipping_addresses"].find_one({
        "_id": object_id(request.address_id, "Address"),
        "user_id": uid,
    })
    if not address:
        raise NotFound("Address not found")
    if request.payment_method == "credit_card":
        _check_card(request.card)

    subtotal = cart.subtotal
    discount = 0.0
    coupon_code = None
    if request.coupon_code:
        check = validate_coupon(db, request.coupon_code, subtotal, as_of)
        if not check.valid:
            raise InvalidInput(check.message)
        discount = check.discount
        coupon_code = check.code

    shipping = shipping_fee(subtotal, request.express_shipping)
    gift_fee = GIFT_WRAPPING_FEE if request.gift_wrapping else 0.0
    order = Order(
        user_id=uid,
        order_items=[
            OrderItem(
                product_id=item.product_id,
                product_name=item.name,
                variation_id=item.variation_id,
                variation_name=item.variation_name,
                quantity=item.quantity,
                price=item.price,
            )
            for item in cart.items
        ],
        shipping_address=Address(**address),
        subtotal=money(subtotal),
        shipping_fee=shipping,
        gift_wrapping_fee=gift_fee,
        discount_amount=money(discount),
        coupon_code=coupon_code,
        total=order_total(subtotal, shipping, gift_fee, discount),
        payment_method=request.payment_method,
        payment_status="pending" if request.payment_method == "cash_on_delivery" else "paid",
        delivery_date=request.delivery_date,
        delivery_time=request.delivery_time,
        gift_wrapping=request.gift_wrapping,
        gift_note=request.gift_note,
        special_instructions=request.special_instructions,
        express_shipping=request.express_shipping,
    )
    reserved = _reserve_stock(db, cart.items)
    try:
        order_id = create_document(db, "orders", order)
    except Exception:
        _release_stock(db, reserved)
        raise
    cart.clear()
    logger.info(f"Order {order_id} placed by user {uid} for {order.total}")
    return serialize(db["orders"].find_one({"_id": object_id(order_id)}))


def list_orders(db, user_id: Optional[str] = None, status: Optional[str] = None) -> List[dict]:
    filt = {}
    if user_id:
        filt["user_id"] = user_id
    if status:
        filt["status"] = status
    return [serialize(o) for o in get_documents(db, "orders", filt, sort=[("created_at", -1)])]


def get_order(db, order_id: str, user_id: Optional[str] = None) -> dict:
    extra = {"user_id": user_id} if user_id else None
    return serialize(find_by_id(db, "orders", order_id, "Order", extra))


def set_order_status(db, order_id: str, status: str,
                     transitions: Optional[Dict[str, Iterable[str]]] = None) -> dict:
    if status not in ORDER_STATUSES:
        raise InvalidInput(f"Unknown order status: {status}")
    order = find_by_id(db, "orders", order_id, "Order")
    current = order.get("status")
    if current == status:
        return serialize(order)
    if transitions is not None and status not in transitions.get(current, ()):
        raise InvalidInput(f"Cannot move an order from {current} to {status}")

    db["orders"].update_one(
        {"_id": order["_id"]},
        {"$set": {"status": status, "updated_at": datetime.now(timezone.utc)}},
    )
    logger.info(f"Order {order_id} status {current} -> {status}")
    order["status"] = status
    return serialize(order)


def sales_summary(db, top: int = 5) -> dict:
    orders = list(db["orders"].find({}, {"total": 1, "created_at": 1, "order_items": 1}))
    revenue = sum(float(o.get("total", 0)) for o in orders)

    by_day = defaultdict(lambda: {"total_sales": 0.0, "order_count": 0})
    products = defaultdict(lambda: {"product_name": None, "total_quantity": 0, "total_revenue": 0.0})
    for o in orders:
        created = o.get("created_at")
        day = created.date().isoformat() if isinstance(created, datetime) else str(created)[:10]
        by_day[day]["total_sales"] += float(o.get("total", 0))
        by_day[day]["order_count"] += 1
        for item in o.get("order_items", []):
            row = products[item["product_id"]]
            row["product_name"] = item.get("product_name")
            row["total_quantity"] += item.get("quantity", 0)
            row["total_revenue"] += item.get("price", 0) * item.get("quantity", 0)

    top_products = sorted(products.items(), key=lambda kv: kv[1]["total_revenue"], reverse=True)[:top]
    return {
        "total_revenue": money(revenue),
        "order_count": len(orders),
        "average_order_value": money(revenue / len(orders)) if orders else 0.0,
        "sales_by_date": [
            {"date": day, "total_sales": money(v["total_sales"]), "order_count": v["order_count"]}
            for day, v in sorted(by_day.items())
        ],
        "top_products": [
            {"product_id": pid, **{**row, "total_revenue": money(row["total_revenue"])}}
            for pid, row in top_products
        ],
    }
