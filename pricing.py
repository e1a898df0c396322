"""
Sale-aware price resolution.

A sale applies when it is active and ``start_date <= as_of <= end_date`` (both
ends inclusive). A sale bound to a variation wins over the product-wide sale
(``variation_id`` None). Prices keep full float precision while aggregating and
are rounded with :func:`money` when stored or returned.
"""
import logging
from datetime import date, datetime, timezone
from typing import Iterable, List, Optional

from pydantic import BaseModel

from database import find_by_id, object_id
from errors import NotFound

logger = logging.getLogger(__name__)


def today() -> date:
    return datetime.now(timezone.utc).date()


def money(amount: float) -> float:
    return round(float(amount), 2)


def as_date(value) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def is_sale_active(sale: Optional[dict], as_of: Optional[date] = None) -> bool:
    if not sale or not sale.get("active"):
        return False
    as_of = as_of or today()
    return as_date(sale["start_date"]) <= as_of <= as_date(sale["end_date"])


def resolve_price(base_price: float, variation_adjustment: float = 0.0,
                  sale: Optional[dict] = None, as_of: Optional[date] = None) -> float:
    price = float(base_price) + float(variation_adjustment or 0)
    if is_sale_active(sale, as_of):
        price *= 1 - float(sale["discount_percentage"]) / 100
    return price


def pick_sale(sales: Iterable[dict], product_id: str, variation_id: Optional[str] = None,
              as_of: Optional[date] = None) -> Optional[dict]:
    """Pick the sale that prices ``(product_id, variation_id)``.

    ``sales`` is expected newest first, so the newest of several live
    candidates wins.
    """
    live = [s for s in sales if s.get("product_id") == product_id and is_sale_active(s, as_of)]
    if variation_id:
        for sale in live:
            if sale.get("variation_id") == variation_id:
                return sale
    for sale in live:
        if not sale.get("variation_id"):
            return sale
    return None


def active_sales(db, product_ids: Iterable[str], as_of: Optional[date] = None) -> List[dict]:
    """Live sales for a set of products, in one query."""
    ids = list(dict.fromkeys(product_ids))
    if not ids:
        return []
    day = (as_of or today()).isoformat()
    cursor = db["product_sales"].find({
        "product_id": {"$in": ids},
        "active": True,
        "start_date": {"$lte": day},
        "end_date": {"$gte": day},
    }).sort("created_at", -1)
    return list(cursor)


class PriceQuote(BaseModel):
    product_id: str
    variation_id: Optional[str] = None
    name: str
    variation_name: Optional[str] = None
    image: Optional[str] = None
    unit_price: float
    original_price: Optional[float] = None
    sale_id: Optional[str] = None
    discount_percentage: Optional[float] = None
    stock: Optional[int] = None


def quote(db, product_id: str, variation_id: Optional[str] = None,
          as_of: Optional[date] = None) -> PriceQuote:
    """Price one product/variation as it would go into a cart right now."""
    product = find_by_id(db, "products", product_id, "Product")
    variation = None
    if variation_id:
        variation = db["product_variations"].find_one({
            "_id": object_id(variation_id, "Variation"),
            "product_id": product_id,
        })
        if not variation:
            raise NotFound("Variation not found")

    sale = pick_sale(active_sales(db, [product_id], as_of), product_id, variation_id, as_of)
    adjustment = variation.get("price_adjustment", 0.0) if variation else 0.0
    base = float(product.get("base_price", 0.0)) + float(adjustment)
    price = resolve_price(product.get("base_price", 0.0), adjustment, sale, as_of)
    if sale:
        logger.debug(f"Sale {sale['_id']} prices product {product_id} at {price}")

    return PriceQuote(
        product_id=product_id,
        variation_id=variation_id or None,
        name=product.get("name", "Product"),
        variation_name=variation.get("name") if variation else None,
        image=(product.get("images") or [None])[0],
        unit_price=money(price),
        original_price=money(base) if sale else None,
        sale_id=str(sale["_id"]) if sale else None,
        discount_percentage=sale.get("discount_percentage") if sale else None,
        stock=variation.get("stock", 0) if variation else None,
    )
