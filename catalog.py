"""
Catalog administration and storefront listing: products, variations and sales.

Deleting a product removes its variations and sales first; the database does
not cascade. Starting a sale retires every active sale for the same
(product, variation) pair before inserting the new one.
"""
import logging
import threading
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from database import create_document, find_by_id, get_documents, object_id, serialize, update_document
from errors import InvalidInput, NotFound
from pricing import active_sales, money, pick_sale, resolve_price, today
from schemas import Coupon, Product, ProductVariation, Sale

logger = logging.getLogger(__name__)

_sale_lock = threading.Lock()


def _priced(product: dict, sales: List[dict], as_of: Optional[date]) -> dict:
    pid = str(product["_id"])
    sale = pick_sale(sales, pid, None, as_of)
    out = serialize(product)
    out["sale"] = serialize(sale) if sale else None
    out["sale_price"] = money(resolve_price(product.get("base_price", 0.0), 0.0, sale, as_of)) if sale else None
    return out


# Products

def list_products(db, q: Optional[str] = None, category: Optional[str] = None, sort: Optional[str] = None,
                  page: int = 1, page_size: int = 12, as_of: Optional[date] = None) -> dict:
    filt: Dict[str, Any] = {}
    if q:
        filt["$or"] = [
            {"name": {"$regex": q, "$options": "i"}},
            {"description": {"$regex": q, "$options": "i"}},
        ]
    if category:
        filt["category"] = category

    cursor = db["products"].find(filt)
    if sort == "price_asc":
        cursor = cursor.sort("base_price", 1)
    elif sort == "price_desc":
        cursor = cursor.sort("base_price", -1)
    elif sort == "rating":
        cursor = cursor.sort("average_rating", -1)
    else:
        cursor = cursor.sort("created_at", -1)

    total = db["products"].count_documents(filt)
    page = max(1, page)
    products = list(cursor.skip((page - 1) * page_size).limit(page_size))
    sales = active_sales(db, [str(p["_id"]) for p in products], as_of)
    items = [_priced(p, sales, as_of) for p in products]
    return {"items": items, "page": page, "page_size": page_size, "total": total}


def get_product(db, product_id: str, as_of: Optional[date] = None) -> dict:
    product = find_by_id(db, "products", product_id, "Product")
    sales = active_sales(db, [product_id], as_of)
    out = _priced(product, sales, as_of)
    base = float(product.get("base_price", 0.0))
    variations = []
    for v in get_documents(db, "product_variations", {"product_id": product_id}, sort=[("created_at", 1)]):
        sale = pick_sale(sales, product_id, str(v["_id"]), as_of)
        row = serialize(v)
        row["price"] = money(resolve_price(base, v.get("price_adjustment", 0.0), sale, as_of))
        row["original_price"] = money(base + v.get("price_adjustment", 0.0)) if sale else None
        row["sale"] = serialize(sale) if sale else None
        variations.append(row)
    out["variations"] = variations
    out["review_count"] = db["reviews"].count_documents({"product_id": product_id})
    return out


def create_product(db, product: Product) -> dict:
    product_id = create_document(db, "products", product)
    logger.info(f"Product {product_id} created: {product.name}")
    return serialize(db["products"].find_one({"_id": object_id(product_id)}))


def update_product(db, product_id: str, fields: Dict[str, Any]) -> dict:
    current = find_by_id(db, "products", product_id, "Product")
    try:
        merged = Product(**{**current, **fields})
    except ValidationError as exc:
        raise InvalidInput.from_validation(exc) from exc
    return serialize(update_document(db, "products", product_id, merged.model_dump(mode="json"), "Product"))


def delete_product(db, product_id: str) -> None:
    product = find_by_id(db, "products", product_id, "Product")
    variations = db["product_variations"].delete_many({"product_id": product_id}).deleted_count
    sales = db["product_sales"].delete_many({"product_id": product_id}).deleted_count
    db["products"].delete_one({"_id": product["_id"]})
    logger.info(f"Product {product_id} deleted with {variations} variations and {sales} sales")


# Variations

def list_variations(db, product_id: str) -> List[dict]:
    find_by_id(db, "products", product_id, "Product")
    docs = get_documents(db, "product_variations", {"product_id": product_id}, sort=[("created_at", 1)])
    return [serialize(v) for v in docs]


def add_variation(db, variation: ProductVariation) -> dict:
    find_by_id(db, "products", variation.product_id, "Product")
    if not variation.name.strip():
        raise InvalidInput("Variation name is required")
    variation_id = create_document(db, "product_variations", variation)
    return serialize(db["product_variations"].find_one({"_id": object_id(variation_id)}))


def update_variation(db, variation_id: str, fields: Dict[str, Any]) -> dict:
    current = find_by_id(db, "product_variations", variation_id, "Variation")
    fields = {k: v for k, v in fields.items() if k != "product_id"}
    try:
        merged = ProductVariation(**{**current, **fields})
    except ValidationError as exc:
        raise InvalidInput.from_validation(exc) from exc
    doc = update_document(db, "product_variations", variation_id, merged.model_dump(mode="json"), "Variation")
    return serialize(doc)


def delete_variation(db, variation_id: str) -> None:
    variation = find_by_id(db, "product_variations", variation_id, "Variation")
    db["product_sales"].delete_many({"variation_id": variation_id})
    db["product_variations"].delete_one({"_id": variation["_id"]})


# Sales

def list_sales(db, product_id: str) -> List[dict]:
    docs = get_documents(db, "product_sales", {"product_id": product_id}, sort=[("created_at", -1)])
    return [serialize(s) for s in docs]


def start_sale(db, sale: Sale) -> dict:
    find_by_id(db, "products", sale.product_id, "Product")
    if sale.start_date > sale.end_date:
        raise InvalidInput("End date must be after start date")
    if sale.variation_id:
        variation = db["product_variations"].find_one({
            "_id": object_id(sale.variation_id, "Variation"),
            "product_id": sale.product_id,
        })
        if not variation:
            raise NotFound("Variation not found")

    sale = sale.model_copy(update={"active": True})
    with _sale_lock:
        retired = db["product_sales"].update_many(
            {"product_id": sale.product_id, "variation_id": sale.variation_id, "active": True},
            {"$set": {"active": False, "updated_at": datetime.now(timezone.utc)}},
        ).modified_count
        sale_id = create_document(db, "product_sales", sale)
    if retired:
        logger.info(f"Sale {sale_id} replaced {retired} active sale(s) on product {sale.product_id}")
    return serialize(db["product_sales"].find_one({"_id": object_id(sale_id)}))


def end_sale(db, sale_id: str) -> dict:
    return serialize(update_document(db, "product_sales", sale_id, {"active": False}, "Sale"))


def delete_sale(db, sale_id: str) -> None:
    result = db["product_sales"].delete_one({"_id": object_id(sale_id, "Sale")})
    if result.deleted_count == 0:
        raise NotFound("Sale not found")


# Demo data

def seed_catalog(db) -> dict:
    if db["products"].count_documents({}) > 0:
        return {"seeded": False, "message": "Products already exist"}
    samples = [
        {
            "product": Product(
                name="Linen Overshirt",
                description="Relaxed fit overshirt in washed linen.",
                base_price=50.0,
                images=["https://images.unsplash.com/photo-1521572163474-6864f9cf17ab?q=80&w=1200&auto=format&fit=crop"],
                category="apparel",
            ),
            "variations": [("size", "M", 0.0, 20), ("size", "XL", 5.0, 8)],
        },
        {
            "product": Product(
                name="Ceramic Pour-Over Set",
                description="Dripper, server and two cups.",
                base_price=42.0,
                images=["https://images.unsplash.com/photo-1495474472287-4d71bcdd2085?q=80&w=1200&auto=format&fit=crop"],
                category="kitchen",
            ),
            "variations": [("color", "Sand", 0.0, 15), ("bundle", "With filters", 6.0, 10)],
        },
        {
            "product": Product(
                name="Canvas Tote",
                description="Heavyweight cotton canvas tote.",
                base_price=18.0,
                images=["https://images.unsplash.com/photo-1544816155-12df9643f363?q=80&w=1200&auto=format&fit=crop"],
                category="accessories",
            ),
            "variations": [],
        },
    ]
    product_ids = []
    for sample in samples:
        pid = create_document(db, "products", sample["product"])
        product_ids.append(pid)
        for vtype, name, adjustment, stock in sample["variations"]:
            create_document(db, "product_variations", ProductVariation(
                product_id=pid, type=vtype, name=name, price_adjustment=adjustment, stock=stock,
            ))
    start = today()
    create_document(db, "product_sales", Sale(
        product_id=product_ids[0],
        discount_percentage=20,
        start_date=start,
        end_date=start + timedelta(days=7),
    ))
    if not db["coupons"].find_one({"code": "WELCOME10"}):
        create_document(db, "coupons", Coupon(code="WELCOME10", discount_type="percentage", discount_value=10))
    return {"seeded": True, "count": len(product_ids)}
