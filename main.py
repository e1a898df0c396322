import os
import uuid
import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta, timezone
from typing import Optional, Dict, Any

from fastapi import FastAPI, HTTPException, Depends, Body, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, EmailStr, Field
from pymongo.errors import PyMongoError
from bson import ObjectId
import jwt
from passlib.context import CryptContext

import database
import accounts
import catalog
import coupons
import orders
import reviews
from cart import Cart, MongoStorage, Wishlist, KeyValueStore, line_store, owner_key, session_lock
from errors import StoreError
from schemas import Address, Coupon, OrderStatus, Product, ProductVariation, Sale, User, VariationType

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        database.ensure_indexes(database.db)
    yield


# App setup
app = FastAPI(title="Storefront API", version="0.1.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Security/JWT setup
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_EXPIRES_MIN = int(os.getenv("JWT_EXPIRES_MIN", "60"))
ADMIN_EMAILS = {e.strip().lower() for e in os.getenv("ADMIN_EMAILS", "").split(",") if e.strip()}
security = HTTPBearer(auto_error=False)
password_ctx = CryptContext(schemes=["bcrypt"], deprecated="auto")


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError):
    logger.error(f"Database error on {request.method} {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(status_code=503, content={"detail": "Database error, please try again"})


# Utilities
def hash_password(password: str) -> str:
    return password_ctx.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    return password_ctx.verify(password, hashed)


def create_token(user: dict) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user["_id"]),
        "email": user.get("email"),
        "is_admin": user.get("is_admin", False),
        "exp": now + timedelta(minutes=JWT_EXPIRES_MIN),
        "iat": now,
    }
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


def get_db():
    if database.db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return database.db


def get_guest_storage(db=Depends(get_db)) -> KeyValueStore:
    return MongoStorage(db)


def get_optional_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
                      db=Depends(get_db)) -> Optional[dict]:
    if credentials is None:
        return None
    payload = decode_token(credentials.credentials)
    uid = payload.get("sub")
    if not uid or not ObjectId.is_valid(uid):
        raise HTTPException(status_code=401, detail="Invalid token")
    user = db["users"].find_one({"_id": ObjectId(uid)})
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return user


def get_current_user(user: Optional[dict] = Depends(get_optional_user)) -> dict:
    if user is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user


def require_admin(user: dict = Depends(get_current_user)) -> dict:
    if not user.get("is_admin"):
        raise HTTPException(status_code=403, detail="Admin only")
    return user


# Schemas (request/response)
class RegisterRequest(BaseModel):
    name: str
    email: EmailStr
    password: str = Field(..., min_length=6)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ProfileUpdate(BaseModel):
    name: Optional[str] = None
    phone_number: Optional[str] = None


class VariationIn(BaseModel):
    type: VariationType
    name: str
    price_adjustment: float = 0.0
    stock: int = Field(0, ge=0)


class SaleIn(BaseModel):
    variation_id: Optional[str] = None
    discount_percentage: float = Field(..., gt=0, le=100)
    start_date: date
    end_date: date


class CouponVerifyRequest(BaseModel):
    code: str
    subtotal: Optional[float] = Field(None, ge=0)


class CartItemIn(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)
    variation_id: Optional[str] = None


class QuantityIn(BaseModel):
    quantity: int


class WishlistItemIn(BaseModel):
    product_id: str


class AddressIn(Address):
    is_default: bool = False


class StatusIn(BaseModel):
    status: OrderStatus


class ToggleIn(BaseModel):
    is_active: bool


# Health and helpers
@app.get("/")
def root():
    return {"message": "Storefront API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if database.db is not None:
            response["collections"] = database.db.list_collection_names()[:10]
            response["database"] = "✅ Connected & Working"
            response["connection_status"] = "Connected"
    except PyMongoError as e:
        response["database"] = f"⚠️ Connected but error: {str(e)[:80]}"
    return response


def _session(user: dict) -> dict:
    return {"token": create_token(user), "user": accounts.public_user(user)}


# Auth
@app.post("/auth/register")
def register(payload: RegisterRequest, db=Depends(get_db)):
    email = payload.email.lower()
    if db["users"].find_one({"email": email}):
        raise HTTPException(status_code=400, detail="Email already registered")
    user = User(
        name=payload.name,
        email=email,
        hashed_password=hash_password(payload.password),
        is_admin=email in ADMIN_EMAILS,
    )
    user_id = database.create_document(db, "users", user)
    logger.info(f"User {user_id} registered")
    return _session(db["users"].find_one({"_id": ObjectId(user_id)}))


@app.post("/auth/login")
def login(payload: LoginRequest, db=Depends(get_db)):
    user = db["users"].find_one({"email": payload.email.lower()})
    if not user or not verify_password(payload.password, user.get("hashed_password", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return _session(user)


@app.get("/me")
def me(current_user: dict = Depends(get_current_user)):
    return accounts.public_user(current_user)


@app.put("/me")
def update_profile(update: ProfileUpdate, current_user: dict = Depends(get_current_user), db=Depends(get_db)):
    fields = update.model_dump(exclude_none=True)
    fields["updated_at"] = datetime.now(timezone.utc)
    db["users"].update_one({"_id": current_user["_id"]}, {"$set": fields})
    return accounts.public_user(db["users"].find_one({"_id": current_user["_id"]}))


# Products
@app.get("/products")
def list_products(q: Optional[str] = None, category: Optional[str] = None, sort: Optional[str] = None,
                  page: int = 1, page_size: int = 12, db=Depends(get_db)):
    return catalog.list_products(db, q=q, category=category, sort=sort, page=page, page_size=page_size)


@app.get("/products/{product_id}")
def get_product(product_id: str, db=Depends(get_db)):
    return catalog.get_product(db, product_id)


@app.get("/products/{product_id}/reviews")
def get_reviews(product_id: str, db=Depends(get_db)):
    return {"items": reviews.list_reviews(db, product_id)}


@app.post("/admin/products")
def create_product(payload: Product, admin: dict = Depends(require_admin), db=Depends(get_db)):
    return catalog.create_product(db, payload)


@app.put("/admin/products/{product_id}")
def update_product(product_id: str, payload: Dict[str, Any] = Body(...),
                   admin: dict = Depends(require_admin), db=Depends(get_db)):
    return catalog.update_product(db, product_id, payload)


@app.delete("/admin/products/{product_id}")
def delete_product(product_id: str, admin: dict = Depends(require_admin), db=Depends(get_db)):
    catalog.delete_product(db, product_id)
    return {"id": product_id, "deleted": True}


@app.get("/admin/products/{product_id}/variations")
def list_variations(product_id: str, admin: dict = Depends(require_admin), db=Depends(get_db)):
    return {"items": catalog.list_variations(db, product_id)}


@app.post("/admin/products/{product_id}/variations")
def add_variation(product_id: str, payload: VariationIn, admin: dict = Depends(require_admin), db=Depends(get_db)):
    return catalog.add_variation(db, ProductVariation(product_id=product_id, **payload.model_dump()))


@app.put("/admin/variations/{variation_id}")
def update_variation(variation_id: str, payload: Dict[str, Any] = Body(...),
                     admin: dict = Depends(require_admin), db=Depends(get_db)):
    return catalog.update_variation(db, variation_id, payload)


@app.delete("/admin/variations/{variation_id}")
def delete_variation(variation_id: str, admin: dict = Depends(require_admin), db=Depends(get_db)):
    catalog.delete_variation(db, variation_id)
    return {"id": variation_id, "deleted": True}


# Sales
@app.get("/admin/products/{product_id}/sales")
def list_sales(product_id: str, admin: dict = Depends(require_admin), db=Depends(get_db)):
    return {"items": catalog.list_sales(db, product_id)}


@app.post("/admin/products/{product_id}/sales")
def start_sale(product_id: str, payload: SaleIn, admin: dict = Depends(require_admin), db=Depends(get_db)):
    sale = Sale(product_id=product_id, **payload.model_dump())
    return catalog.start_sale(db, sale)


@app.post("/admin/sales/{sale_id}/end")
def end_sale(sale_id: str, admin: dict = Depends(require_admin), db=Depends(get_db)):
    return catalog.end_sale(db, sale_id)


@app.delete("/admin/sales/{sale_id}")
def delete_sale(sale_id: str, admin: dict = Depends(require_admin), db=Depends(get_db)):
    catalog.delete_sale(db, sale_id)
    return {"id": sale_id, "deleted": True}


# Coupons
@app.post("/coupons/verify")
def verify_coupon(payload: CouponVerifyRequest, db=Depends(get_db)):
    return coupons.validate_coupon(db, payload.code, payload.subtotal)


@app.get("/admin/coupons")
def list_coupons(admin: dict = Depends(require_admin), db=Depends(get_db)):
    return {"items": coupons.list_coupons(db)}


@app.post("/admin/coupons")
def create_coupon(payload: Coupon, admin: dict = Depends(require_admin), db=Depends(get_db)):
    return coupons.create_coupon(db, payload)


@app.put("/admin/coupons/{coupon_id}")
def update_coupon(coupon_id: str, payload: Dict[str, Any] = Body(...),
                  admin: dict = Depends(require_admin), db=Depends(get_db)):
    return coupons.update_coupon(db, coupon_id, payload)


@app.post("/admin/coupons/{coupon_id}/toggle")
def toggle_coupon(coupon_id: str, payload: ToggleIn, admin: dict = Depends(require_admin), db=Depends(get_db)):
    return coupons.set_coupon_active(db, coupon_id, payload.is_active)


@app.delete("/admin/coupons/{coupon_id}")
def delete_coupon(coupon_id: str, admin: dict = Depends(require_admin), db=Depends(get_db)):
    coupons.delete_coupon(db, coupon_id)
    return {"id": coupon_id, "deleted": True}


# Cart & wishlist
def _owner(user: Optional[dict], guest_id: Optional[str]) -> Dict[str, Optional[str]]:
    if user:
        return {"user_id": str(user["_id"]), "guest_id": None}
    return {"user_id": None, "guest_id": guest_id or uuid.uuid4().hex}


def _cart_response(cart: Cart, owner: dict, message: Optional[str] = None) -> dict:
    body = cart.snapshot()
    body["guest_id"] = owner["guest_id"]
    if message:
        body["message"] = message
    return body


@app.get("/cart")
def get_cart(user: Optional[dict] = Depends(get_optional_user), x_guest_id: Optional[str] = Header(None),
             db=Depends(get_db), storage: KeyValueStore = Depends(get_guest_storage)):
    owner = _owner(user, x_guest_id)
    cart = Cart(line_store("cart", db, storage, **owner), db)
    return _cart_response(cart, owner)


@app.post("/cart/items")
def cart_add(item: CartItemIn, user: Optional[dict] = Depends(get_optional_user),
             x_guest_id: Optional[str] = Header(None), db=Depends(get_db),
             storage: KeyValueStore = Depends(get_guest_storage)):
    owner = _owner(user, x_guest_id)
    with session_lock(owner_key(**owner)):
        cart = Cart(line_store("cart", db, storage, **owner), db)
        cart.add_item(item.product_id, item.quantity, item.variation_id)
    return _cart_response(cart, owner, "Added to cart")


@app.patch("/cart/items/{item_id}")
def cart_update(item_id: str, payload: QuantityIn, user: Optional[dict] = Depends(get_optional_user),
                x_guest_id: Optional[str] = Header(None), db=Depends(get_db),
                storage: KeyValueStore = Depends(get_guest_storage)):
    owner = _owner(user, x_guest_id)
    with session_lock(owner_key(**owner)):
        cart = Cart(line_store("cart", db, storage, **owner), db)
        cart.update_quantity(item_id, payload.quantity)
    return _cart_response(cart, owner)


@app.delete("/cart/items/{item_id}")
def cart_remove(item_id: str, user: Optional[dict] = Depends(get_optional_user),
                x_guest_id: Optional[str] = Header(None), db=Depends(get_db),
                storage: KeyValueStore = Depends(get_guest_storage)):
    owner = _owner(user, x_guest_id)
    with session_lock(owner_key(**owner)):
        cart = Cart(line_store("cart", db, storage, **owner), db)
        cart.remove_item(item_id)
    return _cart_response(cart, owner, "Removed from cart")


@app.delete("/cart")
def cart_clear(user: Optional[dict] = Depends(get_optional_user), x_guest_id: Optional[str] = Header(None),
               db=Depends(get_db), storage: KeyValueStore = Depends(get_guest_storage)):
    owner = _owner(user, x_guest_id)
    with session_lock(owner_key(**owner)):
        cart = Cart(line_store("cart", db, storage, **owner), db)
        cart.clear()
    return _cart_response(cart, owner)


@app.get("/wishlist")
def get_wishlist(user: Optional[dict] = Depends(get_optional_user), x_guest_id: Optional[str] = Header(None),
                 db=Depends(get_db), storage: KeyValueStore = Depends(get_guest_storage)):
    owner = _owner(user, x_guest_id)
    wishlist = Wishlist(line_store("wishlist", db, storage, **owner), db)
    return {**wishlist.snapshot(), "guest_id": owner["guest_id"]}


@app.post("/wishlist/items")
def wishlist_add(item: WishlistItemIn, user: Optional[dict] = Depends(get_optional_user),
                 x_guest_id: Optional[str] = Header(None), db=Depends(get_db),
                 storage: KeyValueStore = Depends(get_guest_storage)):
    owner = _owner(user, x_guest_id)
    with session_lock(owner_key(**owner)):
        wishlist = Wishlist(line_store("wishlist", db, storage, **owner), db)
        _, added = wishlist.add_item(item.product_id)
    message = "Added to favorites" if added else "This product is already in your favorites"
    return {**wishlist.snapshot(), "guest_id": owner["guest_id"], "message": message}


@app.delete("/wishlist/items/{item_id}")
def wishlist_remove(item_id: str, user: Optional[dict] = Depends(get_optional_user),
                    x_guest_id: Optional[str] = Header(None), db=Depends(get_db),
                    storage: KeyValueStore = Depends(get_guest_storage)):
    owner = _owner(user, x_guest_id)
    with session_lock(owner_key(**owner)):
        wishlist = Wishlist(line_store("wishlist", db, storage, **owner), db)
        wishlist.remove_item(item_id)
    return {**wishlist.snapshot(), "guest_id": owner["guest_id"]}


@app.delete("/wishlist")
def wishlist_clear(user: Optional[dict] = Depends(get_optional_user), x_guest_id: Optional[str] = Header(None),
                   db=Depends(get_db), storage: KeyValueStore = Depends(get_guest_storage)):
    owner = _owner(user, x_guest_id)
    with session_lock(owner_key(**owner)):
        wishlist = Wishlist(line_store("wishlist", db, storage, **owner), db)
        wishlist.clear()
    return {**wishlist.snapshot(), "guest_id": owner["guest_id"]}


# Addresses
@app.get("/addresses")
def list_addresses(user: dict = Depends(get_current_user), db=Depends(get_db)):
    return {"items": accounts.list_addresses(db, str(user["_id"]))}


@app.post("/addresses")
def add_address(payload: AddressIn, user: dict = Depends(get_current_user), db=Depends(get_db)):
    address = Address(**payload.model_dump(exclude={"is_default"}))
    return accounts.add_address(db, str(user["_id"]), address, payload.is_default)


@app.put("/addresses/{address_id}")
def update_address(address_id: str, payload: Address, user: dict = Depends(get_current_user), db=Depends(get_db)):
    return accounts.update_address(db, str(user["_id"]), address_id, payload)


@app.post("/addresses/{address_id}/default")
def set_default_address(address_id: str, user: dict = Depends(get_current_user), db=Depends(get_db)):
    return accounts.set_default_address(db, str(user["_id"]), address_id)


@app.delete("/addresses/{address_id}")
def delete_address(address_id: str, user: dict = Depends(get_current_user), db=Depends(get_db)):
    accounts.delete_address(db, str(user["_id"]), address_id)
    return {"id": address_id, "deleted": True}


# Checkout & Orders
@app.post("/checkout")
def checkout(payload: orders.CheckoutRequest, user: dict = Depends(get_current_user), db=Depends(get_db)):
    uid = str(user["_id"])
    with session_lock(owner_key(user_id=uid)):
        cart = Cart(line_store("cart", db, None, user_id=uid), db)
        order = orders.place_order(db, user, cart, payload)
    return {"order": order, "message": "Order placed successfully!"}


@app.get("/orders")
def list_orders(user: dict = Depends(get_current_user), db=Depends(get_db)):
    return {"items": orders.list_orders(db, user_id=str(user["_id"]))}


@app.get("/orders/{order_id}")
def get_order(order_id: str, user: dict = Depends(get_current_user), db=Depends(get_db)):
    return orders.get_order(db, order_id, user_id=str(user["_id"]))


@app.post("/orders/{order_id}/reviews")
def add_review(order_id: str, payload: reviews.ReviewIn, user: dict = Depends(get_current_user),
               db=Depends(get_db)):
    return reviews.submit_review(db, user, order_id, payload)


@app.get("/me/reviews")
def my_reviews(user: dict = Depends(get_current_user), db=Depends(get_db)):
    return {"items": reviews.user_reviews(db, str(user["_id"]))}


# Admin: orders, customers, stats
@app.get("/admin/orders")
def admin_list_orders(status: Optional[OrderStatus] = None, admin: dict = Depends(require_admin),
                      db=Depends(get_db)):
    return {"items": orders.list_orders(db, status=status)}


@app.get("/admin/orders/{order_id}")
def admin_get_order(order_id: str, admin: dict = Depends(require_admin), db=Depends(get_db)):
    return orders.get_order(db, order_id)


@app.put("/admin/orders/{order_id}/status")
def admin_set_status(order_id: str, payload: StatusIn, admin: dict = Depends(require_admin), db=Depends(get_db)):
    order = orders.set_order_status(db, order_id, payload.status)
    return {"order": order, "message": f"Order status updated to {payload.status}"}


@app.get("/admin/customers")
def admin_customers(admin: dict = Depends(require_admin), db=Depends(get_db)):
    return {"items": accounts.list_customers(db)}


@app.get("/admin/stats")
def admin_stats(admin: dict = Depends(require_admin), db=Depends(get_db)):
    return {
        "products": db["products"].count_documents({}),
        "customers": db["users"].count_documents({"is_admin": {"$ne": True}}),
        **orders.sales_summary(db),
    }


# Optional: seed sample catalog for demo
@app.post("/admin/seed")
def seed_products(admin: dict = Depends(require_admin), db=Depends(get_db)):
    return catalog.seed_catalog(db)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
