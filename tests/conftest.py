from datetime import timedelta

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

import accounts
import main
from database import create_document
from pricing import today
from schemas import Address, Coupon, Product, ProductVariation, Sale, User


@pytest.fixture
def db():
    return mongomock.MongoClient()["storefront_test"]


@pytest.fixture
def client(db):
    main.app.dependency_overrides[main.get_db] = lambda: db
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    def _make(email="ana@shopmail.io", name="Ana", is_admin=False):
        uid = create_document(db, "users", User(name=name, email=email, hashed_password="x", is_admin=is_admin))
        return db["users"].find_one({"_id": ObjectId(uid)})
    return _make


@pytest.fixture
def customer(make_user):
    return make_user()


@pytest.fixture
def admin(make_user):
    return make_user(email="ops@shopmail.io", name="Ops", is_admin=True)


@pytest.fixture
def shirt(db):
    """Base 50.00; XL variation +5.00 on a 20% sale running today; M has no sale."""
    pid = create_document(db, "products", Product(
        name="Linen Overshirt", base_price=50.0, category="apparel", images=["/img/shirt.jpg"],
    ))
    xl = create_document(db, "product_variations", ProductVariation(
        product_id=pid, type="size", name="XL", price_adjustment=5.0, stock=10,
    ))
    m = create_document(db, "product_variations", ProductVariation(
        product_id=pid, type="size", name="M", price_adjustment=0.0, stock=10,
    ))
    now = today()
    sale = create_document(db, "product_sales", Sale(
        product_id=pid, variation_id=xl, discount_percentage=20,
        start_date=now - timedelta(days=1), end_date=now + timedelta(days=7),
    ))
    return {"product_id": pid, "xl": xl, "m": m, "sale_id": sale}


@pytest.fixture
def tote(db):
    """Base 15.00, no variations, no sale."""
    return create_document(db, "products", Product(name="Canvas Tote", base_price=15.0, category="accessories"))


@pytest.fixture
def welcome10(db):
    return create_document(db, "coupons", Coupon(code="WELCOME10", discount_type="percentage", discount_value=10))


@pytest.fixture
def address(db, customer):
    return accounts.add_address(db, str(customer["_id"]), Address(
        name="Ana Silva", street="12 Harbour Rd", city="Lisbon", state="Lisboa", zipcode="1100-001", country="PT",
    ))
