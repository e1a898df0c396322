"""
Database Schemas for the Storefront

Each Pydantic model corresponds to a MongoDB collection (named on the class) or
to a document embedded in one. References between collections are stored as
string ids.
"""
from typing import List, Optional, Literal
from pydantic import BaseModel, Field, EmailStr
from datetime import date, datetime, timezone

VariationType = Literal["size", "color", "bundle"]
DiscountType = Literal["percentage", "fixed"]
OrderStatus = Literal["pending", "processing", "shipped", "delivered", "cancelled", "returned"]
PaymentMethod = Literal["credit_card", "cash_on_delivery", "paypal", "bank_transfer"]
PaymentStatus = Literal["paid", "pending", "refunded", "failed"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Catalog

class User(BaseModel):
    """Collection: users"""
    name: str
    email: EmailStr
    hashed_password: str
    phone_number: Optional[str] = None
    is_active: bool = True
    is_admin: bool = False


class Product(BaseModel):
    """Collection: products"""
    name: str
    description: str = ""
    base_price: float = Field(..., ge=0)
    images: List[str] = Field(default_factory=list)
    category: str
    average_rating: Optional[float] = Field(None, ge=0, le=5)


class ProductVariation(BaseModel):
    """Collection: product_variations"""
    product_id: str
    type: VariationType
    name: str
    price_adjustment: float = 0.0
    stock: int = Field(0, ge=0)


class Sale(BaseModel):
    """Collection: product_sales. variation_id None means the whole product."""
    product_id: str
    variation_id: Optional[str] = None
    discount_percentage: float = Field(..., gt=0, le=100)
    start_date: date
    end_date: date
    active: bool = True


class Coupon(BaseModel):
    """Collection: coupons"""
    code: str
    discount_type: DiscountType
    discount_value: float = Field(..., gt=0)
    minimum_purchase: Optional[float] = Field(None, ge=0)
    expiry_date: Optional[date] = None
    is_active: bool = True


# Cart & wishlist line items

class CartLine(BaseModel):
    id: str
    product_id: str
    variation_id: Optional[str] = None
    quantity: int = Field(1, ge=1)
    name: str
    price: float = Field(..., ge=0)
    original_price: Optional[float] = None
    image: Optional[str] = None
    variation_name: Optional[str] = None


class WishlistLine(BaseModel):
    id: str
    product_id: str
    name: str
    price: float = Field(..., ge=0)
    original_price: Optional[float] = None
    image: Optional[str] = None
    added_at: datetime = Field(default_factory=utcnow)


# Addresses & orders

class Address(BaseModel):
    name: str
    street: str
    city: str
    state: str
    zipcode: str
    country: str


class ShippingAddress(Address):
    """Collection: shipping_addresses"""
    user_id: str
    is_default: bool = False


class OrderItem(BaseModel):
    product_id: str
    product_name: str
    variation_id: Optional[str] = None
    variation_name: Optional[str] = None
    quantity: int = Field(1, ge=1)
    price: float = Field(..., ge=0)


class Order(BaseModel):
    """Collection: orders. Items and address are frozen at purchase time."""
    user_id: str
    status: OrderStatus = "pending"
    order_items: List[OrderItem]
    shipping_address: Optional[Address] = None
    subtotal: float
    shipping_fee: float = 0.0
    gift_wrapping_fee: float = 0.0
    discount_amount: float = 0.0
    coupon_code: Optional[str] = None
    total: float
    payment_method: PaymentMethod = "credit_card"
    payment_status: PaymentStatus = "pending"
    delivery_date: Optional[date] = None
    delivery_time: Optional[str] = None
    gift_wrapping: bool = False
    gift_note: Optional[str] = None
    special_instructions: Optional[str] = None
    express_shipping: bool = False


class Review(BaseModel):
    """Collection: reviews"""
    product_id: str
    user_id: str
    order_id: str
    username: Optional[str] = None
    rating: int = Field(..., ge=1, le=5)
    text: str
