"""
Database Schemas for the storefront

Each Pydantic model corresponds to a MongoDB collection. The collection name is the lowercase of the class name.

Example: class Coupon -> collection "coupon"
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from database import naive_utc


class OrderStatus(str, Enum):
    pending = "pending"
    confirmed = "confirmed"
    processing = "processing"
    shipped = "shipped"
    delivered = "delivered"
    cancelled = "cancelled"
    returned = "returned"


class PaymentMethod(str, Enum):
    card = "card"
    paypal = "paypal"
    bank_transfer = "bank_transfer"
    cash_on_delivery = "cash_on_delivery"


class PaymentStatus(str, Enum):
    pending = "pending"
    paid = "paid"
    failed = "failed"
    refunded = "refunded"
    partially_refunded = "partially_refunded"


class CouponType(str, Enum):
    percentage = "percentage"
    fixed = "fixed"


class DiscountType(str, Enum):
    percentage = "percentage"
    fixed_amount = "fixed_amount"
    buy_x_get_y = "buy_x_get_y"
    free_shipping = "free_shipping"


class CustomerSegment(str, Enum):
    new_customer = "new_customer"
    returning_customer = "returning_customer"
    vip_customer = "vip_customer"
    bulk_buyer = "bulk_buyer"


class InventoryChange(str, Enum):
    stock_in = "stock_in"
    stock_out = "stock_out"
    sold = "sold"
    returned = "returned"
    adjustment = "adjustment"


# Core domain models

class Address(BaseModel):
    full_name: str
    line1: str
    line2: Optional[str] = None
    city: str
    state: Optional[str] = None
    postal_code: str
    country: str
    phone: Optional[str] = None


class User(BaseModel):
    name: str
    email: EmailStr
    hashed_password: str
    is_active: bool = True
    is_admin: bool = False
    addresses: List[Address] = Field(default_factory=list)


class Category(BaseModel):
    name: str
    slug: str
    parent_id: Optional[str] = None
    description: Optional[str] = None


class Product(BaseModel):
    title: str
    slug: str
    sku: Optional[str] = None
    description: Optional[str] = None
    brand: Optional[str] = None
    price: float = Field(..., ge=0)
    images: List[str] = Field(default_factory=list)
    category_ids: List[str] = Field(default_factory=list)
    specs: Dict[str, Any] = Field(default_factory=dict)
    inventory: int = Field(0, ge=0)
    track_inventory: bool = True
    is_active: bool = True


class PaymentInfo(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    method: PaymentMethod
    transaction_id: Optional[str] = None
    payment_status: PaymentStatus = Field(PaymentStatus.pending, validate_default=True)
    paid_at: Optional[datetime] = None


class Coupon(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    code: str = Field(..., min_length=1)
    description: Optional[str] = None
    discount_type: CouponType
    value: float = Field(..., ge=0)
    minimum_amount: float = Field(0, ge=0)
    maximum_discount: Optional[float] = Field(None, ge=0)
    usage_limit: Optional[int] = Field(None, ge=0)
    user_limit: int = Field(1, ge=1)
    valid_from: datetime
    valid_until: datetime
    is_active: bool = True
    applicable_products: List[str] = Field(default_factory=list)
    applicable_categories: List[str] = Field(default_factory=list)
    excluded_products: List[str] = Field(default_factory=list)

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator("valid_from", "valid_until")
    @classmethod
    def store_as_utc(cls, v: datetime) -> datetime:
        return naive_utc(v)


class DiscountConditions(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    min_order_amount: float = Field(0, ge=0)
    max_order_amount: Optional[float] = Field(None, ge=0)
    applicable_products: List[str] = Field(default_factory=list)
    applicable_categories: List[str] = Field(default_factory=list)
    customer_segments: List[CustomerSegment] = Field(default_factory=list)
    first_time_only: bool = False
    max_usage_per_customer: Optional[int] = Field(None, ge=1)


class Discount(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    name: str
    description: Optional[str] = None
    discount_type: DiscountType
    value: float = 0
    buy_quantity: Optional[int] = None
    get_quantity: Optional[int] = None
    conditions: DiscountConditions = Field(default_factory=DiscountConditions)
    stackable: bool = False
    priority: int = 0
    is_active: bool = True
    start_date: datetime
    end_date: datetime
    max_usage: Optional[int] = Field(None, ge=0)

    @field_validator("start_date", "end_date")
    @classmethod
    def store_as_utc(cls, v: datetime) -> datetime:
        return naive_utc(v)


class Review(BaseModel):
    product_id: str
    rating: int = Field(..., ge=1, le=5)
    title: str = Field(..., min_length=5, max_length=100)
    comment: str = Field(..., min_length=10, max_length=500)
    images: List[str] = Field(default_factory=list)

    @field_validator("title", "comment")
    @classmethod
    def strip_text(cls, v: str) -> str:
        return v.strip()
