"""
Database Schemas for the Veluno storefront

Each document model corresponds to a MongoDB collection (lowercased class name):
- Product: sellable catalog item, owns the ``stock`` counter
- Order: customer order with captured line items and status history
- Category: storefront navigation entry (name, slug, optional parent)

Request payloads accepted by the API live here too so the ledger modules can
consume them without importing the web layer.
"""
from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

CategoryName = Literal["Men", "Women", "Kids", "Accessories", "Footwear", "Activewear"]
Size = Literal["XS", "S", "M", "L", "XL", "XXL", "2XL", "3XL"]
PaymentMethod = Literal["cod", "card", "upi", "netbanking", "wallet"]

CATEGORIES = ("Men", "Women", "Kids", "Accessories", "Footwear", "Activewear")
SIZES = ("XS", "S", "M", "L", "XL", "XXL", "2XL", "3XL")

_PHONE_STRIP = re.compile(r"[\s\-()]")
_PHONE_DIGITS = re.compile(r"^[0-9]{10,15}$")


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


# -----------------------------
# Catalog
# -----------------------------
class Product(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1, max_length=2000)
    price: float = Field(..., gt=0)
    category: CategoryName
    sizes: List[Size] = Field(..., min_length=1)
    stock: int = Field(0, ge=0)
    images: List[str] = Field(..., min_length=1, max_length=10)
    sku: Optional[str] = None
    brand: Optional[str] = None
    colors: List[str] = Field(default_factory=list)
    is_active: bool = True
    is_featured: bool = False
    discount: float = Field(0, ge=0, le=100)
    tags: List[str] = Field(default_factory=list)
    qikink_product_id: Optional[str] = None


class ProductUpdate(BaseModel):
    """Partial product edit. Stock is adjusted through restocking, never set."""

    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, min_length=1, max_length=2000)
    price: Optional[float] = Field(None, gt=0)
    category: Optional[CategoryName] = None
    sizes: Optional[List[Size]] = Field(None, min_length=1)
    images: Optional[List[str]] = Field(None, min_length=1, max_length=10)
    brand: Optional[str] = None
    colors: Optional[List[str]] = None
    is_active: Optional[bool] = None
    is_featured: Optional[bool] = None
    discount: Optional[float] = Field(None, ge=0, le=100)
    tags: Optional[List[str]] = None


class RestockRequest(BaseModel):
    quantity: int = Field(..., ge=1)


class BulkDeleteRequest(BaseModel):
    product_ids: List[str] = Field(..., min_length=1)


class Category(BaseModel):
    """Storefront navigation entry; products reference categories by name."""

    name: str = Field(..., min_length=1, max_length=50)
    slug: Optional[str] = Field(None, pattern=r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
    description: Optional[str] = Field(None, max_length=500)
    image: Optional[str] = None
    parent_id: Optional[str] = None
    is_active: bool = True
    sort_order: int = 0


class CategoryUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(None, min_length=1, max_length=50)
    description: Optional[str] = Field(None, max_length=500)
    image: Optional[str] = None
    parent_id: Optional[str] = None
    is_active: Optional[bool] = None
    sort_order: Optional[int] = None


# -----------------------------
# Orders
# -----------------------------
class Address(BaseModel):
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    postal_code: str = Field(..., min_length=1)
    country: str = "India"


class OrderItem(BaseModel):
    product_id: str
    product_name: str
    product_image: str
    size: str
    color: str = ""
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0, description="Effective unit price at order time")
    subtotal: float


class StatusHistoryEntry(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    status: OrderStatus
    timestamp: datetime
    updated_by: Optional[str] = None
    note: str = ""


class Order(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    order_number: str
    customer_name: str = Field(..., max_length=100)
    email: EmailStr
    phone: str
    address: Address
    items: List[OrderItem] = Field(..., min_length=1)
    total_amount: float = Field(..., ge=0)
    shipping_cost: float = Field(0, ge=0)
    discount: float = Field(0, ge=0)
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_method: PaymentMethod = "cod"
    payment_id: Optional[str] = None
    gateway_order_id: Optional[str] = None
    order_status: OrderStatus = OrderStatus.PENDING
    tracking_number: Optional[str] = None
    notes: Optional[str] = Field(None, max_length=500)
    cancel_reason: Optional[str] = Field(None, max_length=500)
    status_history: List[StatusHistoryEntry] = Field(default_factory=list)
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    fulfillment_ref: Optional[str] = None


# -----------------------------
# Request payloads
# -----------------------------
class CartLine(BaseModel):
    product_id: str
    size: str
    quantity: int = Field(..., ge=1)
    color: Optional[str] = None


class OrderCreate(BaseModel):
    customer_name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    phone: str
    address: Address
    items: List[CartLine] = Field(..., min_length=1)
    payment_method: PaymentMethod = "cod"
    shipping_cost: float = Field(0, ge=0)
    discount: float = Field(0, ge=0)
    notes: Optional[str] = Field(None, max_length=500)

    @field_validator("customer_name")
    @classmethod
    def _strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Customer name is required")
        return v

    @field_validator("email")
    @classmethod
    def _lower_email(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator("phone")
    @classmethod
    def _check_phone(cls, v: str) -> str:
        v = v.strip()
        if not _PHONE_DIGITS.match(_PHONE_STRIP.sub("", v)):
            raise ValueError("Please provide a valid phone number")
        return v


class StatusUpdate(BaseModel):
    order_status: Optional[OrderStatus] = None
    tracking_number: Optional[str] = None
    note: Optional[str] = Field(None, max_length=500)


class PaymentUpdate(BaseModel):
    payment_status: Optional[PaymentStatus] = None
    payment_id: Optional[str] = None


class CancelRequest(BaseModel):
    cancel_reason: Optional[str] = Field(None, max_length=500)


class PaymentVerification(BaseModel):
    razorpay_order_id: str = Field(..., min_length=1)
    razorpay_payment_id: str = Field(..., min_length=1)
    razorpay_signature: str = Field(..., min_length=1)
    order_id: Optional[str] = None


class GatewayOrderRequest(BaseModel):
    order_id: str = Field(..., min_length=1)
    currency: str = Field("INR", min_length=3, max_length=3)
    notes: Dict[str, str] = Field(default_factory=dict)


class RefundRequest(BaseModel):
    payment_id: str = Field(..., min_length=1)
    amount: Optional[float] = Field(None, gt=0, description="Partial refund in rupees; full refund when omitted")
    notes: Dict[str, str] = Field(default_factory=dict)
