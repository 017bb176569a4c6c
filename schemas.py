"""
Database Schemas for the storefront

Each Pydantic model represents a collection in MongoDB.
Collection name is the lowercase of the class name.

Product, Contact and Slider models also act as the input normalization step
for form posts: shape-shifting values (JSON strings, comma lists, "true"
strings) are coerced here so services only ever see the strict type.
"""
import json
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

ROLES = ("user", "admin", "super_admin")
ADMIN_ROLES = ("admin", "super_admin")
ORDER_STATUSES = ("pending", "processing", "shipped", "delivered", "cancelled")
PAYMENT_STATUSES = ("pending", "completed", "failed", "refunded")
CONTACT_STATUSES = ("new", "in-progress", "resolved", "closed")

IN_STOCK = "In Stock"
OUT_OF_STOCK = "Out of Stock"


def _load_json(value):
    """Decode a JSON-encoded form value, or return it untouched."""
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            return value
    return value


def normalize_images(value) -> List[str]:
    if value is None or value == "":
        return []
    if isinstance(value, str):
        parsed = _load_json(value)
        if isinstance(parsed, list):
            return [str(v) for v in parsed if v]
        return [value]
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value if v]
    return [str(value)]


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

class User(BaseModel):
    username: str = Field(..., min_length=1, description="Unique login name")
    name: str = Field(..., description="Display name")
    email: EmailStr = Field(..., description="Email address")
    phone: Optional[str] = None
    password_hash: str = Field(..., description="Hashed password")
    role: Literal["user", "admin", "super_admin"] = "user"
    is_active: bool = Field(True)
    is_email_verified: bool = Field(False)
    otp: Optional[str] = None
    otp_expires: Optional[datetime] = None
    otp_last_sent_at: Optional[datetime] = None
    last_login: Optional[datetime] = None
    address: Dict[str, Any] = {}


# ---------------------------------------------------------------------------
# Products
# ---------------------------------------------------------------------------

class Variant(BaseModel):
    quantity: int = Field(..., ge=1, description="Units per pack")
    discount: float = Field(0, ge=0, le=100, description="Percent off")


class Rating(BaseModel):
    average: float = Field(0, ge=0, le=5)
    count: int = Field(0, ge=0)


class ProductFields(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = None
    description: Optional[str] = None
    brand: Optional[str] = None
    category: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    original_price: Optional[float] = Field(None, ge=0)
    stock: Optional[int] = Field(None, ge=0)
    status: Optional[Literal["active", "inactive", "out-of-stock"]] = None
    image: Optional[List[str]] = None
    variants: Optional[List[Variant]] = None
    unit_type: Optional[str] = None
    rating: Optional[Rating] = None
    is_new: Optional[bool] = None
    is_featured: Optional[bool] = None
    meta_title: Optional[str] = None
    meta_description: Optional[str] = None
    meta_keywords: Optional[List[str]] = None

    @model_validator(mode="before")
    @classmethod
    def drop_blanks(cls, data):
        # empty form fields mean "not supplied"
        if not isinstance(data, dict):
            return data
        data = {k: v for k, v in data.items() if not (isinstance(v, str) and not v.strip())}
        if "images" in data:
            images = data.pop("images")
            data.setdefault("image", images)
        return data

    @field_validator("stock", mode="before")
    @classmethod
    def whole_stock(cls, v):
        if isinstance(v, str):
            return int(float(v))
        return v

    @field_validator("image", mode="before")
    @classmethod
    def image_list(cls, v):
        if v is None:
            return None
        return normalize_images(v)

    @field_validator("variants", "rating", mode="before")
    @classmethod
    def json_encoded(cls, v):
        return _load_json(v)

    @field_validator("meta_keywords", mode="before")
    @classmethod
    def keyword_list(cls, v):
        if isinstance(v, str):
            parsed = _load_json(v)
            if isinstance(parsed, list):
                return [str(k) for k in parsed]
            return [k.strip() for k in v.split(",") if k.strip()]
        return v


class Product(ProductFields):
    name: str = Field(..., min_length=1)
    price: float = Field(0, ge=0)
    stock: int = Field(0, ge=0)
    category: str = ""
    brand: str = ""
    description: str = ""
    status: Literal["active", "inactive", "out-of-stock"] = "active"
    image: List[str] = []
    variants: List[Variant] = []
    unit_type: str = "unit"
    rating: Rating = Rating()
    is_new: bool = False
    is_featured: bool = False
    meta_keywords: List[str] = []
    sales: int = 0
    views: int = 0


class ProductUpdate(ProductFields):
    pass


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------

class CustomerInfo(BaseModel):
    full_name: str = Field(..., min_length=1)
    email: EmailStr
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None


class Address(BaseModel):
    name: Optional[str] = None
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None
    phone: Optional[str] = None


class OrderItemRequest(BaseModel):
    product_id: str = Field(..., validation_alias=AliasChoices("product_id", "_id", "product"))
    name: Optional[str] = None
    quantity: int = Field(..., ge=1, description="Packs ordered")
    selected_quantity: int = Field(1, ge=1, description="Units per pack")
    discount: float = Field(0, ge=0, le=100)
    unit_type: Optional[str] = None


class OrderItem(BaseModel):
    product: str
    name: str
    price: float
    quantity: int = Field(..., ge=1)
    unit_type: str = "unit"
    variant: Variant
    total_items: int
    final_price: float
    subtotal: float


class Payment(BaseModel):
    method: Literal["credit_card", "debit_card", "paypal", "stripe", "cash_on_delivery"] = "cash_on_delivery"
    status: Literal["pending", "completed", "failed", "refunded"] = "pending"
    transaction_id: Optional[str] = None
    paid_at: Optional[datetime] = None


class Tracking(BaseModel):
    carrier: Optional[str] = None
    tracking_number: Optional[str] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None


class Order(BaseModel):
    order_number: str
    user: Optional[str] = None
    customer_info: CustomerInfo
    shipping_address: Address
    billing_address: Optional[Address] = None
    items: List[OrderItem]
    subtotal: float = Field(..., ge=0)
    tax: float = Field(0, ge=0)
    shipping_cost: float = Field(0, ge=0)
    discount: float = Field(0, ge=0)
    total: float = Field(..., ge=0)
    status: Literal["pending", "processing", "shipped", "delivered", "cancelled"] = "pending"
    payment: Payment = Payment()
    tracking: Tracking = Tracking()
    notes: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None


# ---------------------------------------------------------------------------
# Contact inbox
# ---------------------------------------------------------------------------

class Contact(BaseModel):
    name: str
    email: str
    phone: Optional[str] = None
    subject: Optional[str] = None
    message: str
    status: Literal["new", "in-progress", "resolved", "closed"] = "new"
    replied: bool = False
    reply_message: Optional[str] = None
    replied_at: Optional[datetime] = None
    replied_by: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("name", "email", "phone", "subject", "message", mode="before")
    @classmethod
    def strip(cls, v):
        return v.strip() if isinstance(v, str) else v


# ---------------------------------------------------------------------------
# Sliders
# ---------------------------------------------------------------------------

class Slider(BaseModel):
    model_config = ConfigDict(extra="ignore")

    image: str = Field(..., min_length=1)
    title: Optional[str] = None
    link: Optional[str] = None
    order: int = 0
    is_active: bool = True

    @model_validator(mode="before")
    @classmethod
    def drop_blanks(cls, data):
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if not (isinstance(v, str) and not v.strip())}
        return data


class SliderUpdate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    image: Optional[str] = None
    title: Optional[str] = None
    link: Optional[str] = None
    order: Optional[int] = None
    is_active: Optional[bool] = None

    @model_validator(mode="before")
    @classmethod
    def drop_blanks(cls, data):
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if not (isinstance(v, str) and not v.strip())}
        return data
