"""
Database Schemas for the storefront

Each Pydantic model represents a collection in MongoDB.
Class name lowercased = collection name (e.g., Product -> "product").

Request bodies that feed order placement and payment live here as well: they
are the one place where the different shapes clients submit (JSON-encoded
strings, camelCase keys, nested references) are decoded into a single typed
structure before any business logic runs.
"""
import json
from datetime import datetime
from enum import Enum
from typing import Any, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, EmailStr, Field, field_validator


def _decode_json(value: Any) -> Any:
    if isinstance(value, (str, bytes)):
        text = value.strip() if isinstance(value, str) else value
        if not text:
            return None
        try:
            return json.loads(text)
        except ValueError:
            return value
    return value


def _alias(*names: str) -> AliasChoices:
    return AliasChoices(*names)


# ---------------------- Lifecycle ----------------------

class OrderStatus(str, Enum):
    PROCESSING = "Processing"
    PACKED = "Packed"
    SHIPPED = "Shipped"
    OUT_FOR_DELIVERY = "Out for Delivery"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"


HAPPY_PATH = [
    OrderStatus.PROCESSING,
    OrderStatus.PACKED,
    OrderStatus.SHIPPED,
    OrderStatus.OUT_FOR_DELIVERY,
    OrderStatus.DELIVERED,
]
TERMINAL_STATUSES = {OrderStatus.DELIVERED, OrderStatus.CANCELLED}


class PaymentStatus(str, Enum):
    UNPAID = "unpaid"
    PAID = "paid"


PAYMENT_TRANSITIONS = {
    PaymentStatus.UNPAID: {PaymentStatus.PAID},
    PaymentStatus.PAID: set(),
}


def payment_sources(target: PaymentStatus) -> List[str]:
    """Payment states from which ``target`` may be entered."""
    return [source.value for source, targets in PAYMENT_TRANSITIONS.items() if target in targets]


class PaymentSource(str, Enum):
    CLIENT_CALLBACK = "client_callback"
    WEBHOOK = "webhook"
    NO_CHARGE = "no_charge"


# ---------------------- Users ----------------------

class User(BaseModel):
    name: str
    email: EmailStr
    password_hash: Optional[str] = None
    phone: Optional[str] = None
    is_active: bool = True
    is_admin: bool = False


# ---------------------- Catalog ----------------------

class Variant(BaseModel):
    size: str
    color: str
    stock: int = Field(0, ge=0)


class Review(BaseModel):
    user_id: str
    name: str
    rating: int = Field(..., ge=1, le=5)
    comment: str = ""
    created_at: datetime


class Product(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    brand: str
    category: str
    description: str = ""
    price: float = Field(..., ge=0)
    image: Optional[str] = None
    images: List[str] = []
    variants: List[Variant] = []
    count_in_stock: int = Field(0, ge=0, validation_alias=_alias("count_in_stock", "countInStock"))
    is_featured: bool = Field(False, validation_alias=_alias("is_featured", "isFeatured"))
    active: bool = True
    reviews: List[Review] = []
    average_rating: float = Field(0.0, validation_alias=_alias("average_rating", "averageRating"))
    num_reviews: int = Field(0, validation_alias=_alias("num_reviews", "numReviews"))

    @field_validator("variants", "images", mode="before")
    @classmethod
    def _decode_lists(cls, v):
        v = _decode_json(v)
        return [] if v is None else v


# ---------------------- Coupons ----------------------

class Coupon(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    code: str
    discount_type: Literal["flat", "percent"] = Field(..., validation_alias=_alias("discount_type", "discountType"))
    discount_value: float = Field(..., gt=0, validation_alias=_alias("discount_value", "discountValue"))
    min_purchase: float = Field(0, ge=0, validation_alias=_alias("min_purchase", "minPurchase"))
    expiry_date: datetime = Field(..., validation_alias=_alias("expiry_date", "expiryDate"))
    is_active: bool = Field(True, validation_alias=_alias("is_active", "isActive"))
    used_by: List[str] = []

    @field_validator("code", mode="before")
    @classmethod
    def _upper_code(cls, v):
        return v.strip().upper() if isinstance(v, str) else v

    @field_validator("discount_type", mode="before")
    @classmethod
    def _normalize_type(cls, v):
        if isinstance(v, str):
            v = v.strip().lower()
            return "percent" if v == "percentage" else v
        return v


# ---------------------- Orders ----------------------

class ShippingAddress(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    address: str
    city: str
    postal_code: str = Field(..., validation_alias=_alias("postal_code", "postalCode"))
    country: str
    phone: str


class OrderItem(BaseModel):
    """Snapshot of a product line at the moment the order was placed."""

    product_id: str
    name: str
    qty: int
    price: float
    discounted_price: float
    image: Optional[str] = None
    size: Optional[str] = None
    color: Optional[str] = None


class PaymentResult(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    signature: Optional[str] = None
    status: str = "Paid"
    source: PaymentSource
    update_time: datetime


class StockException(BaseModel):
    product_id: str
    size: Optional[str] = None
    color: Optional[str] = None
    qty: int
    reason: str
    recorded_at: datetime


class Order(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    user_id: str
    order_items: List[OrderItem]
    shipping_address: ShippingAddress
    payment_method: str
    items_price: float
    tax_price: float = 0.0
    shipping_price: float = 0.0
    discount_amount: float = 0.0
    total_price: float
    coupon: Optional[str] = None
    payment_status: PaymentStatus = PaymentStatus.UNPAID
    is_paid: bool = False
    paid_at: Optional[datetime] = None
    payment_result: Optional[PaymentResult] = None
    gateway_order_id: Optional[str] = None
    gateway_order_ids: List[str] = []
    status: OrderStatus = OrderStatus.PROCESSING
    is_delivered: bool = False
    delivered_at: Optional[datetime] = None
    estimated_delivery: Optional[datetime] = None
    stock_exceptions: List[StockException] = []
    created_at: datetime
    updated_at: datetime


# ---------------------- Request bodies ----------------------

class OrderItemRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: str = Field(..., validation_alias=_alias("product_id", "product", "productId"))
    qty: int = Field(..., ge=1, validation_alias=_alias("qty", "quantity"))
    size: Optional[str] = None
    color: Optional[str] = None

    @field_validator("product_id", mode="before")
    @classmethod
    def _product_ref(cls, v):
        # the product may arrive populated
        if isinstance(v, dict):
            return v.get("_id") or v.get("id")
        return v

    @field_validator("size", "color", mode="before")
    @classmethod
    def _blank_to_none(cls, v):
        if isinstance(v, str):
            v = v.strip()
            return v or None
        return v


class OrderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_items: List[OrderItemRequest] = Field(..., validation_alias=_alias("order_items", "orderItems", "items"))
    shipping_address: ShippingAddress = Field(..., validation_alias=_alias("shipping_address", "shippingAddress"))
    payment_method: str = Field(..., min_length=1, validation_alias=_alias("payment_method", "paymentMethod"))
    coupon_code: Optional[str] = Field(None, validation_alias=_alias("coupon_code", "couponCode", "coupon"))

    @field_validator("order_items", "shipping_address", mode="before")
    @classmethod
    def _decode(cls, v):
        return _decode_json(v)

    @field_validator("coupon_code", mode="before")
    @classmethod
    def _coupon(cls, v):
        v = _decode_json(v)
        if isinstance(v, dict):
            v = v.get("code")
        if isinstance(v, str):
            v = v.strip().upper()
            return v or None
        return v


class PaymentVerifyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(..., validation_alias=_alias("order_id", "orderId"))
    gateway_order_ref: str = Field(..., min_length=1, validation_alias=_alias(
        "gateway_order_ref", "gatewayOrderRef", "razorpay_order_id"))
    gateway_payment_ref: str = Field(..., min_length=1, validation_alias=_alias(
        "gateway_payment_ref", "gatewayPaymentRef", "razorpay_payment_id"))
    signature: str = Field(..., min_length=1, validation_alias=_alias("signature", "razorpay_signature"))
