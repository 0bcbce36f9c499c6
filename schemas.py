"""
Database Schemas

MongoDB collection schemas for the storefront, as Pydantic models.
Each top-level model maps to a collection named after the lowercase class:
- User -> "user"
- Category -> "category"
- Product -> "product"
- Cart -> "cart"
- Wishlist -> "wishlist"
- Order -> "order"
- WebhookEvent -> "webhook_event"

Money is stored in cents. Cross-collection references are string ids;
embedded list entries carry their own string ``id``.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

from database import new_id, utcnow

Role = Literal["user", "admin"]

OrderStatus = Literal[
    "pending",
    "confirmed",
    "processing",
    "shipped",
    "delivered",
    "cancelled",
    "refunded",
    "returned",
    "payment_failed",
]
PaymentStatus = Literal["pending", "paid", "failed", "refunded", "partially_refunded"]
PaymentMethod = Literal["stripe", "paypal", "cash_on_delivery", "bank_transfer"]

CANCELLABLE_STATUSES = ("pending", "confirmed")
ADMIN_CANCELLABLE_STATUSES = ("pending", "confirmed", "processing", "payment_failed")
CLOSED_ORDER_STATUSES = ("cancelled", "refunded", "returned")
ACTIVE_ORDER_STATUSES = ("pending", "confirmed", "processing", "shipped")
REVENUE_PAYMENT_STATUSES = ("paid", "partially_refunded")


class Address(BaseModel):
    id: str = Field(default_factory=new_id)
    type: Literal["shipping", "billing", "both"] = "shipping"
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    company: Optional[str] = None
    address1: str = Field(..., min_length=1)
    address2: Optional[str] = None
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    zip_code: str = Field(..., min_length=1)
    country: str = Field(..., min_length=2)
    phone: Optional[str] = None
    is_default: bool = False


class Preferences(BaseModel):
    language: str = "en"
    currency: str = "usd"
    timezone: str = "UTC"
    email_notifications: bool = True
    sms_notifications: bool = False
    marketing_emails: bool = False
    theme: Literal["light", "dark", "system"] = "system"


class User(BaseModel):
    """
    Users collection schema
    Collection name: "user"
    """
    name: str = Field(..., min_length=2, max_length=50, description="Full name")
    email: EmailStr = Field(..., description="Email address")
    phone: Optional[str] = Field(None, description="Phone number")
    password_hash: str = Field(..., description="bcrypt password hash")
    role: Role = Field("user", description="Role: user or admin")
    is_email_verified: bool = False
    is_phone_verified: bool = False
    google_id: Optional[str] = None
    avatar: Optional[str] = None
    addresses: List[Address] = Field(default_factory=list)
    preferences: Preferences = Field(default_factory=Preferences)
    stripe_customer_id: Optional[str] = None
    default_payment_method: Optional[str] = None
    login_attempts: int = 0
    lock_until: Optional[datetime] = None
    last_login: Optional[datetime] = None
    email_verification_token: Optional[str] = None
    email_verification_expire: Optional[datetime] = None
    reset_password_token: Optional[str] = None
    reset_password_expire: Optional[datetime] = None
    is_active: bool = Field(True, description="False once the account is soft-deleted")
    deleted_at: Optional[datetime] = None


class Category(BaseModel):
    """
    Categories collection schema
    Collection name: "category"
    """
    name: str = Field(..., min_length=1, max_length=50)
    slug: str
    description: Optional[str] = Field(None, max_length=500)
    image: Optional[str] = None
    parent_id: Optional[str] = None
    level: int = 0
    path: List[str] = Field(default_factory=list, description="Ancestor ids, root first")
    is_active: bool = True
    is_featured: bool = False
    sort_order: int = 0
    created_by: Optional[str] = None


class Variant(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    sku: str
    price_cents: int = Field(..., ge=0)
    stock: int = Field(0, ge=0)
    attributes: List[dict] = Field(default_factory=list)
    is_active: bool = True


class Review(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    user_name: Optional[str] = None
    rating: int = Field(..., ge=1, le=5)
    title: Optional[str] = Field(None, max_length=100)
    comment: str = Field("", max_length=500)
    created_at: datetime = Field(default_factory=utcnow)


class Product(BaseModel):
    """
    Products collection schema
    Collection name: "product"
    """
    name: str = Field(..., min_length=1, max_length=100, description="Product name")
    slug: str = Field(..., description="URL-friendly identifier")
    description: str = Field(..., max_length=2000)
    short_description: Optional[str] = Field(None, max_length=200)
    category_id: str = Field(..., description="Category id")
    brand: Optional[str] = None
    sku: Optional[str] = Field(None, description="Stock keeping unit")
    price_cents: int = Field(..., ge=0, description="Price in cents")
    compare_price_cents: Optional[int] = Field(None, ge=0)
    stock: int = Field(0, ge=0, description="Units on hand")
    low_stock_threshold: int = Field(5, ge=0)
    images: List[str] = Field(default_factory=list, description="Image URLs")
    tags: List[str] = Field(default_factory=list)
    variants: List[Variant] = Field(default_factory=list)
    reviews: List[Review] = Field(default_factory=list)
    rating: float = Field(0, ge=0, le=5, description="Average review rating")
    num_reviews: int = 0
    sold_count: int = 0
    is_active: bool = True
    is_featured: bool = False
    created_by: Optional[str] = None


class CartItem(BaseModel):
    id: str = Field(default_factory=new_id)
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = Field(1, ge=1)
    price_cents: int = Field(..., ge=0, description="Unit price when last seen")
    added_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Cart(BaseModel):
    """Carts collection schema, one document per user"""
    user_id: str
    items: List[CartItem] = Field(default_factory=list)
    notes: Optional[str] = None


class WishlistItem(BaseModel):
    id: str = Field(default_factory=new_id)
    product_id: str
    variant_id: Optional[str] = None
    notes: Optional[str] = Field(None, max_length=200)
    priority: Literal["low", "medium", "high"] = "medium"
    added_at: datetime = Field(default_factory=utcnow)


class Wishlist(BaseModel):
    """Wishlists collection schema, one document per user"""
    user_id: str
    name: str = "My Wishlist"
    items: List[WishlistItem] = Field(default_factory=list)
    is_public: bool = False


class OrderItem(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    name: str
    sku: Optional[str] = None
    price_cents: int = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    total_cents: int = Field(..., ge=0)
    image: Optional[str] = None


class TimelineEntry(BaseModel):
    status: str
    note: Optional[str] = None
    updated_by: Optional[str] = Field(None, description="User id, or 'system'")
    timestamp: datetime = Field(default_factory=utcnow)


class Refund(BaseModel):
    id: str = Field(default_factory=new_id)
    amount_cents: int = Field(..., ge=0)
    currency: str = "usd"
    reason: Optional[str] = None
    status: Literal["pending", "processed", "failed"] = "pending"
    event_id: Optional[str] = None
    stripe_refund_id: Optional[str] = None
    processed_at: Optional[datetime] = None
    processed_by: Optional[str] = None


class Order(BaseModel):
    """Orders collection schema"""
    order_number: str
    user_id: str
    items: List[OrderItem]
    shipping_address: dict
    billing_address: dict
    payment_method: PaymentMethod = "stripe"
    payment_intent_id: Optional[str] = None
    stripe_session_id: Optional[str] = None
    subtotal_cents: int = Field(..., ge=0)
    tax_cents: int = Field(..., ge=0)
    shipping_cents: int = Field(..., ge=0)
    total_cents: int = Field(..., ge=0)
    currency: str = Field("usd")
    status: OrderStatus = "pending"
    payment_status: PaymentStatus = "pending"
    timeline: List[TimelineEntry] = Field(default_factory=list)
    refunds: List[Refund] = Field(default_factory=list)
    refunded_cents: int = Field(0, ge=0)
    webhook_events: List[str] = Field(default_factory=list, description="Ids of payment events already applied")
    tracking_number: Optional[str] = None
    notes: Optional[str] = None
    admin_notes: Optional[str] = None
    cancellation_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None


class WebhookEvent(BaseModel):
    """Raw payment-processor events, kept until processed"""
    event_id: str
    type: str
    payload: dict
    status: Literal["received", "processed", "failed", "ignored"] = "received"
    attempts: int = 0
    last_error: Optional[str] = None
    received_at: datetime = Field(default_factory=utcnow)
    processed_at: Optional[datetime] = None
