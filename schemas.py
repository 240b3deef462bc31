"""
Database Schemas for the Products & Services Booking Platform

Each Pydantic model represents a MongoDB collection. The collection name is the
lowercased class name by convention in this project.

Collections:
- User: customers and admins, with email verification and reset tokens
- Product: sellable catalog items with stock counts
- Service: bookable catalog items with a duration and a providing user
- Booking: a user's appointment for a service
- Order: line items, totals, payment details and a status history
- Payment: a gateway charge linked to an order or a booking

References to other documents are stored as string ids.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator


def validate_image_url(v: Optional[str]) -> Optional[str]:
    if v and (not v.startswith(("http://", "https://")) or " " in v):
        raise ValueError(f"{v} is not a valid URL!")
    return v


ServiceCategory = Literal["haircut", "massage", "facial", "nails", "makeup", "spa", "other"]
PaymentMethod = Literal["cash", "card", "upi", "wallet"]
ItemType = Literal["product", "service"]
RefundStatus = Literal["not_applicable", "pending", "processed", "failed"]


class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address, unique")
    phone: Optional[str] = Field(None, description="Phone number")
    hashed_password: str = Field(..., description="BCrypt hashed password")
    role: Literal["user", "admin"] = Field("user", description="Role: user or admin")
    is_active: bool = Field(True, description="Whether the account may sign in")
    is_verified: bool = Field(False, description="Email verified")
    verification_token: Optional[str] = Field(None, description="One-time email verification token")
    reset_token: Optional[str] = Field(None, description="One-time password reset token")


class Product(BaseModel):
    name: str = Field(..., description="Product name")
    description: Optional[str] = Field(None, description="Product description")
    price: float = Field(..., ge=0, description="Unit price")
    category: Optional[str] = Field(None, description="Category name")
    stock: int = Field(0, ge=0, description="Units in stock")
    sizes: List[str] = Field(default_factory=list)
    pincodes: List[str] = Field(default_factory=list, description="Deliverable pincodes")
    image: Optional[str] = Field(None, description="Image URL")
    is_active: bool = Field(True, description="Listed in the public catalog")


class Service(BaseModel):
    name: str = Field(..., min_length=1, description="Service name")
    description: str = Field(..., description="Service description")
    price: float = Field(..., ge=0, description="Price per booking")
    duration: int = Field(..., ge=1, description="Duration in minutes")
    category: ServiceCategory
    image: Optional[str] = Field(None, description="Image URL")
    availability: bool = Field(True, description="Accepting bookings")
    is_active: bool = Field(True, description="Listed in the public catalog")
    created_by: Optional[str] = Field(None, description="Providing user id")

    @field_validator("image")
    @classmethod
    def image_must_be_url(cls, v):
        return validate_image_url(v)


class Booking(BaseModel):
    user_id: str
    service_id: str
    provider_id: Optional[str] = None
    date: datetime
    time: str
    duration: int = Field(..., ge=1)
    notes: Optional[str] = None
    status: Literal["pending", "confirmed", "completed", "cancelled"] = "pending"
    payment_status: Literal["pending", "paid", "failed", "refunded"] = "pending"
    cancellation_reason: Optional[str] = None
    cancelled_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None


class OrderItem(BaseModel):
    type: ItemType = Field(..., description="product or service")
    item_id: str = Field(..., description="ID of the catalog item")
    name: str = Field(..., min_length=1, description="Snapshot of the item name")
    quantity: int = Field(..., ge=1, description="Quantity ordered")
    price: float = Field(..., ge=0, description="Unit price at purchase time")
    subtotal: float = Field(0, ge=0, description="quantity x price")


class PaymentDetails(BaseModel):
    method: PaymentMethod = "cash"
    status: Literal["pending", "paid", "failed", "refunded"] = "pending"
    transaction_id: Optional[str] = None
    paid_at: Optional[datetime] = None


class StatusHistoryEntry(BaseModel):
    status: str
    note: Optional[str] = None
    updated_by: Optional[str] = None
    timestamp: datetime


class Cancellation(BaseModel):
    reason: Optional[str] = None
    note: Optional[str] = None
    cancelled_at: datetime
    cancelled_by: Optional[str] = None
    refund_status: RefundStatus = "not_applicable"


class Order(BaseModel):
    order_number: str = Field(..., description="Unique human readable order number")
    user_id: str = Field(..., description="ID of the customer")
    items: List[OrderItem] = Field(default_factory=list)
    status: str = Field("pending", description="pending, confirmed, processing, completed, cancelled, returned, refunded")
    subtotal: float = Field(..., ge=0)
    tax: float = Field(0, ge=0)
    discount: float = Field(0, ge=0)
    total_amount: float = Field(..., ge=0)
    payment_details: PaymentDetails
    status_history: List[StatusHistoryEntry] = Field(default_factory=list)
    cancellation: Optional[Cancellation] = None
    customer_notes: Optional[str] = None
    completed_at: Optional[datetime] = None
    version: int = Field(1, description="Incremented on every lifecycle write")


class Payment(BaseModel):
    order_id: Optional[str] = None
    booking_id: Optional[str] = None
    user_id: str
    amount: float = Field(..., ge=0)
    currency: str
    gateway: Literal["razorpay", "stripe"]
    gateway_charge_id: str = Field(..., description="Charge id issued by the gateway")
    gateway_status: Optional[str] = Field(None, description="Raw status reported by the gateway")
    status: Literal["pending", "succeeded", "failed", "refunded"] = "pending"
    transaction_id: Optional[str] = None
    payment_method: Optional[str] = None
    verified_at: Optional[datetime] = None
