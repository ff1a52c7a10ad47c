"""
Database Schemas for the Parcel Delivery Marketplace

Each Pydantic model describes a document in a MongoDB collection:
- User -> "users"
- Parcel -> "parcels"
- RiderApplication -> "riders"
- Payment -> "payments"
- TrackingEntry -> "tracking"

Status fields are restricted to the literals below and move only along the
transition tables at the bottom of the module.
"""
from typing import Dict, Literal, Optional, Set

from pydantic import BaseModel, ConfigDict, EmailStr, Field

Role = Literal["user", "admin", "rider"]
DeliveryStatus = Literal["not_collected", "assigned", "in_transit", "delivered"]
PaymentStatus = Literal["unpaid", "paid"]
RiderStatus = Literal["pending", "active", "rejected", "on_delivery"]


class User(BaseModel):
    email: EmailStr = Field(..., description="Email address, unique per user")
    name: Optional[str] = Field(None, description="Display name")
    photo: Optional[str] = Field(None, description="Avatar URL")


class RoleUpdate(BaseModel):
    role: Literal["admin", "user"]


class Parcel(BaseModel):
    # sender/receiver details vary by client form and are stored as sent
    model_config = ConfigDict(extra="allow")

    title: Optional[str] = None
    type: Optional[Literal["document", "non-document"]] = None
    weight: Optional[float] = Field(None, ge=0)
    cost: Optional[float] = Field(None, ge=0)
    tracking_id: Optional[str] = None


class RiderApplication(BaseModel):
    model_config = ConfigDict(extra="allow")

    email: EmailStr
    name: Optional[str] = None
    phone: Optional[str] = None
    district: str = Field(..., description="District the rider works in")
    region: Optional[str] = None


class RiderStatusUpdate(BaseModel):
    status: RiderStatus


class AssignRider(BaseModel):
    riderEmail: Optional[EmailStr] = None


class TrackingEntry(BaseModel):
    tracking_id: str
    parcel_id: Optional[str] = None
    status: str
    message: Optional[str] = None
    updated_by: str = ""


class PaymentIntentRequest(BaseModel):
    amount: int = Field(..., gt=0, description="Amount in the smallest currency unit")


class Payment(BaseModel):
    parcelId: str
    userEmail: EmailStr
    amount: float = Field(..., gt=0)
    transactionId: str = Field(..., min_length=1)


RIDER_TRANSITIONS: Dict[str, Set[str]] = {
    "pending": {"active", "rejected"},
    "active": {"on_delivery"},
    "on_delivery": {"active"},
    "rejected": set(),
}

DELIVERY_TRANSITIONS: Dict[str, Set[str]] = {
    "not_collected": {"assigned"},
    "assigned": {"in_transit"},
    "in_transit": {"delivered"},
    "delivered": set(),
}

PAYMENT_TRANSITIONS: Dict[str, Set[str]] = {
    "unpaid": {"paid"},
    "paid": set(),
}


def can_transition(table: Dict[str, Set[str]], current: Optional[str], target: str) -> bool:
    return target in table.get(current or "", set())
