"""Booking models for appointments."""

from datetime import date, datetime, time
from enum import Enum
from typing import Dict, FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from utils.datetime_utils import format_time_of_day, parse_time_of_day


class BookingStatus(str, Enum):
    """Booking status."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentMethod(str, Enum):
    """How an appointment was (or will be) paid."""

    CARD = "card"
    MINUTES = "minutes"
    RECEPTION = "reception"
    ONLINE = "online"
    GIFT = "gift"
    CASH = "cash"
    BLOCKED = "blocked"


# Statuses that hold a slot in the agenda
ACTIVE_STATUSES: FrozenSet[BookingStatus] = frozenset(
    {BookingStatus.PENDING, BookingStatus.CONFIRMED}
)

# Allowed status changes. Cancelled and completed are terminal; re-booking
# creates a new booking.
ALLOWED_TRANSITIONS: Dict[BookingStatus, FrozenSet[BookingStatus]] = {
    BookingStatus.PENDING: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED}),
    BookingStatus.CONFIRMED: frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED}),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
}


def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
    """Check whether a booking may move from one status to another."""
    return BookingStatus(target) in ALLOWED_TRANSITIONS[BookingStatus(current)]


class _SlotFields(BaseModel):
    """Date/time coercion shared by booking models."""

    @field_validator("time", mode="before", check_fields=False)
    @classmethod
    def _parse_time(cls, v):
        if isinstance(v, str):
            return parse_time_of_day(v)
        return v

    @field_serializer("time", check_fields=False)
    def _serialize_time(self, v: time) -> str:
        return format_time_of_day(v)


class Booking(_SlotFields):
    """Booking model."""

    model_config = ConfigDict(use_enum_values=True)

    id: Optional[str] = None
    user_id: Optional[str] = Field(None, description="Owner (null for guest/manual bookings)")
    service_id: str
    date: date
    time: time
    duration: int = Field(..., gt=0, description="Duration in minutes")
    status: BookingStatus = BookingStatus.PENDING
    payment_method: PaymentMethod
    payment_reference: Optional[str] = Field(None, description="Stripe payment intent ID")
    user_name: Optional[str] = None
    user_email: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class BookingCreate(_SlotFields):
    """Booking creation model."""

    model_config = ConfigDict(use_enum_values=True)

    user_id: Optional[str] = None
    service_id: str
    date: date
    time: time
    duration: int = Field(..., gt=0)
    status: BookingStatus = BookingStatus.PENDING
    payment_method: PaymentMethod
    payment_reference: Optional[str] = None
    user_name: Optional[str] = None
    user_email: Optional[str] = None
    notes: Optional[str] = None
