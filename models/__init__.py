"""Pydantic models for data validation and serialization."""

from .booking import (
    ACTIVE_STATUSES,
    Booking,
    BookingCreate,
    BookingStatus,
    PaymentMethod,
    can_transition,
)
from .gift_card import GiftCard, GiftCardCreate, GiftCardStatus
from .invoice import Invoice, InvoiceCreate
from .payment_metadata import (
    AppointmentMetadata,
    GiftCardMetadata,
    MinutePackMetadata,
    SubscriptionMetadata,
    TransactionType,
    decode_metadata,
    encode_metadata,
)
from .profile import AuthenticatedUser, Profile
from .service import MinutePack, Plan, Schedule, Service
from .transaction import ReconcileResult, TransactionState, classify_transaction

__all__ = [
    "ACTIVE_STATUSES",
    "AppointmentMetadata",
    "AuthenticatedUser",
    "Booking",
    "BookingCreate",
    "BookingStatus",
    "GiftCard",
    "GiftCardCreate",
    "GiftCardMetadata",
    "GiftCardStatus",
    "Invoice",
    "InvoiceCreate",
    "MinutePack",
    "MinutePackMetadata",
    "PaymentMethod",
    "Plan",
    "Profile",
    "ReconcileResult",
    "Schedule",
    "Service",
    "SubscriptionMetadata",
    "TransactionState",
    "TransactionType",
    "can_transition",
    "classify_transaction",
    "decode_metadata",
    "encode_metadata",
]
