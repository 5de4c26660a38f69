"""
Price and metadata resolution.

Turns a purchase request into the amount Stripe should charge (integer
minor units) and the typed metadata that travels with the payment intent.
Prices always come from the catalogue, never from the client.
"""

from datetime import date, time
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel

from config import settings
from db import get_db_client
from models.booking import PaymentMethod
from models.payment_metadata import (
    AppointmentMetadata,
    GiftCardMetadata,
    MinutePackMetadata,
    SubscriptionMetadata,
    TransactionType,
    encode_metadata,
)
from models.profile import AuthenticatedUser
from models.service import Plan
from utils.constants import MAX_GIFT_MESSAGE_LENGTH, MAX_NAME_LENGTH, MINOR_UNITS_PER_MAJOR
from utils.exceptions import (
    InvalidAmountError,
    NotFoundError,
    ServiceNotFoundError,
    SlotTakenError,
    ValidationError,
)
from utils.validation import sanitize_text, validate_email


class ResolvedCharge(BaseModel):
    """Amount and metadata for one payment intent."""

    transaction_type: TransactionType
    amount: int
    currency: str
    metadata: Dict[str, str]
    description: str
    receipt_email: Optional[str] = None


def to_minor_units(amount: Union[Decimal, float, int, str]) -> int:
    """
    Convert a major-unit amount to integer minor units, rounding half-up.

    Raises:
        InvalidAmountError: If the amount is not a positive number
    """
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError) as e:
        raise InvalidAmountError(f"Invalid amount: {amount!r}") from e

    if not value.is_finite() or value <= 0:
        raise InvalidAmountError(f"Invalid amount: {amount!r} must be positive")

    minor = int((value * MINOR_UNITS_PER_MAJOR).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if minor <= 0:
        raise InvalidAmountError(f"Amount {amount!r} is below the smallest currency unit")
    return minor


def from_minor_units(amount: int) -> Decimal:
    """Convert integer minor units back to a two-place major-unit Decimal."""
    return (Decimal(amount) / MINOR_UNITS_PER_MAJOR).quantize(Decimal("0.01"))


def _charge(
    metadata: BaseModel, price: Decimal, description: str, receipt_email: Optional[str] = None
) -> ResolvedCharge:
    return ResolvedCharge(
        transaction_type=TransactionType(metadata.type),
        amount=to_minor_units(price),
        currency=settings.currency,
        metadata=encode_metadata(metadata),
        description=description,
        receipt_email=receipt_email,
    )


async def resolve_appointment(
    user: AuthenticatedUser,
    service_id: str,
    appointment_date: date,
    appointment_time: time,
    duration: Optional[int] = None,
) -> ResolvedCharge:
    """
    Price a card-paid appointment from the service catalogue.

    Raises:
        ValidationError: Past date, unknown duration or service under maintenance
        SlotTakenError: The slot is not free
    """
    db = get_db_client()
    service = await db.get_service(service_id)
    if service is None:
        raise ServiceNotFoundError(f"Service {service_id} not found")
    if service.is_under_maintenance:
        raise ValidationError(
            f"Service {service_id} is under maintenance",
            "This service is temporarily unavailable.",
        )

    duration = duration or service.default_duration
    if not duration or duration not in service.durations:
        raise ValidationError(f"Duration {duration} not offered for {service_id}")

    price = service.price_for(duration)
    if price is None:
        raise ValidationError(f"No price configured for {service_id} ({duration} min)")

    # booking imports the reconciler, which imports this module
    from booking.availability import is_slot_available

    if not await is_slot_available(service_id, appointment_date, appointment_time):
        raise SlotTakenError(
            f"Slot {service_id} {appointment_date} {appointment_time} is not available"
        )

    profile = user.profile
    metadata = AppointmentMetadata(
        service_id=service.id,
        service_name=service.name,
        user_id=user.id,
        user_name=profile.name_for_display if profile else None,
        user_email=user.email,
        appointment_date=appointment_date,
        appointment_time=appointment_time,
        duration=duration,
        payment_method=PaymentMethod.CARD,
        price=price,
    )
    return _charge(
        metadata,
        price,
        f"{service.name} - {duration} min ({appointment_date.isoformat()})",
        receipt_email=user.email,
    )


def resolve_gift_card(
    amount: Any,
    buyer: Optional[AuthenticatedUser] = None,
    from_name: Optional[str] = None,
    to_name: Optional[str] = None,
    recipient_email: Optional[str] = None,
    message: Optional[str] = None,
) -> ResolvedCharge:
    """Price a gift card purchase. Guests may buy gift cards."""
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError) as e:
        raise InvalidAmountError(f"Invalid gift card amount: {amount!r}") from e

    minimum = Decimal(str(settings.gift_card_min_amount))
    maximum = Decimal(str(settings.gift_card_max_amount))
    if not value.is_finite() or value < minimum or value > maximum:
        raise InvalidAmountError(
            f"Gift card amount {amount!r} outside {minimum}-{maximum}",
            f"Gift card amount must be between {minimum} and {maximum}.",
        )

    if recipient_email and not validate_email(recipient_email):
        raise ValidationError(f"Invalid recipient email: {recipient_email}")

    metadata = GiftCardMetadata(
        amount=value,
        buyer_id=buyer.id if buyer else None,
        from_name=sanitize_text(from_name, MAX_NAME_LENGTH) or None,
        to_name=sanitize_text(to_name, MAX_NAME_LENGTH) or None,
        recipient_email=recipient_email,
        message=sanitize_text(message, MAX_GIFT_MESSAGE_LENGTH) or None,
    )
    return _charge(
        metadata,
        value,
        f"Gift card {value}",
        receipt_email=buyer.email if buyer else None,
    )


async def resolve_minute_pack(user: AuthenticatedUser, pack_id: str) -> ResolvedCharge:
    """Price a one-off minute pack."""
    pack = await get_db_client().get_minute_pack(pack_id)
    if pack is None:
        raise NotFoundError(f"Minute pack {pack_id} not found")

    metadata = MinutePackMetadata(
        user_id=user.id,
        user_email=user.email,
        pack_id=pack.id,
        pack_name=pack.name,
        minutes_amount=pack.minutes,
    )
    return _charge(metadata, pack.price, f"{pack.name} ({pack.minutes} min)", receipt_email=user.email)


async def resolve_subscription(user: AuthenticatedUser, plan_id: str) -> tuple:
    """
    Resolve a plan for subscription checkout.

    Returns:
        (plan, charge) where charge describes the first invoice
    """
    plan: Optional[Plan] = await get_db_client().get_plan(plan_id)
    if plan is None:
        raise NotFoundError(f"Plan {plan_id} not found")
    if not plan.stripe_price_id:
        raise ValidationError(f"Plan {plan_id} has no Stripe price")

    metadata = SubscriptionMetadata(user_id=user.id, plan_id=plan.id)
    return plan, _charge(metadata, plan.price, f"Subscription {plan.title}", receipt_email=user.email)
